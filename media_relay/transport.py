from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import requests

from .exceptions import DispatchCancelled

logger = logging.getLogger(__name__)

BLOCKED_FORWARD_HEADERS = {"host", "content-length", "connection", "accept-encoding"}


def sanitize_headers(headers: dict[str, str]) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in BLOCKED_FORWARD_HEADERS}


@dataclass
class UpstreamResponse:
    status_code: int
    content: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    @property
    def content_type(self) -> str:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return v
        return ""

    def json(self) -> Any:
        return json.loads(self.text)


def send_upstream(
    url: str,
    headers: dict[str, str],
    body: Any = None,
    method: str = "POST",
    params: dict[str, Any] | None = None,
    timeout_seconds: float = 30.0,
    chunk_size: int = 65536,
    cancel_event: threading.Event | None = None,
) -> UpstreamResponse:
    """Send one request and read the body in chunks so a cancel can cut it short.

    *timeout_seconds* bounds the whole exchange, body included. Raises
    :class:`DispatchCancelled` when *cancel_event* is set before or while the
    body is read, ``requests.Timeout`` when the deadline passes mid-body, and
    lets other ``requests.RequestException`` errors propagate.
    """
    if cancel_event is not None and cancel_event.is_set():
        raise DispatchCancelled("Request cancelled before it was sent")

    deadline = time.monotonic() + timeout_seconds

    response = requests.request(
        method=method.upper(),
        url=url,
        headers=sanitize_headers(headers),
        params=params,
        json=body,
        timeout=timeout_seconds,
        stream=True,
    )
    try:
        chunks: list[bytes] = []
        for chunk in response.iter_content(chunk_size=chunk_size):
            if cancel_event is not None and cancel_event.is_set():
                raise DispatchCancelled("Request cancelled while reading the response")
            if time.monotonic() > deadline:
                raise requests.Timeout(f"Response from {url} not complete after {timeout_seconds:g}s")
            if chunk:
                chunks.append(chunk)
        content = b"".join(chunks)
        logger.debug("%s %s -> HTTP %s (%d bytes)", method.upper(), url, response.status_code, len(content))
        return UpstreamResponse(
            status_code=response.status_code,
            content=content,
            headers=dict(response.headers),
        )
    finally:
        response.close()
