from __future__ import annotations

import json
import logging
import os
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from ipaddress import ip_address
from typing import Any
from urllib.parse import parse_qs, urlparse

import requests

from .config import PLACEMENT_BODY, PLACEMENT_NONE, EndpointRegistry, EndpointSpec, UpstreamSettings, env_value
from .exceptions import RelayPolicyError
from .extractor import TokenExtractor
from .media import read_path, set_path
from .recaptcha import RecaptchaValidator, is_authority_failure
from .security_utils import mask_token
from .transport import send_upstream

logger = logging.getLogger(__name__)

MAX_JSON_BODY_BYTES = 52_428_800
DOWNLOAD_PATH = "/api/veo/download-video"
DOWNLOAD_HOST_SUFFIXES = ("storage.googleapis.com", "googleusercontent.com")
DOWNLOAD_TIMEOUT_SECONDS = 120.0
DOWNLOAD_CHUNK_SIZE = 65536


def _json_response(handler: BaseHTTPRequestHandler, status: int, payload: dict) -> None:
    body = json.dumps(payload).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _read_json_body(handler: BaseHTTPRequestHandler) -> dict:
    length = int(handler.headers.get("Content-Length", "0"))
    if length > MAX_JSON_BODY_BYTES:
        raise ValueError(f"Request body too large; max {MAX_JSON_BODY_BYTES} bytes")
    data = handler.rfile.read(length) if length > 0 else b"{}"
    payload = json.loads(data.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    return payload


def _is_loopback_host(host: str) -> bool:
    lowered = host.strip().lower()
    if lowered == "localhost":
        return True
    try:
        return ip_address(lowered).is_loopback
    except ValueError:
        return False


def _enforce_local_bind(host: str) -> None:
    if _is_loopback_host(host):
        return
    allow_remote = os.getenv("MEDIA_RELAY_ALLOW_REMOTE", "").strip().lower() in {"1", "true", "yes"}
    if not allow_remote:
        raise RelayPolicyError(
            "Refusing non-loopback bind without explicit override. "
            "Use host=127.0.0.1/localhost or set MEDIA_RELAY_ALLOW_REMOTE=1."
        )


def _is_authorized(handler: BaseHTTPRequestHandler, api_token: str | None) -> bool:
    if not api_token:
        return True
    provided = handler.headers.get("X-Relay-Token") or handler.headers.get("X-API-Key")
    return bool(provided) and provided == api_token


def _split_api_path(path: str) -> tuple[str, str] | None:
    # /api/<service>/<rest...>
    parts = path.split("/", 3)
    if len(parts) < 4 or parts[1] != "api" or not parts[2] or not parts[3]:
        return None
    return parts[2], "/" + parts[3]


def _incoming_recaptcha(headers: Any, payload: dict) -> str | None:
    candidates = [
        headers.get("X-Recaptcha-Token"),
        payload.get("recaptchaToken"),
        read_path(payload, "clientContext.recaptchaToken"),
    ]
    for value in candidates:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def relay_request(
    endpoint: EndpointSpec,
    headers: Any,
    payload: dict,
    upstream: UpstreamSettings,
    validator: RecaptchaValidator | None = None,
    google_api_key: str | None = None,
) -> tuple[int, dict]:
    """Forward one proxied call to the real upstream and return ``(status, json)``."""
    if not endpoint.upstream_url:
        return 404, {"error": f"No upstream route for {endpoint.service_type}{endpoint.relative_path}"}

    auth = str(headers.get("Authorization") or "")
    bearer = auth[7:].strip() if auth.lower().startswith("bearer ") else ""
    if not bearer:
        return 401, {"error": "Missing bearer token"}

    body = dict(payload)
    body.pop("recaptchaToken", None)
    forward_headers = {
        "Authorization": f"Bearer {bearer}",
        "Content-Type": "application/json",
        "Origin": upstream.origin,
        "Referer": upstream.referer,
        "User-Agent": upstream.user_agent,
    }
    if google_api_key:
        forward_headers["x-goog-api-key"] = google_api_key

    recaptcha = _incoming_recaptcha(headers, payload)
    if recaptcha and endpoint.recaptcha_placement != PLACEMENT_NONE:
        if endpoint.prevalidate and validator is not None:
            verdict = validator.validate(recaptcha, endpoint.expected_action)
            if is_authority_failure(verdict):
                return 502, {"error": "RECAPTCHA_ASSESSMENT_UNAVAILABLE", "details": verdict.to_dict()}
            if not verdict.valid:
                return 403, {"error": "RECAPTCHA_VALIDATION_FAILED", "details": verdict.to_dict()}
        if endpoint.recaptcha_placement == PLACEMENT_BODY:
            body = set_path(body, endpoint.recaptcha_body_path, recaptcha)
        else:
            forward_headers[endpoint.recaptcha_header] = recaptcha

    timeout = endpoint.timeout_seconds or (
        upstream.status_timeout_seconds if endpoint.is_status_check else upstream.timeout_seconds
    )
    logger.info(
        "Relaying %s%s for token %s", endpoint.service_type, endpoint.relative_path, mask_token(bearer)
    )
    try:
        response = send_upstream(endpoint.upstream_url, forward_headers, body, timeout_seconds=timeout)
    except requests.RequestException as exc:
        logger.error("Upstream call failed: %s", exc)
        return 502, {"error": str(exc)}

    try:
        data = response.json()
    except ValueError:
        logger.warning("Non-JSON upstream response: %s", response.text[:200])
        data = {"error": response.text}
    if not isinstance(data, dict):
        data = {"data": data}
    return response.status_code, data


def _validate_download_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme != "https" or not parsed.hostname:
        raise ValueError("Download URL must be an absolute https URL")
    host = parsed.hostname.lower()
    if not any(host == suffix or host.endswith(f".{suffix}") for suffix in DOWNLOAD_HOST_SUFFIXES):
        raise ValueError(f"Download host not allowed: {host}")
    return value


def relay_download(
    handler: BaseHTTPRequestHandler,
    video_url: str,
    timeout_seconds: float = DOWNLOAD_TIMEOUT_SECONDS,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> int:
    """Stream a generated video from Google storage back to the caller; returns the status sent."""
    try:
        url = _validate_download_url(video_url)
    except ValueError as exc:
        _json_response(handler, 400, {"error": str(exc)})
        return 400

    try:
        response = requests.get(url, stream=True, timeout=timeout_seconds)
    except requests.RequestException as exc:
        logger.error("Video download failed: %s", exc)
        _json_response(handler, 502, {"error": str(exc)})
        return 502

    try:
        if not 200 <= response.status_code < 300:
            logger.warning("Video download answered HTTP %s", response.status_code)
            _json_response(handler, response.status_code, {"error": f"Download failed with HTTP {response.status_code}"})
            return response.status_code
        handler.send_response(response.status_code)
        handler.send_header("Content-Type", response.headers.get("Content-Type") or "video/mp4")
        length = response.headers.get("Content-Length")
        if length:
            handler.send_header("Content-Length", length)
        handler.end_headers()
        for chunk in response.iter_content(chunk_size=chunk_size):
            if chunk:
                handler.wfile.write(chunk)
        return response.status_code
    finally:
        response.close()


def make_handler(
    registry: EndpointRegistry | None = None,
    upstream: UpstreamSettings | None = None,
    validator: RecaptchaValidator | None = None,
    api_token: str | None = None,
    google_api_key: str | None = None,
) -> type[BaseHTTPRequestHandler]:
    endpoints = registry or EndpointRegistry.builtin()
    upstream_settings = upstream or UpstreamSettings()
    extractor = TokenExtractor()

    class Handler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args) -> None:  # noqa: A003
            logger.debug("%s - %s", self.address_string(), format % args)

        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            if parsed.path == "/health":
                _json_response(self, 200, {"ok": True})
                return
            if parsed.path == "/endpoints":
                _json_response(
                    self,
                    200,
                    {
                        "endpoints": [
                            {
                                "service": e.service_type,
                                "path": e.relative_path,
                                "recaptcha_placement": e.recaptcha_placement,
                                "method": e.method,
                                "routed": bool(e.upstream_url) or f"/api/{e.service_type}{e.relative_path}" == DOWNLOAD_PATH,
                            }
                            for e in endpoints.list_endpoints()
                        ]
                    },
                )
                return
            if parsed.path == DOWNLOAD_PATH:
                if not _is_authorized(self, api_token):
                    _json_response(self, 401, {"error": "Unauthorized"})
                    return
                video_url = (parse_qs(parsed.query).get("url") or [""])[0]
                relay_download(self, video_url)
                return
            _json_response(self, 404, {"error": "Not found"})

        def do_POST(self) -> None:  # noqa: N802
            if not _is_authorized(self, api_token):
                _json_response(self, 401, {"error": "Unauthorized"})
                return
            parsed = urlparse(self.path)
            try:
                payload = _read_json_body(self)
            except Exception as exc:  # noqa: BLE001
                _json_response(self, 400, {"error": f"Invalid JSON: {exc}"})
                return

            if parsed.path == "/extract":
                try:
                    result = extractor.extract_details(str(payload.get("content", "")))
                    _json_response(self, 200, {"found": result.found, "token": result.token, "method": result.method})
                except Exception as exc:  # noqa: BLE001
                    _json_response(self, 500, {"error": str(exc)})
                return

            route = _split_api_path(parsed.path)
            if route is None:
                _json_response(self, 404, {"error": "Not found"})
                return
            service, relative_path = route
            try:
                status, data = relay_request(
                    endpoints.resolve(service, relative_path),
                    self.headers,
                    payload,
                    upstream_settings,
                    validator=validator,
                    google_api_key=google_api_key,
                )
                _json_response(self, status, data)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Relay failed for %s", parsed.path)
                _json_response(self, 500, {"error": str(exc)})

    return Handler


def serve_api(
    host: str = "127.0.0.1",
    port: int = 3001,
    api_token: str | None = None,
    validator: RecaptchaValidator | None = None,
) -> None:
    _enforce_local_bind(host)
    handler = make_handler(
        validator=validator,
        api_token=api_token,
        google_api_key=env_value(None, "MEDIA_RELAY_GOOGLE_API_KEY"),
    )
    server = ThreadingHTTPServer((host, port), handler)
    logger.info("Relay listening on http://%s:%s", host, port)
    try:
        server.serve_forever()
    finally:
        server.server_close()
