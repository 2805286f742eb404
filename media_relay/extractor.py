"""Locate a usable access token inside an uploaded artifact.

Users hand us whatever they managed to export from their browser: a raw log or
script dump, a cookie-extension JSON export, a Netscape ``cookies.txt`` file, or
a bare JWT.  :class:`TokenExtractor` runs a layered search over that text,
cheapest and most precise layer first, and stops at the first hit:

1. global scan of the raw text for the access-token shape;
2. structured walk of the text parsed as JSON (decoding embedded JWTs);
3. Netscape cookie lines carrying a known session cookie.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from pathlib import Path
from typing import Any

from .exceptions import ExtractionError
from .results import (
    METHOD_DIRECT_SCAN,
    METHOD_JSON_FIELD,
    METHOD_JWT_PAYLOAD,
    METHOD_NETSCAPE_COOKIE,
    ExtractionResult,
)
from .security_utils import mask_token

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "ya29."
TOKEN_PATTERN = re.compile(r"ya29\.[A-Za-z0-9_-]+")
JWT_PATTERN = re.compile(r"^[A-Za-z0-9_-]{2,}\.[A-Za-z0-9_-]{2,}\.[A-Za-z0-9_-]*$")
DEFAULT_MIN_LENGTH = 20
MAX_DEPTH = 32

TOKEN_FIELD_ALIASES = frozenset({"accessToken", "access_token", "token", "bearerToken", "value"})
# Ordered by preference.
SESSION_COOKIE_NAMES = ("__SESSION", "__Secure-next-auth.session-token")
NETSCAPE_HTTPONLY_PREFIX = "#HttpOnly_"


def decode_jwt_payload(token: str) -> Any | None:
    """Return the parsed middle segment of a JWT, or ``None`` if it does not decode."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1]
    padding = "=" * (-len(payload) % 4)
    try:
        decoded = base64.urlsafe_b64decode((payload + padding).encode("ascii"))
        return json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError):
        return None


def looks_like_jwt(value: str) -> bool:
    return bool(JWT_PATTERN.match(value))


class _Hits:
    def __init__(self) -> None:
        self.alias: ExtractionResult | None = None
        self.generic: ExtractionResult | None = None
        self.session: ExtractionResult | None = None
        self.session_rank = len(SESSION_COOKIE_NAMES)

    def best(self) -> ExtractionResult | None:
        return self.alias or self.generic or self.session


class TokenExtractor:
    def __init__(self, min_length: int = DEFAULT_MIN_LENGTH) -> None:
        self.min_length = max(len(TOKEN_PREFIX) + 1, int(min_length))

    # ── public API ───────────────────────────────────────────────────────────

    def extract(self, data: bytes | str) -> str | None:
        return self.extract_details(data).token

    def extract_details(self, data: bytes | str) -> ExtractionResult:
        text = self._as_text(data)

        hit = self._scan_raw(text)
        if hit is None:
            hit = self._scan_structured(text)
        if hit is None:
            hit = self._scan_netscape(text)

        if hit is None:
            logger.info("No access token found in %d characters of input", len(text))
            return ExtractionResult(token=None)
        logger.info("Access token %s found via %s", mask_token(hit.token), hit.method)
        return hit

    def extract_file(self, path: str) -> ExtractionResult:
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise ExtractionError(f"Could not read token file '{path}': {exc}") from exc
        return self.extract_details(data)

    def is_token(self, value: str) -> bool:
        match = TOKEN_PATTERN.fullmatch(value)
        return match is not None and len(value) >= self.min_length

    # ── layers ───────────────────────────────────────────────────────────────

    @staticmethod
    def _as_text(data: bytes | str) -> str:
        if isinstance(data, str):
            return data
        if isinstance(data, (bytes, bytearray, memoryview)):
            raw = bytes(data)
            try:
                return raw.decode("utf-8-sig")
            except UnicodeDecodeError:
                return raw.decode("utf-8", errors="replace")
        raise ExtractionError(f"Unreadable input of type {type(data).__name__}")

    def _scan_raw(self, text: str) -> ExtractionResult | None:
        for match in TOKEN_PATTERN.finditer(text):
            if len(match.group(0)) >= self.min_length:
                return ExtractionResult(token=match.group(0), method=METHOD_DIRECT_SCAN)
        return None

    def _scan_structured(self, text: str) -> ExtractionResult | None:
        stripped = text.strip()
        if not stripped:
            return None
        try:
            document = json.loads(stripped)
        except (ValueError, RecursionError):
            if looks_like_jwt(stripped):
                payload = decode_jwt_payload(stripped)
                if payload is not None:
                    return self._walk_document(payload, METHOD_JWT_PAYLOAD)
            return None
        return self._walk_document(document, METHOD_JSON_FIELD)

    def _scan_netscape(self, text: str) -> ExtractionResult | None:
        found: dict[str, str] = {}
        for line in text.splitlines():
            if line.startswith(NETSCAPE_HTTPONLY_PREFIX):
                line = line[len(NETSCAPE_HTTPONLY_PREFIX) :]
            elif line.startswith("#") or not line.strip():
                continue
            parts = line.split("\t")
            if len(parts) < 7:
                continue
            name = parts[5].strip()
            value = parts[6].strip()
            if name in SESSION_COOKIE_NAMES and value and name not in found:
                found[name] = value

        for name in SESSION_COOKIE_NAMES:
            value = found.get(name)
            if not value:
                continue
            if looks_like_jwt(value):
                payload = decode_jwt_payload(value)
                if payload is not None:
                    inner = self._walk_document(payload, METHOD_JWT_PAYLOAD)
                    if inner is not None:
                        return inner
            return ExtractionResult(token=value, method=METHOD_NETSCAPE_COOKIE)
        return None

    # ── JSON walk ────────────────────────────────────────────────────────────

    def _walk_document(self, document: Any, method: str) -> ExtractionResult | None:
        hits = _Hits()
        self._visit(document, None, method, hits, 0)
        return hits.best()

    def _visit(self, node: Any, key: str | None, method: str, hits: _Hits, depth: int) -> None:
        if depth > MAX_DEPTH:
            return
        if isinstance(node, dict):
            self._visit_cookie_record(node, method, hits)
            for child_key, child in node.items():
                self._visit(child, str(child_key), method, hits, depth + 1)
        elif isinstance(node, list):
            for child in node:
                self._visit(child, None, method, hits, depth + 1)
        elif isinstance(node, str):
            self._visit_string(node, key, method, hits, depth)

    def _visit_string(self, value: str, key: str | None, method: str, hits: _Hits, depth: int) -> None:
        candidate = value.strip()
        if candidate.lower().startswith("bearer "):
            candidate = candidate[7:].strip()
        if self.is_token(candidate):
            result = ExtractionResult(token=candidate, method=method)
            if key in TOKEN_FIELD_ALIASES:
                if hits.alias is None:
                    hits.alias = result
            elif hits.generic is None:
                hits.generic = result
            return
        if looks_like_jwt(candidate):
            payload = decode_jwt_payload(candidate)
            if payload is not None:
                self._visit(payload, None, METHOD_JWT_PAYLOAD, hits, depth + 1)

    def _visit_cookie_record(self, node: dict, method: str, hits: _Hits) -> None:
        # Browser cookie-extension exports: [{"name": "__SESSION", "value": "..."}]
        name = node.get("name")
        value = node.get("value")
        if name not in SESSION_COOKIE_NAMES or not isinstance(value, str) or not value.strip():
            return
        rank = SESSION_COOKIE_NAMES.index(name)
        if rank < hits.session_rank:
            hits.session = ExtractionResult(token=value.strip(), method=method)
            hits.session_rank = rank


_default_extractor = TokenExtractor()


def extract_token(data: bytes | str) -> str | None:
    return _default_extractor.extract(data)


def extract_token_details(data: bytes | str) -> ExtractionResult:
    return _default_extractor.extract_details(data)
