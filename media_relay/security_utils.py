from __future__ import annotations

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "x-goog-api-key",
    "apikey",
    "x-recaptcha-token",
    "x-relay-token",
    "proxy-authorization",
}


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    redacted: dict[str, str] = {}
    for k, v in headers.items():
        if k.lower() in SENSITIVE_HEADERS:
            redacted[k] = "***REDACTED***"
        else:
            redacted[k] = v
    return redacted


def mask_token(token: str | None, visible: int = 6) -> str:
    if not token:
        return ""
    if len(token) <= visible:
        return "*" * len(token)
    return f"...{token[-visible:]}"
