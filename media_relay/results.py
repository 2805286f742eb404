from __future__ import annotations

from dataclasses import dataclass
from typing import Any

# Dispatch statuses returned to callers.
STATUS_OK = "ok"
STATUS_AUTH_REQUIRED = "auth_required"
STATUS_RECAPTCHA_REQUIRED = "recaptcha_required"
STATUS_RECAPTCHA_INVALID = "recaptcha_invalid"
STATUS_UPSTREAM_ERROR = "upstream_error"
STATUS_NETWORK_ERROR = "network_error"

# Failure kinds; finer grained than the status so a UI can pick a message.
NO_CREDENTIAL = "no_credential"
AUTH_REJECTED = "auth_rejected"
RECAPTCHA_REQUIRED = "recaptcha_required"
RECAPTCHA_INVALID = "recaptcha_invalid"
UPSTREAM_ERROR = "upstream_error"
MALFORMED_RESPONSE = "malformed_response"
NETWORK_ERROR = "network_error"
CANCELLED = "cancelled"

STATUS_FOR_KIND = {
    NO_CREDENTIAL: STATUS_AUTH_REQUIRED,
    AUTH_REJECTED: STATUS_AUTH_REQUIRED,
    RECAPTCHA_REQUIRED: STATUS_RECAPTCHA_REQUIRED,
    RECAPTCHA_INVALID: STATUS_RECAPTCHA_INVALID,
    UPSTREAM_ERROR: STATUS_UPSTREAM_ERROR,
    MALFORMED_RESPONSE: STATUS_UPSTREAM_ERROR,
    NETWORK_ERROR: STATUS_NETWORK_ERROR,
    CANCELLED: STATUS_NETWORK_ERROR,
}

# Verdict reasons produced locally; authority codes are passed through as-is.
REASON_NO_TOKEN = "NO_TOKEN"
REASON_HTTP_ERROR = "HTTP_ERROR"
REASON_EXCEPTION = "EXCEPTION"
REASON_INVALID_TOKEN = "INVALID_TOKEN"
REASON_ACTION_MISMATCH = "ACTION_MISMATCH"

METHOD_DIRECT_SCAN = "direct-scan"
METHOD_JSON_FIELD = "json-field"
METHOD_JWT_PAYLOAD = "jwt-payload"
METHOD_NETSCAPE_COOKIE = "netscape-cookie"


@dataclass
class ExtractionResult:
    token: str | None
    method: str | None = None

    @property
    def found(self) -> bool:
        return self.token is not None


@dataclass
class ValidationVerdict:
    valid: bool
    score: float = 0.0
    action: str = ""
    reason: str | None = None
    status_code: int | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"valid": self.valid, "score": self.score, "action": self.action}
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.status_code is not None:
            payload["status"] = self.status_code
        if self.detail:
            payload["detail"] = self.detail
        return payload


@dataclass
class DispatchOutcome:
    status: str
    body: Any = None
    http_status: int = 0
    error_kind: str | None = None
    message: str = ""
    credential_source: str | None = None
    verdict: ValidationVerdict | None = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @classmethod
    def failure(
        cls,
        kind: str,
        message: str,
        body: Any = None,
        http_status: int = 0,
        credential_source: str | None = None,
        verdict: ValidationVerdict | None = None,
    ) -> DispatchOutcome:
        return cls(
            status=STATUS_FOR_KIND[kind],
            body=body,
            http_status=http_status,
            error_kind=kind,
            message=message,
            credential_source=credential_source,
            verdict=verdict,
        )

    def to_dict(self) -> dict[str, Any]:
        body = self.body
        if isinstance(body, (bytes, bytearray)):
            body = {"bytes": len(body)}
        return {
            "status": self.status,
            "http_status": self.http_status,
            "error_kind": self.error_kind,
            "message": self.message,
            "credential_source": self.credential_source,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "body": body,
        }
