from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .security_utils import mask_token


@dataclass
class Credential:
    access_token: str
    recaptcha_token: str | None = None
    captured_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def without_recaptcha(self) -> Credential:
        return Credential(access_token=self.access_token, recaptcha_token=None, captured_at=self.captured_at)

    def masked(self) -> dict[str, Any]:
        return {
            "access_token": mask_token(self.access_token),
            "recaptcha_token": mask_token(self.recaptcha_token) if self.recaptcha_token else None,
            "captured_at": self.captured_at,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "recaptcha_token": self.recaptcha_token,
            "captured_at": self.captured_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        recaptcha = data.get("recaptcha_token")
        return cls(
            access_token=str(data.get("access_token", "")).strip(),
            recaptcha_token=(str(recaptcha).strip() or None) if recaptcha is not None else None,
            captured_at=str(data.get("captured_at", datetime.now(timezone.utc).isoformat())),
        )
