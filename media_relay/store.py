"""Credential stores keyed by user id.

The dispatcher only ever reads from a store; writes come from the token import
flow (``MediaRelayClient.import_token`` / ``media-relay import-token``).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path

import requests

from .config import StoreSettings
from .crypto import open_document, seal_document
from .exceptions import ConfigurationError, CredentialStoreError
from .models import Credential

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    @abstractmethod
    def get(self, user_id: str) -> Credential | None:
        ...

    @abstractmethod
    def set(self, user_id: str, credential: Credential) -> None:
        ...


class MemoryCredentialStore(CredentialStore):
    def __init__(self, initial: dict[str, Credential] | None = None) -> None:
        self._items: dict[str, Credential] = dict(initial or {})
        self.reads = 0

    def get(self, user_id: str) -> Credential | None:
        self.reads += 1
        return self._items.get(user_id)

    def set(self, user_id: str, credential: Credential) -> None:
        self._items[user_id] = credential


class FileCredentialStore(CredentialStore):
    """JSON file of ``{user_id: credential}``, optionally Fernet-encrypted as a whole."""

    def __init__(self, path: str, encryption_key: str | None = None) -> None:
        self.path = Path(path)
        self.encryption_key = encryption_key

    def _load(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        return open_document(self.path.read_text(encoding="utf-8"), self.encryption_key, source=f"credential file {self.path}")

    def get(self, user_id: str) -> Credential | None:
        record = self._load().get(user_id)
        if not isinstance(record, dict):
            return None
        credential = Credential.from_dict(record)
        return credential if credential.access_token else None

    def set(self, user_id: str, credential: Credential) -> None:
        data = self._load()
        data[user_id] = credential.to_dict()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(seal_document(data, self.encryption_key), encoding="utf-8")


class RestCredentialStore(CredentialStore):
    """Hosted relational store behind a PostgREST-style HTTP interface."""

    def __init__(self, settings: StoreSettings) -> None:
        if not settings.base_url or not settings.api_key:
            raise ConfigurationError("RestCredentialStore needs base_url and api_key (MEDIA_RELAY_STORE_URL/KEY)")
        self.settings = settings

    @property
    def table_url(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/rest/v1/{self.settings.table}"

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": str(self.settings.api_key),
            "Authorization": f"Bearer {self.settings.api_key}",
            "Accept": "application/json",
        }

    def get(self, user_id: str) -> Credential | None:
        s = self.settings
        try:
            response = requests.get(
                self.table_url,
                params={
                    s.id_column: f"eq.{user_id}",
                    "select": f"{s.access_token_column},{s.recaptcha_token_column}",
                },
                headers=self._headers(),
                timeout=s.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise CredentialStoreError(f"Credential lookup failed: {exc}") from exc
        if response.status_code >= 400:
            raise CredentialStoreError(f"Credential lookup failed with HTTP {response.status_code}: {response.text[:200]}")
        try:
            rows = response.json()
        except ValueError as exc:
            raise CredentialStoreError("Credential lookup returned non-JSON body") from exc
        if not isinstance(rows, list) or not rows:
            return None
        row = rows[0] if isinstance(rows[0], dict) else {}
        access = str(row.get(s.access_token_column) or "").strip()
        if not access:
            return None
        recaptcha = str(row.get(s.recaptcha_token_column) or "").strip() or None
        return Credential(access_token=access, recaptcha_token=recaptcha)

    def set(self, user_id: str, credential: Credential) -> None:
        s = self.settings
        headers = self._headers()
        headers["Content-Type"] = "application/json"
        headers["Prefer"] = "return=minimal"
        try:
            response = requests.patch(
                self.table_url,
                params={s.id_column: f"eq.{user_id}"},
                headers=headers,
                json={
                    s.access_token_column: credential.access_token,
                    s.recaptcha_token_column: credential.recaptcha_token,
                },
                timeout=s.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise CredentialStoreError(f"Credential save failed: {exc}") from exc
        if response.status_code >= 400:
            raise CredentialStoreError(f"Credential save failed with HTTP {response.status_code}: {response.text[:200]}")
        logger.info("Saved credential for user %s", user_id)
