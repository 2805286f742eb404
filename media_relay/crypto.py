from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from .exceptions import CredentialStoreError

ENCRYPTED_PREFIX = "ENC:"
KEY_ENV_VAR = "MEDIA_RELAY_ENCRYPTION_KEY"


def resolve_key(explicit_key: str | None, key_env_var: str = KEY_ENV_VAR) -> str | None:
    if explicit_key:
        return explicit_key.strip()
    from_env = os.getenv(key_env_var)
    return from_env.strip() if from_env else None


def is_sealed(text: str) -> bool:
    return text.startswith(ENCRYPTED_PREFIX)


def encrypt_text(plaintext: str, key: str) -> str:
    token = Fernet(key.encode("utf-8")).encrypt(plaintext.encode("utf-8")).decode("utf-8")
    return f"{ENCRYPTED_PREFIX}{token}"


def decrypt_text(ciphertext: str, key: str) -> str:
    if not is_sealed(ciphertext):
        return ciphertext
    try:
        return Fernet(key.encode("utf-8")).decrypt(ciphertext[len(ENCRYPTED_PREFIX) :].encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise CredentialStoreError("Invalid encryption key for encrypted credential file") from exc


def seal_document(document: dict[str, Any], key: str | None) -> str:
    """Serialize a credential document, encrypting it when a key is given."""
    text = json.dumps(document, indent=2)
    return encrypt_text(text, key) if key else text


def open_document(raw: str, key: str | None, source: str = "credential file") -> dict[str, Any]:
    """Inverse of :func:`seal_document`. Empty input is an empty document."""
    raw = raw.strip()
    if not raw:
        return {}
    if is_sealed(raw):
        if not key:
            raise CredentialStoreError(
                f"The {source} is encrypted. Provide key via --encryption-key or {KEY_ENV_VAR}."
            )
        raw = decrypt_text(raw, key)
    try:
        document = json.loads(raw)
    except ValueError as exc:
        raise CredentialStoreError(f"The {source} is not valid JSON") from exc
    if not isinstance(document, dict):
        raise CredentialStoreError(f"The {source} must hold a JSON object")
    return document


def load_or_create_key(path: str) -> str:
    """Read the Fernet key at *path*, generating one on first use. The file is kept owner-only."""
    key_path = Path(path)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    if not key_path.exists():
        key_path.write_text(Fernet.generate_key().decode("utf-8"), encoding="utf-8")
    try:
        os.chmod(key_path, 0o600)
    except OSError:
        pass
    return key_path.read_text(encoding="utf-8").strip()
