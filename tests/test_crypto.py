from __future__ import annotations

import os

import pytest
from cryptography.fernet import Fernet

from media_relay.crypto import decrypt_text, encrypt_text, load_or_create_key, open_document, resolve_key, seal_document
from media_relay.exceptions import CredentialStoreError


@pytest.mark.skipif(os.name == "nt", reason="POSIX file mode assertion")
def test_load_or_create_key_sets_private_permissions(tmp_path):
    key_path = tmp_path / "state" / "key.txt"
    key = load_or_create_key(str(key_path))
    mode = key_path.stat().st_mode & 0o777
    assert mode == 0o600
    assert load_or_create_key(str(key_path)) == key


def test_resolve_key_prefers_explicit_then_env(monkeypatch):
    monkeypatch.setenv("MEDIA_RELAY_ENCRYPTION_KEY", " env-key ")
    assert resolve_key("cli-key") == "cli-key"
    assert resolve_key(None) == "env-key"
    monkeypatch.delenv("MEDIA_RELAY_ENCRYPTION_KEY")
    assert resolve_key(None) is None


def test_decrypt_with_wrong_key_raises():
    ciphertext = encrypt_text("secret", Fernet.generate_key().decode("utf-8"))
    assert ciphertext.startswith("ENC:")
    with pytest.raises(CredentialStoreError):
        decrypt_text(ciphertext, Fernet.generate_key().decode("utf-8"))


def test_decrypt_passes_plaintext_through():
    assert decrypt_text('{"a": 1}', Fernet.generate_key().decode("utf-8")) == '{"a": 1}'


def test_sealed_document_roundtrip():
    key = Fernet.generate_key().decode("utf-8")
    sealed = seal_document({"alice": {"access_token": "ya29.x"}}, key)
    assert sealed.startswith("ENC:")
    assert open_document(sealed, key) == {"alice": {"access_token": "ya29.x"}}


def test_open_document_needs_key_for_sealed_text():
    sealed = seal_document({"a": 1}, Fernet.generate_key().decode("utf-8"))
    with pytest.raises(CredentialStoreError):
        open_document(sealed, None)


def test_open_document_empty_and_plain():
    assert open_document("  ", None) == {}
    assert open_document(seal_document({"a": 1}, None), None) == {"a": 1}
