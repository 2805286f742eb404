import json

import pytest
import requests
from cryptography.fernet import Fernet

from media_relay.config import StoreSettings
from media_relay.exceptions import ConfigurationError, CredentialStoreError
from media_relay.models import Credential
from media_relay.store import FileCredentialStore, RestCredentialStore

ACCESS = "ya29.stored_access_token_0001"


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


def _rest_store():
    return RestCredentialStore(StoreSettings(base_url="https://db.example/", api_key="service-key"))


def test_file_store_roundtrip_plain(tmp_path):
    store = FileCredentialStore(str(tmp_path / "creds.json"))
    store.set("alice", Credential(ACCESS, recaptcha_token="rc-1"))
    loaded = store.get("alice")
    assert loaded.access_token == ACCESS
    assert loaded.recaptcha_token == "rc-1"
    assert store.get("bob") is None


def test_file_store_roundtrip_encrypted(tmp_path):
    key = Fernet.generate_key().decode("utf-8")
    path = tmp_path / "creds.enc.json"
    FileCredentialStore(str(path), encryption_key=key).set("alice", Credential(ACCESS))

    raw = path.read_text(encoding="utf-8")
    assert raw.startswith("ENC:")
    assert ACCESS not in raw
    assert FileCredentialStore(str(path), encryption_key=key).get("alice").access_token == ACCESS


def test_file_store_encrypted_requires_key(tmp_path):
    key = Fernet.generate_key().decode("utf-8")
    path = tmp_path / "creds.enc.json"
    FileCredentialStore(str(path), encryption_key=key).set("alice", Credential(ACCESS))
    with pytest.raises(CredentialStoreError):
        FileCredentialStore(str(path)).get("alice")


def test_file_store_rejects_non_object(tmp_path):
    path = tmp_path / "creds.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(CredentialStoreError):
        FileCredentialStore(str(path)).get("alice")


def test_file_store_ignores_blank_token(tmp_path):
    path = tmp_path / "creds.json"
    path.write_text(json.dumps({"alice": {"access_token": "  "}}), encoding="utf-8")
    assert FileCredentialStore(str(path)).get("alice") is None


def test_rest_store_requires_configuration():
    with pytest.raises(ConfigurationError):
        RestCredentialStore(StoreSettings())


def test_rest_store_get_reads_row(monkeypatch):
    called = {}

    def fake_get(url, params, headers, timeout):
        called.update(url=url, params=params, headers=headers)
        return DummyResponse(payload=[{"personal_auth_token": f" {ACCESS} ", "recaptcha_token": ""}])

    monkeypatch.setattr("media_relay.store.requests.get", fake_get)

    credential = _rest_store().get("user-1")
    assert credential.access_token == ACCESS
    assert credential.recaptcha_token is None
    assert called["url"] == "https://db.example/rest/v1/users"
    assert called["params"]["id"] == "eq.user-1"
    assert called["headers"]["apikey"] == "service-key"


def test_rest_store_get_missing_row(monkeypatch):
    monkeypatch.setattr("media_relay.store.requests.get", lambda *a, **k: DummyResponse(payload=[]))
    assert _rest_store().get("user-1") is None


@pytest.mark.parametrize(
    "behaviour",
    [
        lambda *a, **k: DummyResponse(status_code=500, text="db down"),
        lambda *a, **k: DummyResponse(status_code=200, payload=None, text="<html>"),
    ],
)
def test_rest_store_get_failures_raise(monkeypatch, behaviour):
    monkeypatch.setattr("media_relay.store.requests.get", behaviour)
    with pytest.raises(CredentialStoreError):
        _rest_store().get("user-1")


def test_rest_store_get_network_error_raises(monkeypatch):
    def fake_get(*args, **kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr("media_relay.store.requests.get", fake_get)
    with pytest.raises(CredentialStoreError):
        _rest_store().get("user-1")


def test_rest_store_set_patches_row(monkeypatch):
    called = {}

    def fake_patch(url, params, headers, json, timeout):
        called.update(url=url, params=params, json=json)
        return DummyResponse(status_code=204)

    monkeypatch.setattr("media_relay.store.requests.patch", fake_patch)

    _rest_store().set("user-1", Credential(ACCESS, recaptcha_token="rc"))
    assert called["params"] == {"id": "eq.user-1"}
    assert called["json"] == {"personal_auth_token": ACCESS, "recaptcha_token": "rc"}
