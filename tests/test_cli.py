import json

import pytest

from media_relay import cli
from media_relay.transport import UpstreamResponse

ACCESS = "ya29.stored_access_token_0001"


def test_extract_command_masks_token(tmp_path, monkeypatch, capsys):
    export = tmp_path / "dump.txt"
    export.write_text(f"noise {ACCESS} noise", encoding="utf-8")
    monkeypatch.setattr("sys.argv", ["media-relay", "extract", "--file", str(export)])

    cli.main()
    data = json.loads(capsys.readouterr().out)
    assert data["found"] is True
    assert data["method"] == "direct-scan"
    assert data["token"] == "...n_0001"


def test_extract_command_show_token_ndjson(tmp_path, monkeypatch, capsys):
    export = tmp_path / "dump.txt"
    export.write_text(ACCESS, encoding="utf-8")
    monkeypatch.setattr(
        "sys.argv", ["media-relay", "--format", "ndjson", "extract", "--file", str(export), "--show-token"]
    )

    cli.main()
    out = capsys.readouterr().out
    assert out.count("\n") == 1
    assert json.loads(out)["token"] == ACCESS


def test_extract_command_missing_file_exits(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["media-relay", "extract", "--file", str(tmp_path / "missing.txt")])
    with pytest.raises(SystemExit) as exc:
        cli.main()
    assert exc.value.code == 1
    assert json.loads(capsys.readouterr().out)["found"] is False


def test_import_token_writes_credential_file(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("MEDIA_RELAY_ENCRYPTION_KEY", raising=False)
    export = tmp_path / "cookies.json"
    export.write_text(json.dumps({"accessToken": ACCESS}), encoding="utf-8")
    cred_file = tmp_path / "creds.json"
    monkeypatch.setattr(
        "sys.argv",
        [
            "media-relay",
            "import-token",
            "--file",
            str(export),
            "--user-id",
            "alice",
            "--credential-file",
            str(cred_file),
            "--no-encrypt",
        ],
    )

    cli.main()
    data = json.loads(capsys.readouterr().out)
    assert data["imported"] is True
    assert ACCESS not in json.dumps(data)
    assert json.loads(cred_file.read_text(encoding="utf-8"))["alice"]["access_token"] == ACCESS


def test_dispatch_command_uses_explicit_token(tmp_path, monkeypatch, capsys):
    body_file = tmp_path / "body.json"
    body_file.write_text(json.dumps({"operations": [{"name": "op-1"}]}), encoding="utf-8")
    called = {}

    def fake_send(url, headers, body=None, **kwargs):
        called.update(url=url, headers=headers, body=body)
        return UpstreamResponse(status_code=200, content=b'{"operations": []}')

    monkeypatch.setattr("media_relay.dispatcher.send_upstream", fake_send)
    monkeypatch.setattr(
        "sys.argv",
        [
            "media-relay",
            "dispatch",
            "--service",
            "veo",
            "--path",
            "/status",
            "--json-body-file",
            str(body_file),
            "--token",
            ACCESS,
            "--server",
            "http://localhost:9999",
            "--credential-file",
            str(tmp_path / "creds.json"),
            "--no-encrypt",
        ],
    )

    cli.main()
    data = json.loads(capsys.readouterr().out)
    assert data["status"] == "ok"
    assert data["credential_source"] == "explicit"
    assert called["url"] == "http://localhost:9999/api/veo/status"
    assert called["headers"]["Authorization"] == f"Bearer {ACCESS}"
    assert called["body"] == {"operations": [{"name": "op-1"}]}


def test_dispatch_command_without_credential_exits(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(
        "sys.argv",
        [
            "media-relay",
            "dispatch",
            "--service",
            "veo",
            "--path",
            "/status",
            "--credential-file",
            str(tmp_path / "creds.json"),
            "--no-encrypt",
        ],
    )
    with pytest.raises(SystemExit) as exc:
        cli.main()
    assert exc.value.code == 1
    assert json.loads(capsys.readouterr().out)["status"] == "auth_required"


def test_validate_command_prints_verdict(monkeypatch, capsys):
    class DummyResponse:
        status_code = 200
        text = ""

        def json(self):
            return {"tokenProperties": {"valid": True, "action": "PINHOLE_GENERATE"}, "riskAnalysis": {"score": 0.8}}

    monkeypatch.setattr("media_relay.recaptcha.requests.post", lambda *a, **k: DummyResponse())
    monkeypatch.setattr("sys.argv", ["media-relay", "validate", "--token", "rc-1", "--api-key", "k"])

    cli.main()
    data = json.loads(capsys.readouterr().out)
    assert data == {"valid": True, "score": 0.8, "action": "PINHOLE_GENERATE"}


def test_serve_command_passes_bind_options(monkeypatch):
    called = {}

    def fake_serve(host, port, api_token=None, validator=None):
        called.update(host=host, port=port, api_token=api_token)

    monkeypatch.setattr("media_relay.cli.serve_api", fake_serve)
    monkeypatch.setattr("sys.argv", ["media-relay", "serve", "--port", "4000", "--api-token", "secret"])

    cli.main()
    assert called == {"host": "127.0.0.1", "port": 4000, "api_token": "secret"}


def test_endpoints_command_lists_builtin_routes(monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["media-relay", "endpoints"])
    cli.main()
    data = json.loads(capsys.readouterr().out)
    paths = {(e["service"], e["path"]) for e in data["endpoints"]}
    assert ("veo", "/generate-t2v") in paths
    assert ("nanobanana", "/upload") in paths
    methods = {(e["service"], e["path"]): e["method"] for e in data["endpoints"]}
    assert methods[("veo", "/download-video")] == "GET"
    assert methods[("veo", "/status")] == "POST"
