from __future__ import annotations

import argparse
import json
import logging
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from .api_server import serve_api
from .client import MediaRelayClient
from .config import DEFAULT_ACTION, DispatcherConfig, EndpointRegistry, StoreSettings, UpstreamSettings, ValidatorSettings
from .crypto import KEY_ENV_VAR, load_or_create_key, resolve_key
from .exceptions import ExtractionError
from .extractor import TokenExtractor
from .recaptcha import RecaptchaValidator
from .security_utils import mask_token
from .store import CredentialStore, FileCredentialStore, RestCredentialStore

DEFAULT_STATE_DIR = Path.home() / ".media_relay"


def _tool_version() -> str:
    try:
        return version("media-relay-cli")
    except PackageNotFoundError:
        return "0.0.0"


def _emit(payload: dict, output_format: str) -> None:
    if output_format == "ndjson":
        print(json.dumps(payload, separators=(",", ":")))
        return
    print(json.dumps(payload, indent=2))


def _add_store_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--user-id", default="default")
    parser.add_argument("--store", choices=["file", "rest"], default="file")
    parser.add_argument("--credential-file", default=str(DEFAULT_STATE_DIR / "credentials.json"))
    parser.add_argument("--encryption-key", default=None)
    parser.add_argument("--encryption-key-env", default=KEY_ENV_VAR)
    parser.add_argument(
        "--no-encrypt",
        action="store_true",
        help="Keep the credential file in plain JSON when no key is given",
    )


def _build_stores(args: argparse.Namespace) -> tuple[CredentialStore, CredentialStore | None]:
    key = resolve_key(args.encryption_key, args.encryption_key_env)
    if key is None and not args.no_encrypt:
        key = load_or_create_key(str(DEFAULT_STATE_DIR / "key.txt"))
    file_store = FileCredentialStore(args.credential_file, encryption_key=key)
    if args.store == "rest":
        return RestCredentialStore(StoreSettings.from_env()), file_store
    return file_store, None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="media-relay",
        description=(
            "Extract your own media-generation session token from exported browser "
            "files and relay generation requests with it."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {_tool_version()}")
    parser.add_argument("--format", choices=["json", "ndjson"], default="json")
    parser.add_argument("--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    extract_parser = subparsers.add_parser("extract", help="Find an access token inside an exported file")
    extract_parser.add_argument("--file", required=True)
    extract_parser.add_argument("--show-token", action="store_true")

    import_parser = subparsers.add_parser("import-token", help="Extract a token from a file and save it")
    import_parser.add_argument("--file", required=True)
    import_parser.add_argument("--recaptcha-token", default=None)
    _add_store_args(import_parser)

    validate_parser = subparsers.add_parser("validate", help="Assess a reCAPTCHA token")
    validate_parser.add_argument("--token", required=True)
    validate_parser.add_argument("--action", default=DEFAULT_ACTION)
    validate_parser.add_argument("--api-key", default=None)

    dispatch_parser = subparsers.add_parser("dispatch", help="Send one request through the dispatcher")
    dispatch_parser.add_argument("--service", required=True, help="Service type, e.g. veo, imagen, nanobanana")
    dispatch_parser.add_argument("--path", required=True, help="Relative path, e.g. /generate-t2v")
    dispatch_parser.add_argument("--json-body-file", default=None)
    dispatch_parser.add_argument("--token", default=None, help="Explicit access token; skips the store")
    dispatch_parser.add_argument("--server", default=None)
    dispatch_parser.add_argument("--log-context", default="CLI DISPATCH")
    dispatch_parser.add_argument("--no-prevalidate", action="store_true")
    _add_store_args(dispatch_parser)

    serve_parser = subparsers.add_parser("serve", help="Run the local relay server")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=3001)
    serve_parser.add_argument("--api-token", default=None)

    subparsers.add_parser("endpoints", help="List known upstream endpoints")

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "extract":
        try:
            result = TokenExtractor().extract_file(args.file)
        except ExtractionError as exc:
            _emit({"found": False, "error": str(exc)}, args.format)
            raise SystemExit(1) from exc
        token = result.token
        if token and not args.show_token:
            token = mask_token(token)
        _emit({"found": result.found, "method": result.method, "token": token}, args.format)
        return

    if args.command == "import-token":
        store, _ = _build_stores(args)
        client = MediaRelayClient(store=store, user_id=args.user_id)
        try:
            credential = client.import_token(args.file, recaptcha_token=args.recaptcha_token)
        except ExtractionError as exc:
            _emit({"imported": False, "error": str(exc)}, args.format)
            raise SystemExit(1) from exc
        _emit({"imported": True, "user_id": args.user_id, "credential": credential.masked()}, args.format)
        return

    if args.command == "validate":
        validator = RecaptchaValidator(ValidatorSettings.from_env(api_key=args.api_key))
        verdict = validator.validate(args.token, args.action)
        _emit(verdict.to_dict(), args.format)
        return

    if args.command == "dispatch":
        body = {}
        if args.json_body_file:
            body = json.loads(Path(args.json_body_file).read_text(encoding="utf-8"))
        store, local_store = _build_stores(args)
        config = DispatcherConfig(upstream=UpstreamSettings.from_env(args.server))
        if args.no_prevalidate:
            config.endpoints.override(args.service, args.path, prevalidate=False)
        client = MediaRelayClient(
            store=store,
            user_id=args.user_id,
            config=config,
            validator=RecaptchaValidator(ValidatorSettings.from_env()),
            local_store=local_store,
        )
        outcome = client.dispatch(
            args.path,
            args.service,
            body,
            args.log_context,
            explicit_token=args.token,
            status_callback=lambda checkpoint: logging.getLogger("media_relay.cli").info("%s", checkpoint),
        )
        _emit(outcome.to_dict(), args.format)
        if not outcome.ok:
            raise SystemExit(1)
        return

    if args.command == "serve":
        serve_api(
            args.host,
            args.port,
            api_token=args.api_token,
            validator=RecaptchaValidator(ValidatorSettings.from_env()),
        )
        return

    if args.command == "endpoints":
        registry = EndpointRegistry.builtin()
        _emit(
            {
                "endpoints": [
                    {
                        "service": e.service_type,
                        "path": e.relative_path,
                        "method": e.method,
                        "recaptcha_placement": e.recaptcha_placement,
                        "prevalidate": e.prevalidate,
                        "upstream_url": e.upstream_url,
                    }
                    for e in registry.list_endpoints()
                ]
            },
            args.format,
        )
        return

    parser.error("Unknown command")


if __name__ == "__main__":
    main()
