from __future__ import annotations

import logging
import os
import threading
from typing import Any

from .config import DispatcherConfig
from .dispatcher import RequestDispatcher, StatusCallback, VerificationPrompter
from .exceptions import ExtractionError, MalformedUpstreamResponse
from .extractor import TokenExtractor
from .media import bind_media, extract_media_id
from .models import Credential
from .recaptcha import RecaptchaValidator
from .results import MALFORMED_RESPONSE, DispatchOutcome, ExtractionResult, ValidationVerdict
from .store import CredentialStore

logger = logging.getLogger(__name__)


class MediaRelayClient:
    """Stable library API for programmatic access to media-relay."""

    def __init__(
        self,
        store: CredentialStore,
        user_id: str,
        config: DispatcherConfig | None = None,
        validator: RecaptchaValidator | None = None,
        local_store: CredentialStore | None = None,
        prompter: VerificationPrompter | None = None,
        extractor: TokenExtractor | None = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.validator = validator
        self.extractor = extractor or TokenExtractor()
        self.dispatcher = RequestDispatcher(
            store=store,
            user_id=user_id,
            config=config,
            validator=validator,
            local_store=local_store,
            prompter=prompter,
        )

    def extract_token(self, data: bytes | str) -> ExtractionResult:
        return self.extractor.extract_details(data)

    def extract_token_file(self, path: str) -> ExtractionResult:
        return self.extractor.extract_file(path)

    def import_token(self, source: str, recaptcha_token: str | None = None, user_id: str | None = None) -> Credential:
        """Extract a token from a file path (or raw text) and save it for the user."""
        if os.path.isfile(source):
            result = self.extract_token_file(source)
        else:
            result = self.extract_token(source)
        if not result.found:
            raise ExtractionError("No access token found in the supplied material")
        credential = Credential(access_token=str(result.token), recaptcha_token=(recaptcha_token or None))
        target = user_id or self.user_id
        self.store.set(target, credential)
        logger.info("Imported token for user %s via %s", target, result.method)
        return credential

    def validate(self, token: str, expected_action: str) -> ValidationVerdict:
        validator = self.validator or RecaptchaValidator()
        return validator.validate(token, expected_action)

    def dispatch(
        self,
        relative_path: str,
        service_type: str,
        body: Any,
        log_context: str,
        explicit_token: str | Credential | None = None,
        status_callback: StatusCallback | None = None,
        server_override: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DispatchOutcome:
        return self.dispatcher.dispatch(
            relative_path,
            service_type,
            body,
            log_context,
            explicit_token=explicit_token,
            status_callback=status_callback,
            server_override=server_override,
            cancel_event=cancel_event,
        )

    async def dispatch_async(
        self,
        relative_path: str,
        service_type: str,
        body: Any,
        log_context: str,
        explicit_token: str | Credential | None = None,
        status_callback: StatusCallback | None = None,
        server_override: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DispatchOutcome:
        return await self.dispatcher.dispatch_async(
            relative_path,
            service_type,
            body,
            log_context,
            explicit_token=explicit_token,
            status_callback=status_callback,
            server_override=server_override,
            cancel_event=cancel_event,
        )

    def upload_and_bind(
        self,
        service_type: str,
        upload_body: Any,
        follow_up_path: str,
        follow_up_body: dict[str, Any],
        media_field_path: str,
        log_context: str,
        explicit_token: str | Credential | None = None,
        status_callback: StatusCallback | None = None,
        server_override: str | None = None,
    ) -> DispatchOutcome:
        """Upload an asset, bind its media id into *follow_up_body* and dispatch that."""
        upload = self.dispatch(
            "/upload",
            service_type,
            upload_body,
            f"{log_context} UPLOAD",
            explicit_token=explicit_token,
            status_callback=status_callback,
            server_override=server_override,
        )
        if not upload.ok:
            return upload

        endpoint = self.dispatcher.config.endpoints.resolve(service_type, "/upload")
        try:
            media_id = extract_media_id(upload.body, endpoint, status_code=upload.http_status)
        except MalformedUpstreamResponse as exc:
            logger.warning("[%s] %s", log_context, exc)
            return DispatchOutcome.failure(
                MALFORMED_RESPONSE,
                str(exc),
                body=upload.body,
                http_status=exc.status_code,
                credential_source=upload.credential_source,
            )

        return self.dispatch(
            follow_up_path,
            service_type,
            bind_media(follow_up_body, media_id, media_field_path),
            log_context,
            explicit_token=explicit_token,
            status_callback=status_callback,
            server_override=server_override,
        )
