"""Single integration point for every upstream media-generation call.

A dispatch resolves which credential to use, attaches the bearer token, the
calling-application identity headers the upstream insists on, and the
reCAPTCHA assertion where the endpoint contract wants it, forwards the call
once, and classifies the answer into a :class:`DispatchOutcome`.  Nothing
raised below this module crosses :meth:`RequestDispatcher.dispatch`.

Concurrent dispatches that share a credential are not serialized here; a
reCAPTCHA token is single-use, so callers that need "mint once, use once"
must queue per user themselves.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Callable
from typing import Any

import requests

from .cache import TokenCache
from .config import PLACEMENT_BODY, PLACEMENT_HEADER, PLACEMENT_NONE, DispatcherConfig, EndpointSpec
from .exceptions import DispatchCancelled
from .media import read_path, remove_path, set_path
from .models import Credential
from .recaptcha import RecaptchaValidator, is_authority_failure
from .results import (
    AUTH_REJECTED,
    CANCELLED,
    MALFORMED_RESPONSE,
    NETWORK_ERROR,
    NO_CREDENTIAL,
    REASON_EXCEPTION,
    RECAPTCHA_INVALID,
    RECAPTCHA_REQUIRED,
    STATUS_OK,
    UPSTREAM_ERROR,
    DispatchOutcome,
    ValidationVerdict,
)
from .security_utils import mask_token, redact_headers
from .store import CredentialStore
from .transport import UpstreamResponse, send_upstream

logger = logging.getLogger(__name__)

VerificationPrompter = Callable[[], str]
StatusCallback = Callable[[str], None]

CHECKPOINT_RESOLVING = "resolving credentials"
CHECKPOINT_DISPATCHING = "dispatching"
CHECKPOINT_COMPLETE = "complete"

SOURCE_EXPLICIT = "explicit"
SOURCE_STORE = "store"
SOURCE_CACHE = "cache"
SOURCE_LOCAL = "local"

RECAPTCHA_MARKERS = (
    "recaptcha_required",
    "invalid_recaptcha",
    "recaptcha_validation_failed",
    "recaptcha evaluation failed",
)


def has_recaptcha_marker(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in RECAPTCHA_MARKERS)


def _error_message(body: Any, status_code: int) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return f"API Error {status_code}"


class RequestDispatcher:
    def __init__(
        self,
        store: CredentialStore,
        user_id: str,
        config: DispatcherConfig | None = None,
        validator: RecaptchaValidator | None = None,
        local_store: CredentialStore | None = None,
        prompter: VerificationPrompter | None = None,
        token_cache: TokenCache | None = None,
        consumed_recaptcha: TokenCache | None = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.config = config or DispatcherConfig()
        self.validator = validator
        self.local_store = local_store
        self.prompter = prompter
        self.token_cache = token_cache if token_cache is not None else TokenCache(self.config.cache_ttl_seconds)
        self.consumed_recaptcha = (
            consumed_recaptcha if consumed_recaptcha is not None else TokenCache(self.config.recaptcha_ttl_seconds)
        )

    def for_user(self, user_id: str) -> RequestDispatcher:
        return RequestDispatcher(
            store=self.store,
            user_id=user_id,
            config=self.config,
            validator=self.validator,
            local_store=self.local_store,
            prompter=self.prompter,
            token_cache=self.token_cache,
            consumed_recaptcha=self.consumed_recaptcha,
        )

    # ── credential resolution ────────────────────────────────────────────────

    def resolve_credential(self, explicit_token: str | Credential | None = None) -> tuple[Credential | None, str | None]:
        """Return the credential to use and where it came from.

        Explicit token, then a fresh store read, then the in-memory cache, then
        the persisted local store.  The store is always read before the cache:
        the reCAPTCHA half of a stored credential goes stale within minutes.
        """
        if isinstance(explicit_token, Credential) and explicit_token.access_token.strip():
            return explicit_token, SOURCE_EXPLICIT
        if isinstance(explicit_token, str) and explicit_token.strip():
            return Credential(access_token=explicit_token.strip()), SOURCE_EXPLICIT

        try:
            fresh = self.store.get(self.user_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Credential store lookup failed for user %s: %s", self.user_id, exc)
            fresh = None
        if fresh is not None and fresh.access_token:
            # Only the access token is worth keeping; reCAPTCHA tokens are single-use.
            self.token_cache.put(self.user_id, fresh.without_recaptcha())
            return fresh, SOURCE_STORE

        cached = self.token_cache.get(self.user_id)
        if cached is not None:
            return cached, SOURCE_CACHE

        if self.local_store is not None:
            try:
                local = self.local_store.get(self.user_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Local credential fallback failed for user %s: %s", self.user_id, exc)
                local = None
            if local is not None and local.access_token:
                return local, SOURCE_LOCAL

        return None, None

    @staticmethod
    def _body_recaptcha(endpoint: EndpointSpec, body: Any) -> str | None:
        if endpoint.recaptcha_placement == PLACEMENT_NONE or not isinstance(body, dict):
            return None
        value = read_path(body, endpoint.recaptcha_body_path)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def _take_recaptcha(self, credential: Credential, endpoint: EndpointSpec, body_token: str | None) -> str | None:
        if endpoint.recaptcha_placement == PLACEMENT_NONE:
            return None

        token = None
        for candidate in (credential.recaptcha_token, body_token):
            if not candidate:
                continue
            if candidate in self.consumed_recaptcha:
                logger.warning("reCAPTCHA token %s was already sent once; not reusing it", mask_token(candidate))
                continue
            token = candidate
            break

        if token is None and endpoint.requires_recaptcha and self.prompter is not None:
            token = (self.prompter() or "").strip() or None
        return token

    # ── request shaping ──────────────────────────────────────────────────────

    def build_url(self, service_type: str, relative_path: str, server_override: str | None = None) -> str:
        server = (server_override or self.config.upstream.server_url).rstrip("/")
        return f"{server}/api/{service_type}{relative_path}"

    def build_headers(self, access_token: str) -> dict[str, str]:
        upstream = self.config.upstream
        # The upstream only answers calls that look like they come from its own web app.
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {access_token}",
            "Origin": upstream.origin,
            "Referer": upstream.referer,
            "User-Agent": upstream.user_agent,
        }

    def attach_recaptcha(
        self,
        endpoint: EndpointSpec,
        headers: dict[str, str],
        body: Any,
        token: str,
    ) -> tuple[dict[str, str], Any]:
        placement = endpoint.recaptcha_placement
        if placement == PLACEMENT_BODY and not isinstance(body, dict):
            logger.warning("Body for %s is not an object; sending reCAPTCHA as a header", endpoint.relative_path)
            placement = PLACEMENT_HEADER
        if placement == PLACEMENT_BODY:
            return headers, set_path(body, endpoint.recaptcha_body_path, token)
        headers = dict(headers)
        headers[endpoint.recaptcha_header] = token
        return headers, body

    def _timeout_for(self, endpoint: EndpointSpec) -> float:
        if endpoint.timeout_seconds is not None:
            return endpoint.timeout_seconds
        if endpoint.is_status_check:
            return self.config.upstream.status_timeout_seconds
        return self.config.upstream.timeout_seconds

    # ── dispatch ─────────────────────────────────────────────────────────────

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
        self._notify(status_callback, CHECKPOINT_RESOLVING)
        try:
            return self._dispatch(
                relative_path,
                service_type,
                body,
                log_context,
                explicit_token,
                status_callback,
                server_override,
                cancel_event,
            )
        finally:
            self._notify(status_callback, CHECKPOINT_COMPLETE)

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
        event = cancel_event or threading.Event()
        try:
            return await asyncio.to_thread(
                self.dispatch,
                relative_path,
                service_type,
                body,
                log_context,
                explicit_token,
                status_callback,
                server_override,
                event,
            )
        except asyncio.CancelledError:
            # Stops the worker thread at its next chunk and releases the connection.
            event.set()
            raise

    def _dispatch(
        self,
        relative_path: str,
        service_type: str,
        body: Any,
        log_context: str,
        explicit_token: str | Credential | None,
        status_callback: StatusCallback | None,
        server_override: str | None,
        cancel_event: threading.Event | None,
    ) -> DispatchOutcome:
        endpoint = self.config.endpoints.resolve(service_type, relative_path)
        credential, source = self.resolve_credential(explicit_token)
        if credential is None:
            logger.warning("[%s] no credential available for user %s", log_context, self.user_id)
            return DispatchOutcome.failure(NO_CREDENTIAL, "No active session token found; import a token first")
        logger.info("[%s] using %s credential %s", log_context, source, mask_token(credential.access_token))

        body_token = self._body_recaptcha(endpoint, body)
        try:
            recaptcha = self._take_recaptcha(credential, endpoint, body_token)
        except Exception as exc:  # noqa: BLE001
            logger.warning("[%s] verification prompt did not produce a token: %s", log_context, exc)
            return DispatchOutcome.failure(
                RECAPTCHA_REQUIRED,
                f"Verification was not completed: {exc}",
                credential_source=source,
            )

        verdict: ValidationVerdict | None = None
        if recaptcha and endpoint.prevalidate and self.validator is not None:
            self.consumed_recaptcha.put(recaptcha, True)
            try:
                verdict = self.validator.validate(recaptcha, endpoint.expected_action)
            except Exception as exc:  # noqa: BLE001
                verdict = ValidationVerdict(valid=False, reason=REASON_EXCEPTION, detail=str(exc))
            if not verdict.valid and is_authority_failure(verdict):
                # Unassessed tokens stay usable.
                self.consumed_recaptcha.pop(recaptcha)
                logger.error("[%s] reCAPTCHA authority unavailable: %s", log_context, verdict.detail or verdict.reason)
                kind = NETWORK_ERROR if verdict.status_code is None else UPSTREAM_ERROR
                return DispatchOutcome.failure(
                    kind,
                    f"Verification service unavailable: {verdict.reason}",
                    body={"error": "RECAPTCHA_ASSESSMENT_UNAVAILABLE", "details": verdict.to_dict()},
                    http_status=verdict.status_code or 0,
                    credential_source=source,
                    verdict=verdict,
                )
            if not verdict.valid:
                logger.warning("[%s] reCAPTCHA rejected before dispatch: %s", log_context, verdict.reason)
                return DispatchOutcome.failure(
                    RECAPTCHA_INVALID,
                    f"Verification rejected: {verdict.reason}",
                    body={"error": "RECAPTCHA_VALIDATION_FAILED", "details": verdict.to_dict()},
                    credential_source=source,
                    verdict=verdict,
                )

        headers = self.build_headers(credential.access_token)
        if body_token and body_token != recaptcha:
            # Only the chosen token may reach the wire.
            body = remove_path(body, endpoint.recaptcha_body_path)
        if recaptcha:
            try:
                headers, body = self.attach_recaptcha(endpoint, headers, body, recaptcha)
            except ValueError as exc:
                return DispatchOutcome.failure(UPSTREAM_ERROR, f"Could not attach verification: {exc}", credential_source=source)
            self.consumed_recaptcha.put(recaptcha, True)

        url = self.build_url(service_type, relative_path, server_override)
        method = endpoint.method
        params = body if method == "GET" and isinstance(body, dict) else None
        self._notify(status_callback, CHECKPOINT_DISPATCHING)
        logger.info("[%s] %s %s headers=%s", log_context, method, url, json.dumps(redact_headers(headers)))
        try:
            response = send_upstream(
                url,
                headers,
                None if method == "GET" else body,
                method=method,
                params=params,
                timeout_seconds=self._timeout_for(endpoint),
                chunk_size=self.config.upstream.chunk_size,
                cancel_event=cancel_event,
            )
        except DispatchCancelled as exc:
            logger.info("[%s] cancelled: %s", log_context, exc)
            return DispatchOutcome.failure(CANCELLED, str(exc), credential_source=source, verdict=verdict)
        except requests.RequestException as exc:
            logger.error("[%s] network error: %s", log_context, exc)
            return DispatchOutcome.failure(NETWORK_ERROR, str(exc), credential_source=source, verdict=verdict)
        except Exception as exc:  # noqa: BLE001
            logger.exception("[%s] unexpected transport failure", log_context)
            return DispatchOutcome.failure(NETWORK_ERROR, str(exc), credential_source=source, verdict=verdict)

        outcome = self.classify(response, endpoint, recaptcha_attached=bool(recaptcha))
        outcome.credential_source = source
        outcome.verdict = verdict
        logger.info("[%s] finished with %s (HTTP %s)", log_context, outcome.status, outcome.http_status)
        return outcome

    def classify(self, response: UpstreamResponse, endpoint: EndpointSpec, recaptcha_attached: bool) -> DispatchOutcome:
        text = response.text
        if response.ok and not endpoint.expects_json:
            return DispatchOutcome(status=STATUS_OK, body=response.content, http_status=response.status_code)

        try:
            parsed = json.loads(text)
            malformed = False
        except ValueError:
            parsed = {"error": text[:400]}
            malformed = True

        if response.ok:
            if malformed:
                logger.warning("Upstream answered HTTP %s with a non-JSON body", response.status_code)
                return DispatchOutcome.failure(
                    MALFORMED_RESPONSE,
                    f"Server Error ({response.status_code}): response is not JSON",
                    body=parsed,
                    http_status=response.status_code,
                )
            return DispatchOutcome(status=STATUS_OK, body=parsed, http_status=response.status_code)

        message = _error_message(parsed, response.status_code)
        if response.status_code == 401:
            return DispatchOutcome.failure(AUTH_REJECTED, message, body=parsed, http_status=401)
        if response.status_code == 403 or has_recaptcha_marker(text):
            kind = RECAPTCHA_INVALID if recaptcha_attached else RECAPTCHA_REQUIRED
            return DispatchOutcome.failure(kind, message, body=parsed, http_status=response.status_code)
        return DispatchOutcome.failure(UPSTREAM_ERROR, message, body=parsed, http_status=response.status_code)

    @staticmethod
    def _notify(callback: StatusCallback | None, checkpoint: str) -> None:
        if callback is None:
            return
        try:
            callback(checkpoint)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Status callback failed at %r: %s", checkpoint, exc)
