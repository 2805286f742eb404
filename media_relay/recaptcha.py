"""reCAPTCHA Enterprise assessment client.

A verdict is only meaningful for the dispatch it was produced for: the
authority marks the token consumed on first assessment, so a second
``validate`` call for the same token will not succeed again.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from .config import ValidatorSettings
from .results import (
    REASON_ACTION_MISMATCH,
    REASON_EXCEPTION,
    REASON_HTTP_ERROR,
    REASON_INVALID_TOKEN,
    REASON_NO_TOKEN,
    ValidationVerdict,
)
from .security_utils import mask_token

logger = logging.getLogger(__name__)


def is_authority_failure(verdict: ValidationVerdict) -> bool:
    """True when the authority could not assess the token, as opposed to rejecting it."""
    return not verdict.valid and verdict.reason in (REASON_HTTP_ERROR, REASON_EXCEPTION)


def verdict_from_assessment(data: Any, expected_action: str, score_threshold: float = 0.3) -> ValidationVerdict:
    """Turn an authority assessment payload into a verdict; pure, no I/O."""
    if not isinstance(data, dict):
        return ValidationVerdict(valid=False, reason=REASON_EXCEPTION, detail="Assessment body is not an object")

    props = data.get("tokenProperties")
    if not isinstance(props, dict) or not props.get("valid"):
        reason = props.get("invalidReason") if isinstance(props, dict) else None
        reason = str(reason or REASON_INVALID_TOKEN)
        logger.error("reCAPTCHA token invalid: %s", reason)
        return ValidationVerdict(valid=False, reason=reason)

    action = str(props.get("action") or "")
    if action != expected_action:
        logger.error("reCAPTCHA action mismatch: got %r, expected %r", action, expected_action)
        return ValidationVerdict(valid=False, action=action, reason=REASON_ACTION_MISMATCH)

    risk = data.get("riskAnalysis")
    if not isinstance(risk, dict):
        risk = {}
    try:
        score = float(risk.get("score") or 0.0)
    except (TypeError, ValueError):
        score = 0.0
    if score < score_threshold:
        # Low scores are reported, not rejected.
        logger.warning("reCAPTCHA score %.2f below threshold %.2f for action %s", score, score_threshold, action)
    else:
        logger.info("reCAPTCHA token valid, score %.2f", score)
    return ValidationVerdict(valid=True, score=score, action=action)


class RecaptchaValidator:
    def __init__(self, settings: ValidatorSettings | None = None) -> None:
        self.settings = settings or ValidatorSettings.from_env()
        if not self.settings.api_key:
            logger.warning("No assessment API key configured; the authority will likely refuse requests")

    def _request_body(self, token: str, expected_action: str) -> dict:
        return {
            "event": {
                "token": token,
                "expectedAction": expected_action,
                "siteKey": self.settings.site_key,
            }
        }

    def validate(self, token: str, expected_action: str) -> ValidationVerdict:
        if not isinstance(token, str) or not token.strip():
            return ValidationVerdict(valid=False, reason=REASON_NO_TOKEN)
        token = token.strip()

        logger.info("Validating reCAPTCHA token %s for action %s", mask_token(token), expected_action)
        params = {"key": self.settings.api_key} if self.settings.api_key else None
        try:
            response = requests.post(
                self.settings.assessment_url,
                params=params,
                json=self._request_body(token, expected_action),
                headers={"Content-Type": "application/json"},
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.error("reCAPTCHA assessment call failed: %s", exc)
            return ValidationVerdict(valid=False, reason=REASON_EXCEPTION, detail=str(exc))

        if not 200 <= response.status_code < 300:
            return ValidationVerdict(
                valid=False,
                reason=REASON_HTTP_ERROR,
                status_code=response.status_code,
                detail=response.text[:400],
            )

        try:
            data = response.json()
        except ValueError:
            return ValidationVerdict(
                valid=False,
                reason=REASON_EXCEPTION,
                status_code=response.status_code,
                detail="Assessment response is not JSON",
            )
        return verdict_from_assessment(data, expected_action, self.settings.score_threshold)
