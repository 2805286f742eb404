"""media-relay package."""

from .cache import TokenCache
from .client import MediaRelayClient
from .config import DispatcherConfig, EndpointRegistry, EndpointSpec, StoreSettings, UpstreamSettings, ValidatorSettings
from .dispatcher import RequestDispatcher
from .extractor import TokenExtractor, extract_token, extract_token_details
from .models import Credential
from .recaptcha import RecaptchaValidator
from .results import DispatchOutcome, ExtractionResult, ValidationVerdict
from .store import CredentialStore, FileCredentialStore, MemoryCredentialStore, RestCredentialStore

__all__ = [
    "Credential",
    "CredentialStore",
    "DispatchOutcome",
    "DispatcherConfig",
    "EndpointRegistry",
    "EndpointSpec",
    "ExtractionResult",
    "FileCredentialStore",
    "MediaRelayClient",
    "MemoryCredentialStore",
    "RecaptchaValidator",
    "RequestDispatcher",
    "RestCredentialStore",
    "StoreSettings",
    "TokenCache",
    "TokenExtractor",
    "UpstreamSettings",
    "ValidationVerdict",
    "ValidatorSettings",
    "extract_token",
    "extract_token_details",
]
