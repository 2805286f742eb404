from __future__ import annotations


class MediaRelayError(Exception):
    """Base exception type for library consumers."""


class ConfigurationError(MediaRelayError):
    pass


class ExtractionError(MediaRelayError):
    """The uploaded artifact could not be read at all."""


class CredentialStoreError(MediaRelayError):
    pass


class MalformedUpstreamResponse(MediaRelayError):
    def __init__(self, message: str, status_code: int = 0, raw: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.raw = raw


class DispatchCancelled(MediaRelayError):
    pass


class RelayPolicyError(MediaRelayError):
    pass
