"""Error taxonomy shared by the executor, normalizer and HTTP layer."""
from __future__ import annotations

from typing import Any, Dict, Optional


class MediaRelayError(Exception):
    """Base class for failures that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class InputError(MediaRelayError):
    status_code = 400


class AdmissionRejected(MediaRelayError):
    status_code = 429


class LaunchError(MediaRelayError):
    """The extractor process could not be started at all."""


class ExtractionFailure(MediaRelayError):
    """The extractor ran but exited with a nonzero code."""


class EmptyOutput(MediaRelayError):
    pass


class MalformedOutput(MediaRelayError):
    pass


class StreamInterrupted(MediaRelayError):
    """Failure after response headers were committed; only the body can end early."""


class ConfigError(Exception):
    pass


class ExtractorNotFound(ConfigError):
    pass
