"""Pipeline error taxonomy.

Source failures are classified once, where the connector sees the transport
error, so the coordinator can branch on `kind` instead of sniffing messages.
"""

from __future__ import annotations

import enum
from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(PipelineError):
    """The pipeline is not set up (credentials, API keys, schema). Raised before any lock is taken."""


class SourceErrorKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    AUTH_FAILURE = "auth_failure"
    OTHER = "other"


class SourceError(PipelineError):
    kind: SourceErrorKind = SourceErrorKind.OTHER

    @property
    def retryable(self) -> bool:
        return self.kind in (SourceErrorKind.RATE_LIMITED, SourceErrorKind.TIMEOUT)


class RateLimitedError(SourceError):
    kind = SourceErrorKind.RATE_LIMITED

    def __init__(self, message: str = "Source rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class SourceTimeoutError(SourceError):
    kind = SourceErrorKind.TIMEOUT


class SourceAuthError(SourceError):
    kind = SourceErrorKind.AUTH_FAILURE


class ExtractionError(PipelineError):
    """The extractor reported a failure in its result metadata."""
