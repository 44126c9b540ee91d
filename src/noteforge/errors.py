"""
Error taxonomy for the ask pipeline.

`AskError` subclasses carry the API error code and HTTP status they surface as.
`ProviderError` subclasses describe failures of the language-model provider and
never reach the caller directly; the orchestrator maps them onto `AskError`.
"""
from __future__ import annotations

from typing import Any


class AskError(Exception):
    """Base class for errors surfaced through the uniform error envelope."""

    code = "INTERNAL_ERROR"
    status_code = 500
    # search_errors source recorded for the failure: database, llm or unknown.
    source = "database"

    def __init__(self, message: str, *, details: Any = None, source: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if source is not None:
            self.source = source

    def to_envelope(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}


class InvalidRequestError(AskError):
    """Malformed scope or question. Caller's fault, never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400
    source = "unknown"


class NotFoundError(AskError):
    """The scope target does not exist for this owner."""

    code = "NOT_FOUND"
    status_code = 404
    source = "unknown"


class RateLimitedError(AskError):
    """The provider throttled the request; the caller may retry with backoff."""

    code = "RATE_LIMITED"
    status_code = 429
    source = "llm"

    def __init__(self, message: str, *, retry_after_s: float | None = None, details: Any = None):
        super().__init__(message, details=details)
        self.retry_after_s = retry_after_s


class InternalError(AskError):
    """Provider outage, malformed model output or an unexpected failure."""

    code = "INTERNAL_ERROR"
    status_code = 500


class NotAllowedError(AskError):
    """No authenticated owner on the request."""

    code = "NOT_ALLOWED"
    status_code = 401
    source = "unknown"


class ServiceUnavailableError(AskError):
    """The ask pipeline could not be initialised, e.g. the provider is not configured."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class ProviderError(Exception):
    """Base class for language-model provider failures."""

    source = "llm"


class ProviderConfigError(ProviderError):
    """Missing API key, unknown provider or unusable model parameters."""


class ProviderAuthError(ProviderError):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ProviderRateLimitError(ProviderError):
    def __init__(self, message: str, retry_after_s: float | None = None):
        super().__init__(message)
        self.retry_after_s = retry_after_s


class ProviderTimeoutError(ProviderError):
    pass


class ProviderUpstreamError(ProviderError):
    """5xx responses, connection failures and malformed completion envelopes."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status

