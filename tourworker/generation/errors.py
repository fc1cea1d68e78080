"""
Error taxonomy for walkthrough generation.

Caller errors subclass the builtins the routes already map to HTTP codes
(ValueError → 400, LookupError → 404, PermissionError → 403). Provider and
storage errors are classified as transient (retried by the executor) or
rejected (fail the unit immediately).
"""

from typing import Optional


class GenerationError(Exception):
    """Base class for everything raised by the generation engine."""

    label = "Generation error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        # Filled in by the executor once it gives up on a unit
        self.attempts: Optional[int] = None

    def describe(self) -> str:
        message = str(self)
        return f"{self.label}: {message}" if message else self.label


# ── Caller errors ────────────────────────────────────────────────────────────

class ValidationError(GenerationError, ValueError):
    label = "Invalid request"


class NotFoundError(GenerationError, LookupError):
    label = "Not found"


class ForbiddenError(GenerationError, PermissionError):
    label = "Forbidden"


class ConflictError(GenerationError):
    label = "Conflict"


# ── Provider errors ──────────────────────────────────────────────────────────

class ProviderError(GenerationError):
    label = "Provider error"


class ProviderTransientError(ProviderError):
    label = "Provider temporarily unavailable"


class ProviderTimeout(ProviderTransientError):
    label = "Provider timed out"


class ProviderRateLimited(ProviderTransientError):
    label = "Provider rate limit exceeded"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderRejectedError(ProviderError):
    label = "Provider rejected the request"


# ── Pipeline errors ──────────────────────────────────────────────────────────

class StorageError(GenerationError):
    label = "Storage error"


class CompositionError(GenerationError):
    label = "Composition failed"


# Errors the executor retries with backoff
TRANSIENT_ERRORS = (ProviderTransientError, StorageError)


def describe_error(exc: BaseException) -> str:
    """Human-readable error string recorded on a unit or job."""
    if isinstance(exc, GenerationError):
        return exc.describe()
    message = str(exc) or exc.__class__.__name__
    return f"Unexpected error: {message}"
