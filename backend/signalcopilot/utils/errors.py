"""
Exception taxonomy for Signal Copilot.

Every error carries a message and a ``details`` dict. ``retryable`` marks
the failures the task queue should retry: transient storage problems and
jobs that explicitly ask for it.
"""

from typing import Any, Dict, Optional


class SignalCopilotError(Exception):
    """Root of the package's exceptions."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


def is_retryable(exc: BaseException) -> bool:
    return getattr(exc, "retryable", False)


# --- storage -----------------------------------------------------------------

class DatabaseError(SignalCopilotError):
    """A read or write against the store failed; usually transient."""

    retryable = True


class RecordNotFoundError(DatabaseError):
    retryable = False


class DuplicateRecordError(DatabaseError):
    """Natural-key collision, e.g. a user holding the same ticker twice."""

    retryable = False


# --- input -------------------------------------------------------------------

class ValidationError(SignalCopilotError):
    """Malformed ingestion, holding or profile payload."""


class InvalidEventCategoryError(ValidationError):
    """Value is not one of the event categories."""


# --- collaborators -----------------------------------------------------------

class ExternalServiceError(SignalCopilotError):
    pass


class NewsProviderError(ExternalServiceError):
    """A news provider call failed. Ingestion retries these per provider."""

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider


# --- task queue --------------------------------------------------------------

class JobError(SignalCopilotError):
    pass


class RetryableJobError(JobError):
    """Raised by a handler to ask for another attempt."""

    retryable = True


class UnknownJobKindError(JobError):
    """No handler registered for the submitted job kind."""


class ConfigurationError(SignalCopilotError):
    pass
