"""Custom exceptions for commerce_ingestor."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:  # pragma: no cover - type checking only
    from commerce_ingestor.tasks.error_handling import TaskErrorReport


class CommerceIngestorError(Exception):
    """Base exception for all commerce_ingestor errors.

    ``retryable`` tells callers whether waiting and trying again can help;
    ``action_required`` tells a human what to do about it.
    """

    retryable: bool = False
    action_required: str = "investigate"

    def as_dict(self) -> dict[str, Any]:
        """Return a serializable representation for API responses and logs."""

        return {
            "error_type": type(self).__name__,
            "message": str(self),
            "retryable": self.retryable,
            "action_required": self.action_required,
        }


class ConfigurationError(CommerceIngestorError):
    """Raised when configuration is invalid or missing."""

    pass


class ProviderNotFoundError(CommerceIngestorError):
    """Raised when requested provider adapter is not registered."""

    pass


class SignatureInvalidError(CommerceIngestorError):
    """Raised when an inbound webhook fails signature verification."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"Webhook signature rejected for provider '{provider}': {reason}")
        self.provider = provider
        self.reason = reason


class PayloadMalformedError(CommerceIngestorError):
    """Raised when a payload cannot be parsed or misses required fields."""

    action_required = "none"

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class ConnectionNotFoundError(CommerceIngestorError):
    """Raised when no connection matches the requested identifier."""

    action_required = "none"


class ConnectionInactiveError(CommerceIngestorError):
    """Raised when an operation targets a disconnected or errored connection."""

    action_required = "reauthorize"


class AuthenticationError(CommerceIngestorError):
    """Raised when the provider rejects the stored credential."""

    action_required = "reauthorize"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitExceededError(CommerceIngestorError):
    """Raised when provider throttling outlasts the retry budget.

    Also raised for inbound webhooks that exceed the per-connection limit.
    """

    retryable = True
    action_required = "wait"

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamUnavailableError(CommerceIngestorError):
    """Raised when a provider keeps failing with 5xx or network errors."""

    retryable = True
    action_required = "wait"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamTimeoutError(UpstreamUnavailableError):
    """Raised when a provider never answers within the request timeout."""

    pass


class ValidationFailedError(CommerceIngestorError):
    """Raised when a provider response has an unexpected shape."""

    pass


class PersistenceConflictError(CommerceIngestorError):
    """Raised for storage conflicts; duplicates are normally absorbed before this."""

    action_required = "none"


class SyncAlreadyRunningError(CommerceIngestorError):
    """Raised when a backfill is triggered while another runs for the connection."""

    retryable = True
    action_required = "wait"

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"A sync is already running for connection '{connection_id}'")
        self.connection_id = connection_id


class TaskExecutionError(CommerceIngestorError):
    """Raised when a Celery task execution fails after structured reporting."""

    def __init__(
        self,
        report: TaskErrorReport,
        *,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(report.message)
        self.report = report
        self.original_error = original_error
        self.retryable = report.retryable

    def as_dict(self) -> dict[str, Any]:
        """Return a serializable representation of the task error for logging/tests."""

        return {
            "message": self.report.message,
            "error_type": self.report.error_type,
            "classification": self.report.classification,
            "retryable": self.report.retryable,
            "action_required": self.report.action_required,
        }
