"""Core custom exceptions for the orchestrator."""

from __future__ import annotations

from typing import TYPE_CHECKING
from typing import Any

if TYPE_CHECKING:
    from reportflow.models.error_models import ErrorVerdict
    from reportflow.models.retry_models import AttemptRecord


class OrchestratorError(Exception):
    """Base exception for request-orchestration errors."""


class ConfigurationError(OrchestratorError):
    """Exception for configuration-related errors (e.g., malformed stage profiles, invalid settings)."""


class DuplicateRequestError(OrchestratorError):
    """Raised when a running request is already tracked under the same id."""

    def __init__(self, request_id: str):
        super().__init__(f"Request '{request_id}' is already being tracked.")
        self.request_id = request_id


class ProfileNotFoundError(OrchestratorError):
    """Raised when a stage profile name is absent from the profile table."""

    def __init__(self, profile: str):
        super().__init__(f"Unknown stage profile '{profile}'.")
        self.profile = profile


class InvalidDeadlineError(OrchestratorError):
    """Raised when the warning threshold is not strictly below the hard timeout."""


class RequestCancelledError(OrchestratorError):
    """Raised when a request is cancelled while the orchestrator is waiting on it."""

    def __init__(self, request_id: str | None = None, reason: str | None = None):
        message = f"Request '{request_id}' was cancelled" if request_id else "Request was cancelled"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.request_id = request_id
        self.reason = reason


class RequestTimeoutError(OrchestratorError):
    """Raised when a request hit its hard timeout before the operation finished."""

    def __init__(self, request_id: str, timeout: float):
        super().__init__(f"Request '{request_id}' timed out after {timeout:g} seconds.")
        self.request_id = request_id
        self.timeout = timeout


class GenerationFailedError(OrchestratorError):
    """Final failure surfaced by the retry executor.

    Carries the classification of the last raw error together with the attempt
    count and elapsed time, so callers can render a complete user-facing error.
    The raw error is available as ``__cause__``.
    """

    def __init__(
        self,
        verdict: ErrorVerdict,
        attempts: int,
        elapsed: float,
        history: list[AttemptRecord] | None = None,
        request_id: str | None = None,
    ):
        super().__init__(f"{verdict.user_message} (after {attempts} attempt(s), {elapsed:.2f}s)")
        self.verdict = verdict
        self.attempts = attempts
        self.elapsed = elapsed
        self.history = list(history or [])
        self.request_id = request_id

    @property
    def category(self) -> str:
        return self.verdict.category.value

    @property
    def retryable(self) -> bool:
        return self.verdict.retryable

    @property
    def user_message(self) -> str:
        return self.verdict.user_message

    @property
    def suggested_actions(self) -> list[str]:
        return list(self.verdict.suggested_actions)

    def to_dict(self) -> dict[str, Any]:
        """User-facing error payload, ready to be serialised."""
        return {
            "request_id": self.request_id,
            "category": self.category,
            "retryable": self.retryable,
            "severity": self.verdict.severity,
            "message": self.user_message,
            "suggested_actions": self.suggested_actions,
            "retry_after": self.verdict.retry_after,
            "attempts": self.attempts,
            "elapsed": round(self.elapsed, 3),
            "technical_details": self.verdict.technical_details,
        }
