from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import model_validator

from reportflow.core.config import settings
from reportflow.models.error_models import ErrorCategory


class RetryPolicy(BaseModel):
    """Immutable retry configuration handed to the retry executor."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=60.0, ge=0)
    jitter_ratio: float = Field(default=0.0, ge=0, le=1)
    respect_retry_after: bool = True

    @model_validator(mode="after")
    def check_cap(self) -> "RetryPolicy":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be lower than base_delay")
        return self

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay=max(settings.retry_max_delay, settings.retry_base_delay),
            jitter_ratio=settings.retry_jitter_ratio,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Pre-jitter delay after the given (1-based) failed attempt."""
        return min(self.base_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)


class AttemptRecord(BaseModel):
    """One failed attempt, as kept in the retry history."""

    model_config = ConfigDict(frozen=True)

    attempt: int
    category: ErrorCategory
    error: str
    delay: float | None = None  # None when no further attempt followed
    elapsed: float
