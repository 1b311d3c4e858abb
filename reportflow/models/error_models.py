from enum import Enum

from pydantic import BaseModel
from pydantic import ConfigDict


class ErrorCategory(str, Enum):
    """Closed taxonomy of failures seen while generating a report."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    SERVICE_FAULT = "service_fault"
    NETWORK_FAULT = "network_fault"
    FILE_PROCESSING = "file_processing"
    UNKNOWN = "unknown"


class ErrorVerdict(BaseModel):
    """Outcome of classifying a raw error: category, retryability and what to tell the user."""

    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    retryable: bool
    user_message: str
    suggested_actions: tuple[str, ...] = ()
    severity: str = "error"
    retry_after: float | None = None
    status_code: int | None = None
    technical_details: str = ""
