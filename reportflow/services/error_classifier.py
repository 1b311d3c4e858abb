"""Maps raw failures from the model provider (or anything else an operation raises)
onto the fixed error taxonomy.

``classify`` is a pure function: it never raises, performs no I/O and keeps no
state, so it is safe to call from any number of concurrent tasks.
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any
from typing import NamedTuple

import httpx
import openai

from reportflow.models.error_models import ErrorCategory
from reportflow.models.error_models import ErrorVerdict

logger = logging.getLogger(__name__)


class CategoryProfile(NamedTuple):
    retryable: bool
    user_message: str
    suggested_actions: tuple[str, ...]
    severity: str
    retry_after: float | None


CATEGORY_PROFILES: dict[ErrorCategory, CategoryProfile] = {
    ErrorCategory.VALIDATION: CategoryProfile(
        retryable=False,
        user_message="The request could not be processed because some input is invalid.",
        suggested_actions=(
            "Check the report type and the provided data",
            "Correct the input before submitting again",
        ),
        severity="warning",
        retry_after=None,
    ),
    ErrorCategory.AUTHENTICATION: CategoryProfile(
        retryable=False,
        user_message="Authentication with the AI service failed.",
        suggested_actions=(
            "Log in again",
            "Contact support if the problem persists",
        ),
        severity="critical",
        retry_after=None,
    ),
    ErrorCategory.RATE_LIMIT: CategoryProfile(
        retryable=True,
        user_message="Service is experiencing high demand. Please wait a moment and try again.",
        suggested_actions=(
            "Wait 1-2 minutes before trying again",
            "Try during off-peak hours for faster response",
            "Consider simplifying your request",
        ),
        severity="warning",
        retry_after=60.0,
    ),
    ErrorCategory.SERVICE_FAULT: CategoryProfile(
        retryable=True,
        user_message="AI service is temporarily unavailable. Please try again in a few minutes.",
        suggested_actions=(
            "Wait a few minutes and try again",
            "Check service status if available",
            "Contact support if the issue persists",
        ),
        severity="error",
        retry_after=120.0,
    ),
    ErrorCategory.NETWORK_FAULT: CategoryProfile(
        retryable=True,
        user_message="Network connection error. Please check your connection and try again.",
        suggested_actions=(
            "Check your internet connection",
            "Try again in a few moments",
        ),
        severity="error",
        retry_after=30.0,
    ),
    ErrorCategory.FILE_PROCESSING: CategoryProfile(
        retryable=False,
        user_message="One of the uploaded files could not be processed.",
        suggested_actions=(
            "Make sure the file is a valid, non-protected PDF or image",
            "Try uploading a smaller file",
        ),
        severity="warning",
        retry_after=None,
    ),
    ErrorCategory.UNKNOWN: CategoryProfile(
        retryable=False,
        user_message="An unexpected error occurred while generating the report.",
        suggested_actions=(
            "Try again later",
            "Contact support if the problem persists",
        ),
        severity="error",
        retry_after=None,
    ),
}

NETWORK_FAULT_CODES = frozenset({"ETIMEDOUT", "ECONNRESET", "ECONNREFUSED", "ENOTFOUND", "EAI_AGAIN", "EPIPE"})

NETWORK_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    openai.APIConnectionError,  # APITimeoutError is a subclass
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

# (substrings, category) pairs; the first pair with a matching substring wins
MESSAGE_RULES: tuple[tuple[tuple[str, ...], ErrorCategory], ...] = (
    (("rate limit", "too many requests"), ErrorCategory.RATE_LIMIT),
    (("unauthorized", "authentication", "api key"), ErrorCategory.AUTHENTICATION),
    (("validation", "invalid request"), ErrorCategory.VALIDATION),
    (("timeout", "timed out", "network", "connection"), ErrorCategory.NETWORK_FAULT),
    (("server error", "service unavailable"), ErrorCategory.SERVICE_FAULT),
    (("pdf", "file"), ErrorCategory.FILE_PROCESSING),
)


def _lookup(source: Any, key: str) -> Any:
    """Reads ``key`` from a mapping or an attribute, swallowing anything odd."""
    try:
        if isinstance(source, Mapping):
            return source.get(key)
        return getattr(source, key, None)
    except Exception:
        return None


def _candidates(raw_error: Any) -> list[Any]:
    """The error itself, then whatever it wraps (``__cause__``, nested ``error`` dicts)."""
    candidates = [raw_error]
    cause = _lookup(raw_error, "__cause__")
    if cause is not None:
        candidates.append(cause)
    nested = _lookup(raw_error, "error")
    if isinstance(nested, Mapping):
        candidates.append(nested)
    return candidates


def _as_status(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _extract_status(raw_error: Any) -> int | None:
    for candidate in _candidates(raw_error):
        for key in ("status_code", "status"):
            status = _as_status(_lookup(candidate, key))
            if status is not None:
                return status
        response = _lookup(candidate, "response")
        if response is not None:
            status = _as_status(_lookup(response, "status_code"))
            if status is not None:
                return status
    return None


def _is_network_fault(raw_error: Any) -> bool:
    for candidate in _candidates(raw_error):
        if isinstance(candidate, NETWORK_EXCEPTION_TYPES):
            return True
        for key in ("code", "errno"):
            code = _lookup(candidate, key)
            if isinstance(code, str) and code.upper() in NETWORK_FAULT_CODES:
                return True
    return False


def _extract_message(raw_error: Any) -> str:
    if raw_error is None:
        return ""
    if isinstance(raw_error, str):
        return raw_error
    parts = []
    for candidate in _candidates(raw_error):
        message = _lookup(candidate, "message")
        if isinstance(message, str):
            parts.append(message)
        if isinstance(candidate, BaseException):
            try:
                parts.append(str(candidate))
            except Exception:
                continue
    return " ".join(parts)


def _category_for_status(status: int) -> ErrorCategory | None:
    if status in (400, 422):
        return ErrorCategory.VALIDATION
    if status in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if status == 429:
        return ErrorCategory.RATE_LIMIT
    if 500 <= status <= 599:
        return ErrorCategory.SERVICE_FAULT
    return None


def _category_for_message(message: str) -> ErrorCategory:
    lowered = message.lower()
    for needles, category in MESSAGE_RULES:
        if any(needle in lowered for needle in needles):
            return category
    return ErrorCategory.UNKNOWN


def parse_retry_after(raw_error: Any) -> float | None:
    """Returns the ``Retry-After`` delay in seconds carried by an error, if any."""
    try:
        for candidate in _candidates(raw_error):
            headers = _lookup(candidate, "headers")
            if headers is None:
                response = _lookup(candidate, "response")
                headers = _lookup(response, "headers") if response is not None else None
            if headers is None:
                continue
            value = headers.get("retry-after") or headers.get("Retry-After")
            if value is None:
                continue
            seconds = float(value)
            if seconds >= 0:
                return seconds
    except (AttributeError, TypeError, ValueError):
        return None
    return None


def classify(raw_error: Any) -> ErrorVerdict:
    """Classifies a raw failure into an ``ErrorVerdict``.

    Signals are checked in a fixed order: an HTTP status code, then a network
    fault (exception type or errno-style code), then substrings of the error
    message. The first signal that maps to a category wins; ``unknown`` is the
    fallback. Malformed input (``None``, plain strings, dicts with missing keys)
    is accepted and never makes this function raise.
    """
    try:
        status = _extract_status(raw_error)
        message = _extract_message(raw_error)

        category = _category_for_status(status) if status is not None else None
        if category is None and _is_network_fault(raw_error):
            category = ErrorCategory.NETWORK_FAULT
        if category is None:
            category = _category_for_message(message)
    except Exception:
        # Objects with hostile __getattr__/__str__ still get a verdict
        logger.debug("Could not inspect error of type %s; classifying as unknown", type(raw_error).__name__)
        status, message, category = None, "", ErrorCategory.UNKNOWN

    profile = CATEGORY_PROFILES[category]
    return ErrorVerdict(
        category=category,
        retryable=profile.retryable,
        user_message=profile.user_message,
        suggested_actions=profile.suggested_actions,
        severity=profile.severity,
        retry_after=profile.retry_after,
        status_code=status,
        technical_details=message[:500] or type(raw_error).__name__,
    )


def is_retryable(raw_error: Any) -> bool:
    return classify(raw_error).retryable
