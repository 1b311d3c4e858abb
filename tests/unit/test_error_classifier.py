import httpx
import openai
import pytest

from reportflow.models.error_models import ErrorCategory
from reportflow.services.error_classifier import CATEGORY_PROFILES
from reportflow.services.error_classifier import classify
from reportflow.services.error_classifier import is_retryable
from reportflow.services.error_classifier import parse_retry_after
from tests.fakes import ProviderError


@pytest.mark.parametrize(
    "status, expected",
    [
        (400, ErrorCategory.VALIDATION),
        (422, ErrorCategory.VALIDATION),
        (401, ErrorCategory.AUTHENTICATION),
        (403, ErrorCategory.AUTHENTICATION),
        (429, ErrorCategory.RATE_LIMIT),
        (500, ErrorCategory.SERVICE_FAULT),
        (503, ErrorCategory.SERVICE_FAULT),
        (599, ErrorCategory.SERVICE_FAULT),
    ],
)
def test_classify_by_status_code(status, expected):
    verdict = classify(ProviderError(status_code=status))
    assert verdict.category is expected
    assert verdict.status_code == status


def test_status_code_wins_over_network_code_and_message():
    # A 400 stays a validation error even if the message screams "timeout"
    verdict = classify({"status": 400, "code": "ETIMEDOUT", "message": "connection timeout"})
    assert verdict.category is ErrorCategory.VALIDATION
    assert verdict.retryable is False


def test_network_code_wins_over_message():
    verdict = classify({"code": "ECONNRESET", "message": "Failed to process PDF file"})
    assert verdict.category is ErrorCategory.NETWORK_FAULT
    assert verdict.retryable is True


def test_status_read_from_response_object():
    class Response:
        status_code = 502

    class WrappedError(Exception):
        response = Response()

    assert classify(WrappedError("bad gateway")).category is ErrorCategory.SERVICE_FAULT


def test_httpx_transport_error_is_network_fault():
    assert classify(httpx.ConnectError("connection refused")).category is ErrorCategory.NETWORK_FAULT


def test_openai_connection_error_is_network_fault():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    error = openai.APIConnectionError(request=request)
    assert classify(error).category is ErrorCategory.NETWORK_FAULT


def test_builtin_timeout_is_network_fault():
    assert classify(TimeoutError()).category is ErrorCategory.NETWORK_FAULT


def test_chained_cause_is_inspected():
    # Wrappers raised "from" a provider error inherit its status
    try:
        try:
            raise ProviderError(status_code=503)
        except ProviderError as inner:
            raise RuntimeError("LLM call failed") from inner
    except RuntimeError as outer:
        error = outer

    assert classify(error).category is ErrorCategory.SERVICE_FAULT


def test_nested_error_mapping_is_inspected():
    payload = {"error": {"status": 429, "message": "slow down"}}
    assert classify(payload).category is ErrorCategory.RATE_LIMIT


@pytest.mark.parametrize(
    "message, expected",
    [
        ("Rate limit exceeded for this key", ErrorCategory.RATE_LIMIT),
        ("Too Many Requests", ErrorCategory.RATE_LIMIT),
        ("Unauthorized: bad api key", ErrorCategory.AUTHENTICATION),
        ("validation failed for field 'type'", ErrorCategory.VALIDATION),
        ("Request timed out", ErrorCategory.NETWORK_FAULT),
        ("Internal server error", ErrorCategory.SERVICE_FAULT),
        ("Failed to process PDF file", ErrorCategory.FILE_PROCESSING),
        ("something odd happened", ErrorCategory.UNKNOWN),
    ],
)
def test_classify_by_message(message, expected):
    assert classify(Exception(message)).category is expected
    # Plain strings are accepted too
    assert classify(message).category is expected


def test_unmapped_status_falls_through_to_message():
    verdict = classify(ProviderError(status_code=418, message="teapot"))
    assert verdict.category is ErrorCategory.UNKNOWN
    assert verdict.status_code == 418


class _HostileError(Exception):
    @property
    def status_code(self):
        raise RuntimeError("no status for you")

    def __str__(self):
        raise RuntimeError("no message either")


class _HostileObject:
    """Blows up on every non-dunder attribute read."""

    def __getattr__(self, name):
        if name.startswith("__") and name.endswith("__"):
            raise AttributeError(name)
        raise RuntimeError(f"cannot read {name}")


@pytest.mark.parametrize(
    "raw_error",
    [None, "", 42, [], {}, object(), {"status": "abc"}, {"status": None}, Exception(), _HostileError(), _HostileObject()],
    ids=[
        "none",
        "empty-string",
        "int",
        "list",
        "empty-dict",
        "bare-object",
        "non-numeric-status",
        "null-status",
        "empty-exception",
        "hostile-exception",
        "hostile-object",
    ],
)
def test_classify_never_raises(raw_error):
    verdict = classify(raw_error)
    assert verdict.category is ErrorCategory.UNKNOWN
    assert verdict.retryable is False
    assert verdict.user_message


def test_classify_survives_object_failing_every_attribute_read():
    class Unreadable:
        def __getattr__(self, name):
            raise RuntimeError(f"cannot read {name}")

    verdict = classify(Unreadable())
    assert verdict.category is ErrorCategory.UNKNOWN
    assert verdict.technical_details == "Unreadable"


def test_only_transient_categories_are_retryable():
    retryable = {category for category, profile in CATEGORY_PROFILES.items() if profile.retryable}
    assert retryable == {ErrorCategory.RATE_LIMIT, ErrorCategory.SERVICE_FAULT, ErrorCategory.NETWORK_FAULT}
    # Every category has a profile with a message and at least one action
    assert set(CATEGORY_PROFILES) == set(ErrorCategory)
    for profile in CATEGORY_PROFILES.values():
        assert profile.user_message
        assert profile.suggested_actions


def test_verdict_carries_user_facing_fields():
    verdict = classify(ProviderError(status_code=429, message="rate limited"))
    assert verdict.retryable is True
    assert verdict.retry_after == 60.0
    assert "Wait 1-2 minutes before trying again" in verdict.suggested_actions
    assert "rate limited" in verdict.technical_details


def test_is_retryable():
    assert is_retryable(ProviderError(status_code=500)) is True
    assert is_retryable(ProviderError(status_code=401)) is False
    assert is_retryable(None) is False


def test_parse_retry_after_from_headers():
    error = ProviderError(status_code=429, headers={"retry-after": "7"})
    assert parse_retry_after(error) == 7.0


def test_parse_retry_after_from_response_headers():
    response = httpx.Response(429, headers={"Retry-After": "12"})
    error = httpx.HTTPStatusError("too many", request=httpx.Request("GET", "https://x.test"), response=response)
    assert parse_retry_after(error) == 12.0


@pytest.mark.parametrize(
    "raw_error",
    [None, ProviderError(status_code=429), ProviderError(status_code=429, headers={"retry-after": "soon"})],
)
def test_parse_retry_after_missing_or_malformed(raw_error):
    assert parse_retry_after(raw_error) is None
