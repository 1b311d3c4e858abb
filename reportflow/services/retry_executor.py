import asyncio
import inspect
import logging
import random
import time
from collections.abc import Awaitable
from collections.abc import Callable
from typing import Any

from tenacity import AsyncRetrying
from tenacity import RetryCallState
from tenacity import retry_if_exception
from tenacity import stop_after_attempt
from tenacity.wait import wait_base

from reportflow.core.exceptions import GenerationFailedError
from reportflow.core.exceptions import RequestCancelledError
from reportflow.models.error_models import ErrorCategory
from reportflow.models.retry_models import AttemptRecord
from reportflow.models.retry_models import RetryPolicy
from reportflow.services.error_classifier import classify
from reportflow.services.error_classifier import parse_retry_after

logger = logging.getLogger(__name__)

Operation = Callable[[], Any]
AttemptCallback = Callable[[int, int], None]


# ---------------------------------------------------------------
# Tenacity building blocks
# ---------------------------------------------------------------


class BackoffWait(wait_base):
    """Exponential backoff capped at ``max_delay``, with symmetric jitter.

    Rate-limit errors that carry a ``Retry-After`` header wait at least that
    long (still capped at ``max_delay``) when the policy allows it.
    """

    def __init__(self, policy: RetryPolicy, rng: random.Random | None = None):
        self._policy = policy
        self._rng = rng or random.Random()

    def __call__(self, retry_state: RetryCallState) -> float:
        policy = self._policy
        delay = policy.backoff_delay(retry_state.attempt_number)
        if policy.jitter_ratio:
            delay += delay * policy.jitter_ratio * self._rng.uniform(-1.0, 1.0)

        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None and outcome.failed else None
        if policy.respect_retry_after and exc is not None and classify(exc).category is ErrorCategory.RATE_LIMIT:
            retry_after = parse_retry_after(exc)
            if retry_after is not None:
                delay = max(delay, min(retry_after, policy.max_delay))

        return max(0.0, delay)


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, (RequestCancelledError, asyncio.CancelledError)):
        return False
    return classify(exc).retryable


def cancellable_sleep(
    cancel_event: asyncio.Event | None,
    request_id: str | None = None,
) -> Callable[[float], Awaitable[None]]:
    """Builds the sleep used between attempts.

    Only the calling task is suspended. When ``cancel_event`` is (or becomes)
    set the wait ends immediately with ``RequestCancelledError``.
    """

    async def _sleep(seconds: float) -> None:
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return
        if cancel_event.is_set():
            raise RequestCancelledError(request_id, "cancelled before retrying")
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise RequestCancelledError(request_id, "cancelled while waiting to retry")

    return _sleep


async def _invoke(operation: Operation) -> Any:
    """Runs one attempt; blocking callables are pushed to a worker thread."""
    if inspect.iscoroutinefunction(operation):
        return await operation()
    result = await asyncio.to_thread(operation)
    if inspect.isawaitable(result):
        result = await result
    return result


# ---------------------------------------------------------------
# Executor
# ---------------------------------------------------------------


class RetryExecutor:
    """Runs an operation, retrying transient failures with exponential backoff.

    Intermediate retryable failures are logged and swallowed; only the final
    failure is raised, as a ``GenerationFailedError`` chained to the raw error.
    """

    def __init__(self, default_policy: RetryPolicy | None = None, rng: random.Random | None = None):
        self.default_policy = default_policy or RetryPolicy.from_settings()
        self._rng = rng

    async def execute(
        self,
        operation: Operation,
        policy: RetryPolicy | None = None,
        *,
        on_attempt: AttemptCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        request_id: str | None = None,
    ) -> Any:
        policy = policy or self.default_policy
        tag = request_id or "-"
        start = time.monotonic()
        history: list[AttemptRecord] = []
        attempts = 0

        def _record_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else None
            verdict = classify(exc)
            history.append(
                AttemptRecord(
                    attempt=retry_state.attempt_number,
                    category=verdict.category,
                    error=str(exc),
                    delay=delay,
                    elapsed=time.monotonic() - start,
                )
            )
            logger.warning(
                "[%s] Attempt %d/%d failed with %s error: %s. Retrying in %.2fs",
                tag,
                retry_state.attempt_number,
                policy.max_attempts,
                verdict.category.value,
                exc,
                delay or 0.0,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=BackoffWait(policy, self._rng),
            retry=retry_if_exception(_should_retry),
            sleep=cancellable_sleep(cancel_event, request_id),
            before_sleep=_record_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if on_attempt is not None:
                        on_attempt(attempts, policy.max_attempts)
                    logger.debug("[%s] Starting attempt %d/%d", tag, attempts, policy.max_attempts)
                    result = await _invoke(operation)
        except (RequestCancelledError, asyncio.CancelledError):
            logger.info("[%s] Retry loop cancelled after %d attempt(s)", tag, attempts)
            raise
        except Exception as exc:
            elapsed = time.monotonic() - start
            verdict = classify(exc)
            history.append(
                AttemptRecord(
                    attempt=attempts,
                    category=verdict.category,
                    error=str(exc),
                    delay=None,
                    elapsed=elapsed,
                )
            )
            logger.error(
                "[%s] Giving up after %d attempt(s) in %.2fs: %s error (%s)",
                tag,
                attempts,
                elapsed,
                verdict.category.value,
                verdict.technical_details,
            )
            raise GenerationFailedError(verdict, attempts, elapsed, history, request_id) from exc

        logger.debug("[%s] Operation succeeded on attempt %d", tag, attempts)
        return result


async def execute_with_retry(operation: Operation, policy: RetryPolicy | None = None, **kwargs: Any) -> Any:
    """Convenience wrapper around a throwaway ``RetryExecutor``."""
    return await RetryExecutor().execute(operation, policy, **kwargs)
