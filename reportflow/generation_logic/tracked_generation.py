import asyncio
import functools
import json
import logging
from collections.abc import AsyncGenerator
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from reportflow.core.exceptions import GenerationFailedError
from reportflow.core.exceptions import OrchestratorError
from reportflow.core.exceptions import RequestCancelledError
from reportflow.core.exceptions import RequestTimeoutError
from reportflow.models.progress_models import ProgressSnapshot
from reportflow.models.progress_models import TrackerStatus
from reportflow.models.retry_models import RetryPolicy
from reportflow.services.request_registry import RequestRegistry
from reportflow.services.request_tracker import RequestTracker
from reportflow.services.request_tracker import TrackerListener
from reportflow.services.retry_executor import RetryExecutor
from reportflow.services.stage_profiles import DEFAULT_PROFILE

__all__ = [
    "_create_stream_event",
    "run_tracked",
    "stream_tracked_generation",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# NDJSON event helper
# ---------------------------------------------------------------------------


def _create_stream_event(
    event_type: str,
    message: str | None = None,
    payload: Any = None,
) -> str:
    """Serialize a Server-Sent Event (SSE)-style dict to an NDJSON line."""
    event: dict[str, Any] = {"type": event_type}
    if message is not None:
        event["message"] = message
    if payload is not None:
        event["payload"] = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    return json.dumps(event, default=str) + "\n"


class _QueueListener(TrackerListener):
    """Turns tracker notifications into NDJSON lines on an asyncio queue."""

    def __init__(self, queue: "asyncio.Queue[str]", loop: asyncio.AbstractEventLoop):
        self._queue = queue
        self._loop = loop

    def _put(self, event_type: str, snapshot: ProgressSnapshot) -> None:
        line = _create_stream_event(event_type, message=snapshot.message, payload=snapshot)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(line)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, line)

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        self._put("progress", snapshot)

    def on_warning(self, snapshot: ProgressSnapshot) -> None:
        self._put("warning", snapshot)

    def on_timeout(self, snapshot: ProgressSnapshot) -> None:
        self._put("timeout", snapshot)

    def on_cancel(self, snapshot: ProgressSnapshot) -> None:
        self._put("cancelled", snapshot)

    def on_complete(self, snapshot: ProgressSnapshot, result: Any) -> None:
        self._put("completed", snapshot)


# ---------------------------------------------------------------------------
# Tracked execution
# ---------------------------------------------------------------------------


def _raise_for_terminal(tracker: RequestTracker) -> None:
    if tracker.status is TrackerStatus.TIMED_OUT:
        raise RequestTimeoutError(tracker.request_id, tracker.hard_timeout)
    raise RequestCancelledError(tracker.request_id, tracker.failure_reason)


def _discard_outcome(attempt: "asyncio.Future[Any]") -> None:
    """Consumes the outcome of an attempt whose request already ended."""
    if attempt.cancelled():
        return
    exc = attempt.exception()
    if exc is not None:
        logger.debug("Abandoned attempt finished with %s: %s", type(exc).__name__, exc)


async def _drive(
    tracker: RequestTracker,
    operation: Callable[..., Any],
    policy: RetryPolicy | None,
    executor: RetryExecutor | None,
    with_tracker: bool,
) -> Any:
    """Runs ``operation`` under the retry executor and settles ``tracker`` accordingly.

    The caller is released as soon as the tracker ends (hard timeout or
    cancellation), even while an attempt is still in flight. That attempt is
    left to finish on its own and its outcome is discarded.
    """
    executor = executor or RetryExecutor()
    if with_tracker:
        operation = functools.partial(operation, tracker)

    def _on_attempt(attempt: int, max_attempts: int) -> None:
        if attempt > 1:
            tracker.update_message(f"Retrying ({attempt}/{max_attempts})...")

    attempt = asyncio.ensure_future(
        executor.execute(
            operation,
            policy,
            on_attempt=_on_attempt,
            cancel_event=tracker.cancel_event,
            request_id=tracker.request_id,
        )
    )
    stopped = asyncio.ensure_future(tracker.cancel_event.wait())
    try:
        await asyncio.wait({attempt, stopped}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        attempt.cancel()
        tracker.cancel("Generation task was cancelled")
        raise
    finally:
        stopped.cancel()

    if not attempt.done():
        logger.info("[%s] Request ended while an attempt was in flight (%s)", tracker.request_id, tracker.status.value)
        attempt.add_done_callback(_discard_outcome)
        _raise_for_terminal(tracker)

    try:
        result = attempt.result()
    except GenerationFailedError as e:
        if tracker.status is TrackerStatus.TIMED_OUT:
            raise RequestTimeoutError(tracker.request_id, tracker.hard_timeout) from e
        tracker.fail(e.user_message)
        raise
    except RequestCancelledError as e:
        if tracker.status is TrackerStatus.TIMED_OUT:
            raise RequestTimeoutError(tracker.request_id, tracker.hard_timeout) from e
        tracker.cancel(e.reason or "Cancelled")
        raise
    except asyncio.CancelledError:
        tracker.cancel("Generation task was cancelled")
        raise

    # The hard timeout is authoritative: a late result is discarded
    if tracker.is_terminal:
        _raise_for_terminal(tracker)
    tracker.complete(result)
    return result


async def run_tracked(
    registry: RequestRegistry,
    operation: Callable[..., Any],
    *,
    profile: str = DEFAULT_PROFILE,
    request_id: str | None = None,
    policy: RetryPolicy | None = None,
    hard_timeout: float | None = None,
    warn_threshold: float | None = None,
    executor: RetryExecutor | None = None,
    listeners: tuple[TrackerListener, ...] = (),
    with_tracker: bool = False,
) -> Any:
    """Tracks ``operation`` in ``registry`` from start to a terminal state and returns its result.

    With ``with_tracker=True`` the operation is called with the tracker as its
    only argument, so it can advance stages or watch ``tracker.cancel_event``.

    Raises:
        GenerationFailedError: The operation failed for good (non-retryable or attempts exhausted).
        RequestTimeoutError: The hard timeout fired before the operation finished.
        RequestCancelledError: The request was cancelled.
    """
    tracker = registry.start(request_id, profile, hard_timeout, warn_threshold, listeners=listeners)
    return await _drive(tracker, operation, policy, executor, with_tracker)


async def stream_tracked_generation(
    registry: RequestRegistry,
    operation: Callable[..., Any],
    *,
    profile: str = DEFAULT_PROFILE,
    request_id: str | None = None,
    policy: RetryPolicy | None = None,
    hard_timeout: float | None = None,
    warn_threshold: float | None = None,
    executor: RetryExecutor | None = None,
    with_tracker: bool = False,
) -> AsyncGenerator[str, None]:
    """Run a tracked generation, yielding NDJSON events that clients can consume as a stream.

    Potential stream events: ``status`` (request accepted), ``progress``,
    ``warning``, ``timeout``, ``cancelled``, ``completed`` (tracker
    transitions), then ``data`` with the result or ``error`` with the
    user-facing error payload, and finally ``finished``.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[str] = asyncio.Queue()

    try:
        tracker = registry.start(
            request_id,
            profile,
            hard_timeout,
            warn_threshold,
            listeners=(_QueueListener(queue, loop),),
        )
    except OrchestratorError as e:
        logger.error("[%s] Could not start tracked generation: %s", request_id or "-", str(e))
        yield _create_stream_event("error", message=str(e))
        return

    request_id = tracker.request_id
    task = asyncio.create_task(_drive(tracker, operation, policy, executor, with_tracker))
    try:
        yield _create_stream_event("status", message="Request accepted.", payload=tracker.snapshot())

        while True:
            next_line = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({next_line, task}, return_when=asyncio.FIRST_COMPLETED)
            if next_line in done:
                yield next_line.result()
                continue
            next_line.cancel()
            break

        while not queue.empty():
            yield queue.get_nowait()

        try:
            result = task.result()
        except GenerationFailedError as ge:
            logger.error("[%s] Generation failed during stream: %s", request_id, str(ge))
            yield _create_stream_event("error", message=ge.user_message, payload=ge.to_dict())
        except RequestTimeoutError as te:
            logger.error("[%s] Generation timed out during stream: %s", request_id, str(te))
            yield _create_stream_event("error", message=str(te))
        except RequestCancelledError as ce:
            logger.info("[%s] Generation cancelled during stream: %s", request_id, str(ce))
            yield _create_stream_event("error", message=str(ce))
        except Exception as e:  # General catch-all MUST be last
            logger.exception("[%s] Unexpected error during tracked generation stream", request_id)
            yield _create_stream_event("error", message=f"An unexpected server error occurred: {str(e)}")
        else:
            yield _create_stream_event("data", message="Report data processing complete.", payload=result)

        yield _create_stream_event("finished", message="Stream completed successfully.")
    finally:
        if not task.done():
            # Consumer went away: stop retrying and mark the request cancelled
            tracker.cancel("Client disconnected")
            task.cancel()
        logger.info("[%s] Stream generation logic finished.", request_id)
