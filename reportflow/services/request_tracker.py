"""Lifecycle state of a single in-flight generation request.

A tracker starts ``running`` and ends in exactly one terminal status
(``completed``, ``cancelled`` or ``timed_out``). Every mutating call on a
terminal tracker is a silent no-op, so a completion racing the hard timeout can
never produce two terminal notifications or crash the caller.

Timers (warning, hard timeout, progress tick) are plain ``loop.call_later``
handles owned by the tracker. Transitions and their notifications are
serialised by a per-tracker re-entrant lock, which keeps the notification order
equal to the transition order even when the operation reports from a worker
thread.
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from datetime import datetime
from datetime import timezone
from typing import Any

from reportflow.models.progress_models import ProgressSnapshot
from reportflow.models.progress_models import StageProfile
from reportflow.models.progress_models import TrackerStatus

logger = logging.getLogger(__name__)

WARNING_MESSAGE = "Report generation is taking longer than expected..."


class TrackerListener:
    """Receives tracker notifications. Subclasses override the events they need."""

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        pass

    def on_warning(self, snapshot: ProgressSnapshot) -> None:
        pass

    def on_timeout(self, snapshot: ProgressSnapshot) -> None:
        pass

    def on_cancel(self, snapshot: ProgressSnapshot) -> None:
        pass

    def on_complete(self, snapshot: ProgressSnapshot, result: Any) -> None:
        pass


class CallbackListener(TrackerListener):
    """Adapts plain callables to the listener interface."""

    def __init__(
        self,
        on_progress: Callable[[ProgressSnapshot], Any] | None = None,
        on_warning: Callable[[ProgressSnapshot], Any] | None = None,
        on_timeout: Callable[[ProgressSnapshot], Any] | None = None,
        on_cancel: Callable[[ProgressSnapshot], Any] | None = None,
        on_complete: Callable[[ProgressSnapshot, Any], Any] | None = None,
    ):
        self._on_progress = on_progress
        self._on_warning = on_warning
        self._on_timeout = on_timeout
        self._on_cancel = on_cancel
        self._on_complete = on_complete

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        if self._on_progress:
            self._on_progress(snapshot)

    def on_warning(self, snapshot: ProgressSnapshot) -> None:
        if self._on_warning:
            self._on_warning(snapshot)

    def on_timeout(self, snapshot: ProgressSnapshot) -> None:
        if self._on_timeout:
            self._on_timeout(snapshot)

    def on_cancel(self, snapshot: ProgressSnapshot) -> None:
        if self._on_cancel:
            self._on_cancel(snapshot)

    def on_complete(self, snapshot: ProgressSnapshot, result: Any) -> None:
        if self._on_complete:
            self._on_complete(snapshot, result)


class RequestTracker:
    """Mutable lifecycle record for one request. Created and armed by ``RequestRegistry.start``."""

    def __init__(
        self,
        request_id: str,
        profile: StageProfile,
        hard_timeout: float,
        warn_threshold: float,
        *,
        tick_interval: float = 1.0,
        loop: asyncio.AbstractEventLoop | None = None,
        clock: Callable[[], float] | None = None,
        on_finished: Callable[["RequestTracker"], None] | None = None,
    ):
        self.request_id = request_id
        self.profile = profile
        self.hard_timeout = hard_timeout
        self.warn_threshold = warn_threshold
        self.tick_interval = tick_interval

        self.loop = loop or asyncio.get_running_loop()
        self._clock = clock or self.loop.time
        self.start_time = self._clock()
        self.started_at = datetime.now(timezone.utc)
        self.finished_time: float | None = None

        first = profile.stages[0]
        self.current_stage_index = 0
        self.progress = float(first.progress)
        self.message = first.message
        self.status = TrackerStatus.RUNNING
        self.timeout_warning = False
        self.result: Any = None
        self.failure_reason: str | None = None
        self.cancel_event = asyncio.Event()

        self._lock = threading.RLock()
        self._listeners: list[TrackerListener] = []
        self._timer_handles: list[asyncio.TimerHandle] = []
        self._tick_handle: asyncio.TimerHandle | None = None
        self._on_finished = on_finished

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def elapsed(self) -> float:
        end = self.finished_time if self.finished_time is not None else self._clock()
        return max(0.0, end - self.start_time)

    @property
    def stage(self) -> str:
        return self.profile.stages[self.current_stage_index].stage

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            request_id=self.request_id,
            profile=self.profile.name,
            progress=round(self.progress, 1),
            message=self.message,
            status=self.status,
            elapsed=round(self.elapsed, 3),
            stage=self.stage,
            timeout_warning=self.timeout_warning,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: TrackerListener | None = None, **callbacks: Any) -> TrackerListener:
        """Registers a listener, or builds a ``CallbackListener`` from keyword callbacks."""
        if listener is None:
            listener = CallbackListener(**callbacks)
        with self._lock:
            self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: TrackerListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, event: str, *extra: Any) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                getattr(listener, f"on_{event}")(snapshot, *extra)
            except Exception:
                logger.exception("[%s] Error in %s listener %r", self.request_id, event, listener)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def arm(self) -> None:
        """Schedules the warning, hard-timeout and tick timers on the tracker's loop."""
        with self._lock:
            if self.is_terminal or self._timer_handles:
                return
            self._timer_handles = [
                self.loop.call_later(self.warn_threshold, self._on_warning_timer),
                self.loop.call_later(self.hard_timeout, self._on_hard_timeout),
            ]
            self._tick_handle = self.loop.call_later(self.tick_interval, self._on_tick_timer)
        logger.info(
            "[%s] Started tracking (%s), timeout: %gs, warning at %gs",
            self.request_id,
            self.profile.name,
            self.hard_timeout,
            self.warn_threshold,
        )

    def _on_tick_timer(self) -> None:
        self.tick()
        with self._lock:
            if not self.is_terminal:
                self._tick_handle = self.loop.call_later(self.tick_interval, self._on_tick_timer)

    def _on_warning_timer(self) -> None:
        with self._lock:
            if self.is_terminal or self.timeout_warning:
                return
            self.timeout_warning = True
            self.message = WARNING_MESSAGE
            logger.warning("[%s] Timeout warning after %.1fs", self.request_id, self.elapsed)
            self._notify("warning")

    def _on_hard_timeout(self) -> None:
        reason = f"Request timed out after {self.hard_timeout:g} seconds"
        self._finish(TrackerStatus.TIMED_OUT, "timeout", reason=reason)

    def _disarm(self) -> None:
        handles = [*self._timer_handles, self._tick_handle]
        self._timer_handles = []
        self._tick_handle = None
        for handle in handles:
            if handle is not None:
                self._call_in_loop(handle.cancel)

    def _call_in_loop(self, fn: Callable[[], Any]) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            fn()
        elif not self.loop.is_closed():
            self.loop.call_soon_threadsafe(fn)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def advance_to_stage(self, stage_name: str, message: str | None = None) -> bool:
        """Moves to a later stage. Unknown, current or earlier stages are ignored."""
        with self._lock:
            if self.is_terminal:
                return False
            index = self.profile.index_of(stage_name)
            if index <= self.current_stage_index:
                return False
            self._set_stage(index, message)
            return True

    def _set_stage(self, index: int, message: str | None) -> None:
        stage = self.profile.stages[index]
        self.current_stage_index = index
        self.progress = float(stage.progress)
        self.message = message or stage.message
        logger.debug("[%s] Advanced to stage: %s (%g%%)", self.request_id, stage.stage, self.progress)
        self._notify("progress")

    def update_message(self, message: str) -> None:
        """Replaces the message of the current stage and notifies progress listeners."""
        with self._lock:
            if self.is_terminal or message == self.message:
                return
            self.message = message
            self._notify("progress")

    def tick(self) -> None:
        """Interpolates progress from elapsed time.

        The hard timeout is split into one window per stage. Once the window of
        the current stage has passed the tracker moves on (never onto the final
        stage, which only ``complete`` reaches). Inside a window progress grows
        linearly toward the next stage but stays below it.
        """
        with self._lock:
            if self.is_terminal:
                return
            stages = self.profile.stages
            count = len(stages)
            if count < 2:
                return
            window = self.hard_timeout / count
            elapsed = self.elapsed

            while self.current_stage_index + 1 < count - 1 and elapsed >= (self.current_stage_index + 1) * window:
                self._set_stage(self.current_stage_index + 1, None)

            index = self.current_stage_index
            if index >= count - 1:
                return
            current = stages[index].progress
            upcoming = stages[index + 1].progress
            fraction = min(max((elapsed - index * window) / window, 0.0), 1.0)
            candidate = min(current + (upcoming - current) * fraction, upcoming - 1)
            candidate = max(candidate, self.progress)
            if candidate != self.progress:
                self.progress = candidate
                self._notify("progress")

    def cancel(self, reason: str = "User cancelled") -> bool:
        """Cancels a running request. Returns False when it had already finished."""
        return self._finish(TrackerStatus.CANCELLED, "cancel", reason=reason)

    def fail(self, reason: str) -> bool:
        """Ends the request because the operation failed for good (reported as cancelled)."""
        return self._finish(TrackerStatus.CANCELLED, "cancel", reason=reason)

    def complete(self, result: Any = None) -> bool:
        """Marks the request as successfully completed with ``result``."""
        return self._finish(TrackerStatus.COMPLETED, "complete", result=result)

    def _finish(
        self,
        status: TrackerStatus,
        event: str,
        *,
        reason: str | None = None,
        result: Any = None,
    ) -> bool:
        with self._lock:
            if self.is_terminal:
                return False
            self.status = status
            self.finished_time = self._clock()
            if status is TrackerStatus.COMPLETED:
                last = len(self.profile.stages) - 1
                self.current_stage_index = last
                self.progress = 100.0
                self.message = self.profile.stages[last].message
                self.result = result
            else:
                self.failure_reason = reason
                self.message = reason or self.message
                self._call_in_loop(self.cancel_event.set)

            logger.info("[%s] Request %s after %.1fs", self.request_id, status.value, self.elapsed)
            if status is TrackerStatus.COMPLETED:
                self._notify(event, result)
            else:
                self._notify(event)
            self._disarm()

        if self._on_finished is not None:
            try:
                self._on_finished(self)
            except Exception:
                logger.exception("[%s] Error while releasing finished tracker", self.request_id)
        return True

    def __repr__(self) -> str:
        return f"RequestTracker(id={self.request_id!r}, profile={self.profile.name!r}, status={self.status.value!r})"
