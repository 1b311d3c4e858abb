import asyncio
import logging
import threading
from collections import Counter
from collections.abc import Iterable
from collections.abc import Mapping
from uuid import uuid4

from reportflow.core.config import settings
from reportflow.core.exceptions import ConfigurationError
from reportflow.core.exceptions import DuplicateRequestError
from reportflow.core.exceptions import InvalidDeadlineError
from reportflow.core.exceptions import ProfileNotFoundError
from reportflow.models.progress_models import ProgressSnapshot
from reportflow.models.progress_models import RegistryStats
from reportflow.models.progress_models import StageProfile
from reportflow.models.progress_models import TrackerStatus
from reportflow.services.request_tracker import RequestTracker
from reportflow.services.request_tracker import TrackerListener
from reportflow.services.stage_profiles import DEFAULT_PROFILE
from reportflow.services.stage_profiles import get_stage_profiles

logger = logging.getLogger(__name__)

# Warning threshold used when a caller shortens the timeout below the configured warning
FALLBACK_WARNING_RATIO = 0.75


class RequestRegistry:
    """Concurrency-safe collection of the trackers of in-flight requests.

    A single lock guards the collection itself. Listener callbacks are never
    invoked while it is held, so a listener may call back into the registry.
    Finished trackers stay queryable for ``grace_period`` seconds before they
    are evicted.
    """

    def __init__(
        self,
        profiles: Mapping[str, StageProfile] | None = None,
        *,
        default_timeout: float | None = None,
        warning_threshold: float | None = None,
        progress_update_interval: float | None = None,
        grace_period: float | None = None,
    ):
        self._profiles = profiles if profiles is not None else get_stage_profiles()
        self.default_timeout = settings.default_timeout if default_timeout is None else default_timeout
        self.warning_threshold = settings.warning_threshold if warning_threshold is None else warning_threshold
        self.progress_update_interval = (
            settings.progress_update_interval if progress_update_interval is None else progress_update_interval
        )
        if self.progress_update_interval <= 0:
            raise ConfigurationError(
                f"Progress update interval must be positive, got {self.progress_update_interval}."
            )
        self.grace_period = settings.grace_period if grace_period is None else grace_period

        self._trackers: dict[str, RequestTracker] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        request_id: str | None = None,
        profile: str = DEFAULT_PROFILE,
        hard_timeout: float | None = None,
        warn_threshold: float | None = None,
        *,
        listeners: Iterable[TrackerListener] = (),
    ) -> RequestTracker:
        """Creates, registers and arms a tracker. Must run inside an event loop."""
        stage_profile = self._profiles.get(profile)
        if stage_profile is None:
            raise ProfileNotFoundError(profile)

        hard = hard_timeout if hard_timeout is not None else self.default_timeout
        warn = warn_threshold if warn_threshold is not None else self._default_warning(hard)
        if hard <= 0 or warn <= 0 or warn >= hard:
            raise InvalidDeadlineError(
                f"Warning threshold ({warn:g}s) must be positive and lower than the hard timeout ({hard:g}s)."
            )

        request_id = request_id or str(uuid4())
        tracker = RequestTracker(
            request_id,
            stage_profile,
            hard,
            warn,
            tick_interval=self.progress_update_interval,
            loop=asyncio.get_running_loop(),
            on_finished=self._on_tracker_finished,
        )
        for listener in listeners:
            tracker.subscribe(listener)

        with self._lock:
            existing = self._trackers.get(request_id)
            if existing is not None and not existing.is_terminal:
                raise DuplicateRequestError(request_id)
            self._trackers[request_id] = tracker

        tracker.arm()
        return tracker

    def _default_warning(self, hard_timeout: float) -> float:
        if self.warning_threshold < hard_timeout:
            return self.warning_threshold
        return hard_timeout * FALLBACK_WARNING_RATIO

    def _on_tracker_finished(self, tracker: RequestTracker) -> None:
        if self.grace_period <= 0:
            self._evict(tracker)
            return
        try:
            tracker.loop.call_soon_threadsafe(self._schedule_eviction, tracker)
        except RuntimeError:
            # Loop already closed: nothing left to wait for
            self._evict(tracker)

    def _schedule_eviction(self, tracker: RequestTracker) -> None:
        tracker.loop.call_later(self.grace_period, self._evict, tracker)

    def _evict(self, tracker: RequestTracker) -> None:
        with self._lock:
            if self._trackers.get(tracker.request_id) is tracker:
                del self._trackers[tracker.request_id]
                logger.debug("[%s] Cleaned up tracking", tracker.request_id)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> RequestTracker | None:
        with self._lock:
            return self._trackers.get(request_id)

    def get_progress(self, request_id: str) -> ProgressSnapshot | None:
        tracker = self.get(request_id)
        return tracker.snapshot() if tracker is not None else None

    def _all(self) -> list[RequestTracker]:
        with self._lock:
            return list(self._trackers.values())

    def active_requests(self) -> list[ProgressSnapshot]:
        """Snapshots of every tracked request, finished ones still in their grace period included."""
        return [tracker.snapshot() for tracker in self._all()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._trackers)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._trackers

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, request_id: str, reason: str = "User cancelled") -> bool:
        tracker = self.get(request_id)
        if tracker is None:
            return False
        return tracker.cancel(reason)

    def cancel_all(self, reason: str = "System shutdown") -> int:
        """Cancels every running request, typically on shutdown. Returns how many were cancelled."""
        trackers = self._all()
        logger.info("Shutting down, cancelling %d tracked request(s)", len(trackers))
        return sum(1 for tracker in trackers if tracker.cancel(reason))

    # ------------------------------------------------------------------
    # Statistics and settings
    # ------------------------------------------------------------------

    def stats(self) -> RegistryStats:
        trackers = self._all()
        # Plain attribute reads, no tracker lock: stats never wait on listener code
        statuses = [(tracker.profile.name, tracker.status) for tracker in trackers]
        running = [name for name, status in statuses if status is TrackerStatus.RUNNING]
        return RegistryStats(
            active_count=len(running),
            tracked_count=len(statuses),
            counts_by_profile=dict(Counter(running)),
            counts_by_status=dict(Counter(status.value for _, status in statuses)),
            default_timeout=self.default_timeout,
            warning_threshold=self.warning_threshold,
        )

    def set_default_timeout(self, timeout: float) -> bool:
        """Changes the hard timeout used by later ``start`` calls. Non-positive values are ignored."""
        if timeout <= 0:
            logger.warning("Ignoring non-positive default timeout %s", timeout)
            return False
        self.default_timeout = timeout
        logger.info("Default timeout set to %gs", timeout)
        return True

    @property
    def profiles(self) -> Mapping[str, StageProfile]:
        return self._profiles
