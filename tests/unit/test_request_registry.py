import asyncio

import pytest

from reportflow.core.exceptions import ConfigurationError
from reportflow.core.exceptions import DuplicateRequestError
from reportflow.core.exceptions import InvalidDeadlineError
from reportflow.core.exceptions import ProfileNotFoundError
from reportflow.models.progress_models import TrackerStatus
from reportflow.services.request_registry import RequestRegistry
from reportflow.services.request_tracker import CallbackListener


@pytest.mark.asyncio
async def test_start_registers_and_arms_tracker(make_registry):
    registry = make_registry()
    tracker = registry.start("req-1", "three_stage", hard_timeout=10, warn_threshold=5)

    assert registry.get("req-1") is tracker
    assert "req-1" in registry
    assert len(registry) == 1
    assert tracker.hard_timeout == 10
    assert tracker.warn_threshold == 5
    assert tracker.status is TrackerStatus.RUNNING
    registry.cancel_all()


@pytest.mark.asyncio
async def test_start_generates_request_id(make_registry):
    registry = make_registry()
    tracker = registry.start(profile="custom")
    assert tracker.request_id
    assert registry.get(tracker.request_id) is tracker
    registry.cancel_all()


@pytest.mark.asyncio
async def test_start_uses_registry_defaults(make_registry):
    registry = make_registry(default_timeout=60, warning_threshold=45)
    tracker = registry.start("req-1")
    assert tracker.profile.name == "custom"
    assert tracker.hard_timeout == 60
    assert tracker.warn_threshold == 45
    registry.cancel_all()


@pytest.mark.asyncio
async def test_short_timeout_gets_proportional_warning(make_registry):
    registry = make_registry(default_timeout=60, warning_threshold=45)
    tracker = registry.start("req-1", hard_timeout=10)
    assert tracker.warn_threshold == pytest.approx(7.5)
    registry.cancel_all()


@pytest.mark.asyncio
async def test_unknown_profile_is_rejected(make_registry):
    registry = make_registry()
    with pytest.raises(ProfileNotFoundError) as exc:
        registry.start("req-1", "no_such_profile")
    assert exc.value.profile == "no_such_profile"
    assert len(registry) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("hard_timeout, warn_threshold", [(10, 10), (10, 20), (10, 0), (0, 5), (-1, -2)])
async def test_invalid_deadlines_are_rejected(make_registry, hard_timeout, warn_threshold):
    registry = make_registry()
    with pytest.raises(InvalidDeadlineError):
        registry.start("req-1", hard_timeout=hard_timeout, warn_threshold=warn_threshold)
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_duplicate_running_request_is_rejected(make_registry):
    registry = make_registry()
    first = registry.start("req-1")
    with pytest.raises(DuplicateRequestError):
        registry.start("req-1")
    assert registry.get("req-1") is first
    registry.cancel_all()


@pytest.mark.asyncio
async def test_finished_request_id_can_be_reused(make_registry):
    registry = make_registry(grace_period=60)
    first = registry.start("req-1")
    first.complete("done")

    second = registry.start("req-1")
    assert second is not first
    assert registry.get("req-1") is second
    registry.cancel_all()


@pytest.mark.asyncio
async def test_finished_tracker_is_kept_for_grace_period(make_registry):
    registry = make_registry(grace_period=0.1)
    tracker = registry.start("req-1")
    tracker.complete({"ok": True})

    await asyncio.sleep(0.02)
    snapshot = registry.get_progress("req-1")
    assert snapshot is not None
    assert snapshot.status is TrackerStatus.COMPLETED
    assert snapshot.progress == 100

    await asyncio.sleep(0.2)
    assert registry.get("req-1") is None
    assert registry.get_progress("req-1") is None


@pytest.mark.asyncio
async def test_eviction_does_not_remove_replacement(make_registry):
    registry = make_registry(grace_period=0.05)
    registry.start("req-1").cancel()
    replacement = registry.start("req-1")

    await asyncio.sleep(0.15)
    assert registry.get("req-1") is replacement
    registry.cancel_all()


@pytest.mark.asyncio
async def test_zero_grace_period_evicts_immediately(make_registry):
    registry = make_registry(grace_period=0)
    tracker = registry.start("req-1")
    assert registry.cancel("req-1", "stop") is True
    assert tracker.status is TrackerStatus.CANCELLED
    assert registry.get("req-1") is None


@pytest.mark.asyncio
async def test_cancel_unknown_or_finished_request(make_registry):
    registry = make_registry()
    assert registry.cancel("missing") is False
    registry.start("req-1").complete()
    assert registry.cancel("req-1") is False


@pytest.mark.asyncio
async def test_cancel_all_cancels_running_requests(make_registry):
    registry = make_registry()
    running = [registry.start(f"req-{i}") for i in range(3)]
    registry.start("req-done").complete()

    assert registry.cancel_all() == 3
    for tracker in running:
        assert tracker.status is TrackerStatus.CANCELLED
        assert tracker.failure_reason == "System shutdown"
    assert registry.cancel_all() == 0


@pytest.mark.asyncio
async def test_stats(make_registry):
    registry = make_registry(default_timeout=60, warning_threshold=45)
    registry.start("a", "custom")
    registry.start("b", "custom")
    registry.start("c", "jp_tax_strategy")
    registry.start("d", "jp_tax_strategy").cancel()

    stats = registry.stats()
    assert stats.active_count == 3
    assert stats.tracked_count == 4
    assert stats.counts_by_profile == {"custom": 2, "jp_tax_strategy": 1}
    assert stats.counts_by_status == {"running": 3, "cancelled": 1}
    assert stats.default_timeout == 60
    assert stats.warning_threshold == 45
    registry.cancel_all()


@pytest.mark.asyncio
async def test_active_requests_lists_snapshots(make_registry):
    registry = make_registry()
    registry.start("a")
    registry.start("b").complete()
    snapshots = {snapshot.request_id: snapshot for snapshot in registry.active_requests()}
    assert set(snapshots) == {"a", "b"}
    assert snapshots["b"].status is TrackerStatus.COMPLETED
    registry.cancel_all()


@pytest.mark.asyncio
async def test_set_default_timeout(make_registry):
    registry = make_registry(default_timeout=60, warning_threshold=45)
    assert registry.set_default_timeout(120) is True
    assert registry.start("req-1").hard_timeout == 120

    assert registry.set_default_timeout(0) is False
    assert registry.set_default_timeout(-5) is False
    assert registry.default_timeout == 120
    registry.cancel_all()


@pytest.mark.asyncio
async def test_listener_can_call_back_into_registry(make_registry):
    registry = make_registry()
    seen = []

    def on_cancel(snapshot):
        # Re-entrant calls from a listener must not deadlock
        seen.append((registry.stats().active_count, registry.get(snapshot.request_id) is not None))

    registry.start("req-1", listeners=(CallbackListener(on_cancel=on_cancel),))
    registry.start("req-2")

    assert registry.cancel_all() == 2
    assert seen == [(1, True)]


@pytest.mark.asyncio
async def test_registries_are_isolated(make_registry):
    first = make_registry()
    second = make_registry()
    first.start("req-1")
    second.start("req-1")
    assert first.get("req-1") is not second.get("req-1")
    first.cancel_all()
    assert second.get("req-1").status is TrackerStatus.RUNNING
    second.cancel_all()


def test_start_requires_running_loop(make_registry):
    registry = make_registry()
    with pytest.raises(RuntimeError):
        registry.start("req-1")
    assert len(registry) == 0


def test_registry_reads_defaults_from_settings(monkeypatch):
    from reportflow.core.config import settings

    monkeypatch.setattr(settings, "default_timeout", 90.0)
    monkeypatch.setattr(settings, "grace_period", 2.0)
    registry = RequestRegistry()
    assert registry.default_timeout == 90.0
    assert registry.grace_period == 2.0
    assert "jp_investment_4part" in registry.profiles


@pytest.mark.asyncio
async def test_explicit_zero_default_timeout_is_not_replaced(make_registry):
    registry = make_registry(default_timeout=0)
    assert registry.default_timeout == 0
    with pytest.raises(InvalidDeadlineError):
        registry.start("req-1")
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_explicit_zero_warning_threshold_is_not_replaced(make_registry):
    registry = make_registry(default_timeout=60, warning_threshold=0)
    assert registry.warning_threshold == 0
    with pytest.raises(InvalidDeadlineError):
        registry.start("req-1")


def test_non_positive_progress_interval_is_rejected(make_registry):
    with pytest.raises(ConfigurationError):
        make_registry(progress_update_interval=0)
