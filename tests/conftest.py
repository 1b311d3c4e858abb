import pytest

from reportflow.services.request_registry import RequestRegistry
from reportflow.services.stage_profiles import build_profile
from reportflow.services.stage_profiles import get_stage_profiles
from tests.fakes import FakeClock


@pytest.fixture
def three_stage_profile():
    return build_profile(
        "three_stage",
        [("init", "Starting...", 0), ("process", "Processing...", 50), ("done", "Done!", 100)],
    )


@pytest.fixture
def profiles(three_stage_profile):
    return {**get_stage_profiles(), "three_stage": three_stage_profile}


# Fixture factory for isolated registries; timers are slow unless a test asks otherwise
@pytest.fixture
def make_registry(profiles):
    def _make_registry(**kwargs):
        kwargs.setdefault("profiles", profiles)
        kwargs.setdefault("grace_period", 60.0)
        kwargs.setdefault("progress_update_interval", 60.0)
        return RequestRegistry(**kwargs)

    return _make_registry


@pytest.fixture
def fake_clock():
    return FakeClock()
