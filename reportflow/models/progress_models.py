from enum import Enum

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator


class TrackerStatus(str, Enum):
    """Lifecycle status of a tracked request. Everything but RUNNING is terminal."""

    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self is not TrackerStatus.RUNNING


class StageDefinition(BaseModel):
    """A single progress checkpoint inside a stage profile."""

    model_config = ConfigDict(frozen=True)

    stage: str = Field(min_length=1)
    message: str
    progress: float = Field(ge=0, le=100)


class StageProfile(BaseModel):
    """Named, ordered list of checkpoints for one report type."""

    model_config = ConfigDict(frozen=True)

    name: str
    stages: tuple[StageDefinition, ...]

    @field_validator("stages")
    @classmethod
    def check_stages(cls, v: tuple[StageDefinition, ...]) -> tuple[StageDefinition, ...]:
        if not v:
            raise ValueError("a stage profile needs at least one stage")
        for previous, current in zip(v, v[1:]):
            if current.progress < previous.progress:
                raise ValueError(f"stage '{current.stage}' goes backwards ({previous.progress} -> {current.progress})")
        if v[-1].progress != 100:
            raise ValueError("the last stage must reach 100")
        names = [s.stage for s in v]
        if len(set(names)) != len(names):
            raise ValueError("stage names must be unique within a profile")
        return v

    def index_of(self, stage_name: str) -> int:
        """Returns the index of a stage, or -1 when the profile has no such stage."""
        for index, stage in enumerate(self.stages):
            if stage.stage == stage_name:
                return index
        return -1


class ProgressSnapshot(BaseModel):
    """Point-in-time view of a tracker, handed to listeners and returned by the API."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    profile: str
    progress: float
    message: str
    status: TrackerStatus
    elapsed: float
    stage: str
    timeout_warning: bool = False


class RegistryStats(BaseModel):
    """Aggregate view of every request currently held by a registry."""

    active_count: int
    tracked_count: int
    counts_by_profile: dict[str, int]
    counts_by_status: dict[str, int]
    default_timeout: float
    warning_threshold: float
