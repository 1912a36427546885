from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple
import math

from rover_teleop.l0_core.events import Pose

OBSTACLE_NEAR = "OBSTACLE_NEAR"


@dataclass(frozen=True, slots=True)
class SensorStats:
    """Frozen view of a RunningStat; average/min/max are NaN without samples."""
    samples: int = 0
    average: float = math.nan
    min: float = math.nan
    max: float = math.nan

    @property
    def has_data(self) -> bool:
        return self.samples > 0


class RunningStat:
    """
    count / sum / min / max over one measurement stream.

    Non-finite values are dropped, not counted. Not thread-safe on its own;
    the MissionAggregator lock covers it.
    """

    __slots__ = ("_count", "_sum", "_min", "_max")

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._count = 0
        self._sum = 0.0
        self._min = math.nan
        self._max = math.nan

    def add(self, value: float) -> bool:
        """Fold one sample in; returns False if it was dropped."""
        if not math.isfinite(value):
            return False
        if self._count == 0:
            self._min = self._max = value
        else:
            self._min = min(self._min, value)
            self._max = max(self._max, value)
        self._count += 1
        self._sum += value
        return True

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def average(self) -> float:
        return self._sum / self._count if self._count else math.nan

    @property
    def min(self) -> float:
        return self._min

    @property
    def max(self) -> float:
        return self._max

    def stats(self) -> SensorStats:
        return SensorStats(self._count, self.average, self._min, self._max)


@dataclass(frozen=True, slots=True)
class MissionEvent:
    kind: str
    detail: str
    timestamp_millis: int


@dataclass(frozen=True, slots=True)
class MissionSnapshot:
    """
    Immutable rollup of one mission, built once by MissionAggregator.finalize().

    Times are wall-clock epoch milliseconds. ``events`` holds at most the
    first N obstacle events; ``obstacle_event_count`` keeps counting past it.
    """
    mission_id: str
    start_time_ms: int
    end_time_ms: int
    duration_ms: int
    temperature: SensorStats
    humidity: SensorStats
    light: SensorStats
    sonar: SensorStats
    tof_left: SensorStats
    tof_right: SensorStats
    min_sonar_distance_mm: float
    min_sonar_at_ms: int
    obstacle_event_count: int
    obstacle_threshold_mm: float
    events: Tuple[MissionEvent, ...]
    total_distance_m: float
    start_pose: Pose
    end_pose: Pose
    path: Tuple[Pose, ...]
