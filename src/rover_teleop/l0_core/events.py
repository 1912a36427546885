from __future__ import annotations

from enum import Enum
import math
import time
from dataclasses import dataclass
from typing import Generic, Mapping, Type, TypeVar, Union

Number = Union[int, float]
Value = Union[Number, bool, str]

P = TypeVar("P")


class Severity(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


def now_ms() -> int:
    """Gives a steady (monotonic) clock for event timing in milliseconds
        for timestamps in logs/events (steady, not wall-clock).
    """
    return time.monotonic_ns() // 1_000_000


def wall_ms() -> int:
    """Wall-clock milliseconds since the epoch; used only for mission start/end stamps."""
    return time.time_ns() // 1_000_000


@dataclass(frozen=True, slots=True)
class Topic(Generic[P]):
    """
    Typed topic key for the EventBus.

    Each topic carries exactly one payload type, so subscribers receive a known
    type and never need to inspect payloads at runtime.

    Fields:
      - name: dotted topic name (e.g. "sonar.update")
      - payload_type: class every published payload must be an instance of
    """
    name: str
    payload_type: Type[P]

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class Fault:
    """
    Immutable fault record used for reporting errors with a severity level.
    Example:
      Fault(timestamp_millis=..., severity=Severity.ERROR, code="BUS_HANDLER_FAILED",
            message="ZeroDivisionError: division by zero", context={"topic": "sonar.update"})
    """
    timestamp_millis: int
    severity: Severity
    code: str               # stable programmatic code (e.g., "BUS_HANDLER_FAILED")
    message: str            # human-readable explanation
    context: Mapping[str, Value]  # small scalar extras (never mutate)


# ---------------------------------------------------------------------------
# Sensor snapshots (one variant per sensor class, latest-wins)
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class RangingSnapshot:
    """
    Latest distance reading from a ranging sensor (sonar or ToF).

    Fields:
      - distance_mm: sticky last known-good distance, NaN until the first valid read
      - attached: hardware reports the channel attached on this cycle
      - timestamp_millis: monotonic capture time (now_ms())
      - last_error: error text of the most recent failed cycle, else None
      - source: sensor tag ("sonar", "tof.left", "tof.right")
      - value_timestamp_millis: capture time of distance_mm (the last valid
        read); None when the snapshot comes straight from a single read
    """
    distance_mm: float
    attached: bool
    timestamp_millis: int
    last_error: str | None = None
    source: str = "sonar"
    value_timestamp_millis: int | None = None

    def is_valid(self) -> bool:
        return self.attached and math.isfinite(self.distance_mm) and self.distance_mm > 0

    @property
    def value_time_ms(self) -> int:
        """When distance_mm was actually measured; freshness is judged on this."""
        if self.value_timestamp_millis is None:
            return self.timestamp_millis
        return self.value_timestamp_millis


@dataclass(frozen=True, slots=True)
class HumiditySnapshot:
    """Humidity (%RH) and temperature (deg C) from the same hub port."""
    humidity_percent: float
    temperature_celsius: float
    attached: bool
    timestamp_millis: int
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class LightSnapshot:
    illuminance_lux: float
    attached: bool
    timestamp_millis: int
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class SonarRisk:
    """
    Risk notification raised when the sonar reports an obstacle inside the
    configured threshold. Published on the near edge, then repeated at a
    throttled cadence while the obstacle stays near.
    """
    kind: str
    distance_mm: float
    threshold_mm: float
    timestamp_millis: int


# ---------------------------------------------------------------------------
# Drive / safety values
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class DriveCommand:
    """
    Normalized differential drive command.

    left / right are wheel commands in [-1, 1]; positive = forward.
    Ephemeral: published once per control tick, never stored.
    """
    left: float
    right: float
    timestamp_millis: int = 0

    @property
    def is_zero(self) -> bool:
        return self.left == 0.0 and self.right == 0.0


@dataclass(frozen=True, slots=True)
class SafetyState:
    """Read-only view of the safety flags owned by the SafetyCoordinator."""
    emergency_stop_active: bool = False
    obstacle_active: bool = False
    link_lost: bool = False


# ---------------------------------------------------------------------------
# Commands (CommandBus)
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class FinalizeMissionCmd:
    """
    Dashboard request: finalize the running mission, hand the snapshot to the
    report sink and start a fresh mission.

    reason : str
        Free-form tag recorded in logs (e.g., "dashboard", "cli").
    """
    reason: str = "dashboard"


@dataclass(frozen=True, slots=True)
class ResetEmergencyStopCmd:
    reason: str = "user"


@dataclass(frozen=True, slots=True)
class Pose:
    """Planar pose from dead reckoning: metres and radians (heading in (-pi, pi])."""
    x: float = 0.0
    y: float = 0.0
    heading: float = 0.0


@dataclass(frozen=True, slots=True)
class UiSnapshot:
    """
    Read-only dashboard view, published at ~5 Hz on topic "ui.snapshot".

    Everything here is already immutable; the dashboard must not feed
    anything back except a FinalizeMissionCmd.
    """
    timestamp_millis: int
    rover_connected: bool
    pad_connected: bool
    slow_mode: bool
    left_cmd: float
    right_cmd: float
    safety: SafetyState
    pose: Pose
    total_distance_m: float
    sonar: RangingSnapshot | None = None
    tof_left: RangingSnapshot | None = None
    tof_right: RangingSnapshot | None = None
    humidity: HumiditySnapshot | None = None
    light: LightSnapshot | None = None
