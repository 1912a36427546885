from __future__ import annotations

from enum import Enum
from typing import Protocol, Tuple
import logging

from .safety import SafetyCoordinator

SLOW_FACTOR = 0.4
MAX_SPEED = 1.0

log = logging.getLogger(__name__)


class VehicleLink(Protocol):
    """Drive-motor link. Every call may raise (transport or protocol error)."""

    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    def set_wheel_speeds(self, left: float, right: float) -> None: ...

    def stop(self) -> None: ...


class SpeedMode(str, Enum):
    NORMAL = "normal"
    SLOW = "slow"


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


class Actuator:
    """
    Last stop before the motors.

    Rejects every non-zero command while the e-stop is active (a zero is sent
    instead), applies the speed mode and clamps to [-max_speed, max_speed].
    Link errors propagate to the caller.
    """

    def __init__(self, link: VehicleLink, safety: SafetyCoordinator,
                 slow_factor: float = SLOW_FACTOR, max_speed: float = MAX_SPEED) -> None:
        self._link = link
        self._safety = safety
        self._slow_factor = slow_factor
        self._max_speed = max_speed
        self._mode = SpeedMode.NORMAL
        self._last: Tuple[float, float] = (0.0, 0.0)

    @property
    def link(self) -> VehicleLink:
        return self._link

    @property
    def speed_mode(self) -> SpeedMode:
        return self._mode

    def set_speed_mode(self, mode: SpeedMode) -> None:
        if mode != self._mode:
            log.info("speed mode %s", mode.value)
        self._mode = mode

    def last_command(self) -> Tuple[float, float]:
        """(left, right) actually sent on the last apply()/stop()."""
        return self._last

    def apply(self, left: float, right: float) -> bool:
        """
        Send one command. Returns False when it was rejected by the e-stop.
        """
        if self._safety.snapshot().emergency_stop_active and (left != 0.0 or right != 0.0):
            self.stop()
            return False
        if self._mode is SpeedMode.SLOW:
            left *= self._slow_factor
            right *= self._slow_factor
        left = _clamp(left, -self._max_speed, self._max_speed)
        right = _clamp(right, -self._max_speed, self._max_speed)
        self._last = (left, right)
        self._link.set_wheel_speeds(left, right)
        return True

    def stop(self) -> None:
        self._last = (0.0, 0.0)
        self._link.stop()
