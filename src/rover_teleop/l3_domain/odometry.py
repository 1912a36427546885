"""
odometry.py
===========
Dead reckoning from commanded wheel values ("breadcrumb" path).

No encoders: pose is integrated from the normalized drive commands, so the
result is an estimate that drifts. Good enough to draw where the rover went
in a mission report; not a localization source.
"""
from __future__ import annotations

from collections import deque
from typing import Callable, Deque, List, Optional
import logging
import math
import threading

from rover_teleop.l0_core.events import Pose, now_ms

MAX_SPEED_MPS = 0.6
TURN_GAIN_RAD_S = 1.6
CMD_DEADZONE = 0.02
MIN_STEP_M = 0.02
MAX_POINTS = 2000
MAX_DT_S = 0.5

log = logging.getLogger(__name__)


def normalize_angle(angle: float) -> float:
    """Wrap into (-pi, pi]."""
    a = math.fmod(angle, 2.0 * math.pi)
    if a > math.pi:
        a -= 2.0 * math.pi
    elif a <= -math.pi:
        a += 2.0 * math.pi
    return a


class OdometryEngine:
    """
    Integrates (left, right, dt) into a pose, cumulative distance and a
    bounded path.

    Path policy: the newest point is compared with the new pose. A step of at
    least MIN_STEP_M appends; a smaller step overwrites the newest point, so
    the comparison always runs against the point being replaced. The ring
    holds at most ``max_points`` (oldest evicted).

    Thread-safe: commands arrive on the teleop thread, reads come from the UI
    and the mission aggregator.
    """

    def __init__(self,
                 max_points: int = MAX_POINTS,
                 clock: Callable[[], int] = now_ms) -> None:
        if max_points < 1:
            raise ValueError("max_points must be >= 1")
        self._clock = clock
        self._lock = threading.Lock()
        self._history: Deque[Pose] = deque(maxlen=max_points)
        self._x = 0.0
        self._y = 0.0
        self._heading = 0.0
        self._distance_m = 0.0
        self._last_update_ms: Optional[int] = None
        self._reset_locked()

    # ---- integration ----
    def update_from_commands(self, left: float, right: float) -> None:
        """
        Integrate using the time elapsed since the previous call.

        The first call after construction or reset() only arms the clock.
        """
        now = self._clock()
        with self._lock:
            last, self._last_update_ms = self._last_update_ms, now
        if last is None:
            return
        self.integrate(left, right, (now - last) / 1000.0)

    def integrate(self, left: float, right: float, dt_s: float) -> None:
        """
        Advance the pose by one step.

        dt_s <= 0 is ignored; dt_s is clamped to MAX_DT_S so a scheduling gap
        cannot teleport the rover. x/y advance along the heading held before
        this step, then the heading turns.
        """
        if dt_s <= 0.0:
            return
        dt_s = min(dt_s, MAX_DT_S)

        if abs(left) < CMD_DEADZONE:
            left = 0.0
        if abs(right) < CMD_DEADZONE:
            right = 0.0

        v = 0.5 * (left + right) * MAX_SPEED_MPS
        omega = (right - left) * TURN_GAIN_RAD_S

        with self._lock:
            dx = v * math.cos(self._heading) * dt_s
            dy = v * math.sin(self._heading) * dt_s
            self._heading = normalize_angle(self._heading + omega * dt_s)
            self._x += dx
            self._y += dy
            self._distance_m += math.hypot(dx, dy)

            pose = Pose(self._x, self._y, self._heading)
            last = self._history[-1]
            if math.hypot(pose.x - last.x, pose.y - last.y) >= MIN_STEP_M:
                self._history.append(pose)
            else:
                self._history[-1] = pose

    def reset(self) -> None:
        """Zero pose, distance and path (mission boundary only)."""
        with self._lock:
            self._reset_locked()
        log.debug("odometry reset")

    def _reset_locked(self) -> None:
        self._x = self._y = self._heading = 0.0
        self._distance_m = 0.0
        self._last_update_ms = None
        self._history.clear()
        self._history.append(Pose())

    # ---- read API ----
    def pose(self) -> Pose:
        with self._lock:
            return Pose(self._x, self._y, self._heading)

    def total_distance_m(self) -> float:
        with self._lock:
            return self._distance_m

    def history(self) -> List[Pose]:
        """Copy of the recorded path, oldest first."""
        with self._lock:
            return list(self._history)
