"""
safety.py
=========
Safety flags that gate what the teleop loop may send to the motors.

Three independently evaluated flags, exposed only as SafetyState snapshots:

- obstacle:   hysteresis on the closest fresh ranging distance. Stale or
              invalid input forces the flag off (unknown is not an obstacle).
- link lost:  mirrors the last connectivity check; reconnects are throttled
              by a fixed-window ReconnectPolicy.
- e-stop:     toggled once per button press edge; while active every
              non-zero command is rejected until reset.

None of the flags sends commands by itself; gate() applies them.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple
import logging
import math
import threading

from rover_teleop.l0_core import EventBus, topics
from rover_teleop.l0_core.backoff import BackoffConfig, ReconnectPolicy
from rover_teleop.l0_core.events import RangingSnapshot, SafetyState, Topic, now_ms

OBSTACLE_ON_MM = 250.0
OBSTACLE_OFF_DELTA_MM = 60.0
RANGING_STALE_MS = 1200
ROVER_RECONNECT_MS = 2000

log = logging.getLogger(__name__)


class Connectable(Protocol):
    def connect(self) -> None: ...

    def is_connected(self) -> bool: ...


class ObstacleHysteresis:
    """
    Two-threshold obstacle detector.

    Activates at distance <= on_mm; once active, stays active until the
    distance exceeds on_mm + off_delta_mm. Missing, NaN or non-positive
    input deactivates.
    """

    def __init__(self, on_mm: float = OBSTACLE_ON_MM, off_delta_mm: float = OBSTACLE_OFF_DELTA_MM) -> None:
        if on_mm <= 0 or off_delta_mm < 0:
            raise ValueError("on_mm must be > 0 and off_delta_mm >= 0")
        self.on_mm = on_mm
        self.off_mm = on_mm + off_delta_mm
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def update(self, distance_mm: Optional[float]) -> bool:
        if distance_mm is None or not math.isfinite(distance_mm) or distance_mm <= 0:
            self._active = False
        elif self._active:
            self._active = distance_mm <= self.off_mm
        else:
            self._active = distance_mm <= self.on_mm
        return self._active

    def reset(self) -> None:
        self._active = False


class SafetyCoordinator:
    """
    Owns the SafetyState. All methods are thread-safe; ranging updates arrive
    on sensor threads, everything else on the teleop thread.

    Parameters:
        hysteresis:     Obstacle detector (default 250 mm / +60 mm).
        stale_ms:       Readings older than this are ignored.
        policy:         Reconnect throttle; default fixed 2000 ms window.
        clock:          Monotonic ms clock.
    """

    def __init__(self,
                 hysteresis: Optional[ObstacleHysteresis] = None,
                 stale_ms: int = RANGING_STALE_MS,
                 policy: Optional[ReconnectPolicy] = None,
                 clock: Callable[[], int] = now_ms) -> None:
        self._hyst = hysteresis or ObstacleHysteresis()
        self._stale_ms = stale_ms
        self._clock = clock
        self._policy = policy or ReconnectPolicy(
            BackoffConfig(ROVER_RECONNECT_MS, ROVER_RECONNECT_MS, 1.0), clock=clock)
        self._lock = threading.Lock()
        self._state = SafetyState()
        # source -> (distance_mm, measured_at_ms), valid readings only
        self._ranging: Dict[str, Tuple[float, int]] = {}
        self._subscriptions: list[Tuple[Topic[RangingSnapshot], Callable[[RangingSnapshot], None]]] = []

    # ---- wiring ----
    def attach(self, bus: EventBus, ranging_topics: Iterable[Topic[RangingSnapshot]] = topics.RANGING_TOPICS) -> None:
        for topic in ranging_topics:
            bus.subscribe(topic, self.on_ranging)
            self._subscriptions.append((topic, self.on_ranging))

    def detach(self, bus: EventBus) -> None:
        for topic, cb in self._subscriptions:
            bus.unsubscribe(topic, cb)
        self._subscriptions.clear()

    def on_ranging(self, snap: RangingSnapshot) -> None:
        if not snap.is_valid():
            return
        with self._lock:
            self._ranging[snap.source] = (snap.distance_mm, snap.value_time_ms)

    # ---- obstacle ----
    def closest_fresh_distance(self) -> Optional[float]:
        now = self._clock()
        with self._lock:
            fresh = [d for d, at in self._ranging.values() if now - at <= self._stale_ms]
        return min(fresh) if fresh else None

    def evaluate_obstacle(self) -> bool:
        distance = self.closest_fresh_distance()
        with self._lock:
            was = self._state.obstacle_active
            active = self._hyst.update(distance)
            if active != was:
                self._state = replace(self._state, obstacle_active=active)
        if active and not was:
            log.warning("obstacle too close (%.0f mm)", distance)
        elif was and not active:
            log.info("obstacle cleared")
        return active

    def clear_obstacle(self) -> None:
        with self._lock:
            self._hyst.reset()
            self._state = replace(self._state, obstacle_active=False)

    # ---- link ----
    def check_link(self, link: Connectable) -> bool:
        """
        Run the connectivity check, update link_lost and, when lost, attempt
        at most one reconnect per policy window. Returns the link state.
        A check that raises counts as a lost link.
        """
        try:
            connected = bool(link.is_connected())
        except Exception as ex:
            log.warning("rover link check failed: %s", ex)
            connected = False
        if not connected and self._policy.attempt_due():
            try:
                link.connect()
                connected = bool(link.is_connected())
            except Exception as ex:
                log.warning("rover reconnect failed: %s", ex)
            if connected:
                self._policy.record_success()
                log.info("rover reconnected")
            else:
                self._policy.record_failure()
        self.set_link_lost(not connected)
        return connected

    def set_link_lost(self, lost: bool) -> None:
        with self._lock:
            if self._state.link_lost == lost:
                return
            self._state = replace(self._state, link_lost=lost)
        if lost:
            log.warning("rover link lost")

    def reconnect_attempts(self) -> int:
        return self._policy.attempts()

    # ---- emergency stop ----
    def on_emergency_press(self) -> bool:
        """Toggle the e-stop for one consumed press edge; returns the new state."""
        with self._lock:
            active = not self._state.emergency_stop_active
            self._state = replace(self._state, emergency_stop_active=active)
        log.warning("EMERGENCY STOP %s", "ON" if active else "released")
        return active

    def trigger_emergency_stop(self) -> None:
        with self._lock:
            self._state = replace(self._state, emergency_stop_active=True)
        log.warning("EMERGENCY STOP ON")

    def reset_emergency_stop(self) -> None:
        with self._lock:
            self._state = replace(self._state, emergency_stop_active=False)
        log.info("emergency stop reset")

    # ---- gating ----
    def gate(self, left: float, right: float) -> Tuple[float, float]:
        """
        Apply the flags to a shaped command.

        E-stop forces (0, 0). An active obstacle removes the forward part of
        the command; reversing and turning in place stay available.
        """
        state = self.snapshot()
        if state.emergency_stop_active:
            return 0.0, 0.0
        if state.obstacle_active:
            forward = 0.5 * (left + right)
            if forward > 0:
                return left - forward, right - forward
        return left, right

    def snapshot(self) -> SafetyState:
        with self._lock:
            return self._state
