from __future__ import annotations

from typing import Callable
import logging
import threading

from rover_teleop.l0_core import EventBus, topics
from rover_teleop.l0_core.events import RangingSnapshot, SonarRisk, now_ms

RISK_THRESHOLD_MM = 350.0
RISK_REPEAT_MS = 800
OBSTACLE_NEAR = "OBSTACLE_NEAR"

log = logging.getLogger(__name__)


class SonarRiskMonitor:
    """
    Publishes SonarRisk on "sonar.risk" when the sonar reports something
    within threshold_mm: once on the near edge, then every repeat_ms while
    it stays near. Detached or invalid readings clear the near state.
    """

    def __init__(self, bus: EventBus,
                 threshold_mm: float = RISK_THRESHOLD_MM,
                 repeat_ms: int = RISK_REPEAT_MS,
                 clock: Callable[[], int] = now_ms) -> None:
        self._bus = bus
        self._threshold_mm = max(1.0, threshold_mm)
        self._repeat_ms = repeat_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._near = False
        self._next_risk_ms = 0

    @property
    def threshold_mm(self) -> float:
        return self._threshold_mm

    def attach(self) -> None:
        self._bus.subscribe(topics.SONAR, self.on_sonar)

    def detach(self) -> None:
        self._bus.unsubscribe(topics.SONAR, self.on_sonar)

    def on_sonar(self, snap: RangingSnapshot) -> None:
        if not snap.is_valid():
            with self._lock:
                self._near = False
            return

        now = self._clock()
        near = snap.distance_mm <= self._threshold_mm
        with self._lock:
            fire = near and (not self._near or now >= self._next_risk_ms)
            self._near = near
            if fire:
                self._next_risk_ms = now + self._repeat_ms
        if fire:
            # outside the lock; handlers may call back in
            self._bus.publish(topics.SONAR_RISK,
                              SonarRisk(OBSTACLE_NEAR, snap.distance_mm, self._threshold_mm, now))
            log.debug("sonar risk: %.0f mm", snap.distance_mm)
