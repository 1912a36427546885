from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, List, Tuple
import threading

from rover_teleop.l0_core import EventBus, topics
from rover_teleop.l0_core.events import HumiditySnapshot, LightSnapshot, RangingSnapshot, Topic


@dataclass(frozen=True, slots=True)
class SensorView:
    """Immutable set of the latest snapshot per sensor stream (None until first publish)."""
    sonar: RangingSnapshot | None = None
    tof_left: RangingSnapshot | None = None
    tof_right: RangingSnapshot | None = None
    humidity: HumiditySnapshot | None = None
    light: LightSnapshot | None = None
    last_update_millis: int | None = None


_FIELDS: Tuple[Tuple[Topic[Any], str], ...] = (
    (topics.SONAR, "sonar"),
    (topics.TOF_LEFT, "tof_left"),
    (topics.TOF_RIGHT, "tof_right"),
    (topics.HUMIDITY, "humidity"),
    (topics.LIGHT, "light"),
)


class SensorStateStore:
    """
    Subscribes to every sensor topic and keeps the latest SensorView.

    Updates arrive on the sensor threads; the view is replaced wholesale
    under a lock so readers always get a consistent object.
    """

    def __init__(self, eventbus: EventBus) -> None:
        self._bus = eventbus
        self._lock = threading.Lock()
        self._view = SensorView()
        self._handlers: List[Tuple[Topic[Any], Callable[[Any], None]]] = []
        for topic, name in _FIELDS:
            handler = self._make_handler(name)
            self._bus.subscribe(topic, handler)
            self._handlers.append((topic, handler))

    def _make_handler(self, name: str) -> Callable[[Any], None]:
        def on_update(snap: Any) -> None:
            with self._lock:
                self._view = replace(self._view, **{name: snap, "last_update_millis": snap.timestamp_millis})
        on_update.__qualname__ = f"SensorStateStore.on_{name}"
        return on_update

    # ---- read API for other modules (returns immutable value object) ----
    def get(self) -> SensorView:
        with self._lock:
            return self._view

    def close(self) -> None:
        for topic, handler in self._handlers:
            self._bus.unsubscribe(topic, handler)
        self._handlers.clear()
