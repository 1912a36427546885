"""
aggregator.py
=============
Mission statistics: subscribes to every sensor stream and the drive stream,
accumulates RunningStats, obstacle events and the odometry path, and rolls
them into one immutable MissionSnapshot per finalize().

All live state sits behind one lock, so correlated fields (min sonar distance
and its timestamp, event list and event count) always change together.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Tuple
import logging
import math
import threading

from rover_teleop.l0_core import EventBus, topics
from rover_teleop.l0_core.events import (
    DriveCommand, HumiditySnapshot, LightSnapshot, Pose, RangingSnapshot, Topic, now_ms, wall_ms,
)
from ..odometry import OdometryEngine
from .model import OBSTACLE_NEAR, MissionEvent, MissionSnapshot, RunningStat

NEAR_MM = 350.0
FAR_MM = 420.0
MAX_OBSTACLE_EVENTS = 40
SAMPLE_STALE_MS = 1200

log = logging.getLogger(__name__)


def mission_id_for(epoch_ms: int) -> str:
    """MISSION-YYYYmmdd-HHMMSS in local time."""
    return "MISSION-" + datetime.fromtimestamp(epoch_ms / 1000.0).strftime("%Y%m%d-%H%M%S")


class MissionAggregator:
    """
    Parameters:
        odometry:    Engine fed from "drive.command"; reset at every mission start.
        near_mm / far_mm:
                     Sonar hysteresis for OBSTACLE_NEAR events (independent of
                     the safety thresholds).
        max_events:  Cap on the stored event list.
        stale_ms:    Samples whose timestamp is older than this are dropped
                     (ranging: the time the held value was measured).
        clock:       Monotonic ms clock (staleness).
        wall_clock:  Epoch ms clock (mission start/end, event stamps).
    """

    def __init__(self,
                 odometry: OdometryEngine,
                 near_mm: float = NEAR_MM,
                 far_mm: float = FAR_MM,
                 max_events: int = MAX_OBSTACLE_EVENTS,
                 stale_ms: int = SAMPLE_STALE_MS,
                 clock: Callable[[], int] = now_ms,
                 wall_clock: Callable[[], int] = wall_ms) -> None:
        if far_mm < near_mm:
            raise ValueError("far_mm must be >= near_mm")
        self._odometry = odometry
        self._near_mm = near_mm
        self._far_mm = far_mm
        self._max_events = max_events
        self._stale_ms = stale_ms
        self._clock = clock
        self._wall = wall_clock

        self._lock = threading.Lock()
        self._stats: Dict[str, RunningStat] = {
            name: RunningStat()
            for name in ("temperature", "humidity", "light", "sonar", "tof_left", "tof_right")
        }
        # stream -> value_time_ms of the last ranging sample counted
        self._counted_at: Dict[str, int] = {}
        self._events: List[MissionEvent] = []
        self._event_count = 0
        self._near = False
        self._min_sonar_mm = math.nan
        self._min_sonar_at_ms = 0
        self._mission_id = ""
        self._start_ms = 0
        self._start_pose = Pose()
        self._last_end_ms = 0
        self._subscriptions: List[Tuple[Topic[Any], Callable[[Any], None]]] = []

        with self._lock:
            self._start_mission_locked(self._wall())

    # ---- wiring ----
    def attach(self, bus: EventBus) -> None:
        for topic, cb in (
            (topics.HUMIDITY, self.on_humidity),
            (topics.LIGHT, self.on_light),
            (topics.SONAR, self.on_sonar),
            (topics.TOF_LEFT, self.on_tof_left),
            (topics.TOF_RIGHT, self.on_tof_right),
            (topics.DRIVE, self.on_drive),
        ):
            bus.subscribe(topic, cb)
            self._subscriptions.append((topic, cb))

    def detach(self, bus: EventBus) -> None:
        for topic, cb in self._subscriptions:
            bus.unsubscribe(topic, cb)
        self._subscriptions.clear()

    # ---- handlers (publisher threads) ----
    def _fresh(self, timestamp_millis: int) -> bool:
        return self._clock() - timestamp_millis <= self._stale_ms

    def on_humidity(self, snap: HumiditySnapshot) -> None:
        if not snap.attached or not self._fresh(snap.timestamp_millis):
            return
        with self._lock:
            self._stats["humidity"].add(snap.humidity_percent)
            self._stats["temperature"].add(snap.temperature_celsius)

    def on_light(self, snap: LightSnapshot) -> None:
        if not snap.attached or not self._fresh(snap.timestamp_millis):
            return
        with self._lock:
            self._stats["light"].add(snap.illuminance_lux)

    def on_tof_left(self, snap: RangingSnapshot) -> None:
        self._add_ranging("tof_left", snap)

    def on_tof_right(self, snap: RangingSnapshot) -> None:
        self._add_ranging("tof_right", snap)

    def _add_ranging(self, name: str, snap: RangingSnapshot) -> None:
        if not snap.is_valid() or not self._fresh(snap.value_time_ms):
            return
        with self._lock:
            if self._already_counted(name, snap):
                return
            self._stats[name].add(snap.distance_mm)

    def _already_counted(self, name: str, snap: RangingSnapshot) -> bool:
        """A held value is republished every cycle; count each measurement once."""
        if self._counted_at.get(name) == snap.value_time_ms:
            return True
        self._counted_at[name] = snap.value_time_ms
        return False

    def on_sonar(self, snap: RangingSnapshot) -> None:
        if not snap.is_valid() or not self._fresh(snap.value_time_ms):
            with self._lock:
                self._near = False
            return

        d = snap.distance_mm
        at = self._wall()
        with self._lock:
            if self._already_counted("sonar", snap):
                return
            self._stats["sonar"].add(d)
            if math.isnan(self._min_sonar_mm) or d < self._min_sonar_mm:
                self._min_sonar_mm = d
                self._min_sonar_at_ms = at

            if self._near:
                self._near = d <= self._far_mm
            elif d <= self._near_mm:
                self._near = True
                self._event_count += 1
                if len(self._events) < self._max_events:
                    self._events.append(MissionEvent(OBSTACLE_NEAR, f"sonar {d:.0f} mm", at))

    def on_drive(self, cmd: DriveCommand) -> None:
        self._odometry.update_from_commands(cmd.left, cmd.right)

    # ---- queries ----
    @property
    def mission_id(self) -> str:
        with self._lock:
            return self._mission_id

    def sample_counts(self) -> Dict[str, int]:
        with self._lock:
            return {name: st.count for name, st in self._stats.items()}

    def obstacle_event_count(self) -> int:
        with self._lock:
            return self._event_count

    # ---- finalize ----
    def finalize(self) -> MissionSnapshot:
        """
        Close the running mission and start the next one.

        End timestamps are strictly increasing across calls, so two
        back-to-back finalizes never produce the same end time.
        """
        with self._lock:
            end = max(self._wall(), self._last_end_ms + 1)
            self._last_end_ms = end
            path = tuple(self._odometry.history())
            snapshot = MissionSnapshot(
                mission_id=self._mission_id,
                start_time_ms=self._start_ms,
                end_time_ms=end,
                duration_ms=max(0, end - self._start_ms),
                temperature=self._stats["temperature"].stats(),
                humidity=self._stats["humidity"].stats(),
                light=self._stats["light"].stats(),
                sonar=self._stats["sonar"].stats(),
                tof_left=self._stats["tof_left"].stats(),
                tof_right=self._stats["tof_right"].stats(),
                min_sonar_distance_mm=self._min_sonar_mm,
                min_sonar_at_ms=self._min_sonar_at_ms,
                obstacle_event_count=self._event_count,
                obstacle_threshold_mm=self._near_mm,
                events=tuple(self._events),
                total_distance_m=self._odometry.total_distance_m(),
                start_pose=self._start_pose,
                end_pose=self._odometry.pose(),
                path=path,
            )
            self._start_mission_locked(end)
        log.info("mission %s finalized: %.1f s, %.2f m, %d obstacle events",
                 snapshot.mission_id, snapshot.duration_ms / 1000.0,
                 snapshot.total_distance_m, snapshot.obstacle_event_count)
        return snapshot

    def _start_mission_locked(self, start_ms: int) -> None:
        for st in self._stats.values():
            st.reset()
        self._events = []
        self._event_count = 0
        self._near = False
        self._min_sonar_mm = math.nan
        self._min_sonar_at_ms = 0
        self._odometry.reset()
        self._start_pose = self._odometry.pose()
        self._start_ms = start_ms
        self._mission_id = mission_id_for(start_ms)
        log.info("mission %s started", self._mission_id)

