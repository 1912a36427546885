"""
teleop.py
=========
Fixed-rate teleoperation loop: gamepad -> shaped command -> safety -> motors.

Each 50 ms tick:
    1. sample the input device (disconnected pad => stop, no mapping)
    2. connectivity check + throttled reconnect (runs even without a pad;
       a failing check counts as a lost link and the wheels get a best-effort stop)
    3. obstacle hysteresis over the latest ranging snapshots
    4. consume the e-stop press edge (exactly once per press)
    5. shape triggers/stick into (left, right)
    6. gate through the safety flags (e-stop wins unconditionally)
    7. actuate and publish the same pair on "drive.command" (odometry)
    8. every ~200 ms publish a UiSnapshot on "ui.snapshot"

Shutdown order: zero command -> disconnect link -> stop sensor services ->
unsubscribe everything. Each step is guarded on its own.
"""
from __future__ import annotations

from typing import Callable, Iterable, Optional, Protocol, Tuple
import logging
import threading

from rover_teleop.l0_core import EventBus, topics
from rover_teleop.l0_core.events import DriveCommand, UiSnapshot, now_ms
from rover_teleop.l1_drivers.gamepad import GamepadState, Haptics
from .odometry import OdometryEngine
from .safety import SafetyCoordinator
from .state_store import SensorStateStore
from .vehicle import Actuator, SpeedMode

TELEOP_PERIOD_MS = 50
UI_PERIOD_MS = 200

MAX_CMD = 1.0
TURN_DEADZONE = 0.12
TURN_GAIN = 0.8
TURN_LIMIT = 0.8

# rumble patterns: (left, right, duration_ms), strengths in [0, 1]
LINK_LOST_PULSE = (0.46, 0.0, 400)
OBSTACLE_PULSE = (0.0, 0.46, 200)

log = logging.getLogger(__name__)


class InputDevice(Protocol):
    def state(self) -> GamepadState: ...

    def consume_emergency_stop_press(self) -> bool: ...

    @property
    def haptics(self) -> Haptics: ...


class Stoppable(Protocol):
    name: str

    def stop(self) -> None: ...


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def shape_command(right_trigger: float, left_trigger: float, left_x: float) -> Tuple[float, float]:
    """
    Map triggers and stick to (left, right) wheel commands.

    Throttle is RT - LT. Turn is a cubic curve of LX with a 0.12 deadzone;
    its authority halves as throttle approaches full scale.

    >>> shape_command(1.0, 0.0, 0.0)
    (1.0, 1.0)
    >>> shape_command(0.0, 0.0, 0.05)
    (0.0, 0.0)
    """
    throttle = _clamp(right_trigger - left_trigger, -MAX_CMD, MAX_CMD)

    raw = left_x if abs(left_x) >= TURN_DEADZONE else 0.0
    turn = raw * abs(raw) * abs(raw)
    turn *= TURN_GAIN
    turn *= 0.5 + 0.5 * (1.0 - abs(throttle))
    turn = _clamp(turn, -TURN_LIMIT, TURN_LIMIT)

    left = _clamp(throttle + turn, -MAX_CMD, MAX_CMD)
    right = _clamp(throttle - turn, -MAX_CMD, MAX_CMD)
    return left, right


class TeleopControlLoop:
    """
    Owns the teleop thread. tick() is public so tests can step the loop
    with a fake clock.
    """

    def __init__(self,
                 bus: EventBus,
                 pad: InputDevice,
                 actuator: Actuator,
                 safety: SafetyCoordinator,
                 odometry: OdometryEngine,
                 store: SensorStateStore,
                 services: Iterable[Stoppable] = (),
                 period_ms: int = TELEOP_PERIOD_MS,
                 ui_period_ms: int = UI_PERIOD_MS,
                 clock: Callable[[], int] = now_ms) -> None:
        self._bus = bus
        self._pad = pad
        self._actuator = actuator
        self._safety = safety
        self._odometry = odometry
        self._store = store
        self._services = list(services)
        self._period_ms = period_ms
        self._ui_period_ms = ui_period_ms
        self._clock = clock

        self._next_ui_ms = 0
        self._link_lost_warned = False
        self._obstacle_warned = False
        self._pad_connected: Optional[bool] = None
        self._last_sent: Tuple[float, float] = (0.0, 0.0)

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

    # ---- lifecycle ----
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="teleop", daemon=True)
        self._thread.start()

    def stop(self, join_timeout_s: float = 1.0) -> None:
        self._stop.set()
        t = self._thread
        if t and t.is_alive() and t is not threading.current_thread():
            t.join(timeout=join_timeout_s)
        self._thread = None

    def _run(self) -> None:
        log.info("teleop loop started (%d ms)", self._period_ms)
        while not self._stop.is_set():
            started = self._clock()
            try:
                self.tick()
            except Exception:
                log.exception("teleop tick failed")
            elapsed = self._clock() - started
            self._stop.wait(max(0, self._period_ms - elapsed) / 1000.0)
        log.info("teleop loop stopped")

    # ---- one tick ----
    def tick(self) -> None:
        now = self._clock()
        pad = self._pad.state()
        self._track_pad(pad.connected)

        link_ok = self._safety.check_link(self._actuator.link)

        if not pad.connected:
            self._force_stop()
            self._safety.clear_obstacle()
            self._link_lost_warned = False
            self._obstacle_warned = False
            self._publish_drive(0.0, 0.0, now)
            self._maybe_publish_ui(now, pad)
            return

        self._safety.evaluate_obstacle()

        if self._pad.consume_emergency_stop_press():
            self._safety.on_emergency_press()

        self._actuator.set_speed_mode(SpeedMode.SLOW if pad.button_lb else SpeedMode.NORMAL)

        left, right = shape_command(pad.right_trigger, pad.left_trigger, pad.left_x)
        left, right = self._safety.gate(left, right)

        sent = (0.0, 0.0)
        if link_ok:
            try:
                self._actuator.apply(left, right)
                sent = self._actuator.last_command()
            except Exception as ex:
                log.warning("drive command failed: %s", ex)
                self._safety.set_link_lost(True)
        else:
            self._force_stop()
        self._publish_drive(sent[0], sent[1], now)

        self._haptic_alerts()
        self._maybe_publish_ui(now, pad)

    def _track_pad(self, connected: bool) -> None:
        if connected != self._pad_connected:
            if connected:
                log.info("input device connected")
            elif self._pad_connected is not None:
                log.warning("input device disconnected; rover stopped")
            self._pad_connected = connected

    def _force_stop(self) -> None:
        try:
            self._actuator.stop()
        except Exception as ex:
            log.debug("best-effort stop failed: %s", ex)

    def _publish_drive(self, left: float, right: float, now: int) -> None:
        self._last_sent = (left, right)
        self._bus.publish(topics.DRIVE, DriveCommand(left, right, now))

    def _haptic_alerts(self) -> None:
        state = self._safety.snapshot()
        haptics = self._pad.haptics

        if state.link_lost and not self._link_lost_warned:
            self._link_lost_warned = True
            haptics.pulse(*LINK_LOST_PULSE)
            log.info("link lost -> rumble alert")
        elif not state.link_lost:
            self._link_lost_warned = False

        if state.obstacle_active and not self._obstacle_warned:
            self._obstacle_warned = True
            haptics.pulse(*OBSTACLE_PULSE)
        elif not state.obstacle_active:
            self._obstacle_warned = False

    def _maybe_publish_ui(self, now: int, pad: GamepadState) -> None:
        if now < self._next_ui_ms:
            return
        self._next_ui_ms = now + self._ui_period_ms
        self._bus.publish(topics.UI, self.ui_snapshot(now, pad))

    def ui_snapshot(self, now: Optional[int] = None, pad: Optional[GamepadState] = None) -> UiSnapshot:
        pad = pad or self._pad.state()
        sensors = self._store.get()
        safety = self._safety.snapshot()
        return UiSnapshot(
            timestamp_millis=self._clock() if now is None else now,
            rover_connected=not safety.link_lost,
            pad_connected=pad.connected,
            slow_mode=self._actuator.speed_mode is SpeedMode.SLOW,
            left_cmd=self._last_sent[0],
            right_cmd=self._last_sent[1],
            safety=safety,
            pose=self._odometry.pose(),
            total_distance_m=self._odometry.total_distance_m(),
            sonar=sensors.sonar,
            tof_left=sensors.tof_left,
            tof_right=sensors.tof_right,
            humidity=sensors.humidity,
            light=sensors.light,
        )

    # ---- shutdown ----
    def shutdown(self) -> None:
        """Stop the loop and release everything. Idempotent; never raises."""
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True
        self.stop()

        try:
            self._actuator.stop()
            log.info("shutdown: wheels zeroed")
        except Exception:
            log.exception("shutdown: zero command failed")

        try:
            self._pad.haptics.stop()
        except Exception:
            log.exception("shutdown: haptics stop failed")

        try:
            self._actuator.link.disconnect()
        except Exception:
            log.exception("shutdown: rover disconnect failed")

        for svc in self._services:
            try:
                svc.stop()
            except Exception:
                log.exception("shutdown: stopping %s failed", getattr(svc, "name", svc))

        try:
            self._bus.unsubscribe_all()
        except Exception:
            log.exception("shutdown: unsubscribe failed")
        log.info("shutdown complete")
