"""
gamepad.py
==========
Input-device adapter for an XInput-style gamepad read through the `inputs`
library.

Design:
- A dedicated poller thread blocks on the device event stream and folds each
  event into a PadStateTracker. The teleop loop never touches the device; it
  samples immutable GamepadState values and consumes button edges.
- Button presses that matter for safety (B = emergency stop) are latched as
  rising edges on the poller thread, so a short tap between two 50 ms control
  ticks is never lost and a held button never fires twice.
- Rumble support is negotiated once per acquired device (negotiate_haptics);
  pads without force feedback get NullHaptics instead of failing later.

Usage:
    pad = InputsGamepad(player_index=0)
    pad.start()
    st = pad.state()
    if pad.consume_emergency_stop_press():
        ...
    pad.stop()
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping, Optional, Protocol
import logging
import threading

import inputs

from rover_teleop.l0_core.backoff import BackoffConfig, ReconnectPolicy
from rover_teleop.l0_core.events import now_ms

DEFAULT_STICK_DEADZONE = 0.10
RECONNECT_MS = 1000
IDLE_WAIT_S = 0.05

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GamepadState:
    """Immutable sample of the pad: sticks in [-1, 1], triggers in [0, 1]."""
    connected: bool = False
    left_x: float = 0.0
    left_y: float = 0.0
    right_x: float = 0.0
    right_y: float = 0.0
    left_trigger: float = 0.0
    right_trigger: float = 0.0
    button_b: bool = False
    button_lb: bool = False
    button_rb: bool = False


@dataclass(frozen=True, slots=True)
class AxisSpec:
    """Raw evdev range of one absolute axis and the GamepadState field it feeds."""
    target: str
    minimum: int
    maximum: int
    invert: bool = False

    def normalize(self, raw: int) -> float:
        span = self.maximum - self.minimum
        if span <= 0:
            return 0.0
        if self.minimum < 0:
            # symmetric stick: map to [-1, 1]
            value = (2.0 * (raw - self.minimum) / span) - 1.0
            value = max(-1.0, min(1.0, value))
        else:
            value = max(0.0, min(1.0, (raw - self.minimum) / span))
        return -value if self.invert else value


# Xbox-style pad on the Linux xpad driver. Other drivers report triggers 0..1023;
# pass a custom axis map in that case.
DEFAULT_AXES: Mapping[str, AxisSpec] = {
    "ABS_X": AxisSpec("left_x", -32768, 32767),
    "ABS_Y": AxisSpec("left_y", -32768, 32767, invert=True),
    "ABS_RX": AxisSpec("right_x", -32768, 32767),
    "ABS_RY": AxisSpec("right_y", -32768, 32767, invert=True),
    "ABS_Z": AxisSpec("left_trigger", 0, 255),
    "ABS_RZ": AxisSpec("right_trigger", 0, 255),
}

# `inputs` names face buttons differently per driver, so both spellings map.
DEFAULT_BUTTONS: Mapping[str, str] = {
    "BTN_EAST": "button_b",
    "BTN_B": "button_b",
    "BTN_TL": "button_lb",
    "BTN_TR": "button_rb",
}

_STICK_FIELDS = frozenset({"left_x", "left_y", "right_x", "right_y"})


class PadStateTracker:
    """
    Folds raw (code, value) events into a GamepadState and latches B-button
    rising edges. Thread-safe: the poller writes, the control loop reads.
    """

    def __init__(self,
                 axes: Mapping[str, AxisSpec] = DEFAULT_AXES,
                 buttons: Mapping[str, str] = DEFAULT_BUTTONS,
                 stick_deadzone: float = DEFAULT_STICK_DEADZONE) -> None:
        self._axes = dict(axes)
        self._buttons = dict(buttons)
        self._deadzone = stick_deadzone
        self._lock = threading.Lock()
        self._state = GamepadState()
        self._prev_b = False
        self._estop_press_pending = False
        self._estop_presses = 0

    def apply(self, code: str, value: int) -> None:
        """Apply one raw event; unknown codes are ignored."""
        with self._lock:
            axis = self._axes.get(code)
            if axis is not None:
                v = axis.normalize(value)
                if axis.target in _STICK_FIELDS and abs(v) < self._deadzone:
                    v = 0.0
                self._state = replace(self._state, **{axis.target: v})
                return

            name = self._buttons.get(code)
            if name is None:
                return
            pressed = bool(value)
            self._state = replace(self._state, **{name: pressed})
            if name == "button_b":
                if pressed and not self._prev_b:
                    self._estop_press_pending = True
                    self._estop_presses += 1
                self._prev_b = pressed

    def set_connected(self, connected: bool) -> None:
        """A disconnect resets every axis/button so a stale throttle cannot survive a replug."""
        with self._lock:
            if connected:
                self._state = replace(self._state, connected=True)
            else:
                self._state = GamepadState(connected=False)
                self._prev_b = False
                self._estop_press_pending = False

    def state(self) -> GamepadState:
        with self._lock:
            return self._state

    def consume_emergency_stop_press(self) -> bool:
        """True exactly once per detected B rising edge."""
        with self._lock:
            pending = self._estop_press_pending
            self._estop_press_pending = False
            return pending

    def emergency_stop_presses(self) -> int:
        with self._lock:
            return self._estop_presses


# ---------------------------------------------------------------------------
# Haptics
# ---------------------------------------------------------------------------

class Haptics(Protocol):
    """Rumble sink. Strengths are in [0, 1]; calls never raise."""
    supported: bool

    def pulse(self, left: float, right: float, duration_ms: int) -> None: ...

    def stop(self) -> None: ...


class NullHaptics:
    """Typed fallback for pads (or drivers) without force feedback."""
    supported = False

    def pulse(self, left: float, right: float, duration_ms: int) -> None:
        return None

    def stop(self) -> None:
        return None


class GamepadHaptics:
    """
    Rumble on an `inputs` GamePad.

    set_vibration may block for the effect duration on some platforms, so each
    pulse runs on a short-lived daemon thread and the caller returns at once.
    """
    supported = True

    def __init__(self, device: Any) -> None:
        self._device = device

    def pulse(self, left: float, right: float, duration_ms: int) -> None:
        left = max(0.0, min(1.0, left))
        right = max(0.0, min(1.0, right))
        t = threading.Thread(
            target=self._vibrate, args=(left, right, max(0, duration_ms)),
            name="haptics-pulse", daemon=True,
        )
        t.start()

    def stop(self) -> None:
        self._vibrate(0.0, 0.0, 0)

    def _vibrate(self, left: float, right: float, duration_ms: int) -> None:
        try:
            self._device.set_vibration(left, right, duration_ms)
        except Exception:
            log.debug("vibration failed", exc_info=True)


def negotiate_haptics(device: Any) -> Haptics:
    """
    Resolve rumble support once for a freshly acquired device.

    A zero-strength effect is submitted; if the driver rejects it the pad gets
    NullHaptics for the rest of its session.
    """
    if device is None:
        return NullHaptics()
    try:
        device.set_vibration(0, 0, 0)
    except Exception as ex:
        log.info("gamepad has no usable force feedback (%s); haptics disabled", ex)
        return NullHaptics()
    return GamepadHaptics(device)


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------

def _default_acquire(player_index: int) -> Any:
    # fresh DeviceManager rescans /dev/input so hot-plugged pads are found
    return inputs.DeviceManager().gamepads[player_index]


@dataclass
class _PadSession:
    device: Any = None
    haptics: Haptics = field(default_factory=NullHaptics)


class InputsGamepad:
    """
    Input device backed by the `inputs` library, polled on its own thread.

    Reconnection uses the shared ReconnectPolicy with a fixed 1 s window.
    """

    def __init__(self,
                 player_index: int = 0,
                 tracker: Optional[PadStateTracker] = None,
                 acquire: Optional[Callable[[int], Any]] = None,
                 policy: Optional[ReconnectPolicy] = None) -> None:
        self._index = player_index
        self._tracker = tracker or PadStateTracker()
        self._acquire = acquire or _default_acquire
        self._policy = policy or ReconnectPolicy(
            BackoffConfig(RECONNECT_MS, RECONNECT_MS, 1.0), clock=now_ms)
        self._session = _PadSession()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---- InputDevice surface ----
    def state(self) -> GamepadState:
        return self._tracker.state()

    def consume_emergency_stop_press(self) -> bool:
        return self._tracker.consume_emergency_stop_press()

    @property
    def haptics(self) -> Haptics:
        return self._session.haptics

    # ---- lifecycle ----
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="gamepad-poller", daemon=True)
        self._thread.start()

    def stop(self, join_timeout_s: float = 0.5) -> None:
        """
        Stop polling and silence the motors.

        device.read() blocks until the next event, so the join is bounded and
        the daemon thread is left to exit on its next event if still blocked.
        """
        self._stop.set()
        self._session.haptics.stop()
        t = self._thread
        if t and t.is_alive() and t is not threading.current_thread():
            t.join(timeout=join_timeout_s)
        self._thread = None

    def poll_once(self) -> None:
        """One poller iteration: acquire if needed, else read one event batch."""
        if self._session.device is None:
            if not self._policy.attempt_due():
                self._stop.wait(IDLE_WAIT_S)
                return
            try:
                device = self._acquire(self._index)
            except (IndexError, inputs.UnpluggedError, OSError) as ex:
                self._policy.record_failure()
                self._tracker.set_connected(False)
                log.debug("gamepad %d not available: %s", self._index, ex)
                return
            self._policy.record_success()
            self._session = _PadSession(device=device, haptics=negotiate_haptics(device))
            self._tracker.set_connected(True)
            log.info("gamepad connected (player %d)", self._index)
            return

        try:
            events = self._session.device.read()
        except (inputs.UnpluggedError, OSError) as ex:
            self._drop_device(f"gamepad disconnected: {ex}")
            return

        for ev in events:
            if ev.ev_type in ("Absolute", "Key"):
                self._tracker.apply(ev.code, ev.state)

    def _drop_device(self, msg: str) -> None:
        was_connected = self._tracker.state().connected
        self._session = _PadSession()
        self._tracker.set_connected(False)
        if was_connected:
            log.warning(msg)

    def _run(self) -> None:
        log.info("gamepad poller started")
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                log.exception("gamepad poller error")
                self._drop_device("gamepad dropped after poller error")
        log.info("gamepad poller stopped")
