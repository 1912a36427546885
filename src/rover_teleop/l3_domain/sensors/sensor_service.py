"""
sensor_service.py
=================
Polling service shared by every sensor class (sonar, ToF, humidity, light).

One daemon thread per service:

    DISCONNECTED --attempt due--> OPENING --ok--> POLLING
         ^                           |               |
         +------- open fault --------+-- read fault -+

- The channel is opened with a hard timeout; reconnection goes through a
  ReconnectPolicy (first retry on the next cycle, then exponential backoff
  capped at 5 s).
- Sticky values are updated only from valid reads. A snapshot is published
  every cycle, carrying the sticky value(s), the attachment flag, the cycle
  timestamp and the error text of the latest failure. Ranging snapshots also
  carry the time of the last valid read, so consumers can tell a held value
  from a new measurement.
- The loop never raises. stop() is idempotent, and the channel is closed
  exactly once per successful open, whichever path observes the stop.

Usage:
    svc = RangingService("sonar", channel, bus, topics.SONAR, SONAR_PERIOD_MS)
    svc.start()
    ...
    svc.stop()
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Generic, Optional, Tuple, TypeVar
import logging
import math
import threading

from rover_teleop.l0_core import EventBus
from rover_teleop.l0_core.backoff import BackoffConfig, ReconnectPolicy
from rover_teleop.l0_core.events import (
    HumiditySnapshot, LightSnapshot, RangingSnapshot, Topic, now_ms,
)
from .channel import SensorChannel

S = TypeVar("S")

OPEN_TIMEOUT_MS = 5000
MAX_BACKOFF_MS = 5000
DIAG_LOG_INTERVAL_MS = 1000
DEFAULT_JOIN_TIMEOUT_S = 1.0

SONAR_PERIOD_MS = 250
TOF_PERIOD_MS = 40
HUMIDITY_PERIOD_MS = 500
LIGHT_PERIOD_MS = 500

log = logging.getLogger(__name__)


class ServiceState(str, Enum):
    DISCONNECTED = "disconnected"
    OPENING = "opening"
    POLLING = "polling"


def default_policy(period_ms: int, clock: Callable[[], int] = now_ms) -> ReconnectPolicy:
    """Retry on the next cycle, then double per failure up to MAX_BACKOFF_MS."""
    return ReconnectPolicy(BackoffConfig(period_ms, max(period_ms, MAX_BACKOFF_MS), 2.0), clock=clock)


class SensorService(ABC, Generic[S]):
    """
    Base class: owns one channel, one thread and the sticky value cell.

    Subclasses implement _accept() (fold one raw read into the sticky values)
    and _snapshot() (build the published immutable value).
    """

    def __init__(self,
                 name: str,
                 channel: SensorChannel,
                 bus: EventBus,
                 topic: Topic[S],
                 period_ms: int,
                 policy: Optional[ReconnectPolicy] = None,
                 open_timeout_ms: int = OPEN_TIMEOUT_MS,
                 clock: Callable[[], int] = now_ms) -> None:
        if period_ms <= 0:
            raise ValueError("period_ms must be > 0")
        self._name = name
        self._channel = channel
        self._bus = bus
        self._topic = topic
        self._period_ms = period_ms
        self._policy = policy or default_policy(period_ms, clock)
        self._open_timeout_ms = open_timeout_ms
        self._clock = clock

        self._state = ServiceState.DISCONNECTED
        self._channel_lock = threading.Lock()
        self._channel_open = False
        self._last_error: Optional[str] = None
        self._latest: Optional[S] = None
        self._last_diag_ms: Optional[int] = None

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()

    # ---- read API ----
    @property
    def name(self) -> str:
        return self._name

    @property
    def topic(self) -> Topic[S]:
        return self._topic

    def state(self) -> ServiceState:
        return self._state

    def latest(self) -> Optional[S]:
        """Most recently published snapshot (None before the first cycle)."""
        return self._latest

    def is_running(self) -> bool:
        t = self._thread
        return bool(t and t.is_alive())

    # ---- lifecycle ----
    def start(self) -> None:
        with self._lifecycle_lock:
            if self.is_running():
                if self._stop.is_set():
                    log.warning("%s: previous poller still stopping; start ignored", self._name)
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name=f"sensor-{self._name}", daemon=True)
            self._thread.start()

    def stop(self, join_timeout_s: float = DEFAULT_JOIN_TIMEOUT_S) -> None:
        """
        Stop polling and release the channel. Idempotent.

        The join is bounded; if the thread is still inside a slow read, it
        closes the channel itself on its way out, and the reference is kept
        so start() cannot spawn a second poller on the same channel meanwhile.
        """
        with self._lifecycle_lock:
            self._stop.set()
            t = self._thread
            if t and t.is_alive() and t is not threading.current_thread():
                t.join(timeout=join_timeout_s)
            if t is not None and t.is_alive():
                log.warning("%s: poller did not exit within %.1f s", self._name, join_timeout_s)
                return
            self._close_channel()
            self._thread = None

    # ---- one cycle ----
    def run_cycle(self) -> S:
        """
        Execute one DISCONNECTED/OPENING/POLLING step and publish the snapshot.

        Public so tests can drive the state machine without a thread.
        """
        ts = self._clock()
        attached = False
        error: Optional[str] = None

        if self._state is ServiceState.DISCONNECTED:
            if self._policy.attempt_due():
                error = self._try_open()
            else:
                error = self._last_error or f"{self._name} not open"

        if self._state is ServiceState.POLLING:
            try:
                values = self._channel.read()
                attached = bool(self._channel.is_attached())
                self._accept(values, ts)
            except Exception as ex:
                error = f"{self._name} read: {ex}"
                self._fault()

        if error is not None:
            self._last_error = error
        snap = self._snapshot(attached, ts, error)
        self._latest = snap
        self._bus.publish(self._topic, snap)
        self._diag(ts, attached, error)
        return snap

    def _try_open(self) -> Optional[str]:
        self._state = ServiceState.OPENING
        try:
            self._channel.open(self._open_timeout_ms)
        except Exception as ex:
            self._policy.record_failure()
            self._state = ServiceState.DISCONNECTED
            try:
                self._channel.close()
            except Exception:
                log.debug("%s: close after failed open", self._name, exc_info=True)
            log.warning("%s: open failed (%s); retry in %d ms", self._name, ex,
                        max(0, self._policy.next_attempt_ms() - self._clock()))
            return f"{self._name} open: {ex}"
        with self._channel_lock:
            self._channel_open = True
        self._policy.record_success()
        self._state = ServiceState.POLLING
        log.info("%s: channel open", self._name)
        return None

    def _fault(self) -> None:
        self._close_channel()
        self._state = ServiceState.DISCONNECTED
        self._policy.record_failure()

    def _close_channel(self) -> None:
        with self._channel_lock:
            if not self._channel_open:
                return
            self._channel_open = False
        try:
            self._channel.close()
        except Exception:
            log.warning("%s: error while closing channel", self._name, exc_info=True)

    def _diag(self, ts: int, attached: bool, error: Optional[str]) -> None:
        if self._last_diag_ms is not None and ts - self._last_diag_ms < DIAG_LOG_INTERVAL_MS:
            return
        self._last_diag_ms = ts
        log.debug("%s: state=%s attached=%s value=%s err=%s",
                  self._name, self._state.value, attached, self._describe(), error or "-")

    def _run(self) -> None:
        log.info("%s service started (period %d ms)", self._name, self._period_ms)
        try:
            while not self._stop.is_set():
                try:
                    self.run_cycle()
                except Exception:
                    log.exception("%s: unexpected error in poll cycle", self._name)
                    self._fault()
                self._stop.wait(self._period_ms / 1000.0)
        finally:
            self._close_channel()
            self._state = ServiceState.DISCONNECTED
            log.info("%s service stopped", self._name)

    # ---- subclass hooks ----
    @abstractmethod
    def _accept(self, values: Tuple[float, ...], ts: int) -> None:
        """Fold one raw read into the sticky value(s); invalid values are ignored."""

    @abstractmethod
    def _snapshot(self, attached: bool, ts: int, error: Optional[str]) -> S: ...

    def _describe(self) -> str:
        return "?"


def _first(values: Tuple[float, ...], index: int = 0) -> float:
    try:
        return float(values[index])
    except (IndexError, TypeError, ValueError):
        return math.nan


class RangingService(SensorService[RangingSnapshot]):
    """Sonar or ToF distance in mm; valid only when finite and > 0."""

    def __init__(self, name: str, channel: SensorChannel, bus: EventBus,
                 topic: Topic[RangingSnapshot], period_ms: int, **kwargs) -> None:
        super().__init__(name, channel, bus, topic, period_ms, **kwargs)
        self._distance_mm = math.nan
        self._distance_at_ms: Optional[int] = None

    def _accept(self, values: Tuple[float, ...], ts: int) -> None:
        d = _first(values)
        if math.isfinite(d) and d > 0:
            self._distance_mm = d
            self._distance_at_ms = ts

    def _snapshot(self, attached: bool, ts: int, error: Optional[str]) -> RangingSnapshot:
        # before the first valid read the NaN distance is "measured" now
        at = ts if self._distance_at_ms is None else self._distance_at_ms
        return RangingSnapshot(self._distance_mm, attached, ts, error,
                               source=self._name, value_timestamp_millis=at)

    def _describe(self) -> str:
        return "?" if math.isnan(self._distance_mm) else f"{self._distance_mm:.0f}mm"


class HumidityService(SensorService[HumiditySnapshot]):
    """Relative humidity and temperature from one humidity board."""

    def __init__(self, name: str, channel: SensorChannel, bus: EventBus,
                 topic: Topic[HumiditySnapshot], period_ms: int = HUMIDITY_PERIOD_MS, **kwargs) -> None:
        super().__init__(name, channel, bus, topic, period_ms, **kwargs)
        self._humidity = math.nan
        self._temperature = math.nan

    def _accept(self, values: Tuple[float, ...], ts: int) -> None:
        h = _first(values, 0)
        t = _first(values, 1)
        if math.isfinite(h):
            self._humidity = h
        if math.isfinite(t):
            self._temperature = t

    def _snapshot(self, attached: bool, ts: int, error: Optional[str]) -> HumiditySnapshot:
        return HumiditySnapshot(self._humidity, self._temperature, attached, ts, error)

    def _describe(self) -> str:
        return f"{self._humidity:.1f}%RH {self._temperature:.1f}C"


class LightService(SensorService[LightSnapshot]):
    def __init__(self, name: str, channel: SensorChannel, bus: EventBus,
                 topic: Topic[LightSnapshot], period_ms: int = LIGHT_PERIOD_MS, **kwargs) -> None:
        super().__init__(name, channel, bus, topic, period_ms, **kwargs)
        self._lux = math.nan

    def _accept(self, values: Tuple[float, ...], ts: int) -> None:
        lux = _first(values)
        if math.isfinite(lux) and lux >= 0:
            self._lux = lux

    def _snapshot(self, attached: bool, ts: int, error: Optional[str]) -> LightSnapshot:
        return LightSnapshot(self._lux, attached, ts, error)

    def _describe(self) -> str:
        return f"{self._lux:.0f}lx"
