"""
sim.py
======
In-process stand-in for the rover's Phidget network hub.

SimPhidgetHub hands out channel objects with the Phidget22 method names the
adapters use (setHubPort, openWaitForAttachment, getDistance, ...), plus a
net object with addServer/removeServer. The full stack (vehicle link,
sensor channels, services) then runs unchanged on a bench without hardware:

    hub = SimPhidgetHub("MaxRover")
    hub.add_device(3, ChannelKind.DISTANCE, lambda: (820.0,))
    server = PhidgetServer("MaxRover", "sim", net=hub.net)
    sonar = PhidgetSensorChannel(server, ChannelKind.DISTANCE, 3, factory=hub.factory)

Fault injection for tests: set_reachable(False) makes opens time out and
open channels detach, like a dropped network hub; set_attached() detaches
one device. A value source returning NaN makes the channel raise the
"unknown value" error a sonar raises without an echo.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple, Union
import math
import threading
import time

from Phidget22.ErrorCode import ErrorCode
from Phidget22.PhidgetException import PhidgetException

from .channels import ChannelKind

Values = Tuple[float, ...]
ValueSource = Union[Values, Callable[[], Values]]
DeviceKey = Tuple[int, int, ChannelKind]


class SimPhidgetError(PhidgetException):
    """PhidgetException raised by the simulator (no native library involved)."""

    def __init__(self, code: int, description: str) -> None:
        Exception.__init__(self, description)
        self.code = code
        self.description = description
        self.details = description

    def __str__(self) -> str:
        return self.description


@dataclass
class SimDevice:
    source: ValueSource = ()
    attached: bool = True

    def values(self) -> Values:
        src = self.source
        return tuple(src()) if callable(src) else tuple(src)


class SimNet:
    """addServer/removeServer bookkeeping with the Phidget22.Net signatures."""

    def __init__(self) -> None:
        self.servers: Dict[str, Tuple[str, int]] = {}
        self.add_calls = 0

    def addServer(self, serverName, address, port, password, flags) -> None:
        self.add_calls += 1
        if serverName in self.servers:
            raise SimPhidgetError(ErrorCode.EPHIDGET_DUPLICATE, f"server {serverName} already added")
        self.servers[serverName] = (address, port)

    def removeServer(self, serverName) -> None:
        self.servers.pop(serverName, None)


class SimChannel:
    """One simulated Phidget channel object of a given kind."""

    def __init__(self, hub: "SimPhidgetHub", kind: ChannelKind) -> None:
        self._hub = hub
        self.kind = kind
        self.server_name: Optional[str] = None
        self.hub_port = -1
        self.channel = 0
        self.hub_port_device = False
        self.remote = False
        self.is_open = False

    # ---- addressing ----
    def setServerName(self, name: str) -> None:
        self.server_name = name

    def setIsRemote(self, remote: bool) -> None:
        self.remote = remote

    def setHubPort(self, port: int) -> None:
        self.hub_port = port

    def setChannel(self, channel: int) -> None:
        self.channel = channel

    def setIsHubPortDevice(self, flag: bool) -> None:
        self.hub_port_device = flag

    @property
    def key(self) -> DeviceKey:
        return (self.hub_port, self.channel, self.kind)

    # ---- lifecycle ----
    def openWaitForAttachment(self, timeout_ms: int) -> None:
        self._hub._open(self, timeout_ms)

    def close(self) -> None:
        self._hub._close(self)

    def getAttached(self) -> bool:
        return self.is_open and self._hub._attached(self)

    # ---- values ----
    def _value(self, index: int) -> float:
        values = self._hub._read(self)
        v = values[index] if index < len(values) else math.nan
        if not math.isfinite(v):
            raise SimPhidgetError(ErrorCode.EPHIDGET_UNKNOWNVAL, "unknown value")
        return v

    def getDistance(self) -> float:
        return self._value(0)

    def getHumidity(self) -> float:
        return self._value(0)

    def getTemperature(self) -> float:
        # the temperature class reads the second value of the humidity board
        return self._value(1)

    def getIlluminance(self) -> float:
        return self._value(0)

    def setTargetVelocity(self, velocity: float) -> None:
        self._hub._drive(self, velocity)


class SimPhidgetHub:
    """Device model behind the simulated channels; thread-safe."""

    def __init__(self, server_name: str = "SimRover") -> None:
        self.server_name = server_name
        self.net = SimNet()
        self._lock = threading.Lock()
        self._devices: Dict[DeviceKey, SimDevice] = {}
        self._open_list: List[SimChannel] = []
        self._reachable = True
        self._velocity: Dict[int, float] = {0: 0.0, 1: 0.0}
        self.open_counts: Dict[DeviceKey, int] = {}

    def add_device(self, hub_port: int, kind: ChannelKind,
                   source: ValueSource = (), channel: int = 0, attached: bool = True) -> SimDevice:
        """Register a device; HUMIDITY also answers as TEMPERATURE on the same port."""
        dev = SimDevice(source, attached)
        with self._lock:
            self._devices[(hub_port, channel, kind)] = dev
            if kind is ChannelKind.HUMIDITY:
                self._devices[(hub_port, channel, ChannelKind.TEMPERATURE)] = dev
        return dev

    def add_motors(self, hub_port: int) -> None:
        self.add_device(hub_port, ChannelKind.MOTOR, channel=0)
        self.add_device(hub_port, ChannelKind.MOTOR, channel=1)

    def factory(self, kind: ChannelKind) -> SimChannel:
        """ChannelFactory for the adapters."""
        return SimChannel(self, kind)

    # ---- fault injection / inspection ----
    def set_attached(self, hub_port: int, attached: bool, kind: ChannelKind = ChannelKind.DISTANCE,
                     channel: int = 0) -> None:
        with self._lock:
            self._devices[(hub_port, channel, kind)].attached = attached

    def set_reachable(self, reachable: bool) -> None:
        with self._lock:
            self._reachable = reachable

    @property
    def wheels(self) -> Tuple[float, float]:
        with self._lock:
            return self._velocity[0], self._velocity[1]

    def open_channels(self) -> Set[DeviceKey]:
        with self._lock:
            return {ch.key for ch in self._open_list}

    def is_channel_open(self, hub_port: int, kind: ChannelKind, channel: int = 0) -> bool:
        return (hub_port, channel, kind) in self.open_channels()

    # ---- channel callbacks ----
    def _open(self, ch: SimChannel, timeout_ms: int) -> None:
        with self._lock:
            self.open_counts[ch.key] = self.open_counts.get(ch.key, 0) + 1
            if ch.server_name != self.server_name or ch.server_name not in self.net.servers:
                raise SimPhidgetError(ErrorCode.EPHIDGET_TIMEOUT, f"server {ch.server_name} not found")
            dev = self._devices.get(ch.key)
            if not self._reachable or dev is None or not dev.attached:
                raise SimPhidgetError(ErrorCode.EPHIDGET_TIMEOUT,
                                      f"no {ch.kind.value} at {ch.key[:2]} within {timeout_ms} ms")
            ch.is_open = True
            self._open_list.append(ch)

    def _close(self, ch: SimChannel) -> None:
        with self._lock:
            ch.is_open = False
            if ch in self._open_list:
                self._open_list.remove(ch)

    def _attached(self, ch: SimChannel) -> bool:
        with self._lock:
            dev = self._devices.get(ch.key)
            return self._reachable and dev is not None and dev.attached

    def _check(self, ch: SimChannel) -> SimDevice:
        if not ch.is_open:
            raise SimPhidgetError(ErrorCode.EPHIDGET_NOTATTACHED, "channel not open")
        dev = self._devices.get(ch.key)
        if not self._reachable or dev is None or not dev.attached:
            raise SimPhidgetError(ErrorCode.EPHIDGET_NOTATTACHED, "device not attached")
        return dev

    def _read(self, ch: SimChannel) -> Values:
        with self._lock:
            dev = self._check(ch)
        return dev.values()

    def _drive(self, ch: SimChannel, velocity: float) -> None:
        with self._lock:
            self._check(ch)
            if not -1.0 <= velocity <= 1.0:
                raise SimPhidgetError(ErrorCode.EPHIDGET_INVALIDARG, f"velocity {velocity} out of range")
            self._velocity[ch.channel] = velocity


def bench_hub(server_name: str, motor: int, sonar: int, humidity: int, light: int,
              tof_left: int, tof_right: int, clock: Optional[Callable[[], float]] = None) -> SimPhidgetHub:
    """
    SimPhidgetHub populated like the bench rover, with slowly varying readings.

    Sonar sweeps between ~200 and ~1400 mm so obstacle alerts trigger now
    and then during a simulated run.
    """
    clk = clock or time.monotonic
    hub = SimPhidgetHub(server_name)
    hub.add_motors(motor)
    hub.add_device(sonar, ChannelKind.DISTANCE, lambda: (800.0 + 600.0 * math.sin(clk() / 4.0),))
    hub.add_device(tof_left, ChannelKind.DISTANCE, lambda: (600.0 + 150.0 * math.sin(clk() / 3.0),))
    hub.add_device(tof_right, ChannelKind.DISTANCE, lambda: (600.0 + 150.0 * math.cos(clk() / 3.0),))
    hub.add_device(humidity, ChannelKind.HUMIDITY, lambda: (45.0 + 2.0 * math.sin(clk() / 30.0), 21.5))
    hub.add_device(light, ChannelKind.LIGHT, lambda: (320.0 + 40.0 * math.sin(clk() / 10.0),))
    return hub
