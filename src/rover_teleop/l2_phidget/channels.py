"""
channels.py
===========
Phidget22 channel plumbing shared by the motor link and the sensor channels.

A ChannelFactory turns a ChannelKind into an unopened Phidget22 channel
object (DCMotor, DistanceSensor, ...). Production code uses phidget_factory;
the simulator hands out look-alike objects with the same method names, so
the adapters above never know which one they drive.

Usage:
    ch = open_channel(phidget_factory, ChannelKind.DISTANCE,
                      ChannelAddress("MaxRover", hub_port=3, hub_port_device=True), 5000)
    mm = ch.getDistance()
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable
import logging

from Phidget22.Devices.DCMotor import DCMotor
from Phidget22.Devices.DistanceSensor import DistanceSensor
from Phidget22.Devices.HumiditySensor import HumiditySensor
from Phidget22.Devices.LightSensor import LightSensor
from Phidget22.Devices.TemperatureSensor import TemperatureSensor
from Phidget22.ErrorCode import ErrorCode
from Phidget22.PhidgetException import PhidgetException

log = logging.getLogger(__name__)


class ChannelKind(str, Enum):
    MOTOR = "motor"
    DISTANCE = "distance"
    HUMIDITY = "humidity"
    TEMPERATURE = "temperature"
    LIGHT = "light"


_PHIDGET_CLASSES = {
    ChannelKind.MOTOR: DCMotor,
    ChannelKind.DISTANCE: DistanceSensor,
    ChannelKind.HUMIDITY: HumiditySensor,
    ChannelKind.TEMPERATURE: TemperatureSensor,
    ChannelKind.LIGHT: LightSensor,
}

ChannelFactory = Callable[[ChannelKind], Any]


def phidget_factory(kind: ChannelKind) -> Any:
    """New, unopened Phidget22 channel object for ``kind``."""
    return _PHIDGET_CLASSES[kind]()


class ChannelError(RuntimeError):
    """Adapter misuse or state error (e.g. read on a closed channel)."""


@dataclass(frozen=True, slots=True)
class ChannelAddress:
    """
    Where a channel lives on the network hub.

    Fields:
      - server_name: Phidget network server alias (see PhidgetServer)
      - hub_port: VINT hub port
      - channel: channel index on the device (motors: 0 = left, 1 = right)
      - hub_port_device: open the hub port itself in device mode
    """
    server_name: str
    hub_port: int
    channel: int = 0
    hub_port_device: bool = False

    def __str__(self) -> str:
        return f"{self.server_name}:{self.hub_port}/{self.channel}"


def describe(ex: BaseException) -> str:
    """Short text for a PhidgetException (description and code) or any other error."""
    if isinstance(ex, PhidgetException):
        text = getattr(ex, "description", None) or str(ex)
        return f"{text} (code={getattr(ex, 'code', '?')})"
    return f"{type(ex).__name__}: {ex}"


def is_unknown_value(ex: BaseException) -> bool:
    """True for the error a sensor raises while it has no reading yet (sonar without echo)."""
    return isinstance(ex, PhidgetException) and getattr(ex, "code", None) == ErrorCode.EPHIDGET_UNKNOWNVAL


def open_channel(factory: ChannelFactory, kind: ChannelKind, address: ChannelAddress, timeout_ms: int) -> Any:
    """
    Create, address and open one channel, waiting up to ``timeout_ms`` for
    the device to attach.

    A channel that fails to open is closed before the error propagates.
    """
    ch = factory(kind)
    ch.setServerName(address.server_name)
    ch.setIsRemote(True)
    ch.setHubPort(address.hub_port)
    ch.setChannel(address.channel)
    if address.hub_port_device:
        ch.setIsHubPortDevice(True)
    try:
        ch.openWaitForAttachment(timeout_ms)
    except Exception as ex:
        log.warning("open %s %s failed: %s", kind.value, address, describe(ex))
        close_quietly(ch)
        raise
    log.debug("opened %s %s", kind.value, address)
    return ch


def close_quietly(ch: Any) -> None:
    if ch is None:
        return
    try:
        ch.close()
    except Exception as ex:
        log.debug("close failed: %s", describe(ex))
