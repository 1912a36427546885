"""
sensor_channel.py
=================
SensorChannel implementation on Phidget22 channels.

Uniform across sensor classes: read() returns the channel's float values
(distance: (mm,), humidity: (%RH, deg C), light: (lux,)). Interpretation is
left to the sensor service that owns the channel.

The humidity board answers on two Phidget classes at the same hub port, so
a HUMIDITY channel opens a HumiditySensor and a TemperatureSensor together.
"""
from __future__ import annotations

from typing import Any, List, Tuple
import logging
import math

from .channels import (
    ChannelAddress, ChannelError, ChannelFactory, ChannelKind, close_quietly, describe,
    is_unknown_value, open_channel, phidget_factory,
)
from .net import PhidgetServer

# ranging boards are opened in hub-port device mode, as on the bench rover
HUB_PORT_DEVICE_KINDS = frozenset({ChannelKind.DISTANCE})

log = logging.getLogger(__name__)


class PhidgetSensorChannel:
    """
    One sensor at (hub_port, channel) on the rover's network hub.

    Parameters:
        server:    Shared PhidgetServer; registered on first open().
        kind:      DISTANCE, HUMIDITY or LIGHT.
        hub_port:  VINT hub port the board sits on.
        channel:   Channel index on the board.
        factory:   ChannelFactory (Phidget22 classes by default).
    """

    def __init__(self, server: PhidgetServer, kind: ChannelKind, hub_port: int,
                 channel: int = 0, factory: ChannelFactory = phidget_factory) -> None:
        if kind not in (ChannelKind.DISTANCE, ChannelKind.HUMIDITY, ChannelKind.LIGHT):
            raise ValueError(f"not a sensor kind: {kind}")
        self._server = server
        self._kind = kind
        self._address = ChannelAddress(server.server_name, hub_port, channel,
                                       hub_port_device=kind in HUB_PORT_DEVICE_KINDS)
        self._factory = factory
        self._handles: List[Any] = []

    def __repr__(self) -> str:
        return f"PhidgetSensorChannel({self._kind.value}, {self._address})"

    @property
    def hub_port(self) -> int:
        return self._address.hub_port

    def _kinds(self) -> Tuple[ChannelKind, ...]:
        if self._kind is ChannelKind.HUMIDITY:
            return (ChannelKind.HUMIDITY, ChannelKind.TEMPERATURE)
        return (self._kind,)

    def open(self, timeout_ms: int) -> None:
        """
        Register the server if needed and open the Phidget channel(s).

        Raises:
            PhidgetException: the device did not attach within ``timeout_ms``
                (everything opened so far is closed again).
        """
        self.close()
        self._server.ensure_added()
        handles: List[Any] = []
        try:
            for kind in self._kinds():
                handles.append(open_channel(self._factory, kind, self._address, timeout_ms))
        except Exception:
            for ch in handles:
                close_quietly(ch)
            raise
        self._handles = handles
        log.info("channel opened: %s", self)

    def close(self) -> None:
        """Release the Phidget channel(s). Best effort, idempotent."""
        handles, self._handles = self._handles, []
        for ch in handles:
            close_quietly(ch)

    def read(self) -> Tuple[float, ...]:
        """
        Latest values; NaN where the board has no value yet.

        Raises:
            ChannelError: channel not open.
            PhidgetException: transport or device fault.
        """
        if not self._handles:
            raise ChannelError(f"{self} not open")
        if self._kind is ChannelKind.DISTANCE:
            return (self._value(self._handles[0].getDistance),)
        if self._kind is ChannelKind.HUMIDITY:
            return (self._value(self._handles[0].getHumidity),
                    self._value(self._handles[1].getTemperature))
        return (self._value(self._handles[0].getIlluminance),)

    @staticmethod
    def _value(getter) -> float:
        try:
            return float(getter())
        except Exception as ex:
            if is_unknown_value(ex):
                return math.nan
            raise

    def is_attached(self) -> bool:
        if not self._handles:
            return False
        try:
            return all(bool(ch.getAttached()) for ch in self._handles)
        except Exception as ex:
            log.debug("%s getAttached: %s", self, describe(ex))
            return False
