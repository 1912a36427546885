"""
vehicle_link.py
===============
Drive-motor link on two Phidget22 DCMotor channels.

Left motor = channel 0, right motor = channel 1, both on the configured
motor hub port of the rover's network hub. Wheel commands map directly to
DCMotor target velocities in [-1, 1]. Every call is fallible
(PhidgetException); the teleop loop owns the retry policy.

Usage:
    link = PhidgetVehicleLink(server, motor_hub_port=4)
    link.connect()
    link.set_wheel_speeds(0.3, 0.3)
    link.stop()
    link.disconnect()
"""
from __future__ import annotations

from typing import Any, Optional
import logging
import threading

from .channels import (
    ChannelAddress, ChannelFactory, ChannelKind, close_quietly, describe, open_channel, phidget_factory,
)
from .net import PhidgetServer

LEFT_MOTOR_CHANNEL = 0
RIGHT_MOTOR_CHANNEL = 1
MOTOR_OPEN_TIMEOUT_MS = 5000
LOG_DELTA = 0.01

log = logging.getLogger(__name__)


def _clamp(v: float) -> float:
    return max(-1.0, min(1.0, v))


class PhidgetVehicleLink:
    """
    VehicleLink implementation for the rover's dual DC motor controller.

    Parameters:
        server:         Shared PhidgetServer (never removed here; the sensor
                        channels use the same registration).
        motor_hub_port: Hub port the motor controller sits on.
        invert_left / invert_right:
                        Flip a wheel whose motor is wired backwards.
        factory:        ChannelFactory (Phidget22 DCMotor by default).
    """

    def __init__(self, server: PhidgetServer, motor_hub_port: int,
                 invert_left: bool = False, invert_right: bool = False,
                 factory: ChannelFactory = phidget_factory,
                 open_timeout_ms: int = MOTOR_OPEN_TIMEOUT_MS) -> None:
        self._server = server
        self._hub_port = motor_hub_port
        self._invert_left = invert_left
        self._invert_right = invert_right
        self._factory = factory
        self._open_timeout_ms = open_timeout_ms
        self._lock = threading.Lock()
        self._connected = False
        self._left: Optional[Any] = None
        self._right: Optional[Any] = None
        self._last_logged = (999.0, 999.0)

    def set_inversions(self, invert_left: bool, invert_right: bool) -> None:
        self._invert_left = invert_left
        self._invert_right = invert_right

    # ---- VehicleLink surface ----
    def connect(self) -> None:
        """
        Register the server, open both motor channels and zero them.

        Raises:
            PhidgetException: a motor did not attach within the open timeout.
        """
        with self._lock:
            if self._connected:
                return
            self._release_locked()
            self._server.ensure_added()
            try:
                self._left = self._open_motor(LEFT_MOTOR_CHANNEL)
                self._right = self._open_motor(RIGHT_MOTOR_CHANNEL)
                self._left.setTargetVelocity(0.0)
                self._right.setTargetVelocity(0.0)
            except Exception:
                self._release_locked()
                raise
            self._connected = True
            self._last_logged = (0.0, 0.0)
            log.info("rover connected (server=%s, motor hub port %d)",
                     self._server.server_name, self._hub_port)

    def _open_motor(self, channel: int) -> Any:
        address = ChannelAddress(self._server.server_name, self._hub_port, channel)
        return open_channel(self._factory, ChannelKind.MOTOR, address, self._open_timeout_ms)

    def disconnect(self) -> None:
        """Zero the wheels and release the motor channels. Never raises."""
        with self._lock:
            if not self._connected and self._left is None and self._right is None:
                return
            self._connected = False
            for motor in (self._left, self._right):
                if motor is None:
                    continue
                try:
                    motor.setTargetVelocity(0.0)
                except Exception as ex:
                    log.warning("error during rover disconnect: %s", describe(ex))
            self._release_locked()
            log.info("rover disconnected")

    def _release_locked(self) -> None:
        close_quietly(self._left)
        close_quietly(self._right)
        self._left = self._right = None

    def is_connected(self) -> bool:
        """Connected and both motor channels report attached."""
        with self._lock:
            if not self._connected:
                return False
            try:
                if self._left.getAttached() and self._right.getAttached():
                    return True
                reason = "motor detached"
            except Exception as ex:
                reason = describe(ex)
            self._connected = False
            log.warning("rover link lost (%s)", reason)
            return False

    def set_wheel_speeds(self, left: float, right: float) -> None:
        with self._lock:
            if not self._connected:
                return
            left = -left if self._invert_left else left
            right = -right if self._invert_right else right
            left, right = _clamp(left), _clamp(right)
            try:
                self._left.setTargetVelocity(left)
                self._right.setTargetVelocity(right)
            except Exception:
                self._connected = False
                raise

        last_l, last_r = self._last_logged
        if abs(left - last_l) > LOG_DELTA or abs(right - last_r) > LOG_DELTA:
            self._last_logged = (left, right)
            log.debug("motor left=%.3f right=%.3f", left, right)

    def stop(self) -> None:
        with self._lock:
            if not self._connected:
                return
            try:
                self._left.setTargetVelocity(0.0)
                self._right.setTargetVelocity(0.0)
            except Exception:
                self._connected = False
                raise
        self._last_logged = (0.0, 0.0)
        log.debug("motor STOP")
