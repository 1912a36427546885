from __future__ import annotations

from typing import Protocol, Tuple


class SensorChannel(Protocol):
    """
    Hardware sensor channel, uniform across sensor classes.

    Every method may raise (PhidgetException, ChannelError or a driver-specific
    exception); the owning service treats any exception as a channel fault.
    """

    def open(self, timeout_ms: int) -> None:
        """Attach the device, failing within ``timeout_ms``."""
        ...

    def close(self) -> None: ...

    def read(self) -> Tuple[float, ...]:
        """Latest raw values; NaN marks a value the device could not produce."""
        ...

    def is_attached(self) -> bool: ...
