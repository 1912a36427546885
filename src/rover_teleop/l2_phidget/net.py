from __future__ import annotations

from typing import Any, Optional
import logging
import threading

from Phidget22.Net import Net
from Phidget22.PhidgetException import PhidgetException

from .channels import describe

DEFAULT_SERVER_PORT = 5661

log = logging.getLogger(__name__)


class PhidgetServer:
    """
    Registration of the rover's Phidget network server, shared by the motor
    link and every sensor channel.

    ensure_added() is idempotent and safe from any thread; an "already
    registered" error from Net.addServer is treated as success. The server
    is only removed by remove(), which the runner calls last, after every
    channel is closed.

    Parameters:
        server_name:  Alias the channels address (setServerName).
        host, port:   Network hub address.
        net:          Object with addServer/removeServer (Phidget22.Net by
                      default; the simulator passes its own).
    """

    def __init__(self, server_name: str, host: str, port: int = DEFAULT_SERVER_PORT,
                 password: str = "", net: Optional[Any] = None) -> None:
        self.server_name = server_name
        self.host = host
        self.port = port
        self._password = password
        self._net = net if net is not None else Net
        self._lock = threading.Lock()
        self._added = False

    def __repr__(self) -> str:
        return f"PhidgetServer({self.server_name!r}, {self.host}:{self.port})"

    def is_added(self) -> bool:
        return self._added

    def ensure_added(self) -> None:
        with self._lock:
            if self._added:
                return
            try:
                self._net.addServer(self.server_name, self.host, self.port, self._password, 0)
                log.info("phidget server %s registered at %s:%d", self.server_name, self.host, self.port)
            except PhidgetException as ex:
                # registered earlier in this process
                log.debug("addServer %s: %s", self.server_name, describe(ex))
            self._added = True

    def remove(self) -> None:
        """Unregister the server. Never raises."""
        with self._lock:
            if not self._added:
                return
            self._added = False
            try:
                self._net.removeServer(self.server_name)
                log.info("phidget server %s removed", self.server_name)
            except Exception as ex:
                log.warning("removeServer %s: %s", self.server_name, describe(ex))
