from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional
import json
import logging
import threading

import yaml

log = logging.getLogger(__name__)

HUB_PORT_FIELDS = (
    "motor_hub_port",
    "sonar_hub_port",
    "humidity_hub_port",
    "light_hub_port",
    "tof_left_hub_port",
    "tof_right_hub_port",
)


class ConfigError(ValueError):
    """Invalid rover configuration; raised before any hardware is touched."""


@dataclass(frozen=True, slots=True)
class RoverConfig:
    """
    Immutable rover configuration.

    Fields
    ------
    server_name : str
        Phidget network server name of the rover hub.
    host, port : str, int
        Phidget network server address (port 1..65535).
    *_hub_port : int
        Hub port index per hardware channel (non-negative).
    invert_left, invert_right : bool
        Flip a wheel whose motor is wired backwards.
    player_index : int
        Gamepad index.
    report_dir : str
        Where mission reports are written.
    """
    server_name: str = "MaxRover"
    host: str = "10.18.1.152"
    port: int = 5661
    motor_hub_port: int = 4
    sonar_hub_port: int = 3
    humidity_hub_port: int = 2
    light_hub_port: int = 1
    tof_left_hub_port: int = 5
    tof_right_hub_port: int = 0
    invert_left: bool = False
    invert_right: bool = False
    player_index: int = 0
    report_dir: str = "reports"

    def validate(self) -> "RoverConfig":
        """Return self if valid, else raise ConfigError naming the first bad field."""
        if not isinstance(self.server_name, str) or not self.server_name.strip():
            raise ConfigError("server_name must be a non-empty string")
        if not isinstance(self.host, str) or not self.host.strip():
            raise ConfigError("host must be a non-empty string")
        if not _is_int(self.port) or not 1 <= self.port <= 65535:
            raise ConfigError(f"port must be an integer in 1..65535, got {self.port!r}")
        for name in HUB_PORT_FIELDS + ("player_index",):
            value = getattr(self, name)
            if not _is_int(value) or value < 0:
                raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")
        for name in ("invert_left", "invert_right"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ConfigError(f"{name} must be true or false, got {value!r}")
        if not isinstance(self.report_dir, str) or not self.report_dir.strip():
            raise ConfigError("report_dir must be a non-empty string")
        return self

    def with_overrides(self, **overrides: Any) -> "RoverConfig":
        """Copy with the given non-None fields replaced (CLI flags on top of a file)."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def config_from_mapping(data: Mapping[str, Any]) -> RoverConfig:
    """Build and validate a RoverConfig from a plain mapping (unknown keys rejected)."""
    bad = [k for k in data if not isinstance(k, str)]
    if bad:
        raise ConfigError(f"config keys must be strings, got {bad!r}")
    return RoverConfig().with_overrides(**dict(data)).validate()


def load_config(path: str | Path) -> RoverConfig:
    """
    Load a rover config from YAML (.yml/.yaml) or JSON.

    Example (YAML):
        server_name: MaxRover
        host: 10.18.1.152
        port: 5661
        motor_hub_port: 4
        sonar_hub_port: 3

    Missing keys keep their defaults.

    Raises FileNotFoundError, or ConfigError on unparsable or invalid content.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)

    text = p.read_text(encoding="utf-8")
    try:
        if p.suffix.lower() in {".yml", ".yaml"}:
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text or "{}")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot parse {p}: {e}") from e

    if not isinstance(data, Mapping):
        raise ConfigError(f"{p}: top level must be a mapping")
    cfg = config_from_mapping(data)
    log.info("config loaded from %s", p)
    return cfg


class ConfigHandshake:
    """
    One-shot, bounded hand-over of the configuration from a setup step
    (dashboard form, CLI prompt) to the runner thread.

    The first submit() or cancel() wins; later calls are ignored.
    wait() never blocks longer than its timeout.
    """

    def __init__(self) -> None:
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._config: Optional[RoverConfig] = None

    def submit(self, config: RoverConfig) -> None:
        """Validate and publish the config; ConfigError leaves the handshake open."""
        config.validate()
        with self._lock:
            if self._done.is_set():
                return
            self._config = config
            self._done.set()

    def cancel(self) -> None:
        with self._lock:
            self._done.set()

    def wait(self, timeout_s: float) -> Optional[RoverConfig]:
        """Return the submitted config, or None on cancel or timeout."""
        if not self._done.wait(timeout_s):
            log.warning("no configuration received within %.1f s", timeout_s)
            return None
        return self._config
