from __future__ import annotations

from dataclasses import dataclass
from typing import Callable
import threading

from .events import now_ms


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """
    Retry cadence for anything that reconnects to hardware.

    initial_ms : int
        Wait after the first failure before the next attempt is allowed.
    max_ms : int
        Upper bound for the wait.
    multiplier : float
        Growth per consecutive failure. 1.0 gives a fixed window.
    """
    initial_ms: int = 1000
    max_ms: int = 5000
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.initial_ms < 0:
            raise ValueError("initial_ms must be >= 0")
        if self.max_ms < self.initial_ms:
            raise ValueError("max_ms must be >= initial_ms")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")


class ReconnectPolicy:
    """
    Single retry/backoff policy shared by composition across the sensor services,
    the vehicle link and the gamepad poller.

    Usage:
        policy = ReconnectPolicy(BackoffConfig(2000, 2000, 1.0))
        if policy.attempt_due():      # claims the attempt slot
            try:
                link.connect()
                policy.record_success()
            except Exception:
                policy.record_failure()

    attempt_due() claims the current window, so repeated calls inside one window
    return True at most once even when no outcome is recorded.
    """

    def __init__(self, config: BackoffConfig | None = None,
                 clock: Callable[[], int] = now_ms) -> None:
        self._cfg = config or BackoffConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._next_attempt_ms = 0
        self._attempts = 0

    @property
    def config(self) -> BackoffConfig:
        return self._cfg

    def attempt_due(self) -> bool:
        """Return True (and start a new window) if an attempt is allowed now."""
        with self._lock:
            now = self._clock()
            if now < self._next_attempt_ms:
                return False
            self._attempts += 1
            self._next_attempt_ms = now + self._current_delay_locked()
            return True

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._next_attempt_ms = self._clock() + self._current_delay_locked()

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._next_attempt_ms = 0

    def reset(self) -> None:
        self.record_success()

    # ---- queries ----
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failures

    def attempts(self) -> int:
        with self._lock:
            return self._attempts

    def next_attempt_ms(self) -> int:
        with self._lock:
            return self._next_attempt_ms

    def _current_delay_locked(self) -> int:
        # first failure waits initial_ms; each further failure multiplies
        exponent = max(0, self._failures - 1)
        delay = self._cfg.initial_ms * (self._cfg.multiplier ** exponent)
        return int(min(delay, self._cfg.max_ms))
