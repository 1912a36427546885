from __future__ import annotations

from collections import deque
from typing import Any, Callable, Deque, Dict, List, Tuple, Type, TypeVar
import logging
import threading

from .events import Fault, Severity, Topic, now_ms

T = TypeVar("T")
P = TypeVar("P")

Handler = Callable[[Any], None]

DEFAULT_FAULT_HISTORY = 64

log = logging.getLogger(__name__)


class CommandBus:
    """
    Routes dashboard/console commands to their single owner.

    One handler per command class (FinalizeMissionCmd -> mission reporter,
    ResetEmergencyStopCmd -> safety). Dispatch happens on the caller's thread
    and returns the handler's result, so a "report" button can show the path
    of the file it produced.
    """

    def __init__(self) -> None:
        self._routes: Dict[Type[Any], Callable[[Any], Any]] = {}
        self._lock = threading.Lock()

    def register(self, command_type: Type[T], handler: Callable[[T], Any]) -> None:
        """
        Route ``command_type`` to ``handler``.

        Raises ValueError when the type already has an owner.
        """
        with self._lock:
            if command_type in self._routes:
                raise ValueError(f"{command_type.__name__} is already routed")
            self._routes[command_type] = handler

    def unregister(self, command_type: Type[Any]) -> None:
        with self._lock:
            self._routes.pop(command_type, None)

    def call(self, command: T) -> Any:
        """Run the owner of ``type(command)``; LookupError if nobody owns it."""
        with self._lock:
            handler = self._routes.get(type(command))
        if handler is None:
            raise LookupError(f"no route for {type(command).__name__}")
        return handler(command)


class EventBus:
    """
    Synchronous in-process pub/sub keyed by typed Topics.

    * publish() runs every handler on the publisher's thread, in registration order.
    * Handler lists are immutable tuples replaced under a lock (copy-on-write), so
      publish never holds the lock while calling out and a concurrent
      subscribe/unsubscribe cannot disturb a delivery in progress.
    * A failing handler is isolated: logged, recorded as a Fault, and the
      remaining handlers still receive the event.
    * Handlers must be non-blocking; a slow handler only delays its own publish call.
    """

    def __init__(self, fault_history: int = DEFAULT_FAULT_HISTORY) -> None:
        self._subscribers: Dict[str, Tuple[Handler, ...]] = {}
        self._lock = threading.Lock()
        self._faults: Deque[Fault] = deque(maxlen=fault_history)
        self._fault_count = 0

    # ---- subscription API ----
    def subscribe(self, topic: Topic[P], callback: Callable[[P], None]) -> None:
        """
        Register ``callback`` to receive events for ``topic``.

        Parameters
        ----------
        topic : Topic[P]
            Typed topic (e.g., topics.SONAR).
        callback : Callable[[P], None]
            Function invoked with the event payload on the publisher's thread;
            keep it fast or offload work internally.
        """
        with self._lock:
            current = self._subscribers.get(topic.name, ())
            self._subscribers[topic.name] = current + (callback,)

    def unsubscribe(self, topic: Topic[P], callback: Callable[[P], None]) -> None:
        """
        Remove ``callback`` from ``topic`` if previously subscribed.

        Only the first matching registration is removed, mirroring subscribe()
        which allows the same callable to be registered twice.
        """
        with self._lock:
            current = list(self._subscribers.get(topic.name, ()))
            if callback in current:
                current.remove(callback)
                if current:
                    self._subscribers[topic.name] = tuple(current)
                else:
                    del self._subscribers[topic.name]

    def unsubscribe_all(self) -> None:
        """Drop every registration (shutdown path)."""
        with self._lock:
            self._subscribers.clear()

    def subscriber_count(self, topic: Topic[Any]) -> int:
        with self._lock:
            return len(self._subscribers.get(topic.name, ()))

    # ---- publishing API ----
    def publish(self, topic: Topic[P], event: P) -> int:
        """
        Deliver ``event`` to every handler registered for ``topic`` right now.

        Returns the number of handlers that completed without raising.

        Raises
        ------
        TypeError
            If ``event`` is not an instance of ``topic.payload_type``. This is a
            producer bug and is raised before any handler runs.
        """
        if not isinstance(event, topic.payload_type):
            raise TypeError(
                f"topic '{topic.name}' expects {topic.payload_type.__name__}, "
                f"got {type(event).__name__}"
            )
        with self._lock:
            handlers = self._subscribers.get(topic.name, ())

        delivered = 0
        for callback in handlers:
            try:
                callback(event)
                delivered += 1
            except Exception as ex:
                self._record_fault(topic, callback, ex)
        return delivered

    # ---- fault history ----
    def faults(self) -> List[Fault]:
        """Most recent handler faults, oldest first (bounded)."""
        with self._lock:
            return list(self._faults)

    def fault_count(self) -> int:
        """Total handler faults since construction (keeps counting past the history cap)."""
        with self._lock:
            return self._fault_count

    def _record_fault(self, topic: Topic[Any], callback: Handler, ex: Exception) -> None:
        name = getattr(callback, "__qualname__", None) or repr(callback)
        log.exception("subscriber error on topic '%s' (%s)", topic.name, name)
        fault = Fault(
            timestamp_millis=now_ms(),
            severity=Severity.ERROR,
            code="BUS_HANDLER_FAILED",
            message=f"{type(ex).__name__}: {ex}",
            context={"topic": topic.name, "handler": name},
        )
        with self._lock:
            self._faults.append(fault)
            self._fault_count += 1
