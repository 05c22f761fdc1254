from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, DefaultDict, List

from ..logging_utils import get_logger

_LOGGER = get_logger(__name__)

Listener = Callable[..., Any]


class NodeEvent(str, Enum):
    READY = "ready"
    DISCONNECT = "disconnect"
    MESSAGE = "message"
    ERROR = "error"


class SessionEvent(str, Enum):
    CONNECT = "connect"
    READY = "ready"
    END = "end"
    ERROR = "error"
    WARN = "warn"
    STUCK = "stuck"
    DISCONNECT = "disconnect"
    RECONNECT = "reconnect"


@dataclass
class _Registration:
    callback: Listener
    once: bool = False


class EventEmitter:
    """Synchronous observer registry keyed by an event enum.

    Listeners run inside the emitting call, in registration order. A listener
    that raises is logged and does not prevent the remaining listeners from
    running.
    """

    def __init__(self) -> None:
        self._registrations: DefaultDict[Enum, List[_Registration]] = defaultdict(list)

    def on(self, event: Enum, listener: Listener) -> Listener:
        self._registrations[event].append(_Registration(listener))
        return listener

    def once(self, event: Enum, listener: Listener) -> Listener:
        self._registrations[event].append(_Registration(listener, once=True))
        return listener

    def off(self, event: Enum, listener: Listener) -> None:
        registrations = self._registrations.get(event)
        if not registrations:
            return
        for index, registration in enumerate(registrations):
            if registration.callback is listener:
                del registrations[index]
                return

    def listeners(self, event: Enum) -> List[Listener]:
        return [registration.callback for registration in self._registrations.get(event, [])]

    def emit(self, event: Enum, *args: Any) -> bool:
        registrations = self._registrations.get(event)
        if not registrations:
            return False

        for registration in list(registrations):
            if registration.once:
                try:
                    registrations.remove(registration)
                except ValueError:
                    continue
            try:
                registration.callback(*args)
            except Exception:
                _LOGGER.exception(
                    "Listener %r for %s raised on %s",
                    registration.callback,
                    event.value,
                    type(self).__name__,
                )
        return True


__all__ = ["EventEmitter", "Listener", "NodeEvent", "SessionEvent"]
