"""
Event Emitters
==============

Small publish/subscribe channels used for status, exit and disposal
notifications. Each emitter belongs to exactly one owner (a session,
kernel, launch, process or connection); there are no global emitters.

Handlers are called synchronously, in subscription order, with the fired
value. A handler that raises is logged and skipped so it cannot break
delivery to the remaining subscribers.
"""

from typing import Callable, Generic, List, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle returned by ``EventEmitter.connect``; disposing it unsubscribes."""

    def __init__(self, emitter: "EventEmitter", handler: Callable):
        self._emitter = emitter
        self._handler = handler

    def dispose(self) -> None:
        if self._emitter is not None:
            self._emitter.disconnect(self._handler)
            self._emitter = None


class EventEmitter(Generic[T]):
    """An owned broadcast channel with ordered, synchronous delivery."""

    def __init__(self, name: str = ""):
        self.name = name
        self._handlers: List[Callable[[T], None]] = []
        self._disposed = False

    def connect(self, handler: Callable[[T], None]) -> Subscription:
        if self._disposed:
            raise RuntimeError(f"Event emitter {self.name!r} has been disposed")
        self._handlers.append(handler)
        return Subscription(self, handler)

    def disconnect(self, handler: Callable[[T], None]) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def fire(self, value: T = None) -> None:
        if self._disposed:
            return
        for handler in list(self._handlers):
            try:
                handler(value)
            except Exception as e:
                logger.error(f"Event handler for {self.name or 'event'} failed: {e}")

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    def dispose(self) -> None:
        self._disposed = True
        self._handlers.clear()
