"""
Cooperative Cancellation
========================

Cancellation tokens are passed through every suspending call of a kernel
start/restart and checked at defined checkpoints. ``wait_for_cancellable``
composes a token with a timeout: the awaited work races the token and the
timer, first to complete wins.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

import structlog

from .errors import CancellationError
from .events import EventEmitter

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Read-only view of a cancellation request."""

    def __init__(self):
        self._cancelled = False
        self._event = asyncio.Event()
        self.on_cancellation_requested: EventEmitter[None] = EventEmitter(
            "cancellation_requested"
        )

    @classmethod
    def none(cls) -> "CancellationToken":
        """A token that is never cancelled."""
        return cls()

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError()

    async def wait(self) -> None:
        await self._event.wait()

    def _cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()
        self.on_cancellation_requested.fire()


class CancellationTokenSource:
    """Owns a token and is the only party allowed to cancel it."""

    def __init__(self):
        self.token = CancellationToken()

    def cancel(self) -> None:
        self.token._cancel()

    def dispose(self) -> None:
        self.token.on_cancellation_requested.dispose()


async def _drain(task: asyncio.Future) -> None:
    """Wait for a cancelled task to finish its own cleanup."""
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Abandoned task finished with error: {e}")


async def wait_for_cancellable(
    aw: Awaitable[T],
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
) -> T:
    """
    Await ``aw`` unless the token fires or the timeout expires first.

    Raises:
        CancellationError: token was (or became) cancelled
        asyncio.TimeoutError: timeout expired

    The losing task is cancelled and awaited before either error is raised,
    so any cleanup it performs on cancellation has completed.
    """
    token = token or CancellationToken.none()
    if token.is_cancellation_requested:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise CancellationError()

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        await _drain(task)
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await _drain(task)
    if waiter in done:
        raise CancellationError()
    raise asyncio.TimeoutError()
