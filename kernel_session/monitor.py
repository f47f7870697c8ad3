"""
Auto-restart monitor: relaunches a session's kernel after an unexpected
process exit.

At most ``max_restarts`` restarts are attempted in a row. A kernel that then
stays up for ``reset_after`` seconds earns the full budget back, so a
long-lived session is not left without auto-restart by crashes spread over
days.
"""

import asyncio
import time
from typing import Optional, Set

import structlog

from .events import Subscription
from .models import ExitInfo

logger = structlog.get_logger(__name__)


class KernelAutoRestartMonitor:
    def __init__(self, session, max_restarts: int = 3, reset_after: float = 300.0):
        self.session = session
        self.max_restarts = max_restarts
        self.reset_after = reset_after
        self.restart_count = 0
        self._last_restart: Optional[float] = None
        self._tasks: Set[asyncio.Task] = set()
        self._exit_subscription: Optional[Subscription] = session.kernel.exited.connect(
            self._on_exit
        )
        self._dispose_subscription: Optional[Subscription] = session.kernel.disposed.connect(
            lambda _: self.dispose()
        )

    @property
    def is_active(self) -> bool:
        return self._exit_subscription is not None

    def _on_exit(self, exit_info: ExitInfo) -> None:
        if (
            self._last_restart is not None
            and time.monotonic() - self._last_restart >= self.reset_after
        ):
            self.restart_count = 0

        if self.restart_count >= self.max_restarts:
            logger.error(
                f"[MONITOR] Kernel died {self.restart_count + 1} times, giving up on auto-restart",
                kernel_id=self.session.kernel.id,
                exit_code=exit_info.exit_code,
            )
            return
        self.restart_count += 1
        logger.warning(
            f"[MONITOR] Auto-restarting kernel (attempt {self.restart_count}/{self.max_restarts})",
            kernel_id=self.session.kernel.id,
            exit_code=exit_info.exit_code,
        )
        task = asyncio.create_task(self._restart())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _restart(self) -> None:
        try:
            await self.session.kernel.restart(auto=True)
        except Exception as e:
            logger.error(f"[MONITOR] Auto-restart failed: {e!r}", kernel_id=self.session.kernel.id)
            return
        self._last_restart = time.monotonic()

    async def wait_idle(self) -> None:
        """Wait for any scheduled restarts to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def dispose(self) -> None:
        for subscription in (self._exit_subscription, self._dispose_subscription):
            if subscription is not None:
                subscription.dispose()
        self._exit_subscription = None
        self._dispose_subscription = None
