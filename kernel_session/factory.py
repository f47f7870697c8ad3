"""
Kernel Session Factory
======================

Builds and starts sessions with the package defaults: the local launcher,
the jupyter_client wire connection and, when enabled, auto-restart.
"""

from pathlib import Path
from typing import Dict, Literal, Optional, Union

import structlog

from .cancellation import CancellationToken
from .config import SessionSettings, settings as default_settings
from .models import KernelConnectionMetadata
from .monitor import KernelAutoRestartMonitor
from .session import KernelSession
from .types import KernelLauncher, WireConnectionFactory

logger = structlog.get_logger(__name__)


class KernelSessionFactory:
    def __init__(
        self,
        launcher: Optional[KernelLauncher] = None,
        settings: Optional[SessionSettings] = None,
        connection_factory: Optional[WireConnectionFactory] = None,
    ):
        self.settings = settings or default_settings
        if launcher is None:
            from .launcher import LocalKernelLauncher

            launcher = LocalKernelLauncher(self.settings)
        self.launcher = launcher
        self.connection_factory = connection_factory
        self.monitors: Dict[str, KernelAutoRestartMonitor] = {}

    async def create(
        self,
        resource: Union[str, Path],
        kernel_connection_metadata: KernelConnectionMetadata,
        working_directory: Optional[Union[str, Path]] = None,
        session_type: Literal["notebook", "console"] = "notebook",
        token: Optional[CancellationToken] = None,
    ) -> KernelSession:
        """
        Create a session and start its kernel.

        The session is disposed if the start fails, and the error re-raised.
        """
        session = KernelSession(
            resource,
            self.launcher,
            working_directory,
            kernel_connection_metadata,
            launch_timeout=self.settings.LAUNCH_TIMEOUT,
            session_type=session_type,
            connection_factory=self.connection_factory,
            settings=self.settings,
        )
        try:
            await session.start_kernel(token=token)
        except BaseException:
            await session.dispose()
            raise

        if self.settings.AUTO_RESTART:
            monitor = KernelAutoRestartMonitor(
                session,
                self.settings.MAX_AUTO_RESTARTS,
                reset_after=self.settings.AUTO_RESTART_RESET_AFTER,
            )
            self.monitors[session.id] = monitor
            session.disposed.connect(lambda _: self.monitors.pop(session.id, None))

        logger.info(
            "[SESSION] Session ready",
            session_id=session.id,
            kernel_id=session.kernel.id,
            path=session.path,
        )
        return session
