"""
Kernel Session
==============

The caller-facing handle for one kernel's connection lifecycle.

``KernelSession`` is what callers hold. It owns a ``SessionKernel``, which is
the state machine: it owns at most one active ``KernelLaunch`` at a time and
presents a single status value and status stream no matter how many times
the launch underneath has been replaced.

States::

    unknown -> starting -> idle/busy -> restarting -> idle/busy
                   \\           |            /
                    `-------> dead <------'

``dead`` ends a launch, not the session: start/restart obtain a new launch.
Only ``dispose()`` ends the session.

Status reads go through the indirection "current launch -> its connection",
so a swap on restart is invisible to subscribers. Events from a launch that
is no longer current are dropped.
"""

import asyncio
import uuid
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union
from urllib.parse import unquote, urlparse

import structlog

from .cancellation import CancellationToken, wait_for_cancellable
from .config import SessionSettings, settings as default_settings
from .errors import (
    KernelConnectionTimeoutError,
    KernelDisposedError,
    KernelNotStartedError,
)
from .events import EventEmitter, Subscription
from .launch import KernelLaunch
from .models import (
    ConnectionStatus,
    ExitInfo,
    KernelConnectionMetadata,
    KernelStatus,
    SessionModel,
)
from .observability import kernel_operation
from .types import KernelLauncher, WireConnectionFactory
from .wire import create_wire_connection

logger = structlog.get_logger(__name__)


class SessionKernel:
    """
    Kernel handle owned by a session; survives restarts.

    start/restart/shutdown are serialized so that two launches are never
    active at once. interrupt and dispose do not wait for them.
    """

    def __init__(
        self,
        launcher: KernelLauncher,
        kernel_connection_metadata: KernelConnectionMetadata,
        working_directory: Optional[Union[str, Path]] = None,
        launch_timeout: Optional[float] = None,
        connection_factory: Optional[WireConnectionFactory] = None,
        settings: Optional[SessionSettings] = None,
        extra_args: Optional[List[str]] = None,
    ):
        self.settings = settings or default_settings
        self.kernel_connection_metadata = kernel_connection_metadata
        self.id = kernel_connection_metadata.id
        self.name = kernel_connection_metadata.kernel_spec.name
        self.working_directory = working_directory
        self.launch_timeout = (
            launch_timeout if launch_timeout is not None else self.settings.LAUNCH_TIMEOUT
        )
        self.extra_args = extra_args

        self._launcher = launcher
        self._connection_factory = connection_factory or create_wire_connection

        self.status_changed: EventEmitter[KernelStatus] = EventEmitter("status_changed")
        self.exited: EventEmitter[ExitInfo] = EventEmitter("exited")
        self.disposed: EventEmitter[None] = EventEmitter("disposed")

        self._launch: Optional[KernelLaunch] = None
        self._launch_subscriptions: List[Subscription] = []
        # Status forced by the state machine; None defers to the connection.
        self._override: Optional[KernelStatus] = None
        self._last_emitted = KernelStatus.UNKNOWN
        self._started_once = False
        self._is_disposed = False
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def status(self) -> KernelStatus:
        if self._override is not None:
            return self._override
        if self._launch is None:
            return KernelStatus.DEAD if self._started_once else KernelStatus.UNKNOWN
        return self._launch.status

    @property
    def connection_status(self) -> ConnectionStatus:
        if self._launch is None or self._launch.connection is None:
            return ConnectionStatus.DISCONNECTED
        return self._launch.connection.connection_status

    @property
    def info(self) -> Dict[str, Any]:
        """Content of the current kernel's kernel_info_reply."""
        return self._launch.kernel_info if self._launch else {}

    @property
    def pid(self) -> Optional[int]:
        return self._launch.process.pid if self._launch else None

    @property
    def is_disposed(self) -> bool:
        return self._is_disposed

    def _emit(self, status: KernelStatus) -> None:
        if status == self._last_emitted:
            return
        self._last_emitted = status
        self.status_changed.fire(status)

    def _throw_if_disposed(self) -> None:
        if self._is_disposed:
            raise KernelDisposedError(f"Kernel {self.id} has been disposed")

    # ------------------------------------------------------------------
    # Launch bookkeeping
    # ------------------------------------------------------------------

    def _attach(self, launch: KernelLaunch) -> None:
        self._launch_subscriptions = [
            launch.connection.status_changed.connect(
                lambda status: self._on_connection_status(launch, status)
            ),
            launch.process.exited.connect(
                lambda exit_info: self._on_process_exited(launch, exit_info)
            ),
        ]

    def _detach(self) -> None:
        for subscription in self._launch_subscriptions:
            subscription.dispose()
        self._launch_subscriptions = []

    def _on_connection_status(self, launch: KernelLaunch, status: KernelStatus) -> None:
        if launch is not self._launch or self._override is not None:
            return
        self._emit(status)

    def _on_process_exited(self, launch: KernelLaunch, exit_info: ExitInfo) -> None:
        if launch is not self._launch or self._is_disposed:
            return
        logger.warning(
            "[SESSION] Kernel process exited unexpectedly",
            kernel_id=self.id,
            exit_code=exit_info.exit_code,
            reason=exit_info.reason,
            stderr=exit_info.stderr[-2000:] if exit_info.stderr else None,
        )
        self._override = KernelStatus.DEAD
        self._emit(KernelStatus.DEAD)
        self.exited.fire(exit_info)

    async def _create_launch(
        self, token: CancellationToken, timeout: Optional[float] = None
    ) -> KernelLaunch:
        timeout = timeout if timeout is not None else self.launch_timeout
        try:
            return await wait_for_cancellable(
                KernelLaunch.create(
                    self._launcher,
                    self.kernel_connection_metadata,
                    self.working_directory,
                    timeout,
                    token,
                    self._connection_factory,
                    handshake_interval=self.settings.HANDSHAKE_INTERVAL,
                    extra_args=self.extra_args,
                ),
                token,
                timeout,
            )
        except asyncio.TimeoutError as e:
            raise KernelConnectionTimeoutError(self.kernel_connection_metadata) from e

    async def _activate(self, launch: KernelLaunch) -> None:
        """Make ``launch`` the active launch unless it died or we were disposed meanwhile."""
        if self._is_disposed:
            await launch.dispose()
            raise KernelDisposedError(f"Kernel {self.id} was disposed while starting")
        if launch.has_exited:
            logger.warning(
                "[SESSION] Kernel process exited before it could be used",
                kernel_id=self.id,
                exit_code=launch.exit_info.exit_code,
            )
            self._override = KernelStatus.DEAD
            self._emit(KernelStatus.DEAD)
            await launch.dispose()
            launch.raise_if_exited()
        self._launch = launch
        self._started_once = True
        self._override = None
        self._attach(launch)
        self._emit(self.status)

    def _fail(self, error: BaseException) -> None:
        logger.warning(f"[SESSION] Kernel launch failed: {error!r}", kernel_id=self.id)
        if not self._is_disposed:
            self._override = KernelStatus.DEAD
            self._emit(KernelStatus.DEAD)

    async def _discard_launch(self) -> None:
        launch, self._launch = self._launch, None
        self._detach()
        if launch is None:
            return
        try:
            await launch.dispose()
        except Exception as e:
            logger.warning(f"[SESSION] Failed to dispose previous kernel: {e}", kernel_id=self.id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start(
        self,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Launch the kernel and complete the handshake.

        Args:
            token: Cancellation token; an already cancelled token fails
                without launching anything
            timeout: Overrides the launch timeout for this start

        Raises:
            CancellationError: token fired before the kernel was ready
            KernelConnectionTimeoutError: launch + handshake took too long
            KernelDisposedError: kernel was disposed
        """
        self._throw_if_disposed()
        token = token or CancellationToken.none()
        token.raise_if_cancelled()

        async with self._lock:
            if self._launch is not None and self.status != KernelStatus.DEAD:
                logger.info("[SESSION] Kernel already started", kernel_id=self.id)
                return

            with kernel_operation("start", self.id):
                await self._discard_launch()
                self._override = KernelStatus.STARTING
                self._emit(KernelStatus.STARTING)
                try:
                    launch = await self._create_launch(token, timeout)
                except BaseException as e:
                    self._fail(e)
                    raise
                await self._activate(launch)

        logger.info(f"[SESSION] Kernel started ({self.status.value})", kernel_id=self.id, pid=self.pid)

    async def restart(
        self, token: Optional[CancellationToken] = None, auto: bool = False
    ) -> None:
        """
        Replace the running kernel with a freshly launched one.

        Observers see ``restarting`` (``autorestarting`` when ``auto``)
        followed by the new kernel's own status. The previous process is
        disposed exactly once even if it had already exited.
        """
        self._throw_if_disposed()
        token = token or CancellationToken.none()
        token.raise_if_cancelled()

        async with self._lock:
            with kernel_operation("restart", self.id, auto_restart=auto):
                transition = KernelStatus.AUTORESTARTING if auto else KernelStatus.RESTARTING
                self._override = transition
                self._emit(transition)

                await self._discard_launch()
                try:
                    launch = await self._create_launch(token)
                except BaseException as e:
                    self._fail(e)
                    raise
                await self._activate(launch)

        logger.info("[SESSION] Kernel restarted", kernel_id=self.id, pid=self.pid, auto=auto)

    async def shutdown(self) -> None:
        """
        Shut the kernel down but keep the handle usable for a later restart.

        The shutdown_request is best-effort; disposing the process is not.
        Does not fire ``disposed``.
        """
        if self._is_disposed:
            return

        async with self._lock:
            with kernel_operation("shutdown", self.id):
                already_dead = self.status == KernelStatus.DEAD
                launch, self._launch = self._launch, None
                self._detach()
                try:
                    if launch is not None:
                        if not already_dead:
                            await self._request_shutdown(launch)
                        await launch.dispose()
                finally:
                    self._override = KernelStatus.DEAD
                    self._emit(KernelStatus.DEAD)

        logger.info("[SESSION] Kernel shut down", kernel_id=self.id)

    async def _request_shutdown(self, launch: KernelLaunch) -> None:
        if launch.connection is None:
            return
        try:
            await asyncio.wait_for(
                launch.connection.shutdown(), timeout=self.settings.SHUTDOWN_TIMEOUT
            )
        except Exception as e:
            logger.warning(
                f"[SESSION] shutdown_request not acknowledged, disposing anyway: {e!r}",
                kernel_id=self.id,
            )

    async def interrupt(self) -> None:
        """
        Interrupt the running kernel.

        Uses either a signal (through the process) or an interrupt_request
        message, as chosen for the current launch; never both.
        """
        self._throw_if_disposed()
        launch = self._launch
        if launch is None or self.status == KernelStatus.DEAD:
            raise KernelNotStartedError(f"Kernel {self.id} is not running")
        await launch.interrupt(timeout=self.settings.INTERRUPT_TIMEOUT)
        logger.info(
            "[SESSION] Kernel interrupted",
            kernel_id=self.id,
            mode=launch.interrupt_mode.value,
        )

    async def dispose(self) -> None:
        """Irreversibly end this kernel handle. Safe to call repeatedly."""
        if self._is_disposed:
            return
        self._is_disposed = True

        launch, self._launch = self._launch, None
        self._detach()
        self._override = KernelStatus.DEAD
        self._emit(KernelStatus.DEAD)
        try:
            if launch is not None:
                await launch.dispose()
        finally:
            self.disposed.fire()
            self.status_changed.dispose()
            self.exited.dispose()
            self.disposed.dispose()
        logger.info("[SESSION] Kernel disposed", kernel_id=self.id)


class KernelSession:
    """
    A session bound to one resource (notebook or console) and its kernel.

    Args:
        resource: Path or URI of the notebook/script the session serves
        launcher: Starts kernel processes
        working_directory: CWD for launched kernels
        kernel_connection_metadata: Kernel spec + id
        launch_timeout: Seconds allowed for launch + handshake
        session_type: "notebook" or "console"
        connection_factory: Builds a wire connection for a process
        settings: Overrides the package settings
    """

    def __init__(
        self,
        resource: Union[str, Path],
        launcher: KernelLauncher,
        working_directory: Optional[Union[str, Path]],
        kernel_connection_metadata: KernelConnectionMetadata,
        launch_timeout: Optional[float] = None,
        session_type: Literal["notebook", "console"] = "notebook",
        connection_factory: Optional[WireConnectionFactory] = None,
        settings: Optional[SessionSettings] = None,
    ):
        self.id = uuid.uuid4().hex
        self.resource = str(resource)
        parsed = urlparse(self.resource)
        self.path = unquote(parsed.path) if parsed.scheme == "file" else self.resource
        self.name = Path(self.path).name
        self.type = session_type
        self.working_directory = working_directory
        self.kernel_connection_metadata = kernel_connection_metadata

        self.kernel = SessionKernel(
            launcher,
            kernel_connection_metadata,
            working_directory=working_directory,
            launch_timeout=launch_timeout,
            connection_factory=connection_factory,
            settings=settings,
        )
        self.status_changed: EventEmitter[KernelStatus] = EventEmitter("status_changed")
        self.disposed: EventEmitter[None] = EventEmitter("disposed")
        self._is_disposed = False
        self._kernel_subscription = self.kernel.status_changed.connect(self.status_changed.fire)

    @property
    def status(self) -> KernelStatus:
        return self.kernel.status

    @property
    def connection_status(self) -> ConnectionStatus:
        return self.kernel.connection_status

    @property
    def is_disposed(self) -> bool:
        return self._is_disposed

    @property
    def model(self) -> SessionModel:
        return SessionModel(
            id=self.id,
            name=self.name,
            path=self.path,
            type=self.type,
            kernel_id=self.kernel.id,
            kernel_name=self.kernel.name,
        )

    async def start_kernel(
        self,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> None:
        if self._is_disposed:
            raise KernelDisposedError(f"Session {self.id} has been disposed")
        logger.info("[SESSION] Starting kernel", session_id=self.id, path=self.path)
        await self.kernel.start(token=token, timeout=timeout)

    async def restart(self, token: Optional[CancellationToken] = None) -> None:
        await self.kernel.restart(token=token)

    async def shutdown(self) -> None:
        await self.kernel.shutdown()

    async def interrupt(self) -> None:
        await self.kernel.interrupt()

    async def dispose(self) -> None:
        if self._is_disposed:
            return
        self._is_disposed = True
        try:
            await self.kernel.dispose()
        finally:
            self._kernel_subscription.dispose()
            self.disposed.fire()
            self.status_changed.dispose()
            self.disposed.dispose()
        logger.info("[SESSION] Session disposed", session_id=self.id)
