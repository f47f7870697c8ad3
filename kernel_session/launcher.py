"""
Kernel Launcher
===============

Default launcher: starts the exact kernel spec carried by the connection
metadata through ``jupyter_client.AsyncKernelManager`` and hands back a
process handle.

This module handles:
- Starting kernels in a working directory with extra arguments
- Bounding the launch by a timeout and a cancellation token
- Watching the process and publishing an ``exited`` notification
- Signal interrupts and process teardown

Kernel discovery is not done here: the spec in the metadata is used as-is.
"""

import asyncio
import os
from pathlib import Path
from typing import List, Optional, Union

import structlog
from jupyter_client.kernelspec import KernelSpec as JupyterKernelSpec
from jupyter_client.kernelspec import KernelSpecManager
from jupyter_client.manager import AsyncKernelManager

from .cancellation import CancellationToken, wait_for_cancellable
from .config import SessionSettings, settings as default_settings
from .events import EventEmitter
from .models import (
    ConnectionInfo,
    ExitInfo,
    InterruptMode,
    KernelConnectionMetadata,
)

logger = structlog.get_logger(__name__)


def _get_kernel_process(km):
    """
    Get the kernel subprocess from a KernelManager.

    In newer versions of jupyter_client, the process is accessed via
    km.provisioner.process instead of the deprecated km.kernel.
    """
    if getattr(km, "provisioner", None):
        process = getattr(km.provisioner, "process", None)
        if process:
            return process
    return getattr(km, "kernel", None)


class _FixedKernelSpecManager(KernelSpecManager):
    """Resolves every kernel name to one pre-built spec."""

    def __init__(self, kernel_spec: JupyterKernelSpec, **kwargs):
        super().__init__(**kwargs)
        self._fixed_spec = kernel_spec

    def get_kernel_spec(self, kernel_name):
        return self._fixed_spec


def _to_jupyter_spec(metadata: KernelConnectionMetadata) -> JupyterKernelSpec:
    spec = metadata.kernel_spec
    return JupyterKernelSpec(
        argv=list(spec.argv),
        display_name=spec.display_name or spec.name,
        language=spec.language or "",
        interrupt_mode=(spec.interrupt_mode or InterruptMode.SIGNAL).value,
        env=dict(spec.env),
        metadata=dict(spec.metadata),
    )


class LocalKernelProcess:
    """Process handle for a kernel started by ``LocalKernelLauncher``."""

    def __init__(
        self,
        km: AsyncKernelManager,
        kernel_connection_metadata: KernelConnectionMetadata,
        poll_interval: float = 1.0,
        shutdown_timeout: float = 5.0,
    ):
        self._km = km
        self.kernel_connection_metadata = kernel_connection_metadata
        self.connection_info = ConnectionInfo(**km.get_connection_info(session=False))
        self.exited: EventEmitter[ExitInfo] = EventEmitter("exited")
        self.is_disposed = False
        self._poll_interval = poll_interval
        self._shutdown_timeout = shutdown_timeout
        self._watcher: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        process = _get_kernel_process(self._km)
        return getattr(process, "pid", None) if process else None

    @property
    def can_interrupt(self) -> bool:
        return self.kernel_connection_metadata.kernel_spec.interrupt_mode != InterruptMode.MESSAGE

    def start_watching(self) -> None:
        self._watcher = asyncio.create_task(self._watch())

    async def _watch(self) -> None:
        """Poll the process and fire ``exited`` once it is gone."""
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                alive = await self._km.is_alive()
            except Exception as e:
                logger.warning(f"[KERNEL] Liveness check failed: {e}", pid=self.pid)
                continue
            if not alive:
                break

        process = _get_kernel_process(self._km)
        exit_code = getattr(process, "returncode", None) if process else None
        logger.warning(
            "[KERNEL] Process exited",
            kernel_id=self.kernel_connection_metadata.id,
            exit_code=exit_code,
        )
        self.exited.fire(ExitInfo(exit_code=exit_code, reason="Process exited"))

    async def interrupt(self) -> None:
        await self._km.interrupt_kernel()
        logger.info("[KERNEL] Interrupt signal sent", pid=self.pid)

    async def dispose(self) -> None:
        if self.is_disposed:
            return
        self.is_disposed = True

        if self._watcher and not self._watcher.done():
            self._watcher.cancel()
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass
        self.exited.dispose()

        try:
            await asyncio.wait_for(
                self._km.shutdown_kernel(now=True), timeout=self._shutdown_timeout
            )
            logger.info("[KERNEL] Process shut down", kernel_id=self.kernel_connection_metadata.id)
        except asyncio.TimeoutError:
            logger.warning(
                "[KERNEL] Timeout shutting down kernel process. It may be orphaned.",
                kernel_id=self.kernel_connection_metadata.id,
            )


class LocalKernelLauncher:
    """Launches kernel specs as local subprocesses."""

    def __init__(self, settings: Optional[SessionSettings] = None):
        self.settings = settings or default_settings

    async def launch(
        self,
        kernel_connection_metadata: KernelConnectionMetadata,
        working_directory: Optional[Union[str, Path]],
        timeout: float,
        token: CancellationToken,
        extra_args: Optional[List[str]] = None,
    ) -> LocalKernelProcess:
        """
        Start a kernel process.

        Args:
            kernel_connection_metadata: Spec + id of the kernel to start
            working_directory: CWD for the kernel (None keeps ours)
            timeout: Seconds allowed for the process to come up
            token: Cancellation token checked while waiting
            extra_args: Appended to the spec's argv

        Returns:
            A watched LocalKernelProcess

        Raises:
            CancellationError, asyncio.TimeoutError, or whatever
            jupyter_client raises when the spawn fails
        """
        token.raise_if_cancelled()
        spec = kernel_connection_metadata.kernel_spec
        km = AsyncKernelManager(
            kernel_name=spec.name,
            kernel_spec_manager=_FixedKernelSpecManager(_to_jupyter_spec(kernel_connection_metadata)),
        )

        kw = {"extra_arguments": list(extra_args or [])}
        if working_directory:
            kw["cwd"] = os.fspath(working_directory)

        try:
            await wait_for_cancellable(km.start_kernel(**kw), token, timeout)
        except BaseException:
            logger.warning(
                "[KERNEL] Launch failed, cleaning up",
                kernel_id=kernel_connection_metadata.id,
            )
            try:
                await km.shutdown_kernel(now=True)
            except Exception as e:
                logger.debug(f"[KERNEL] Cleanup after failed launch: {e}")
            raise

        process = LocalKernelProcess(
            km,
            kernel_connection_metadata,
            poll_interval=self.settings.EXIT_POLL_INTERVAL,
            shutdown_timeout=self.settings.SHUTDOWN_TIMEOUT,
        )
        process.start_watching()
        logger.info(
            f"[KERNEL] Started {spec.display_name or spec.name}",
            kernel_id=kernel_connection_metadata.id,
            pid=process.pid,
            cwd=kw.get("cwd"),
        )
        return process
