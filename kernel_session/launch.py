"""
Kernel Launch
=============

One running kernel instance: the process handle and the wire connection
bound to it. A session owns at most one active launch and replaces it
wholesale on restart.

This module handles:
- Launch -> connect -> handshake with cancellation checkpoints
- Tearing down a partially built launch on failure
- Selecting the interrupt path once per launch
- Idempotent disposal (the process is disposed at most once)
"""

import asyncio
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from .cancellation import CancellationToken, _drain
from .errors import KernelDiedError, KernelInterruptError
from .models import ExitInfo, InterruptMode, KernelConnectionMetadata, KernelStatus
from .types import KernelLauncher, KernelProcess, WireConnection, WireConnectionFactory

logger = structlog.get_logger(__name__)

_LIVE_STATUSES = (KernelStatus.IDLE, KernelStatus.BUSY)


class LaunchState(str, Enum):
    NOT_STARTED = "not-started"
    ACTIVE = "active"
    DISPOSED = "disposed"


class KernelLaunch:
    """A (process, wire connection) pair."""

    def __init__(
        self,
        process: KernelProcess,
        kernel_connection_metadata: KernelConnectionMetadata,
    ):
        self.process = process
        self.kernel_connection_metadata = kernel_connection_metadata
        self.connection: Optional[WireConnection] = None
        self.kernel_info: Dict[str, Any] = {}
        self.state = LaunchState.NOT_STARTED
        self.exit_info: Optional[ExitInfo] = None
        self._exited = asyncio.Event()
        self._exit_subscription = process.exited.connect(self._on_exit)

        spec_mode = kernel_connection_metadata.kernel_spec.interrupt_mode
        if spec_mode == InterruptMode.MESSAGE or not process.can_interrupt:
            self.interrupt_mode = InterruptMode.MESSAGE
        else:
            self.interrupt_mode = InterruptMode.SIGNAL

    @classmethod
    async def create(
        cls,
        launcher: KernelLauncher,
        kernel_connection_metadata: KernelConnectionMetadata,
        working_directory: Optional[Union[str, Path]],
        timeout: float,
        token: CancellationToken,
        connection_factory: WireConnectionFactory,
        handshake_interval: float = 1.0,
        extra_args: Optional[List[str]] = None,
    ) -> "KernelLaunch":
        """
        Launch a kernel process, connect to it and complete the handshake.

        Anything built before a failure (or cancellation) is disposed before
        the error propagates.
        """
        token.raise_if_cancelled()
        process = await launcher.launch(
            kernel_connection_metadata, working_directory, timeout, token, extra_args
        )
        launch = cls(process, kernel_connection_metadata)
        try:
            token.raise_if_cancelled()
            launch.connection = connection_factory(process)
            token.raise_if_cancelled()
            launch.kernel_info = await launch._handshake_unless_exited(handshake_interval)
        except BaseException:
            await launch.dispose()
            raise

        launch.state = LaunchState.ACTIVE
        logger.info(
            "[KERNEL] Handshake complete",
            kernel_id=kernel_connection_metadata.id,
            pid=process.pid,
            interrupt_mode=launch.interrupt_mode.value,
        )
        return launch

    def _on_exit(self, exit_info: ExitInfo) -> None:
        if self.exit_info is None:
            self.exit_info = exit_info
            self._exited.set()

    @property
    def has_exited(self) -> bool:
        return self.exit_info is not None

    def raise_if_exited(self) -> None:
        if self.exit_info is not None:
            raise KernelDiedError(self.kernel_connection_metadata, self.exit_info)

    async def _handshake_unless_exited(self, interval: float) -> Dict[str, Any]:
        """Run the handshake, failing as soon as the process exits."""
        self.raise_if_exited()
        handshake = asyncio.ensure_future(self._handshake(interval))
        exited = asyncio.ensure_future(self._exited.wait())
        try:
            await asyncio.wait({handshake, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            exited.cancel()
            if not handshake.done():
                handshake.cancel()
                await _drain(handshake)
        self.raise_if_exited()
        return handshake.result()

    async def _handshake(self, interval: float) -> Dict[str, Any]:
        """
        kernel_info_request/reply plus at least one idle/busy status.

        IOPub can drop the first status broadcast while its subscription is
        still settling, so the request is re-sent until one arrives. The
        ``starting`` broadcast does not count.
        """
        seen = asyncio.Event()

        def on_status(status: KernelStatus) -> None:
            if status in _LIVE_STATUSES:
                seen.set()

        subscription = self.connection.status_changed.connect(on_status)
        try:
            while True:
                reply = await self.connection.request_kernel_info()
                if seen.is_set() or self.connection.status in _LIVE_STATUSES:
                    return (reply or {}).get("content", {})
                try:
                    await asyncio.wait_for(seen.wait(), timeout=interval)
                    return (reply or {}).get("content", {})
                except asyncio.TimeoutError:
                    logger.debug(
                        "[KERNEL] No status broadcast yet, re-sending kernel_info_request",
                        kernel_id=self.kernel_connection_metadata.id,
                    )
        finally:
            subscription.dispose()

    @property
    def status(self) -> KernelStatus:
        if self.connection is None:
            return KernelStatus.UNKNOWN
        return self.connection.status

    async def interrupt(self, timeout: Optional[float] = None) -> None:
        if self.interrupt_mode == InterruptMode.SIGNAL:
            await self.process.interrupt()
            return

        try:
            reply = await self.connection.send_shell_message(
                "interrupt_request", {}, timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise KernelInterruptError(
                f"Kernel {self.kernel_connection_metadata.id} did not acknowledge interrupt_request"
            ) from e

        content = (reply or {}).get("content", {})
        if content.get("status") == "error":
            raise KernelInterruptError(
                f"Kernel rejected interrupt_request: {content.get('evalue', 'unknown error')}"
            )

    async def dispose(self) -> None:
        if self.state == LaunchState.DISPOSED:
            return
        self.state = LaunchState.DISPOSED
        self._exit_subscription.dispose()
        try:
            if self.connection is not None:
                self.connection.dispose()
        finally:
            await self.process.dispose()
