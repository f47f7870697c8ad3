"""
Wire Connection
===============

Default protocol client for a launched kernel, built on
``jupyter_client.AsyncKernelClient``.

This module handles:
- Starting the ZMQ channels from a process's connection parameters
- One listener task per channel (iopub, shell, control)
- Mapping IOPub ``status`` messages to a kernel status + change stream
- Request/reply correlation by ``parent_header.msg_id``
- Circuit breaker for listener errors

It knows nothing about sessions, restarts or processes; a session owns one
connection per launch and discards it on restart or shutdown.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog
from jupyter_client import AsyncKernelClient

from .errors import KernelDisposedError
from .events import EventEmitter
from .models import ConnectionInfo, ConnectionStatus, KernelStatus

logger = structlog.get_logger(__name__)

_MAX_CONSECUTIVE_ERRORS = 5


class JupyterWireConnection:
    """
    Messaging client for one kernel process.

    ``status`` follows the kernel's IOPub ``execution_state`` broadcasts and
    never leaves ``dead`` once it gets there.
    """

    def __init__(self, connection_info: ConnectionInfo, kernel_id: str = ""):
        self.kernel_id = kernel_id
        self.status = KernelStatus.UNKNOWN
        self.connection_status = ConnectionStatus.CONNECTING
        self.status_changed: EventEmitter[KernelStatus] = EventEmitter("status_changed")
        self.iopub_message: EventEmitter[Dict[str, Any]] = EventEmitter("iopub_message")
        self.disposed: EventEmitter[None] = EventEmitter("disposed")
        self.is_disposed = False

        self._pending: Dict[str, asyncio.Future] = {}
        self._listener_tasks: Dict[str, asyncio.Task] = {}

        self._client = AsyncKernelClient()
        self._client.load_connection_info(connection_info.model_dump())

    def connect(self) -> None:
        """Start channels and listeners. Must be called from a running loop."""
        if self.is_disposed:
            raise KernelDisposedError("Cannot connect a disposed wire connection")
        self._client.start_channels()
        for channel in ("iopub", "shell", "control"):
            self._listener_tasks[channel] = asyncio.create_task(self._listen(channel))
        self.connection_status = ConnectionStatus.CONNECTED
        logger.info("[WIRE] Channels started", kernel_id=self.kernel_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _update_status(self, status: KernelStatus) -> None:
        if self.status == status or self.status == KernelStatus.DEAD:
            return
        self.status = status
        self.status_changed.fire(status)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    async def _receive(self, channel: str) -> Dict[str, Any]:
        if channel == "iopub":
            return await self._client.get_iopub_msg()
        if channel == "shell":
            return await self._client.get_shell_msg()
        return await self._client.get_control_msg()

    async def _listen(self, channel: str) -> None:
        consecutive_errors = 0
        while True:
            try:
                msg = await self._receive(channel)
                if channel == "iopub":
                    self._handle_iopub(msg)
                else:
                    self._handle_reply(msg)
                consecutive_errors = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Circuit breaker: prevent CPU spin on errors
                consecutive_errors += 1
                logger.error(
                    f"[WIRE] {channel} listener error: {e} "
                    f"(consecutive errors: {consecutive_errors})",
                    kernel_id=self.kernel_id,
                )
                if consecutive_errors >= _MAX_CONSECUTIVE_ERRORS:
                    logger.critical(
                        f"[CIRCUIT BREAKER] {channel} listener hit "
                        f"{_MAX_CONSECUTIVE_ERRORS} consecutive errors, stopping",
                        kernel_id=self.kernel_id,
                    )
                    self.connection_status = ConnectionStatus.DISCONNECTED
                    return
                # Exponential backoff: 1s, 2s, 4s, 8s
                await asyncio.sleep(min(2 ** (consecutive_errors - 1), 16))

    def _handle_iopub(self, msg: Dict[str, Any]) -> None:
        if msg.get("msg_type", msg.get("header", {}).get("msg_type")) == "status":
            state = msg.get("content", {}).get("execution_state")
            try:
                self._update_status(KernelStatus(state))
            except ValueError:
                logger.debug(f"[WIRE] Ignoring unknown execution_state {state!r}")
        self.iopub_message.fire(msg)

    def _handle_reply(self, msg: Dict[str, Any]) -> None:
        parent_id = msg.get("parent_header", {}).get("msg_id")
        future = self._pending.get(parent_id)
        if future is not None and not future.done():
            future.set_result(msg)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _send(
        self,
        channel,
        msg_type: str,
        content: Optional[Dict[str, Any]],
        expect_reply: bool,
        timeout: Optional[float],
    ) -> Optional[Dict[str, Any]]:
        if self.is_disposed:
            raise KernelDisposedError(f"Cannot send {msg_type}: connection disposed")
        msg = self._client.session.msg(msg_type, content or {})
        msg_id = msg["header"]["msg_id"]
        if not expect_reply:
            channel.send(msg)
            return None

        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            channel.send(msg)
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(msg_id, None)

    async def send_shell_message(
        self,
        msg_type: str,
        content: Optional[Dict[str, Any]] = None,
        *,
        expect_reply: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        return await self._send(
            self._client.shell_channel, msg_type, content, expect_reply, timeout
        )

    async def send_control_message(
        self,
        msg_type: str,
        content: Optional[Dict[str, Any]] = None,
        *,
        expect_reply: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        return await self._send(
            self._client.control_channel, msg_type, content, expect_reply, timeout
        )

    async def request_kernel_info(self) -> Dict[str, Any]:
        """Send kernel_info_request and return the kernel_info_reply."""
        return await self.send_shell_message("kernel_info_request")

    async def shutdown(self) -> None:
        """Ask the kernel to shut itself down and wait for the ack."""
        self._update_status(KernelStatus.TERMINATING)
        await self.send_control_message("shutdown_request", {"restart": False})

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        if self.is_disposed:
            return
        self.is_disposed = True

        for task in self._listener_tasks.values():
            task.cancel()
        self._listener_tasks.clear()

        for future in self._pending.values():
            if not future.done():
                future.set_exception(KernelDisposedError("Wire connection disposed"))
        self._pending.clear()

        try:
            self._client.stop_channels()
        except Exception as e:
            logger.warning(f"[WIRE] Error stopping channels: {e}", kernel_id=self.kernel_id)

        self.connection_status = ConnectionStatus.DISCONNECTED
        self._update_status(KernelStatus.DEAD)
        self.disposed.fire()
        self.status_changed.dispose()
        self.iopub_message.dispose()
        self.disposed.dispose()
        logger.info("[WIRE] Connection disposed", kernel_id=self.kernel_id)


def create_wire_connection(process) -> JupyterWireConnection:
    """Default factory: connect to a launched process's channels."""
    connection = JupyterWireConnection(
        process.connection_info,
        kernel_id=process.kernel_connection_metadata.id,
    )
    connection.connect()
    return connection
