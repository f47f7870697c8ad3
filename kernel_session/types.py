"""
Collaborator Interfaces
=======================

The session core consumes kernel processes, launchers and wire connections
only through these protocols. ``launcher`` and ``wire`` provide the default
jupyter_client-backed implementations; tests substitute fakes.
"""

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from .cancellation import CancellationToken
from .events import EventEmitter
from .models import (
    ConnectionInfo,
    ConnectionStatus,
    ExitInfo,
    KernelConnectionMetadata,
    KernelStatus,
)


class KernelProcess(Protocol):
    """One OS-level kernel subprocess."""

    kernel_connection_metadata: KernelConnectionMetadata
    connection_info: ConnectionInfo
    exited: EventEmitter[ExitInfo]
    can_interrupt: bool
    pid: Optional[int]
    is_disposed: bool

    async def interrupt(self) -> None: ...

    async def dispose(self) -> None: ...


class KernelLauncher(Protocol):
    """Starts kernel processes for a given spec."""

    async def launch(
        self,
        kernel_connection_metadata: KernelConnectionMetadata,
        working_directory: Optional[Union[str, Path]],
        timeout: float,
        token: CancellationToken,
        extra_args: Optional[List[str]] = None,
    ) -> KernelProcess: ...


class WireConnection(Protocol):
    """Protocol-level client bound to one kernel process."""

    status: KernelStatus
    connection_status: ConnectionStatus
    status_changed: EventEmitter[KernelStatus]
    is_disposed: bool

    async def request_kernel_info(self) -> Dict[str, Any]: ...

    async def send_shell_message(
        self,
        msg_type: str,
        content: Optional[Dict[str, Any]] = None,
        *,
        expect_reply: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]: ...

    async def send_control_message(
        self,
        msg_type: str,
        content: Optional[Dict[str, Any]] = None,
        *,
        expect_reply: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]: ...

    async def shutdown(self) -> None: ...

    def dispose(self) -> None: ...


WireConnectionFactory = Callable[[KernelProcess], WireConnection]
