"""
Pytest configuration and fixtures for kernel session tests.

The session core only talks to its collaborators through the protocols in
``kernel_session.types``, so tests drive it with in-memory fakes: no kernel
process or ZMQ socket is ever created here.
"""

import asyncio
from typing import List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

from kernel_session.config import load_settings
from kernel_session.events import EventEmitter
from kernel_session.models import (
    ConnectionInfo,
    ConnectionStatus,
    ExitInfo,
    KernelConnectionMetadata,
    KernelSpec,
    KernelStatus,
)
from kernel_session.session import KernelSession

KERNEL_INFO_REPLY = {
    "header": {"msg_type": "kernel_info_reply"},
    "content": {
        "status": "ok",
        "implementation": "ipython",
        "language_info": {"name": "python"},
    },
}


class FakeKernelProcess:
    """Stands in for a launched kernel subprocess."""

    def __init__(self, kernel_connection_metadata, can_interrupt=True, pid=4242):
        self.kernel_connection_metadata = kernel_connection_metadata
        self.connection_info = ConnectionInfo(
            shell_port=50001, iopub_port=50002, stdin_port=50003,
            control_port=50004, hb_port=50005, key="secret",
        )
        self.exited = EventEmitter("exited")
        self.can_interrupt = can_interrupt
        self.pid = pid
        self.is_disposed = False
        self.interrupt = AsyncMock()
        self.dispose = AsyncMock(side_effect=self._dispose)

    async def _dispose(self):
        self.is_disposed = True


class FakeWireConnection:
    """
    Wire connection double.

    ``request_kernel_info`` reports ``initial_status`` on the status stream
    the way a real kernel broadcasts on IOPub, unless ``respond`` is False,
    in which case it never returns.
    """

    def __init__(self, process, initial_status=KernelStatus.IDLE, respond=True, gate=None):
        self.process = process
        self.status = KernelStatus.UNKNOWN
        self.connection_status = ConnectionStatus.CONNECTED
        self.status_changed = EventEmitter("status_changed")
        self.is_disposed = False
        self.kernel_info_requests = 0
        self._initial_status = initial_status
        self._respond = respond
        self._gate = gate

        self.send_shell_message = AsyncMock(return_value={"content": {"status": "ok"}})
        self.send_control_message = AsyncMock(return_value={"content": {"status": "ok"}})
        self.shutdown = AsyncMock()
        self.dispose = Mock(side_effect=self._dispose)

    def set_status(self, status: KernelStatus) -> None:
        if self.status == status:
            return
        self.status = status
        self.status_changed.fire(status)

    async def request_kernel_info(self):
        self.kernel_info_requests += 1
        if not self._respond:
            await asyncio.Event().wait()
        if self._gate is not None:
            await self._gate.wait()
        self.set_status(self._initial_status)
        return KERNEL_INFO_REPLY

    def _dispose(self):
        self.is_disposed = True
        self.connection_status = ConnectionStatus.DISCONNECTED
        self.set_status(KernelStatus.DEAD)


class ExitingConnection(FakeWireConnection):
    """Its kernel process exits while answering the first kernel_info_request."""

    def __init__(self, process, reply=True, **kwargs):
        super().__init__(process, **kwargs)
        self._reply = reply

    async def request_kernel_info(self):
        self.kernel_info_requests += 1
        if self._reply:
            self.set_status(KernelStatus.IDLE)
        self.process.exited.fire(ExitInfo(exit_code=1, reason="No module named ipykernel"))
        if not self._reply:
            await asyncio.Event().wait()
        return KERNEL_INFO_REPLY


class NeverRepliesExitingConnection(ExitingConnection):
    def __init__(self, process, **kwargs):
        super().__init__(process, reply=False, **kwargs)


class StartingFirstConnection(FakeWireConnection):
    """Broadcasts only ``starting`` until the second kernel_info_request."""

    async def request_kernel_info(self):
        self.kernel_info_requests += 1
        if self.kernel_info_requests == 1:
            self.set_status(KernelStatus.STARTING)
        else:
            self.set_status(KernelStatus.IDLE)
        return KERNEL_INFO_REPLY


class FakeKernelEnvironment:
    """A launcher plus connection factory that record everything they build."""

    def __init__(self, can_interrupt=True, respond=True):
        self.can_interrupt = can_interrupt
        self.respond = respond
        self.handshake_gate: Optional[asyncio.Event] = None
        self.processes: List[FakeKernelProcess] = []
        self.connections: List[FakeWireConnection] = []
        self.max_live_processes = 0
        self.connection_class = FakeWireConnection

        self.launcher = Mock()
        self.launcher.launch = AsyncMock(side_effect=self._launch)

    async def _launch(self, kernel_connection_metadata, working_directory, timeout, token, extra_args=None):
        live = sum(1 for p in self.processes if not p.is_disposed)
        self.max_live_processes = max(self.max_live_processes, live + 1)
        process = FakeKernelProcess(
            kernel_connection_metadata,
            can_interrupt=self.can_interrupt,
            pid=1000 + len(self.processes),
        )
        self.processes.append(process)
        return process

    def connect(self, process) -> FakeWireConnection:
        connection = self.connection_class(process, respond=self.respond, gate=self.handshake_gate)
        self.connections.append(connection)
        return connection

    @property
    def process(self) -> FakeKernelProcess:
        return self.processes[-1]

    @property
    def connection(self) -> FakeWireConnection:
        return self.connections[-1]


def record(emitter) -> list:
    """Collect every value fired on ``emitter``."""
    values = []
    emitter.connect(values.append)
    return values


@pytest.fixture
def kernel_spec():
    return KernelSpec(
        name="python3",
        display_name="Python 3",
        argv=["python", "-m", "ipykernel_launcher", "-f", "{connection_file}"],
        language="python",
    )


@pytest.fixture
def metadata(kernel_spec):
    return KernelConnectionMetadata(id="python3-local", kernel_spec=kernel_spec)


@pytest.fixture
def message_metadata(kernel_spec):
    spec = KernelSpec(**{**kernel_spec.model_dump(), "interrupt_mode": "message"})
    return KernelConnectionMetadata(id="python3-message", kernel_spec=spec)


@pytest.fixture
def fast_settings():
    return load_settings(
        LAUNCH_TIMEOUT=5,
        HANDSHAKE_INTERVAL=0.05,
        INTERRUPT_TIMEOUT=1,
        SHUTDOWN_TIMEOUT=0.5,
        AUTO_RESTART=False,
    )


@pytest.fixture
def env():
    return FakeKernelEnvironment()


@pytest.fixture
def make_session(env, metadata, fast_settings, tmp_path):
    def _make(kernel_connection_metadata=None, launch_timeout=5.0, **kwargs):
        return KernelSession(
            tmp_path / "analysis.ipynb",
            env.launcher,
            tmp_path,
            kernel_connection_metadata or metadata,
            launch_timeout=launch_timeout,
            connection_factory=env.connect,
            settings=fast_settings,
            **kwargs,
        )
    return _make


@pytest.fixture
def session(make_session):
    return make_session()
