"""
Property-based tests for the session status stream.

Random operation sequences are applied to a session backed by fakes, then
the emitted statuses and process disposals are checked.
"""

import asyncio

from hypothesis import given, settings, strategies as st

from conftest import FakeKernelEnvironment, record
from kernel_session.config import load_settings
from kernel_session.errors import KernelSessionError
from kernel_session.models import (
    ExitInfo,
    KernelConnectionMetadata,
    KernelSpec,
    KernelStatus,
)
from kernel_session.session import KernelSession

OPERATIONS = ["start", "restart", "shutdown", "interrupt", "exit", "busy", "idle"]

METADATA = KernelConnectionMetadata(
    id="python3-prop",
    kernel_spec=KernelSpec(name="python3", argv=["python", "-m", "ipykernel_launcher"]),
)


async def run_operations(operations):
    env = FakeKernelEnvironment()
    session = KernelSession(
        "/tmp/prop.ipynb",
        env.launcher,
        None,
        METADATA,
        connection_factory=env.connect,
        settings=load_settings(HANDSHAKE_INTERVAL=0.05),
    )
    statuses = record(session.status_changed)
    disposed = record(session.disposed)

    for op in operations:
        try:
            if op == "start":
                await session.start_kernel()
            elif op == "restart":
                await session.restart()
            elif op == "shutdown":
                await session.shutdown()
            elif op == "interrupt":
                await session.interrupt()
            elif op == "exit" and env.processes:
                env.process.exited.fire(ExitInfo(exit_code=1))
            elif op == "busy" and env.connections:
                env.connection.set_status(KernelStatus.BUSY)
            elif op == "idle" and env.connections:
                env.connection.set_status(KernelStatus.IDLE)
        except KernelSessionError:
            pass

    await session.dispose()
    return env, session, statuses, disposed


@settings(max_examples=60, deadline=None)
@given(st.lists(st.sampled_from(OPERATIONS), max_size=12))
def test_status_stream_invariants(operations):
    env, session, statuses, disposed = asyncio.run(run_operations(operations))

    for previous, current in zip(statuses, statuses[1:]):
        assert previous != current

    if statuses:
        assert statuses[-1] == KernelStatus.DEAD
    assert session.status == KernelStatus.DEAD
    assert len(disposed) == 1

    for process in env.processes:
        assert process.dispose.await_count == 1


@settings(max_examples=30, deadline=None)
@given(st.lists(st.sampled_from(["busy", "idle", "restart"]), max_size=10))
def test_status_matches_active_connection(operations):
    async def scenario():
        env = FakeKernelEnvironment()
        session = KernelSession(
            "/tmp/prop.ipynb",
            env.launcher,
            None,
            METADATA,
            connection_factory=env.connect,
            settings=load_settings(HANDSHAKE_INTERVAL=0.05),
        )
        await session.start_kernel()
        for op in operations:
            if op == "restart":
                await session.restart()
            else:
                env.connection.set_status(KernelStatus(op))
            assert session.status == env.connection.status
        await session.dispose()

    asyncio.run(scenario())
