from unittest.mock import patch

import pytest

from conftest import FakeKernelEnvironment
from kernel_session.config import load_settings
from kernel_session.errors import KernelConnectionTimeoutError
from kernel_session.factory import KernelSessionFactory
from kernel_session.launcher import LocalKernelLauncher
from kernel_session.models import KernelStatus
from kernel_session.session import KernelSession


def test_default_launcher():
    factory = KernelSessionFactory()
    assert isinstance(factory.launcher, LocalKernelLauncher)


@pytest.mark.asyncio
class TestKernelSessionFactory:

    async def test_create_returns_started_session(self, env, metadata, fast_settings, tmp_path):
        factory = KernelSessionFactory(env.launcher, fast_settings, env.connect)

        session = await factory.create(tmp_path / "a.ipynb", metadata, working_directory=tmp_path)

        assert session.status == KernelStatus.IDLE
        assert session.model.path == str(tmp_path / "a.ipynb")
        assert factory.monitors == {}
        await session.dispose()

    async def test_auto_restart_attaches_monitor(self, env, metadata, tmp_path):
        settings = load_settings(
            AUTO_RESTART=True,
            MAX_AUTO_RESTARTS=1,
            AUTO_RESTART_RESET_AFTER=60,
            HANDSHAKE_INTERVAL=0.05,
        )
        factory = KernelSessionFactory(env.launcher, settings, env.connect)

        session = await factory.create(tmp_path / "a.ipynb", metadata)

        assert factory.monitors[session.id].max_restarts == 1
        assert factory.monitors[session.id].reset_after == 60
        await session.dispose()
        assert session.id not in factory.monitors

    async def test_session_disposed_when_start_fails(self, metadata, tmp_path):
        env = FakeKernelEnvironment(respond=False)
        settings = load_settings(LAUNCH_TIMEOUT=0.1, HANDSHAKE_INTERVAL=0.05)
        factory = KernelSessionFactory(env.launcher, settings, env.connect)
        created = []

        def build(*args, **kwargs):
            created.append(KernelSession(*args, **kwargs))
            return created[-1]

        with patch("kernel_session.factory.KernelSession", side_effect=build):
            with pytest.raises(KernelConnectionTimeoutError):
                await factory.create(tmp_path / "a.ipynb", metadata)

        assert created[0].is_disposed
        env.process.dispose.assert_awaited_once()
