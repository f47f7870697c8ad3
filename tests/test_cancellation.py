"""
Tests for cancellation tokens and wait_for_cancellable.
"""

import asyncio

import pytest

from kernel_session.cancellation import (
    CancellationToken,
    CancellationTokenSource,
    wait_for_cancellable,
)
from kernel_session.errors import CancellationError


class TestCancellationToken:

    def test_none_token_is_never_cancelled(self):
        token = CancellationToken.none()
        assert not token.is_cancellation_requested
        token.raise_if_cancelled()

    def test_source_cancels_its_token(self):
        source = CancellationTokenSource()
        fired = []
        source.token.on_cancellation_requested.connect(fired.append)

        source.cancel()
        source.cancel()

        assert source.token.is_cancellation_requested
        assert len(fired) == 1
        with pytest.raises(CancellationError, match="Canceled"):
            source.token.raise_if_cancelled()


@pytest.mark.asyncio
class TestWaitForCancellable:

    async def test_returns_result(self):
        async def work():
            return "ready"

        assert await wait_for_cancellable(work(), CancellationToken(), timeout=1) == "ready"

    async def test_already_cancelled_token_does_not_start_work(self):
        source = CancellationTokenSource()
        source.cancel()
        started = []

        async def work():
            started.append(True)

        with pytest.raises(CancellationError):
            await wait_for_cancellable(work(), source.token, timeout=1)
        assert started == []

    async def test_timeout_runs_cleanup_before_raising(self):
        cleaned_up = []

        async def work():
            try:
                await asyncio.Event().wait()
            finally:
                cleaned_up.append(True)

        with pytest.raises(asyncio.TimeoutError):
            await wait_for_cancellable(work(), CancellationToken(), timeout=0.05)
        assert cleaned_up == [True]

    async def test_cancellation_runs_cleanup_before_raising(self):
        source = CancellationTokenSource()
        cleaned_up = []

        async def work():
            try:
                await asyncio.Event().wait()
            finally:
                cleaned_up.append(True)

        asyncio.get_running_loop().call_later(0.02, source.cancel)
        with pytest.raises(CancellationError):
            await wait_for_cancellable(work(), source.token, timeout=5)
        assert cleaned_up == [True]

    async def test_cancellation_is_not_reported_as_timeout(self):
        source = CancellationTokenSource()
        asyncio.get_running_loop().call_later(0.02, source.cancel)

        with pytest.raises(CancellationError) as exc_info:
            await wait_for_cancellable(asyncio.sleep(10), source.token, timeout=5)
        assert not isinstance(exc_info.value, asyncio.TimeoutError)

    async def test_work_errors_propagate(self):
        async def work():
            raise LookupError("no such kernel")

        with pytest.raises(LookupError):
            await wait_for_cancellable(work(), CancellationToken(), timeout=1)

    async def test_no_timeout(self):
        async def work():
            await asyncio.sleep(0.01)
            return 7

        assert await wait_for_cancellable(work()) == 7
