"""Tests for LoopRunner, the loop thread behind the sync facades."""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import MagicMock, patch

import pytest

from pgqueue.core.utils.loop_runner import LoopRunner, LoopRunnerError


@pytest.mark.unit
class TestLoopRunnerCall:
    def test_runs_coroutine_on_named_thread(self) -> None:
        runner = LoopRunner('pgqueue-test')

        async def where(x: int) -> tuple[str, int]:
            await asyncio.sleep(0)
            return threading.current_thread().name, x * 2

        try:
            name, value = runner.call(where, 21)
        finally:
            runner.close()

        assert (name, value) == ('pgqueue-test', 42)

    def test_calls_share_one_loop(self) -> None:
        runner = LoopRunner()

        async def loop_id() -> int:
            return id(asyncio.get_running_loop())

        try:
            assert runner.call(loop_id) == runner.call(loop_id)
            assert runner.running is True
        finally:
            runner.close()

    def test_exceptions_propagate(self) -> None:
        runner = LoopRunner()

        async def boom() -> None:
            raise LookupError('secret missing')

        try:
            with pytest.raises(LookupError, match='secret missing'):
                runner.call(boom)
        finally:
            runner.close()

    def test_timeout_cancels_coroutine(self) -> None:
        runner = LoopRunner()
        cancelled = threading.Event()

        async def slow() -> None:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        try:
            with pytest.raises(LoopRunnerError, match='did not finish within'):
                runner.call(slow, timeout=0.05)
            assert cancelled.wait(2)
        finally:
            runner.close()

    def test_scheduling_failure_is_wrapped(self) -> None:
        runner = LoopRunner()

        async def sample() -> int:
            return 1

        try:
            with (
                patch('asyncio.run_coroutine_threadsafe', side_effect=RuntimeError('boom')),
                pytest.raises(LoopRunnerError, match='could not schedule sample'),
            ):
                runner.call(sample)
        finally:
            runner.close()

    def test_call_from_own_loop_is_refused(self) -> None:
        runner = LoopRunner()

        async def sample() -> int:
            return 1

        async def reentrant() -> None:
            runner.call(sample)

        try:
            with pytest.raises(LoopRunnerError, match='use the async API'):
                runner.call(reentrant)
        finally:
            runner.close()


@pytest.mark.unit
class TestLoopRunnerClose:
    def test_final_coroutine_runs_before_shutdown(self) -> None:
        runner = LoopRunner()
        seen: list[str] = []

        async def final() -> None:
            seen.append(threading.current_thread().name)

        runner.close(final)

        assert seen == ['pgqueue-loop']
        assert runner.running is False

    def test_close_twice_is_noop(self) -> None:
        runner = LoopRunner()
        final = MagicMock()

        runner.close()
        runner.close(final)

        final.assert_not_called()

    def test_closed_runner_cannot_restart(self) -> None:
        runner = LoopRunner()
        runner.close()

        async def sample() -> int:
            return 1

        with pytest.raises(LoopRunnerError, match='cannot be restarted'):
            runner.call(sample)

    def test_stuck_thread_leaves_loop_open(self) -> None:
        runner = LoopRunner()
        loop = MagicMock()
        thread = MagicMock()
        thread.is_alive.return_value = True
        runner._loop, runner._thread = loop, thread

        with patch('pgqueue.core.utils.loop_runner.logger') as mock_logger:
            runner.close()

        loop.close.assert_not_called()
        mock_logger.warning.assert_called_once()
