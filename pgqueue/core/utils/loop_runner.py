# pgqueue/core/utils/loop_runner.py
"""
Event loop thread behind the blocking facades of ``PgQueue`` and
``PostgresJobStore``.

Pooled async connections belong to the loop that opened them, so a
``PgQueue`` hands its runner to the store it creates: ``app.submit_job(...)``
and ``app.get_store().list_failures(...)`` then run on the same loop.
"""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Callable, Optional

from pgqueue.core.logging import get_logger

logger = get_logger('loop_runner')

_JOIN_TIMEOUT_S = 2.0


class LoopRunnerError(RuntimeError):
    """A blocking facade could not reach its event loop."""


class LoopRunner:
    def __init__(self, name: str = 'pgqueue-loop') -> None:
        self.name = name
        self._lock = threading.RLock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._loop is not None

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._closed:
                raise LoopRunnerError(f'{self.name} is closed and cannot be restarted')
            if self._loop is None:
                loop = asyncio.new_event_loop()
                thread = threading.Thread(target=loop.run_forever, name=self.name, daemon=True)
                try:
                    thread.start()
                except RuntimeError as exc:
                    loop.close()
                    raise LoopRunnerError(
                        f'could not start {self.name}: {type(exc).__name__}: {exc}'
                    ) from exc
                self._loop, self._thread = loop, thread
            return self._loop

    def call(
        self,
        coro_fn: Callable[..., Awaitable[Any]],
        *args: Any,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Run ``coro_fn(*args, **kwargs)`` on the loop thread and block for its result.

        Exceptions from the coroutine propagate unchanged. When ``timeout``
        elapses first, the coroutine is cancelled and ``LoopRunnerError`` raised.
        """
        if self._thread is not None and threading.current_thread() is self._thread:
            raise LoopRunnerError(
                'blocking call made from the runner\'s own loop; use the async API'
            )
        loop = self._ensure_loop()
        coro = coro_fn(*args, **kwargs)
        try:
            future: Future[Any] = asyncio.run_coroutine_threadsafe(coro, loop)  # type: ignore[arg-type]
        except Exception as exc:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise LoopRunnerError(
                f'could not schedule {getattr(coro_fn, "__name__", coro_fn)}: '
                f'{type(exc).__name__}: {exc}'
            ) from exc
        try:
            return future.result(timeout)
        except TimeoutError:
            future.cancel()
            raise LoopRunnerError(
                f'{getattr(coro_fn, "__name__", coro_fn)} did not finish within {timeout}s'
            ) from None

    def close(self, final: Optional[Callable[[], Awaitable[Any]]] = None) -> None:
        """
        Await ``final`` on the loop (when given), then stop the thread.

        Closing twice is a no-op. A thread that does not exit in time keeps
        its loop open and a warning is logged.
        """
        with self._lock:
            if self._closed:
                return
        try:
            if final is not None:
                self.call(final)
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        with self._lock:
            self._closed = True
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(_JOIN_TIMEOUT_S)
            if thread.is_alive():
                logger.warning(f'{self.name} did not stop within {_JOIN_TIMEOUT_S}s; leaving loop open')
                return
        loop.close()
