# pgqueue/core/scheduler/service.py
from __future__ import annotations
import asyncio
from typing import TYPE_CHECKING, Optional
from pgqueue.core.defaults import DRAIN_POLL_INTERVAL_S
from pgqueue.core.logging import get_logger
from pgqueue.core.store.postgres import PostgresJobStore
from pgqueue.core.types.result import is_err
from pgqueue.core.utils.db import retry_transient
from pgqueue.core.worker.sweeper import JobSweeper, SweepStats

if TYPE_CHECKING:
    from pgqueue.core.app import PgQueue

logger = get_logger('scheduler')


class Scheduler:
    """
    Periodic driver for the sweeps.

    One claim sweep per tick, and resolution sweeps every
    ``resolve_interval_seconds`` in between (six per minute with the default
    cadence). An error in one sweep is logged and the loop carries on.

    Any number of schedulers may run against the same database; claims use
    ``SKIP LOCKED`` so they never dispatch the same job twice.
    """

    def __init__(self, app: PgQueue):
        self.app = app
        self.store: Optional[PostgresJobStore] = None
        self.sweeper: Optional[JobSweeper] = None
        self._stop = asyncio.Event()
        self._initialized = False

        self.sweep_config = app.config.sweep
        self.drain_timeout_seconds = app.config.dispatch.http_timeout_seconds
        logger.info(
            f'Scheduler initialized: tick={self.sweep_config.tick_seconds}s, '
            f'resolve_interval={self.sweep_config.resolve_interval_seconds}s, '
            f'batch_size={self.sweep_config.batch_size}'
        )

    async def start(self) -> None:
        """Initialize the store schema and the sweeper."""
        if self._initialized:
            return

        self.store = self.app.get_store()
        store_cfg = self.app.config.store
        init_result = await retry_transient(
            self.store.ensure_schema_initialized,
            what='Schema initialization',
            attempts=store_cfg.init_retry_attempts,
            initial_delay_seconds=store_cfg.init_retry_initial_seconds,
            max_delay_seconds=store_cfg.init_retry_max_seconds,
        )
        if is_err(init_result):
            err = init_result.err_value
            raise RuntimeError(
                f'Schema initialization failed: {err.message}',
            ) from err.exception
        logger.info('Store initialized')

        self.sweeper = self.app.get_sweeper()
        self._initialized = True
        logger.info('Scheduler started successfully')

    async def stop(self) -> None:
        """Clean shutdown of scheduler."""
        self._stop.set()
        await self.app.close_async()
        logger.info('Scheduler stopped')

    def request_stop(self) -> None:
        """Request scheduler to stop gracefully."""
        self._stop.set()

    def _require_sweeper(self) -> JobSweeper:
        if self.sweeper is None:
            raise RuntimeError('Scheduler not started')
        return self.sweeper

    async def _claim_sweep(self) -> Optional[SweepStats]:
        try:
            return await self._require_sweeper().process_scheduled_jobs()
        except Exception as e:
            logger.error(f'Error in claim sweep: {e}', exc_info=True)
            return None

    async def _resolution_sweep(self) -> Optional[SweepStats]:
        try:
            return await self._require_sweeper().process_job_results()
        except Exception as e:
            logger.error(f'Error in resolution sweep: {e}', exc_info=True)
            return None

    async def run_once(self) -> tuple[Optional[SweepStats], Optional[SweepStats]]:
        """One claim sweep followed by one resolution sweep."""
        await self.start()
        claimed = await self._claim_sweep()
        resolved = await self._resolution_sweep()
        return claimed, resolved

    async def drain_in_flight(
        self, timeout_seconds: Optional[float] = None,
    ) -> Optional[SweepStats]:
        """
        Run resolution sweeps until this process has no unresolved request.

        Requests still running at exit are cancelled, and their join rows only
        surface again as lost after ``lost_request_after_seconds``. Bounded by
        the HTTP timeout, so every request has had its chance to finish.
        Returns the last sweep's stats, or None when that sweep failed.
        """
        if timeout_seconds is None:
            timeout_seconds = self.drain_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while True:
            stats = await self._resolution_sweep()
            if stats is None or stats.pending == 0:
                return stats
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    f'{stats.pending} request(s) still in flight after {timeout_seconds}s'
                )
                return stats
            await asyncio.sleep(min(DRAIN_POLL_INTERVAL_S, remaining))

    async def _sleep(self, seconds: float) -> bool:
        """Wait ``seconds`` or until stop is requested. True when stopping."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_forever(self) -> None:
        """Main scheduler loop."""
        logger.info('Starting scheduler loop')
        loop = asyncio.get_running_loop()

        try:
            await self.start()

            while not self._stop.is_set():
                tick_started = loop.time()
                await self._claim_sweep()

                while not self._stop.is_set():
                    await self._resolution_sweep()
                    remaining = self.sweep_config.tick_seconds - (loop.time() - tick_started)
                    if remaining <= 0:
                        break
                    if await self._sleep(
                        min(self.sweep_config.resolve_interval_seconds, remaining)
                    ):
                        break
        finally:
            if self._initialized:
                await self.drain_in_flight()
            await self.stop()
