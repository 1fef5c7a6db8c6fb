"""
The two sweeps that drive jobs forward.

``process_scheduled_jobs`` claims due rows with ``FOR UPDATE SKIP LOCKED`` and
dispatches each one inside its own savepoint, so one bad job never undoes the
rest of the batch. ``process_job_results`` settles HTTP jobs whose responses
have arrived.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from psycopg.types.json import Jsonb
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue.core.codec.serde import loads_json
from pgqueue.core.collaborators.audit import AuditSink
from pgqueue.core.collaborators.vault import SecretResolver
from pgqueue.core.errors import PgQueueError
from pgqueue.core.logging import get_logger, job_context
from pgqueue.core.models.app import DispatchConfig, SweepConfig
from pgqueue.core.models.job import AuthConfig, JobSpec
from pgqueue.core.retry.classifier import (
    AttemptOutcome,
    Classification,
    classify,
    classify_lease_expiry,
)
from pgqueue.core.store.postgres import insert_job, signing_config_from_row
from pgqueue.core.types.status import JobStatus, JobType
from pgqueue.core.types.transitions import validate_transition
from pgqueue.core.worker.dispatcher import ClaimedJob, Dispatcher
from pgqueue.core.worker.sql import (
    CLAIM_DUE_JOBS_SQL,
    CLAIM_PENDING_REQUESTS_SQL,
    DELETE_EXECUTED_REQUEST_SQL,
    DELETE_ORPHANED_REQUESTS_SQL,
    INSERT_EXECUTED_REQUEST_SQL,
    INSERT_FAILED_LOG_SQL,
    MARK_PROCESSING_SQL,
    SETTLE_JOB_SQL,
)

logger = get_logger('sweeper')

REDIRECT_SOURCE = 'redirect'


@dataclass(slots=True)
class SweepStats:
    claimed: int = 0
    settled: int = 0
    submitted: int = 0
    failures: int = 0  # attempts appended to the failure log
    errors: int = 0  # rows whose handling raised
    pending: int = 0  # handles still in flight
    spawned: int = 0

    def summary(self) -> str:
        return (
            f'claimed={self.claimed} settled={self.settled} submitted={self.submitted} '
            f'failures={self.failures} errors={self.errors} pending={self.pending} '
            f'spawned={self.spawned}'
        )


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class JobSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: Dispatcher,
        *,
        sweep_config: SweepConfig,
        dispatch_config: DispatchConfig,
        secret_resolver: Optional[SecretResolver] = None,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.http_executor = dispatcher.http_executor
        self.sweep_config = sweep_config
        self.dispatch_config = dispatch_config
        self.secret_resolver = secret_resolver
        self.audit_sink = audit_sink

    # ----------------- Claim sweep -----------------

    async def process_scheduled_jobs(self) -> SweepStats:
        """Claim due jobs and dispatch each one. Returns per-sweep counters."""
        stats = SweepStats()
        submitted: list[str] = []
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    CLAIM_DUE_JOBS_SQL, {'lim': self.sweep_config.batch_size},
                )
                rows = result.fetchall()
                stats.claimed = len(rows)
                for row in rows:
                    with job_context(row.id):
                        await self._process_claimed(session, row, stats, submitted)
                await session.commit()
            except BaseException:
                # Requests whose join rows never committed can't be resolved
                for handle in submitted:
                    self.http_executor.discard(handle)
                raise

        if stats.claimed:
            logger.info(f'Claim sweep: {stats.summary()}')
        return stats

    async def _process_claimed(
        self,
        session: AsyncSession,
        row: Any,
        stats: SweepStats,
        submitted: list[str],
    ) -> None:
        job = ClaimedJob.from_row(row)
        now: datetime = row.db_now
        handle: Optional[str] = None
        try:
            async with session.begin_nested():
                outcome = await self.dispatcher.dispatch(session, job, now)
                if outcome.handle is not None:
                    handle = outcome.handle
                    await self._record_submission(session, job, handle, now)
                elif outcome.classification is not None:
                    await self._apply(session, job, outcome.classification, now, stats)
        except Exception as e:
            if handle is not None:
                self.http_executor.discard(handle)
            stats.errors += 1
            logger.error(f'Job {job.id} ({job.job_type.value}) raised: {type(e).__name__}: {e}')
            await self._record_internal_error(session, job, e, now, stats)
            return
        if handle is not None:
            submitted.append(handle)
            stats.submitted += 1

    async def _record_submission(
        self, session: AsyncSession, job: ClaimedJob, handle: str, now: datetime,
    ) -> None:
        validate_transition(job.status, JobStatus.PROCESSING)
        await session.execute(
            INSERT_EXECUTED_REQUEST_SQL,
            {
                'handle': handle,
                'job_id': job.id,
                'executor_id': self.http_executor.executor_id,
            },
        )
        result = await session.execute(
            MARK_PROCESSING_SQL,
            {'id': job.id, 'expected': job.status.value, 'now': now},
        )
        if result.fetchone() is None:
            raise RuntimeError(f'job {job.id} left status {job.status.value} while locked')

    # ----------------- Resolution sweep -----------------

    async def process_job_results(self) -> SweepStats:
        """Settle HTTP jobs whose responses have arrived."""
        stats = SweepStats()
        executor_id = self.http_executor.executor_id
        async with self.session_factory() as session:
            await session.execute(DELETE_ORPHANED_REQUESTS_SQL)
            result = await session.execute(
                CLAIM_PENDING_REQUESTS_SQL,
                {
                    'executor_id': executor_id,
                    'lost_after': float(self.sweep_config.lost_request_after_seconds),
                    'lim': self.sweep_config.batch_size,
                },
            )
            rows = result.fetchall()
            stats.claimed = len(rows)

            own = [row.handle for row in rows if not row.is_foreign]
            outcomes = await self.http_executor.collect(own) if own else {}

            for row in rows:
                if row.is_foreign:
                    outcome: Optional[AttemptOutcome] = AttemptOutcome.failure(
                        f'request lost: executor {row.executor_id} never resolved '
                        f'handle {row.handle}'
                    )
                else:
                    outcome = outcomes.get(row.handle)
                if outcome is None:
                    stats.pending += 1
                    continue
                with job_context(row.id):
                    await self._resolve_one(session, row, outcome, stats)

            await session.commit()

        if stats.claimed:
            logger.info(f'Resolution sweep: {stats.summary()}')
        return stats

    async def _resolve_one(
        self,
        session: AsyncSession,
        row: Any,
        outcome: AttemptOutcome,
        stats: SweepStats,
    ) -> None:
        job = ClaimedJob.from_row(row)
        now: datetime = row.db_now
        try:
            async with session.begin_nested():
                classification = classify(
                    outcome,
                    retry_count=job.retry_count,
                    retry_limit=job.retry_limit,
                    now=now,
                    redirect_status=self.dispatch_config.redirect_status,
                    rate_limit_delay_seconds=self.dispatch_config.default_rate_limit_delay_seconds,
                )
                await self._apply(session, job, classification, now, stats)
                await session.execute(DELETE_EXECUTED_REQUEST_SQL, {'handle': row.handle})
        except Exception as e:
            stats.errors += 1
            logger.error(f'Resolving job {job.id} raised: {type(e).__name__}: {e}')
            if await self._record_internal_error(session, job, e, now, stats):
                await session.execute(DELETE_EXECUTED_REQUEST_SQL, {'handle': row.handle})

    # ----------------- Settling -----------------

    async def _record_internal_error(
        self,
        session: AsyncSession,
        job: ClaimedJob,
        exc: BaseException,
        now: datetime,
        stats: SweepStats,
    ) -> bool:
        """Failure path for a row whose handling raised. Returns whether it settled."""
        if job.job_type == JobType.POLL:
            classification = classify_lease_expiry(
                retry_count=job.retry_count, retry_limit=job.retry_limit, now=now,
            )
        else:
            classification = classify(
                AttemptOutcome.failure(_error_text(exc)),
                retry_count=job.retry_count,
                retry_limit=job.retry_limit,
                now=now,
            )
        try:
            async with session.begin_nested():
                return await self._apply(session, job, classification, now, stats)
        except Exception as e:
            logger.error(f'Could not record failure of job {job.id}: {type(e).__name__}: {e}')
            return False

    async def _apply(
        self,
        session: AsyncSession,
        job: ClaimedJob,
        classification: Classification,
        now: datetime,
        stats: SweepStats,
    ) -> bool:
        validate_transition(job.status, classification.status)
        is_failure = classification.is_failure
        headers = classification.response_headers
        result = await session.execute(
            SETTLE_JOB_SQL,
            {
                'id': job.id,
                'expected': job.status.value,
                'status': classification.status.value,
                'retry_inc': 1 if is_failure else 0,
                'run_at': classification.run_at,
                'now': now,
                'response_status': classification.response_status,
                'response_content': classification.response_content,
                'response_headers': Jsonb(headers) if headers is not None else None,
            },
        )
        if result.fetchone() is None:
            logger.warning(
                f'Job {job.id} is no longer {job.status.value}; '
                f'{classification.status.value} outcome dropped'
            )
            return False

        if is_failure:
            await session.execute(
                INSERT_FAILED_LOG_SQL,
                {
                    'job_id': job.id,
                    'attempt': job.retry_count + 1,
                    'response_status': classification.response_status,
                    'response_content': classification.response_content,
                },
            )
            stats.failures += 1
        stats.settled += 1

        if classification.spawns_job:
            await self._spawn_redirect(session, job, classification, now, stats)
        return True

    # ----------------- Redirects -----------------

    def build_redirect_spec(
        self, job: ClaimedJob, classification: Classification, now: datetime,
    ) -> JobSpec:
        """
        Derived job described by a redirect response.

        The body is a JSON object with ``job_type``, ``target`` (or ``url``) and
        optional ``payload``, ``headers``, ``retry_limit``, ``delay_seconds``.
        ``x-job-type`` / ``x-job-url`` response headers override the body. The
        child inherits owner, auth and signing configuration from the parent.
        """
        response_headers = {
            k.lower(): v for k, v in (classification.response_headers or {}).items()
        }
        header_type = response_headers.get('x-job-type')
        header_url = response_headers.get('x-job-url')

        try:
            body = loads_json(classification.response_content)
        except ValueError:
            if not (header_type and header_url):
                raise
            body = None
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise ValueError('redirect body is not a JSON object')

        job_type = header_type or body.get('job_type') or ''
        target = header_url or body.get('target') or body.get('url') or ''
        delay = float(body.get('delay_seconds') or 0)

        return JobSpec(
            job_type=JobType(str(job_type).upper()),
            target=target,
            owner=job.row.owner if job.row is not None else None,
            payload=body.get('payload') or {},
            headers=body.get('headers') or {},
            auth=AuthConfig.bearer(job.jwt) if job.jwt else AuthConfig.none(),
            signing=signing_config_from_row(job.row),
            retry_limit=body.get('retry_limit', job.retry_limit),
            run_at=now + timedelta(seconds=max(delay, 0.0)),
        )

    async def _spawn_redirect(
        self,
        session: AsyncSession,
        job: ClaimedJob,
        classification: Classification,
        now: datetime,
        stats: SweepStats,
    ) -> None:
        try:
            spec = self.build_redirect_spec(job, classification, now)
        except (ValueError, TypeError, OverflowError, PgQueueError) as e:
            logger.warning(f'Job {job.id} redirected without a usable follow-up job: {e}')
            return

        try:
            async with session.begin_nested():
                child_id = await insert_job(
                    session,
                    spec,
                    resolver=self.secret_resolver,
                    parent_id=job.id,
                    audit_sink=self.audit_sink,
                    source=REDIRECT_SOURCE,
                )
        except PgQueueError as e:
            logger.warning(f'Job {job.id} redirect target rejected: {e}')
            return
        stats.spawned += 1
        logger.info(f'Job {job.id} redirected to {spec.job_type.value} job {child_id}')
