# pgqueue/core/store/postgres.py
from __future__ import annotations
import uuid, hashlib
from typing import Any, Optional
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy import select, text, update
from pgqueue.core.collaborators.audit import AuditSink
from pgqueue.core.collaborators.vault import SecretResolver
from pgqueue.core.errors import ErrorCode, JobValidationError
from pgqueue.core.models.store import PostgresConfig
from pgqueue.core.models.job import (
    AuthMode,
    FailureLogEntry,
    JobInfo,
    JobSpec,
    SigningAlgorithm,
    SigningConfig,
    SigningEncoding,
    SigningStyle,
)
from pgqueue.core.models.job_pg import Base, FailedLogModel, JobModel
from pgqueue.core.security.signer import sign_job_headers
from pgqueue.core.store.result_types import StoreErrorCode, StoreResult, store_error
from pgqueue.core.types.result import Ok
from pgqueue.core.types.status import JOB_TERMINAL_STATES, JobStatus
from pgqueue.core.utils.loop_runner import LoopRunner
from pgqueue.core.utils.url import mask_database_url
from pgqueue.core.logging import get_logger

logger = get_logger('store')

# PostgresConfig fields that are not create_async_engine keywords
_NON_ENGINE_FIELDS = {
    'database_url',
    'init_retry_attempts',
    'init_retry_initial_seconds',
    'init_retry_max_seconds',
}


def signing_config_from_row(row: Any) -> SigningConfig:
    """Rebuild a job's SigningConfig from its ``signing_*`` columns."""
    return SigningConfig(
        secret=bytes(row.signing_secret) if row.signing_secret else None,
        vault=row.signing_vault,
        header=row.signing_header,
        style=SigningStyle(row.signing_style),
        algorithm=SigningAlgorithm(row.signing_alg),
        encoding=SigningEncoding(row.signing_enc),
    )


def resolve_job_jwt(spec: JobSpec, session_jwt: Optional[str]) -> Optional[str]:
    """Token the dispatcher will send as ``Authorization: Bearer``."""
    match spec.auth.mode:
        case AuthMode.NONE:
            return None
        case AuthMode.JWT:
            return spec.auth.jwt
        case AuthMode.SESSION:
            if not session_jwt:
                raise JobValidationError(
                    message='auth mode session requires the submitting session token',
                    code=ErrorCode.JOB_INVALID_AUTH,
                    help_text='pass session_jwt=... or use AuthConfig.bearer(token)',
                )
            return session_jwt


async def build_job_model(
    spec: JobSpec,
    *,
    resolver: Optional[SecretResolver],
    session_jwt: Optional[str] = None,
    parent_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> JobModel:
    """
    Turn a validated JobSpec into a row: resolve auth and sign the payload.

    The signature is computed here, once. Nothing later re-signs the job.
    """
    jwt = resolve_job_jwt(spec, session_jwt)
    try:
        headers = await sign_job_headers(spec.payload, spec.headers, spec.signing, resolver)
    except LookupError as e:
        raise JobValidationError(
            message='cannot resolve the signing secret',
            code=ErrorCode.JOB_INVALID_SIGNING,
            notes=[str(e)],
        ) from e

    now = now or datetime.now(timezone.utc)
    return JobModel(
        id=str(uuid.uuid4()),
        owner=spec.owner,
        job_type=spec.job_type,
        status=JobStatus.NEW,
        target=spec.target,
        payload=dict(spec.payload),
        headers=headers,
        auth_mode=spec.auth.mode.value,
        jwt=jwt,
        signing_secret=spec.signing.secret,
        signing_vault=spec.signing.vault,
        signing_header=spec.signing.header,
        signing_style=spec.signing.style.value,
        signing_alg=spec.signing.algorithm.value,
        signing_enc=spec.signing.encoding.value,
        retry_count=0,
        retry_limit=spec.retry_limit,
        run_at=spec.run_at or now,
        parent_id=parent_id,
        created_at=now,
        updated_at=now,
    )


class PostgresJobStore:
    """
    PostgreSQL job store: the jobs table is the only source of truth.

    Provides both async and sync APIs:
      - Async: submit_job_async(), get_job_async(), list_failures_async()
      - Sync: submit_job(), get_job() (run in background event loop)

    Use one API style per store instance; the async engine is bound to the
    loop that first uses it.
    """

    def __init__(
        self,
        config: PostgresConfig,
        *,
        secret_resolver: Optional[SecretResolver] = None,
        audit_sink: Optional[AuditSink] = None,
        loop_runner: Optional[LoopRunner] = None,
    ):
        self.config = config
        self.secret_resolver = secret_resolver
        self.audit_sink = audit_sink

        engine_cfg = self.config.model_dump(exclude=_NON_ENGINE_FIELDS, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )

        self._initialized = False
        # Sync facades; shared with the owning PgQueue when it passes one in
        self._owns_loop_runner = loop_runner is None
        self._loop_runner = loop_runner or LoopRunner('pgqueue-store')

        logger.info(
            f'PostgresJobStore initialized for {mask_database_url(self.config.database_url)}'
        )

    def _schema_advisory_key(self) -> int:
        """
        Compute a stable 64-bit advisory lock key for schema initialization.

        Uses the database URL as a basis so that different clusters do not
        contend on the same advisory lock key.
        """
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'pgqueue-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self.async_engine.begin() as conn:
            # Serialize DDL across schedulers and producers.
            await conn.execute(
                text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                {'key': self._schema_advisory_key()},
            )
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    async def ensure_schema_initialized(self) -> StoreResult[None]:
        """
        Public entry point to ensure tables and indexes exist.

        Safe to call multiple times and from multiple processes.
        """
        try:
            await self._ensure_initialized()
        except Exception as e:
            return store_error(
                StoreErrorCode.SCHEMA_INIT_FAILED, 'schema initialization failed', e,
            )
        return Ok(None)

    # ----------------- Async API -----------------

    async def submit_job_async(
        self,
        spec: JobSpec,
        *,
        session_jwt: Optional[str] = None,
        source: Optional[str] = None,
    ) -> StoreResult[str]:
        """
        Create a job in state ``new``.

        Raises JobValidationError for bad input (including an unresolvable
        signing secret). Database failures come back as Err.
        """
        job = await build_job_model(
            spec, resolver=self.secret_resolver, session_jwt=session_jwt,
        )
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                session.add(job)
                await session.flush()
                if source and self.audit_sink is not None:
                    await self.audit_sink.record(session, job.id, source)
                await session.commit()
        except Exception as e:
            return store_error(StoreErrorCode.SUBMIT_FAILED, 'job submission failed', e)

        logger.debug(f'Submitted {spec.job_type.value} job {job.id}')
        return Ok(job.id)

    async def get_job_async(self, job_id: str) -> StoreResult[JobInfo | None]:
        """Fetch a job snapshot by ID."""
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                job = await session.get(JobModel, job_id)
        except Exception as e:
            return store_error(StoreErrorCode.JOB_QUERY_FAILED, 'job query failed', e)

        if job is None:
            return Ok(None)
        return Ok(
            JobInfo(
                id=job.id,
                owner=job.owner,
                job_type=job.job_type,
                status=job.status,
                target=job.target,
                payload=job.payload,
                headers=job.headers,
                retry_count=job.retry_count,
                retry_limit=job.retry_limit,
                run_at=job.run_at,
                last_at=job.last_at,
                response_status=job.response_status,
                response_content=job.response_content,
                response_headers=job.response_headers,
                parent_id=job.parent_id,
                created_at=job.created_at,
            )
        )

    async def list_failures_async(self, job_id: str) -> StoreResult[list[FailureLogEntry]]:
        """Failure log entries of a job, oldest attempt first."""
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                result = await session.execute(
                    select(FailedLogModel)
                    .where(FailedLogModel.job_id == job_id)
                    .order_by(FailedLogModel.attempt, FailedLogModel.id)
                )
                rows = result.scalars().all()
        except Exception as e:
            return store_error(
                StoreErrorCode.FAILURE_LOG_QUERY_FAILED, 'failure log query failed', e,
            )

        return Ok(
            [
                FailureLogEntry(
                    job_id=row.job_id,
                    attempt=row.attempt,
                    response_status=row.response_status,
                    response_content=row.response_content,
                    created_at=row.created_at,
                )
                for row in rows
            ]
        )

    async def update_payload_async(
        self, job_id: str, payload: dict[str, Any],
    ) -> StoreResult[bool]:
        """
        Replace the payload of a non-terminal job.

        The stored signature header is left as it was: a job is signed once,
        at creation. Returns Ok(False) when the job is missing or terminal.
        """
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                result = await session.execute(
                    update(JobModel)
                    .where(
                        JobModel.id == job_id,
                        JobModel.status.not_in(list(JOB_TERMINAL_STATES)),
                    )
                    .values(payload=payload, updated_at=datetime.now(timezone.utc))
                    .returning(JobModel.id)
                )
                updated = result.fetchone() is not None
                await session.commit()
        except Exception as e:
            return store_error(StoreErrorCode.UPDATE_FAILED, 'payload update failed', e)
        return Ok(updated)

    async def close_async(self) -> StoreResult[None]:
        try:
            await self.async_engine.dispose()
        except Exception as e:
            return store_error(StoreErrorCode.CLOSE_FAILED, 'engine dispose failed', e)
        return Ok(None)

    # ----------------- Sync API Facades -----------------

    def submit_job(
        self,
        spec: JobSpec,
        *,
        session_jwt: Optional[str] = None,
        source: Optional[str] = None,
    ) -> StoreResult[str]:
        """
        Synchronous job submission (runs submit_job_async in background loop).
        """
        return self._loop_runner.call(
            self.submit_job_async, spec, session_jwt=session_jwt, source=source,
        )

    def get_job(self, job_id: str) -> StoreResult[JobInfo | None]:
        """Synchronous wrapper for get_job_async()."""
        return self._loop_runner.call(self.get_job_async, job_id)

    def list_failures(self, job_id: str) -> StoreResult[list[FailureLogEntry]]:
        """Synchronous wrapper for list_failures_async()."""
        return self._loop_runner.call(self.list_failures_async, job_id)

    def close(self) -> None:
        """
        Synchronous cleanup (runs close_async in background loop).
        """
        if self._owns_loop_runner:
            self._loop_runner.close(self.close_async)
        else:
            self._loop_runner.call(self.close_async)


async def insert_job(
    session: AsyncSession,
    spec: JobSpec,
    *,
    resolver: Optional[SecretResolver],
    session_jwt: Optional[str] = None,
    parent_id: Optional[str] = None,
    audit_sink: Optional[AuditSink] = None,
    source: Optional[str] = None,
) -> str:
    """Insert a job inside an existing transaction (used for derived jobs)."""
    job = await build_job_model(
        spec, resolver=resolver, session_jwt=session_jwt, parent_id=parent_id,
    )
    session.add(job)
    await session.flush()
    if source and audit_sink is not None:
        await audit_sink.record(session, job.id, source)
    return job.id
