# pgqueue/core/app.py
from __future__ import annotations

from typing import Any, Callable, Optional, TypeVar

from pgqueue.core.collaborators.audit import AuditSink, PostgresAuditSink
from pgqueue.core.collaborators.functions import (
    FunctionInvoker,
    FunctionRegistry,
    PostgresFunctionInvoker,
    RegistryFunctionInvoker,
)
from pgqueue.core.collaborators.http import HttpExecutor, HttpxExecutor
from pgqueue.core.collaborators.vault import PostgresVaultResolver, SecretResolver
from pgqueue.core.errors import PgQueueError
from pgqueue.core.logging import get_logger
from pgqueue.core.models.app import AppConfig
from pgqueue.core.models.job import JobInfo, JobSpec, PolledJob
from pgqueue.core.poll.lease import PollLeaseManager, PollTimestamp
from pgqueue.core.store.postgres import PostgresJobStore
from pgqueue.core.store.result_types import StoreResult
from pgqueue.core.types.result import is_err
from pgqueue.core.utils.loop_runner import LoopRunner
from pgqueue.core.worker.dispatcher import Dispatcher
from pgqueue.core.worker.sweeper import JobSweeper

_F = TypeVar('_F', bound=Callable[..., Any])


class PgQueue:
    """
    Configuration-driven job queue app.

    Holds the store, the collaborators (HTTP executor, function invoker,
    secret resolver, audit sink) and the registry of Python functions that
    FUNC jobs can target. Collaborators default to the PostgreSQL/httpx
    implementations and can be replaced at construction.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        http_executor: Optional[HttpExecutor] = None,
        function_invoker: Optional[FunctionInvoker] = None,
        secret_resolver: Optional[SecretResolver] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.config = config
        self.logger = get_logger('app')
        self.functions = FunctionRegistry(config.dispatch.default_schema)

        self._store: Optional[PostgresJobStore] = None
        self._sweeper: Optional[JobSweeper] = None
        self._lease_manager: Optional[PollLeaseManager] = None
        self._http_executor = http_executor
        self._function_invoker = function_invoker
        self._secret_resolver = secret_resolver
        self._audit_sink = audit_sink
        self._loop_runner = LoopRunner('pgqueue-app')  # for sync facades, shared with the store

        self.logger.info(f'pgqueue initialized: {config.log_config()}')

    # ----------------- Registration -----------------

    def function(self, name: Optional[str] = None) -> Callable[[_F], _F]:
        """
        Register a Python callable as a FUNC job target.

        Payload keys are passed as keyword arguments. Coroutine functions are
        awaited; plain functions run in a worker thread.

            @app.function('billing.settle_invoice')
            async def settle_invoice(invoice_id: str) -> str: ...
        """

        def decorator(fn: _F) -> _F:
            self.functions.register(name or fn.__name__, fn)
            return fn

        return decorator

    def list_functions(self) -> list[str]:
        return self.functions.names()

    # ----------------- Components -----------------

    def get_store(self) -> PostgresJobStore:
        """Get the configured PostgreSQL job store for this app"""
        try:
            if self._store is None:
                self._store = PostgresJobStore(
                    self.config.store,
                    audit_sink=self.audit_sink,
                    loop_runner=self._loop_runner,
                )
                # Needs the store's session factory, so resolved after creation
                self._store.secret_resolver = self.secret_resolver
            return self._store
        except PgQueueError:
            raise
        except Exception as e:
            raise ValueError(f'Failed to get store: {e}') from e

    @property
    def secret_resolver(self) -> SecretResolver:
        if self._secret_resolver is None:
            self._secret_resolver = PostgresVaultResolver(self.get_store().session_factory)
        return self._secret_resolver

    @property
    def audit_sink(self) -> AuditSink:
        if self._audit_sink is None:
            self._audit_sink = PostgresAuditSink()
        return self._audit_sink

    @property
    def http_executor(self) -> HttpExecutor:
        if self._http_executor is None:
            self._http_executor = HttpxExecutor(
                timeout_seconds=self.config.dispatch.http_timeout_seconds,
            )
        return self._http_executor

    @property
    def function_invoker(self) -> FunctionInvoker:
        if self._function_invoker is None:
            self._function_invoker = RegistryFunctionInvoker(
                self.functions, fallback=PostgresFunctionInvoker(),
            )
        return self._function_invoker

    def get_sweeper(self) -> JobSweeper:
        if self._sweeper is None:
            store = self.get_store()
            dispatcher = Dispatcher(
                http_executor=self.http_executor,
                function_invoker=self.function_invoker,
                config=self.config.dispatch,
            )
            self._sweeper = JobSweeper(
                store.session_factory,
                dispatcher,
                sweep_config=self.config.sweep,
                dispatch_config=self.config.dispatch,
                secret_resolver=self.secret_resolver,
                audit_sink=self.audit_sink,
            )
        return self._sweeper

    def get_lease_manager(self) -> PollLeaseManager:
        if self._lease_manager is None:
            self._lease_manager = PollLeaseManager(
                self.get_store().session_factory,
                config=self.config.poll,
                secret_resolver=self.secret_resolver,
            )
        return self._lease_manager

    # ----------------- Async API -----------------

    async def submit_job_async(
        self,
        spec: JobSpec,
        *,
        session_jwt: Optional[str] = None,
        source: Optional[str] = None,
    ) -> StoreResult[str]:
        return await self.get_store().submit_job_async(
            spec, session_jwt=session_jwt, source=source,
        )

    async def get_job_async(self, job_id: str) -> StoreResult[JobInfo | None]:
        return await self.get_store().get_job_async(job_id)

    async def poll_async(
        self,
        owner: str,
        timestamp: PollTimestamp,
        hmac: str,
        *,
        as_user: bool = False,
        auto_ack: bool = False,
        caller_id: Optional[str] = None,
    ) -> PolledJob | None:
        await self._ensure_schema()
        return await self.get_lease_manager().poll(
            owner, timestamp, hmac,
            as_user=as_user, auto_ack=auto_ack, caller_id=caller_id,
        )

    async def ack_async(self, job_id: str, hmac: str) -> bool:
        await self._ensure_schema()
        return await self.get_lease_manager().ack(job_id, hmac)

    async def _ensure_schema(self) -> None:
        result = await self.get_store().ensure_schema_initialized()
        if is_err(result):
            err = result.err_value
            raise RuntimeError(err.message) from err.exception

    async def close_async(self) -> None:
        if self._http_executor is not None:
            await self._http_executor.aclose()
        if self._store is not None:
            close_result = await self._store.close_async()
            if is_err(close_result):
                self.logger.error(f'Store close failed: {close_result.err_value.message}')

    # ----------------- Sync API Facades -----------------

    def submit_job(
        self,
        spec: JobSpec,
        *,
        session_jwt: Optional[str] = None,
        source: Optional[str] = None,
    ) -> StoreResult[str]:
        """Synchronous job submission (runs submit_job_async in background loop)."""
        return self._loop_runner.call(
            self.submit_job_async, spec, session_jwt=session_jwt, source=source,
        )

    def get_job(self, job_id: str) -> StoreResult[JobInfo | None]:
        return self._loop_runner.call(self.get_job_async, job_id)

    def poll(
        self,
        owner: str,
        timestamp: PollTimestamp,
        hmac: str,
        *,
        as_user: bool = False,
        auto_ack: bool = False,
        caller_id: Optional[str] = None,
    ) -> PolledJob | None:
        """Synchronous wrapper for poll_async()."""
        return self._loop_runner.call(
            self.poll_async, owner, timestamp, hmac,
            as_user=as_user, auto_ack=auto_ack, caller_id=caller_id,
        )

    def ack(self, job_id: str, hmac: str) -> bool:
        """Synchronous wrapper for ack_async()."""
        return self._loop_runner.call(self.ack_async, job_id, hmac)

    def close(self) -> None:
        self._loop_runner.close(self.close_async)
