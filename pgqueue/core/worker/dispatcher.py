"""
Per-type execution of claimed jobs.

FUNC jobs run inline and settle immediately. HTTP jobs are handed to the
executor and settle later, in the resolution sweep. A claimed POLL job is an
expired lease and settles as a lease expiry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pgqueue.core.codec.serde import canonical_json
from pgqueue.core.collaborators.functions import FunctionInvoker
from pgqueue.core.collaborators.http import HttpExecutor, OutboundRequest
from pgqueue.core.defaults import FUNC_SUCCESS_STATUS
from pgqueue.core.logging import get_logger
from pgqueue.core.models.app import DispatchConfig
from pgqueue.core.retry.classifier import (
    Classification,
    FailureKind,
    classify_lease_expiry,
)
from pgqueue.core.types.status import JobStatus, JobType
from pgqueue.core.utils.url import split_function_target

logger = get_logger('dispatcher')


@dataclass(slots=True)
class ClaimedJob:
    """The columns of a locked job row the sweeps work with."""

    id: str
    job_type: JobType
    status: JobStatus
    target: str
    payload: dict[str, Any]
    headers: dict[str, str]
    jwt: Optional[str]
    retry_count: int
    retry_limit: int
    row: Any = None  # raw row, for signing columns

    @classmethod
    def from_row(cls, row: Any) -> ClaimedJob:
        return cls(
            id=row.id,
            job_type=JobType(row.job_type),
            status=JobStatus(row.status),
            target=row.target,
            payload=row.payload or {},
            headers=row.headers or {},
            jwt=row.jwt,
            retry_count=row.retry_count,
            retry_limit=row.retry_limit,
            row=row,
        )


@dataclass(slots=True, frozen=True)
class DispatchOutcome:
    """Either a settled classification, or a handle to resolve later."""

    classification: Optional[Classification] = None
    handle: Optional[str] = None


class Dispatcher:
    def __init__(
        self,
        *,
        http_executor: HttpExecutor,
        function_invoker: FunctionInvoker,
        config: DispatchConfig,
    ) -> None:
        self.http_executor = http_executor
        self.function_invoker = function_invoker
        self.config = config

    async def dispatch(
        self, session: AsyncSession, job: ClaimedJob, now: datetime,
    ) -> DispatchOutcome:
        """Exceptions propagate; the caller turns them into an internal error."""
        if job.job_type == JobType.FUNC:
            return DispatchOutcome(classification=await self._run_function(session, job))
        if job.job_type == JobType.POLL:
            logger.info(f'Poll lease of job {job.id} expired without ack')
            return DispatchOutcome(
                classification=classify_lease_expiry(
                    retry_count=job.retry_count, retry_limit=job.retry_limit, now=now,
                )
            )
        handle = await self.http_executor.submit(self.build_request(job))
        return DispatchOutcome(handle=handle)

    async def _run_function(self, session: AsyncSession, job: ClaimedJob) -> Classification:
        schema, name = split_function_target(job.target, self.config.default_schema)
        result = await self.function_invoker.invoke(schema, name, job.payload, session)
        return Classification(
            status=JobStatus.COMPLETED,
            kind=FailureKind.SUCCESS,
            response_status=FUNC_SUCCESS_STATUS,
            response_content=result,
        )

    def build_request(self, job: ClaimedJob) -> OutboundRequest:
        """Method, URL, stored headers (signature included) and canonical body."""
        headers = dict(job.headers)
        if job.jwt and not any(k.lower() == 'authorization' for k in headers):
            headers['Authorization'] = f'Bearer {job.jwt}'
        if not any(k.lower() == 'content-type' for k in headers):
            headers['Content-Type'] = 'application/json'
        return OutboundRequest(
            method=job.job_type.value,
            url=job.target,
            headers=headers,
            body=canonical_json(job.payload),
        )
