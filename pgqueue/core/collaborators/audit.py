"""Audit trail of jobs spawned by external triggers and redirect responses."""

from __future__ import annotations

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from pgqueue.core.models.job_pg import TriggerAuditModel


class AuditSink(Protocol):
    async def record(self, session: AsyncSession, job_id: str, source: str) -> None: ...


class PostgresAuditSink:
    """Writes one ``pgqueue_trigger_audit`` row in the caller's transaction."""

    async def record(self, session: AsyncSession, job_id: str, source: str) -> None:
        session.add(TriggerAuditModel(job_id=job_id, source=source))
        await session.flush()
