from __future__ import annotations
from datetime import datetime
from typing import Any, Optional
from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum as SQLAlchemyEnum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pgqueue.core.defaults import DEFAULT_RETRY_LIMIT, DEFAULT_SIGNING_HEADER
from pgqueue.core.types.status import JobStatus, JobType


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class JobModel(Base):
    """
    SQLAlchemy model for a job row. Sole source of truth for job state.

    - id: str # uuid4
    - owner: str # opaque owner id, required for POLL jobs
    - job_type: JobType # GET, POST, DELETE, FUNC, POLL
    - status: JobStatus # see types/status.py for the transition table
    - target: str # URL, or schema-qualified function name for FUNC
    - payload: dict # opaque JSON object, sent as canonical JSON
    - headers: dict # outbound headers, signature injected at creation
    - jwt: str # resolved bearer token, if any
    - signing_*: HMAC configuration, see SigningConfig
    - retry_count: int # failed attempts so far, never decreases
    - retry_limit: int # attempts allowed before TOO_MANY
    - run_at: datetime # next eligible execution (or lease expiry when POLLED)
    - last_at: datetime # most recent attempt
    - response_*: outcome of the last attempt only
    - parent_id: str # job whose redirect response spawned this one
    """

    __tablename__ = 'pgqueue_jobs'
    __table_args__ = (
        Index('idx_pgqueue_jobs_claim', 'status', 'run_at'),
        Index('idx_pgqueue_jobs_poll', 'owner', 'job_type', 'status', 'run_at'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    job_type: Mapped[JobType] = mapped_column(
        SQLAlchemyEnum(JobType, native_enum=False, length=16), nullable=False,
    )
    status: Mapped[JobStatus] = mapped_column(
        SQLAlchemyEnum(
            JobStatus,
            native_enum=False,
            length=16,
            values_callable=lambda e: [s.value for s in e],
        ),
        nullable=False,
        default=JobStatus.NEW,
    )
    target: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb"),
    )
    headers: Mapped[dict[str, str]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb"),
    )

    # Authorization
    auth_mode: Mapped[str] = mapped_column(
        String(16), nullable=False, server_default=text("'none'"),
    )
    jwt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Signing configuration
    signing_secret: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    signing_vault: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    signing_header: Mapped[str] = mapped_column(
        String(255), nullable=False, default=DEFAULT_SIGNING_HEADER,
    )
    signing_style: Mapped[str] = mapped_column(
        String(16), nullable=False, server_default=text("'PLAIN'"),
    )
    signing_alg: Mapped[str] = mapped_column(
        String(16), nullable=False, server_default=text("'sha256'"),
    )
    signing_enc: Mapped[str] = mapped_column(
        String(16), nullable=False, server_default=text("'hex'"),
    )

    # Retry tracking
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    retry_limit: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_RETRY_LIMIT,
        server_default=text(str(DEFAULT_RETRY_LIMIT)),
    )
    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    last_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Last attempt only; history lives in pgqueue_failed_log
    response_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_headers: Mapped[Optional[dict[str, str]]] = mapped_column(
        JSONB, nullable=True
    )

    parent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )


class FailedLogModel(Base):
    """Append-only audit of failed attempts. One row per failure, never updated."""

    __tablename__ = 'pgqueue_failed_log'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey('pgqueue_jobs.id', ondelete='CASCADE'),
        nullable=False, index=True,
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    response_status: Mapped[int] = mapped_column(Integer, nullable=False)
    response_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )


class ExecutedRequestModel(Base):
    """Join between an async HTTP handle and the job that issued it."""

    __tablename__ = 'pgqueue_executed_requests'

    handle: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey('pgqueue_jobs.id', ondelete='CASCADE'),
        nullable=False, index=True,
    )
    executor_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )


class TriggerAuditModel(Base):
    """Jobs spawned by external triggers or by redirect responses."""

    __tablename__ = 'pgqueue_trigger_audit'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
