"""
Response classification.

Maps the outcome of one attempt to the job's next status, the next run time
for retriable failures, and whether the attempt is recorded as a failure.

Rules, in order:
    redirect status (210 by default)   -> REDIRECTED, spawn a derived job
    200-299                            -> COMPLETED
    429                                -> FAILED at now + Retry-After (or default)
    400-499 with x-job-finished header -> COMPLETED
    400-499                            -> FAILED at now + backoff
    500-599                            -> SERVER_ERROR
    any other status                   -> OTHER
    no status (dispatch raised)        -> FAILED at now + backoff, status 0

A FAILED outcome on the attempt that exceeds retry_limit becomes TOO_MANY.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pgqueue.core.defaults import (
    DEFAULT_RATE_LIMIT_DELAY_S,
    DEFAULT_REDIRECT_STATUS,
    INTERNAL_ERROR_STATUS,
    JOB_FINISHED_HEADER,
    POLL_TIMEOUT_MESSAGE,
    POLL_TIMEOUT_STATUS,
)
from pgqueue.core.retry.backoff import (
    backoff_delay_seconds,
    next_run_at,
    retry_after_delay_seconds,
)
from pgqueue.core.types.status import JobStatus


class FailureKind(str, Enum):
    """Why an attempt ended the way it did."""

    SUCCESS = 'SUCCESS'
    REDIRECTED = 'REDIRECTED'
    CLIENT_FINISHED = 'CLIENT_FINISHED'  # 4xx overridden by x-job-finished
    RATE_LIMITED = 'RATE_LIMITED'
    TRANSIENT = 'TRANSIENT'
    SERVER_FAILURE = 'SERVER_FAILURE'
    RETRIES_EXHAUSTED = 'RETRIES_EXHAUSTED'
    UNCLASSIFIED = 'UNCLASSIFIED'
    INTERNAL_ERROR = 'INTERNAL_ERROR'
    LEASE_EXPIRED = 'LEASE_EXPIRED'


@dataclass(slots=True, frozen=True)
class AttemptOutcome:
    """
    Result of one attempt.

    Either ``status_code`` is set (a response arrived) or ``error`` carries the
    text of whatever prevented a response.
    """

    status_code: Optional[int] = None
    headers: Mapping[str, str] = field(default_factory=lambda: {})
    content: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> AttemptOutcome:
        return cls(error=error)


@dataclass(slots=True, frozen=True)
class Classification:
    status: JobStatus
    kind: FailureKind
    response_status: int
    response_content: Optional[str]
    response_headers: Optional[dict[str, str]] = None
    # Set only for statuses the sweep will pick up again
    run_at: Optional[datetime] = None

    @property
    def is_failure(self) -> bool:
        """Failed attempts bump retry_count and append to the failure log."""
        return self.status in (JobStatus.FAILED, JobStatus.TOO_MANY) or (
            self.kind == FailureKind.LEASE_EXPIRED
        )

    @property
    def spawns_job(self) -> bool:
        return self.kind == FailureKind.REDIRECTED


def has_header(headers: Mapping[str, str] | None, name: str) -> bool:
    if not headers:
        return False
    lowered = name.lower()
    return any(key.lower() == lowered for key in headers)


def _failed_or_exhausted(
    kind: FailureKind,
    *,
    retry_count: int,
    retry_limit: int,
    delay_seconds: int,
    now: datetime,
    response_status: int,
    response_content: Optional[str],
    response_headers: Optional[dict[str, str]],
) -> Classification:
    if retry_count + 1 > retry_limit:
        return Classification(
            status=JobStatus.TOO_MANY,
            kind=FailureKind.RETRIES_EXHAUSTED,
            response_status=response_status,
            response_content=response_content,
            response_headers=response_headers,
        )
    return Classification(
        status=JobStatus.FAILED,
        kind=kind,
        response_status=response_status,
        response_content=response_content,
        response_headers=response_headers,
        run_at=next_run_at(now, delay_seconds),
    )


def classify(
    outcome: AttemptOutcome,
    *,
    retry_count: int,
    retry_limit: int,
    now: datetime,
    redirect_status: int = DEFAULT_REDIRECT_STATUS,
    rate_limit_delay_seconds: int = DEFAULT_RATE_LIMIT_DELAY_S,
) -> Classification:
    """Classify one attempt. ``retry_count`` is read before this attempt's increment."""
    status = outcome.status_code
    headers = dict(outcome.headers) if outcome.headers else None

    if status is None:
        return _failed_or_exhausted(
            FailureKind.INTERNAL_ERROR,
            retry_count=retry_count,
            retry_limit=retry_limit,
            delay_seconds=backoff_delay_seconds(retry_count),
            now=now,
            response_status=INTERNAL_ERROR_STATUS,
            response_content=outcome.error,
            response_headers=None,
        )

    def settle(new_status: JobStatus, kind: FailureKind) -> Classification:
        return Classification(
            status=new_status,
            kind=kind,
            response_status=status,
            response_content=outcome.content,
            response_headers=headers,
        )

    if status == redirect_status:
        return settle(JobStatus.REDIRECTED, FailureKind.REDIRECTED)
    if 200 <= status <= 299:
        return settle(JobStatus.COMPLETED, FailureKind.SUCCESS)
    if status == 429:
        return _failed_or_exhausted(
            FailureKind.RATE_LIMITED,
            retry_count=retry_count,
            retry_limit=retry_limit,
            delay_seconds=retry_after_delay_seconds(
                outcome.headers, now, default_seconds=rate_limit_delay_seconds,
            ),
            now=now,
            response_status=status,
            response_content=outcome.content,
            response_headers=headers,
        )
    if 400 <= status <= 499:
        if has_header(outcome.headers, JOB_FINISHED_HEADER):
            return settle(JobStatus.COMPLETED, FailureKind.CLIENT_FINISHED)
        return _failed_or_exhausted(
            FailureKind.TRANSIENT,
            retry_count=retry_count,
            retry_limit=retry_limit,
            delay_seconds=backoff_delay_seconds(retry_count),
            now=now,
            response_status=status,
            response_content=outcome.content,
            response_headers=headers,
        )
    if 500 <= status <= 599:
        return settle(JobStatus.SERVER_ERROR, FailureKind.SERVER_FAILURE)
    return settle(JobStatus.OTHER, FailureKind.UNCLASSIFIED)


def classify_lease_expiry(
    *, retry_count: int, retry_limit: int, now: datetime,
) -> Classification:
    """
    A POLL lease ran out without an ack.

    The job goes back to NEW (pollable immediately) rather than FAILED, so no
    HTTP classification applies; once retries are exhausted it becomes TOO_MANY.
    """
    if retry_count + 1 > retry_limit:
        return Classification(
            status=JobStatus.TOO_MANY,
            kind=FailureKind.RETRIES_EXHAUSTED,
            response_status=POLL_TIMEOUT_STATUS,
            response_content=POLL_TIMEOUT_MESSAGE,
        )
    return Classification(
        status=JobStatus.NEW,
        kind=FailureKind.LEASE_EXPIRED,
        response_status=POLL_TIMEOUT_STATUS,
        response_content=POLL_TIMEOUT_MESSAGE,
        run_at=now,
    )
