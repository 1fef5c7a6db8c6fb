# pgqueue/core/types/status.py
"""
Core types and enums used throughout the application.
This module should not import from other application modules.
"""

from enum import Enum


class JobType(Enum):
    """How a job is executed once claimed"""

    GET = 'GET'
    POST = 'POST'
    DELETE = 'DELETE'
    FUNC = 'FUNC'  # Internal function call, executed inline by the sweep.
    POLL = 'POLL'  # Never dispatched; leased by pull consumers.

    @property
    def is_http(self) -> bool:
        return self in HTTP_JOB_TYPES


HTTP_JOB_TYPES: frozenset[JobType] = frozenset({
    JobType.GET,
    JobType.POST,
    JobType.DELETE,
})


class JobStatus(Enum):
    """Job lifecycle status"""

    NEW = 'new'  # Initial status, eligible once run_at is reached.

    PROCESSING = 'processing'  # Claimed, waiting for an async HTTP response.

    COMPLETED = 'completed'
    REDIRECTED = 'redirected'  # Success that also spawned a derived job.
    FAILED = 'failed'  # Eligible for retry at run_at.
    SERVER_ERROR = 'server_error'
    TOO_MANY = 'too_many'  # Retry limit exhausted.
    OTHER = 'other'  # Outcome outside the known status ranges.

    POLLED = 'polled'  # Lease held by a pull consumer until run_at.

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in JOB_TERMINAL_STATES

    def can_transition_to(self, new: 'JobStatus') -> bool:
        return new in ALLOWED_TRANSITIONS.get(self, frozenset())


JOB_TERMINAL_STATES: frozenset[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.REDIRECTED,
    JobStatus.SERVER_ERROR,
    JobStatus.TOO_MANY,
    JobStatus.OTHER,
})

# Outcomes a claimed job can settle into.
_CLAIM_OUTCOMES: frozenset[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.REDIRECTED,
    JobStatus.FAILED,
    JobStatus.SERVER_ERROR,
    JobStatus.TOO_MANY,
    JobStatus.OTHER,
})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    # PROCESSING covers inline execution (FUNC) and HTTP hand-off
    JobStatus.NEW: frozenset({JobStatus.PROCESSING, JobStatus.POLLED, JobStatus.COMPLETED})
    | _CLAIM_OUTCOMES,
    JobStatus.FAILED: frozenset({JobStatus.PROCESSING}) | _CLAIM_OUTCOMES,
    JobStatus.PROCESSING: _CLAIM_OUTCOMES,
    # Ack, or lease expiry (back to NEW, or TOO_MANY once retries are exhausted)
    JobStatus.POLLED: frozenset({JobStatus.COMPLETED, JobStatus.NEW, JobStatus.TOO_MANY}),
}

# Statuses the claim sweep may pick up (subject to run_at and retry_limit).
CLAIMABLE_STATES: frozenset[JobStatus] = frozenset({
    JobStatus.NEW,
    JobStatus.FAILED,
    JobStatus.POLLED,
})
