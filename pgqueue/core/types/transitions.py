"""Guard for job status changes against the transition table."""

from __future__ import annotations

from pgqueue.core.errors import ErrorCode, InvalidTransitionError
from pgqueue.core.types.status import ALLOWED_TRANSITIONS, JobStatus


def validate_transition(old: JobStatus, new: JobStatus) -> None:
    """Raise InvalidTransitionError unless ``old -> new`` is in the table."""
    if old.can_transition_to(new):
        return

    allowed = sorted(s.value for s in ALLOWED_TRANSITIONS.get(old, frozenset()))
    raise InvalidTransitionError(
        message=f'invalid job status transition {old.value} -> {new.value}',
        code=ErrorCode.INVALID_TRANSITION,
        notes=[
            f'{old.value} is terminal'
            if old.is_terminal
            else f'allowed from {old.value}: {", ".join(allowed)}',
        ],
    )
