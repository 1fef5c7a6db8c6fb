"""Typed error types for PostgresJobStore operations.

Result propagation policy
-------------------------
Two error systems live side by side:

1. Raised ``PgQueueError`` subclasses (``JobValidationError``,
   ``AuthenticationError``, ...) for bad input at a synchronous boundary.
   These are the caller's fault and are never retried.

2. ``StoreResult[T]`` (this module) for infrastructure outcomes. Store
   methods (``submit_job_async``, ``get_job_async``, ``list_failures_async``,
   ``ensure_schema_initialized``, ...) return ``Err(StoreOperationError)``
   instead of raising when the database misbehaves. ``retryable`` tells the
   caller whether trying again can help.

Process boundaries (CLI startup, scheduler startup) convert ``Err`` into an
exception and let the process exit.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TypeAlias, TypeVar

from pgqueue.core.types.result import Err, Result
from pgqueue.core.utils.db import is_retryable_connection_error


class StoreErrorCode(str, Enum):
    """Categorized store operation failure codes."""

    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    SUBMIT_FAILED = 'SUBMIT_FAILED'
    JOB_QUERY_FAILED = 'JOB_QUERY_FAILED'
    FAILURE_LOG_QUERY_FAILED = 'FAILURE_LOG_QUERY_FAILED'
    UPDATE_FAILED = 'UPDATE_FAILED'
    CLOSE_FAILED = 'CLOSE_FAILED'


@dataclass(slots=True, frozen=True)
class StoreOperationError:
    """Error payload carried inside Err(...) for store operations.

    Fields:
        code: which operation category failed
        message: human-readable description
        retryable: whether the caller can retry this operation
        exception: the original cause (if any)
    """

    code: StoreErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


T = TypeVar('T')

StoreResult: TypeAlias = Result[T, StoreOperationError]


def store_error(
    code: StoreErrorCode, message: str, exc: BaseException,
) -> Err[StoreOperationError]:
    return Err(
        StoreOperationError(
            code=code,
            message=f'{message}: {type(exc).__name__}: {exc}',
            retryable=is_retryable_connection_error(exc),
            exception=exc,
        )
    )
