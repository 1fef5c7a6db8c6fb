# pgqueue/core/utils/db.py
"""
Transient database failures: recognising them, and riding them out.

Store operations report failures as ``Err(StoreOperationError)`` with a
``retryable`` flag computed here. ``retry_transient`` repeats such an
operation while the flag is set, which is how a scheduler started alongside
a still-booting database gets past its first schema check.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError

from pgqueue.core.logging import get_logger
from pgqueue.core.types.result import Result, is_ok

logger = get_logger('store')

T = TypeVar('T')
E = TypeVar('E')


def is_retryable_connection_error(exc: BaseException | None) -> bool:
    """True when ``exc`` is a connection-level failure a later attempt may not hit."""
    if exc is None:
        return False
    if isinstance(exc, (OperationalError, InterfaceError, SAOperationalError)):
        return True
    if isinstance(exc, DBAPIError):
        # Wrapped driver errors: pool invalidation or a psycopg connection error
        return bool(exc.connection_invalidated) or isinstance(
            exc.orig, (OperationalError, InterfaceError)
        )
    return False


async def retry_transient(
    operation: Callable[[], Awaitable[Result[T, E]]],
    *,
    what: str,
    attempts: int,
    initial_delay_seconds: float,
    max_delay_seconds: float,
) -> Result[T, E]:
    """
    Run ``operation`` until it returns Ok, a non-retryable Err, or
    ``attempts`` are used up. Returns the last result.

    Delays double from ``initial_delay_seconds`` up to ``max_delay_seconds``.
    """
    delay = initial_delay_seconds
    attempt = 1
    while True:
        result = await operation()
        if is_ok(result):
            return result
        err = result.err_value
        if attempt >= attempts or not getattr(err, 'retryable', False):
            return result
        logger.warning(
            f'{what} failed: {getattr(err, "message", err)}. '
            f'Retrying in {delay:.1f}s (attempt {attempt}/{attempts})'
        )
        await asyncio.sleep(delay)
        delay = min(delay * 2, max_delay_seconds)
        attempt += 1
