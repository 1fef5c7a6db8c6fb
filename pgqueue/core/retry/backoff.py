"""Retry delays: exponential backoff for ordinary failures, Retry-After for 429s."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from email.utils import parsedate_to_datetime

from pgqueue.core.defaults import DEFAULT_RATE_LIMIT_DELAY_S

_TWO = Decimal(2)
_TEN = Decimal(10)
_ONE_AND_HALF = Decimal('1.5')


def backoff_delay_seconds(retry_count: int) -> int:
    """
    Delay before the next attempt after an ordinary failure.

    ``round((2**retry_count * (10 - retry_count / 1.5)) / 2)`` with ties rounded
    away from zero, clamped at 0. ``retry_count`` is the value *before* this
    attempt's increment. Computed in Decimal so results match the SQL formula
    exactly: 0 -> 5s, 1 -> 9s, 2 -> 17s, 3 -> 32s.
    """
    n = Decimal(retry_count)
    raw = (_TWO ** retry_count) * (_TEN - n / _ONE_AND_HALF) / _TWO
    # From retry_count 15 on the second factor is <= 0
    if raw <= 0:
        return 0
    # Decimal ROUND_HALF_UP rounds ties away from zero, matching SQL ROUND()
    return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _header(headers: Mapping[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def retry_after_delay_seconds(
    headers: Mapping[str, str] | None,
    now: datetime,
    default_seconds: int = DEFAULT_RATE_LIMIT_DELAY_S,
) -> int:
    """
    Server-directed delay for a 429 response.

    Accepts ``Retry-After`` as delta-seconds or an HTTP-date. Missing or
    unparseable values fall back to ``default_seconds``. Never negative.
    """
    raw = _header(headers, 'Retry-After')
    if raw is None:
        return default_seconds

    raw = raw.strip()
    if raw.isdigit():
        return int(raw)

    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return default_seconds
    if when.tzinfo is None:
        return default_seconds
    return max(0, int((when - now).total_seconds()))


def next_run_at(now: datetime, delay_seconds: int) -> datetime:
    return now + timedelta(seconds=max(0, delay_seconds))
