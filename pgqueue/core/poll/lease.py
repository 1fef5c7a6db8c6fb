"""
Poll/ack protocol for POLL jobs.

A pull consumer signs ``owner + timestamp + [caller_id] + "POLL"`` with the
job's secret. A successful poll leases the oldest matching job for
``lease_seconds``; an ack signed over ``job_id + "ACK"`` completes it. Leases
that run out are reclaimed by the claim sweep, not here.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, TypeAlias

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue.core.collaborators.vault import SecretResolver
from pgqueue.core.errors import AuthenticationError, ErrorCode
from pgqueue.core.logging import get_logger
from pgqueue.core.models.app import PollConfig
from pgqueue.core.models.job import PolledJob
from pgqueue.core.poll.sql import (
    ACK_CANDIDATE_SQL,
    ACK_JOB_SQL,
    COMPLETE_NEW_JOB_SQL,
    LEASE_JOB_SQL,
    POLL_CANDIDATES_SQL,
)
from pgqueue.core.security.signer import (
    ack_string_to_sign,
    poll_string_to_sign,
    resolve_signing_secret,
    verify_hex_hmac,
)
from pgqueue.core.store.postgres import signing_config_from_row
from pgqueue.core.types.status import JobStatus
from pgqueue.core.types.transitions import validate_transition

logger = get_logger('poll')

PollTimestamp: TypeAlias = str | int | float | Decimal


def normalize_timestamp(timestamp: PollTimestamp) -> tuple[str, Decimal]:
    """
    Return the text that is signed and the numeric value (epoch seconds).

    Strings are signed exactly as supplied.
    """
    if isinstance(timestamp, bool):
        raise AuthenticationError(
            message='poll timestamp must be epoch seconds',
            code=ErrorCode.POLL_STALE_TIMESTAMP,
        )
    text_form = timestamp if isinstance(timestamp, str) else str(timestamp)
    try:
        value = Decimal(text_form)
    except InvalidOperation:
        raise AuthenticationError(
            message='poll timestamp must be epoch seconds',
            code=ErrorCode.POLL_STALE_TIMESTAMP,
            notes=[f'got timestamp={timestamp!r}'],
        ) from None
    if not value.is_finite():
        raise AuthenticationError(
            message='poll timestamp must be a finite number',
            code=ErrorCode.POLL_STALE_TIMESTAMP,
        )
    return text_form, value


class PollLeaseManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        config: Optional[PollConfig] = None,
        secret_resolver: Optional[SecretResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or PollConfig()
        self.secret_resolver = secret_resolver
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check_timestamp(self, timestamp: PollTimestamp) -> str:
        """Reject replays older than the window. Returns the text to sign."""
        text_form, value = normalize_timestamp(timestamp)
        now = Decimal(str(self._clock().timestamp()))
        oldest = now - Decimal(str(self.config.replay_window_seconds))
        if value < oldest:
            raise AuthenticationError(
                message='poll timestamp outside the replay window',
                code=ErrorCode.POLL_STALE_TIMESTAMP,
                notes=[
                    f'timestamp={text_form}, server time={now:.3f}',
                    f'window={self.config.replay_window_seconds}s',
                ],
            )
        return text_form

    async def _row_secret(self, row: Any) -> bytes | None:
        try:
            return await resolve_signing_secret(
                signing_config_from_row(row), self.secret_resolver,
            )
        except LookupError as e:
            logger.warning(f'No usable secret for job {row.id}: {e}')
            return None

    async def _authenticates(self, row: Any, message: str, supplied: str) -> bool:
        secret = await self._row_secret(row)
        return bool(secret) and verify_hex_hmac(message, secret, supplied)

    async def poll(
        self,
        owner: str,
        timestamp: PollTimestamp,
        hmac: str,
        *,
        as_user: bool = False,
        auto_ack: bool = False,
        caller_id: Optional[str] = None,
    ) -> PolledJob | None:
        """
        Lease the oldest eligible POLL job of ``owner`` that the request signs.

        Returns None when no job is eligible. Raises AuthenticationError for a
        stale timestamp, or when jobs are eligible but none authenticates.
        """
        if as_user and not caller_id:
            raise AuthenticationError(
                message='poll as_user requires a caller id',
                code=ErrorCode.POLL_MISSING_CALLER,
            )
        ts_text = self.check_timestamp(timestamp)
        message = poll_string_to_sign(owner, ts_text, caller_id if as_user else None)

        async with self.session_factory() as session:
            result = await session.execute(
                POLL_CANDIDATES_SQL, {'owner': owner, 'lim': self.config.scan_limit},
            )
            rows = result.fetchall()
            if not rows:
                await session.rollback()
                return None

            matched = None
            for row in rows:
                if await self._authenticates(row, message, hmac):
                    matched = row
                    break
            if matched is None:
                await session.rollback()
                raise AuthenticationError(
                    message='poll signature does not match any eligible job',
                    code=ErrorCode.POLL_BAD_SIGNATURE,
                    notes=[f'owner={owner}', f'eligible jobs={len(rows)}'],
                )

            if auto_ack:
                validate_transition(JobStatus.NEW, JobStatus.COMPLETED)
                update = await session.execute(COMPLETE_NEW_JOB_SQL, {'id': matched.id})
            else:
                validate_transition(JobStatus.NEW, JobStatus.POLLED)
                update = await session.execute(
                    LEASE_JOB_SQL,
                    {'id': matched.id, 'lease_seconds': float(self.config.lease_seconds)},
                )
            if update.fetchone() is None:
                await session.rollback()
                return None
            await session.commit()

        logger.debug(
            f'Job {matched.id} {"completed" if auto_ack else "leased"} by poll of {owner}'
        )
        return PolledJob(
            id=matched.id,
            payload=matched.payload or {},
            headers=matched.headers or {},
        )

    async def ack(self, job_id: str, hmac: str) -> bool:
        """Complete a leased job. False (and no change) unless signed and polled."""
        async with self.session_factory() as session:
            result = await session.execute(ACK_CANDIDATE_SQL, {'id': job_id})
            row = result.fetchone()
            if row is None or not await self._authenticates(
                row, ack_string_to_sign(job_id), hmac,
            ):
                await session.rollback()
                logger.debug(f'Ack of job {job_id} rejected')
                return False

            validate_transition(JobStatus.POLLED, JobStatus.COMPLETED)
            update = await session.execute(ACK_JOB_SQL, {'id': job_id})
            acked = update.fetchone() is not None
            await session.commit()
        return acked
