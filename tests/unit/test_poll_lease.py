"""Tests for the poll/ack lease protocol (fake session, fixed clock)."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import pytest

from pgqueue.core.collaborators.vault import StaticSecretResolver
from pgqueue.core.errors import AuthenticationError, ErrorCode
from pgqueue.core.models.app import PollConfig
from pgqueue.core.poll.lease import PollLeaseManager, normalize_timestamp
from pgqueue.core.poll.sql import (
    ACK_CANDIDATE_SQL,
    ACK_JOB_SQL,
    COMPLETE_NEW_JOB_SQL,
    LEASE_JOB_SQL,
    POLL_CANDIDATES_SQL,
)
from pgqueue.core.security.signer import compute_signature
from tests.helpers.fake_db import NO_MATCH, FakeResult, FakeSession, session_factory_for

NOW_EPOCH = 1_700_000_000
SECRET = b'owner-secret'


def _clock() -> datetime:
    return datetime.fromtimestamp(NOW_EPOCH, tz=timezone.utc)


def _job(**overrides: Any) -> SimpleNamespace:
    defaults: dict[str, Any] = {
        'id': 'job-1',
        'payload': {'task': 'x'},
        'headers': {'X-HMAC-Signature': 'sig'},
        'signing_secret': SECRET,
        'signing_vault': None,
        'signing_header': 'X-HMAC-Signature',
        'signing_style': 'PLAIN',
        'signing_alg': 'sha256',
        'signing_enc': 'hex',
    }
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def _manager(session: FakeSession, **kwargs: Any) -> PollLeaseManager:
    return PollLeaseManager(
        session_factory_for(session),  # type: ignore[arg-type]
        clock=_clock,
        **kwargs,
    )


def _sign(message: str, secret: bytes = SECRET) -> str:
    return compute_signature(message, secret)


@pytest.mark.unit
class TestNormalizeTimestamp:
    def test_int_and_string_forms(self) -> None:
        assert normalize_timestamp(NOW_EPOCH) == (str(NOW_EPOCH), Decimal(NOW_EPOCH))
        assert normalize_timestamp(' 1700000000.5 ') == (' 1700000000.5 ', Decimal('1700000000.5'))

    @pytest.mark.parametrize('bad', ['yesterday', True, 'NaN', 'Infinity'])
    def test_rejects_non_numeric(self, bad: Any) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            normalize_timestamp(bad)
        assert exc_info.value.code == ErrorCode.POLL_STALE_TIMESTAMP


@pytest.mark.unit
class TestPoll:
    @pytest.mark.asyncio
    async def test_stale_timestamp_is_rejected_before_any_query(self) -> None:
        session = FakeSession()
        manager = _manager(session)

        with pytest.raises(AuthenticationError) as exc_info:
            await manager.poll('owner-1', NOW_EPOCH - 3, 'x')

        assert exc_info.value.code == ErrorCode.POLL_STALE_TIMESTAMP
        assert session.executed == []

    @pytest.mark.asyncio
    async def test_timestamp_inside_window_is_accepted(self) -> None:
        session = FakeSession([(POLL_CANDIDATES_SQL, FakeResult([]))])
        manager = _manager(session)

        assert await manager.poll('owner-1', NOW_EPOCH - 1, 'x') is None

    @pytest.mark.asyncio
    async def test_as_user_requires_caller_id(self) -> None:
        manager = _manager(FakeSession())

        with pytest.raises(AuthenticationError) as exc_info:
            await manager.poll('owner-1', 'garbage', 'x', as_user=True)

        assert exc_info.value.code == ErrorCode.POLL_MISSING_CALLER

    @pytest.mark.asyncio
    async def test_no_eligible_job_returns_none(self) -> None:
        session = FakeSession([(POLL_CANDIDATES_SQL, FakeResult([]))])
        manager = _manager(session)

        result = await manager.poll('owner-1', NOW_EPOCH, _sign(f'owner-1{NOW_EPOCH}POLL'))

        assert result is None
        assert session.rolled_back is True
        assert session.calls_of(POLL_CANDIDATES_SQL) == [{'owner': 'owner-1', 'lim': 50}]

    @pytest.mark.asyncio
    async def test_bad_signature_raises(self) -> None:
        session = FakeSession([(POLL_CANDIDATES_SQL, FakeResult([_job()]))])
        manager = _manager(session)

        with pytest.raises(AuthenticationError) as exc_info:
            await manager.poll('owner-1', NOW_EPOCH, _sign('something else'))

        assert exc_info.value.code == ErrorCode.POLL_BAD_SIGNATURE
        assert session.calls_of(LEASE_JOB_SQL) == []
        assert session.rolled_back is True

    @pytest.mark.asyncio
    async def test_leases_first_job_the_signature_matches(self) -> None:
        other = _job(id='job-0', signing_secret=b'different')
        mine = _job(id='job-1')
        session = FakeSession([(POLL_CANDIDATES_SQL, FakeResult([other, mine]))])
        manager = _manager(session, config=PollConfig(lease_seconds=90))

        polled = await manager.poll('owner-1', str(NOW_EPOCH), _sign(f'owner-1{NOW_EPOCH}POLL'))

        assert polled is not None
        assert polled.id == 'job-1'
        assert polled.payload == {'task': 'x'}
        assert polled.headers == {'X-HMAC-Signature': 'sig'}
        assert session.calls_of(LEASE_JOB_SQL) == [{'id': 'job-1', 'lease_seconds': 90.0}]
        assert session.committed is True

    @pytest.mark.asyncio
    async def test_string_timestamp_is_signed_as_given(self) -> None:
        ts = f'{NOW_EPOCH}.250'
        session = FakeSession([(POLL_CANDIDATES_SQL, FakeResult([_job()]))])
        manager = _manager(session)

        polled = await manager.poll('owner-1', ts, _sign(f'owner-1{ts}POLL'))

        assert polled is not None

    @pytest.mark.asyncio
    async def test_whitespace_in_string_timestamp_is_part_of_signed_text(self) -> None:
        ts = f' {NOW_EPOCH} '
        manager = _manager(FakeSession([(POLL_CANDIDATES_SQL, FakeResult([_job()]))]))

        with pytest.raises(AuthenticationError):
            await manager.poll('owner-1', ts, _sign(f'owner-1{NOW_EPOCH}POLL'))

        manager = _manager(FakeSession([(POLL_CANDIDATES_SQL, FakeResult([_job()]))]))
        assert await manager.poll('owner-1', ts, _sign(f'owner-1{ts}POLL')) is not None

    @pytest.mark.asyncio
    async def test_caller_id_is_part_of_signed_string(self) -> None:
        session = FakeSession([(POLL_CANDIDATES_SQL, FakeResult([_job()]))])
        manager = _manager(session)

        polled = await manager.poll(
            'owner-1',
            NOW_EPOCH,
            _sign(f'owner-1{NOW_EPOCH}user-7POLL'),
            as_user=True,
            caller_id='user-7',
        )

        assert polled is not None

    @pytest.mark.asyncio
    async def test_auto_ack_completes_instead_of_leasing(self) -> None:
        session = FakeSession([(POLL_CANDIDATES_SQL, FakeResult([_job()]))])
        manager = _manager(session)

        polled = await manager.poll(
            'owner-1', NOW_EPOCH, _sign(f'owner-1{NOW_EPOCH}POLL'), auto_ack=True,
        )

        assert polled is not None
        assert session.calls_of(COMPLETE_NEW_JOB_SQL) == [{'id': 'job-1'}]
        assert session.calls_of(LEASE_JOB_SQL) == []

    @pytest.mark.asyncio
    async def test_lost_race_returns_none(self) -> None:
        session = FakeSession([
            (POLL_CANDIDATES_SQL, FakeResult([_job()])),
            (LEASE_JOB_SQL, NO_MATCH),
        ])
        manager = _manager(session)

        polled = await manager.poll('owner-1', NOW_EPOCH, _sign(f'owner-1{NOW_EPOCH}POLL'))

        assert polled is None
        assert session.committed is False

    @pytest.mark.asyncio
    async def test_vault_secret_authenticates(self) -> None:
        row = _job(signing_secret=None, signing_vault='owner-key')
        session = FakeSession([(POLL_CANDIDATES_SQL, FakeResult([row]))])
        manager = _manager(
            session, secret_resolver=StaticSecretResolver({'owner-key': 'vaulted'}),
        )

        polled = await manager.poll(
            'owner-1', NOW_EPOCH, _sign(f'owner-1{NOW_EPOCH}POLL', b'vaulted'),
        )

        assert polled is not None

    @pytest.mark.asyncio
    async def test_unresolvable_vault_secret_skips_row(self) -> None:
        row = _job(signing_secret=None, signing_vault='missing')
        session = FakeSession([(POLL_CANDIDATES_SQL, FakeResult([row]))])
        manager = _manager(session, secret_resolver=StaticSecretResolver({}))

        with pytest.raises(AuthenticationError):
            await manager.poll('owner-1', NOW_EPOCH, _sign(f'owner-1{NOW_EPOCH}POLL'))


@pytest.mark.unit
class TestAck:
    @pytest.mark.asyncio
    async def test_signed_ack_completes(self) -> None:
        session = FakeSession([(ACK_CANDIDATE_SQL, FakeResult([_job()]))])
        manager = _manager(session)

        assert await manager.ack('job-1', _sign('job-1ACK')) is True
        assert session.calls_of(ACK_JOB_SQL) == [{'id': 'job-1'}]
        assert session.committed is True

    @pytest.mark.asyncio
    async def test_uppercase_hex_is_accepted(self) -> None:
        session = FakeSession([(ACK_CANDIDATE_SQL, FakeResult([_job()]))])
        manager = _manager(session)

        assert await manager.ack('job-1', _sign('job-1ACK').upper()) is True

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self) -> None:
        session = FakeSession([(ACK_CANDIDATE_SQL, FakeResult([_job()]))])
        manager = _manager(session)

        assert await manager.ack('job-1', _sign('job-2ACK')) is False
        assert session.calls_of(ACK_JOB_SQL) == []
        assert session.rolled_back is True

    @pytest.mark.asyncio
    async def test_job_not_polled_is_rejected(self) -> None:
        session = FakeSession([(ACK_CANDIDATE_SQL, FakeResult([]))])
        manager = _manager(session)

        assert await manager.ack('job-1', _sign('job-1ACK')) is False
        assert session.calls_of(ACK_JOB_SQL) == []
