"""Integration tests for the claim and resolution sweeps against PostgreSQL."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from pgqueue.core.app import PgQueue
from pgqueue.core.models.job import JobSpec, SigningConfig
from pgqueue.core.scheduler import Scheduler
from pgqueue.core.security.signer import compute_signature
from pgqueue.core.types.result import is_ok
from pgqueue.core.types.status import JobType

from .conftest import Responder, drain_http, job_row, make_due

pytestmark = [pytest.mark.integration]


async def _submit(app: PgQueue, spec: JobSpec) -> str:
    result = await app.submit_job_async(spec)
    assert is_ok(result)
    return result.ok_value


@pytest.mark.asyncio
async def test_concurrent_sweeps_dispatch_each_job_once(app: PgQueue) -> None:
    seen: list[int] = []

    @app.function('record_call')
    async def record_call(n: int) -> str:
        await asyncio.sleep(0.01)
        seen.append(n)
        return str(n)

    for n in range(20):
        await _submit(app, JobSpec(job_type=JobType.FUNC, target='record_call', payload={'n': n}))

    sweeper = app.get_sweeper()
    first, second = await asyncio.gather(
        sweeper.process_scheduled_jobs(), sweeper.process_scheduled_jobs(),
    )

    assert first.claimed + second.claimed == 20
    assert sorted(seen) == list(range(20))


@pytest.mark.asyncio
async def test_http_job_completes_with_signed_body(
    app: PgQueue, responder: Responder, session: AsyncSession,
) -> None:
    job_id = await _submit(
        app,
        JobSpec(
            job_type=JobType.POST,
            target='https://hooks.example.com/in',
            payload={'b': 1, 'a': 'x'},
            signing=SigningConfig(secret=b'k'),
        ),
    )

    stats = await app.get_sweeper().process_scheduled_jobs()
    assert stats.submitted == 1
    assert (await job_row(session, job_id)).status == 'processing'

    await drain_http(app)
    await app.get_sweeper().process_job_results()

    row = await job_row(session, job_id)
    assert row.status == 'completed'
    assert row.response_status == 200
    request = responder.requests[0]
    assert request.content == b'{"a":"x","b":1}'
    assert request.headers['X-HMAC-Signature'] == compute_signature('{"a":"x","b":1}', b'k')


@pytest.mark.asyncio
async def test_server_error_is_never_reclaimed(
    app: PgQueue, responder: Responder, session: AsyncSession,
) -> None:
    responder.handler = lambda request: httpx.Response(503, text='down')
    job_id = await _submit(app, JobSpec(job_type=JobType.GET, target='https://x.test/'))

    await app.get_sweeper().process_scheduled_jobs()
    await drain_http(app)
    await app.get_sweeper().process_job_results()
    again = await app.get_sweeper().process_scheduled_jobs()

    row = await job_row(session, job_id)
    assert row.status == 'server_error'
    assert row.retry_count == 0
    assert again.claimed == 0
    assert len(responder.requests) == 1
    failures = await app.get_store().list_failures_async(job_id)
    assert failures.ok_value == []


@pytest.mark.asyncio
async def test_client_error_retries_with_backoff_and_logs(
    app: PgQueue, responder: Responder, session: AsyncSession,
) -> None:
    responder.handler = lambda request: httpx.Response(404, text='missing')
    job_id = await _submit(app, JobSpec(job_type=JobType.DELETE, target='https://x.test/1'))

    await app.get_sweeper().process_scheduled_jobs()
    await drain_http(app)
    await app.get_sweeper().process_job_results()

    row = await job_row(session, job_id)
    assert row.status == 'failed'
    assert row.retry_count == 1
    assert (row.run_at - row.last_at).total_seconds() == pytest.approx(5, abs=1)

    # Not yet due
    assert (await app.get_sweeper().process_scheduled_jobs()).claimed == 0

    await make_due(session, job_id)
    await app.get_sweeper().process_scheduled_jobs()
    await drain_http(app)
    await app.get_sweeper().process_job_results()

    failures = (await app.get_store().list_failures_async(job_id)).ok_value
    assert [f.attempt for f in failures] == [1, 2]
    assert all(f.response_status == 404 for f in failures)


@pytest.mark.asyncio
async def test_redirect_spawns_child_job(
    app: PgQueue, responder: Responder, session: AsyncSession,
) -> None:
    body = json.dumps({'job_type': 'GET', 'target': 'https://next.test/'})
    responder.handler = lambda request: httpx.Response(210, text=body)
    parent_id = await _submit(app, JobSpec(job_type=JobType.POST, target='https://x.test/'))

    await app.get_sweeper().process_scheduled_jobs()
    await drain_http(app)
    stats = await app.get_sweeper().process_job_results()

    assert stats.spawned == 1
    assert (await job_row(session, parent_id)).status == 'redirected'
    result = await session.execute(
        text('SELECT id, job_type, target, status FROM pgqueue_jobs WHERE parent_id = :p'),
        {'p': parent_id},
    )
    child = result.fetchone()
    assert child.job_type == 'GET'
    assert child.target == 'https://next.test/'
    assert child.status == 'new'
    audit = await session.execute(
        text('SELECT source FROM pgqueue_trigger_audit WHERE job_id = :id'), {'id': child.id},
    )
    assert audit.scalar() == 'redirect'


@pytest.mark.asyncio
async def test_update_payload_keeps_creation_signature(
    app: PgQueue, session: AsyncSession,
) -> None:
    job_id = await _submit(
        app,
        JobSpec(
            job_type=JobType.POST,
            target='https://x.test/',
            payload={'v': 1},
            signing=SigningConfig(vault='acme-key'),
        ),
    )
    before = (await job_row(session, job_id)).headers

    updated = await app.get_store().update_payload_async(job_id, {'v': 2})

    row = await job_row(session, job_id)
    assert updated.ok_value is True
    assert row.payload == {'v': 2}
    assert row.headers == before
    assert before['X-HMAC-Signature'] == compute_signature('{"v":1}', b'vaulted-secret')


@pytest.mark.asyncio
async def test_one_shot_sweep_settles_requests_before_shutdown(
    app: PgQueue, responder: Responder, session: AsyncSession,
) -> None:
    job_id = await _submit(app, JobSpec(job_type=JobType.POST, target='https://x.test/'))
    scheduler = Scheduler(app)
    await scheduler.start()

    stats = await app.get_sweeper().process_scheduled_jobs()
    await scheduler.drain_in_flight()
    await scheduler.stop()

    assert stats.submitted == 1
    row = await job_row(session, job_id)
    assert row.status == 'completed'
    assert row.response_status == 200
    assert len(responder.requests) == 1
    remaining = await session.execute(text('SELECT count(*) FROM pgqueue_executed_requests'))
    assert remaining.scalar() == 0
