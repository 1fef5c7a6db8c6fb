"""Tests for HttpxExecutor using httpx.MockTransport."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from pgqueue.core.collaborators.http import HttpxExecutor, OutboundRequest


async def _drain(executor: HttpxExecutor) -> None:
    await asyncio.gather(*list(executor._pending.values()), return_exceptions=True)


def _executor(handler) -> HttpxExecutor:  # type: ignore[no-untyped-def]
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpxExecutor(client=client, executor_id='exec-test')


@pytest.mark.unit
class TestHttpxExecutor:
    @pytest.mark.asyncio
    async def test_submit_then_collect(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, headers={'X-Id': '9'}, text='queued')

        executor = _executor(handler)
        handle = await executor.submit(
            OutboundRequest(
                method='POST',
                url='https://hooks.example.com/in',
                headers={'X-HMAC-Signature': 'abc'},
                body='{"a":1}',
            )
        )
        await _drain(executor)

        outcomes = await executor.collect([handle])

        outcome = outcomes[handle]
        assert outcome.status_code == 202
        assert outcome.content == 'queued'
        assert outcome.headers['x-id'] == '9'
        assert seen[0].method == 'POST'
        assert seen[0].headers['X-HMAC-Signature'] == 'abc'
        assert seen[0].content == b'{"a":1}'
        assert executor.pending_count == 0

    @pytest.mark.asyncio
    async def test_unfinished_request_stays_pending(self) -> None:
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200)

        executor = _executor(handler)
        handle = await executor.submit(OutboundRequest('GET', 'https://example.com/'))

        assert await executor.collect([handle]) == {}
        assert executor.pending_count == 1

        release.set()
        await _drain(executor)
        assert (await executor.collect([handle]))[handle].status_code == 200

    @pytest.mark.asyncio
    async def test_transport_error_becomes_failure_outcome(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError('connection refused', request=request)

        executor = _executor(handler)
        handle = await executor.submit(OutboundRequest('GET', 'https://example.com/'))
        await _drain(executor)

        outcome = (await executor.collect([handle]))[handle]

        assert outcome.status_code is None
        assert outcome.error == 'ConnectError: connection refused'

    @pytest.mark.asyncio
    async def test_unknown_handle_is_a_failure(self) -> None:
        executor = _executor(lambda request: httpx.Response(200))

        outcome = (await executor.collect(['nope']))['nope']

        assert outcome.error == 'unknown request handle nope'

    @pytest.mark.asyncio
    async def test_discard_cancels_and_forgets(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200)

        executor = _executor(handler)
        handle = await executor.submit(OutboundRequest('DELETE', 'https://example.com/x'))

        executor.discard(handle)

        assert executor.pending_count == 0
        assert 'unknown request handle' in (await executor.collect([handle]))[handle].error

    @pytest.mark.asyncio
    async def test_aclose_keeps_injected_client_open(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        executor = HttpxExecutor(client=client)

        await executor.aclose()

        assert client.is_closed is False
        assert executor.executor_id.startswith('httpx-')
        await client.aclose()
