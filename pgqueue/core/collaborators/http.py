"""
Asynchronous HTTP execution.

``submit`` hands a request off and returns a correlation handle immediately;
the request runs as an asyncio task on the submitting loop. ``collect`` later
returns the outcomes of the handles that have finished, so the sweep that
claimed the job never waits on the network.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from pgqueue.core.logging import get_logger
from pgqueue.core.retry.classifier import AttemptOutcome

logger = get_logger('http')


@dataclass(slots=True, frozen=True)
class OutboundRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=lambda: {})
    body: Optional[str] = None


class HttpExecutor(Protocol):
    """Fire-and-collect HTTP facility used by the dispatcher and resolution sweep."""

    @property
    def executor_id(self) -> str: ...

    async def submit(self, request: OutboundRequest) -> str: ...

    async def collect(self, handles: Sequence[str]) -> dict[str, AttemptOutcome]: ...

    def discard(self, handle: str) -> None: ...

    async def aclose(self) -> None: ...


class HttpxExecutor:
    """HttpExecutor backed by a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        executor_id: Optional[str] = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = httpx.Timeout(timeout_seconds)
        self._executor_id = executor_id or f'httpx-{uuid.uuid4().hex}'
        self._pending: dict[str, asyncio.Task[AttemptOutcome]] = {}

    @property
    def executor_id(self) -> str:
        return self._executor_id

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def submit(self, request: OutboundRequest) -> str:
        handle = uuid.uuid4().hex
        self._pending[handle] = asyncio.create_task(
            self._perform(request), name=f'pgqueue-http-{handle}',
        )
        logger.debug(f'Submitted {request.method} {request.url} as {handle}')
        return handle

    async def _perform(self, request: OutboundRequest) -> AttemptOutcome:
        try:
            response = await self._get_client().request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body,
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            return AttemptOutcome.failure(f'{type(e).__name__}: {e}')
        return AttemptOutcome(
            status_code=response.status_code,
            headers=dict(response.headers),
            content=response.text,
        )

    async def collect(self, handles: Sequence[str]) -> dict[str, AttemptOutcome]:
        """Outcomes for finished handles. Unfinished handles are left pending."""
        results: dict[str, AttemptOutcome] = {}
        for handle in handles:
            task = self._pending.get(handle)
            if task is None:
                results[handle] = AttemptOutcome.failure(
                    f'unknown request handle {handle}',
                )
                continue
            if not task.done():
                continue
            del self._pending[handle]
            if task.cancelled():
                results[handle] = AttemptOutcome.failure('request cancelled')
            elif (exc := task.exception()) is not None:
                results[handle] = AttemptOutcome.failure(f'{type(exc).__name__}: {exc}')
            else:
                results[handle] = task.result()
        return results

    def discard(self, handle: str) -> None:
        """Forget a handle whose join row was never committed."""
        task = self._pending.pop(handle, None)
        if task is not None and not task.done():
            task.cancel()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def aclose(self) -> None:
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
