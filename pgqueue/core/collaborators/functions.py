"""
Internal function invocation for FUNC jobs.

Two invokers:

- ``PostgresFunctionInvoker`` runs ``SELECT schema.fn(arg := value, ...)`` in
  the claiming session, so the call shares the sweep's transaction.
- ``RegistryFunctionInvoker`` calls Python callables registered with
  ``@app.function('schema.name')`` and falls back to another invoker for
  names it does not know.
"""

from __future__ import annotations

import asyncio
import inspect
import re
from collections.abc import Mapping
from typing import Any, Callable, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from pgqueue.core.codec.serde import dumps_json, payload_to_kwargs
from pgqueue.core.errors import ErrorCode, RegistryError

_IDENT_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class FunctionInvoker(Protocol):
    async def invoke(
        self,
        schema: str,
        name: str,
        arguments: Mapping[str, Any],
        session: AsyncSession,
    ) -> Optional[str]: ...


def quote_ident(ident: str) -> str:
    """Quote a SQL identifier (PostgreSQL rules)."""
    return '"' + ident.replace('"', '""') + '"'


def _result_to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return dumps_json(value)
    return str(value)


class PostgresFunctionInvoker:
    """Invoke a database function with payload pairs as named text arguments."""

    def build_call(
        self, schema: str, name: str, arguments: Mapping[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        params: dict[str, Any] = {}
        parts: list[str] = []
        for i, (key, value) in enumerate(payload_to_kwargs(arguments).items()):
            bind = f'p{i}'
            parts.append(f'{quote_ident(key)} := :{bind}')
            params[bind] = value
        sql = f'SELECT {quote_ident(schema)}.{quote_ident(name)}({", ".join(parts)})'
        return sql, params

    async def invoke(
        self,
        schema: str,
        name: str,
        arguments: Mapping[str, Any],
        session: AsyncSession,
    ) -> Optional[str]:
        sql, params = self.build_call(schema, name, arguments)
        result = await session.execute(text(sql), params)
        return _result_to_text(result.scalar())


class FunctionRegistry:
    """Python callables addressable as FUNC job targets."""

    def __init__(self, default_schema: str = 'public') -> None:
        self.default_schema = default_schema
        self._functions: dict[str, Callable[..., Any]] = {}

    def qualify(self, name: str) -> str:
        return name if '.' in name else f'{self.default_schema}.{name}'

    def register(self, name: str, fn: Callable[..., Any]) -> None:
        qualified = self.qualify(name)
        parts = qualified.split('.')
        if len(parts) != 2 or not all(_IDENT_RE.match(p) for p in parts):
            raise RegistryError(
                message=f"invalid function name '{name}'",
                code=ErrorCode.FUNCTION_INVALID_NAME,
                help_text="use 'schema.function' or 'function'",
            )
        if qualified in self._functions:
            raise RegistryError(
                message=f"function '{qualified}' is already registered",
                code=ErrorCode.FUNCTION_DUPLICATE_NAME,
            )
        self._functions[qualified] = fn

    def get(self, schema: str, name: str) -> Optional[Callable[..., Any]]:
        return self._functions.get(f'{schema}.{name}')

    def names(self) -> list[str]:
        return sorted(self._functions)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.qualify(name) in self._functions


class RegistryFunctionInvoker:
    def __init__(
        self,
        registry: FunctionRegistry,
        fallback: Optional[FunctionInvoker] = None,
    ) -> None:
        self.registry = registry
        self.fallback = fallback

    async def invoke(
        self,
        schema: str,
        name: str,
        arguments: Mapping[str, Any],
        session: AsyncSession,
    ) -> Optional[str]:
        fn = self.registry.get(schema, name)
        if fn is None:
            if self.fallback is None:
                raise LookupError(f'function {schema}.{name} is not registered')
            return await self.fallback.invoke(schema, name, arguments, session)

        kwargs = dict(arguments)
        if inspect.iscoroutinefunction(fn):
            result = await fn(**kwargs)
        else:
            result = await asyncio.to_thread(fn, **kwargs)
        return _result_to_text(result)
