"""Secret lookup by name, used for signing keys stored outside the job row."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue.core.logging import get_logger

logger = get_logger('vault')

_QUALIFIED_IDENT_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$')


class SecretNotFoundError(LookupError):
    """No secret is stored under the requested name."""


class SecretResolver(Protocol):
    async def resolve(self, name: str) -> bytes: ...


class StaticSecretResolver:
    """In-memory secrets, for tests and single-process deployments."""

    def __init__(self, secrets: Mapping[str, bytes | str]) -> None:
        self._secrets = {
            k: v.encode('utf-8') if isinstance(v, str) else v
            for k, v in secrets.items()
        }

    async def resolve(self, name: str) -> bytes:
        try:
            return self._secrets[name]
        except KeyError:
            raise SecretNotFoundError(f"secret '{name}' not found") from None


class PostgresVaultResolver:
    """
    Reads decrypted secrets from a view such as ``vault.decrypted_secrets``.

    Storage and encryption are owned by the vault; this only looks a value up
    by name.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        table: str = 'vault.decrypted_secrets',
        name_column: str = 'name',
        secret_column: str = 'decrypted_secret',
    ) -> None:
        for ident in (table, name_column, secret_column):
            if not _QUALIFIED_IDENT_RE.match(ident):
                raise ValueError(f'invalid vault identifier {ident!r}')
        self.session_factory = session_factory
        self._sql = text(
            f'SELECT {secret_column} FROM {table} WHERE {name_column} = :name LIMIT 1'
        )

    async def resolve(self, name: str) -> bytes:
        async with self.session_factory() as session:
            result = await session.execute(self._sql, {'name': name})
            value = result.scalar()
        if value is None:
            raise SecretNotFoundError(f"secret '{name}' not found")
        return value.encode('utf-8') if isinstance(value, str) else bytes(value)
