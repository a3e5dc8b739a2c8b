import logging
import re

import asyncpg

from relay.errors import PersistenceError
from relay.models.turn import Turn

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SCHEMA = """
CREATE TABLE IF NOT EXISTS turns (
    id BIGSERIAL PRIMARY KEY,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    content TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);
"""


class Database:
    """process-wide handle over an asyncpg pool; turns are append-only"""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @classmethod
    async def connect(cls, url: str, schema: str = "public") -> "Database":
        """connect (credentials come from the url), select the namespace, ensure the table"""
        if not _IDENTIFIER.match(schema):
            raise ValueError(f"invalid schema name: {schema!r}")

        # namespace has to exist before pooled connections put it on their search_path
        conn = await asyncpg.connect(url)
        try:
            await conn.execute(f'CREATE SCHEMA IF NOT EXISTS "{schema}"')
        finally:
            await conn.close()

        pool = await asyncpg.create_pool(url, server_settings={"search_path": schema})
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("database ready (schema=%s)", schema)
        return cls(pool)

    async def close(self):
        await self._pool.close()

    async def append_turn(self, turn: Turn) -> int:
        try:
            return await self._pool.fetchval(
                "INSERT INTO turns (role, content, created_at) VALUES ($1, $2, $3) RETURNING id",
                turn.role.value, turn.content, turn.timestamp,
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise PersistenceError(f"could not append turn: {e}") from e

