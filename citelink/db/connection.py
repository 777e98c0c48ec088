"""Async SQLite connection wrapper: WAL mode, schema init, and transactions."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosqlite

from citelink.db.schema import SCHEMA_SQL


class Database:
    """Thin async wrapper around one aiosqlite connection.

    ``execute`` commits each statement on its own. Statements that must land
    together go through ``transaction()``.
    """

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection

    @classmethod
    async def connect(cls, path: str = "citelink.db") -> "Database":
        """Open ``path``, switch to WAL, and create any missing tables."""
        conn = await aiosqlite.connect(path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA busy_timeout=5000")
        db = cls(conn)
        await db._ensure_schema()
        return db

    async def _ensure_schema(self) -> None:
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()

    async def execute(self, sql: str, params: tuple | None = None) -> aiosqlite.Cursor:
        """Execute a single SQL statement and commit."""
        cursor = await self._conn.execute(sql, params or ())
        await self._conn.commit()
        return cursor

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the connection; commit when the block exits, roll back if it raises."""
        try:
            yield self._conn
        except BaseException:
            await self._conn.rollback()
            raise
        await self._conn.commit()

    async def fetchone(self, sql: str, params: tuple | None = None) -> aiosqlite.Row | None:
        cursor = await self._conn.execute(sql, params or ())
        return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | None = None) -> list[aiosqlite.Row]:
        cursor = await self._conn.execute(sql, params or ())
        return list(await cursor.fetchall())

    async def close(self) -> None:
        await self._conn.close()
