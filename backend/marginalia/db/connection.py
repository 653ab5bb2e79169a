"""aiosqlite connection for the conversation store."""

import logging
from pathlib import Path

import aiosqlite

from marginalia.db.schema import SCHEMA_SQL, SCHEMA_VERSION

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


class Database:
    """One shared aiosqlite connection. Writes commit immediately."""

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection

    @classmethod
    async def connect(cls, path: str = "marginalia.db") -> "Database":
        """Open (creating the parent directory if needed) and prepare the schema."""
        if path != MEMORY_PATH:
            Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(path)
        conn.row_factory = aiosqlite.Row
        for pragma in ("journal_mode=WAL", "foreign_keys=ON", "busy_timeout=5000"):
            await conn.execute(f"PRAGMA {pragma}")
        db = cls(conn)
        await db._ensure_schema()
        return db

    async def _ensure_schema(self) -> None:
        """Create missing tables and stamp the schema version. Safe to repeat."""
        await self._conn.executescript(SCHEMA_SQL)
        row = await self.fetchone("PRAGMA user_version")
        version = row[0] if row else 0
        if version > SCHEMA_VERSION:
            logger.warning(
                "database schema version %d is newer than supported version %d",
                version, SCHEMA_VERSION,
            )
        elif version < SCHEMA_VERSION:
            await self._conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
        await self._conn.commit()

    async def schema_version(self) -> int:
        row = await self.fetchone("PRAGMA user_version")
        return row[0] if row else 0

    async def execute(self, sql: str, params: tuple | None = None) -> aiosqlite.Cursor:
        cursor = await self._conn.execute(sql, params or ())
        await self._conn.commit()
        return cursor

    async def fetchone(self, sql: str, params: tuple | None = None) -> aiosqlite.Row | None:
        cursor = await self._conn.execute(sql, params or ())
        return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | None = None) -> list[aiosqlite.Row]:
        cursor = await self._conn.execute(sql, params or ())
        return list(await cursor.fetchall())

    async def close(self) -> None:
        await self._conn.close()
