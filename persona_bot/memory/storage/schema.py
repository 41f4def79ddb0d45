from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_memory_connection


class MemorySchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def _user_version(self, db: aiosqlite.Connection) -> int:
        async with db.execute("PRAGMA user_version") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def _stamp_version(self, db: aiosqlite.Connection) -> None:
        await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")

    async def init(self) -> None:
        """Creates the persona schema, or checks an existing database against ``SCHEMA_VERSION``.

        A database written by a newer build is refused unless
        ``MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH`` allows dropping the persona tables.
        """
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            version = await self._user_version(db)
            populated = await self._has_user_tables(db)
            reset_allowed = self._allow_destructive_reset_on_mismatch()

            if populated and version != self.SCHEMA_VERSION and reset_allowed:
                await self._reset_schema(db)
            elif version > self.SCHEMA_VERSION:
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this bot build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )
            else:
                await self._create_schema(db)

            if version != self.SCHEMA_VERSION:
                await self._stamp_version(db)
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "direct_persona_links",
            "persona_memories",
            "personas",
            "guild_modules",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS guild_modules (
                guild_id TEXT NOT NULL,
                module TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 0,
                premium INTEGER NOT NULL DEFAULT 0,
                settings_json TEXT NOT NULL DEFAULT '{}',
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (guild_id, module)
            );

            CREATE TABLE IF NOT EXISTS personas (
                id TEXT PRIMARY KEY,
                guild_id TEXT NOT NULL,
                name TEXT NOT NULL,
                persona_prompt TEXT NOT NULL,
                creator_id TEXT NOT NULL DEFAULT '',
                active_channel_id TEXT,
                trigger_role_id TEXT,
                avatar_url TEXT,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_personas_guild_name
            ON personas(guild_id, name COLLATE NOCASE);

            CREATE UNIQUE INDEX IF NOT EXISTS idx_personas_active_channel
            ON personas(active_channel_id)
            WHERE active_channel_id IS NOT NULL;

            CREATE TABLE IF NOT EXISTS persona_memories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                persona_id TEXT NOT NULL REFERENCES personas(id) ON DELETE CASCADE,
                subject_user_id TEXT,
                kind TEXT NOT NULL,
                content TEXT NOT NULL,
                salience INTEGER NOT NULL CHECK (salience BETWEEN 1 AND 10),
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                last_accessed_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_persona_memories_lookup
            ON persona_memories(persona_id, subject_user_id, salience DESC, created_at DESC);

            CREATE TABLE IF NOT EXISTS direct_persona_links (
                user_id TEXT PRIMARY KEY,
                persona_id TEXT NOT NULL REFERENCES personas(id) ON DELETE CASCADE,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_personas_trigger_role
            ON personas(guild_id, trigger_role_id);
            """
        )
