from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable, Sequence

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from .models import GuildPersonaConfig, Memory, Persona, clamp_salience
from .storage.guilds import PERSONA_MODULE
from .storage.utils import normalize_id_set, sanitize_memory_content


logger = logging.getLogger("persona_bot")

_PERSONA_COLUMNS = (
    "id, guild_id, name, persona_prompt, creator_id, active_channel_id, "
    "trigger_role_id, avatar_url, created_at::text AS created_at, updated_at::text AS updated_at"
)
_UPDATABLE_FIELDS = ("name", "persona_prompt", "active_channel_id", "trigger_role_id", "avatar_url")


class PostgresMemoryStore:
    """Postgres-backed persona store implementing the same API as MemoryStore."""

    SCHEMA_VERSION = 1
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError(
                "Postgres memory backend requires asyncpg. Install with: pip install asyncpg"
            )
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres memory schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade the bot before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        raw = await conn.fetchval("SELECT value FROM schema_meta WHERE key = 'schema_version'")
        try:
            return int(raw or 0)
        except (TypeError, ValueError):
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO schema_meta (key, value) VALUES ('schema_version', $1)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value
            """,
            str(version),
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS guild_modules (
                guild_id TEXT NOT NULL,
                module TEXT NOT NULL,
                enabled BOOLEAN NOT NULL DEFAULT FALSE,
                premium BOOLEAN NOT NULL DEFAULT FALSE,
                settings_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
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
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_personas_guild_name
            ON personas(guild_id, lower(name));

            CREATE UNIQUE INDEX IF NOT EXISTS idx_personas_active_channel
            ON personas(active_channel_id)
            WHERE active_channel_id IS NOT NULL;

            CREATE INDEX IF NOT EXISTS idx_personas_trigger_role
            ON personas(guild_id, trigger_role_id);

            CREATE TABLE IF NOT EXISTS persona_memories (
                id BIGSERIAL PRIMARY KEY,
                persona_id TEXT NOT NULL REFERENCES personas(id) ON DELETE CASCADE,
                subject_user_id TEXT,
                kind TEXT NOT NULL,
                content TEXT NOT NULL,
                salience SMALLINT NOT NULL CHECK (salience BETWEEN 1 AND 10),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                last_accessed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_persona_memories_lookup
            ON persona_memories(persona_id, subject_user_id, salience DESC, created_at DESC);

            CREATE TABLE IF NOT EXISTS direct_persona_links (
                user_id TEXT PRIMARY KEY,
                persona_id TEXT NOT NULL REFERENCES personas(id) ON DELETE CASCADE,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            """
        )

    async def create_persona(self, persona: Persona) -> Persona:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO personas (
                    id, guild_id, name, persona_prompt, creator_id, active_channel_id, trigger_role_id, avatar_url
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING {_PERSONA_COLUMNS}
                """,
                persona.id,
                persona.guild_id,
                persona.name,
                persona.persona_prompt,
                persona.creator_id,
                persona.active_channel_id,
                persona.trigger_role_id,
                persona.avatar_url,
            )
        return Persona.from_row(row)

    async def get_persona(self, persona_id: str) -> Persona | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_PERSONA_COLUMNS} FROM personas WHERE id = $1", persona_id)
        return Persona.from_row(row) if row is not None else None

    async def get_personas_for_guild(self, guild_id: str) -> list[Persona]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_PERSONA_COLUMNS}
                FROM personas
                WHERE guild_id = $1
                ORDER BY created_at ASC, name ASC
                """,
                guild_id,
            )
        return [Persona.from_row(row) for row in rows]

    async def update_persona(self, persona_id: str, updates: dict[str, Any]) -> Persona | None:
        fields = [(key, updates[key]) for key in _UPDATABLE_FIELDS if key in updates]
        if fields:
            assignments = ", ".join(f"{key} = ${index}" for index, (key, _) in enumerate(fields, start=2))
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                await conn.execute(
                    f"UPDATE personas SET {assignments}, updated_at = NOW() WHERE id = $1",
                    persona_id,
                    *[value for _, value in fields],
                )
        return await self.get_persona(persona_id)

    async def clear_channel_persona(self, channel_id: str) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE personas
                SET active_channel_id = NULL, updated_at = NOW()
                WHERE active_channel_id = $1
                """,
                channel_id,
            )
        return _affected_rows(status)

    async def delete_persona(self, persona_id: str) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute("DELETE FROM personas WHERE id = $1", persona_id)
        return _affected_rows(status) > 0

    async def create_memories(self, memories: Sequence[Memory]) -> int:
        rows = []
        for memory in memories:
            content = sanitize_memory_content(memory.content)
            if not content:
                continue
            rows.append(
                (
                    memory.persona_id,
                    memory.subject_user_id,
                    memory.kind.value,
                    content,
                    clamp_salience(memory.salience),
                )
            )
        if not rows:
            return 0
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO persona_memories (persona_id, subject_user_id, kind, content, salience)
                VALUES ($1, $2, $3, $4, $5)
                """,
                rows,
            )
        return len(rows)

    async def retrieve_memories(
        self,
        persona_id: str,
        participant_ids: Iterable[object],
        limit: int | None = None,
    ) -> list[Memory]:
        participants = normalize_id_set(participant_ids)
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    SELECT id, persona_id, subject_user_id, kind, content, salience,
                           created_at::text AS created_at, last_accessed_at::text AS last_accessed_at
                    FROM persona_memories
                    WHERE persona_id = $1
                      AND (subject_user_id IS NULL OR subject_user_id = ANY($2::text[]))
                    ORDER BY salience DESC, created_at DESC, id DESC
                    LIMIT $3
                    """,
                    persona_id,
                    participants,
                    None if limit is None else max(0, int(limit)),
                )
                ids = [int(row["id"]) for row in rows]
                if ids:
                    await conn.execute(
                        "UPDATE persona_memories SET last_accessed_at = NOW() WHERE id = ANY($1::bigint[])",
                        ids,
                    )
        return [Memory.from_row(row) for row in rows]

    async def count_memories(self, persona_id: str) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval("SELECT COUNT(*) FROM persona_memories WHERE persona_id = $1", persona_id)
        return int(value or 0)

    async def delete_memories_for_persona(self, persona_id: str) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute("DELETE FROM persona_memories WHERE persona_id = $1", persona_id)
        deleted = _affected_rows(status)
        logger.info("[memory.delete] persona=%s deleted=%s", persona_id, deleted)
        return deleted

    async def get_guild_config(self, guild_id: str, module: str = PERSONA_MODULE) -> GuildPersonaConfig | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT guild_id, enabled, premium, settings_json::text AS settings_json
                FROM guild_modules
                WHERE guild_id = $1 AND module = $2
                """,
                guild_id,
                module,
            )
        if row is None:
            return None
        try:
            extra = json.loads(row["settings_json"] or "{}")
        except json.JSONDecodeError:
            extra = {}
        return GuildPersonaConfig(
            guild_id=str(row["guild_id"]),
            enabled=bool(row["enabled"]),
            premium=bool(row["premium"]),
            settings=extra if isinstance(extra, dict) else {},
        )

    async def set_guild_config(
        self,
        guild_id: str,
        *,
        enabled: bool,
        premium: bool,
        settings: dict[str, Any] | None = None,
        module: str = PERSONA_MODULE,
    ) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO guild_modules (guild_id, module, enabled, premium, settings_json, updated_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, NOW())
                ON CONFLICT (guild_id, module) DO UPDATE SET
                    enabled = excluded.enabled,
                    premium = excluded.premium,
                    settings_json = excluded.settings_json,
                    updated_at = NOW()
                """,
                guild_id,
                module,
                bool(enabled),
                bool(premium),
                json.dumps(settings or {}, ensure_ascii=False),
            )

    async def link_direct_persona(self, user_id: str, persona_id: str) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO direct_persona_links (user_id, persona_id, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (user_id) DO UPDATE SET
                    persona_id = excluded.persona_id,
                    updated_at = NOW()
                """,
                user_id,
                persona_id,
            )

    async def get_direct_persona(self, user_id: str) -> Persona | None:
        columns = ", ".join(f"p.{name.strip()}" for name in _PERSONA_COLUMNS.split(","))
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {columns}
                FROM direct_persona_links AS link
                JOIN personas AS p ON p.id = link.persona_id
                WHERE link.user_id = $1
                """,
                user_id,
            )
        return Persona.from_row(row) if row is not None else None


def _affected_rows(status: str) -> int:
    # asyncpg returns command tags such as "DELETE 3" or "UPDATE 1".
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except (TypeError, ValueError):
        return 0
