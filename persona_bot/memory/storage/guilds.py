from __future__ import annotations

import json
from typing import Any

import aiosqlite

from ..models import GuildPersonaConfig, Persona
from .personas import _PERSONA_COLUMNS
from .utils import _sqlite_memory_connection

PERSONA_MODULE = "ai-personas"


class MemoryGuildsMixin:
    async def get_guild_config(self, guild_id: str, module: str = PERSONA_MODULE) -> GuildPersonaConfig | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT guild_id, enabled, premium, settings_json
                FROM guild_modules
                WHERE guild_id = ? AND module = ?
                """,
                (guild_id, module),
            ) as cursor:
                row = await cursor.fetchone()
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
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO guild_modules (guild_id, module, enabled, premium, settings_json, updated_at)
                VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(guild_id, module) DO UPDATE SET
                    enabled = excluded.enabled,
                    premium = excluded.premium,
                    settings_json = excluded.settings_json,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    guild_id,
                    module,
                    1 if enabled else 0,
                    1 if premium else 0,
                    json.dumps(settings or {}, ensure_ascii=False),
                ),
            )
            await db.commit()

    async def link_direct_persona(self, user_id: str, persona_id: str) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO direct_persona_links (user_id, persona_id, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(user_id) DO UPDATE SET
                    persona_id = excluded.persona_id,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (user_id, persona_id),
            )
            await db.commit()

    async def get_direct_persona(self, user_id: str) -> Persona | None:
        columns = ", ".join(f"p.{name.strip()}" for name in _PERSONA_COLUMNS.split(","))
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {columns}
                FROM direct_persona_links AS link
                JOIN personas AS p ON p.id = link.persona_id
                WHERE link.user_id = ?
                """,
                (user_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return Persona.from_row(row)
