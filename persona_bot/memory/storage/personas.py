from __future__ import annotations

from typing import Any

import aiosqlite

from ..models import Persona
from .utils import _sqlite_memory_connection

_PERSONA_COLUMNS = (
    "id, guild_id, name, persona_prompt, creator_id, active_channel_id, "
    "trigger_role_id, avatar_url, created_at, updated_at"
)
_UPDATABLE_FIELDS = ("name", "persona_prompt", "active_channel_id", "trigger_role_id", "avatar_url")


class MemoryPersonasMixin:
    async def create_persona(self, persona: Persona) -> Persona:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO personas (
                    id, guild_id, name, persona_prompt, creator_id, active_channel_id,
                    trigger_role_id, avatar_url, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                """,
                (
                    persona.id,
                    persona.guild_id,
                    persona.name,
                    persona.persona_prompt,
                    persona.creator_id,
                    persona.active_channel_id,
                    persona.trigger_role_id,
                    persona.avatar_url,
                ),
            )
            await db.commit()
        created = await self.get_persona(persona.id)
        return created if created is not None else persona

    async def get_persona(self, persona_id: str) -> Persona | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_PERSONA_COLUMNS} FROM personas WHERE id = ?",
                (persona_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return Persona.from_row(row)

    async def get_personas_for_guild(self, guild_id: str) -> list[Persona]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_PERSONA_COLUMNS}
                FROM personas
                WHERE guild_id = ?
                ORDER BY created_at ASC, name ASC
                """,
                (guild_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [Persona.from_row(row) for row in rows]

    async def update_persona(self, persona_id: str, updates: dict[str, Any]) -> Persona | None:
        fields = [(key, updates[key]) for key in _UPDATABLE_FIELDS if key in updates]
        if fields:
            assignments = ", ".join(f"{key} = ?" for key, _ in fields)
            params = [value for _, value in fields]
            async with _sqlite_memory_connection(self.db_path) as db:
                await db.execute(
                    f"UPDATE personas SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (*params, persona_id),
                )
                await db.commit()
        return await self.get_persona(persona_id)

    async def clear_channel_persona(self, channel_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE personas
                SET active_channel_id = NULL, updated_at = CURRENT_TIMESTAMP
                WHERE active_channel_id = ?
                """,
                (channel_id,),
            )
            await db.commit()
            return int(cursor.rowcount or 0)

    async def delete_persona(self, persona_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute("DELETE FROM personas WHERE id = ?", (persona_id,))
            await db.commit()
            return bool(cursor.rowcount)
