from __future__ import annotations

import logging
from typing import Iterable, Sequence

import aiosqlite

from ..models import Memory, clamp_salience
from .utils import _sqlite_memory_connection, normalize_id_set, sanitize_memory_content


logger = logging.getLogger("persona_bot")


class MemoryRecordsMixin:
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

        async with _sqlite_memory_connection(self.db_path) as db:
            await db.executemany(
                """
                INSERT INTO persona_memories (
                    persona_id, subject_user_id, kind, content, salience, created_at, last_accessed_at
                )
                VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                """,
                rows,
            )
            await db.commit()
        return len(rows)

    async def retrieve_memories(
        self,
        persona_id: str,
        participant_ids: Iterable[object],
        limit: int | None = None,
    ) -> list[Memory]:
        participants = normalize_id_set(participant_ids)
        clauses = ["subject_user_id IS NULL"]
        params: list[object] = [persona_id]
        if participants:
            placeholders = ", ".join("?" for _ in participants)
            clauses.append(f"subject_user_id IN ({placeholders})")
            params.extend(participants)

        query = f"""
            SELECT id, persona_id, subject_user_id, kind, content, salience, created_at, last_accessed_at
            FROM persona_memories
            WHERE persona_id = ?
              AND ({" OR ".join(clauses)})
            ORDER BY salience DESC, created_at DESC, id DESC
        """
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(0, int(limit)))

        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            memories = [Memory.from_row(row) for row in rows]
            if memories:
                ids = [memory.id for memory in memories]
                placeholders = ", ".join("?" for _ in ids)
                await db.execute(
                    f"UPDATE persona_memories SET last_accessed_at = CURRENT_TIMESTAMP WHERE id IN ({placeholders})",
                    ids,
                )
                await db.commit()
        return memories

    async def count_memories(self, persona_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM persona_memories WHERE persona_id = ?",
                (persona_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def delete_memories_for_persona(self, persona_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute("DELETE FROM persona_memories WHERE persona_id = ?", (persona_id,))
            await db.commit()
            deleted = int(cursor.rowcount or 0)
        logger.info("[memory.delete] persona=%s deleted=%s", persona_id, deleted)
        return deleted
