from __future__ import annotations

import aiosqlite

from .storage.guilds import MemoryGuildsMixin
from .storage.memories import MemoryRecordsMixin
from .storage.personas import MemoryPersonasMixin
from .storage.schema import MemorySchemaMixin


class MemoryStore(
    MemorySchemaMixin,
    MemoryPersonasMixin,
    MemoryRecordsMixin,
    MemoryGuildsMixin,
):
    """Persistent persona store: persona records, long-term memories, guild module config and DM links."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("SELECT 1")

    async def close(self) -> None:
        return
