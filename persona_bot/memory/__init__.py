from .models import GuildPersonaConfig, Memory, MemoryKind, Persona
from .postgres_store import PostgresMemoryStore
from .store import MemoryStore

__all__ = ["GuildPersonaConfig", "Memory", "MemoryKind", "MemoryStore", "Persona", "PostgresMemoryStore"]
