from .guilds import PERSONA_MODULE, MemoryGuildsMixin
from .memories import MemoryRecordsMixin
from .personas import MemoryPersonasMixin
from .schema import MemorySchemaMixin

__all__ = [
    "PERSONA_MODULE",
    "MemorySchemaMixin",
    "MemoryPersonasMixin",
    "MemoryRecordsMixin",
    "MemoryGuildsMixin",
]
