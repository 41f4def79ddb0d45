from __future__ import annotations

from pathlib import Path
from typing import Any

from .store import MemoryStore


def build_memory_store(backend: str, sqlite_path: Path, postgres_dsn: str = "") -> Any:
    backend = (backend or "sqlite").strip().lower()
    if backend == "sqlite":
        return MemoryStore(sqlite_path)
    if backend != "postgres":
        raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")
    if not postgres_dsn:
        raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")

    from .postgres_store import PostgresMemoryStore

    return PostgresMemoryStore(postgres_dsn)
