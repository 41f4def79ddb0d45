from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


SALIENCE_MIN = 1
SALIENCE_MAX = 10


class MemoryKind(str, Enum):
    FACT = "fact"
    RELATIONSHIP = "relationship"
    INTERACTION_SUMMARY = "interaction_summary"
    PREFERENCE = "preference"

    @classmethod
    def parse(cls, value: object) -> "MemoryKind | None":
        raw = str(value or "").strip().casefold().replace("-", "_").replace(" ", "_")
        aliases = {
            "summary": "interaction_summary",
            "interaction": "interaction_summary",
            "likes": "preference",
            "dislikes": "preference",
            "relation": "relationship",
        }
        raw = aliases.get(raw, raw)
        for kind in cls:
            if kind.value == raw:
                return kind
        return None


def clamp_salience(value: object) -> int:
    try:
        number = int(round(float(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        number = SALIENCE_MIN
    return max(SALIENCE_MIN, min(SALIENCE_MAX, number))


@dataclass(slots=True)
class Persona:
    id: str
    guild_id: str
    name: str
    persona_prompt: str
    creator_id: str = ""
    active_channel_id: str | None = None
    trigger_role_id: str | None = None
    avatar_url: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: Any) -> "Persona":
        return cls(
            id=str(row["id"]),
            guild_id=str(row["guild_id"]),
            name=str(row["name"]),
            persona_prompt=str(row["persona_prompt"]),
            creator_id=str(row["creator_id"] or ""),
            active_channel_id=_optional_str(row["active_channel_id"]),
            trigger_role_id=_optional_str(row["trigger_role_id"]),
            avatar_url=_optional_str(row["avatar_url"]),
            created_at=str(row["created_at"] or ""),
            updated_at=str(row["updated_at"] or ""),
        )


@dataclass(slots=True)
class Memory:
    persona_id: str
    kind: MemoryKind
    content: str
    salience: int
    subject_user_id: str | None = None
    id: int | None = None
    created_at: str = ""
    last_accessed_at: str = ""

    @classmethod
    def from_row(cls, row: Any) -> "Memory":
        return cls(
            id=int(row["id"]),
            persona_id=str(row["persona_id"]),
            subject_user_id=_optional_str(row["subject_user_id"]),
            kind=MemoryKind.parse(row["kind"]) or MemoryKind.FACT,
            content=str(row["content"]),
            salience=clamp_salience(row["salience"]),
            created_at=str(row["created_at"] or ""),
            last_accessed_at=str(row["last_accessed_at"] or ""),
        )


@dataclass(slots=True)
class GuildPersonaConfig:
    guild_id: str
    enabled: bool = False
    premium: bool = False
    settings: dict[str, Any] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.enabled and self.premium


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
