from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

from ..memory.models import Memory, Persona


DISCORD_MESSAGE_LIMIT = 2000


def collapse_spaces(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]

    window = text[:limit]
    cut = max(window.rfind(". "), window.rfind("! "), window.rfind("? "), window.rfind("; "))
    if cut >= int(limit * 0.62):
        return window[: cut + 1].strip()

    cut = window.rfind(" ")
    if cut >= int(limit * 0.7):
        return window[:cut].strip()

    return (window[: limit - 3].rstrip() + "...").strip()


def chunk_text(text: str, limit: int = 1900) -> list[str]:
    if len(text) <= limit:
        return [text]
    parts: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        if len(current) + len(line) <= limit:
            current += line
            continue
        if current:
            parts.append(current)
            current = ""
        if len(line) <= limit:
            current = line
        else:
            for i in range(0, len(line), limit):
                parts.append(line[i : i + limit])
    if current:
        parts.append(current)
    return parts


class Framing(str, Enum):
    DEDICATED_CHANNEL = "dedicated_channel"
    ROLE_MENTION = "role_mention"
    DIRECT_MESSAGE = "direct_message"


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    speaker_label: str
    text: str
    speaker_id: str = ""

    def as_line(self) -> str:
        return f"{self.speaker_label}: {self.text}"


@dataclass(frozen=True, slots=True)
class InlineImage:
    mime_type: str
    data: bytes
    filename: str = "image.png"


ImageLoader = Callable[[], Awaitable[Optional[InlineImage]]]


@dataclass(slots=True)
class InboundMessage:
    message_id: str
    author_id: str
    author_label: str
    author_is_automated: bool
    guild_id: str | None
    channel_id: str
    text: str
    mentioned_user_ids: frozenset[str] = frozenset()
    mentioned_role_ids: frozenset[str] = frozenset()
    image: InlineImage | None = None
    guild_name: str = ""
    # Set from attachment metadata; the bytes are fetched through image_loader once a persona is activated.
    image_attached: bool = False
    image_loader: ImageLoader | None = field(default=None, repr=False, compare=False)

    @property
    def has_image_attachment(self) -> bool:
        return self.image is not None or self.image_attached

    @property
    def is_direct(self) -> bool:
        return self.guild_id is None

    @property
    def channel_key(self) -> str:
        if self.guild_id is None:
            return f"dm:{self.author_id}"
        return self.channel_id


@dataclass(frozen=True, slots=True)
class Activation:
    persona: Persona
    framing: Framing


@dataclass(frozen=True, slots=True)
class Destination:
    channel_id: str
    guild_id: str | None = None
    user_id: str | None = None
    reply_to_message_id: str | None = None

    @property
    def is_direct(self) -> bool:
        return self.guild_id is None


@dataclass(slots=True)
class PromptPayload:
    persona: Persona
    framing: Framing
    history: Sequence[ConversationTurn]
    current_turn: ConversationTurn
    memories: Sequence[Memory] = ()
    image: InlineImage | None = None
    guild_name: str = ""


@dataclass(slots=True)
class ModelReply:
    text: str | None = None
    image_directive: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.text or "").strip() and not (self.image_directive or "").strip()


@dataclass(slots=True)
class PendingConsolidation:
    persona: Persona
    channel_key: str
    transcript_lines: list[str]
    participants: dict[str, str] = field(default_factory=dict)
