from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol

from ..memory.models import Persona
from .cascade import ModelCascade

logger = logging.getLogger("persona_bot")

PERSONA_NAME_MAX_CHARS = 80
PERSONA_PROMPT_MAX_CHARS = 8000
_EDITABLE_FIELDS = ("name", "persona_prompt", "trigger_role_id", "avatar_url", "active_channel_id")


class PersonaError(ValueError):
    """Invalid persona operation (unknown persona, duplicate name, bad field)."""


class PersonaStore(Protocol):
    async def create_persona(self, persona: Persona) -> Persona: ...

    async def get_persona(self, persona_id: str) -> Persona | None: ...

    async def get_personas_for_guild(self, guild_id: str) -> list[Persona]: ...

    async def update_persona(self, persona_id: str, updates: dict[str, Any]) -> Persona | None: ...

    async def clear_channel_persona(self, channel_id: str) -> int: ...

    async def delete_persona(self, persona_id: str) -> bool: ...


def _clean_name(name: str) -> str:
    cleaned = " ".join(str(name or "").split())
    if not cleaned:
        raise PersonaError("persona name cannot be empty")
    if len(cleaned) > PERSONA_NAME_MAX_CHARS:
        raise PersonaError(f"persona name must be at most {PERSONA_NAME_MAX_CHARS} characters")
    return cleaned


def _clean_prompt(prompt: str) -> str:
    cleaned = str(prompt or "").strip()
    if not cleaned:
        raise PersonaError("persona prompt cannot be empty")
    return cleaned[:PERSONA_PROMPT_MAX_CHARS]


def _optional_id(value: object) -> str | None:
    text = str(value or "").strip()
    return text or None


class PersonaRegistry:
    """Persona management used by the command and dashboard layers."""

    def __init__(self, store: PersonaStore, writer: ModelCascade[str] | None = None) -> None:
        self.store = store
        self.writer = writer

    async def _ensure_unique_name(self, guild_id: str, name: str, *, exclude_id: str | None = None) -> None:
        folded = name.casefold()
        for existing in await self.store.get_personas_for_guild(guild_id):
            if existing.id != exclude_id and existing.name.casefold() == folded:
                raise PersonaError(f"a persona named {existing.name!r} already exists in this server")

    async def _require(self, persona_id: str) -> Persona:
        persona = await self.store.get_persona(persona_id)
        if persona is None:
            raise PersonaError(f"unknown persona {persona_id!r}")
        return persona

    async def generate_persona_prompt(self, name: str, instructions: str) -> str:
        if self.writer is None:
            raise PersonaError("persona prompt generation is not configured")
        if not str(instructions or "").strip():
            raise PersonaError("instructions cannot be empty")
        result = await self.writer.run((_clean_name(name), str(instructions).strip()))
        return _clean_prompt(result.value)

    async def create(
        self,
        guild_id: str,
        name: str,
        *,
        persona_prompt: str = "",
        instructions: str = "",
        creator_id: str = "",
        active_channel_id: str | None = None,
        trigger_role_id: str | None = None,
        avatar_url: str | None = None,
    ) -> Persona:
        name = _clean_name(name)
        await self._ensure_unique_name(guild_id, name)

        if not str(persona_prompt or "").strip() and str(instructions or "").strip():
            persona_prompt = await self.generate_persona_prompt(name, instructions)

        channel_id = _optional_id(active_channel_id)
        if channel_id is not None:
            await self.store.clear_channel_persona(channel_id)

        persona = Persona(
            id=uuid.uuid4().hex,
            guild_id=str(guild_id),
            name=name,
            persona_prompt=_clean_prompt(persona_prompt),
            creator_id=str(creator_id or ""),
            active_channel_id=channel_id,
            trigger_role_id=_optional_id(trigger_role_id),
            avatar_url=_optional_id(avatar_url),
        )
        created = await self.store.create_persona(persona)
        logger.info("[persona.registry] created persona=%s name=%s guild=%s", created.id, created.name, guild_id)
        return created

    async def update(self, persona_id: str, **changes: Any) -> Persona:
        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise PersonaError(f"unsupported persona fields: {', '.join(sorted(unknown))}")
        persona = await self._require(persona_id)
        updates: dict[str, Any] = {}

        if "name" in changes:
            name = _clean_name(changes["name"])
            if name != persona.name:
                await self._ensure_unique_name(persona.guild_id, name, exclude_id=persona.id)
            updates["name"] = name
        if "persona_prompt" in changes:
            updates["persona_prompt"] = _clean_prompt(changes["persona_prompt"])
        for key in ("trigger_role_id", "avatar_url"):
            if key in changes:
                updates[key] = _optional_id(changes[key])
        if "active_channel_id" in changes:
            channel_id = _optional_id(changes["active_channel_id"])
            if channel_id is not None and channel_id != persona.active_channel_id:
                await self.store.clear_channel_persona(channel_id)
            updates["active_channel_id"] = channel_id

        updated = await self.store.update_persona(persona.id, updates)
        if updated is None:
            raise PersonaError(f"unknown persona {persona_id!r}")
        logger.info("[persona.registry] updated persona=%s fields=%s", persona.id, ",".join(sorted(updates)))
        return updated

    async def delete(self, persona_id: str) -> bool:
        deleted = await self.store.delete_persona(persona_id)
        if deleted:
            logger.info("[persona.registry] deleted persona=%s", persona_id)
        return deleted

    async def get(self, persona_id: str) -> Persona | None:
        return await self.store.get_persona(persona_id)

    async def list_for_guild(self, guild_id: str) -> list[Persona]:
        return await self.store.get_personas_for_guild(guild_id)

    async def activate_in_channel(self, persona_id: str, channel_id: str) -> Persona:
        return await self.update(persona_id, active_channel_id=channel_id)

    async def deactivate_channel(self, channel_id: str) -> int:
        cleared = await self.store.clear_channel_persona(channel_id)
        if cleared:
            logger.info("[persona.registry] deactivated channel=%s", channel_id)
        return cleared
