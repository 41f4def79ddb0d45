from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_bot.conversation.cascade import CascadeError, ModelCascade  # noqa: E402
from persona_bot.conversation.registry import PersonaError, PersonaRegistry  # noqa: E402
from persona_bot.memory.store import MemoryStore  # noqa: E402
from persona_bot.services.gemini_client import GeminiError  # noqa: E402


class _Writer:
    def __init__(self, replies: dict[str, object]) -> None:
        self.replies = replies
        self.requests: list[tuple[str, tuple[str, str]]] = []

    async def write_persona(self, model: str, request: tuple[str, str]) -> str:
        self.requests.append((model, request))
        reply = self.replies[model]
        if isinstance(reply, BaseException):
            raise reply
        return str(reply)


async def _registry(tmp_path: Path, writer: _Writer | None = None) -> PersonaRegistry:
    store = MemoryStore(tmp_path / "memory.db")
    await store.init()
    cascade = ModelCascade(list(writer.replies), writer.write_persona, label="persona") if writer else None
    return PersonaRegistry(store, cascade)


def test_create_with_explicit_prompt(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        registry = await _registry(tmp_path)
        created = await registry.create(
            "g1",
            "  Nova   Star ",
            persona_prompt="A curious archivist.",
            creator_id="admin",
            active_channel_id="c1",
            trigger_role_id="42",
        )
        return created, await registry.get(created.id)

    created, loaded = asyncio.run(scenario())

    assert created.name == "Nova Star"
    assert loaded is not None
    assert loaded.active_channel_id == "c1"
    assert loaded.trigger_role_id == "42"
    assert loaded.creator_id == "admin"


def test_create_generates_prompt_through_model_cascade(tmp_path: Path) -> None:
    writer = _Writer(
        {
            "A": GeminiError(429, "RESOURCE_EXHAUSTED", retryable=True),
            "B": "Nova is a soft-spoken archivist who hums while cataloguing maps.",
        }
    )

    async def scenario():  # type: ignore[no-untyped-def]
        registry = await _registry(tmp_path, writer)
        return await registry.create("g1", "Nova", instructions="a kind librarian")

    created = asyncio.run(scenario())

    assert created.persona_prompt.startswith("Nova is a soft-spoken archivist")
    assert writer.requests == [("A", ("Nova", "a kind librarian")), ("B", ("Nova", "a kind librarian"))]


def test_prompt_generation_failure_surfaces_cascade_error(tmp_path: Path) -> None:
    writer = _Writer({"A": GeminiError(400, "INVALID_ARGUMENT")})

    async def scenario() -> None:
        registry = await _registry(tmp_path, writer)
        await registry.create("g1", "Nova", instructions="a kind librarian")

    with pytest.raises(CascadeError):
        asyncio.run(scenario())


@pytest.mark.parametrize(
    "name,prompt",
    [
        ("", "A prompt."),
        ("x" * 81, "A prompt."),
        ("Nova", ""),
    ],
)
def test_create_rejects_invalid_input(tmp_path: Path, name: str, prompt: str) -> None:
    async def scenario() -> None:
        registry = await _registry(tmp_path)
        await registry.create("g1", name, persona_prompt=prompt)

    with pytest.raises(PersonaError):
        asyncio.run(scenario())


def test_duplicate_names_are_rejected_case_insensitively(tmp_path: Path) -> None:
    async def scenario() -> None:
        registry = await _registry(tmp_path)
        await registry.create("g1", "Nova", persona_prompt="first")
        await registry.create("g2", "NOVA", persona_prompt="other guild is fine")
        await registry.create("g1", "nova", persona_prompt="clash")

    with pytest.raises(PersonaError, match="already exists"):
        asyncio.run(scenario())


def test_channel_binding_moves_between_personas(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        registry = await _registry(tmp_path)
        first = await registry.create("g1", "Nova", persona_prompt="first", active_channel_id="c1")
        second = await registry.create("g1", "Orion", persona_prompt="second")
        await registry.activate_in_channel(second.id, "c1")
        return await registry.get(first.id), await registry.get(second.id)

    first, second = asyncio.run(scenario())

    assert first is not None and first.active_channel_id is None
    assert second is not None and second.active_channel_id == "c1"


def test_update_and_deactivate(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        registry = await _registry(tmp_path)
        persona = await registry.create("g1", "Nova", persona_prompt="first", active_channel_id="c1")
        updated = await registry.update(persona.id, name="Nova Prime", avatar_url="  ", trigger_role_id="7")
        cleared = await registry.deactivate_channel("c1")
        listed = await registry.list_for_guild("g1")
        return updated, cleared, listed

    updated, cleared, listed = asyncio.run(scenario())

    assert updated.name == "Nova Prime"
    assert updated.avatar_url is None
    assert updated.trigger_role_id == "7"
    assert cleared == 1
    assert [persona.active_channel_id for persona in listed] == [None]


def test_update_rejects_unknown_fields_and_personas(tmp_path: Path) -> None:
    async def scenario() -> None:
        registry = await _registry(tmp_path)
        persona = await registry.create("g1", "Nova", persona_prompt="first")
        with pytest.raises(PersonaError, match="unsupported"):
            await registry.update(persona.id, guild_id="g2")
        with pytest.raises(PersonaError, match="unknown persona"):
            await registry.update("missing", name="Ghost")

    asyncio.run(scenario())


def test_delete_persona(tmp_path: Path) -> None:
    async def scenario() -> tuple[bool, bool]:
        registry = await _registry(tmp_path)
        persona = await registry.create("g1", "Nova", persona_prompt="first")
        return await registry.delete(persona.id), await registry.delete(persona.id)

    assert asyncio.run(scenario()) == (True, False)


def test_generation_requires_configured_writer(tmp_path: Path) -> None:
    async def scenario() -> None:
        registry = await _registry(tmp_path)
        await registry.generate_persona_prompt("Nova", "a librarian")

    with pytest.raises(PersonaError, match="not configured"):
        asyncio.run(scenario())
