from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_bot.conversation.common import ConversationTurn, Framing, InlineImage, PromptPayload  # noqa: E402
from persona_bot.memory.models import Persona  # noqa: E402
from persona_bot.prompts.json_loader import PROMPTS_DIR_ENV, load_prompt_json  # noqa: E402
from persona_bot.prompts.memory import build_consolidation_messages  # noqa: E402
from persona_bot.prompts.persona import build_reply_messages  # noqa: E402


PERSONA = Persona(id="p1", guild_id="g1", name="Nova", persona_prompt="A curious archivist.")


def _payload(framing: Framing, *, image: InlineImage | None = None) -> PromptPayload:
    turn = ConversationTurn(speaker_label="Alice", text="hello", speaker_id="u1")
    return PromptPayload(persona=PERSONA, framing=framing, history=(turn,), current_turn=turn, image=image)


def test_prompt_json_overrides_are_deep_merged(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(PROMPTS_DIR_ENV, str(tmp_path))
    (tmp_path / "sample.json").write_text(
        json.dumps({"greeting": "Howdy", "nested": {"b": 3}}),
        encoding="utf-8",
    )

    config = load_prompt_json("sample.json", {"greeting": "Hello", "nested": {"a": 1, "b": 2}})

    assert config == {"greeting": "Howdy", "nested": {"a": 1, "b": 3}}


def test_malformed_prompt_json_falls_back_to_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(PROMPTS_DIR_ENV, str(tmp_path))
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    assert load_prompt_json("broken.json", {"greeting": "Hello"}) == {"greeting": "Hello"}


@pytest.mark.parametrize(
    "framing,needle",
    [
        (Framing.DEDICATED_CHANNEL, "your own channel"),
        (Framing.ROLE_MENTION, "mentioning your role"),
        (Framing.DIRECT_MESSAGE, "private conversation between you and Alice"),
    ],
)
def test_reply_prompt_reflects_framing(framing: Framing, needle: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(PROMPTS_DIR_ENV, str(tmp_path))

    messages = build_reply_messages(_payload(framing), guild_name="Lighthouse")

    assert needle in messages[0]["content"]
    assert "Lighthouse" in messages[0]["content"]
    # The current turn is only in the user message, not repeated as history.
    assert "Recent conversation" not in messages[0]["content"]
    assert messages[1]["content"].startswith("Alice: hello")


def test_reply_prompt_mentions_attached_image_and_image_policy(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(PROMPTS_DIR_ENV, str(tmp_path))
    image = InlineImage(mime_type="image/png", data=b"png")

    messages = build_reply_messages(_payload(Framing.DEDICATED_CHANNEL, image=image), allow_images=False)

    assert "attached an image" in messages[1]["content"]
    assert "Always leave image_prompt empty." in messages[0]["content"]


def test_consolidation_prompt_lists_participants(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(PROMPTS_DIR_ENV, str(tmp_path))

    messages = build_consolidation_messages("Nova", ["Alice: hi", "Nova: hello"], {"Alice": "u1"})

    assert "Nova" in messages[0]["content"]
    assert "- Alice -> u1" in messages[1]["content"]
    assert "Alice: hi\nNova: hello" in messages[1]["content"]
