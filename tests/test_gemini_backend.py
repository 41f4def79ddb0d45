from __future__ import annotations

import asyncio
import base64
import json
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_bot.conversation.common import ConversationTurn, Framing, InlineImage, PromptPayload  # noqa: E402
from persona_bot.memory.models import Memory, MemoryKind, Persona  # noqa: E402
from persona_bot.services.gemini_client import GeminiClient, GeminiError, InlinePart, is_quota_error  # noqa: E402
from persona_bot.services.persona_backend import GeminiPersonaBackend, parse_reply  # noqa: E402


PERSONA = Persona(id="p1", guild_id="g1", name="Nova", persona_prompt="A curious archivist who loves old maps.")


def _client() -> GeminiClient:
    return GeminiClient(
        api_key="test-key",
        model="gemini-a",
        timeout_seconds=30,
        temperature=0.8,
        max_output_tokens=0,
    )


def _text_response(text: str) -> dict[str, object]:
    return {"candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": "STOP"}]}


def _payload(*, image: InlineImage | None = None) -> PromptPayload:
    turn = ConversationTurn(speaker_label="Alice", text="Do you like maps?", speaker_id="u1")
    return PromptPayload(
        persona=PERSONA,
        framing=Framing.DEDICATED_CHANNEL,
        history=(ConversationTurn(speaker_label="Bob", text="Morning all", speaker_id="u2"), turn),
        current_turn=turn,
        memories=[Memory(persona_id="p1", kind=MemoryKind.FACT, content="Alice collects atlases.", salience=8)],
        image=image,
        guild_name="Cartographers",
    )


@pytest.mark.parametrize(
    "status,detail,expected",
    [
        (429, "Too many requests", True),
        (400, "RESOURCE_EXHAUSTED: Quota exceeded for metric", True),
        (403, "rate_limit reached", True),
        (400, "INVALID_ARGUMENT: bad schema", False),
        (500, "INTERNAL", False),
    ],
)
def test_quota_errors_are_detected(status: int, detail: str, expected: bool) -> None:
    assert is_quota_error(status, detail) is expected


def test_map_messages_builds_system_instruction_and_attaches_images_to_last_user_turn() -> None:
    payload = GeminiClient._map_messages(
        [
            {"role": "system", "content": "Be Nova."},
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "second"},
            {"role": "system", "content": "Answer in JSON."},
        ],
        [InlinePart(mime_type="image/png", data=b"png-bytes")],
    )

    assert payload["systemInstruction"] == {"parts": [{"text": "Be Nova.\n\nAnswer in JSON."}]}
    assert [item["role"] for item in payload["contents"]] == ["user", "model", "user"]
    last_parts = payload["contents"][-1]["parts"]
    assert last_parts[0] == {"text": "second"}
    assert last_parts[1]["inlineData"]["mimeType"] == "image/png"
    assert base64.b64decode(last_parts[1]["inlineData"]["data"]) == b"png-bytes"
    assert len(payload["contents"][0]["parts"]) == 1


def test_chat_sends_model_specific_request_and_extracts_text() -> None:
    client = _client()
    captured: dict[str, object] = {}

    async def fake_request(payload, model=None, retries=3):  # type: ignore[no-untyped-def]
        captured["payload"] = payload
        captured["model"] = model
        return _text_response("  hello there  ")

    client._request = fake_request  # type: ignore[method-assign]

    text = asyncio.run(client.chat([{"role": "user", "content": "hi"}], temperature=0.3, model="gemini-b"))

    assert text == "hello there"
    assert captured["model"] == "gemini-b"
    payload = captured["payload"]
    assert isinstance(payload, dict)
    assert payload["generationConfig"] == {"temperature": 0.3}


def test_blocked_response_raises() -> None:
    with pytest.raises(GeminiError, match="blocked"):
        GeminiClient._extract_text({"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}})


def test_error_detail_reads_google_error_envelope() -> None:
    body = json.dumps({"error": {"code": 429, "status": "RESOURCE_EXHAUSTED", "message": "Quota exceeded"}})
    assert GeminiClient._error_detail(body) == "RESOURCE_EXHAUSTED: Quota exceeded"
    assert GeminiClient._error_detail("upstream exploded") == "upstream exploded"


def test_extract_image_returns_bytes_and_mime_type() -> None:
    data = {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "Here you go"},
                        {"inlineData": {"mimeType": "image/jpeg", "data": base64.b64encode(b"jpeg").decode()}},
                    ]
                }
            }
        ]
    }
    assert GeminiClient._extract_image(data) == (b"jpeg", "image/jpeg")

    with pytest.raises(GeminiError):
        GeminiClient._extract_image(_text_response("no picture"))


@pytest.mark.parametrize(
    "raw,text,directive",
    [
        ('{"response": "Hi!", "image_prompt": null}', "Hi!", None),
        ('```json\n{"response": "Look", "image_prompt": "an old map"}\n```', "Look", "an old map"),
        ('{"response": "", "image_prompt": ""}', None, None),
        ("Sure, here is a plain answer.", "Sure, here is a plain answer.", None),
        ('Nova says: {"response": "wrapped"}', "wrapped", None),
    ],
)
def test_parse_reply(raw: str, text: str | None, directive: str | None) -> None:
    reply = parse_reply(raw)
    assert reply.text == text
    assert reply.image_directive == directive


def test_backend_invoke_builds_persona_prompt_and_forwards_image() -> None:
    client = _client()
    captured: dict[str, object] = {}

    async def fake_chat(messages, temperature=None, max_output_tokens=None, *, model=None, inline_parts=()):  # type: ignore[no-untyped-def]
        captured["messages"] = messages
        captured["model"] = model
        captured["inline_parts"] = list(inline_parts)
        return '{"response": "Maps are my life.", "image_prompt": "a sepia world map"}'

    client.chat = fake_chat  # type: ignore[method-assign]
    backend = GeminiPersonaBackend(client, memory_model="gemini-small", image_model="gemini-image")

    image = InlineImage(mime_type="image/png", data=b"png")
    reply = asyncio.run(backend.invoke("gemini-a", _payload(image=image)))

    assert reply.text == "Maps are my life."
    assert reply.image_directive == "a sepia world map"
    assert captured["model"] == "gemini-a"
    assert captured["inline_parts"] == [InlinePart(mime_type="image/png", data=b"png")]

    messages = captured["messages"]
    assert isinstance(messages, list)
    system_text = messages[0]["content"]
    assert "A curious archivist who loves old maps." in system_text
    assert "Alice collects atlases." in system_text
    assert "Cartographers" in system_text
    assert "Bob: Morning all" in system_text
    assert "Alice: Do you like maps?" not in system_text
    assert "Alice: Do you like maps?" in messages[1]["content"]


def test_backend_drops_image_directive_when_images_disabled() -> None:
    client = _client()

    async def fake_chat(messages, temperature=None, max_output_tokens=None, *, model=None, inline_parts=()):  # type: ignore[no-untyped-def]
        return '{"response": "ok", "image_prompt": "a cat"}'

    client.chat = fake_chat  # type: ignore[method-assign]
    backend = GeminiPersonaBackend(client, memory_model="m", image_model="i", image_enabled=False)

    reply = asyncio.run(backend.invoke("gemini-a", _payload()))

    assert reply.text == "ok"
    assert reply.image_directive is None


def test_backend_summarize_uses_memory_model_and_filters_candidates() -> None:
    client = _client()
    captured: dict[str, object] = {}

    async def fake_json_chat(messages, schema_hint, temperature=0.1, max_output_tokens=900, *, model=None, inline_parts=()):  # type: ignore[no-untyped-def]
        captured["model"] = model
        captured["messages"] = messages
        return {"memories": [{"user_id": "u1", "memory_type": "fact", "content": "x", "salience_score": 4}, "junk"]}

    client.json_chat = fake_json_chat  # type: ignore[method-assign]
    backend = GeminiPersonaBackend(client, memory_model="gemini-small", image_model="gemini-image")

    candidates = asyncio.run(backend.summarize("Nova", ["Alice: I collect atlases"], {"Alice": "u1"}))

    assert captured["model"] == "gemini-small"
    assert candidates == [{"user_id": "u1", "memory_type": "fact", "content": "x", "salience_score": 4}]
    transcript_text = "\n".join(message["content"] for message in captured["messages"])  # type: ignore[union-attr]
    assert "Alice: I collect atlases" in transcript_text


def test_backend_generate_image_names_attachment_by_mime_type() -> None:
    client = _client()

    async def fake_generate_image(prompt, *, model):  # type: ignore[no-untyped-def]
        assert model == "gemini-image"
        return b"webp", "image/webp"

    client.generate_image = fake_generate_image  # type: ignore[method-assign]
    backend = GeminiPersonaBackend(client, memory_model="m", image_model="gemini-image")

    image = asyncio.run(backend.generate_image("a lighthouse"))

    assert image == InlineImage(mime_type="image/webp", data=b"webp", filename="persona_image.webp")
