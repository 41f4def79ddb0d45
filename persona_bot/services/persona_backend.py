from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Sequence

from ..conversation.common import InlineImage, ModelReply, PromptPayload, truncate
from ..prompts.memory import build_consolidation_messages, consolidation_schema_hint
from ..prompts.persona import build_persona_generation_messages, build_reply_messages, reply_schema_hint
from .gemini_client import GeminiClient, GeminiError, InlinePart, strip_json_fences

logger = logging.getLogger("persona_bot")

_IMAGE_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/gif": "gif"}


def parse_reply(raw: str) -> ModelReply:
    """Turns raw model output into a ``ModelReply``.

    Structured output is preferred; a model that ignores the JSON contract still gets its
    plain text delivered.
    """
    cleaned = strip_json_fences(raw)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        parsed = None

    if not isinstance(parsed, dict):
        text = (raw or "").strip()
        return ModelReply(text=text or None)

    text = parsed.get("response")
    directive = parsed.get("image_prompt")
    return ModelReply(
        text=text.strip() if isinstance(text, str) and text.strip() else None,
        image_directive=directive.strip() if isinstance(directive, str) and directive.strip() else None,
    )


class GeminiPersonaBackend:
    """Gemini-backed reply, summarization, image and persona-writing calls used by the conversation core."""

    backend_name = "gemini"

    def __init__(
        self,
        client: GeminiClient,
        *,
        memory_model: str,
        image_model: str,
        image_enabled: bool = True,
        max_response_chars: int = 0,
    ) -> None:
        self.client = client
        self.memory_model = memory_model
        self.image_model = image_model
        self.image_enabled = image_enabled
        self.max_response_chars = max(0, int(max_response_chars))

    async def start(self) -> None:
        await self.client.start()

    async def close(self) -> None:
        await self.client.close()

    async def invoke(self, model: str, payload: PromptPayload) -> ModelReply:
        messages = build_reply_messages(payload, guild_name=payload.guild_name, allow_images=self.image_enabled)
        messages.append(
            {
                "role": "system",
                "content": (
                    "Return only valid JSON object with no markdown and no additional commentary. "
                    f"Schema hint: {reply_schema_hint()}"
                ),
            }
        )
        inline_parts: list[InlinePart] = []
        if payload.image is not None:
            inline_parts.append(InlinePart(mime_type=payload.image.mime_type, data=payload.image.data))

        raw = await self.client.chat(messages, model=model, inline_parts=inline_parts)
        reply = parse_reply(raw)
        if not self.image_enabled:
            reply.image_directive = None
        if reply.text and self.max_response_chars:
            reply.text = truncate(reply.text, self.max_response_chars)
        return reply

    async def summarize(
        self,
        persona_name: str,
        transcript_lines: Sequence[str],
        participants: Mapping[str, str],
    ) -> list[dict[str, Any]]:
        messages = build_consolidation_messages(persona_name, transcript_lines, participants)
        parsed = await self.client.json_chat(messages, consolidation_schema_hint(), model=self.memory_model)
        if parsed is None:
            return []
        candidates = parsed.get("memories")
        if not isinstance(candidates, list):
            return []
        return [item for item in candidates if isinstance(item, dict)]

    async def generate_image(self, directive: str) -> InlineImage:
        data, mime_type = await self.client.generate_image(directive, model=self.image_model)
        extension = _IMAGE_EXTENSIONS.get(mime_type.lower(), "png")
        return InlineImage(mime_type=mime_type, data=data, filename=f"persona_image.{extension}")

    async def write_persona(self, model: str, request: tuple[str, str]) -> str:
        name, instructions = request
        messages = build_persona_generation_messages(name, instructions)
        text = await self.client.chat(messages, temperature=0.9, model=model)
        if not text.strip():
            raise GeminiError(None, f"model {model} produced an empty persona description")
        return text.strip()
