from __future__ import annotations

import asyncio
import base64
import json
import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

import aiohttp

logger = logging.getLogger("persona_bot")

_TRANSIENT_STATUSES = {408, 409, 500, 502, 503, 504}
_QUOTA_PATTERN = re.compile(r"quota|resource[_ ]exhausted|rate[_ ]limit", re.IGNORECASE)


class GeminiError(RuntimeError):
    """Gemini API failure. ``retryable`` marks quota / rate-limit errors that another model may absorb."""

    def __init__(self, status: int | None, detail: str, *, retryable: bool = False) -> None:
        self.status = status
        self.detail = detail
        self.retryable = retryable
        prefix = f"Gemini error {status}" if status is not None else "Gemini error"
        super().__init__(f"{prefix}: {detail}")


def is_quota_error(status: int | None, detail: str) -> bool:
    if status == 429:
        return True
    return bool(_QUOTA_PATTERN.search(detail or ""))


def strip_json_fences(text: str) -> str:
    """Removes markdown fences and any prose around the outermost JSON object."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
        cleaned = re.sub(r"```$", "", cleaned).strip()
    if not cleaned.startswith("{"):
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start >= 0 and end > start:
            cleaned = cleaned[start : end + 1].strip()
    return cleaned


@dataclass(frozen=True, slots=True)
class InlinePart:
    mime_type: str
    data: bytes

    def as_part(self) -> Dict[str, Any]:
        return {
            "inlineData": {
                "mimeType": self.mime_type,
                "data": base64.b64encode(self.data).decode("ascii"),
            }
        }


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        temperature: float,
        max_output_tokens: int,
        base_url: str = "https://generativelanguage.googleapis.com",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.temperature = temperature
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self, model: str | None = None) -> str:
        return f"{self.base_url}/v1beta/models/{model or self.model}:generateContent?key={self.api_key}"

    @staticmethod
    def _map_messages(
        messages: List[Dict[str, str]],
        inline_parts: Sequence[InlinePart] = (),
    ) -> Dict[str, Any]:
        system_lines: List[str] = []
        contents: List[Dict[str, Any]] = []

        for message in messages:
            role = str(message.get("role", "")).strip().lower()
            content = str(message.get("content", "")).strip()
            if not content:
                continue
            if role == "system":
                system_lines.append(content)
                continue
            mapped_role = "model" if role == "assistant" else "user"
            contents.append({"role": mapped_role, "parts": [{"text": content}]})

        # Attachments ride along with the newest user turn.
        if inline_parts:
            target = next((item for item in reversed(contents) if item["role"] == "user"), None)
            if target is None:
                target = {"role": "user", "parts": []}
                contents.append(target)
            target["parts"].extend(part.as_part() for part in inline_parts)

        payload: Dict[str, Any] = {"contents": contents}
        if system_lines:
            payload["systemInstruction"] = {
                "parts": [{"text": "\n\n".join(system_lines)}],
            }
        return payload

    @staticmethod
    def _error_detail(text: str) -> str:
        try:
            data = json.loads(text)
        except ValueError:
            return text.strip()[:500]
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            status = str(error.get("status") or "").strip()
            message = str(error.get("message") or "").strip()
            return f"{status}: {message}" if status else message
        return text.strip()[:500]

    async def _request(self, payload: Dict[str, Any], model: str | None = None, retries: int = 3) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = self._endpoint(model)
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)

                    detail = self._error_detail(text)
                    if is_quota_error(response.status, detail):
                        raise GeminiError(response.status, detail, retryable=True)
                    if response.status not in _TRANSIENT_STATUSES:
                        raise GeminiError(response.status, detail)
                    last_error = GeminiError(response.status, detail)
            except asyncio.CancelledError:
                raise
            except GeminiError as exc:
                if exc.retryable or exc.status not in _TRANSIENT_STATUSES:
                    raise
                last_error = exc
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                last_error = exc

            if attempt < retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if isinstance(last_error, GeminiError):
            raise last_error
        if last_error is not None:
            raise GeminiError(None, f"request failed after retries: {last_error}")
        raise GeminiError(None, "request failed without explicit error")

    @staticmethod
    def _first_candidate(data: Dict[str, Any]) -> Dict[str, Any]:
        candidates = data.get("candidates") or []
        if not candidates:
            prompt_feedback = data.get("promptFeedback") or {}
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                raise GeminiError(None, f"blocked response: {block_reason}")
            raise GeminiError(None, "no candidates returned")
        return candidates[0]

    @classmethod
    def _extract_text(cls, data: Dict[str, Any]) -> str:
        first = cls._first_candidate(data)
        parts = (first.get("content") or {}).get("parts") or []
        chunks: List[str] = []

        for part in parts:
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        joined = "\n".join(chunks).strip()
        if joined:
            return joined

        finish_reason = first.get("finishReason")
        if finish_reason:
            raise GeminiError(None, f"empty response (finishReason={finish_reason})")
        raise GeminiError(None, "empty response")

    @classmethod
    def _extract_image(cls, data: Dict[str, Any]) -> tuple[bytes, str]:
        first = cls._first_candidate(data)
        parts = (first.get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if not isinstance(inline, dict) or not inline.get("data"):
                continue
            mime_type = str(inline.get("mimeType") or inline.get("mime_type") or "image/png")
            return base64.b64decode(inline["data"]), mime_type
        raise GeminiError(None, "no image returned")

    def _generation_config(self, temperature: float | None, max_output_tokens: int | None) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {
            "temperature": self.temperature if temperature is None else temperature,
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if selected_tokens is not None and int(selected_tokens) > 0:
            generation_config["maxOutputTokens"] = int(selected_tokens)
        return generation_config

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        *,
        model: str | None = None,
        inline_parts: Sequence[InlinePart] = (),
    ) -> str:
        payload = self._map_messages(messages, inline_parts)
        payload["generationConfig"] = self._generation_config(temperature, max_output_tokens)
        data = await self._request(payload, model=model)
        return self._extract_text(data)

    async def json_chat(
        self,
        messages: List[Dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
        *,
        model: str | None = None,
        inline_parts: Sequence[InlinePart] = (),
    ) -> Dict[str, Any] | None:
        strict_messages = list(messages)
        strict_messages.append(
            {
                "role": "system",
                "content": (
                    "Return only valid JSON object with no markdown and no additional commentary. "
                    f"Schema hint: {schema_hint}"
                ),
            }
        )
        raw = await self.chat(
            strict_messages,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            model=model,
            inline_parts=inline_parts,
        )
        cleaned = strip_json_fences(raw)
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            logger.debug("[gemini.json] non-JSON reply (%s chars)", len(cleaned))
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed

    async def generate_image(self, prompt: str, *, model: str) -> tuple[bytes, str]:
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt.strip()}]}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        data = await self._request(payload, model=model)
        return self._extract_image(data)
