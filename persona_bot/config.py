from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Set, TypeVar

from dotenv import load_dotenv


load_dotenv()

T = TypeVar("T")

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    """First value set among ``name`` and its legacy ``aliases``; keys saved with a UTF-8 BOM also match."""
    for key in (name, *aliases):
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_parsed(name: str, default: T, parse: Callable[[str], T], aliases: tuple[str, ...] = ()) -> T:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return parse(raw.strip())
    except ValueError:
        return default


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    return _env_parsed(name, default, lambda raw: raw.lower() in _TRUE_VALUES, aliases)


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    return _env_parsed(name, default, int, aliases)


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    return _env_parsed(name, default, float, aliases)


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    return _env_parsed(name, default, lambda raw: raw or default, aliases)


def _split_csv(raw: str | None) -> list[str]:
    return [chunk.strip() for chunk in (raw or "").split(",") if chunk.strip()]


def _env_id_set(name: str, aliases: tuple[str, ...] = ()) -> Set[int]:
    return {int(chunk) for chunk in _split_csv(_env_lookup(name, aliases)) if chunk.isdigit()}


def _env_list(name: str, default: tuple[str, ...], aliases: tuple[str, ...] = ()) -> tuple[str, ...]:
    return tuple(_split_csv(_env_lookup(name, aliases))) or default


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned[:1] in {'"', "'"} and cleaned[-1:] == cleaned[:1] and len(cleaned) > 1:
        cleaned = cleaned[1:-1].strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    return cleaned


DEFAULT_MODEL_CASCADE = ("gemini-2.5-flash", "gemini-2.0-flash")


@dataclass(slots=True)
class Settings:
    discord_token: str
    discord_message_content_intent: bool
    discord_members_intent: bool
    command_prefix_pattern: str
    webhook_name: str
    apology_text: str
    operator_user_ids: Set[int]

    gemini_api_key: str
    gemini_base_url: str
    gemini_model_cascade: tuple[str, ...]
    gemini_memory_model: str
    gemini_image_model: str
    gemini_timeout_seconds: int
    gemini_temperature: float
    gemini_max_output_tokens: int
    image_generation_enabled: bool

    sqlite_path: Path
    memory_backend: str
    memory_postgres_dsn: str
    history_limit: int
    history_max_channels: int
    max_response_chars: int

    memory_enabled: bool
    memory_top_k: int
    memory_queue_size: int
    memory_workers: int

    @classmethod
    def from_env(cls) -> "Settings":
        cascade = _env_list("GEMINI_MODEL_CASCADE", DEFAULT_MODEL_CASCADE, aliases=("GEMINI_MODEL",))
        return cls(
            discord_token=_clean_token(_env_lookup("DISCORD_TOKEN") or ""),
            discord_message_content_intent=_env_bool("DISCORD_MESSAGE_CONTENT_INTENT", True),
            discord_members_intent=_env_bool("DISCORD_MEMBERS_INTENT", True),
            command_prefix_pattern=_env_str("PERSONA_COMMAND_PREFIX_PATTERN", r"^\s*[!/$%&+=.-]\w"),
            webhook_name=_env_str("PERSONA_WEBHOOK_NAME", "Persona Relay"),
            apology_text=_env_str(
                "PERSONA_APOLOGY_TEXT",
                "Sorry, something went wrong while I was thinking. Please try again later.",
            ),
            operator_user_ids=_env_id_set("OPERATOR_USER_IDS", aliases=("OWNER_IDS",)),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_model_cascade=cascade,
            gemini_memory_model=_env_str("GEMINI_MEMORY_MODEL", cascade[-1]),
            gemini_image_model=_env_str("GEMINI_IMAGE_MODEL", "gemini-2.0-flash-preview-image-generation"),
            gemini_timeout_seconds=_env_int("GEMINI_TIMEOUT_SECONDS", 90),
            gemini_temperature=_env_float("GEMINI_TEMPERATURE", 0.8),
            gemini_max_output_tokens=_env_int("GEMINI_MAX_OUTPUT_TOKENS", 0),
            image_generation_enabled=_env_bool("IMAGE_GENERATION_ENABLED", True),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/personas.db")).expanduser(),
            memory_backend=_env_str("MEMORY_BACKEND", "sqlite").lower(),
            memory_postgres_dsn=_env_str("MEMORY_POSTGRES_DSN", ""),
            history_limit=_env_int("PERSONA_HISTORY_LIMIT", 15, aliases=("MAX_HISTORY_MESSAGES",)),
            history_max_channels=_env_int("PERSONA_HISTORY_MAX_CHANNELS", 500),
            max_response_chars=_env_int("MAX_RESPONSE_CHARS", 0),
            memory_enabled=_env_bool("MEMORY_ENABLED", True, aliases=("LONG_MEMORY_ENABLED",)),
            memory_top_k=_env_int("MEMORY_TOP_K", 8, aliases=("MEMORY_FACT_TOP_K",)),
            memory_queue_size=_env_int("MEMORY_QUEUE_SIZE", 200),
            memory_workers=_env_int("MEMORY_WORKERS", 1),
        )

    def validate(self) -> None:
        if not self.discord_token:
            raise ValueError("DISCORD_TOKEN is required")
        if self.discord_token == "put_your_discord_bot_token_here":
            raise ValueError("DISCORD_TOKEN is still placeholder")

        if not self.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        if self.gemini_api_key == "put_your_gemini_api_key_here":
            raise ValueError("GEMINI_API_KEY is still placeholder")
        if not self.gemini_model_cascade:
            raise ValueError("GEMINI_MODEL_CASCADE must list at least one model")
        if len(set(self.gemini_model_cascade)) != len(self.gemini_model_cascade):
            raise ValueError("GEMINI_MODEL_CASCADE contains duplicate models")
        if self.gemini_timeout_seconds < 20:
            raise ValueError("GEMINI_TIMEOUT_SECONDS must be >= 20")
        if self.gemini_max_output_tokens < 0:
            raise ValueError("GEMINI_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")
        if self.gemini_max_output_tokens and self.gemini_max_output_tokens < 128:
            raise ValueError("GEMINI_MAX_OUTPUT_TOKENS must be 0 or >= 128")

        try:
            re.compile(self.command_prefix_pattern)
        except re.error as exc:
            raise ValueError(f"PERSONA_COMMAND_PREFIX_PATTERN is not a valid regex: {exc}") from exc

        if self.memory_backend not in {"sqlite", "postgres"}:
            raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")
        if self.memory_backend == "postgres" and not self.memory_postgres_dsn:
            raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")

        if self.history_limit < 2:
            raise ValueError("PERSONA_HISTORY_LIMIT must be >= 2")
        if self.history_max_channels < 1:
            raise ValueError("PERSONA_HISTORY_MAX_CHANNELS must be >= 1")
        if self.max_response_chars < 0:
            raise ValueError("MAX_RESPONSE_CHARS must be >= 0 (0 disables explicit cap)")
        if self.max_response_chars and self.max_response_chars < 300:
            raise ValueError("MAX_RESPONSE_CHARS must be 0 or >= 300")

        if self.memory_top_k < 1:
            raise ValueError("MEMORY_TOP_K must be >= 1")
        if self.memory_queue_size < 1:
            raise ValueError("MEMORY_QUEUE_SIZE must be >= 1")
        if self.memory_workers < 1:
            raise ValueError("MEMORY_WORKERS must be >= 1")
