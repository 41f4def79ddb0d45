from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("persona_bot.prompts")

PROMPTS_DIR_ENV = "PERSONA_PROMPTS_DIR"

_CACHE: dict[str, tuple[int | None, dict[str, Any]]] = {}


def prompts_dir() -> Path:
    override = os.getenv(PROMPTS_DIR_ENV, "").strip()
    if override:
        return Path(override)
    return Path(__file__).with_name("data")


def _deep_merge(base: Any, override: Any) -> Any:
    if isinstance(base, dict) and isinstance(override, dict):
        merged = {key: copy.deepcopy(value) for key, value in base.items()}
        for key, value in override.items():
            merged[key] = _deep_merge(merged[key], value) if key in merged else copy.deepcopy(value)
        return merged
    return copy.deepcopy(override)


def _remember(cache_key: str, mtime_ns: int | None, payload: dict[str, Any]) -> dict[str, Any]:
    _CACHE[cache_key] = (mtime_ns, copy.deepcopy(payload))
    return payload


def load_prompt_json(filename: str, defaults: dict[str, Any]) -> dict[str, Any]:
    """Returns ``defaults`` deep-merged with ``<prompts dir>/<filename>`` when that file exists.

    Results are cached per path and reloaded when the file's mtime changes, so prompt
    text can be tuned on a running bot. Unreadable or malformed files fall back to the
    defaults with a warning.
    """
    path = prompts_dir() / filename
    cache_key = str(path.resolve())

    try:
        mtime_ns: int | None = path.stat().st_mtime_ns
    except OSError:
        mtime_ns = None

    cached = _CACHE.get(cache_key)
    if cached is not None and cached[0] == mtime_ns:
        return copy.deepcopy(cached[1])

    base = copy.deepcopy(defaults)
    if mtime_ns is None:
        logger.debug("Prompt override not found: %s (using defaults)", path)
        return _remember(cache_key, None, base)

    try:
        payload = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        logger.warning("Failed to read prompt JSON %s (%s). Using defaults.", path, exc)
        return _remember(cache_key, mtime_ns, base)

    if not isinstance(payload, dict):
        logger.warning("Prompt JSON root must be an object: %s (using defaults)", path)
        return _remember(cache_key, mtime_ns, base)

    merged = _deep_merge(base, payload)
    return _remember(cache_key, mtime_ns, merged)


def prompt_text(config: dict[str, Any], key: str, defaults: dict[str, Any]) -> str:
    value = config.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return str(defaults[key])
