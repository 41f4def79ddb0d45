from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path

from .config import Settings
from .discord.client import PersonaDiscordBot
from .memory.factory import build_memory_store
from .services.gemini_client import GeminiClient
from .services.persona_backend import GeminiPersonaBackend

logger = logging.getLogger("persona_bot")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("discord.http").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    # Signal 0 means CTRL_C_EVENT on Windows; stale locks are simply replaced there.
    if os.name == "nt":
        return False

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _acquire_instance_lock(lock_path: Path) -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    if lock_path.exists():
        stale_pid = 0
        with contextlib.suppress(ValueError, OSError):
            stale_pid = int(lock_path.read_text(encoding="utf-8").strip() or "0")
        if stale_pid > 0 and stale_pid != os.getpid() and _is_process_alive(stale_pid):
            raise RuntimeError(f"Persona bot is already running (pid={stale_pid}). Stop it before starting a new one.")
        with contextlib.suppress(OSError):
            lock_path.unlink()

    lock_path.write_text(str(os.getpid()), encoding="utf-8")


def _release_instance_lock(lock_path: Path) -> None:
    with contextlib.suppress(OSError):
        if lock_path.exists():
            lock_path.unlink()


def build_backend(settings: Settings) -> GeminiPersonaBackend:
    llm = GeminiClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model_cascade[0],
        timeout_seconds=settings.gemini_timeout_seconds,
        temperature=settings.gemini_temperature,
        max_output_tokens=settings.gemini_max_output_tokens,
        base_url=settings.gemini_base_url,
    )
    return GeminiPersonaBackend(
        llm,
        memory_model=settings.gemini_memory_model,
        image_model=settings.gemini_image_model,
        image_enabled=settings.image_generation_enabled,
        max_response_chars=settings.max_response_chars,
    )


def build_bot(settings: Settings) -> PersonaDiscordBot:
    memory = build_memory_store(settings.memory_backend, settings.sqlite_path, settings.memory_postgres_dsn)
    return PersonaDiscordBot(
        settings=settings,
        memory=memory,
        backend=build_backend(settings),
    )


async def _run_bot(settings: Settings) -> None:
    bot = build_bot(settings)
    try:
        async with bot:
            await bot.start(settings.discord_token)
    finally:
        if not bot.is_closed():
            with contextlib.suppress(Exception):
                await asyncio.wait_for(bot.close(), timeout=10.0)


def main() -> None:
    configure_logging()
    settings = Settings.from_env()
    settings.validate()
    lock_path = settings.sqlite_path.parent / "persona_bot.pid"
    _acquire_instance_lock(lock_path)
    try:
        asyncio.run(_run_bot(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    finally:
        _release_instance_lock(lock_path)


if __name__ == "__main__":
    main()
