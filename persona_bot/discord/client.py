from __future__ import annotations

import asyncio
import logging

import discord

from ..config import Settings
from ..conversation.cascade import ModelCascade
from ..conversation.common import ImageLoader, InboundMessage, InlineImage
from ..conversation.consolidation import ConsolidationPipeline
from ..conversation.history import ChannelHistory
from ..conversation.orchestrator import (
    STATUS_IGNORED,
    STATUS_NO_ACTIVATION,
    STATUS_NOT_CONFIGURED,
    ConversationOrchestrator,
)
from ..conversation.registry import PersonaRegistry
from ..conversation.renderer import ResponseRenderer
from ..conversation.trigger import TriggerResolver
from ..memory.store import MemoryStore
from ..services.persona_backend import GeminiPersonaBackend
from .surface import DiscordSendSurface

logger = logging.getLogger("persona_bot")

MAX_INLINE_IMAGE_BYTES = 8 * 1024 * 1024


def first_image_attachment(message: discord.Message) -> discord.Attachment | None:
    for attachment in message.attachments:
        content_type = (attachment.content_type or "").lower()
        if content_type.startswith("image/") and attachment.size <= MAX_INLINE_IMAGE_BYTES:
            return attachment
    return None


def attachment_loader(message_id: int, attachment: discord.Attachment) -> ImageLoader:
    async def load() -> InlineImage | None:
        try:
            data = await attachment.read()
        except discord.HTTPException as exc:
            logger.warning("[discord.inbound] failed to read attachment message=%s: %s", message_id, exc)
            return None
        return InlineImage(
            mime_type=(attachment.content_type or "image/png").split(";")[0],
            data=data,
            filename=attachment.filename,
        )

    return load


def inbound_from_message(message: discord.Message) -> InboundMessage:
    """Builds the inbound view of a message without downloading its attachment."""
    attachment = first_image_attachment(message)
    author = message.author
    return InboundMessage(
        message_id=str(message.id),
        author_id=str(author.id),
        author_label=getattr(author, "display_name", None) or author.name,
        author_is_automated=bool(author.bot or message.webhook_id is not None),
        guild_id=str(message.guild.id) if message.guild else None,
        channel_id=str(message.channel.id),
        text=message.content or "",
        mentioned_user_ids=frozenset(str(user.id) for user in message.mentions),
        mentioned_role_ids=frozenset(str(role_id) for role_id in message.raw_role_mentions),
        guild_name=message.guild.name if message.guild else "",
        image_attached=attachment is not None,
        image_loader=attachment_loader(message.id, attachment) if attachment is not None else None,
    )


class PersonaDiscordBot(discord.Client):
    def __init__(
        self,
        settings: Settings,
        memory: MemoryStore,
        backend: GeminiPersonaBackend,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = settings.discord_message_content_intent
        intents.members = settings.discord_members_intent

        super().__init__(intents=intents)

        self.settings = settings
        self.memory = memory
        self.backend = backend

        self.surface = DiscordSendSurface(self, settings.webhook_name)
        self.history = ChannelHistory(settings.history_limit, settings.history_max_channels)
        self.consolidation = ConsolidationPipeline(
            memory,
            backend,
            queue_size=settings.memory_queue_size,
            workers=settings.memory_workers,
            enabled=settings.memory_enabled,
        )
        self.renderer = ResponseRenderer(
            self.surface,
            backend,
            image_enabled=settings.image_generation_enabled,
            max_impersonation_handles=settings.history_max_channels,
        )
        self.orchestrator = ConversationOrchestrator(
            store=memory,
            history=self.history,
            trigger=TriggerResolver(settings.command_prefix_pattern),
            cascade=ModelCascade(settings.gemini_model_cascade, backend.invoke, label="reply"),
            renderer=self.renderer,
            surface=self.surface,
            consolidation=self.consolidation,
            operator_user_ids=settings.operator_user_ids,
            apology_text=settings.apology_text,
            memory_top_k=settings.memory_top_k,
        )
        self.registry = PersonaRegistry(
            memory,
            ModelCascade(settings.gemini_model_cascade, backend.write_persona, label="persona"),
        )

    async def setup_hook(self) -> None:
        await self.memory.init()
        await self.backend.start()
        self.consolidation.start()

    async def close(self) -> None:
        await self._run_shutdown_step("consolidation.close", self.consolidation.close(), timeout=6.0)
        await self._run_shutdown_step("backend.close", self.backend.close(), timeout=6.0)
        await self._run_shutdown_step("memory.close", self.memory.close(), timeout=6.0)
        await self._run_shutdown_step("discord.Client.close", super().close(), timeout=6.0)

    async def _run_shutdown_step(self, label: str, coro: object, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: %s", label)
        except Exception as exc:
            logger.warning("Shutdown step failed: %s (%s)", label, exc)

    async def on_ready(self) -> None:
        if self.user:
            logger.info("Connected as %s (%s)", self.user, self.user.id)
        logger.info(
            "Persona engine ready: models=%s memory=%s history=%s",
            ",".join(self.settings.gemini_model_cascade),
            getattr(self.memory, "backend_name", "sqlite"),
            self.settings.history_limit,
        )

    async def on_message(self, message: discord.Message) -> None:
        if self.user is not None and message.author.id == self.user.id:
            return
        if message.author.bot or message.webhook_id is not None:
            return

        inbound = inbound_from_message(message)
        outcome = await self.orchestrator.handle_inbound(inbound)
        if outcome.status not in {STATUS_IGNORED, STATUS_NOT_CONFIGURED, STATUS_NO_ACTIVATION}:
            logger.debug(
                "[persona.turn] message=%s status=%s model=%s",
                message.id,
                outcome.status,
                outcome.model,
            )
