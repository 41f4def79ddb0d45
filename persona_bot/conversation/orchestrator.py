from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Protocol, Sequence

from ..memory.models import GuildPersonaConfig, Memory, Persona
from .cascade import CascadeAttempt, CascadeError, ModelCascade
from .common import (
    Activation,
    ConversationTurn,
    Destination,
    Framing,
    InboundMessage,
    InlineImage,
    ModelReply,
    PendingConsolidation,
    PromptPayload,
    truncate,
)
from .consolidation import ConsolidationPipeline
from .history import ChannelHistory
from .renderer import RenderOutcome, ResponseRenderer, SendSurface
from .trigger import TriggerResolver, strip_mentions

logger = logging.getLogger("persona_bot")

STATUS_IGNORED = "ignored"
STATUS_NOT_CONFIGURED = "not_configured"
STATUS_NO_ACTIVATION = "no_activation"
STATUS_REPLIED = "replied"
STATUS_SILENT = "silent"
STATUS_CASCADE_FAILED = "cascade_failed"
STATUS_DELIVERY_FAILED = "delivery_failed"
STATUS_ERROR = "error"

DEFAULT_APOLOGY = "Sorry, I can't answer right now. Please try again in a moment."


class ConversationStore(Protocol):
    async def get_guild_config(self, guild_id: str) -> GuildPersonaConfig | None: ...

    async def get_personas_for_guild(self, guild_id: str) -> list[Persona]: ...

    async def get_direct_persona(self, user_id: str) -> Persona | None: ...

    async def link_direct_persona(self, user_id: str, persona_id: str) -> None: ...

    async def retrieve_memories(
        self,
        persona_id: str,
        participant_ids: Iterable[str],
        limit: int | None = None,
    ) -> list[Memory]: ...


@dataclass(slots=True)
class TurnOutcome:
    status: str
    persona_id: str | None = None
    framing: Framing | None = None
    model: str | None = None
    attempts: list[CascadeAttempt] = field(default_factory=list)
    render: RenderOutcome | None = None
    error: str = ""

    @property
    def replied(self) -> bool:
        return self.status == STATUS_REPLIED


def history_text_for(reply: ModelReply, outcome: RenderOutcome) -> str:
    if outcome.text:
        return outcome.text
    directive = (reply.image_directive or "").strip()
    return f"[image: {directive}]" if directive else "[image]"


def user_turn_text(message: InboundMessage) -> str:
    text = strip_mentions(message.text)
    if message.has_image_attachment:
        return f"{text} [image]".strip()
    return text


def participants_of(turns: Sequence[ConversationTurn]) -> dict[str, str]:
    roster: dict[str, str] = {}
    for turn in turns:
        if turn.speaker_id:
            roster[turn.speaker_label] = turn.speaker_id
    return roster


class ConversationOrchestrator:
    """Runs one persona conversation turn per inbound message.

    Never raises except on cancellation; every failure class ends in a ``TurnOutcome``.
    """

    def __init__(
        self,
        *,
        store: ConversationStore,
        history: ChannelHistory,
        trigger: TriggerResolver,
        cascade: ModelCascade[ModelReply],
        renderer: ResponseRenderer,
        surface: SendSurface,
        consolidation: ConsolidationPipeline | None = None,
        operator_user_ids: Iterable[str] = (),
        apology_text: str = DEFAULT_APOLOGY,
        memory_top_k: int | None = 8,
    ) -> None:
        self.store = store
        self.history = history
        self.trigger = trigger
        self.cascade = cascade
        self.renderer = renderer
        self.surface = surface
        self.consolidation = consolidation
        self.operator_user_ids = tuple(sorted({str(item) for item in operator_user_ids if str(item).strip()}))
        self.apology_text = apology_text or DEFAULT_APOLOGY
        self.memory_top_k = memory_top_k if memory_top_k and memory_top_k > 0 else None

    async def _guild_active(self, guild_id: str) -> bool:
        config = await self.store.get_guild_config(guild_id)
        return config is not None and config.active

    async def _candidate_personas(self, message: InboundMessage) -> list[Persona]:
        if message.is_direct:
            persona = await self.store.get_direct_persona(message.author_id)
            if persona is None or not await self._guild_active(persona.guild_id):
                return []
            return [persona]

        assert message.guild_id is not None
        if not await self._guild_active(message.guild_id):
            return []
        return await self.store.get_personas_for_guild(message.guild_id)

    async def handle_inbound(self, message: InboundMessage) -> TurnOutcome:
        if message.author_is_automated or self.trigger.is_command(message.text):
            return TurnOutcome(status=STATUS_IGNORED)

        try:
            personas = await self._candidate_personas(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "[persona.turn] persona lookup failed guild=%s channel=%s: %s",
                message.guild_id,
                message.channel_id,
                exc,
            )
            return TurnOutcome(status=STATUS_NOT_CONFIGURED, error=str(exc))

        if not personas:
            return TurnOutcome(status=STATUS_NOT_CONFIGURED)

        activation = self.trigger.resolve(message, personas)
        if activation is None:
            return TurnOutcome(status=STATUS_NO_ACTIVATION)

        channel_key = message.channel_key
        try:
            async with self.history.turn(channel_key):
                return await self._run_turn(message, activation, channel_key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "Persona turn failed for persona=%s channel=%s message=%s",
                activation.persona.id,
                message.channel_id,
                message.message_id,
            )
            return TurnOutcome(
                status=STATUS_ERROR,
                persona_id=activation.persona.id,
                framing=activation.framing,
                error=str(exc),
            )

    async def _retrieve(self, persona: Persona, participant_ids: set[str]) -> list[Memory]:
        try:
            return await self.store.retrieve_memories(persona.id, participant_ids, limit=self.memory_top_k)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[persona.turn] memory retrieval failed persona=%s: %s", persona.id, exc)
            return []

    async def _attached_image(self, message: InboundMessage) -> InlineImage | None:
        if message.image is not None or message.image_loader is None:
            return message.image
        try:
            message.image = await message.image_loader()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[persona.turn] attachment unavailable message=%s: %s", message.message_id, exc)
            return None
        return message.image

    async def _run_turn(self, message: InboundMessage, activation: Activation, channel_key: str) -> TurnOutcome:
        persona = activation.persona
        framing = activation.framing
        user_turn = ConversationTurn(
            speaker_label=message.author_label,
            text=user_turn_text(message),
            speaker_id=message.author_id,
        )

        self.history.append(channel_key, user_turn)
        snapshot = self.history.snapshot(channel_key)

        participant_ids = {turn.speaker_id for turn in snapshot if turn.speaker_id}
        participant_ids.update(message.mentioned_user_ids)
        memories = await self._retrieve(persona, participant_ids)
        image = await self._attached_image(message)

        payload = PromptPayload(
            persona=persona,
            framing=framing,
            history=snapshot,
            current_turn=user_turn,
            memories=memories,
            image=image,
            guild_name=message.guild_name,
        )
        destination = Destination(
            channel_id=message.channel_id,
            guild_id=message.guild_id,
            user_id=message.author_id,
            reply_to_message_id=message.message_id,
        )

        logger.info(
            "[persona.turn] persona=%s framing=%s channel=%s history=%s memories=%s",
            persona.name,
            framing.value,
            channel_key,
            len(snapshot),
            len(memories),
        )

        try:
            result = await self.cascade.run(payload)
        except CascadeError as exc:
            await self._report_failure(message, destination, persona, exc)
            return TurnOutcome(
                status=STATUS_CASCADE_FAILED,
                persona_id=persona.id,
                framing=framing,
                attempts=exc.attempts,
                error=str(exc.last_error),
            )

        reply = result.value
        rendered = await self.renderer.render(reply, persona, framing, destination)
        outcome = TurnOutcome(
            status=STATUS_REPLIED,
            persona_id=persona.id,
            framing=framing,
            model=result.model,
            attempts=result.attempts,
            render=rendered,
        )
        if not rendered.sent:
            outcome.status = STATUS_DELIVERY_FAILED if rendered.error else STATUS_SILENT
            outcome.error = rendered.error
            return outcome
        if rendered.partial:
            outcome.error = rendered.error

        self.history.append(
            channel_key,
            ConversationTurn(speaker_label=persona.name, text=history_text_for(reply, rendered)),
        )
        if framing is not Framing.DIRECT_MESSAGE:
            await self._link_direct_persona(message.author_id, persona)
        self._enqueue_consolidation(persona, channel_key)
        return outcome

    async def _link_direct_persona(self, user_id: str, persona: Persona) -> None:
        try:
            await self.store.link_direct_persona(user_id, persona.id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[persona.turn] failed to record DM link user=%s persona=%s: %s", user_id, persona.id, exc)

    def _enqueue_consolidation(self, persona: Persona, channel_key: str) -> None:
        if self.consolidation is None:
            return
        transcript = self.history.snapshot(channel_key)
        job = PendingConsolidation(
            persona=persona,
            channel_key=channel_key,
            transcript_lines=[turn.as_line() for turn in transcript],
            participants=participants_of(transcript),
        )
        self.consolidation.submit(job)

    async def _report_failure(
        self,
        message: InboundMessage,
        destination: Destination,
        persona: Persona,
        exc: CascadeError,
    ) -> None:
        logger.error(
            "[persona.turn] all models failed persona=%s channel=%s: %s",
            persona.name,
            message.channel_id,
            exc.last_error,
        )
        try:
            await self.surface.send_channel(destination, self.apology_text)
        except asyncio.CancelledError:
            raise
        except Exception as send_exc:
            logger.warning("[persona.turn] failed to send apology channel=%s: %s", message.channel_id, send_exc)

        tried = ", ".join(f"{attempt.model} ({attempt.outcome})" for attempt in exc.attempts) or "none"
        where = f"guild {message.guild_id} channel {message.channel_id}" if message.guild_id else "direct messages"
        notice = truncate(
            f"Persona {persona.name} could not answer in {where}.\n"
            f"Models tried: {tried}\n"
            f"Last error: {exc.last_error}",
            1900,
        )
        for operator_id in self.operator_user_ids:
            try:
                await self.surface.send_direct(operator_id, notice)
            except asyncio.CancelledError:
                raise
            except Exception as send_exc:
                logger.warning("[persona.turn] failed to notify operator=%s: %s", operator_id, send_exc)
