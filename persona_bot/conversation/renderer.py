from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from ..memory.models import Persona
from .common import Destination, Framing, InlineImage, ModelReply, chunk_text

logger = logging.getLogger("persona_bot")


class DeliveryError(RuntimeError):
    """Raised by a send surface when a message could not be delivered."""


class SendSurface(Protocol):
    async def send_channel(
        self,
        destination: Destination,
        text: str | None,
        image: InlineImage | None = None,
    ) -> None: ...

    async def send_direct(self, user_id: str, text: str) -> None: ...

    async def provision_impersonation(self, channel_id: str) -> Any: ...

    async def send_impersonated(
        self,
        handle: Any,
        *,
        username: str,
        avatar_url: str | None,
        text: str | None,
        image: InlineImage | None = None,
    ) -> None: ...


class ImageBackend(Protocol):
    async def generate_image(self, directive: str) -> InlineImage: ...


@dataclass(slots=True)
class RenderOutcome:
    sent: bool
    text: str | None = None
    image_attached: bool = False
    error: str = ""
    # Some chunks reached the channel before a later one failed; text holds what was delivered.
    partial: bool = False


class ImpersonationCache:
    """Per-channel impersonation handles, provisioned at most once per channel.

    Concurrent first use of a channel shares a single provisioning call. A failed
    provisioning is not cached, so the next turn tries again. At most ``max_handles``
    handles are kept; the least recently used one is dropped first.
    """

    def __init__(self, provision: Callable[[str], Awaitable[Any]], max_handles: int = 500) -> None:
        if max_handles < 1:
            raise ValueError("max_handles must be >= 1")
        self._provision = provision
        self.max_handles = max_handles
        self._handles: OrderedDict[str, Any] = OrderedDict()
        self._pending: dict[str, asyncio.Future[Any]] = {}

    async def _create(self, channel_id: str) -> Any:
        handle = await self._provision(channel_id)
        if handle is None:
            raise DeliveryError(f"impersonation unavailable in channel {channel_id}")
        self._handles[channel_id] = handle
        while len(self._handles) > self.max_handles:
            evicted, _ = self._handles.popitem(last=False)
            logger.debug("[persona.render] dropped impersonation handle channel=%s", evicted)
        return handle

    def _forget_pending(self, channel_id: str, future: asyncio.Future[Any]) -> None:
        if self._pending.get(channel_id) is future:
            del self._pending[channel_id]
        if not future.cancelled():
            # Mark the exception retrieved; awaiting callers still receive it.
            future.exception()

    async def get_or_create(self, channel_id: str) -> Any:
        handle = self._handles.get(channel_id)
        if handle is not None:
            self._handles.move_to_end(channel_id)
            return handle

        pending = self._pending.get(channel_id)
        if pending is None:
            pending = asyncio.ensure_future(self._create(channel_id))
            self._pending[channel_id] = pending
            pending.add_done_callback(lambda fut, key=channel_id: self._forget_pending(key, fut))
        return await asyncio.shield(pending)

    def invalidate(self, channel_id: str) -> None:
        self._handles.pop(channel_id, None)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)


class ResponseRenderer:
    def __init__(
        self,
        surface: SendSurface,
        image_backend: ImageBackend | None = None,
        *,
        image_enabled: bool = True,
        chunk_limit: int = 1900,
        max_impersonation_handles: int = 500,
    ) -> None:
        self.surface = surface
        self.image_backend = image_backend
        self.image_enabled = image_enabled and image_backend is not None
        self.chunk_limit = chunk_limit
        self.impersonation = ImpersonationCache(surface.provision_impersonation, max_impersonation_handles)

    async def _generate_image(self, directive: str, persona: Persona) -> InlineImage | None:
        if not self.image_enabled or self.image_backend is None:
            return None
        try:
            return await self.image_backend.generate_image(directive)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[persona.render] image generation failed persona=%s: %s", persona.name, exc)
            return None

    async def _send_chunks(
        self,
        chunks: list[str | None],
        image: InlineImage | None,
        send: Callable[[str | None, InlineImage | None], Awaitable[None]],
        delivered: list[str],
    ) -> None:
        last = len(chunks) - 1
        for index, chunk in enumerate(chunks):
            await send(chunk, image if index == last else None)
            if chunk:
                delivered.append(chunk)

    async def render(
        self,
        reply: ModelReply,
        persona: Persona,
        framing: Framing,
        destination: Destination,
    ) -> RenderOutcome:
        text = (reply.text or "").strip()
        directive = (reply.image_directive or "").strip()

        image: InlineImage | None = None
        if directive:
            image = await self._generate_image(directive, persona)

        if not text and image is None:
            logger.info("[persona.render] nothing to send persona=%s channel=%s", persona.name, destination.channel_id)
            return RenderOutcome(sent=False)

        chunks: list[str | None] = list(chunk_text(text, self.chunk_limit)) if text else [None]
        delivered: list[str] = []

        try:
            if framing is Framing.DIRECT_MESSAGE or destination.is_direct:

                async def send(chunk: str | None, attachment: InlineImage | None) -> None:
                    await self.surface.send_channel(destination, chunk, attachment)

            else:
                handle = await self.impersonation.get_or_create(destination.channel_id)

                async def send(chunk: str | None, attachment: InlineImage | None) -> None:
                    await self.surface.send_impersonated(
                        handle,
                        username=persona.name,
                        avatar_url=persona.avatar_url,
                        text=chunk,
                        image=attachment,
                    )

            await self._send_chunks(chunks, image, send, delivered)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not destination.is_direct:
                self.impersonation.invalidate(destination.channel_id)
            logger.error(
                "[persona.render] delivery failed persona=%s channel=%s after %s of %s chunks: %s",
                persona.name,
                destination.channel_id,
                len(delivered),
                len(chunks),
                exc,
            )
            if delivered:
                return RenderOutcome(sent=True, text="".join(delivered).strip(), error=str(exc), partial=True)
            return RenderOutcome(sent=False, text=text or None, image_attached=image is not None, error=str(exc))

        logger.info(
            "[persona.render] sent persona=%s channel=%s chunks=%s image=%s",
            persona.name,
            destination.channel_id,
            len(chunks),
            image is not None,
        )
        return RenderOutcome(sent=True, text=text or None, image_attached=image is not None)
