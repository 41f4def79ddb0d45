from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Any

import discord

from ..conversation.common import Destination, InlineImage
from ..conversation.renderer import DeliveryError

logger = logging.getLogger("persona_bot")

UNKNOWN_MESSAGE = 10008

_SAFE_MENTIONS = discord.AllowedMentions(everyone=False, roles=False, users=True, replied_user=True)


@dataclass(slots=True)
class ImpersonationHandle:
    webhook: discord.Webhook
    thread: discord.Thread | None = None


def _as_file(image: InlineImage | None) -> discord.File | None:
    if image is None:
        return None
    return discord.File(io.BytesIO(image.data), filename=image.filename)


class DiscordSendSurface:
    """Outbound side of the conversation core on top of discord.py."""

    def __init__(self, client: discord.Client, webhook_name: str) -> None:
        self.client = client
        self.webhook_name = webhook_name

    async def _channel(self, channel_id: str) -> Any:
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            try:
                channel = await self.client.fetch_channel(int(channel_id))
            except discord.HTTPException as exc:
                raise DeliveryError(f"channel {channel_id} unavailable: {exc}") from exc
        return channel

    async def send_channel(
        self,
        destination: Destination,
        text: str | None,
        image: InlineImage | None = None,
    ) -> None:
        channel = await self._channel(destination.channel_id)
        kwargs: dict[str, Any] = {"allowed_mentions": _SAFE_MENTIONS}
        if text:
            kwargs["content"] = text
        file = _as_file(image)
        if file is not None:
            kwargs["file"] = file
        if destination.reply_to_message_id:
            kwargs["reference"] = discord.MessageReference(
                message_id=int(destination.reply_to_message_id),
                channel_id=int(destination.channel_id),
                guild_id=int(destination.guild_id) if destination.guild_id else None,
                fail_if_not_exists=False,
            )
        try:
            await channel.send(**kwargs)
        except discord.HTTPException as exc:
            if exc.code == UNKNOWN_MESSAGE:
                logger.info("[discord.send] source message vanished channel=%s", destination.channel_id)
            raise DeliveryError(f"send failed in channel {destination.channel_id}: {exc}") from exc

    async def send_direct(self, user_id: str, text: str) -> None:
        user = self.client.get_user(int(user_id))
        try:
            if user is None:
                user = await self.client.fetch_user(int(user_id))
            await user.send(text)
        except discord.HTTPException as exc:
            raise DeliveryError(f"direct message to {user_id} failed: {exc}") from exc

    def _owned(self, webhook: discord.Webhook) -> bool:
        if webhook.name != self.webhook_name or webhook.token is None:
            return False
        me = self.client.user
        return webhook.user is None or me is None or webhook.user.id == me.id

    async def provision_impersonation(self, channel_id: str) -> ImpersonationHandle:
        channel = await self._channel(channel_id)
        thread: discord.Thread | None = None
        if isinstance(channel, discord.Thread):
            thread = channel
            channel = channel.parent
        if not isinstance(channel, (discord.TextChannel, discord.ForumChannel, discord.VoiceChannel)):
            raise DeliveryError(f"channel {channel_id} does not support webhooks")

        try:
            for webhook in await channel.webhooks():
                if self._owned(webhook):
                    return ImpersonationHandle(webhook=webhook, thread=thread)
            webhook = await channel.create_webhook(name=self.webhook_name, reason="Persona replies")
        except discord.HTTPException as exc:
            raise DeliveryError(f"cannot provision webhook in channel {channel_id}: {exc}") from exc

        logger.info("[discord.webhook] created webhook=%s channel=%s", webhook.id, channel.id)
        return ImpersonationHandle(webhook=webhook, thread=thread)

    async def send_impersonated(
        self,
        handle: ImpersonationHandle,
        *,
        username: str,
        avatar_url: str | None,
        text: str | None,
        image: InlineImage | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {
            "username": username[:80],
            "allowed_mentions": _SAFE_MENTIONS,
        }
        if avatar_url:
            kwargs["avatar_url"] = avatar_url
        if text:
            kwargs["content"] = text
        file = _as_file(image)
        if file is not None:
            kwargs["file"] = file
        if handle.thread is not None:
            kwargs["thread"] = handle.thread
        try:
            await handle.webhook.send(**kwargs)
        except discord.HTTPException as exc:
            raise DeliveryError(f"webhook send failed: {exc}") from exc
