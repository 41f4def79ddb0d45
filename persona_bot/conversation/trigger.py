from __future__ import annotations

import re
from typing import Sequence

from ..memory.models import Persona
from .common import Activation, Framing, InboundMessage, collapse_spaces

_MENTION_PATTERN = re.compile(r"<(?:@[!&]?|#)\d+>")


def strip_mentions(text: str) -> str:
    return collapse_spaces(_MENTION_PATTERN.sub(" ", text or ""))


class TriggerResolver:
    """Decides which persona, if any, answers an inbound message.

    Pure and total: every input maps to either ``None`` or an ``Activation``.
    For direct messages the caller passes the personas the author is linked to,
    in preference order.
    """

    def __init__(self, command_prefix_pattern: str | re.Pattern[str] | None = None) -> None:
        if isinstance(command_prefix_pattern, re.Pattern):
            self.command_prefix = command_prefix_pattern
        elif command_prefix_pattern:
            self.command_prefix = re.compile(command_prefix_pattern)
        else:
            self.command_prefix = None

    def is_command(self, text: str) -> bool:
        if self.command_prefix is None:
            return False
        return bool(self.command_prefix.search(text or ""))

    def resolve(self, message: InboundMessage, personas: Sequence[Persona]) -> Activation | None:
        if message.author_is_automated:
            return None
        if self.is_command(message.text):
            return None
        if not personas:
            return None

        has_text = bool(strip_mentions(message.text))
        if not has_text and not message.has_image_attachment and not message.mentioned_role_ids:
            return None

        if message.is_direct:
            return Activation(persona=personas[0], framing=Framing.DIRECT_MESSAGE)

        for persona in personas:
            if persona.active_channel_id and persona.active_channel_id == message.channel_id:
                return Activation(persona=persona, framing=Framing.DEDICATED_CHANNEL)

        for persona in personas:
            if persona.trigger_role_id and persona.trigger_role_id in message.mentioned_role_ids:
                return Activation(persona=persona, framing=Framing.ROLE_MENTION)

        return None
