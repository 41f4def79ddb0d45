from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_bot.config import Settings  # noqa: E402
from persona_bot.conversation.common import Framing, InboundMessage, InlineImage  # noqa: E402
from persona_bot.conversation.trigger import TriggerResolver, strip_mentions  # noqa: E402
from persona_bot.memory.models import Persona  # noqa: E402


DEFAULT_PREFIX = r"^\s*[!/$%&+=.-]\w"


def _persona(persona_id: str, *, channel: str | None = None, role: str | None = None) -> Persona:
    return Persona(
        id=persona_id,
        guild_id="g1",
        name=persona_id.upper(),
        persona_prompt="A test character.",
        active_channel_id=channel,
        trigger_role_id=role,
    )


def _message(
    text: str = "hello",
    *,
    channel: str = "c1",
    guild: str | None = "g1",
    automated: bool = False,
    roles: set[str] | None = None,
    image: bool = False,
) -> InboundMessage:
    return InboundMessage(
        message_id="m1",
        author_id="u1",
        author_label="Alice",
        author_is_automated=automated,
        guild_id=guild,
        channel_id=channel,
        text=text,
        mentioned_role_ids=frozenset(roles or ()),
        image=InlineImage(mime_type="image/png", data=b"png") if image else None,
    )


@pytest.mark.parametrize(
    "personas,message",
    [
        ([_persona("p", channel="c1")], _message(automated=True)),
        ([_persona("p", role="111")], _message("<@&111> hi", automated=True, roles={"111"})),
        ([_persona("p")], _message(guild=None, channel="dm", automated=True)),
        ([_persona("p", channel="c1", role="111")], _message(automated=True, roles={"111"}, image=True)),
    ],
)
def test_automated_authors_never_activate(personas: list[Persona], message: InboundMessage) -> None:
    assert TriggerResolver(DEFAULT_PREFIX).resolve(message, personas) is None


def test_dedicated_channel_wins_over_role_mention_for_other_persona() -> None:
    dedicated = _persona("p", channel="c1")
    summoned = _persona("q", role="222")
    message = _message("<@&222> what do you think?", channel="c1", roles={"222"})

    activation = TriggerResolver(DEFAULT_PREFIX).resolve(message, [summoned, dedicated])

    assert activation is not None
    assert activation.persona.id == "p"
    assert activation.framing is Framing.DEDICATED_CHANNEL


def test_role_mention_activates_outside_dedicated_channel() -> None:
    persona = _persona("p", role="111")
    message = _message("<@&111> tell me a story", channel="elsewhere", roles={"111"})

    activation = TriggerResolver(DEFAULT_PREFIX).resolve(message, [persona])

    assert activation is not None
    assert activation.framing is Framing.ROLE_MENTION


def test_bare_role_mention_still_activates() -> None:
    persona = _persona("p", role="111")
    activation = TriggerResolver(DEFAULT_PREFIX).resolve(_message("<@&111>", roles={"111"}), [persona])

    assert activation is not None
    assert activation.framing is Framing.ROLE_MENTION


def test_unrelated_channel_without_mention_does_not_activate() -> None:
    persona = _persona("p", channel="c1", role="111")
    assert TriggerResolver(DEFAULT_PREFIX).resolve(_message(channel="c2"), [persona]) is None


@pytest.mark.parametrize("text", ["!ping", "/help", "  .roll d20", "$balance"])
def test_command_prefixed_text_never_activates(text: str) -> None:
    persona = _persona("p", channel="c1")
    assert TriggerResolver(DEFAULT_PREFIX).resolve(_message(text), [persona]) is None


def test_default_settings_prefix_detects_commands(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PERSONA_COMMAND_PREFIX_PATTERN", raising=False)
    resolver = TriggerResolver(Settings.from_env().command_prefix_pattern)
    assert resolver.is_command("!ping")
    assert not resolver.is_command("...well, hello")
    assert not resolver.is_command("hello!")


def test_empty_message_without_image_is_ignored() -> None:
    persona = _persona("p", channel="c1")
    resolver = TriggerResolver(DEFAULT_PREFIX)

    assert resolver.resolve(_message(""), [persona]) is None
    assert resolver.resolve(_message("<@123>  <@!456>"), [persona]) is None


def test_image_only_message_activates() -> None:
    persona = _persona("p", channel="c1")
    activation = TriggerResolver(DEFAULT_PREFIX).resolve(_message("", image=True), [persona])

    assert activation is not None
    assert activation.framing is Framing.DEDICATED_CHANNEL


def test_attachment_metadata_alone_counts_as_image() -> None:
    persona = _persona("p", channel="c1")
    message = _message("")
    message.image_attached = True

    activation = TriggerResolver(DEFAULT_PREFIX).resolve(message, [persona])

    assert activation is not None
    assert message.image is None


def test_direct_message_uses_linked_persona() -> None:
    persona = _persona("p")
    activation = TriggerResolver(DEFAULT_PREFIX).resolve(_message(guild=None, channel="dm1"), [persona])

    assert activation is not None
    assert activation.persona.id == "p"
    assert activation.framing is Framing.DIRECT_MESSAGE


def test_no_personas_means_no_activation() -> None:
    assert TriggerResolver(DEFAULT_PREFIX).resolve(_message(), []) is None


def test_resolver_without_prefix_pattern_treats_nothing_as_command() -> None:
    resolver = TriggerResolver(None)
    assert not resolver.is_command("!ping")


def test_strip_mentions_removes_discord_tokens() -> None:
    assert strip_mentions("<@123> hi <@&456> there <#789>") == "hi there"
