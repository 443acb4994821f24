from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional

TurnTriggerMode = Literal["always", "mentions"]


@dataclass(frozen=True)
class PlainTextTurnContext:
    """Shared trigger context for plain-text turns."""

    text: str
    chat_type: Optional[str] = None
    mentioned_bot: bool = False
    reply_to_is_bot: bool = False
    keywords: tuple[str, ...] = field(default_factory=tuple)


def matches_keyword(text: str, keywords: tuple[str, ...]) -> bool:
    lowered = (text or "").lower()
    return any(keyword and keyword.lower() in lowered for keyword in keywords)


def should_trigger_plain_text_turn(
    *,
    mode: TurnTriggerMode,
    context: PlainTextTurnContext,
) -> bool:
    """Return True when a plain-text message should trigger a reply turn.

    In "mentions" mode, direct chats always trigger; shared conversations need
    an explicit mention, a keyword hit, or a reply to the bot's own message.
    """

    if mode == "always":
        return True
    if mode != "mentions":
        return False

    if context.chat_type == "direct":
        return True
    if context.mentioned_bot:
        return True
    if matches_keyword(context.text, context.keywords):
        return True
    if context.reply_to_is_bot:
        return True
    return False
