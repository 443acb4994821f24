"""Emoji acknowledgments on inbound messages.

Three sources, in priority order: a static configured id, the local
heuristic (auto mode, applied on receipt), and a marker at the start of the
generated reply (auto mode, applied when the reply arrives unless something
was already applied for that message).
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional, Protocol

from ...core.logging_utils import log_event
from .caches import DedupWindow
from .config import ReactionMode, ReactionSettings
from .constants import (
    EMOJI_CRYING,
    EMOJI_EYES,
    EMOJI_HEART,
    EMOJI_LAUGHING,
    EMOJI_OK,
    EMOJI_THUMBS_UP,
)

_MENTION_RE = re.compile(r"@\S+")
_MARKER_RE = re.compile(r"^\s*\[(?:task:(?:ok|emoji_only)|reaction:(\d+))\]\s*")

_GREETING_RE = re.compile(
    r"^(你好|您好|嗨|哈喽|早上好|早安|中午好|下午好|晚上好|晚安|在吗|在不在"
    r"|hi|hello|hey|yo|morning|good (morning|night|evening))[\s!！~～。.,，?？]*$"
)
_THANKS_RE = re.compile(
    r"^(谢谢|多谢|感谢|谢啦|谢了|蟹蟹|3q|thx|thanks|thank you|ty)"
    r"(你|您|啦|了|哈|呀)?[\s!！~～。.,，]*$"
)

# Ordered: the first matching category wins.
_SENTIMENT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"哈{2,}|hhh+|233+|笑死|好笑|搞笑|lol|lmao|haha|😂|🤣"), EMOJI_LAUGHING),
    (re.compile(r"爱你|喜欢你|么么|亲亲|抱抱|贴贴|love you|❤|💕|💗"), EMOJI_HEART),
    (
        re.compile(r"厉害|牛|棒|优秀|太强|强啊|666+|nb|awesome|amazing|great|nice|👍"),
        EMOJI_THUMBS_UP,
    ),
    (re.compile(r"难过|伤心|哭|呜呜|委屈|心累|emo|sad|😭|😢"), EMOJI_CRYING),
)
_QUESTION_TASK_RE = re.compile(
    r"[?？]|吗$|呢$|怎么|如何|为什么|为啥|什么|能不能|可不可以|可以吗|帮我|帮忙|请|麻烦"
    r"|查一下|看看|写|翻译|总结|how|what|why|when|where|which|can you|could you"
    r"|please|help"
)


def canonical_text(text: str) -> str:
    return _MENTION_RE.sub(" ", text or "").strip().lower()


def classify_reaction(text: str) -> Optional[str]:
    """Local heuristic: at most one emoji id for an inbound message."""

    canonical = canonical_text(text)
    if not canonical or canonical.startswith("/"):
        return None
    if _GREETING_RE.match(canonical) or _THANKS_RE.match(canonical):
        return None
    for pattern, emoji_id in _SENTIMENT_PATTERNS:
        if pattern.search(canonical):
            return emoji_id
    if _QUESTION_TASK_RE.search(canonical):
        return EMOJI_OK
    return EMOJI_EYES


def extract_reply_marker(text: Optional[str]) -> tuple[Optional[str], str]:
    """Split a leading ``[reaction:<id>]`` / ``[task:...]`` marker off a reply."""

    if not text:
        return None, text or ""
    match = _MARKER_RE.match(text)
    if match is None:
        return None, text
    emoji_id = match.group(1) or EMOJI_OK
    return emoji_id, text[match.end() :]


class ReactionTransport(Protocol):
    async def set_msg_emoji_like(
        self, message_id: Any, emoji_id: str, *, set_like: bool = True
    ) -> None: ...


class ReactionEngine:
    def __init__(
        self,
        settings: ReactionSettings,
        transport: ReactionTransport,
        *,
        logger: Optional[logging.Logger] = None,
        applied: Optional[DedupWindow] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._logger = logger or logging.getLogger(__name__)
        self._applied = applied if applied is not None else DedupWindow()

    @property
    def mode(self) -> ReactionMode:
        return self._settings.mode

    def has_applied(self, message_id: Optional[str]) -> bool:
        return message_id is not None and message_id in self._applied

    async def react_on_receipt(
        self, message_id: Optional[str], text: str
    ) -> Optional[str]:
        if not message_id:
            return None
        if self._settings.mode == ReactionMode.STATIC:
            emoji_id = self._settings.emoji_id
        elif self._settings.mode == ReactionMode.AUTO:
            emoji_id = classify_reaction(text)
        else:
            emoji_id = None
        if not emoji_id:
            return None
        return await self._apply_once(message_id, emoji_id, source="receipt")

    async def react_on_reply(
        self,
        message_id: Optional[str],
        *,
        marker_emoji: Optional[str] = None,
        explicit_emoji: Optional[str] = None,
    ) -> Optional[str]:
        if not message_id or self._settings.mode != ReactionMode.AUTO:
            return None
        emoji_id = explicit_emoji or marker_emoji
        if not emoji_id:
            return None
        return await self._apply_once(message_id, emoji_id, source="reply")

    async def _apply_once(
        self, message_id: str, emoji_id: str, *, source: str
    ) -> Optional[str]:
        if not self._applied.check_and_add(message_id):
            return None
        try:
            await self._transport.set_msg_emoji_like(message_id, emoji_id)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.reaction.failed",
                message_id=message_id,
                emoji_id=emoji_id,
                source=source,
                exc=exc,
            )
            return None
        log_event(
            self._logger,
            logging.DEBUG,
            "onebot.reaction.applied",
            message_id=message_id,
            emoji_id=emoji_id,
            source=source,
        )
        return emoji_id

    async def react(
        self, message_id: str, emoji_id: Optional[str], *, remove: bool = False
    ) -> None:
        """On-demand reaction; errors propagate to the caller."""

        if remove:
            await self._transport.set_msg_emoji_like(
                message_id, emoji_id or "", set_like=False
            )
            return
        if not emoji_id:
            raise ValueError("emoji is required when not removing a reaction")
        await self._transport.set_msg_emoji_like(message_id, emoji_id)
