"""Typed OneBot v11 wire events.

``parse_event`` turns one decoded frame into exactly one variant of
:data:`OneBotEvent`, or ``None`` when the frame is not an event (action
responses, unknown ``post_type`` values).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .segments import Segment, coerce_segments


class ConversationKind(str, enum.Enum):
    DIRECT = "direct"
    GROUP = "group"
    GUILD = "guild"


class NoticeKind(str, enum.Enum):
    MEMBERSHIP = "membership"
    BAN = "ban"
    CARD_CHANGE = "card_change"
    ESSENCE = "essence"
    POKE = "poke"
    HONOR = "honor"
    ADMIN_CHANGE = "admin_change"
    RECALL = "recall"
    OTHER = "other"


_NOTICE_KINDS = {
    "group_increase": NoticeKind.MEMBERSHIP,
    "group_decrease": NoticeKind.MEMBERSHIP,
    "group_ban": NoticeKind.BAN,
    "group_card": NoticeKind.CARD_CHANGE,
    "essence": NoticeKind.ESSENCE,
    "group_admin": NoticeKind.ADMIN_CHANGE,
    "group_recall": NoticeKind.RECALL,
    "friend_recall": NoticeKind.RECALL,
}

_NOTIFY_SUB_KINDS = {
    "poke": NoticeKind.POKE,
    "honor": NoticeKind.HONOR,
}


@dataclass(frozen=True)
class Sender:
    user_id: Optional[str] = None
    nickname: Optional[str] = None
    card: Optional[str] = None
    role: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.card or self.nickname or self.user_id


@dataclass(frozen=True)
class MessageEvent:
    time: int
    self_id: Optional[str]
    kind: ConversationKind
    sub_type: Optional[str]
    message_id: Optional[str]
    user_id: Optional[str]
    group_id: Optional[str]
    guild_id: Optional[str]
    channel_id: Optional[str]
    segments: tuple[Segment, ...]
    structured: bool
    raw_message: str
    sender: Sender
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class NoticeEvent:
    time: int
    self_id: Optional[str]
    notice_type: str
    kind: NoticeKind
    sub_type: Optional[str]
    user_id: Optional[str]
    group_id: Optional[str]
    operator_id: Optional[str]
    target_id: Optional[str]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class RequestEvent:
    time: int
    self_id: Optional[str]
    request_type: str
    sub_type: Optional[str]
    user_id: Optional[str]
    group_id: Optional[str]
    flag: Optional[str]
    comment: Optional[str]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class MetaEvent:
    time: int
    self_id: Optional[str]
    meta_event_type: str
    sub_type: Optional[str]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_heartbeat(self) -> bool:
        return self.meta_event_type == "heartbeat"

    @property
    def is_lifecycle(self) -> bool:
        return self.meta_event_type == "lifecycle"


OneBotEvent = Union[MessageEvent, NoticeEvent, RequestEvent, MetaEvent]


def _id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    return str(value)


def _str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _time(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _conversation_kind(message_type: Any) -> Optional[ConversationKind]:
    if message_type == "private":
        return ConversationKind.DIRECT
    if message_type == "group":
        return ConversationKind.GROUP
    if message_type == "guild":
        return ConversationKind.GUILD
    return None


def _parse_sender(raw: Any, fallback_user_id: Optional[str]) -> Sender:
    data = raw if isinstance(raw, dict) else {}
    return Sender(
        user_id=_id(data.get("user_id")) or fallback_user_id,
        nickname=_str(data.get("nickname")),
        card=_str(data.get("card")),
        role=_str(data.get("role")),
    )


def parse_message_payload(payload: dict[str, Any]) -> Optional[MessageEvent]:
    kind = _conversation_kind(payload.get("message_type"))
    if kind is None:
        return None
    message = payload.get("message")
    raw_message = payload.get("raw_message")
    if message is None and isinstance(raw_message, str):
        message = raw_message
    if not isinstance(raw_message, str):
        raw_message = message if isinstance(message, str) else ""
    user_id = _id(payload.get("user_id"))
    return MessageEvent(
        time=_time(payload.get("time")),
        self_id=_id(payload.get("self_id")),
        kind=kind,
        sub_type=_str(payload.get("sub_type")),
        message_id=_id(payload.get("message_id")),
        user_id=user_id,
        group_id=_id(payload.get("group_id")),
        guild_id=_id(payload.get("guild_id")),
        channel_id=_id(payload.get("channel_id")),
        segments=tuple(coerce_segments(message)),
        structured=isinstance(message, list),
        raw_message=raw_message,
        sender=_parse_sender(payload.get("sender"), user_id),
        raw=payload,
    )


def _notice_kind(notice_type: str, sub_type: Optional[str]) -> NoticeKind:
    if notice_type == "notify":
        return _NOTIFY_SUB_KINDS.get(sub_type or "", NoticeKind.OTHER)
    return _NOTICE_KINDS.get(notice_type, NoticeKind.OTHER)


def parse_event(payload: Any) -> Optional[OneBotEvent]:
    if not isinstance(payload, dict):
        return None
    post_type = payload.get("post_type")
    # "message_sent" echoes our own outgoing messages and is not an event here.
    if post_type == "message":
        return parse_message_payload(payload)
    if post_type == "notice":
        notice_type = str(payload.get("notice_type") or "")
        sub_type = _str(payload.get("sub_type"))
        return NoticeEvent(
            time=_time(payload.get("time")),
            self_id=_id(payload.get("self_id")),
            notice_type=notice_type,
            kind=_notice_kind(notice_type, sub_type),
            sub_type=sub_type,
            user_id=_id(payload.get("user_id")),
            group_id=_id(payload.get("group_id")),
            operator_id=_id(payload.get("operator_id")),
            target_id=_id(payload.get("target_id")),
            raw=payload,
        )
    if post_type == "request":
        return RequestEvent(
            time=_time(payload.get("time")),
            self_id=_id(payload.get("self_id")),
            request_type=str(payload.get("request_type") or ""),
            sub_type=_str(payload.get("sub_type")),
            user_id=_id(payload.get("user_id")),
            group_id=_id(payload.get("group_id")),
            flag=_str(payload.get("flag")),
            comment=_str(payload.get("comment")),
            raw=payload,
        )
    if post_type == "meta_event":
        return MetaEvent(
            time=_time(payload.get("time")),
            self_id=_id(payload.get("self_id")),
            meta_event_type=str(payload.get("meta_event_type") or ""),
            sub_type=_str(payload.get("sub_type")),
            raw=payload,
        )
    return None
