"""Message events to canonical inbound turns, plus notice/request side effects."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from ...core.logging_utils import log_event
from ..chat.turn_policy import PlainTextTurnContext, should_trigger_plain_text_turn
from .caches import BridgeRegistry
from .config import OneBotConfig
from .constants import FORWARD_PREVIEW_LIMIT, MAX_INBOUND_MEDIA
from .events import (
    ConversationKind,
    MessageEvent,
    NoticeEvent,
    NoticeKind,
    RequestEvent,
)
from .segments import Segment, coerce_segments, redact_cq


class NormalizerTransport(Protocol):
    @property
    def self_id(self) -> Optional[str]: ...

    async def get_msg(self, message_id: Any) -> Any: ...

    async def get_forward_msg(self, forward_id: str) -> Any: ...

    async def get_group_member_list(self, group_id: Any) -> Any: ...

    async def send_poke(self, user_id: Any, *, group_id: Any = None) -> Any: ...

    async def set_friend_add_request(
        self, flag: str, *, approve: bool = True, remark: str = ""
    ) -> None: ...

    async def set_group_add_request(
        self, flag: str, sub_type: str, *, approve: bool = True, reason: str = ""
    ) -> None: ...


@dataclass(frozen=True)
class CanonicalInboundEvent:
    timestamp: int
    account_id: str
    kind: ConversationKind
    sender_id: str
    sender_name: str
    user_id: str
    group_id: Optional[str]
    guild_id: Optional[str]
    channel_id: Optional[str]
    text: str
    raw_text: str
    media_urls: tuple[str, ...] = ()
    reply_to_id: Optional[str] = None
    is_admin: bool = False
    message_id: Optional[str] = None
    mentioned_bot: bool = False
    mentioned_user_ids: tuple[str, ...] = ()
    # Same as ``text`` but mentions render as ``@<id>``; used for command args.
    command_text: str = ""

    @property
    def is_group(self) -> bool:
        return self.kind == ConversationKind.GROUP

    @property
    def is_guild(self) -> bool:
        return self.kind == ConversationKind.GUILD

    @property
    def conversation_target(self) -> str:
        if self.kind == ConversationKind.GROUP:
            return f"group:{self.group_id}"
        if self.kind == ConversationKind.GUILD:
            return f"guild:{self.guild_id}:{self.channel_id}"
        return f"private:{self.user_id}"


@dataclass
class _ResolvedText:
    parts: list[str] = field(default_factory=list)
    command_parts: list[str] = field(default_factory=list)
    media_urls: list[str] = field(default_factory=list)
    mentioned_user_ids: list[str] = field(default_factory=list)
    mentioned_bot: bool = False
    reply_to_id: Optional[str] = None
    forward_ids: list[str] = field(default_factory=list)

    def add(self, text: str, command_text: Optional[str] = None) -> None:
        self.parts.append(text)
        self.command_parts.append(text if command_text is None else command_text)


_SEGMENT_PLACEHOLDERS = {
    "face": "[emoji]",
    "mface": "[emoji]",
    "record": "[voice]",
    "video": "[video]",
    "json": "[card]",
    "xml": "[card]",
    "contact": "[card]",
    "location": "[location]",
    "dice": "[dice]",
    "rps": "[rps]",
}


def media_url_from_segment(segment: Segment) -> Optional[str]:
    url = segment.get("url")
    if isinstance(url, str) and url:
        return url
    file = segment.get("file")
    if isinstance(file, str) and file.startswith(("http", "base64://")):
        return file
    return None


def flatten_segments(segments: list[Segment]) -> str:
    """Readable text for a nested message, without lookups."""

    pieces: list[str] = []
    for segment in segments:
        if segment.type == "text":
            pieces.append(str(segment.get("text", "")))
        elif segment.type == "at":
            pieces.append(f"@{segment.get('name') or segment.get('qq')}")
        elif segment.type == "image":
            pieces.append("[image]")
        elif segment.type == "file":
            pieces.append(f"[file: {segment.get('name') or segment.get('file') or ''}]")
        elif segment.type == "forward":
            pieces.append("[forwarded messages]")
        elif segment.type in _SEGMENT_PLACEHOLDERS:
            pieces.append(_SEGMENT_PLACEHOLDERS[segment.type])
    return " ".join("".join(pieces).split())


def _tidy(text: str) -> str:
    lines = (" ".join(line.split()) for line in text.splitlines())
    return "\n".join(line for line in lines if line).strip()


def _forward_nodes(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("messages", "message", "content"):
            nodes = data.get(key)
            if isinstance(nodes, list):
                return nodes
    return []


def _forward_line(node: Any) -> Optional[str]:
    if not isinstance(node, dict):
        return None
    payload = node.get("data") if isinstance(node.get("data"), dict) else node
    sender = payload.get("sender") if isinstance(payload.get("sender"), dict) else {}
    name = (
        sender.get("card")
        or sender.get("nickname")
        or payload.get("nickname")
        or payload.get("name")
        or sender.get("user_id")
        or "unknown"
    )
    content = payload.get("content", payload.get("message"))
    if isinstance(content, str):
        text = redact_cq(content)
    else:
        text = flatten_segments(coerce_segments(content))
    if not text:
        return None
    return f"> {name}: {text}"


class EventNormalizer:
    """Turns message events into :class:`CanonicalInboundEvent` snapshots.

    Notices and requests go through :meth:`handle_notice` and
    :meth:`handle_request`; they update caches or answer the gateway and never
    produce a canonical event.
    """

    def __init__(
        self,
        config: OneBotConfig,
        transport: NormalizerTransport,
        registry: BridgeRegistry,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._registry = registry
        self._logger = logger or logging.getLogger(__name__)

    def _self_id(self, event_self_id: Optional[str]) -> Optional[str]:
        return self._transport.self_id or event_self_id

    def is_permitted(self, event: MessageEvent) -> bool:
        cfg = self._config
        user_id = event.user_id or ""
        if user_id in cfg.blocked_users:
            return False
        if cfg.allowed_users and user_id not in cfg.allowed_users:
            return False
        if event.kind == ConversationKind.GROUP:
            group_id = event.group_id or ""
            if group_id in cfg.blocked_groups:
                return False
            if cfg.allowed_groups and group_id not in cfg.allowed_groups:
                return False
        return True

    async def normalize_message(
        self, event: MessageEvent
    ) -> Optional[CanonicalInboundEvent]:
        self_id = self._self_id(event.self_id)
        if event.user_id is None:
            return None
        if self_id and event.user_id == self_id:
            return None
        if event.kind == ConversationKind.GUILD and not self._config.enable_guilds:
            return None
        if not self.is_permitted(event):
            log_event(
                self._logger,
                logging.DEBUG,
                "onebot.inbound.filtered",
                account_id=self._config.account_id,
                user_id=event.user_id,
                group_id=event.group_id,
            )
            return None

        if event.kind == ConversationKind.GROUP and event.group_id:
            await self._registry.members.ensure_populated(
                event.group_id, self._transport.get_group_member_list
            )

        resolved = await self._resolve(event, self_id)
        text = _tidy("".join(resolved.parts))
        command_text = _tidy("".join(resolved.command_parts))

        if not await self._passes_mention_gate(event, resolved, text, self_id):
            log_event(
                self._logger,
                logging.DEBUG,
                "onebot.inbound.mention_required",
                account_id=self._config.account_id,
                message_id=event.message_id,
            )
            return None

        sender_name = event.sender.display_name or event.user_id
        if event.group_id:
            sender_name = (
                self._registry.members.get_name(event.group_id, event.user_id)
                or sender_name
            )
        return CanonicalInboundEvent(
            timestamp=event.time,
            account_id=self._config.account_id,
            kind=event.kind,
            sender_id=event.user_id,
            sender_name=sender_name,
            user_id=event.user_id,
            group_id=event.group_id,
            guild_id=event.guild_id,
            channel_id=event.channel_id,
            text=text,
            raw_text=event.raw_message or command_text,
            media_urls=tuple(resolved.media_urls),
            reply_to_id=resolved.reply_to_id,
            is_admin=self._config.is_admin(event.user_id),
            message_id=event.message_id,
            mentioned_bot=resolved.mentioned_bot,
            mentioned_user_ids=tuple(resolved.mentioned_user_ids),
            command_text=command_text,
        )

    async def _passes_mention_gate(
        self,
        event: MessageEvent,
        resolved: _ResolvedText,
        text: str,
        self_id: Optional[str],
    ) -> bool:
        if event.kind == ConversationKind.DIRECT or not self._config.require_mention:
            return True
        context = PlainTextTurnContext(
            text=text,
            chat_type=event.kind.value,
            mentioned_bot=resolved.mentioned_bot,
            keywords=self._config.keyword_triggers,
        )
        if should_trigger_plain_text_turn(mode="mentions", context=context):
            return True
        if resolved.reply_to_id and await self._is_reply_to_bot(
            resolved.reply_to_id, self_id
        ):
            return True
        return False

    async def _is_reply_to_bot(
        self, reply_to_id: str, self_id: Optional[str]
    ) -> bool:
        if not self_id:
            return False
        try:
            original = await self._transport.get_msg(reply_to_id)
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "onebot.inbound.reply_lookup_failed",
                message_id=reply_to_id,
                exc=exc,
            )
            return False
        if not isinstance(original, dict):
            return False
        sender = original.get("sender") if isinstance(original.get("sender"), dict) else {}
        author = sender.get("user_id", original.get("user_id"))
        return author is not None and str(author) == self_id

    async def _resolve(
        self, event: MessageEvent, self_id: Optional[str]
    ) -> _ResolvedText:
        resolved = _ResolvedText()
        for segment in event.segments:
            self._apply_segment(resolved, segment, event, self_id)
        if not event.structured:
            # Flat CQ strings keep their metadata but use the redacted body.
            resolved.parts = [redact_cq(event.raw_message or "")]
            resolved.command_parts = ["".join(resolved.command_parts)]
        for forward_id in resolved.forward_ids:
            lines = await self.expand_forward(forward_id)
            if lines:
                resolved.add("\n" + "\n".join(lines))
        return resolved

    def _apply_segment(
        self,
        resolved: _ResolvedText,
        segment: Segment,
        event: MessageEvent,
        self_id: Optional[str],
    ) -> None:
        seg_type = segment.type
        if seg_type == "text":
            resolved.add(str(segment.get("text", "")))
        elif seg_type == "at":
            target = str(segment.get("qq", "")).strip()
            if not target:
                return
            if self_id and target == self_id:
                resolved.mentioned_bot = True
                return
            if target == "all":
                resolved.add("@all ")
                return
            name = None
            if event.group_id:
                name = self._registry.members.get_name(event.group_id, target)
            name = name or segment.get("name") or target
            resolved.mentioned_user_ids.append(target)
            resolved.add(f"@{name} ", f"@{target} ")
        elif seg_type == "reply":
            reply_id = str(segment.get("id", "")).strip()
            digits = reply_id.lstrip("-")
            if digits.isascii() and digits.isdigit() and resolved.reply_to_id is None:
                resolved.reply_to_id = reply_id
        elif seg_type == "image":
            url = media_url_from_segment(segment)
            if url and len(resolved.media_urls) < MAX_INBOUND_MEDIA:
                resolved.media_urls.append(url)
            resolved.add("[image]")
        elif seg_type == "file":
            name = segment.get("name") or segment.get("file") or ""
            resolved.add(f"[file: {name}]")
        elif seg_type == "forward":
            forward_id = segment.get("id")
            if forward_id:
                resolved.forward_ids.append(str(forward_id))
            resolved.add("[forwarded messages]")
        elif seg_type in _SEGMENT_PLACEHOLDERS:
            resolved.add(_SEGMENT_PLACEHOLDERS[seg_type])

    async def expand_forward(self, forward_id: str) -> list[str]:
        """Quote the first few messages of a forwarded thread."""

        try:
            data = await self._transport.get_forward_msg(forward_id)
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "onebot.inbound.forward_lookup_failed",
                forward_id=forward_id,
                exc=exc,
            )
            return []
        lines: list[str] = []
        for node in _forward_nodes(data)[:FORWARD_PREVIEW_LIMIT]:
            line = _forward_line(node)
            if line:
                lines.append(line)
        return lines

    # -- notices and requests --------------------------------------------

    async def handle_notice(self, event: NoticeEvent) -> None:
        members = self._registry.members
        kind = event.kind
        if kind == NoticeKind.MEMBERSHIP:
            if event.group_id:
                members.invalidate(event.group_id, event.user_id)
        elif kind == NoticeKind.CARD_CHANGE:
            if event.group_id and event.user_id:
                card_new = event.raw.get("card_new")
                if isinstance(card_new, str) and card_new:
                    members.set_name(event.group_id, event.user_id, card_new)
                else:
                    members.invalidate(event.group_id, event.user_id)
        elif kind == NoticeKind.POKE:
            await self._poke_back(event)
            return
        elif kind == NoticeKind.OTHER:
            self._logger.debug(
                "Ignoring OneBot notice %s/%s", event.notice_type, event.sub_type
            )
            return
        log_event(
            self._logger,
            logging.INFO,
            "onebot.notice",
            account_id=self._config.account_id,
            kind=kind.value,
            notice_type=event.notice_type,
            sub_type=event.sub_type,
            group_id=event.group_id,
            user_id=event.user_id,
            operator_id=event.operator_id,
        )

    async def _poke_back(self, event: NoticeEvent) -> None:
        self_id = self._self_id(event.self_id)
        if not self_id or event.target_id != self_id or not event.user_id:
            return
        if event.user_id == self_id:
            return
        try:
            await self._transport.send_poke(event.user_id, group_id=event.group_id)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.notice.poke_back_failed",
                user_id=event.user_id,
                group_id=event.group_id,
                exc=exc,
            )

    async def handle_request(self, event: RequestEvent) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "onebot.request",
            account_id=self._config.account_id,
            request_type=event.request_type,
            sub_type=event.sub_type,
            user_id=event.user_id,
            group_id=event.group_id,
            auto_approve=self._config.auto_approve_requests,
        )
        if not self._config.auto_approve_requests or not event.flag:
            return
        try:
            if event.request_type == "friend":
                await self._transport.set_friend_add_request(event.flag, approve=True)
            elif event.request_type == "group":
                await self._transport.set_group_add_request(
                    event.flag, event.sub_type or "add", approve=True
                )
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.request.approve_failed",
                request_type=event.request_type,
                flag=event.flag,
                exc=exc,
            )
