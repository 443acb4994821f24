from __future__ import annotations

import asyncio
import base64
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Union
from urllib.parse import urlparse
from urllib.request import url2pathname

from ...core.logging_utils import log_event
from ..chat.media import file_name_for, media_kind_for
from ..chat.text_chunking import split_fixed
from .config import OneBotConfig
from .errors import OneBotTargetError
from .segments import (
    Segment,
    at_segment,
    image_segment,
    record_segment,
    text_segment,
    to_wire,
)

_DIGITS_RE = re.compile(r"^\d+$")
_URL_RE = re.compile(r"https?://[^\s<>\"'\]]+", re.IGNORECASE)

URL_DANGER_LEVEL = 3
MASKED_URL_TEXT = "[link removed]"


@dataclass(frozen=True)
class PrivateTarget:
    user_id: str


@dataclass(frozen=True)
class GroupTarget:
    group_id: str


@dataclass(frozen=True)
class GuildTarget:
    guild_id: str
    channel_id: str


ParsedTarget = Union[PrivateTarget, GroupTarget, GuildTarget]


def parse_target(value: str) -> ParsedTarget:
    """Parse ``group:<id>``, ``guild:<id>:<id>``, ``private:<id>`` or a bare id."""

    raw = str(value or "").strip()
    if raw.startswith("group:"):
        group_id = raw[len("group:") :]
        if _DIGITS_RE.match(group_id):
            return GroupTarget(group_id=group_id)
        raise OneBotTargetError(f"Invalid group target: {value!r}")
    if raw.startswith("guild:"):
        parts = raw.split(":")
        if len(parts) == 3 and parts[1] and parts[2]:
            return GuildTarget(guild_id=parts[1], channel_id=parts[2])
        raise OneBotTargetError(f"Guild targets need guild:<guild>:<channel>: {value!r}")
    if raw.startswith("private:"):
        user_id = raw[len("private:") :]
        if _DIGITS_RE.match(user_id):
            return PrivateTarget(user_id=user_id)
        raise OneBotTargetError(f"Invalid private target: {value!r}")
    if _DIGITS_RE.match(raw):
        return PrivateTarget(user_id=raw)
    raise OneBotTargetError(f"Unrecognized target: {value!r}")


def format_target(target: ParsedTarget) -> str:
    if isinstance(target, GroupTarget):
        return f"group:{target.group_id}"
    if isinstance(target, GuildTarget):
        return f"guild:{target.guild_id}:{target.channel_id}"
    return f"private:{target.user_id}"


_MD_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_MD_ITALIC_RE = re.compile(r"\*(.*?)\*")
_MD_CODE_RE = re.compile(r"`(.*?)`")
_MD_HEADING_RE = re.compile(r"^#+\s+(.*)$", re.MULTILINE)
_MD_LINK_RE = re.compile(r"\[(.*?)\]\((.*?)\)")
_MD_QUOTE_RE = re.compile(r"^\s*>\s+(.*)$", re.MULTILINE)


def strip_markdown(text: str) -> str:
    result = _MD_BOLD_RE.sub(r"\1", text)
    result = _MD_ITALIC_RE.sub(r"\1", result)
    result = _MD_CODE_RE.sub(r"\1", result)
    result = _MD_HEADING_RE.sub(r"\1", result)
    result = _MD_LINK_RE.sub(r"\1 (\2)", result)
    return _MD_QUOTE_RE.sub(r"▎\1", result)


def _break_url(match: re.Match[str]) -> str:
    url = match.group(0)
    scheme, sep, rest = url.partition("://")
    host, slash, path = rest.partition("/")
    return f"{scheme}{sep}{host.replace('.', '。')}{slash}{path}"


def break_urls(text: str) -> str:
    """Defuse link auto-detection by replacing dots in URL hosts."""

    return _URL_RE.sub(_break_url, text)


def find_urls(text: str) -> list[str]:
    seen: list[str] = []
    for match in _URL_RE.finditer(text):
        if match.group(0) not in seen:
            seen.append(match.group(0))
    return seen


def resolve_local_media(source: str) -> str:
    """Inline ``file:`` URLs and existing local paths as ``base64://``."""

    path: Optional[Path] = None
    if source.startswith("file:"):
        path = Path(url2pathname(urlparse(source).path))
    elif not urlparse(source).scheme or Path(source).is_absolute():
        candidate = Path(source)
        if candidate.is_file():
            path = candidate
    if path is None:
        return source
    try:
        data = path.read_bytes()
    except OSError:
        return source
    return "base64://" + base64.b64encode(data).decode("ascii")


class OutboundTransport(Protocol):
    async def send_private_msg(self, user_id: Any, message: Any) -> None: ...

    async def send_group_msg(self, group_id: Any, message: Any) -> None: ...

    async def send_guild_channel_msg(
        self, guild_id: str, channel_id: str, message: Any
    ) -> None: ...

    async def send_request(
        self, action: str, params: Optional[dict[str, Any]] = None
    ) -> Any: ...


class OutboundDispatcher:
    """Formats, chunks and paces replies into gateway send actions."""

    def __init__(
        self,
        config: OneBotConfig,
        transport: OutboundTransport,
        *,
        logger: Optional[logging.Logger] = None,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._transport = transport
        self._logger = logger or logging.getLogger(__name__)
        self._sleep = sleep_fn

    async def prepare_text(self, text: str) -> str:
        """Whole-text transforms, applied before chunking."""

        result = text
        if self._config.format_markdown:
            result = strip_markdown(result)
        if self._config.enable_url_check:
            result = await self.mask_unsafe_urls(result)
        if self._config.anti_risk_mode:
            result = break_urls(result)
        return result

    async def mask_unsafe_urls(self, text: str) -> str:
        result = text
        for url in find_urls(text):
            try:
                verdict = await self._transport.send_request(
                    "check_url_safely", {"url": url}
                )
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "onebot.outbound.url_check_failed",
                    url=url,
                    exc=exc,
                )
                continue
            level = verdict.get("level") if isinstance(verdict, dict) else None
            if isinstance(level, int) and level >= URL_DANGER_LEVEL:
                result = result.replace(url, MASKED_URL_TEXT)
        return result

    async def _send(self, target: ParsedTarget, message: Any) -> None:
        if isinstance(target, GroupTarget):
            await self._transport.send_group_msg(target.group_id, message)
        elif isinstance(target, GuildTarget):
            await self._transport.send_guild_channel_msg(
                target.guild_id, target.channel_id, message
            )
        else:
            await self._transport.send_private_msg(target.user_id, message)

    def _text_message(
        self, target: ParsedTarget, chunk: str, mention_user_id: Optional[str]
    ) -> list[dict[str, Any]]:
        segments: list[Segment] = []
        if mention_user_id and isinstance(target, GroupTarget):
            segments.append(at_segment(mention_user_id))
            chunk = " " + chunk
        segments.append(text_segment(chunk))
        return to_wire(segments)

    async def send_text(
        self,
        target: ParsedTarget,
        text: str,
        *,
        mention_user_id: Optional[str] = None,
    ) -> int:
        """Send ``text`` in ``max_message_length`` chunks; returns sends made."""

        prepared = await self.prepare_text(text)
        chunks = split_fixed(prepared, self._config.max_message_length)
        sent = 0
        for chunk in chunks:
            if sent:
                await self._pace()
            await self._send(target, self._text_message(target, chunk, mention_user_id))
            sent += 1
        return sent

    async def send_voice(self, target: GroupTarget, text: str) -> bool:
        if not self._config.ai_voice_id:
            return False
        try:
            await self._transport.send_request(
                "send_group_ai_record",
                {
                    "group_id": int(target.group_id),
                    "character": self._config.ai_voice_id,
                    "text": text,
                },
            )
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.outbound.voice_failed",
                group_id=target.group_id,
                exc=exc,
            )
            return False
        return True

    async def send_media(self, target: ParsedTarget, source: str) -> None:
        """Image and audio go inline; anything else is uploaded as a file."""

        kind = media_kind_for(source)
        resolved = resolve_local_media(source)
        if kind == "image":
            await self._send(target, to_wire([image_segment(resolved)]))
            return
        if kind == "audio":
            await self._send(target, to_wire([record_segment(resolved)]))
            return
        if await self._upload(target, resolved, file_name_for(source)):
            return
        link = source if urlparse(source).scheme in {"http", "https"} else file_name_for(source)
        await self._send(target, to_wire([text_segment(link)]))

    async def _upload(self, target: ParsedTarget, file: str, name: str) -> bool:
        if isinstance(target, GroupTarget):
            action = "upload_group_file"
            params: dict[str, Any] = {"group_id": int(target.group_id)}
        elif isinstance(target, PrivateTarget):
            action = "upload_private_file"
            params = {"user_id": int(target.user_id)}
        else:
            return False
        params.update({"file": file, "name": name})
        try:
            await self._transport.send_request(action, params)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.outbound.upload_failed",
                action=action,
                name=name,
                exc=exc,
            )
            return False
        return True

    async def dispatch(
        self,
        target: ParsedTarget,
        *,
        text: Optional[str] = None,
        media_urls: Sequence[str] = (),
        mention_user_id: Optional[str] = None,
    ) -> int:
        """Deliver one reply: text (or AI voice) first, then attachments."""

        sends = 0
        if text and text.strip():
            if (
                self._config.enable_tts
                and isinstance(target, GroupTarget)
                and await self.send_voice(target, text)
            ):
                sends += 1
            else:
                sends += await self.send_text(
                    target, text, mention_user_id=mention_user_id
                )
        for source in media_urls:
            if sends:
                await self._pace()
            await self.send_media(target, source)
            sends += 1
        return sends

    async def _pace(self) -> None:
        delay = self._config.rate_limit_seconds
        if delay > 0:
            await self._sleep(delay)
