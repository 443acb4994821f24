"""Administrator chat commands.

A fixed table maps a canonical slash name plus localized aliases to a
handler. Each handler issues gateway actions and answers with one
confirmation or error message. A command whose required target or value is
missing does nothing at all.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from ...core.logging_utils import log_event
from ..chat.commands import (
    ChatCommand,
    match_alias_prefix,
    parse_chat_command,
    strip_leading_mention,
)
from .caches import BridgeRegistry
from .config import OneBotConfig
from .errors import OneBotError
from .normalizer import CanonicalInboundEvent

DEFAULT_MUTE_MINUTES = 30
DEFAULT_LIKE_TIMES = 10
MAX_LIKE_TIMES = 20
MAX_MUTE_MINUTES = 30 * 24 * 60

_NUMERIC_ID_RE = re.compile(r"[0-9]+")

ReplyFn = Callable[[CanonicalInboundEvent, str], Awaitable[None]]


def is_numeric_id(token: str) -> bool:
    """ASCII digits only; ``str.isdigit`` also accepts superscripts."""
    return _NUMERIC_ID_RE.fullmatch(token) is not None


class CommandTransport(Protocol):
    @property
    def self_id(self) -> Optional[str]: ...

    async def send_request(
        self, action: str, params: Optional[dict[str, Any]] = None
    ) -> Any: ...

    async def send_request_first(
        self, candidates: list[tuple[str, dict[str, Any]]]
    ) -> Any: ...


@dataclass(frozen=True)
class CommandArgs:
    target: Optional[str]
    values: tuple[str, ...]

    @property
    def rest(self) -> str:
        return " ".join(self.values).strip()


def parse_command_args(
    command: ChatCommand, event: CanonicalInboundEvent
) -> CommandArgs:
    """A resolved mention wins over a literal numeric id for the target."""

    tokens = command.args.split()
    mentioned = [
        user_id
        for user_id in event.mentioned_user_ids
        if is_numeric_id(user_id)
    ]
    values = [token for token in tokens if not token.startswith("@")]
    if mentioned:
        return CommandArgs(target=mentioned[0], values=tuple(values))
    if values and is_numeric_id(values[0]):
        return CommandArgs(target=values[0], values=tuple(values[1:]))
    return CommandArgs(target=None, values=tuple(values))


@dataclass(frozen=True)
class CommandSpec:
    name: str
    aliases: tuple[str, ...]
    description: str
    group_only: bool = True
    enabled: Callable[[OneBotConfig], bool] = field(default=lambda _config: True)


COMMAND_TABLE: tuple[CommandSpec, ...] = (
    CommandSpec("status", ("状态",), "Show bot status", group_only=False),
    CommandSpec("help", ("帮助", "菜单"), "List admin commands", group_only=False),
    CommandSpec("mute", ("禁言",), "Mute a member: mute <@user|id> [minutes]"),
    CommandSpec("unmute", ("解除禁言", "解禁"), "Unmute a member: unmute <@user|id>"),
    CommandSpec("kick", ("踢出", "踢"), "Remove a member: kick <@user|id>"),
    CommandSpec("muteall", ("全员禁言",), "Mute everyone: muteall [on|off]"),
    CommandSpec("card", ("设置名片", "改名片"), "Set a group card: card <@user|id> <name>"),
    CommandSpec("title", ("设置头衔", "头衔"), "Set a special title: title <@user|id> <title>"),
    CommandSpec("essence", ("设为精华", "设精"), "Reply to a message to mark it essence"),
    CommandSpec("unessence", ("取消精华",), "Reply to a message to unmark essence"),
    CommandSpec("recall", ("撤回",), "Reply to a message to recall it"),
    CommandSpec(
        "like", ("点赞",), "Send profile likes: like <@user|id> [times]", group_only=False
    ),
    CommandSpec(
        "honor",
        ("群荣誉",),
        "Show group honors",
        enabled=lambda config: config.enable_group_honor,
    ),
    CommandSpec(
        "signin",
        ("群打卡", "打卡"),
        "Group sign-in",
        enabled=lambda config: config.enable_group_sign_in,
    ),
    CommandSpec("notice", ("发公告", "公告"), "Post a group notice: notice <text>"),
    CommandSpec(
        "cleancache", ("清理缓存",), "Clear gateway and member caches", group_only=False
    ),
)

_TABLE_BY_NAME = {spec.name: spec for spec in COMMAND_TABLE}


def build_alias_index(table: tuple[CommandSpec, ...] = COMMAND_TABLE) -> dict[str, str]:
    return {alias: spec.name for spec in table for alias in spec.aliases}


def resolve_command(text: str, aliases: dict[str, str]) -> Optional[ChatCommand]:
    """Alias prefix first (longest wins), then slash syntax."""

    stripped = strip_leading_mention(text)
    if not stripped:
        return None
    command = match_alias_prefix(stripped, aliases, require_separator=True)
    if command is not None:
        return command
    command = parse_chat_command(stripped)
    if command is not None and command.name in _TABLE_BY_NAME:
        return command
    return None


class CommandRouter:
    def __init__(
        self,
        config: OneBotConfig,
        transport: CommandTransport,
        registry: BridgeRegistry,
        *,
        reply: ReplyFn,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._registry = registry
        self._reply = reply
        self._logger = logger or logging.getLogger(__name__)
        self._aliases = build_alias_index()
        self._handlers: dict[
            str, Callable[[CanonicalInboundEvent, CommandArgs], Awaitable[Optional[str]]]
        ] = {
            "status": self._status,
            "help": self._help,
            "mute": self._mute,
            "unmute": self._unmute,
            "kick": self._kick,
            "muteall": self._muteall,
            "card": self._card,
            "title": self._title,
            "essence": self._essence,
            "unessence": self._unessence,
            "recall": self._recall,
            "like": self._like,
            "honor": self._honor,
            "signin": self._signin,
            "notice": self._notice,
            "cleancache": self._cleancache,
        }

    def match(self, event: CanonicalInboundEvent) -> Optional[ChatCommand]:
        if not event.is_admin or event.is_guild:
            return None
        command = resolve_command(event.command_text or event.text, self._aliases)
        if command is None:
            return None
        spec = _TABLE_BY_NAME.get(command.name)
        if spec is None or not spec.enabled(self._config):
            return None
        return command

    async def route(self, event: CanonicalInboundEvent) -> bool:
        """Run a matching admin command; True means the turn is consumed."""

        command = self.match(event)
        if command is None:
            return False
        spec = _TABLE_BY_NAME[command.name]
        if spec.group_only and not event.is_group:
            return True
        args = parse_command_args(command, event)
        log_event(
            self._logger,
            logging.INFO,
            "onebot.command",
            account_id=event.account_id,
            command=command.name,
            user_id=event.sender_id,
            group_id=event.group_id,
            target=args.target,
        )
        try:
            message = await self._handlers[command.name](event, args)
        except OneBotError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.command.failed",
                command=command.name,
                exc=exc,
            )
            message = f"操作失败：{command.name}"
        if message:
            await self._reply(event, message)
        return True

    # -- handlers --------------------------------------------------------

    async def _call(self, action: str, **params: Any) -> Any:
        return await self._transport.send_request(action, params)

    async def _status(self, event: CanonicalInboundEvent, args: CommandArgs) -> str:
        members = self._registry.members
        lines = [
            "机器人运行中",
            f"账号: {self._config.account_id}",
            f"自身ID: {self._transport.self_id or '未知'}",
            f"反应模式: {self._config.reaction.mode.value}",
        ]
        if event.group_id:
            cached = "是" if members.is_populated(event.group_id) else "否"
            lines.append(f"成员缓存: {cached}")
        return "\n".join(lines)

    async def _help(self, event: CanonicalInboundEvent, args: CommandArgs) -> str:
        lines = ["可用指令:"]
        for spec in COMMAND_TABLE:
            if not spec.enabled(self._config):
                continue
            aliases = "/".join(spec.aliases)
            lines.append(f"/{spec.name} ({aliases}) - {spec.description}")
        return "\n".join(lines)

    async def _mute(
        self, event: CanonicalInboundEvent, args: CommandArgs
    ) -> Optional[str]:
        if args.target is None:
            return None
        minutes = DEFAULT_MUTE_MINUTES
        if args.values and is_numeric_id(args.values[0]):
            minutes = min(int(args.values[0]), MAX_MUTE_MINUTES)
        await self._call(
            "set_group_ban",
            group_id=int(event.group_id or 0),
            user_id=int(args.target),
            duration=minutes * 60,
        )
        return f"已禁言 {args.target} {minutes} 分钟"

    async def _unmute(
        self, event: CanonicalInboundEvent, args: CommandArgs
    ) -> Optional[str]:
        if args.target is None:
            return None
        await self._call(
            "set_group_ban",
            group_id=int(event.group_id or 0),
            user_id=int(args.target),
            duration=0,
        )
        return f"已解除 {args.target} 的禁言"

    async def _kick(
        self, event: CanonicalInboundEvent, args: CommandArgs
    ) -> Optional[str]:
        if args.target is None:
            return None
        await self._call(
            "set_group_kick",
            group_id=int(event.group_id or 0),
            user_id=int(args.target),
            reject_add_request=False,
        )
        self._registry.members.invalidate(event.group_id, args.target)
        return f"已将 {args.target} 移出群聊"

    async def _muteall(self, event: CanonicalInboundEvent, args: CommandArgs) -> str:
        enable = not (args.values and args.values[0].lower() in {"off", "关", "关闭", "0"})
        await self._call(
            "set_group_whole_ban", group_id=int(event.group_id or 0), enable=enable
        )
        return "已开启全员禁言" if enable else "已关闭全员禁言"

    async def _card(
        self, event: CanonicalInboundEvent, args: CommandArgs
    ) -> Optional[str]:
        if args.target is None or not args.rest:
            return None
        await self._call(
            "set_group_card",
            group_id=int(event.group_id or 0),
            user_id=int(args.target),
            card=args.rest,
        )
        self._registry.members.set_name(event.group_id, args.target, args.rest)
        return f"已将 {args.target} 的名片设置为 {args.rest}"

    async def _title(
        self, event: CanonicalInboundEvent, args: CommandArgs
    ) -> Optional[str]:
        if args.target is None or not args.rest:
            return None
        await self._call(
            "set_group_special_title",
            group_id=int(event.group_id or 0),
            user_id=int(args.target),
            special_title=args.rest,
            duration=-1,
        )
        return f"已为 {args.target} 设置头衔 {args.rest}"

    async def _essence(
        self, event: CanonicalInboundEvent, args: CommandArgs
    ) -> Optional[str]:
        if not event.reply_to_id:
            return None
        await self._call("set_essence_msg", message_id=int(event.reply_to_id))
        return "已设为精华消息"

    async def _unessence(
        self, event: CanonicalInboundEvent, args: CommandArgs
    ) -> Optional[str]:
        if not event.reply_to_id:
            return None
        await self._call("delete_essence_msg", message_id=int(event.reply_to_id))
        return "已取消精华消息"

    async def _recall(
        self, event: CanonicalInboundEvent, args: CommandArgs
    ) -> Optional[str]:
        if not event.reply_to_id:
            return None
        await self._call("delete_msg", message_id=int(event.reply_to_id))
        return "已撤回该消息"

    async def _like(
        self, event: CanonicalInboundEvent, args: CommandArgs
    ) -> Optional[str]:
        if args.target is None:
            return None
        times = DEFAULT_LIKE_TIMES
        if args.values and is_numeric_id(args.values[0]):
            times = max(1, min(int(args.values[0]), MAX_LIKE_TIMES))
        await self._call("send_like", user_id=int(args.target), times=times)
        return f"已为 {args.target} 点赞 {times} 次"

    async def _honor(self, event: CanonicalInboundEvent, args: CommandArgs) -> str:
        data = await self._call(
            "get_group_honor_info", group_id=int(event.group_id or 0), type="all"
        )
        return format_honor_info(data)

    async def _signin(self, event: CanonicalInboundEvent, args: CommandArgs) -> str:
        group_id = int(event.group_id or 0)
        await self._transport.send_request_first(
            [
                ("send_group_sign_in", {"group_id": group_id}),
                ("set_group_sign", {"group_id": str(group_id)}),
            ]
        )
        return "群打卡完成"

    async def _notice(
        self, event: CanonicalInboundEvent, args: CommandArgs
    ) -> Optional[str]:
        content = strip_command_head(event.command_text or event.text, self._aliases)
        if not content:
            return None
        await self._call(
            "_send_group_notice", group_id=int(event.group_id or 0), content=content
        )
        return "群公告已发布"

    async def _cleancache(self, event: CanonicalInboundEvent, args: CommandArgs) -> str:
        await self._call("clean_cache")
        if event.group_id:
            self._registry.members.invalidate(event.group_id)
        return "缓存已清理"


def strip_command_head(text: str, aliases: dict[str, str]) -> str:
    """Everything after the command word, mentions included."""

    stripped = strip_leading_mention(text)
    command = match_alias_prefix(
        stripped, aliases, require_separator=True
    ) or parse_chat_command(stripped)
    return command.args if command is not None else ""


_HONOR_LABELS = (
    ("current_talkative", "龙王"),
    ("talkative_list", "历史龙王"),
    ("performer_list", "群聊之火"),
    ("legend_list", "群聊炽焰"),
    ("strong_newbie_list", "冒尖小春笋"),
    ("emotion_list", "快乐之源"),
)


def format_honor_info(data: Any) -> str:
    if not isinstance(data, dict):
        return "暂无群荣誉信息"
    lines = ["群荣誉:"]
    for key, label in _HONOR_LABELS:
        value = data.get(key)
        if isinstance(value, dict) and value:
            lines.append(f"{label}: {value.get('nickname') or value.get('user_id')}")
        elif isinstance(value, list) and value:
            names = [
                str(item.get("nickname") or item.get("user_id"))
                for item in value[:3]
                if isinstance(item, dict)
            ]
            if names:
                lines.append(f"{label}: {', '.join(names)}")
    if len(lines) == 1:
        return "暂无群荣誉信息"
    return "\n".join(lines)
