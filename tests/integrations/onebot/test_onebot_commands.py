from __future__ import annotations

import logging
from typing import Any, Optional

import pytest

from onebot_bridge.integrations.chat.commands import ChatCommand
from onebot_bridge.integrations.onebot.caches import BridgeRegistry
from onebot_bridge.integrations.onebot.commands import (
    DEFAULT_MUTE_MINUTES,
    MAX_LIKE_TIMES,
    CommandRouter,
    build_alias_index,
    format_honor_info,
    parse_command_args,
    resolve_command,
)
from onebot_bridge.integrations.onebot.config import OneBotConfig
from onebot_bridge.integrations.onebot.errors import OneBotActionError
from onebot_bridge.integrations.onebot.events import ConversationKind
from onebot_bridge.integrations.onebot.normalizer import CanonicalInboundEvent


def _event(
    text: str,
    *,
    is_admin: bool = True,
    kind: ConversationKind = ConversationKind.GROUP,
    mentioned: tuple[str, ...] = (),
    command_text: Optional[str] = None,
    reply_to_id: Optional[str] = None,
) -> CanonicalInboundEvent:
    return CanonicalInboundEvent(
        timestamp=1700000000,
        account_id="default",
        kind=kind,
        sender_id="1",
        sender_name="admin",
        user_id="1",
        group_id="900" if kind == ConversationKind.GROUP else None,
        guild_id="g" if kind == ConversationKind.GUILD else None,
        channel_id="c" if kind == ConversationKind.GUILD else None,
        text=text,
        raw_text=text,
        is_admin=is_admin,
        message_id="555",
        mentioned_user_ids=mentioned,
        command_text=command_text if command_text is not None else text,
        reply_to_id=reply_to_id,
    )


class _Replies:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def __call__(self, _event: CanonicalInboundEvent, text: str) -> None:
        self.messages.append(text)


def _router(
    transport: Any,
    replies: _Replies,
    registry: Optional[BridgeRegistry] = None,
    **overrides: Any,
) -> CommandRouter:
    config = OneBotConfig.from_raw(
        {"ws_url": "ws://127.0.0.1:3001", "admins": ["1"], **overrides}, env={}
    )
    return CommandRouter(
        config,
        transport,
        registry or BridgeRegistry(),
        reply=replies,
        logger=logging.getLogger("test.onebot.commands"),
    )


def test_resolve_command_prefers_longest_alias() -> None:
    aliases = build_alias_index()

    unmute = resolve_command("解除禁言 @2", aliases)
    mute = resolve_command("禁言 @2 5", aliases)

    assert unmute is not None and unmute.name == "unmute"
    assert mute is not None and mute.name == "mute"
    assert mute.args == "@2 5"


def test_resolve_command_accepts_slash_names_from_table_only() -> None:
    aliases = build_alias_index()

    status = resolve_command("@10000 /status", aliases)

    assert status is not None and status.name == "status"
    assert resolve_command("/unknown", aliases) is None
    assert resolve_command("hello", aliases) is None


def test_parse_command_args_prefers_mention_over_digits() -> None:
    command = ChatCommand(name="mute", args="@77 10", raw="禁言 @77 10")

    with_mention = parse_command_args(command, _event("x", mentioned=("77",)))
    without = parse_command_args(
        ChatCommand(name="mute", args="88 10", raw="禁言 88 10"), _event("x")
    )

    assert (with_mention.target, with_mention.values) == ("77", ("10",))
    assert (without.target, without.values) == ("88", ("10",))


def test_parse_command_args_accepts_ascii_digits_only() -> None:
    superscript = parse_command_args(
        ChatCommand(name="kick", args="²", raw="踢 ²"), _event("x")
    )
    odd_mention = parse_command_args(
        ChatCommand(name="kick", args="@all", raw="踢 @all"),
        _event("x", mentioned=("all", "①")),
    )

    assert (superscript.target, superscript.values) == (None, ("²",))
    assert odd_mention.target is None


def test_resolve_command_short_alias_needs_separator() -> None:
    aliases = build_alias_index()

    assert resolve_command("公告什么时候发", aliases) is None
    assert resolve_command("踢球去吗", aliases) is None
    kick = resolve_command("踢@bob", aliases)
    notice = resolve_command("公告", aliases)

    assert kick is not None and kick.name == "kick"
    assert notice is not None and notice.name == "notice"


@pytest.mark.anyio
async def test_non_admin_messages_are_not_commands(fake_transport: Any) -> None:
    replies = _Replies()
    router = _router(fake_transport, replies)

    assert await router.route(_event("禁言 @77", is_admin=False, mentioned=("77",))) is False
    assert fake_transport.requests == []


@pytest.mark.anyio
async def test_guild_messages_are_not_commands(fake_transport: Any) -> None:
    router = _router(fake_transport, _Replies())

    assert await router.route(_event("/status", kind=ConversationKind.GUILD)) is False


@pytest.mark.anyio
async def test_mute_uses_mentioned_target_and_default_duration(
    fake_transport: Any,
) -> None:
    replies = _Replies()
    router = _router(fake_transport, replies)

    consumed = await router.route(
        _event("禁言 @bob", mentioned=("77",), command_text="禁言 @77")
    )

    assert consumed is True
    assert fake_transport.requests == [
        (
            "set_group_ban",
            {"group_id": 900, "user_id": 77, "duration": DEFAULT_MUTE_MINUTES * 60},
        )
    ]
    assert replies.messages == [f"已禁言 77 {DEFAULT_MUTE_MINUTES} 分钟"]


@pytest.mark.anyio
async def test_mute_with_explicit_minutes(fake_transport: Any) -> None:
    router = _router(fake_transport, _Replies())

    await router.route(_event("/mute 88 5"))

    assert fake_transport.requests[0][1]["duration"] == 300


@pytest.mark.anyio
async def test_missing_target_is_a_silent_no_op(fake_transport: Any) -> None:
    replies = _Replies()
    router = _router(fake_transport, replies)

    assert await router.route(_event("踢出")) is True
    assert fake_transport.requests == []
    assert replies.messages == []


@pytest.mark.anyio
async def test_non_ascii_digits_are_not_targets(fake_transport: Any) -> None:
    replies = _Replies()
    router = _router(fake_transport, replies)

    assert await router.route(_event("踢 ²")) is True
    assert await router.route(_event("禁言 88 ²")) is True

    assert fake_transport.requests == [
        (
            "set_group_ban",
            {"group_id": 900, "user_id": 88, "duration": DEFAULT_MUTE_MINUTES * 60},
        )
    ]
    assert replies.messages == [f"已禁言 88 {DEFAULT_MUTE_MINUTES} 分钟"]


@pytest.mark.anyio
async def test_chat_that_starts_with_an_alias_is_not_a_command(
    fake_transport: Any,
) -> None:
    replies = _Replies()
    router = _router(fake_transport, replies)

    assert await router.route(_event("公告什么时候发")) is False
    assert await router.route(_event("踢出去吧")) is False
    assert fake_transport.requests == []
    assert replies.messages == []


@pytest.mark.anyio
async def test_group_only_commands_do_nothing_in_private(fake_transport: Any) -> None:
    replies = _Replies()
    router = _router(fake_transport, replies)

    assert await router.route(_event("禁言 88", kind=ConversationKind.DIRECT)) is True
    assert fake_transport.requests == []
    assert replies.messages == []


@pytest.mark.anyio
async def test_gateway_failure_replies_with_error(fake_transport: Any) -> None:
    fake_transport.responses["set_group_kick"] = OneBotActionError(
        "set_group_kick", retcode=102
    )
    replies = _Replies()
    router = _router(fake_transport, replies)

    assert await router.route(_event("踢 88")) is True
    assert replies.messages == ["操作失败：kick"]


@pytest.mark.anyio
async def test_kick_invalidates_member_cache(fake_transport: Any) -> None:
    registry = BridgeRegistry()
    registry.members.set_name(900, 88, "gone")
    router = _router(fake_transport, _Replies(), registry)

    await router.route(_event("/kick 88"))

    assert registry.members.get_name(900, 88) is None
    assert fake_transport.requests[0] == (
        "set_group_kick",
        {"group_id": 900, "user_id": 88, "reject_add_request": False},
    )


@pytest.mark.anyio
async def test_card_sets_name_and_updates_cache(fake_transport: Any) -> None:
    registry = BridgeRegistry()
    router = _router(fake_transport, _Replies(), registry)

    await router.route(_event("设置名片 88 新 名字"))

    assert fake_transport.requests[0] == (
        "set_group_card",
        {"group_id": 900, "user_id": 88, "card": "新 名字"},
    )
    assert registry.members.get_name(900, 88) == "新 名字"


@pytest.mark.anyio
async def test_recall_requires_reply(fake_transport: Any) -> None:
    replies = _Replies()
    router = _router(fake_transport, replies)

    await router.route(_event("撤回"))
    await router.route(_event("撤回", reply_to_id="321"))

    assert fake_transport.requests == [("delete_msg", {"message_id": 321})]
    assert replies.messages == ["已撤回该消息"]


@pytest.mark.anyio
async def test_like_clamps_times_and_works_in_private(fake_transport: Any) -> None:
    router = _router(fake_transport, _Replies())

    await router.route(_event("点赞 88 99", kind=ConversationKind.DIRECT))

    assert fake_transport.requests == [
        ("send_like", {"user_id": 88, "times": MAX_LIKE_TIMES})
    ]


@pytest.mark.anyio
async def test_muteall_toggles(fake_transport: Any) -> None:
    replies = _Replies()
    router = _router(fake_transport, replies)

    await router.route(_event("全员禁言"))
    await router.route(_event("全员禁言 off"))

    assert [params["enable"] for _action, params in fake_transport.requests] == [
        True,
        False,
    ]
    assert replies.messages == ["已开启全员禁言", "已关闭全员禁言"]


@pytest.mark.anyio
async def test_notice_posts_remaining_text(fake_transport: Any) -> None:
    router = _router(fake_transport, _Replies())

    await router.route(_event("发公告 明天 停机维护"))

    assert fake_transport.requests == [
        ("_send_group_notice", {"group_id": 900, "content": "明天 停机维护"})
    ]


@pytest.mark.anyio
async def test_feature_gated_commands_need_config(fake_transport: Any) -> None:
    disabled = _router(fake_transport, _Replies())
    assert await disabled.route(_event("群打卡")) is False

    replies = _Replies()
    enabled = _router(fake_transport, replies, enable_group_sign_in=True)
    assert await enabled.route(_event("群打卡")) is True
    assert fake_transport.requests == [("send_group_sign_in", {"group_id": 900})]
    assert replies.messages == ["群打卡完成"]


@pytest.mark.anyio
async def test_help_lists_enabled_commands(fake_transport: Any) -> None:
    replies = _Replies()
    router = _router(fake_transport, replies)

    await router.route(_event("/help", kind=ConversationKind.DIRECT))

    assert replies.messages[0].startswith("可用指令:")
    assert "/mute" in replies.messages[0]
    assert "/honor" not in replies.messages[0]


def test_format_honor_info() -> None:
    text = format_honor_info(
        {
            "current_talkative": {"user_id": 1, "nickname": "dragon"},
            "performer_list": [{"nickname": "a"}, {"user_id": 2}],
        }
    )

    assert text == "群荣誉:\n龙王: dragon\n群聊之火: a, 2"
    assert format_honor_info(None) == "暂无群荣誉信息"
    assert format_honor_info({}) == "暂无群荣誉信息"
