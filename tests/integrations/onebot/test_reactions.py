from __future__ import annotations

import logging
from typing import Any

import pytest

from onebot_bridge.integrations.onebot.config import ReactionSettings
from onebot_bridge.integrations.onebot.constants import (
    EMOJI_CRYING,
    EMOJI_EYES,
    EMOJI_HEART,
    EMOJI_LAUGHING,
    EMOJI_OK,
    EMOJI_THUMBS_UP,
)
from onebot_bridge.integrations.onebot.reactions import (
    ReactionEngine,
    classify_reaction,
    extract_reply_marker,
)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("", None),
        ("/status", None),
        ("@10000 /help", None),
        ("你好", None),
        ("谢谢", None),
        ("Thanks!", None),
        ("哈哈哈太好笑了", EMOJI_LAUGHING),
        ("爱你哦", EMOJI_HEART),
        ("你太厉害了", EMOJI_THUMBS_UP),
        ("今天好难过", EMOJI_CRYING),
        ("帮我查一下天气", EMOJI_OK),
        ("这个怎么用？", EMOJI_OK),
        ("今天吃了火锅", EMOJI_EYES),
    ],
)
def test_classify_reaction(text: str, expected: str | None) -> None:
    assert classify_reaction(text) == expected


def test_sentiment_categories_win_over_questions() -> None:
    assert classify_reaction("哈哈哈这是什么") == EMOJI_LAUGHING


@pytest.mark.parametrize(
    ("text", "emoji", "rest"),
    [
        ("[task:ok] 已完成", EMOJI_OK, "已完成"),
        ("[task:emoji_only]", EMOJI_OK, ""),
        ("[reaction:128514] 笑死", "128514", "笑死"),
        ("plain reply", None, "plain reply"),
        ("see [task:ok] later", None, "see [task:ok] later"),
        (None, None, ""),
    ],
)
def test_extract_reply_marker(text: str | None, emoji: str | None, rest: str) -> None:
    assert extract_reply_marker(text) == (emoji, rest)


def _engine(transport: Any, value: Any) -> ReactionEngine:
    return ReactionEngine(
        ReactionSettings.parse(value),
        transport,
        logger=logging.getLogger("test.onebot.reactions"),
    )


@pytest.mark.anyio
async def test_static_mode_reacts_to_every_message(fake_transport: Any) -> None:
    engine = _engine(fake_transport, "128077")

    assert await engine.react_on_receipt("1", "/status") == "128077"
    assert await engine.react_on_receipt("2", "哈哈哈") == "128077"
    assert await engine.react_on_reply("2", marker_emoji=EMOJI_OK) is None
    assert fake_transport.reactions == [("1", "128077", True), ("2", "128077", True)]


@pytest.mark.anyio
async def test_auto_mode_applies_at_most_once_per_message(fake_transport: Any) -> None:
    engine = _engine(fake_transport, "auto")

    assert await engine.react_on_receipt("1", "哈哈哈太好笑了") == EMOJI_LAUGHING
    assert await engine.react_on_reply("1", marker_emoji=EMOJI_OK) is None
    assert engine.has_applied("1")
    assert fake_transport.reactions == [("1", EMOJI_LAUGHING, True)]


@pytest.mark.anyio
async def test_auto_mode_uses_reply_marker_when_receipt_had_none(
    fake_transport: Any,
) -> None:
    engine = _engine(fake_transport, "auto")

    assert await engine.react_on_receipt("7", "/status") is None
    emoji, _rest = extract_reply_marker("[task:ok] done")
    assert await engine.react_on_reply("7", marker_emoji=emoji) == EMOJI_OK
    assert fake_transport.reactions == [("7", EMOJI_OK, True)]


@pytest.mark.anyio
async def test_explicit_reaction_beats_marker(fake_transport: Any) -> None:
    engine = _engine(fake_transport, "auto")

    assert (
        await engine.react_on_reply("9", marker_emoji=EMOJI_OK, explicit_emoji="128147")
        == "128147"
    )


@pytest.mark.anyio
async def test_off_mode_never_reacts(fake_transport: Any) -> None:
    engine = _engine(fake_transport, "off")

    assert await engine.react_on_receipt("1", "哈哈哈") is None
    assert await engine.react_on_reply("1", marker_emoji=EMOJI_OK) is None
    assert fake_transport.reactions == []


@pytest.mark.anyio
async def test_reaction_failures_are_logged_not_raised(
    caplog: pytest.LogCaptureFixture,
) -> None:
    class _FailingTransport:
        async def set_msg_emoji_like(
            self, message_id: Any, emoji_id: str, *, set_like: bool = True
        ) -> None:
            raise RuntimeError("gateway refused")

    engine = _engine(_FailingTransport(), "auto")
    with caplog.at_level(logging.WARNING, logger="test.onebot.reactions"):
        assert await engine.react_on_receipt("1", "哈哈哈") is None

    assert "onebot.reaction.failed" in caplog.text


@pytest.mark.anyio
async def test_on_demand_react_and_remove(fake_transport: Any) -> None:
    engine = _engine(fake_transport, "auto")

    await engine.react("5", "128077")
    await engine.react("5", "128077", remove=True)
    with pytest.raises(ValueError):
        await engine.react("5", None)

    assert fake_transport.reactions == [("5", "128077", True), ("5", "128077", False)]
