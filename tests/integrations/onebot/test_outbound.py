from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any

import pytest

from onebot_bridge.integrations.onebot.config import OneBotConfig
from onebot_bridge.integrations.onebot.errors import OneBotTargetError
from onebot_bridge.integrations.onebot.outbound import (
    MASKED_URL_TEXT,
    GroupTarget,
    GuildTarget,
    OutboundDispatcher,
    PrivateTarget,
    break_urls,
    format_target,
    parse_target,
    resolve_local_media,
    strip_markdown,
)


class _Clock:
    def __init__(self) -> None:
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


def _dispatcher(
    transport: Any, clock: _Clock | None = None, **overrides: Any
) -> OutboundDispatcher:
    config = OneBotConfig.from_raw({"ws_url": "ws://127.0.0.1:3001", **overrides}, env={})
    return OutboundDispatcher(
        config,
        transport,
        logger=logging.getLogger("test.onebot.outbound"),
        sleep_fn=(clock or _Clock()).sleep,
    )


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("group:123", GroupTarget(group_id="123")),
        ("private:456", PrivateTarget(user_id="456")),
        ("789", PrivateTarget(user_id="789")),
        (" 789 ", PrivateTarget(user_id="789")),
        ("guild:g1:c2", GuildTarget(guild_id="g1", channel_id="c2")),
    ],
)
def test_parse_target(value: str, expected: Any) -> None:
    assert parse_target(value) == expected


@pytest.mark.parametrize(
    "value", ["guild:9", "guild:g1:", "group:abc", "private:", "alice", ""]
)
def test_parse_target_rejects_malformed_values(value: str) -> None:
    with pytest.raises(OneBotTargetError):
        parse_target(value)


def test_format_target_round_trips() -> None:
    for value in ("group:1", "private:2", "guild:a:b"):
        assert format_target(parse_target(value)) == value


def test_strip_markdown() -> None:
    text = "# Title\n**bold** and *it* with `code`\n> quoted\n[site](https://a.io)"
    assert strip_markdown(text) == (
        "Title\nbold and it with code\n▎quoted\nsite (https://a.io)"
    )


def test_break_urls_only_touches_hosts() -> None:
    assert break_urls("see https://example.com/a.b?q=1 now") == (
        "see https://example。com/a.b?q=1 now"
    )


def test_resolve_local_media_inlines_files(tmp_path: Path) -> None:
    path = tmp_path / "pic.png"
    path.write_bytes(b"\x89PNG")
    expected = "base64://" + base64.b64encode(b"\x89PNG").decode("ascii")

    assert resolve_local_media(str(path)) == expected
    assert resolve_local_media(path.as_uri()) == expected
    assert resolve_local_media("https://cdn/x.png") == "https://cdn/x.png"
    assert resolve_local_media(str(tmp_path / "missing.png")) == str(
        tmp_path / "missing.png"
    )


@pytest.mark.anyio
async def test_send_text_splits_and_paces(fake_transport: Any) -> None:
    clock = _Clock()
    dispatcher = _dispatcher(
        fake_transport, clock, max_message_length=4, rate_limit_ms=250
    )

    sent = await dispatcher.send_text(PrivateTarget(user_id="42"), "abcdefghij")

    assert sent == 3
    assert fake_transport.texts() == ["abcd", "efgh", "ij"]
    assert clock.sleeps == [0.25, 0.25]
    assert {kind for kind, _target, _msg in fake_transport.sent} == {"private"}


@pytest.mark.anyio
async def test_send_text_mentions_sender_in_groups(fake_transport: Any) -> None:
    dispatcher = _dispatcher(fake_transport)

    await dispatcher.send_text(GroupTarget(group_id="900"), "hi", mention_user_id="42")
    await dispatcher.send_text(PrivateTarget(user_id="42"), "hi", mention_user_id="42")

    assert fake_transport.sent[0] == (
        "group",
        "900",
        [
            {"type": "at", "data": {"qq": "42"}},
            {"type": "text", "data": {"text": " hi"}},
        ],
    )
    assert fake_transport.sent[1][2] == [{"type": "text", "data": {"text": "hi"}}]


@pytest.mark.anyio
async def test_send_text_to_guild_channel(fake_transport: Any) -> None:
    dispatcher = _dispatcher(fake_transport)

    await dispatcher.send_text(GuildTarget(guild_id="g", channel_id="c"), "hello")

    assert fake_transport.sent[0][:2] == ("guild", "g:c")


@pytest.mark.anyio
async def test_prepare_text_applies_markdown_and_anti_risk(fake_transport: Any) -> None:
    dispatcher = _dispatcher(fake_transport, format_markdown=True, anti_risk_mode=True)

    assert await dispatcher.prepare_text("**go** to https://a.example.com") == (
        "go to https://a。example。com"
    )


@pytest.mark.anyio
async def test_url_check_masks_dangerous_links(fake_transport: Any) -> None:
    fake_transport.responses["check_url_safely"] = lambda params: {
        "level": 3 if "evil" in params["url"] else 1
    }
    dispatcher = _dispatcher(fake_transport, enable_url_check=True)

    result = await dispatcher.prepare_text("a https://evil.test/x b https://ok.test")

    assert result == f"a {MASKED_URL_TEXT} b https://ok.test"


@pytest.mark.anyio
async def test_dispatch_sends_text_then_media(fake_transport: Any) -> None:
    clock = _Clock()
    dispatcher = _dispatcher(fake_transport, clock)

    sends = await dispatcher.dispatch(
        GroupTarget(group_id="900"),
        text="here you go",
        media_urls=["https://cdn/a.jpg", "https://cdn/v.mp3", "https://cdn/r.pdf"],
    )

    assert sends == 4
    assert [msg[0]["type"] for _k, _t, msg in fake_transport.sent] == [
        "text",
        "image",
        "record",
    ]
    assert fake_transport.requests == [
        (
            "upload_group_file",
            {"group_id": 900, "file": "https://cdn/r.pdf", "name": "r.pdf"},
        )
    ]
    assert clock.sleeps == [1.0, 1.0, 1.0]


@pytest.mark.anyio
async def test_failed_upload_falls_back_to_link(fake_transport: Any) -> None:
    fake_transport.responses["upload_private_file"] = RuntimeError("no upload")
    dispatcher = _dispatcher(fake_transport)

    await dispatcher.send_media(PrivateTarget(user_id="42"), "https://cdn/r.pdf")

    assert fake_transport.texts() == ["https://cdn/r.pdf"]


@pytest.mark.anyio
async def test_tts_replaces_text_for_groups(fake_transport: Any) -> None:
    dispatcher = _dispatcher(fake_transport, enable_tts=True, ai_voice_id="lucy")

    await dispatcher.dispatch(GroupTarget(group_id="900"), text="hello")

    assert fake_transport.requests == [
        ("send_group_ai_record", {"group_id": 900, "character": "lucy", "text": "hello"})
    ]
    assert fake_transport.sent == []


@pytest.mark.anyio
async def test_tts_failure_falls_back_to_text(fake_transport: Any) -> None:
    fake_transport.responses["send_group_ai_record"] = RuntimeError("no voice")
    dispatcher = _dispatcher(fake_transport, enable_tts=True, ai_voice_id="lucy")

    await dispatcher.dispatch(GroupTarget(group_id="900"), text="hello")

    assert fake_transport.texts() == ["hello"]
