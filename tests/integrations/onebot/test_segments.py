from __future__ import annotations

from onebot_bridge.integrations.onebot.segments import (
    Segment,
    at_segment,
    coerce_segments,
    escape_cq,
    redact_cq,
    to_wire,
    tokenize_cq,
)


def test_tokenize_cq_splits_text_and_codes() -> None:
    segments = tokenize_cq("hi [CQ:at,qq=10000] look [CQ:image,file=a.png,url=https://x/a.png]")

    assert segments == [
        Segment(type="text", data={"text": "hi "}),
        Segment(type="at", data={"qq": "10000"}),
        Segment(type="text", data={"text": " look "}),
        Segment(type="image", data={"file": "a.png", "url": "https://x/a.png"}),
    ]


def test_tokenize_cq_adjacent_codes_yield_no_empty_text() -> None:
    assert tokenize_cq("[CQ:face,id=1][CQ:image,file=a.png]") == [
        Segment(type="face", data={"id": "1"}),
        Segment(type="image", data={"file": "a.png"}),
    ]
    assert tokenize_cq("[CQ:face,id=1]tail") == [
        Segment(type="face", data={"id": "1"}),
        Segment(type="text", data={"text": "tail"}),
    ]


def test_tokenize_cq_unescapes_params_and_text() -> None:
    segments = tokenize_cq("a&amp;b [CQ:text,text=x&#44;y&#91;z&#93;]")

    assert segments[0].get("text") == "a&b "
    assert segments[1].get("text") == "x,y[z]"


def test_tokenize_cq_keeps_malformed_codes_as_text() -> None:
    assert tokenize_cq("[CQ:at,qq=1") == [
        Segment(type="text", data={"text": "[CQ:at,qq=1"})
    ]
    assert tokenize_cq("[CQ:bad type,x=1]") == [
        Segment(type="text", data={"text": "[CQ:bad type,x=1]"})
    ]
    assert tokenize_cq("[CQ:at,novalue]") == [
        Segment(type="text", data={"text": "[CQ:at,novalue]"})
    ]


def test_escape_cq_round_trips_special_characters() -> None:
    text = "a[b],c&d"
    escaped = escape_cq(text, in_param=True)
    assert "[" not in escaped and "," not in escaped
    assert tokenize_cq(f"[CQ:text,text={escaped}]")[0].get("text") == text


def test_coerce_segments_skips_invalid_items() -> None:
    segments = coerce_segments(
        [
            {"type": "text", "data": {"text": "hi"}},
            {"type": "", "data": {}},
            "garbage",
            {"type": "face"},
        ]
    )

    assert segments == [
        Segment(type="text", data={"text": "hi"}),
        Segment(type="face", data={}),
    ]
    assert coerce_segments(None) == []


def test_redact_cq_replaces_media_and_drops_unknown_codes() -> None:
    text = "看 [CQ:face,id=1]  [CQ:image,file=a.png] [CQ:reply,id=5]图片"
    assert redact_cq(text) == "看 [emoji] [image] 图片"
    assert redact_cq(None) == ""


def test_to_wire_serializes_segments() -> None:
    assert to_wire([at_segment(42)]) == [{"type": "at", "data": {"qq": "42"}}]
