"""OneBot message segments and the CQ-code tokenizer.

Messages arrive either as a segment array (``[{"type": ..., "data": {...}}]``)
or as a flat string with inline ``[CQ:type,key=value]`` codes. Both forms are
reduced to a list of :class:`Segment`. Tokenizing never raises: anything that
does not form a complete code is kept as literal text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

_CQ_PREFIX = "[CQ:"
_CQ_TYPE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_WHITESPACE_RE = re.compile(r"\s+")

_TEXT_UNESCAPES = (("&#91;", "["), ("&#93;", "]"), ("&amp;", "&"))
_PARAM_UNESCAPES = (("&#44;", ","),) + _TEXT_UNESCAPES


@dataclass(frozen=True)
class Segment:
    type: str
    data: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "data": dict(self.data)}


def unescape_cq(text: str, *, in_param: bool = False) -> str:
    result = text
    for escaped, plain in _PARAM_UNESCAPES if in_param else _TEXT_UNESCAPES:
        result = result.replace(escaped, plain)
    return result


def escape_cq(text: str, *, in_param: bool = False) -> str:
    result = text.replace("&", "&amp;").replace("[", "&#91;").replace("]", "&#93;")
    if in_param:
        result = result.replace(",", "&#44;")
    return result


def _parse_code(body: str) -> Optional[Segment]:
    parts = body.split(",")
    seg_type = parts[0].strip()
    if not _CQ_TYPE_RE.match(seg_type):
        return None
    data: dict[str, Any] = {}
    for part in parts[1:]:
        if not part:
            continue
        key, sep, value = part.partition("=")
        if not sep or not key.strip():
            return None
        data[key.strip()] = unescape_cq(value, in_param=True)
    return Segment(type=seg_type, data=data)


def tokenize_cq(text: str) -> list[Segment]:
    """Split a flat CQ string into text and code segments."""

    if not text:
        return []
    segments: list[Segment] = []
    buffer: list[str] = []
    index = 0
    length = len(text)

    def flush() -> None:
        joined = "".join(buffer)
        buffer.clear()
        if joined:
            segments.append(Segment(type="text", data={"text": unescape_cq(joined)}))

    while index < length:
        start = text.find(_CQ_PREFIX, index)
        if start == -1:
            buffer.append(text[index:])
            break
        end = text.find("]", start)
        if end == -1:
            buffer.append(text[index:])
            break
        code = _parse_code(text[start + len(_CQ_PREFIX) : end])
        if code is None:
            buffer.append(text[index : start + 1])
            index = start + 1
            continue
        buffer.append(text[index:start])
        flush()
        segments.append(code)
        index = end + 1
    flush()
    return segments


def coerce_segments(message: Any) -> list[Segment]:
    """Normalize a wire ``message`` field into segments."""

    if isinstance(message, str):
        return tokenize_cq(message)
    if not isinstance(message, list):
        return []
    segments: list[Segment] = []
    for item in message:
        if not isinstance(item, dict):
            continue
        seg_type = item.get("type")
        if not isinstance(seg_type, str) or not seg_type:
            continue
        data = item.get("data")
        segments.append(
            Segment(type=seg_type, data=dict(data) if isinstance(data, dict) else {})
        )
    return segments


_FLAT_PLACEHOLDERS = {
    "face": "[emoji]",
    "mface": "[emoji]",
    "image": "[image]",
    "record": "[voice]",
    "video": "[video]",
}


def redact_cq(text: Optional[str]) -> str:
    """Replace inline CQ codes in a flat string with readable placeholders.

    Faces become ``[emoji]``, images ``[image]``; codes without a placeholder
    are removed. Whitespace is collapsed.
    """

    if not text:
        return ""
    pieces: list[str] = []
    for segment in tokenize_cq(text):
        if segment.type == "text":
            pieces.append(str(segment.get("text", "")))
            continue
        placeholder = _FLAT_PLACEHOLDERS.get(segment.type)
        if placeholder:
            pieces.append(placeholder)
    return _WHITESPACE_RE.sub(" ", "".join(pieces)).strip()


def text_segment(text: str) -> Segment:
    return Segment(type="text", data={"text": text})


def at_segment(user_id: Any) -> Segment:
    return Segment(type="at", data={"qq": str(user_id)})


def reply_segment(message_id: Any) -> Segment:
    return Segment(type="reply", data={"id": str(message_id)})


def image_segment(file: str) -> Segment:
    return Segment(type="image", data={"file": file})


def record_segment(file: str) -> Segment:
    return Segment(type="record", data={"file": file})


def video_segment(file: str) -> Segment:
    return Segment(type="video", data={"file": file})


def to_wire(segments: Iterable[Segment]) -> list[dict[str, Any]]:
    return [segment.to_wire() for segment in segments]
