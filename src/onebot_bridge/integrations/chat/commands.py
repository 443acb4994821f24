"""Platform-agnostic command models and lightweight parsing helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

MIN_COMMAND_NAME_LENGTH = 1
MAX_COMMAND_NAME_LENGTH = 32
_COMMAND_NAME_CHARCLASS = "a-z0-9_"
_SLASH_COMMAND_PATTERN = (
    rf"^/([{_COMMAND_NAME_CHARCLASS}]"
    rf"{{{MIN_COMMAND_NAME_LENGTH},{MAX_COMMAND_NAME_LENGTH}}})$"
)
_SLASH_COMMAND_RE = re.compile(_SLASH_COMMAND_PATTERN)
_LEADING_MENTION_RE = re.compile(r"^\s*@\S+\s*")


@dataclass(frozen=True)
class ChatCommand:
    """Normalized command token parsed from chat text."""

    name: str
    args: str
    raw: str


def strip_leading_mention(text: str) -> str:
    """Drop one leading ``@name`` token and surrounding whitespace."""

    return _LEADING_MENTION_RE.sub("", str(text or ""), count=1).strip()


def parse_chat_command(text: str) -> Optional[ChatCommand]:
    """Parse a leading slash command from plain text.

    Uppercase names are folded; tokens with characters outside
    ``[a-z0-9_]`` are rejected.
    """

    raw = str(text or "").strip()
    if not raw or not raw.startswith("/"):
        return None
    parts = raw.split(None, 1)
    token = parts[0].lower()
    remainder = parts[1] if len(parts) > 1 else ""
    match = _SLASH_COMMAND_RE.match(token)
    if match is None:
        return None
    return ChatCommand(name=match.group(1), args=remainder.strip(), raw=raw)


def match_alias_prefix(
    text: str, aliases: dict[str, str], *, require_separator: bool = False
) -> Optional[ChatCommand]:
    """Match the longest alias that prefixes ``text``.

    ``aliases`` maps alias text to canonical command name. With
    ``require_separator``, the alias must end the text or be followed by
    whitespace or an ``@`` mention, so "公告什么时候发" does not match "公告".
    """

    raw = str(text or "").strip()
    if not raw:
        return None
    for alias in sorted(aliases, key=len, reverse=True):
        if not alias or not raw.startswith(alias):
            continue
        remainder = raw[len(alias) :]
        if require_separator and remainder and not (
            remainder[0].isspace() or remainder[0] == "@"
        ):
            continue
        return ChatCommand(name=aliases[alias], args=remainder.strip(), raw=raw)
    return None
