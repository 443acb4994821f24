"""Host reply-pipeline contract and inbound context assembly.

Reply generation, session storage and typing indicators live in the host;
this module defines the narrow surface the account service calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, runtime_checkable

from .config import OneBotConfig, ReactionMode
from .constants import CHANNEL_ID, EMOJI_HEART, EMOJI_LAUGHING, EMOJI_OK, EMOJI_THUMBS_UP
from .normalizer import CanonicalInboundEvent

REACTION_INSTRUCTION = (
    "Start the reply with [reaction:<emoji id>] to react to the message, or "
    "[task:emoji_only] after finishing a task. Ids: "
    f"{EMOJI_THUMBS_UP} (thumbs up), {EMOJI_LAUGHING} (laughing), "
    f"{EMOJI_HEART} (heart), {EMOJI_OK} (ok)"
)


@dataclass(frozen=True)
class ReplyPayload:
    text: Optional[str] = None
    media_urls: tuple[str, ...] = ()
    reaction: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "ReplyPayload":
        """Accept a payload, a plain string, or a host-side mapping."""

        if isinstance(value, ReplyPayload):
            return value
        if isinstance(value, str):
            return cls(text=value)
        if not isinstance(value, dict):
            return cls()
        media = value.get("media_urls", value.get("mediaUrls"))
        if media is None and value.get("media_url", value.get("mediaUrl")):
            media = [value.get("media_url", value.get("mediaUrl"))]
        metadata = value.get("metadata") if isinstance(value.get("metadata"), dict) else {}
        reaction = value.get("reaction", metadata.get("reaction"))
        text = value.get("text")
        return cls(
            text=text if isinstance(text, str) else None,
            media_urls=tuple(str(item) for item in media or () if item),
            reaction=str(reaction) if reaction else None,
        )


DeliverFn = Callable[[Any], Awaitable[None]]


@runtime_checkable
class ReplyRuntime(Protocol):
    """Host collaborator that turns inbound context into replies."""

    def finalize_inbound_context(self, context: dict[str, Any]) -> dict[str, Any]:
        """Normalize the raw context before it is recorded and dispatched."""

    async def record_inbound_session(self, context: dict[str, Any]) -> None:
        """Persist the inbound turn in the host's session store."""

    async def dispatch_reply(
        self, context: dict[str, Any], deliver: DeliverFn
    ) -> None:
        """Generate replies, calling ``deliver`` once per reply payload."""


def build_system_block(config: OneBotConfig) -> str:
    block = ""
    if config.system_prompt:
        block += f"<system>{config.system_prompt}</system>\n\n"
    if config.reaction.mode == ReactionMode.AUTO:
        block += f"<reaction-instruction>{REACTION_INSTRUCTION}</reaction-instruction>\n\n"
    return block


def build_inbound_context(
    event: CanonicalInboundEvent,
    config: OneBotConfig,
    *,
    history: Sequence[str] = (),
    ocr_text: Optional[str] = None,
) -> dict[str, Any]:
    body = event.text
    if ocr_text:
        body = f"{body}\n[image text] {ocr_text}" if body else f"[image text] {ocr_text}"
    if event.kind.value == "direct":
        sender = str(event.user_id)
    else:
        sender = event.conversation_target
    return {
        "Provider": CHANNEL_ID,
        "Channel": CHANNEL_ID,
        "From": sender,
        "To": f"{CHANNEL_ID}:bot",
        "Body": build_system_block(config) + body,
        "RawBody": event.raw_text,
        "SenderId": event.sender_id,
        "SenderName": event.sender_name,
        "AccountId": event.account_id,
        "ChatType": event.kind.value,
        "Timestamp": event.timestamp * 1000,
        "MessageSid": event.message_id,
        "ReplyToId": event.reply_to_id,
        "MediaUrls": list(event.media_urls),
        "WasMentioned": event.mentioned_bot,
        "History": list(history),
    }
