"""OneBot v11 integration."""

from .caches import BridgeRegistry, DedupWindow, MemberCacheEntry, MemberDirectory
from .commands import COMMAND_TABLE, CommandRouter, CommandSpec, resolve_command
from .config import (
    DEFAULT_ACCOUNT_ID,
    OneBotConfig,
    ReactionMode,
    ReactionSettings,
    load_onebot_config,
    parse_accounts,
)
from .correlator import PendingRequest, RequestCorrelator
from .errors import (
    OneBotActionError,
    OneBotConfigError,
    OneBotConnectivityError,
    OneBotError,
    OneBotRequestTimeout,
    OneBotTargetError,
)
from .events import (
    ConversationKind,
    MessageEvent,
    MetaEvent,
    NoticeEvent,
    NoticeKind,
    OneBotEvent,
    RequestEvent,
    Sender,
    parse_event,
)
from .normalizer import CanonicalInboundEvent, EventNormalizer
from .outbound import (
    GroupTarget,
    GuildTarget,
    OutboundDispatcher,
    ParsedTarget,
    PrivateTarget,
    parse_target,
)
from .reactions import ReactionEngine, classify_reaction, extract_reply_marker
from .runtime import ReplyPayload, ReplyRuntime, build_inbound_context
from .segments import Segment, redact_cq, tokenize_cq
from .service import OneBotAccountService, logout_account, send_text, start_account
from .transport import ConnectionState, OneBotTransport, calculate_reconnect_backoff

__all__ = [
    "BridgeRegistry",
    "COMMAND_TABLE",
    "CanonicalInboundEvent",
    "CommandRouter",
    "CommandSpec",
    "ConnectionState",
    "ConversationKind",
    "DEFAULT_ACCOUNT_ID",
    "DedupWindow",
    "EventNormalizer",
    "GroupTarget",
    "GuildTarget",
    "MemberCacheEntry",
    "MemberDirectory",
    "MessageEvent",
    "MetaEvent",
    "NoticeEvent",
    "NoticeKind",
    "OneBotAccountService",
    "OneBotActionError",
    "OneBotConfig",
    "OneBotConfigError",
    "OneBotConnectivityError",
    "OneBotError",
    "OneBotEvent",
    "OneBotRequestTimeout",
    "OneBotTargetError",
    "OneBotTransport",
    "OutboundDispatcher",
    "ParsedTarget",
    "PendingRequest",
    "PrivateTarget",
    "ReactionEngine",
    "ReactionMode",
    "ReactionSettings",
    "ReplyPayload",
    "ReplyRuntime",
    "RequestCorrelator",
    "RequestEvent",
    "Segment",
    "Sender",
    "build_inbound_context",
    "calculate_reconnect_backoff",
    "classify_reaction",
    "extract_reply_marker",
    "load_onebot_config",
    "logout_account",
    "parse_accounts",
    "parse_event",
    "parse_target",
    "redact_cq",
    "resolve_command",
    "send_text",
    "start_account",
    "tokenize_cq",
]
