from __future__ import annotations

PLATFORM = "onebot"
CHANNEL_ID = "qq"

DEFAULT_REQUEST_TIMEOUT_SECONDS = 5.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 45.0
DEFAULT_RECONNECT_BASE_SECONDS = 1.0
DEFAULT_RECONNECT_MAX_SECONDS = 60.0
DEFAULT_EVENT_QUEUE_SIZE = 1000

DEFAULT_REVERSE_WS_HOST = "0.0.0.0"
# Close code sent to reverse-socket peers that fail the token check.
REVERSE_WS_UNAUTHORIZED_CLOSE_CODE = 4001

DEFAULT_MAX_MESSAGE_LENGTH = 4000
DEFAULT_RATE_LIMIT_MS = 1000
DEFAULT_HISTORY_LIMIT = 5

MEMBER_CACHE_TTL_SECONDS = 3600.0
DEDUP_WINDOW_MAX_SIZE = 1000
MAX_INBOUND_MEDIA = 3
FORWARD_PREVIEW_LIMIT = 5

# set_msg_emoji_like ids (unicode code points accepted by NapCat).
EMOJI_THUMBS_UP = "128077"
EMOJI_LAUGHING = "128514"
EMOJI_HEART = "128147"
EMOJI_OK = "128076"
EMOJI_CRYING = "128557"
EMOJI_EYES = "128064"

ERROR_NOTIFY_TEXT = "抱歉，处理消息时出现了问题，请稍后再试。"
