from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import yaml
from dotenv import dotenv_values

from .constants import (
    DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_MAX_MESSAGE_LENGTH,
    DEFAULT_RATE_LIMIT_MS,
    DEFAULT_RECONNECT_BASE_SECONDS,
    DEFAULT_RECONNECT_MAX_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_REVERSE_WS_HOST,
)
from .errors import OneBotConfigError

DEFAULT_ACCOUNT_ID = "default"
DEFAULT_ACCESS_TOKEN_ENV = "ONEBOT_ACCESS_TOKEN"


class ReactionMode(str, enum.Enum):
    OFF = "off"
    STATIC = "static"
    AUTO = "auto"


@dataclass(frozen=True)
class ReactionSettings:
    mode: ReactionMode = ReactionMode.AUTO
    emoji_id: Optional[str] = None

    @classmethod
    def parse(cls, value: Any) -> "ReactionSettings":
        if value is None or value is False:
            return cls(mode=ReactionMode.OFF)
        token = str(value).strip().lower()
        if token in {"", "off", "none", "false"}:
            return cls(mode=ReactionMode.OFF)
        if token == "auto":
            return cls(mode=ReactionMode.AUTO)
        if token.isascii() and token.isdigit():
            return cls(mode=ReactionMode.STATIC, emoji_id=token)
        raise OneBotConfigError(
            "onebot.reaction_emoji must be 'auto', 'off' or a numeric emoji id"
        )


@dataclass(frozen=True)
class OneBotConfig:
    account_id: str
    ws_url: str
    http_url: Optional[str] = None
    reverse_ws_port: Optional[int] = None
    reverse_ws_host: str = DEFAULT_REVERSE_WS_HOST
    access_token: Optional[str] = None
    name: Optional[str] = None
    admins: frozenset[str] = field(default_factory=frozenset)
    require_mention: bool = True
    system_prompt: Optional[str] = None
    enable_deduplication: bool = True
    enable_error_notify: bool = True
    auto_approve_requests: bool = False
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH
    format_markdown: bool = False
    anti_risk_mode: bool = False
    allowed_groups: frozenset[str] = field(default_factory=frozenset)
    blocked_groups: frozenset[str] = field(default_factory=frozenset)
    allowed_users: frozenset[str] = field(default_factory=frozenset)
    blocked_users: frozenset[str] = field(default_factory=frozenset)
    history_limit: int = DEFAULT_HISTORY_LIMIT
    keyword_triggers: tuple[str, ...] = field(default_factory=tuple)
    enable_tts: bool = False
    ai_voice_id: Optional[str] = None
    enable_guilds: bool = True
    rate_limit_ms: int = DEFAULT_RATE_LIMIT_MS
    reaction: ReactionSettings = field(default_factory=ReactionSettings)
    auto_mark_read: bool = False
    enable_ocr: bool = False
    enable_url_check: bool = False
    enable_group_honor: bool = False
    enable_group_sign_in: bool = False
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS
    reconnect_base_seconds: float = DEFAULT_RECONNECT_BASE_SECONDS
    reconnect_max_seconds: float = DEFAULT_RECONNECT_MAX_SECONDS

    @property
    def rate_limit_seconds(self) -> float:
        return self.rate_limit_ms / 1000.0

    def is_admin(self, user_id: Any) -> bool:
        return str(user_id) in self.admins

    @classmethod
    def from_raw(
        cls,
        raw: dict[str, Any],
        *,
        account_id: str = DEFAULT_ACCOUNT_ID,
        env: Optional[dict[str, str]] = None,
    ) -> "OneBotConfig":
        cfg: dict[str, Any] = raw if isinstance(raw, dict) else {}
        environ = os.environ if env is None else env

        ws_url = _parse_url(cfg.get("ws_url"), key="ws_url", schemes={"ws", "wss"})
        if ws_url is None:
            raise OneBotConfigError("onebot.ws_url is required")
        http_url = _parse_url(
            cfg.get("http_url"), key="http_url", schemes={"http", "https"}
        )
        if http_url is not None:
            http_url = http_url.rstrip("/")

        reverse_ws_port = _parse_optional_port(cfg.get("reverse_ws_port"))
        reverse_ws_host = str(
            cfg.get("reverse_ws_host") or DEFAULT_REVERSE_WS_HOST
        ).strip()

        access_token_env = str(
            cfg.get("access_token_env", DEFAULT_ACCESS_TOKEN_ENV)
        ).strip()
        access_token = cfg.get("access_token")
        if access_token is not None and not isinstance(access_token, str):
            raise OneBotConfigError("onebot.access_token must be a string")
        if not access_token and access_token_env:
            access_token = environ.get(access_token_env) or None

        name = cfg.get("name")
        system_prompt = cfg.get("system_prompt")
        ai_voice_id = cfg.get("ai_voice_id")

        return cls(
            account_id=account_id,
            ws_url=ws_url,
            http_url=http_url,
            reverse_ws_port=reverse_ws_port,
            reverse_ws_host=reverse_ws_host or DEFAULT_REVERSE_WS_HOST,
            access_token=access_token or None,
            name=str(name) if name else None,
            admins=frozenset(_parse_string_ids(cfg.get("admins"))),
            require_mention=_parse_bool_or_default(
                cfg.get("require_mention"), default=True, key="require_mention"
            ),
            system_prompt=str(system_prompt) if system_prompt else None,
            enable_deduplication=_parse_bool_or_default(
                cfg.get("enable_deduplication"),
                default=True,
                key="enable_deduplication",
            ),
            enable_error_notify=_parse_bool_or_default(
                cfg.get("enable_error_notify"),
                default=True,
                key="enable_error_notify",
            ),
            auto_approve_requests=_parse_bool_or_default(
                cfg.get("auto_approve_requests"),
                default=False,
                key="auto_approve_requests",
            ),
            max_message_length=_parse_positive_int_or_default(
                cfg.get("max_message_length"),
                default=DEFAULT_MAX_MESSAGE_LENGTH,
                key="max_message_length",
            ),
            format_markdown=_parse_bool_or_default(
                cfg.get("format_markdown"), default=False, key="format_markdown"
            ),
            anti_risk_mode=_parse_bool_or_default(
                cfg.get("anti_risk_mode"), default=False, key="anti_risk_mode"
            ),
            allowed_groups=frozenset(_parse_string_ids(cfg.get("allowed_groups"))),
            blocked_groups=frozenset(_parse_string_ids(cfg.get("blocked_groups"))),
            allowed_users=frozenset(_parse_string_ids(cfg.get("allowed_users"))),
            blocked_users=frozenset(_parse_string_ids(cfg.get("blocked_users"))),
            history_limit=_parse_non_negative_int_or_default(
                cfg.get("history_limit"),
                default=DEFAULT_HISTORY_LIMIT,
                key="history_limit",
            ),
            keyword_triggers=tuple(_parse_string_ids(cfg.get("keyword_triggers"))),
            enable_tts=_parse_bool_or_default(
                cfg.get("enable_tts"), default=False, key="enable_tts"
            ),
            ai_voice_id=str(ai_voice_id) if ai_voice_id else None,
            enable_guilds=_parse_bool_or_default(
                cfg.get("enable_guilds"), default=True, key="enable_guilds"
            ),
            rate_limit_ms=_parse_non_negative_int_or_default(
                cfg.get("rate_limit_ms"),
                default=DEFAULT_RATE_LIMIT_MS,
                key="rate_limit_ms",
            ),
            reaction=ReactionSettings.parse(cfg.get("reaction_emoji", "auto")),
            auto_mark_read=_parse_bool_or_default(
                cfg.get("auto_mark_read"), default=False, key="auto_mark_read"
            ),
            enable_ocr=_parse_bool_or_default(
                cfg.get("enable_ocr"), default=False, key="enable_ocr"
            ),
            enable_url_check=_parse_bool_or_default(
                cfg.get("enable_url_check"), default=False, key="enable_url_check"
            ),
            enable_group_honor=_parse_bool_or_default(
                cfg.get("enable_group_honor"),
                default=False,
                key="enable_group_honor",
            ),
            enable_group_sign_in=_parse_bool_or_default(
                cfg.get("enable_group_sign_in"),
                default=False,
                key="enable_group_sign_in",
            ),
            request_timeout_seconds=_parse_positive_float_or_default(
                cfg.get("request_timeout_seconds"),
                default=DEFAULT_REQUEST_TIMEOUT_SECONDS,
                key="request_timeout_seconds",
            ),
            heartbeat_interval_seconds=_parse_positive_float_or_default(
                cfg.get("heartbeat_interval_seconds"),
                default=DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
                key="heartbeat_interval_seconds",
            ),
            reconnect_base_seconds=_parse_positive_float_or_default(
                cfg.get("reconnect_base_seconds"),
                default=DEFAULT_RECONNECT_BASE_SECONDS,
                key="reconnect_base_seconds",
            ),
            reconnect_max_seconds=_parse_positive_float_or_default(
                cfg.get("reconnect_max_seconds"),
                default=DEFAULT_RECONNECT_MAX_SECONDS,
                key="reconnect_max_seconds",
            ),
        )


def resolve_env_for_config(
    path: Path, base_env: Optional[Mapping[str, str]] = None
) -> dict[str, str]:
    """Merged env mapping for a config file; never mutates the process env."""

    env = dict(base_env) if base_env is not None else dict(os.environ)
    candidate = path.parent / ".env"
    if not candidate.is_file():
        return env
    for key, value in dotenv_values(candidate).items():
        if key and value is not None:
            env[str(key)] = str(value)
    return env


def load_onebot_config(
    path: Path, *, env: Optional[dict[str, str]] = None
) -> dict[str, OneBotConfig]:
    """Load every account from a YAML file.

    The top-level mapping (or its ``onebot`` section) configures the default
    account; entries under ``accounts`` inherit it and override per account.
    Without an explicit ``env``, a ``.env`` file next to the config is layered
    over the process environment.
    """

    if env is None:
        env = resolve_env_for_config(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise OneBotConfigError(f"Unable to read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise OneBotConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise OneBotConfigError(f"Config {path} must be a mapping")
    section = data.get("onebot", data)
    if not isinstance(section, dict):
        raise OneBotConfigError("onebot section must be a mapping")
    return parse_accounts(section, env=env)


def parse_accounts(
    section: dict[str, Any], *, env: Optional[dict[str, str]] = None
) -> dict[str, OneBotConfig]:
    base = {key: value for key, value in section.items() if key != "accounts"}
    accounts_raw = section.get("accounts")
    if accounts_raw is None:
        return {DEFAULT_ACCOUNT_ID: OneBotConfig.from_raw(base, env=env)}
    if not isinstance(accounts_raw, dict) or not accounts_raw:
        raise OneBotConfigError("onebot.accounts must be a non-empty mapping")
    accounts: dict[str, OneBotConfig] = {}
    for account_id, overrides in accounts_raw.items():
        if not isinstance(overrides, dict):
            raise OneBotConfigError(f"onebot.accounts.{account_id} must be a mapping")
        merged = {**base, **overrides}
        accounts[str(account_id)] = OneBotConfig.from_raw(
            merged, account_id=str(account_id), env=env
        )
    return accounts


def _parse_url(value: Any, *, key: str, schemes: set[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise OneBotConfigError(f"onebot.{key} must be a string URL")
    parsed = urlparse(value.strip())
    if parsed.scheme not in schemes or not parsed.netloc:
        allowed = "/".join(sorted(schemes))
        raise OneBotConfigError(f"onebot.{key} must be a {allowed} URL")
    return value.strip()


def _parse_optional_port(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise OneBotConfigError("onebot.reverse_ws_port must be an integer") from exc
    if not 0 < port < 65536:
        raise OneBotConfigError("onebot.reverse_ws_port must be in 1-65535")
    return port


def _parse_string_ids(value: Any) -> list[str]:
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
    parsed: list[str] = []
    for item in items:
        token = str(item).strip()
        if token:
            parsed.append(token)
    return parsed


def _parse_positive_int_or_default(value: Any, *, default: int, key: str) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise OneBotConfigError(f"onebot.{key} must be an integer") from exc
    if parsed <= 0:
        return default
    return parsed


def _parse_non_negative_int_or_default(value: Any, *, default: int, key: str) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise OneBotConfigError(f"onebot.{key} must be an integer") from exc
    if parsed < 0:
        return default
    return parsed


def _parse_positive_float_or_default(
    value: Any, *, default: float, key: str
) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise OneBotConfigError(f"onebot.{key} must be a number") from exc
    if parsed <= 0:
        return default
    return parsed


def _parse_bool_or_default(value: Any, *, default: bool, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise OneBotConfigError(f"onebot.{key} must be a boolean")
