"""Process-wide advisory caches shared by OneBot accounts.

Values are snapshots: concurrent writers to the same key resolve last write
wins, and readers treat a miss as "unknown", never as an error.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from ...core.logging_utils import log_event
from .constants import DEDUP_WINDOW_MAX_SIZE, MEMBER_CACHE_TTL_SECONDS

MemberListFetcher = Callable[[str], Awaitable[Any]]


@dataclass
class MemberCacheEntry:
    name: str
    expires_at: float


class MemberDirectory:
    """(group id, user id) -> display name, with absolute expiry."""

    def __init__(
        self,
        *,
        ttl_seconds: float = MEMBER_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._entries: dict[tuple[str, str], MemberCacheEntry] = {}
        self._populated: dict[str, float] = {}

    def get_name(self, group_id: Any, user_id: Any) -> Optional[str]:
        key = (str(group_id), str(user_id))
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry.name

    def set_name(self, group_id: Any, user_id: Any, name: str) -> None:
        if not name:
            return
        self._entries[(str(group_id), str(user_id))] = MemberCacheEntry(
            name=name, expires_at=self._clock() + self._ttl
        )

    def invalidate(self, group_id: Any, user_id: Any = None) -> None:
        """Drop one member, or the whole group when ``user_id`` is None.

        Either way the group's bulk mark is cleared so the next contact
        refetches the member list.
        """

        group_key = str(group_id)
        self._populated.pop(group_key, None)
        if user_id is not None:
            self._entries.pop((group_key, str(user_id)), None)
            return
        for key in [key for key in self._entries if key[0] == group_key]:
            self._entries.pop(key, None)

    def is_populated(self, group_id: Any) -> bool:
        expires_at = self._populated.get(str(group_id))
        if expires_at is None:
            return False
        if expires_at <= self._clock():
            self._populated.pop(str(group_id), None)
            return False
        return True

    def populate(self, group_id: Any, members: Iterable[Any]) -> int:
        count = 0
        for member in members:
            if not isinstance(member, dict):
                continue
            user_id = member.get("user_id")
            if user_id is None:
                continue
            name = member.get("card") or member.get("nickname") or str(user_id)
            self.set_name(group_id, user_id, str(name))
            count += 1
        self._populated[str(group_id)] = self._clock() + self._ttl
        return count

    async def ensure_populated(
        self, group_id: Any, fetch_members: MemberListFetcher
    ) -> bool:
        """Bulk-load a group's member names once per expiry window.

        Fetch failures leave the group unmarked so a later message retries.
        """

        group_key = str(group_id)
        if self.is_populated(group_key):
            return False
        try:
            members = await fetch_members(group_key)
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "onebot.member_cache.populate_failed",
                group_id=group_key,
                exc=exc,
            )
            return False
        if not isinstance(members, list):
            return False
        count = self.populate(group_key, members)
        log_event(
            self._logger,
            logging.DEBUG,
            "onebot.member_cache.populated",
            group_id=group_key,
            members=count,
        )
        return True


class DedupWindow:
    """Approximate recent-id set; wiped wholesale past ``max_size``."""

    def __init__(self, *, max_size: int = DEDUP_WINDOW_MAX_SIZE) -> None:
        self._max_size = max(max_size, 1)
        self._seen: set[str] = set()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: object) -> bool:
        return str(key) in self._seen

    def check_and_add(self, key: Any) -> bool:
        """Return True the first time ``key`` is seen, False for repeats."""

        token = str(key)
        if token in self._seen:
            return False
        if len(self._seen) >= self._max_size:
            self._seen.clear()
        self._seen.add(token)
        return True

    def clear(self) -> None:
        self._seen.clear()


@dataclass
class BridgeRegistry:
    """Shared state injected into every account service."""

    members: MemberDirectory = field(default_factory=MemberDirectory)
    dedup: DedupWindow = field(default_factory=DedupWindow)
    services: dict[str, Any] = field(default_factory=dict)

    def service_for(self, account_id: str) -> Any:
        return self.services.get(account_id)
