from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest


class FakeGatewayTransport:
    """Records gateway actions; answers requests from a canned table."""

    def __init__(
        self,
        *,
        self_id: Optional[str] = "10000",
        responses: Optional[dict[str, Any]] = None,
    ) -> None:
        self._self_id = self_id
        self.responses: dict[str, Any] = dict(responses or {})
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.sent: list[tuple[str, str, Any]] = []
        self.reactions: list[tuple[str, str, bool]] = []
        self.pokes: list[tuple[str, Any]] = []
        self.approvals: list[tuple[str, str]] = []
        self.read_marks: list[dict[str, Any]] = []
        self.connected = False
        self.events: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    @property
    def self_id(self) -> Optional[str]:
        return self._self_id

    def set_self_id(self, value: Any) -> None:
        if value:
            self._self_id = str(value)

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def receive_event(self) -> dict[str, Any]:
        return await self.events.get()

    async def send_request(
        self, action: str, params: Optional[dict[str, Any]] = None
    ) -> Any:
        self.requests.append((action, dict(params or {})))
        response = self.responses.get(action)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(dict(params or {}))
        return response

    async def send_request_first(
        self, candidates: list[tuple[str, dict[str, Any]]]
    ) -> Any:
        action, params = candidates[0]
        return await self.send_request(action, params)

    async def get_msg(self, message_id: Any) -> Any:
        return await self.send_request("get_msg", {"message_id": message_id})

    async def get_forward_msg(self, forward_id: str) -> Any:
        return await self.send_request("get_forward_msg", {"id": forward_id})

    async def get_group_member_list(self, group_id: Any) -> Any:
        return await self.send_request("get_group_member_list", {"group_id": group_id})

    async def get_group_msg_history(self, group_id: Any, count: int) -> Any:
        return await self.send_request(
            "get_group_msg_history", {"group_id": group_id, "count": count}
        )

    async def send_private_msg(self, user_id: Any, message: Any) -> None:
        self.sent.append(("private", str(user_id), message))

    async def send_group_msg(self, group_id: Any, message: Any) -> None:
        self.sent.append(("group", str(group_id), message))

    async def send_guild_channel_msg(
        self, guild_id: str, channel_id: str, message: Any
    ) -> None:
        self.sent.append(("guild", f"{guild_id}:{channel_id}", message))

    async def set_msg_emoji_like(
        self, message_id: Any, emoji_id: str, *, set_like: bool = True
    ) -> None:
        self.reactions.append((str(message_id), emoji_id, set_like))

    async def mark_read(self, *, group_id: Any = None, user_id: Any = None) -> Any:
        self.read_marks.append({"group_id": group_id, "user_id": user_id})

    async def send_poke(self, user_id: Any, *, group_id: Any = None) -> Any:
        self.pokes.append((str(user_id), group_id))

    async def set_friend_add_request(
        self, flag: str, *, approve: bool = True, remark: str = ""
    ) -> None:
        self.approvals.append(("friend", flag))

    async def set_group_add_request(
        self, flag: str, sub_type: str, *, approve: bool = True, reason: str = ""
    ) -> None:
        self.approvals.append(("group", flag))

    def texts(self) -> list[str]:
        """Concatenated text segments of every sent message."""

        texts: list[str] = []
        for _kind, _target, message in self.sent:
            if isinstance(message, list):
                texts.append(
                    "".join(
                        str(seg["data"].get("text", ""))
                        for seg in message
                        if seg.get("type") == "text"
                    )
                )
            else:
                texts.append(str(message))
        return texts

    def actions(self) -> list[str]:
        return [action for action, _params in self.requests]


@pytest.fixture()
def fake_transport() -> FakeGatewayTransport:
    return FakeGatewayTransport()
