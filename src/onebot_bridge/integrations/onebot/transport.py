from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import math
import re
from typing import Any, Awaitable, Callable, Coroutine, Optional, Sequence
from urllib.parse import parse_qs, urlparse

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from ...core.logging_utils import log_event
from ...core.retry import retry_transient
from .config import OneBotConfig
from .constants import (
    DEFAULT_EVENT_QUEUE_SIZE,
    DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_RECONNECT_BASE_SECONDS,
    DEFAULT_RECONNECT_MAX_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_REVERSE_WS_HOST,
    REVERSE_WS_UNAUTHORIZED_CLOSE_CODE,
)
from .correlator import RequestCorrelator
from .errors import OneBotActionError, OneBotConnectivityError

MAX_FRAME_BYTES = 32 * 1024 * 1024
_INT_TEXT_RE = re.compile(r"-?[0-9]+")

ActionStrategy = Callable[[str, dict[str, Any]], Awaitable[Any]]


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


def calculate_reconnect_backoff(
    attempt: int,
    *,
    base_seconds: float = DEFAULT_RECONNECT_BASE_SECONDS,
    max_seconds: float = DEFAULT_RECONNECT_MAX_SECONDS,
) -> float:
    """``min(base * 2**attempt, max)``; non-decreasing in ``attempt``."""

    normalized_attempt = max(attempt, 0)
    if max_seconds <= 0.0 or base_seconds <= 0.0:
        return 0.0
    cap_threshold = math.ceil(math.log2(max_seconds / base_seconds))
    if normalized_attempt >= max(cap_threshold, 0):
        return max_seconds
    return float(min(max_seconds, base_seconds * (2**normalized_attempt)))


def decode_frame(frame: str | bytes | bytearray | memoryview) -> Optional[dict[str, Any]]:
    """Decode one JSON object frame; anything else yields None."""

    try:
        if isinstance(frame, (bytes, bytearray, memoryview)):
            frame = bytes(frame).decode("utf-8")
        payload = json.loads(frame)
    except (UnicodeDecodeError, ValueError, TypeError):
        return None
    return payload if isinstance(payload, dict) else None


def encode_action(
    action: str, params: dict[str, Any], *, echo: Optional[str] = None
) -> str:
    frame: dict[str, Any] = {"action": action, "params": params}
    if echo is not None:
        frame["echo"] = echo
    return json.dumps(frame, ensure_ascii=False)


class OneBotTransport:
    """Live connection(s) to one OneBot gateway.

    Owns the forward websocket (client-initiated, reconnecting), the optional
    reverse websocket server, and the optional HTTP action endpoint. Inbound
    events are queued in arrival order for :meth:`receive_event`.
    """

    def __init__(
        self,
        *,
        ws_url: str,
        http_url: Optional[str] = None,
        reverse_ws_port: Optional[int] = None,
        reverse_ws_host: str = DEFAULT_REVERSE_WS_HOST,
        access_token: Optional[str] = None,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        reconnect_base_seconds: float = DEFAULT_RECONNECT_BASE_SECONDS,
        reconnect_max_seconds: float = DEFAULT_RECONNECT_MAX_SECONDS,
        event_queue_size: int = DEFAULT_EVENT_QUEUE_SIZE,
        http_client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._ws_url = ws_url
        self._http_url = http_url.rstrip("/") if http_url else None
        self._reverse_ws_port = reverse_ws_port
        self._reverse_ws_host = reverse_ws_host
        self._access_token = access_token
        self._request_timeout = request_timeout_seconds
        self._heartbeat_interval = heartbeat_interval_seconds
        self._reconnect_base = reconnect_base_seconds
        self._reconnect_max = reconnect_max_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._sleep = sleep_fn

        self._http: Optional[httpx.AsyncClient] = http_client
        self._owns_http = http_client is None
        self._correlator = RequestCorrelator()
        self._events: asyncio.Queue[dict[str, Any]] = asyncio.Queue(
            maxsize=max(event_queue_size, 1)
        )

        self._forward_ws: Any = None
        self._reverse_ws: Any = None
        self._reverse_server: Any = None
        self._supervisor_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._background: set[asyncio.Task[Any]] = set()
        self._stop_event = asyncio.Event()
        self._connecting = False
        self._closing = False
        self._started = False
        self._alive = False
        self._reconnect_attempts = 0
        self._self_id: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        config: OneBotConfig,
        *,
        logger: Optional[logging.Logger] = None,
        **kwargs: Any,
    ) -> "OneBotTransport":
        return cls(
            ws_url=config.ws_url,
            http_url=config.http_url,
            reverse_ws_port=config.reverse_ws_port,
            reverse_ws_host=config.reverse_ws_host,
            access_token=config.access_token,
            request_timeout_seconds=config.request_timeout_seconds,
            heartbeat_interval_seconds=config.heartbeat_interval_seconds,
            reconnect_base_seconds=config.reconnect_base_seconds,
            reconnect_max_seconds=config.reconnect_max_seconds,
            logger=logger,
            **kwargs,
        )

    # -- state -----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        if self._closing:
            return ConnectionState.CLOSING
        if self._forward_ws is not None or self._reverse_ws is not None:
            return ConnectionState.OPEN
        if self._connecting:
            return ConnectionState.CONNECTING
        return ConnectionState.IDLE

    @property
    def self_id(self) -> Optional[str]:
        return self._self_id

    def set_self_id(self, value: Any) -> None:
        if value is None or value == "":
            return
        token = str(value)
        if token != self._self_id:
            self._self_id = token
            log_event(
                self._logger, logging.INFO, "onebot.transport.self_id", self_id=token
            )

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def has_http(self) -> bool:
        return self._http_url is not None

    def is_connected(self) -> bool:
        return self._active_socket() is not None

    async def wait_connected(self, timeout_seconds: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while not self.is_connected():
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.05)
        return True

    # -- lifecycle -------------------------------------------------------

    async def connect(self) -> None:
        if self._started:
            return
        self._started = True
        self._closing = False
        self._stop_event.clear()
        if self._http_url and self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self._http_url, timeout=DEFAULT_HTTP_TIMEOUT_SECONDS
            )
            self._owns_http = True
        if self._reverse_ws_port:
            await self._start_reverse_server()
        self._supervisor_task = asyncio.create_task(self._run_forward())

    async def disconnect(self) -> None:
        if not self._started and self._http is None:
            return
        self._closing = True
        self._stop_event.set()
        try:
            await self._cancel_task(self._supervisor_task)
            self._supervisor_task = None
            await self._cancel_heartbeat()
            for task in list(self._background):
                await self._cancel_task(task)
            self._background.clear()
            if self._forward_ws is not None:
                with contextlib.suppress(Exception):
                    await self._forward_ws.close()
                self._forward_ws = None
            await self._stop_reverse_server()
            self._correlator.fail_all("transport disconnected")
            if self._http is not None and self._owns_http:
                await self._http.aclose()
                self._http = None
        finally:
            self._started = False
            self._connecting = False
            self._closing = False
            self._alive = False
        log_event(self._logger, logging.INFO, "onebot.transport.disconnected")

    async def receive_event(self) -> dict[str, Any]:
        """Wait for the next inbound event payload."""

        return await self._events.get()

    def pending_events(self) -> int:
        return self._events.qsize()

    # -- forward socket supervisor ---------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        if not self._access_token:
            return {}
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _run_forward(self) -> None:
        while not self._stop_event.is_set():
            self._connecting = True
            try:
                async with websockets.connect(
                    self._ws_url,
                    additional_headers=self._auth_headers(),
                    max_size=MAX_FRAME_BYTES,
                ) as websocket:
                    self._on_forward_open(websocket)
                    async for raw in websocket:
                        await self._handle_frame(raw, source="forward")
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as exc:
                log_event(
                    self._logger,
                    logging.INFO,
                    "onebot.transport.forward.closed",
                    code=getattr(exc, "code", None),
                )
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "onebot.transport.forward.error",
                    url=self._ws_url,
                    exc=exc,
                )
            finally:
                self._connecting = False
                self._forward_ws = None
                await self._cancel_heartbeat()

            if self._stop_event.is_set():
                break
            delay = calculate_reconnect_backoff(
                self._reconnect_attempts,
                base_seconds=self._reconnect_base,
                max_seconds=self._reconnect_max,
            )
            log_event(
                self._logger,
                logging.INFO,
                "onebot.transport.reconnect.scheduled",
                delay_seconds=delay,
                attempt=self._reconnect_attempts + 1,
            )
            self._reconnect_attempts += 1
            await self._sleep(delay)

    def _on_forward_open(self, websocket: Any) -> None:
        self._forward_ws = websocket
        self._connecting = False
        self._alive = True
        self._reconnect_attempts = 0
        log_event(
            self._logger, logging.INFO, "onebot.transport.forward.open", url=self._ws_url
        )
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(websocket))
        self._spawn(self._learn_self_id())

    def check_liveness(self) -> bool:
        """One heartbeat tick: True if traffic arrived since the last tick."""

        if not self._alive:
            return False
        self._alive = False
        return True

    async def _heartbeat_loop(self, websocket: Any) -> None:
        while not self._stop_event.is_set():
            await self._sleep(self._heartbeat_interval)
            if self.check_liveness():
                continue
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.transport.heartbeat.timeout",
                interval_seconds=self._heartbeat_interval,
            )
            with contextlib.suppress(Exception):
                await websocket.close()
            return

    async def _cancel_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None or task is asyncio.current_task():
            return
        await self._cancel_task(task)

    async def _cancel_task(self, task: Optional[asyncio.Task[Any]]) -> None:
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            self._logger.debug("OneBot background task ended with error: %s", exc)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _learn_self_id(self) -> None:
        @retry_transient(
            max_attempts=3,
            base_wait=1.0,
            max_wait=5.0,
            logger=self._logger,
            sleep=self._sleep,
        )
        async def get_login_info() -> Any:
            return await self.send_request("get_login_info", {})

        try:
            info = await get_login_info()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.transport.login_info.failed",
                exc=exc,
            )
            return
        if isinstance(info, dict):
            self.set_self_id(info.get("user_id"))

    # -- reverse socket server -------------------------------------------

    async def _start_reverse_server(self) -> None:
        self._reverse_server = await websockets.serve(
            self._handle_reverse_connection,
            self._reverse_ws_host,
            self._reverse_ws_port,
            max_size=MAX_FRAME_BYTES,
        )
        log_event(
            self._logger,
            logging.INFO,
            "onebot.transport.reverse.listening",
            host=self._reverse_ws_host,
            port=self._reverse_ws_port,
        )

    async def _stop_reverse_server(self) -> None:
        if self._reverse_ws is not None:
            with contextlib.suppress(Exception):
                await self._reverse_ws.close()
            self._reverse_ws = None
        server = self._reverse_server
        self._reverse_server = None
        if server is not None:
            server.close()
            with contextlib.suppress(Exception):
                await server.wait_closed()
            log_event(self._logger, logging.INFO, "onebot.transport.reverse.stopped")

    def is_authorized(self, headers: Any, path: Optional[str]) -> bool:
        if not self._access_token:
            return True
        expected = f"Bearer {self._access_token}"
        authorization = headers.get("Authorization") if headers is not None else None
        if authorization == expected:
            return True
        query = parse_qs(urlparse(path or "").query)
        return self._access_token in query.get("access_token", [])

    async def _handle_reverse_connection(self, websocket: Any) -> None:
        request = getattr(websocket, "request", None)
        headers = getattr(request, "headers", None)
        path = getattr(request, "path", None)
        if not self.is_authorized(headers, path):
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.transport.reverse.unauthorized",
                remote=str(getattr(websocket, "remote_address", "")),
            )
            await websocket.close(REVERSE_WS_UNAUTHORIZED_CLOSE_CODE, "Unauthorized")
            return

        if headers is not None:
            self.set_self_id(headers.get("X-Self-ID"))
        self._reverse_ws = websocket
        log_event(self._logger, logging.INFO, "onebot.transport.reverse.connected")
        try:
            async for raw in websocket:
                await self._handle_frame(raw, source="reverse")
        except ConnectionClosed:
            pass
        finally:
            if self._reverse_ws is websocket:
                self._reverse_ws = None
            log_event(self._logger, logging.INFO, "onebot.transport.reverse.disconnected")

    # -- inbound frames --------------------------------------------------

    async def _handle_frame(self, raw: Any, *, source: str) -> None:
        # Liveness tracks the forward socket the heartbeat pings.
        if source == "forward":
            self._alive = True
        payload = decode_frame(raw)
        if payload is None:
            self._logger.debug("Dropping malformed OneBot frame from %s", source)
            return
        if "echo" in payload and self._correlator.resolve(payload):
            return
        post_type = payload.get("post_type")
        if not isinstance(post_type, str):
            return
        if post_type == "meta_event":
            meta_type = payload.get("meta_event_type")
            if meta_type == "heartbeat":
                return
            if meta_type == "lifecycle":
                self.set_self_id(payload.get("self_id"))
        if self._self_id is None:
            self.set_self_id(payload.get("self_id"))
        self._enqueue_event(payload)

    def _enqueue_event(self, payload: dict[str, Any]) -> None:
        if self._events.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self._events.get_nowait()
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.transport.event_queue.overflow",
                capacity=self._events.maxsize,
            )
        self._events.put_nowait(payload)

    # -- outbound actions ------------------------------------------------

    def _active_socket(self) -> Any:
        if self._forward_ws is not None:
            return self._forward_ws
        return self._reverse_ws

    def _request_strategies(self) -> list[tuple[str, ActionStrategy]]:
        strategies: list[tuple[str, ActionStrategy]] = []
        if self._http is not None:
            strategies.append(("http", self._request_via_http))
        if self._active_socket() is not None:
            strategies.append(("socket", self._request_via_socket))
        return strategies

    def _fire_strategies(self) -> list[tuple[str, ActionStrategy]]:
        strategies: list[tuple[str, ActionStrategy]] = []
        if self._http is not None:
            strategies.append(("http", self._request_via_http))
        if self._active_socket() is not None:
            strategies.append(("socket", self._send_via_socket))
        return strategies

    async def _run_strategies(
        self,
        action: str,
        params: dict[str, Any],
        strategies: Sequence[tuple[str, ActionStrategy]],
    ) -> Any:
        if not strategies:
            raise OneBotConnectivityError(
                f"No OneBot transport is open for action {action!r}"
            )
        last_error: Optional[Exception] = None
        last_index = len(strategies) - 1
        for index, (name, strategy) in enumerate(strategies):
            try:
                return await strategy(action, params)
            except OneBotActionError as exc:
                # An HTTP failure status still falls through to the socket;
                # only the final strategy's verdict reaches the caller.
                if index == last_index:
                    raise
                last_error = exc
                log_event(
                    self._logger,
                    logging.WARNING,
                    "onebot.transport.strategy.failed",
                    action=action,
                    strategy=name,
                    retcode=exc.retcode,
                    exc=exc,
                )
            except OneBotConnectivityError as exc:
                last_error = exc
                log_event(
                    self._logger,
                    logging.WARNING,
                    "onebot.transport.strategy.failed",
                    action=action,
                    strategy=name,
                    exc=exc,
                )
        assert last_error is not None
        raise last_error

    async def send_request(
        self, action: str, params: Optional[dict[str, Any]] = None
    ) -> Any:
        """Send an action and return its ``data`` field."""

        return await self._run_strategies(
            action, dict(params or {}), self._request_strategies()
        )

    async def send_fire_and_forget(
        self, action: str, params: Optional[dict[str, Any]] = None
    ) -> None:
        await self._run_strategies(action, dict(params or {}), self._fire_strategies())

    async def send_request_first(
        self, candidates: Sequence[tuple[str, dict[str, Any]]]
    ) -> Any:
        """Try alternate action names in order; the first success wins.

        Only gateway-side action failures move on to the next candidate.
        """

        last_error: Optional[Exception] = None
        for action, params in candidates:
            try:
                return await self.send_request(action, params)
            except OneBotActionError as exc:
                last_error = exc
        if last_error is None:
            raise ValueError("send_request_first requires at least one candidate")
        raise last_error

    async def _request_via_http(self, action: str, params: dict[str, Any]) -> Any:
        client = self._http
        if client is None:
            raise OneBotConnectivityError("HTTP transport is not configured")
        try:
            response = await client.post(
                f"/{action}", json=params, headers=self._auth_headers()
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise OneBotConnectivityError(
                f"OneBot HTTP call {action!r} failed: {exc}"
            ) from exc
        except ValueError as exc:
            raise OneBotConnectivityError(
                f"OneBot HTTP call {action!r} returned non-JSON"
            ) from exc
        if not isinstance(body, dict):
            raise OneBotConnectivityError(
                f"OneBot HTTP call {action!r} returned a non-object body"
            )
        if body.get("status") != "ok" and body.get("retcode") != 0:
            detail = body.get("wording") or body.get("msg") or body.get("message")
            raise OneBotActionError(
                action,
                retcode=body.get("retcode"),
                detail=str(detail) if detail else None,
            )
        return body.get("data")

    async def _write_socket(self, frame: str) -> None:
        websocket = self._active_socket()
        if websocket is None:
            raise OneBotConnectivityError("No OneBot websocket is open")
        try:
            await websocket.send(frame)
        except Exception as exc:
            raise OneBotConnectivityError(f"OneBot websocket send failed: {exc}") from exc

    async def _request_via_socket(self, action: str, params: dict[str, Any]) -> Any:
        pending = self._correlator.register(action, self._request_timeout)
        try:
            await self._write_socket(encode_action(action, params, echo=pending.token))
        except Exception:
            self._correlator.discard(pending.token)
            raise
        return await self._correlator.wait(pending)

    async def _send_via_socket(self, action: str, params: dict[str, Any]) -> None:
        await self._write_socket(encode_action(action, params))

    # -- typed helpers ---------------------------------------------------

    async def get_login_info(self) -> Any:
        return await self.send_request("get_login_info", {})

    async def get_msg(self, message_id: Any) -> Any:
        return await self.send_request("get_msg", {"message_id": _int_or_str(message_id)})

    async def get_forward_msg(self, forward_id: str) -> Any:
        return await self.send_request("get_forward_msg", {"id": forward_id})

    async def get_group_member_list(self, group_id: Any) -> Any:
        return await self.send_request(
            "get_group_member_list", {"group_id": _int_or_str(group_id)}
        )

    async def get_group_msg_history(self, group_id: Any, count: int) -> Any:
        return await self.send_request(
            "get_group_msg_history",
            {"group_id": _int_or_str(group_id), "count": count},
        )

    async def send_private_msg(self, user_id: Any, message: Any) -> None:
        await self.send_fire_and_forget(
            "send_private_msg", {"user_id": _int_or_str(user_id), "message": message}
        )

    async def send_group_msg(self, group_id: Any, message: Any) -> None:
        await self.send_fire_and_forget(
            "send_group_msg", {"group_id": _int_or_str(group_id), "message": message}
        )

    async def send_guild_channel_msg(
        self, guild_id: str, channel_id: str, message: Any
    ) -> None:
        await self.send_fire_and_forget(
            "send_guild_channel_msg",
            {"guild_id": guild_id, "channel_id": channel_id, "message": message},
        )

    async def set_msg_emoji_like(
        self, message_id: Any, emoji_id: str, *, set_like: bool = True
    ) -> None:
        params: dict[str, Any] = {
            "message_id": _int_or_str(message_id),
            "emoji_id": emoji_id,
        }
        if not set_like:
            params["set"] = False
        await self.send_fire_and_forget("set_msg_emoji_like", params)

    async def mark_read(self, *, group_id: Any = None, user_id: Any = None) -> Any:
        if group_id is not None:
            params = {"group_id": _int_or_str(group_id)}
            return await self.send_request_first(
                [("mark_group_msg_as_read", params), ("set_group_msg_as_read", params)]
            )
        params = {"user_id": _int_or_str(user_id)}
        return await self.send_request_first(
            [("mark_private_msg_as_read", params), ("set_private_msg_as_read", params)]
        )

    async def send_poke(self, user_id: Any, *, group_id: Any = None) -> Any:
        params: dict[str, Any] = {"user_id": _int_or_str(user_id)}
        if group_id is not None:
            params["group_id"] = _int_or_str(group_id)
            legacy = ("group_poke", params)
        else:
            legacy = ("friend_poke", params)
        return await self.send_request_first([("send_poke", params), legacy])

    async def set_friend_add_request(
        self, flag: str, *, approve: bool = True, remark: str = ""
    ) -> None:
        await self.send_fire_and_forget(
            "set_friend_add_request",
            {"flag": flag, "approve": approve, "remark": remark},
        )

    async def set_group_add_request(
        self, flag: str, sub_type: str, *, approve: bool = True, reason: str = ""
    ) -> None:
        await self.send_fire_and_forget(
            "set_group_add_request",
            {"flag": flag, "sub_type": sub_type, "approve": approve, "reason": reason},
        )


def _int_or_str(value: Any) -> Any:
    if isinstance(value, int):
        return value
    text = str(value)
    if _INT_TEXT_RE.fullmatch(text):
        return int(text)
    return text
