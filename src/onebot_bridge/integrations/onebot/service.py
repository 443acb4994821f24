from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Optional

from ...core.logging_utils import log_event
from .caches import BridgeRegistry
from .commands import CommandRouter
from .config import DEFAULT_ACCOUNT_ID, OneBotConfig, ReactionMode
from .constants import CHANNEL_ID, ERROR_NOTIFY_TEXT
from .errors import OneBotError
from .events import (
    ConversationKind,
    MessageEvent,
    MetaEvent,
    NoticeEvent,
    RequestEvent,
    parse_event,
)
from .normalizer import CanonicalInboundEvent, EventNormalizer, flatten_segments
from .outbound import OutboundDispatcher, format_target, parse_target
from .reactions import ReactionEngine, extract_reply_marker
from .runtime import ReplyPayload, ReplyRuntime, build_inbound_context
from .segments import coerce_segments, redact_cq
from .transport import OneBotTransport


def _history_messages(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        return data["messages"]
    return []


def _ocr_texts(data: Any) -> list[str]:
    items = data.get("texts") if isinstance(data, dict) else data
    if not isinstance(items, list):
        return []
    texts: list[str] = []
    for item in items:
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            texts.append(item["text"].strip())
        elif isinstance(item, str):
            texts.append(item.strip())
    return [text for text in texts if text]


class OneBotAccountService:
    """Runs one bot account: transport events in, routed replies out."""

    def __init__(
        self,
        config: OneBotConfig,
        *,
        registry: BridgeRegistry,
        runtime: ReplyRuntime,
        transport: Optional[OneBotTransport] = None,
        logger: Optional[logging.Logger] = None,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._registry = registry
        self._runtime = runtime
        self._logger = logger or logging.getLogger(__name__)
        self._transport = (
            transport
            if transport is not None
            else OneBotTransport.from_config(config, logger=self._logger)
        )
        self._normalizer = EventNormalizer(
            config, self._transport, registry, logger=self._logger
        )
        self._outbound = OutboundDispatcher(
            config, self._transport, logger=self._logger, sleep_fn=sleep_fn
        )
        self._reactions = ReactionEngine(
            config.reaction, self._transport, logger=self._logger
        )
        self._commands = CommandRouter(
            config,
            self._transport,
            registry,
            reply=self.reply_to,
            logger=self._logger,
        )
        self._tasks: set[asyncio.Task[Any]] = set()
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._started = False

    @property
    def config(self) -> OneBotConfig:
        return self._config

    @property
    def account_id(self) -> str:
        return self._config.account_id

    @property
    def transport(self) -> OneBotTransport:
        return self._transport

    @property
    def reactions(self) -> ReactionEngine:
        return self._reactions

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._registry.services[self.account_id] = self
        await self._transport.connect()
        log_event(
            self._logger,
            logging.INFO,
            "onebot.account.started",
            account_id=self.account_id,
            ws_url=self._config.ws_url,
            http_url=self._config.http_url,
            reverse_ws_port=self._config.reverse_ws_port,
        )

    def start_processing(self) -> asyncio.Task[None]:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._receive_loop())
        return self._loop_task

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self.start_processing()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop taking events and close transports; in-flight turns finish on their own."""

        loop_task = self._loop_task
        self._loop_task = None
        if loop_task is not None and loop_task is not asyncio.current_task():
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass
        if not self._started:
            return
        self._started = False
        await self._transport.disconnect()
        if self._registry.services.get(self.account_id) is self:
            self._registry.services.pop(self.account_id, None)
        log_event(
            self._logger, logging.INFO, "onebot.account.stopped", account_id=self.account_id
        )

    async def _receive_loop(self) -> None:
        while True:
            await self.process_next()

    async def process_next(self) -> Optional[asyncio.Task[Any]]:
        payload = await self._transport.receive_event()
        return self.handle_payload(payload)

    # -- event routing ---------------------------------------------------

    def handle_payload(self, payload: dict[str, Any]) -> Optional[asyncio.Task[Any]]:
        """Route one queued frame; message turns run as their own task.

        Dedup runs here, before any suspension point, so a repeated message
        id never starts a second turn.
        """

        event = parse_event(payload)
        if event is None:
            return None
        if isinstance(event, MetaEvent):
            if event.is_lifecycle:
                self._transport.set_self_id(event.self_id)
            return None
        if isinstance(event, NoticeEvent):
            return self._spawn(self._normalizer.handle_notice(event))
        if isinstance(event, RequestEvent):
            return self._spawn(self._normalizer.handle_request(event))
        if not self._accept_message(event):
            return None
        return self._spawn(self.handle_message(event))

    def _accept_message(self, event: MessageEvent) -> bool:
        if not self._config.enable_deduplication or not event.message_id:
            return True
        key = f"{self.account_id}:{event.message_id}"
        if self._registry.dedup.check_and_add(key):
            return True
        log_event(
            self._logger,
            logging.DEBUG,
            "onebot.inbound.duplicate",
            account_id=self.account_id,
            message_id=event.message_id,
        )
        return False

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_event(
                self._logger,
                logging.ERROR,
                "onebot.task.failed",
                account_id=self.account_id,
                exc=exc,
            )

    async def handle_message(self, event: MessageEvent) -> None:
        inbound: Optional[CanonicalInboundEvent] = None
        try:
            inbound = await self._normalizer.normalize_message(event)
            if inbound is None:
                return
            await self._handle_inbound(inbound)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "onebot.message.failed",
                account_id=self.account_id,
                message_id=event.message_id,
                exc=exc,
            )
            if inbound is not None and self._config.enable_error_notify:
                await self._notify_error(inbound)

    async def _handle_inbound(self, inbound: CanonicalInboundEvent) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "onebot.inbound.message",
            account_id=self.account_id,
            chat_type=inbound.kind.value,
            user_id=inbound.sender_id,
            group_id=inbound.group_id,
            message_id=inbound.message_id,
            mentioned=inbound.mentioned_bot,
        )
        if self._config.auto_mark_read:
            await self._mark_read(inbound)
        await self._reactions.react_on_receipt(inbound.message_id, inbound.text)
        if await self._commands.route(inbound):
            return

        context = build_inbound_context(
            inbound,
            self._config,
            history=await self._fetch_history(inbound),
            ocr_text=await self._fetch_ocr_text(inbound),
        )
        context = self._runtime.finalize_inbound_context(context)
        await self._runtime.record_inbound_session(context)
        await self._runtime.dispatch_reply(context, self._make_deliver(inbound))

    def _make_deliver(
        self, inbound: CanonicalInboundEvent
    ) -> Callable[[Any], Awaitable[None]]:
        target = parse_target(inbound.conversation_target)
        mention = inbound.sender_id if inbound.is_group else None

        async def deliver(raw_payload: Any) -> None:
            payload = ReplyPayload.coerce(raw_payload)
            marker, text = extract_reply_marker(payload.text)
            await self._reactions.react_on_reply(
                inbound.message_id,
                marker_emoji=marker,
                explicit_emoji=payload.reaction,
            )
            await self._outbound.dispatch(
                target,
                text=text,
                media_urls=payload.media_urls,
                mention_user_id=mention,
            )

        return deliver

    async def reply_to(self, inbound: CanonicalInboundEvent, text: str) -> None:
        await self._outbound.send_text(parse_target(inbound.conversation_target), text)

    async def _notify_error(self, inbound: CanonicalInboundEvent) -> None:
        try:
            await self.reply_to(inbound, ERROR_NOTIFY_TEXT)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "onebot.error_notify.failed",
                account_id=self.account_id,
                exc=exc,
            )

    async def _mark_read(self, inbound: CanonicalInboundEvent) -> None:
        if inbound.kind == ConversationKind.GUILD:
            return
        try:
            if inbound.is_group:
                await self._transport.mark_read(group_id=inbound.group_id)
            else:
                await self._transport.mark_read(user_id=inbound.user_id)
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "onebot.mark_read.failed",
                account_id=self.account_id,
                exc=exc,
            )

    async def _fetch_history(self, inbound: CanonicalInboundEvent) -> list[str]:
        limit = self._config.history_limit
        if not inbound.is_group or not inbound.group_id or limit <= 0:
            return []
        try:
            data = await self._transport.get_group_msg_history(
                inbound.group_id, limit + 1
            )
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "onebot.history.failed",
                group_id=inbound.group_id,
                exc=exc,
            )
            return []
        lines: list[str] = []
        for item in _history_messages(data):
            if not isinstance(item, dict):
                continue
            if inbound.message_id and str(item.get("message_id")) == inbound.message_id:
                continue
            sender = item.get("sender") if isinstance(item.get("sender"), dict) else {}
            name = sender.get("card") or sender.get("nickname") or sender.get("user_id")
            raw = item.get("raw_message")
            if isinstance(raw, str) and raw:
                text = redact_cq(raw)
            else:
                text = flatten_segments(coerce_segments(item.get("message")))
            if text:
                lines.append(f"{name or 'unknown'}: {text}")
        return lines[-limit:]

    async def _fetch_ocr_text(self, inbound: CanonicalInboundEvent) -> Optional[str]:
        if not self._config.enable_ocr or not inbound.media_urls:
            return None
        texts: list[str] = []
        for url in inbound.media_urls:
            try:
                data = await self._transport.send_request("ocr_image", {"image": url})
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "onebot.ocr.failed",
                    account_id=self.account_id,
                    exc=exc,
                )
                continue
            texts.extend(_ocr_texts(data))
        return " ".join(texts) or None

    # -- host-facing operations ------------------------------------------

    async def send_text(self, to: str, text: str) -> dict[str, Any]:
        target = parse_target(to)
        await self._outbound.send_text(target, text)
        return {"channel": CHANNEL_ID, "sent": True, "to": format_target(target)}

    def list_actions(self) -> list[str]:
        if self._config.reaction.mode == ReactionMode.OFF:
            return []
        return ["react"]

    async def handle_action(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        if action != "react":
            raise OneBotError(f"Action {action} is not supported for {CHANNEL_ID}")
        message_id = params.get("message_id", params.get("messageId"))
        if not message_id:
            raise OneBotError("message_id is required for the react action")
        if self._config.reaction.mode == ReactionMode.OFF:
            raise OneBotError("Reactions are not enabled for this account")
        remove = params.get("remove") in (True, "true")
        emoji = params.get("emoji")
        if not remove and not emoji:
            raise OneBotError("emoji is required when not removing a reaction")
        await self._reactions.react(
            str(message_id), str(emoji) if emoji else None, remove=remove
        )
        log_event(
            self._logger,
            logging.INFO,
            "onebot.action.react",
            account_id=self.account_id,
            message_id=str(message_id),
            emoji=emoji,
            remove=remove,
        )
        return {
            "success": True,
            "action": "removed" if remove else "added",
            "emoji": emoji,
            "message_id": str(message_id),
        }


async def start_account(
    config: OneBotConfig,
    *,
    registry: BridgeRegistry,
    runtime: ReplyRuntime,
    logger: Optional[logging.Logger] = None,
    transport: Optional[OneBotTransport] = None,
) -> OneBotAccountService:
    """Connect an account and start consuming its events in the background."""

    service = OneBotAccountService(
        config, registry=registry, runtime=runtime, transport=transport, logger=logger
    )
    await service.start()
    service.start_processing()
    return service


async def logout_account(
    registry: BridgeRegistry, account_id: str = DEFAULT_ACCOUNT_ID
) -> dict[str, Any]:
    service = registry.service_for(account_id)
    if service is not None:
        await service.stop()
    return {"logged_out": True, "cleared": True}


async def send_text(
    registry: BridgeRegistry,
    to: str,
    text: str,
    *,
    account_id: str = DEFAULT_ACCOUNT_ID,
) -> dict[str, Any]:
    service = registry.service_for(account_id)
    if service is None:
        return {"channel": CHANNEL_ID, "sent": False}
    return await service.send_text(to, text)
