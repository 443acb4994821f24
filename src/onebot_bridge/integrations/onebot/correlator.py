from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import OneBotActionError, OneBotConnectivityError, OneBotRequestTimeout


@dataclass
class PendingRequest:
    token: str
    action: str
    future: asyncio.Future[Any]
    deadline: float
    timeout_seconds: float


def new_correlation_token() -> str:
    return secrets.token_hex(8)


class RequestCorrelator:
    """Pairs socket action calls with their ``echo``-tagged responses.

    Every registered token is removed exactly once: on a matching response,
    on timeout, or when :meth:`fail_all` runs at teardown.
    """

    def __init__(
        self,
        *,
        token_factory: Callable[[], str] = new_correlation_token,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pending: dict[str, PendingRequest] = {}
        self._token_factory = token_factory
        self._clock = clock

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, token: object) -> bool:
        return token in self._pending

    def register(self, action: str, timeout_seconds: float) -> PendingRequest:
        token = self._token_factory()
        while token in self._pending:
            token = self._token_factory()
        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            token=token,
            action=action,
            future=loop.create_future(),
            deadline=self._clock() + timeout_seconds,
            timeout_seconds=timeout_seconds,
        )
        self._pending[token] = pending
        return pending

    def resolve(self, frame: dict[str, Any]) -> bool:
        """Complete the request matching ``frame['echo']``.

        Returns False when the frame does not belong to a pending request.
        """

        echo = frame.get("echo")
        if echo is None:
            return False
        pending = self._pending.pop(str(echo), None)
        if pending is None:
            return False
        if pending.future.done():
            return True
        status = frame.get("status")
        retcode = frame.get("retcode")
        if status == "ok" or retcode == 0:
            pending.future.set_result(frame.get("data"))
        else:
            detail = frame.get("wording") or frame.get("msg") or frame.get("message")
            pending.future.set_exception(
                OneBotActionError(
                    pending.action,
                    retcode=retcode,
                    detail=str(detail) if detail else None,
                )
            )
        return True

    async def wait(self, pending: PendingRequest) -> Any:
        remaining = max(pending.deadline - self._clock(), 0.0)
        try:
            return await asyncio.wait_for(
                asyncio.shield(pending.future), timeout=remaining
            )
        except asyncio.TimeoutError as exc:
            raise OneBotRequestTimeout(pending.action, pending.timeout_seconds) from exc
        finally:
            self.discard(pending.token)

    def discard(self, token: str) -> None:
        pending = self._pending.pop(token, None)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    def fail_all(self, reason: str = "transport closed") -> int:
        failed = 0
        for token in list(self._pending):
            pending = self._pending.pop(token)
            if not pending.future.done():
                pending.future.set_exception(
                    OneBotConnectivityError(f"{pending.action}: {reason}")
                )
                failed += 1
        return failed

    def pending_tokens(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def get(self, token: str) -> Optional[PendingRequest]:
        return self._pending.get(token)
