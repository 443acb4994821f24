from __future__ import annotations

from typing import Any, Optional

from ...core.exceptions import BridgeError, PermanentError, TransientError


class OneBotError(BridgeError):
    """Base OneBot integration error."""


class OneBotConfigError(OneBotError, PermanentError):
    """OneBot account configuration error."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity


class OneBotConnectivityError(OneBotError, TransientError):
    """No usable transport, or the transport dropped mid-call."""

    recoverable = TransientError.recoverable
    severity = TransientError.severity

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        if user_message is None:
            user_message = "Gateway is not connected. Reconnecting..."
        super().__init__(message, user_message=user_message)


class OneBotRequestTimeout(OneBotConnectivityError):
    """No correlated response arrived before the deadline."""

    def __init__(
        self,
        action: str,
        timeout_seconds: float,
        *,
        user_message: Optional[str] = None,
    ) -> None:
        if user_message is None:
            user_message = "Gateway did not answer in time."
        super().__init__(
            f"OneBot action {action!r} timed out after {timeout_seconds:.1f}s",
            user_message=user_message,
        )
        self.action = action
        self.timeout_seconds = timeout_seconds


class OneBotActionError(OneBotError):
    """Gateway answered with a failed status."""

    def __init__(
        self,
        action: str,
        *,
        retcode: Any = None,
        detail: Optional[str] = None,
    ) -> None:
        message = f"OneBot action {action!r} failed"
        if retcode is not None:
            message += f" (retcode={retcode})"
        if detail:
            message += f": {detail}"
        super().__init__(message, user_message=detail or None)
        self.action = action
        self.retcode = retcode


class OneBotTargetError(OneBotError, PermanentError, ValueError):
    """Outbound destination string could not be parsed."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity
