"""Shared error hierarchy.

Adapters derive from these so retry and severity behavior stays consistent.
"""

from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base error for the bridge."""

    recoverable = True
    severity = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(BridgeError):
    """Retryable failure (network, timeouts, gateway hiccups)."""

    recoverable = True
    severity = "warning"


class PermanentError(BridgeError):
    """Non-retryable failure (validation, auth, bad input)."""

    recoverable = False
    severity = "error"
