"""Core runtime primitives."""

from .exceptions import BridgeError, PermanentError, TransientError
from .logging_utils import log_event, setup_rotating_logger

__all__ = [
    "BridgeError",
    "PermanentError",
    "TransientError",
    "log_event",
    "setup_rotating_logger",
]
