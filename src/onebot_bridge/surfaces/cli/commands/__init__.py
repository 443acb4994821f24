from .onebot import register_onebot_commands
from .utils import load_reply_runtime, raise_exit

__all__ = ["load_reply_runtime", "raise_exit", "register_onebot_commands"]
