"""Protocol module for kvlab."""

from .commands import Command, Reply, ReplyType, format_float
from .parser import ProtocolParser

__all__ = [
    "Command",
    "Reply",
    "ReplyType",
    "ProtocolParser",
    "format_float",
]
