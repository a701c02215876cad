"""
Protocol Command and Reply Definitions

This module defines the data structures exchanged between the connection
loop and the command dispatcher: a parsed ``Command`` and the typed
``Reply`` that is serialized back to the client.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from ..exceptions import CommandError


def format_float(value: float) -> str:
    """Format a score the way the store prints it: 100 rather than 100.0."""
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    if value.is_integer() and abs(value) < 1e17:
        return str(int(value))
    return repr(value)


class ReplyType(Enum):
    """RESP2 reply kinds, valued by their wire prefix."""
    SIMPLE = "+"
    ERROR = "-"
    INTEGER = ":"
    BULK = "$"
    ARRAY = "*"


@dataclass
class Command:
    """
    Represents a parsed protocol command.

    Attributes:
        name: Upper-cased command name (empty for a blank inline line)
        args: Arguments following the name, as raw bytes
        inline: True when the command arrived as a plain text line
    """
    name: str
    args: List[bytes] = field(default_factory=list)
    inline: bool = False

    @property
    def is_empty(self) -> bool:
        """A blank inline line. An empty name sent as a bulk string is a
        real (unknown) command and still gets a reply."""
        return self.inline and not self.name

    def __str__(self) -> str:
        parts = [self.name]
        parts.extend(arg.decode("utf-8", errors="replace") for arg in self.args)
        return " ".join(parts)


@dataclass
class Reply:
    """
    Represents a protocol reply.

    Attributes:
        type: Reply kind
        value: str for SIMPLE/ERROR, int for INTEGER, bytes or None for
            BULK, list of Reply or None for ARRAY
    """
    type: ReplyType
    value: Any = None

    @property
    def is_error(self) -> bool:
        return self.type == ReplyType.ERROR

    @classmethod
    def ok(cls) -> "Reply":
        """Create the '+OK' status reply."""
        return cls.simple("OK")

    @classmethod
    def queued(cls) -> "Reply":
        """Create the '+QUEUED' reply sent inside MULTI."""
        return cls.simple("QUEUED")

    @classmethod
    def simple(cls, message: str) -> "Reply":
        return cls(ReplyType.SIMPLE, message)

    @classmethod
    def error(cls, message: str) -> "Reply":
        """Create an error reply from a message or a CommandError."""
        return cls(ReplyType.ERROR, str(CommandError(str(message))))

    @classmethod
    def integer(cls, value: int) -> "Reply":
        return cls(ReplyType.INTEGER, int(value))

    @classmethod
    def bulk(cls, data: Optional[bytes]) -> "Reply":
        if isinstance(data, str):
            data = data.encode()
        return cls(ReplyType.BULK, data)

    @classmethod
    def nil(cls) -> "Reply":
        """Create the nil bulk string reply ($-1)."""
        return cls(ReplyType.BULK, None)

    @classmethod
    def null_array(cls) -> "Reply":
        """Create the nil array reply (*-1)."""
        return cls(ReplyType.ARRAY, None)

    @classmethod
    def array(cls, items) -> "Reply":
        """Create an array reply, converting plain Python items."""
        return cls(ReplyType.ARRAY, [cls.of(item) for item in items])

    @classmethod
    def of(cls, value: Any) -> "Reply":
        """
        Convert a plain Python value into a reply.

        None becomes nil, int an integer, bytes/str a bulk string, float a
        formatted bulk string and list/tuple an array.
        """
        if isinstance(value, Reply):
            return value
        if value is None:
            return cls.nil()
        if isinstance(value, CommandError):
            return cls(ReplyType.ERROR, str(value))
        if isinstance(value, bool):
            return cls.integer(1 if value else 0)
        if isinstance(value, int):
            return cls.integer(value)
        if isinstance(value, float):
            return cls.bulk(format_float(value).encode())
        if isinstance(value, (bytes, str)):
            return cls.bulk(value)
        if isinstance(value, (list, tuple)):
            return cls.array(value)
        raise TypeError(f"cannot convert {type(value).__name__} to a reply")
