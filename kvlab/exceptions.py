"""
kvlab Exceptions

Error hierarchy shared by the server and the client. Command errors map
one-to-one onto RESP error replies: the first word of the message is the
error code (``ERR``, ``WRONGTYPE``, ``BUSYGROUP``, ...).
"""


class KVError(Exception):
    """Base class for every kvlab error."""


class ConnectionError(KVError):
    """The session to the server could not be opened or was lost."""


class ProtocolError(KVError):
    """A malformed RESP frame was received."""


class NotFound(KVError):
    """The requested key is absent or has expired."""


class CommandError(KVError):
    """
    The server rejected a command.

    Attributes:
        prefix: Error code, e.g. 'ERR' or 'WRONGTYPE'
        message: Message without the error code
    """

    def __init__(self, text: str = "ERR"):
        code, _, rest = text.partition(" ")
        if code and code.isupper():
            self.prefix = code
            self.message = rest
        else:
            self.prefix = "ERR"
            self.message = text
            text = f"ERR {text}"
        super().__init__(text)

    def to_resp(self) -> bytes:
        """Encode as a RESP error reply."""
        return f"-{self}\r\n".encode()


class WrongTypeError(CommandError):
    """A command was run against a key holding another value type."""

    def __init__(self):
        super().__init__(
            "WRONGTYPE Operation against a key holding the wrong kind of value"
        )


class TransactionAborted(CommandError):
    """EXEC refused to run the queued commands; nothing was applied."""
