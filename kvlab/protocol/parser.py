"""
Protocol Parser Module

This module handles the RESP2 wire format on both sides of a connection:
parsing requests and formatting replies on the server, encoding commands
and decoding replies on the client.
"""

import shlex
from typing import Any, Optional

from .commands import Command, Reply, ReplyType, format_float
from ..exceptions import CommandError, ConnectionError, ProtocolError

CRLF = b"\r\n"
MAX_BULK_SIZE = 512 * 1024 * 1024
MAX_ARRAY_SIZE = 1024 * 1024


class ProtocolParser:
    """
    Parser for the RESP2 protocol.

    Protocol Format:
        Request:  *<n>\\r\\n followed by n bulk strings ($<len>\\r\\n<data>\\r\\n),
                  or an inline text line (PING\\r\\n)
        Reply:    +simple | -error | :integer | $bulk | *array

    Examples:
        >>> parser = ProtocolParser()
        >>> parser.encode_command("SET", "name", "Dicki")
        b'*3\\r\\n$3\\r\\nSET\\r\\n$4\\r\\nname\\r\\n$5\\r\\nDicki\\r\\n'
        >>> parser.format_response(Reply.ok())
        b'+OK\\r\\n'
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    # ------------------------------------------------------------------
    # Server side
    # ------------------------------------------------------------------

    def parse_request(self, data: bytes) -> Command:
        """
        Parse an inline (plain text) request line.

        Quoting follows shell rules, so ``SET name "Dicki Darmawan"`` yields
        two arguments after the command name.

        Raises:
            ProtocolError: Unbalanced quotes
        """
        raw = data.decode(self.encoding, errors="replace").strip()
        if not raw:
            return Command(name="", inline=True)
        try:
            parts = shlex.split(raw)
        except ValueError:
            raise ProtocolError("unbalanced quotes in request")
        if not parts:
            return Command(name="", inline=True)
        return Command(
            name=parts[0].upper(),
            args=[part.encode(self.encoding) for part in parts[1:]],
            inline=True,
        )

    async def read_command(self, reader) -> Optional[Command]:
        """
        Read one request from an asyncio StreamReader.

        Returns:
            The parsed Command, or None when the client disconnected.

        Raises:
            ProtocolError: Malformed frame
            asyncio.IncompleteReadError: Connection dropped mid-frame
        """
        while True:
            line = await reader.readline()
            if not line or not line.endswith(b"\n"):
                return None
            if line[:1] != b"*":
                return self.parse_request(line)

            count = self._parse_length(line, MAX_ARRAY_SIZE, "multibulk length")
            # '*0' carries no command and gets no reply
            if count > 0:
                break

        args = []
        for _ in range(count):
            header = await reader.readline()
            if not header:
                return None
            if header[:1] != b"$":
                found = header[:1].decode(self.encoding, errors="replace")
                raise ProtocolError(f"expected '$', got '{found}'")
            size = self._parse_length(header, MAX_BULK_SIZE, "bulk length")
            if size < 0:
                raise ProtocolError("invalid bulk length")
            data = await reader.readexactly(size + 2)
            if data[-2:] != CRLF:
                raise ProtocolError("bulk string not terminated by CRLF")
            args.append(data[:-2])

        name = args[0].decode(self.encoding, errors="replace").upper()
        return Command(name=name, args=args[1:])

    def format_response(self, reply: Reply) -> bytes:
        """
        Format a Reply into its RESP2 encoding.

        Examples:
            >>> parser = ProtocolParser()
            >>> parser.format_response(Reply.integer(3))
            b':3\\r\\n'
            >>> parser.format_response(Reply.nil())
            b'$-1\\r\\n'
        """
        kind = reply.type
        if kind == ReplyType.SIMPLE or kind == ReplyType.ERROR:
            text = str(reply.value).replace("\r", " ").replace("\n", " ")
            return kind.value.encode() + text.encode(self.encoding) + CRLF
        if kind == ReplyType.INTEGER:
            return b":%d\r\n" % reply.value
        if kind == ReplyType.BULK:
            if reply.value is None:
                return b"$-1\r\n"
            return b"$%d\r\n%s\r\n" % (len(reply.value), reply.value)
        if reply.value is None:
            return b"*-1\r\n"
        parts = [b"*%d\r\n" % len(reply.value)]
        parts.extend(self.format_response(item) for item in reply.value)
        return b"".join(parts)

    # ------------------------------------------------------------------
    # Client side
    # ------------------------------------------------------------------

    def encode_command(self, *args) -> bytes:
        """Encode a command name and its arguments as a RESP array."""
        parts = [b"*%d\r\n" % len(args)]
        for arg in args:
            data = self.encode_arg(arg)
            parts.append(b"$%d\r\n%s\r\n" % (len(data), data))
        return b"".join(parts)

    def encode_arg(self, value) -> bytes:
        if isinstance(value, bytes):
            return value
        if isinstance(value, bool):
            raise TypeError("booleans cannot be sent as command arguments")
        if isinstance(value, float):
            return format_float(value).encode()
        if isinstance(value, (int, str)):
            return str(value).encode(self.encoding)
        if isinstance(value, memoryview):
            return value.tobytes()
        raise TypeError(
            f"invalid argument type {type(value).__name__}; "
            "convert to bytes, str, int or float first"
        )

    def read_reply(self, fp) -> Any:
        """
        Decode one reply from a binary file object (socket.makefile('rb')).

        Returns:
            str for simple strings, int, bytes or None for bulk strings,
            list or None for arrays. Error replies are returned, not raised,
            as CommandError instances.

        Raises:
            ConnectionError: The server closed the connection
            ProtocolError: Malformed reply
        """
        line = fp.readline()
        if not line or not line.endswith(CRLF):
            raise ConnectionError("Connection closed by server")

        prefix, body = line[:1], line[1:-2]
        if prefix == b"+":
            return body.decode(self.encoding, errors="replace")
        if prefix == b"-":
            return CommandError(body.decode(self.encoding, errors="replace"))
        if prefix == b":":
            try:
                return int(body)
            except ValueError:
                raise ProtocolError(f"invalid integer reply: {body!r}")
        if prefix == b"$":
            size = self._parse_length(line, MAX_BULK_SIZE, "bulk length")
            if size < 0:
                return None
            data = fp.read(size + 2)
            if len(data) < size + 2:
                raise ConnectionError("Connection closed by server")
            return data[:-2]
        if prefix == b"*":
            count = self._parse_length(line, MAX_ARRAY_SIZE, "multibulk length")
            if count < 0:
                return None
            return [self.read_reply(fp) for _ in range(count)]
        raise ProtocolError(f"unknown reply prefix in {line!r}")

    @staticmethod
    def _parse_length(line: bytes, limit: int, what: str) -> int:
        try:
            value = int(line[1:].strip())
        except ValueError:
            raise ProtocolError(f"invalid {what}")
        if value > limit:
            raise ProtocolError(f"invalid {what}")
        return value
