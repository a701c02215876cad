"""
Tests for the RESP Protocol Parser

These tests verify the ProtocolParser class:
- parse_request() / read_command(): Parse inline and RESP array requests
- format_response(): Encode Reply objects
- encode_command() / read_reply(): The client side of the codec

Run with: python -m pytest tests/test_protocol.py -v
"""

import asyncio
import io
import pytest

from kvlab.exceptions import CommandError, ConnectionError, ProtocolError
from kvlab.protocol.commands import Command, Reply, ReplyType, format_float
from kvlab.protocol.parser import ProtocolParser


def stream_of(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class TestParseInline:
    """Test parsing inline (telnet style) requests."""

    def test_parse_basic(self, parser: ProtocolParser):
        cmd = parser.parse_request(b"SET name Dicki\r\n")

        assert cmd.name == "SET"
        assert cmd.args == [b"name", b"Dicki"]
        assert cmd.inline is True

    def test_parse_case_insensitive(self, parser: ProtocolParser):
        """Command names are upper-cased, arguments are kept as sent."""
        for variant in ["get", "GET", "Get"]:
            cmd = parser.parse_request(f"{variant} Key".encode())
            assert cmd.name == "GET", f"Failed for '{variant}'"
            assert cmd.args == [b"Key"]

    def test_parse_quoted_argument(self, parser: ProtocolParser):
        cmd = parser.parse_request(b'SET name "Dicki Darmawan"')
        assert cmd.args == [b"name", b"Dicki Darmawan"]

    def test_parse_unbalanced_quotes(self, parser: ProtocolParser):
        with pytest.raises(ProtocolError):
            parser.parse_request(b'SET name "Dicki')

    def test_parse_empty_input(self, parser: ProtocolParser):
        assert parser.parse_request(b"\r\n").is_empty
        assert parser.parse_request(b"   ").is_empty


@pytest.mark.asyncio
class TestReadCommand:
    """Test reading requests from a stream."""

    async def test_read_resp_array(self, parser: ProtocolParser):
        reader = stream_of(b"*3\r\n$3\r\nset\r\n$4\r\nname\r\n$5\r\nDicki\r\n")
        cmd = await parser.read_command(reader)

        assert cmd.name == "SET"
        assert cmd.args == [b"name", b"Dicki"]
        assert cmd.inline is False

    async def test_read_binary_safe_argument(self, parser: ProtocolParser):
        """Bulk strings may contain CRLF and arbitrary bytes."""
        reader = stream_of(b"*2\r\n$4\r\nECHO\r\n$4\r\na\r\nb\r\n")
        cmd = await parser.read_command(reader)
        assert cmd.args == [b"a\r\nb"]

    async def test_read_inline(self, parser: ProtocolParser):
        cmd = await parser.read_command(stream_of(b"PING\r\n"))
        assert cmd.name == "PING"
        assert cmd.args == []

    async def test_read_pipelined_commands(self, parser: ProtocolParser):
        reader = stream_of(parser.encode_command("INCR", "a") + parser.encode_command("GET", "a"))
        first = await parser.read_command(reader)
        second = await parser.read_command(reader)

        assert (first.name, first.args) == ("INCR", [b"a"])
        assert (second.name, second.args) == ("GET", [b"a"])

    async def test_read_skips_empty_array(self, parser: ProtocolParser):
        cmd = await parser.read_command(stream_of(b"*0\r\n*1\r\n$4\r\nPING\r\n"))
        assert cmd.name == "PING"

    async def test_read_empty_name_is_a_command(self, parser: ProtocolParser):
        cmd = await parser.read_command(stream_of(b"*1\r\n$0\r\n\r\n"))
        assert cmd.name == ""
        assert not cmd.is_empty

    async def test_read_eof_returns_none(self, parser: ProtocolParser):
        assert await parser.read_command(stream_of(b"")) is None

    async def test_read_bad_bulk_header(self, parser: ProtocolParser):
        with pytest.raises(ProtocolError):
            await parser.read_command(stream_of(b"*1\r\n:3\r\n"))

    async def test_read_bad_length(self, parser: ProtocolParser):
        with pytest.raises(ProtocolError):
            await parser.read_command(stream_of(b"*x\r\n"))

    async def test_read_truncated_bulk(self, parser: ProtocolParser):
        with pytest.raises(asyncio.IncompleteReadError):
            await parser.read_command(stream_of(b"*1\r\n$10\r\nPING\r\n"))


class TestFormatResponse:
    """Test encoding replies."""

    def test_format_ok(self, parser: ProtocolParser):
        assert parser.format_response(Reply.ok()) == b"+OK\r\n"

    def test_format_error(self, parser: ProtocolParser):
        assert parser.format_response(Reply.error("syntax error")) == b"-ERR syntax error\r\n"

    def test_format_error_keeps_code(self, parser: ProtocolParser):
        reply = Reply.error("WRONGTYPE Operation against a key holding the wrong kind of value")
        assert parser.format_response(reply).startswith(b"-WRONGTYPE ")

    def test_format_integer(self, parser: ProtocolParser):
        assert parser.format_response(Reply.integer(-3)) == b":-3\r\n"

    def test_format_bulk(self, parser: ProtocolParser):
        assert parser.format_response(Reply.bulk(b"Dicki")) == b"$5\r\nDicki\r\n"

    def test_format_nil_and_null_array(self, parser: ProtocolParser):
        assert parser.format_response(Reply.nil()) == b"$-1\r\n"
        assert parser.format_response(Reply.null_array()) == b"*-1\r\n"

    def test_format_nested_array(self, parser: ProtocolParser):
        reply = Reply.array([b"a", 1, None, [b"b"]])
        assert parser.format_response(reply) == (
            b"*4\r\n$1\r\na\r\n:1\r\n$-1\r\n*1\r\n$1\r\nb\r\n"
        )

    def test_format_empty_array(self, parser: ProtocolParser):
        assert parser.format_response(Reply.array([])) == b"*0\r\n"


class TestReplyOf:
    """Test conversion of plain values into replies."""

    def test_of_values(self):
        assert Reply.of(None) == Reply.nil()
        assert Reply.of(True) == Reply.integer(1)
        assert Reply.of(7).type == ReplyType.INTEGER
        assert Reply.of("x") == Reply.bulk(b"x")
        assert Reply.of(2.5) == Reply.bulk(b"2.5")

    def test_of_command_error(self):
        reply = Reply.of(CommandError("BUSYGROUP Consumer Group name already exists"))
        assert reply.is_error
        assert reply.value.startswith("BUSYGROUP")

    def test_format_float(self):
        assert format_float(100.0) == "100"
        assert format_float(1.5) == "1.5"
        assert format_float(float("inf")) == "inf"
        assert format_float(float("-inf")) == "-inf"


class TestClientCodec:
    """Test the client half of the codec."""

    def test_encode_command(self, parser: ProtocolParser):
        assert parser.encode_command("SET", "k", 10) == (
            b"*3\r\n$3\r\nSET\r\n$1\r\nk\r\n$2\r\n10\r\n"
        )

    def test_encode_float_argument(self, parser: ProtocolParser):
        assert parser.encode_arg(13.361389) == b"13.361389"
        assert parser.encode_arg(100.0) == b"100"

    def test_encode_rejects_bool(self, parser: ProtocolParser):
        with pytest.raises(TypeError):
            parser.encode_command("SET", "k", True)

    def test_encode_rejects_unknown_type(self, parser: ProtocolParser):
        with pytest.raises(TypeError):
            parser.encode_arg(object())

    def test_read_reply_types(self, parser: ProtocolParser):
        fp = io.BytesIO(b"+OK\r\n:42\r\n$3\r\nabc\r\n$-1\r\n*-1\r\n*2\r\n$1\r\na\r\n:1\r\n")

        assert parser.read_reply(fp) == "OK"
        assert parser.read_reply(fp) == 42
        assert parser.read_reply(fp) == b"abc"
        assert parser.read_reply(fp) is None
        assert parser.read_reply(fp) is None
        assert parser.read_reply(fp) == [b"a", 1]

    def test_read_error_reply_is_returned(self, parser: ProtocolParser):
        reply = parser.read_reply(io.BytesIO(b"-WRONGTYPE Operation against a key\r\n"))

        assert isinstance(reply, CommandError)
        assert reply.prefix == "WRONGTYPE"
        assert reply.message == "Operation against a key"

    def test_read_error_inside_array(self, parser: ProtocolParser):
        reply = parser.read_reply(io.BytesIO(b"*2\r\n:1\r\n-ERR boom\r\n"))
        assert reply[0] == 1
        assert isinstance(reply[1], CommandError)

    def test_read_eof(self, parser: ProtocolParser):
        with pytest.raises(ConnectionError):
            parser.read_reply(io.BytesIO(b""))

    def test_read_truncated_bulk(self, parser: ProtocolParser):
        with pytest.raises(ConnectionError):
            parser.read_reply(io.BytesIO(b"$10\r\nabc\r\n"))

    def test_read_unknown_prefix(self, parser: ProtocolParser):
        with pytest.raises(ProtocolError):
            parser.read_reply(io.BytesIO(b"?what\r\n"))


class TestCommand:
    """Test the Command dataclass."""

    def test_command_str(self):
        cmd = Command(name="SET", args=[b"k", b"v"])
        assert "SET" in str(cmd)

    def test_command_is_empty(self):
        assert Command(name="", inline=True).is_empty
        assert not Command(name="PING", inline=True).is_empty
        assert not Command(name="").is_empty
