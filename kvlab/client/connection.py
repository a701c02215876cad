"""
Client Connection

A single blocking TCP session to a kvlab (or any RESP2) server. The
connection is opened lazily on first use and never retried: every socket
failure is surfaced to the caller as kvlab.exceptions.ConnectionError.
"""

import logging
import socket
from typing import Any, Optional

from ..config.settings import settings
from ..exceptions import CommandError, ConnectionError, ProtocolError
from ..protocol.parser import ProtocolParser

logger = logging.getLogger(__name__)

_UNSET = object()


class Connection:
    """
    Blocking TCP connection speaking RESP2.

    Usage:
        conn = Connection('127.0.0.1', 6379)
        conn.send_command('SET', 'name', 'Dicki')
        conn.read_response()  # 'OK'

    Attributes:
        host: Server address
        port: Server port
        db: Logical database selected right after connecting
        socket_timeout: Read/write timeout in seconds (None blocks forever)
        socket_connect_timeout: Timeout for establishing the connection
    """

    def __init__(
            self,
            host: str = None,
            port: int = None,
            db: int = None,
            socket_timeout: Optional[float] = _UNSET,
            socket_connect_timeout: Optional[float] = _UNSET,
            encoding: str = None,
    ):
        self.host = host if host is not None else settings.HOST
        self.port = port if port is not None else settings.PORT
        self.db = db if db is not None else settings.DB
        self.socket_timeout = settings.SOCKET_TIMEOUT if socket_timeout is _UNSET else socket_timeout
        self.socket_connect_timeout = (
            self.socket_timeout if socket_connect_timeout is _UNSET else socket_connect_timeout
        )
        self.parser = ProtocolParser(encoding=encoding or settings.ENCODING)
        self._sock: Optional[socket.socket] = None
        self._fp = None

    def __repr__(self) -> str:
        return f"Connection<host={self.host},port={self.port},db={self.db}>"

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    def connect(self) -> None:
        """
        Open the socket and select the configured database.

        Raises:
            ConnectionError: The server cannot be reached
        """
        if self._sock is not None:
            return
        try:
            sock = socket.create_connection(
                (self.host, self.port), timeout=self.socket_connect_timeout
            )
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.settimeout(self.socket_timeout)
        except OSError as exc:
            raise ConnectionError(f"Error connecting to {self.host}:{self.port}. {exc}") from exc

        self._sock = sock
        self._fp = sock.makefile("rb")
        logger.debug(f"Connected to {self.host}:{self.port}")

        if self.db:
            self.send_command("SELECT", self.db)
            reply = self.read_response()
            if isinstance(reply, CommandError):
                self.disconnect()
                raise ConnectionError(f"Invalid database {self.db}: {reply}")

    def disconnect(self) -> None:
        """Close the socket. Safe to call more than once."""
        sock, fp = self._sock, self._fp
        self._sock = None
        self._fp = None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            if fp is not None:
                fp.close()
            sock.close()
        except OSError:
            pass
        logger.debug(f"Disconnected from {self.host}:{self.port}")

    def send_packed(self, data: bytes) -> None:
        """Write pre-encoded command bytes."""
        if self._sock is None:
            self.connect()
        try:
            self._sock.sendall(data)
        except OSError as exc:
            self.disconnect()
            raise ConnectionError(f"Error writing to {self.host}:{self.port}. {exc}") from exc

    def send_command(self, *args) -> None:
        """Encode and send one command."""
        self.send_packed(self.parser.encode_command(*args))

    def read_response(self, timeout: Optional[float] = _UNSET) -> Any:
        """
        Read one reply.

        Args:
            timeout: Override the socket timeout for this read only

        Returns:
            The decoded reply; error replies come back as CommandError
            instances rather than being raised.

        Raises:
            ConnectionError: Socket failure, timeout or server hang-up
            ProtocolError: Malformed reply
        """
        if self._sock is None:
            raise ConnectionError("Connection is closed")
        sock = self._sock
        if timeout is not _UNSET:
            sock.settimeout(timeout)
        try:
            return self.parser.read_reply(self._fp)
        except socket.timeout as exc:
            self.disconnect()
            raise ConnectionError(f"Timeout reading from {self.host}:{self.port}") from exc
        except OSError as exc:
            self.disconnect()
            raise ConnectionError(f"Error reading from {self.host}:{self.port}. {exc}") from exc
        except (ConnectionError, ProtocolError):
            self.disconnect()
            raise
        finally:
            if timeout is not _UNSET and self._sock is sock:
                try:
                    sock.settimeout(self.socket_timeout)
                except OSError:
                    pass

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
