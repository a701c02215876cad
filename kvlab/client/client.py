"""
Synchronous Client

KVClient wraps one Connection and exposes the command surface of
CommandsMixin. Every call is one round trip; nothing is retried.
"""

import logging
from typing import Any, Callable, Optional

from ..config.settings import settings
from ..exceptions import CommandError
from .commands import CommandsMixin
from .connection import Connection, _UNSET
from .pipeline import Pipeline
from .pubsub import Subscription

logger = logging.getLogger(__name__)


class KVClient(CommandsMixin):
    """
    Client for a kvlab (or any RESP2) server.

    Features:
    - One explicitly owned connection, opened lazily
    - Typed replies (str/bytes, int, None, list) with per-command callbacks
    - Pipelines and MULTI/EXEC transactions
    - Pub/sub subscriptions on a dedicated connection

    Usage:
        with KVClient(host='127.0.0.1', port=6379) as client:
            client.set('name', 'Dicki', ex=3)
            client.get('name')  # 'Dicki'

    Attributes:
        connection: The underlying Connection
        decode_responses: Decode bulk strings to str
    """

    def __init__(
            self,
            host: str = None,
            port: int = None,
            db: int = None,
            socket_timeout: Optional[float] = _UNSET,
            decode_responses: bool = True,
            encoding: str = None,
    ):
        self.encoding = encoding or settings.ENCODING
        self.decode_responses = decode_responses
        self.connection = Connection(
            host=host,
            port=port,
            db=db,
            socket_timeout=socket_timeout,
            encoding=self.encoding,
        )

    @classmethod
    def from_settings(cls, **overrides) -> "KVClient":
        """Build a client from kvlab.config.settings."""
        options = dict(
            host=settings.HOST,
            port=settings.PORT,
            db=settings.DB,
            socket_timeout=settings.SOCKET_TIMEOUT,
        )
        options.update(overrides)
        return cls(**options)

    def __repr__(self) -> str:
        return f"KVClient<{self.connection!r}>"

    @property
    def host(self) -> str:
        return self.connection.host

    @property
    def port(self) -> int:
        return self.connection.port

    @property
    def db(self) -> int:
        return self.connection.db

    @property
    def socket_timeout(self) -> Optional[float]:
        return self.connection.socket_timeout

    def execute_command(self, *args, callback: Callable = None, timeout=_UNSET) -> Any:
        """
        Send one command and return its processed reply.

        Args:
            args: Command name followed by its arguments
            callback: Applied to the decoded reply
            timeout: Socket timeout override for this reply

        Raises:
            CommandError: The server replied with an error
            ConnectionError: The session failed
        """
        self.connection.send_command(*args)
        reply = self.connection.read_response(timeout)
        if isinstance(reply, CommandError):
            raise reply
        return self.process_reply(reply, callback)

    def process_reply(self, reply: Any, callback: Callable = None) -> Any:
        reply = self.decode(reply)
        return callback(reply) if callback is not None else reply

    def decode(self, reply: Any) -> Any:
        """Decode bulk strings, recursively, when decode_responses is set."""
        if not self.decode_responses:
            return reply
        if isinstance(reply, bytes):
            return reply.decode(self.encoding, errors="replace")
        if isinstance(reply, list):
            return [self.decode(item) for item in reply]
        return reply

    def _blocking_timeout(self, block_ms: int) -> Optional[float]:
        # The server holds the reply for up to block_ms; BLOCK 0 may wait forever.
        if block_ms == 0 or self.socket_timeout is None:
            return None
        return block_ms / 1000.0 + self.socket_timeout

    def select(self, db: int):
        result = super().select(db)
        self.connection.db = db
        return result

    def pipeline(self, transaction: bool = False) -> Pipeline:
        """
        Create a command batch.

        Args:
            transaction: Wrap the batch in MULTI/EXEC
        """
        return Pipeline(self, transaction=transaction)

    def subscribe(self, *channels) -> Subscription:
        """
        Subscribe to channels on a dedicated connection.

        Returns once the server has confirmed every channel.
        """
        return Subscription(self, *channels)

    def close(self) -> None:
        self.connection.disconnect()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
