"""
Pub/Sub Subscriptions

A Subscription owns a dedicated connection in subscribe mode. A daemon
reader thread turns incoming 'message' frames into Message objects on a
queue, so the caller can poll with a timeout or iterate with listen().
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from ..exceptions import ConnectionError, KVError, ProtocolError
from .connection import Connection

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass
class Message:
    """A published message received on a subscribed channel."""
    channel: Any
    data: Any


class Subscription:
    """
    Channel subscription on its own connection.

    Usage:
        with client.subscribe('news') as sub:
            client.publish('news', 'hello')
            sub.get_message(timeout=1.0)  # Message(channel='news', data='hello')

    Attributes:
        channels: Channels confirmed by the server
        connection: The dedicated Connection
    """

    def __init__(self, client, *channels):
        self._decode = client.decode
        self._confirm_timeout = client.socket_timeout
        # Reads block until a message arrives; only connecting is bounded.
        self.connection = Connection(
            host=client.host,
            port=client.port,
            db=client.db,
            socket_timeout=None,
            socket_connect_timeout=client.socket_timeout,
            encoding=client.encoding,
        )
        self.channels = set()
        self._queue: "queue.Queue" = queue.Queue()
        self._changed = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[KVError] = None
        self._closing = False
        if channels:
            self.subscribe(*channels)

    def __repr__(self) -> str:
        return f"Subscription<channels={sorted(map(str, self.channels))}>"

    @property
    def is_active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, *channels) -> None:
        """
        Subscribe to more channels and wait for the server's confirmations.

        Raises:
            ConnectionError: The connection failed or no confirmation arrived
        """
        if not channels:
            raise ValueError("subscribe needs at least one channel")
        if self._closing or (self._thread is not None and not self._thread.is_alive()):
            raise ConnectionError("Subscription is closed")
        wanted = {self._decode(self.connection.parser.encode_arg(ch)) for ch in channels}

        self.connection.connect()
        self.connection.send_command("SUBSCRIBE", *channels)
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run, name="kvlab-subscription", daemon=True
            )
            self._thread.start()

        with self._changed:
            confirmed = self._changed.wait_for(
                lambda: wanted <= self.channels or self._error is not None or not self.is_active,
                timeout=self._confirm_timeout,
            )
        if self._error is not None:
            raise self._error
        if not confirmed or not wanted <= self.channels:
            raise ConnectionError(f"No subscribe confirmation for {sorted(map(str, wanted))}")

    def unsubscribe(self, *channels) -> None:
        """Unsubscribe from channels, or from every channel when none given."""
        if self.connection.is_connected:
            self.connection.send_command("UNSUBSCRIBE", *channels)

    def _run(self) -> None:
        """Reader thread: dispatch frames until unsubscribed or disconnected."""
        try:
            while True:
                reply = self.connection.read_response()
                if not isinstance(reply, list) or not reply:
                    logger.debug(f"Ignoring unexpected frame in subscribe mode: {reply!r}")
                    continue
                kind = reply[0].decode() if isinstance(reply[0], bytes) else reply[0]
                if kind == "message":
                    self._queue.put(Message(self._decode(reply[1]), self._decode(reply[2])))
                elif kind in ("subscribe", "unsubscribe"):
                    channel = self._decode(reply[1])
                    with self._changed:
                        if kind == "subscribe":
                            self.channels.add(channel)
                        else:
                            self.channels.discard(channel)
                        self._changed.notify_all()
                    if kind == "unsubscribe" and reply[2] == 0:
                        break
        except (ConnectionError, ProtocolError) as exc:
            if not self._closing:
                logger.debug(f"Subscription connection lost: {exc}")
                self._error = exc
        finally:
            with self._changed:
                self._changed.notify_all()
            self._queue.put(_STOP)

    def get_message(self, timeout: Optional[float] = None) -> Optional[Message]:
        """
        Next message, or None when timeout expires or the subscription ended.

        Raises:
            ConnectionError: The connection was lost while subscribed
        """
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _STOP:
            self._queue.put(_STOP)
            if self._error is not None:
                raise self._error
            return None
        return item

    def listen(self) -> Iterator[Message]:
        """Yield messages until the subscription ends."""
        while True:
            message = self.get_message()
            if message is None:
                return
            yield message

    def close(self) -> None:
        """Unsubscribe, close the connection and stop the reader thread."""
        if self._closing:
            return
        thread = self._thread
        if thread is not None and thread.is_alive():
            try:
                self.unsubscribe()
                thread.join(self._confirm_timeout)
            except ConnectionError:
                pass
        self._closing = True
        self.connection.disconnect()
        if thread is not None:
            thread.join()
        self.channels.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
