"""
Publish/Subscribe Registry

Tracks which connections are subscribed to which channels and fans a
published message out to them. Messages are never stored: publishing to
a channel nobody listens to drops the message.
"""

import logging
from typing import Dict, List, Set

from ..protocol.commands import Reply
from ..protocol.parser import ProtocolParser

logger = logging.getLogger(__name__)


class PubSubManager:
    """
    Channel registry shared by every connection of one server.

    Subscribers are connection state objects exposing a ``writer``
    (asyncio.StreamWriter) and a ``subscriptions`` set.
    """

    def __init__(self, parser: ProtocolParser = None):
        self.parser = parser if parser is not None else ProtocolParser()
        self._channels: Dict[bytes, Set] = {}
        self._published = 0

    def subscribe(self, client, *channels: bytes) -> List[Reply]:
        """
        Subscribe a connection to channels.

        Returns:
            One ['subscribe', channel, count] confirmation per channel
        """
        replies = []
        for channel in channels:
            self._channels.setdefault(channel, set()).add(client)
            client.subscriptions.add(channel)
            replies.append(Reply.array([b"subscribe", channel, len(client.subscriptions)]))
            logger.debug(f"{client.addr} subscribed to {channel!r}")
        return replies

    def unsubscribe(self, client, *channels: bytes) -> List[Reply]:
        """
        Unsubscribe a connection from channels, or from all when none given.

        Returns:
            One ['unsubscribe', channel, count] confirmation per channel
        """
        if not channels:
            channels = tuple(client.subscriptions)
            if not channels:
                return [Reply.array([b"unsubscribe", None, 0])]

        replies = []
        for channel in channels:
            subscribers = self._channels.get(channel)
            if subscribers is not None:
                subscribers.discard(client)
                if not subscribers:
                    del self._channels[channel]
            client.subscriptions.discard(channel)
            replies.append(Reply.array([b"unsubscribe", channel, len(client.subscriptions)]))
            logger.debug(f"{client.addr} unsubscribed from {channel!r}")
        return replies

    def unsubscribe_all(self, client) -> None:
        """Drop every subscription of a disconnecting client."""
        for channel in list(client.subscriptions):
            subscribers = self._channels.get(channel)
            if subscribers is not None:
                subscribers.discard(client)
                if not subscribers:
                    del self._channels[channel]
        client.subscriptions.clear()

    def publish(self, channel: bytes, message: bytes) -> int:
        """
        Deliver a message to the current subscribers of a channel.

        Returns:
            Number of connections the message was written to
        """
        subscribers = self._channels.get(channel)
        if not subscribers:
            return 0

        frame = self.parser.format_response(Reply.array([b"message", channel, message]))
        delivered = 0
        for client in list(subscribers):
            if client.writer.is_closing():
                continue
            client.writer.write(frame)
            delivered += 1
        self._published += 1
        return delivered

    def numsub(self, channel: bytes) -> int:
        return len(self._channels.get(channel, ()))

    def get_stats(self) -> dict:
        return {
            "channels": len(self._channels),
            "subscribers": sum(len(s) for s in self._channels.values()),
            "published": self._published,
        }
