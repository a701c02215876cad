"""
Async TCP Server Module

This module implements the asynchronous RESP server for kvlab.

Each client connection is served by its own coroutine. Commands are
executed synchronously against the shared keyspace, so the event loop
serializes them. The connection loop itself owns the per-connection
state: selected database, MULTI/EXEC queue, subscriptions and blocked
stream reads.
"""

import asyncio
import logging
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass, field
from typing import List, Optional, Set

from ..config.settings import settings
from ..exceptions import CommandError, ProtocolError
from ..protocol.commands import Command, Reply
from ..protocol.parser import ProtocolParser
from ..store.store import KVStore
from .dispatcher import BlockingRead, CommandDispatcher
from .pubsub import PubSubManager

logger = logging.getLogger(__name__)

SUBSCRIBE_MODE_COMMANDS = ("SUBSCRIBE", "UNSUBSCRIBE", "PING", "QUIT")


@dataclass(eq=False)
class ClientState:
    """Per-connection state."""
    addr: object
    writer: StreamWriter
    db: int = 0
    in_multi: bool = False
    dirty: bool = False
    queued: List[Command] = field(default_factory=list)
    subscriptions: Set[bytes] = field(default_factory=set)

    def reset_transaction(self) -> None:
        self.in_multi = False
        self.dirty = False
        self.queued = []


class KVServer:
    """
    Asynchronous TCP server speaking RESP2.

    Features:
    - Non-blocking I/O with asyncio
    - Persistent connections (multiple commands per connection)
    - MULTI/EXEC transactions, executed without yielding to the loop
    - Publish/subscribe
    - Blocking stream reads with a timeout
    - Periodic active expiration of keys

    Usage:
        server = KVServer(host='127.0.0.1', port=6379)
        await server.start()  # Runs forever

    Attributes:
        host: Server bind address
        port: Server port number (0 picks a free port on listen())
        databases: One KVStore per logical database
        dispatcher: The CommandDispatcher shared by all connections
    """

    def __init__(
            self,
            host: str = None,
            port: int = None,
            databases: int = None,
            cleanup_interval: float = None,
    ):
        self.host = host if host is not None else settings.HOST
        self.port = port if port is not None else settings.PORT
        count = databases if databases is not None else settings.DATABASES
        self.databases = [KVStore() for _ in range(count)]
        self.parser = ProtocolParser(encoding=settings.ENCODING)
        self.pubsub = PubSubManager(self.parser)
        self.dispatcher = CommandDispatcher(self.databases, self.pubsub)
        self.cleanup_interval = (
            cleanup_interval if cleanup_interval is not None else settings.CLEANUP_INTERVAL
        )

        # Server state
        self._server: Optional[asyncio.Server] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._clients: Set[ClientState] = set()
        self._handlers: Set[asyncio.Task] = set()
        self._running = False
        self._connection_count = 0
        self._total_requests = 0

    async def handle_client(self, reader: StreamReader, writer: StreamWriter) -> None:
        """
        Handle a single client connection.

        Reads commands until the client disconnects or sends QUIT, and
        writes one reply per command (several for SUBSCRIBE/UNSUBSCRIBE).
        """
        addr = writer.get_extra_info('peername')
        client = ClientState(addr=addr, writer=writer)
        self._clients.add(client)
        handler = asyncio.current_task()
        self._handlers.add(handler)
        self._connection_count += 1
        logger.debug(f"Client connected: {addr}")

        try:
            while True:
                try:
                    command = await self.parser.read_command(reader)
                except ProtocolError as exc:
                    logger.debug(f"Protocol error from {addr}: {exc}")
                    writer.write(self.parser.format_response(Reply.error(f"Protocol error: {exc}")))
                    await writer.drain()
                    break

                if command is None:
                    logger.debug(f"Client disconnected: {addr}")
                    break
                if command.is_empty:
                    continue

                self._total_requests += 1
                if command.name == "QUIT":
                    writer.write(self.parser.format_response(Reply.ok()))
                    await writer.drain()
                    logger.debug(f"Client requested quit: {addr}")
                    break

                for reply in await self._process(client, command):
                    writer.write(self.parser.format_response(reply))
                await writer.drain()

        except (ConnectionResetError, asyncio.IncompleteReadError, BrokenPipeError):
            logger.debug(f"Connection reset by client: {addr}")
        except Exception as exc:  # Log unexpected errors but keep server alive
            logger.exception(f"Error handling client {addr}: {exc}")
        finally:
            self.pubsub.unsubscribe_all(client)
            self._clients.discard(client)
            self._handlers.discard(handler)
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    async def _process(self, client: ClientState, command: Command) -> List[Reply]:
        """Run one command in the context of a connection's state."""
        name = command.name

        if client.subscriptions and name not in SUBSCRIBE_MODE_COMMANDS:
            return [Reply.error(
                f"Can't execute '{name.lower()}': only SUBSCRIBE / UNSUBSCRIBE / "
                "PING / QUIT are allowed in this context"
            )]

        if name == "MULTI":
            if client.in_multi:
                return [Reply.error("ERR MULTI calls can not be nested")]
            client.in_multi = True
            return [Reply.ok()]
        if name == "EXEC":
            return [self._exec(client)]
        if name == "DISCARD":
            if not client.in_multi:
                return [Reply.error("ERR DISCARD without MULTI")]
            client.reset_transaction()
            return [Reply.ok()]

        if name in ("SUBSCRIBE", "UNSUBSCRIBE"):
            if client.in_multi:
                client.dirty = True
                return [Reply.error("Command not allowed inside a transaction")]
            if name == "SUBSCRIBE":
                if not command.args:
                    return [Reply.error("wrong number of arguments for 'subscribe' command")]
                return self.pubsub.subscribe(client, *command.args)
            return self.pubsub.unsubscribe(client, *command.args)

        if name == "PING" and client.subscriptions:
            return [Reply.array([b"pong", command.args[0] if command.args else b""])]

        if client.in_multi:
            return [self._queue(client, command)]

        result = self.dispatcher.execute(client, command)
        if isinstance(result, BlockingRead):
            result = await self._block(result)
        return [result]

    def _queue(self, client: ClientState, command: Command) -> Reply:
        """Queue a command inside MULTI; syntax problems poison the transaction."""
        try:
            self.dispatcher.check(command)
        except CommandError as exc:
            client.dirty = True
            return Reply.error(str(exc))
        client.queued.append(command)
        return Reply.queued()

    def _exec(self, client: ClientState) -> Reply:
        """
        Run the queued commands of a transaction.

        Runs without awaiting, so no other connection observes a partially
        applied transaction.
        """
        if not client.in_multi:
            return Reply.error("ERR EXEC without MULTI")
        queued, dirty = client.queued, client.dirty
        client.reset_transaction()
        if dirty:
            logger.debug(f"Transaction aborted for {client.addr}")
            return Reply.error("EXECABORT Transaction discarded because of previous errors.")
        return Reply.array([
            self.dispatcher.execute(client, command, allow_block=False)
            for command in queued
        ])

    async def _block(self, pending: BlockingRead) -> Reply:
        """Wait for a write to one of the blocked keys, or time out."""
        loop = asyncio.get_running_loop()
        deadline = None if pending.timeout is None else loop.time() + pending.timeout

        while True:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return Reply.null_array()

            waiter = self.dispatcher.add_waiter(pending.db, pending.keys)
            try:
                await asyncio.wait_for(waiter, remaining)
            except asyncio.TimeoutError:
                return Reply.null_array()
            finally:
                self.dispatcher.remove_waiter(pending.db, pending.keys, waiter)

            try:
                reply = pending.retry()
            except CommandError as exc:
                return Reply.error(str(exc))
            if reply is not None:
                return reply

    async def _cleanup_loop(self) -> None:
        """Actively remove expired keys at a fixed interval."""
        while True:
            await asyncio.sleep(self.cleanup_interval)
            removed = sum(store.cleanup_expired() for store in self.databases)
            if removed:
                logger.debug(f"Expired {removed} keys")

    async def listen(self) -> None:
        """Bind the listening socket without serving yet."""
        if self._server is not None:
            return

        self._server = await asyncio.start_server(
            self.handle_client,
            self.host,
            self.port,
            limit=settings.READ_BUFFER_SIZE,
        )
        sockets = self._server.sockets or []
        if sockets and not self.port:
            self.port = sockets[0].getsockname()[1]
        if self.cleanup_interval and self.cleanup_interval > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

        addrs = ', '.join(str(sock.getsockname()) for sock in sockets)
        logger.info(f"Serving on {addrs}")

    async def start(self) -> None:
        """
        Start the server and begin accepting connections.

        Runs forever (or until cancelled). It should be called from
        asyncio.run() or within an existing event loop.

        Example:
            server = KVServer(port=6379)
            asyncio.run(server.start())
        """
        if self._running:
            return

        await self.listen()
        self._running = True

        try:
            async with self._server:
                await self._server.serve_forever()
        except asyncio.CancelledError:
            # Expected during shutdown/fixture cleanup
            logger.debug("Server start cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """
        Stop the server gracefully.

        Closes the listening socket and every open client connection.
        """
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

        if self._server is None:
            return

        self._server.close()
        for client in list(self._clients):
            client.writer.close()
        # Connections parked in a blocking read never see the EOF
        for handler in list(self._handlers):
            handler.cancel()
        try:
            await self._server.wait_closed()
        finally:
            self._server = None
            self._running = False
            logger.info("Server stopped")

    def is_running(self) -> bool:
        """Check if the server is currently running."""
        return self._running

    def get_stats(self) -> dict:
        """
        Get server statistics.

        Returns:
            Dictionary with connection counts, request counts and keyspace
            and pub/sub statistics.
        """
        return {
            "running": self._running,
            "host": self.host,
            "port": self.port,
            "connected_clients": len(self._clients),
            "total_connections": self._connection_count,
            "total_requests": self._total_requests,
            "dispatcher": self.dispatcher.get_stats(),
            "store_stats": [store.get_stats() for store in self.databases],
        }


async def run_server(host: str = None, port: int = None) -> None:
    """
    Convenience function to create and run the server.

    Usage:
        asyncio.run(run_server(port=6379))
    """
    server = KVServer(host=host, port=port)

    try:
        await server.start()
    except asyncio.CancelledError:
        logger.info("Server shutdown requested")
    finally:
        await server.stop()
