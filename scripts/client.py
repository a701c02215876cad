#!/usr/bin/env python3
"""
Interactive Client for kvlab

A small redis-cli style shell for manually testing a kvlab server (or any
RESP2 server).

Usage:
    python scripts/client.py                  # Connect to 127.0.0.1:6379
    python scripts/client.py --host 1.2.3.4   # Connect to specific host
    python scripts/client.py --port 7000      # Connect to specific port
    python scripts/client.py --db 2           # Select a logical database

Any server command can be typed as-is, e.g.:
    SET name Dicki EX 3
    ZADD scores 100 Dicki 75 Elon
    XADD events * type click
"""

import argparse
import shlex
import sys

# Enable command history with arrow keys (works on Unix systems)
try:
    import readline  # noqa: F401
except ImportError:
    pass  # readline not available on Windows by default

from kvlab.client import KVClient
from kvlab.config.settings import settings
from kvlab.exceptions import CommandError, ConnectionError


def format_reply(reply, indent: int = 0) -> str:
    """Render a reply the way redis-cli does."""
    pad = " " * indent
    if reply is None:
        return "(nil)"
    if isinstance(reply, int):
        return f"(integer) {reply}"
    if isinstance(reply, list):
        if not reply:
            return "(empty array)"
        width = len(str(len(reply)))
        lines = []
        for i, item in enumerate(reply, 1):
            prefix = f"{i:>{width}}) "
            body = format_reply(item, indent + len(prefix))
            lines.append(f"{pad if i > 1 else ''}{prefix}{body}")
        return "\n".join(lines)
    if isinstance(reply, CommandError):
        return f"(error) {reply}"
    if reply == "OK" or reply == "PONG" or reply == "QUEUED":
        return reply
    return f'"{reply}"'


def print_help():
    """Print help message."""
    print("""
Client Commands:
----------------
  help                      Show this help message
  exit                      Exit the client
  reconnect                 Reconnect to the server
  status                    Show connection status

Everything else is sent to the server, for example:
  SET mykey myvalue EX 60   Store with 60 second TTL
  GET mykey                 Get value for "mykey"
  LPUSH jobs a b c          Push onto a list
  PUBLISH news hello        Publish to a channel
""")


def main():
    parser = argparse.ArgumentParser(
        description="Interactive client for kvlab"
    )
    parser.add_argument(
        "--host",
        type=str,
        default=settings.HOST,
        help=f"Server host (default: {settings.HOST})"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.PORT,
        help=f"Server port (default: {settings.PORT})"
    )
    parser.add_argument(
        "--db",
        type=int,
        default=settings.DB,
        help=f"Logical database (default: {settings.DB})"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.SOCKET_TIMEOUT,
        help=f"Socket timeout in seconds (default: {settings.SOCKET_TIMEOUT})"
    )

    args = parser.parse_args()

    print("kvlab Client")
    print("============")
    print(f"Connecting to {args.host}:{args.port}...")

    client = KVClient(host=args.host, port=args.port, db=args.db, socket_timeout=args.timeout)
    try:
        client.connection.connect()
    except ConnectionError as e:
        print(f"Failed to connect: {e}")
        print(f"  Try: python -m kvlab.server --port {args.port}")
        sys.exit(1)

    print("Connected! Type 'help' for commands.\n")

    try:
        while True:
            try:
                line = input(f"{args.host}:{args.port}> ").strip()
                if not line:
                    continue

                lower_cmd = line.lower()
                if lower_cmd == "help":
                    print_help()
                    continue
                if lower_cmd in ("exit", "quit"):
                    print("Goodbye!")
                    break
                if lower_cmd == "reconnect":
                    client.close()
                    try:
                        client.connection.connect()
                        print("Reconnected!")
                    except ConnectionError as e:
                        print(f"Reconnection failed: {e}")
                    continue
                if lower_cmd == "status":
                    status = "Connected" if client.connection.is_connected else "Disconnected"
                    print(f"Status: {status}")
                    print(f"Server: {args.host}:{args.port} db={client.db}")
                    continue

                try:
                    parts = shlex.split(line)
                except ValueError as e:
                    print(f"(error) Invalid argument(s): {e}")
                    continue

                try:
                    print(format_reply(client.execute_command(*parts)))
                except CommandError as e:
                    print(format_reply(e))
                except ConnectionError as e:
                    print(f"Connection error: {e}")

            except EOFError:
                print("\nGoodbye!")
                break

    except KeyboardInterrupt:
        print("\n\nInterrupted. Goodbye!")
    finally:
        client.close()


if __name__ == "__main__":
    main()
