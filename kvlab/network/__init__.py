"""Network module for kvlab."""

from .dispatcher import BlockingRead, CommandDispatcher
from .pubsub import PubSubManager
from .tcp_server import ClientState, KVServer, run_server

__all__ = [
    "BlockingRead",
    "ClientState",
    "CommandDispatcher",
    "KVServer",
    "PubSubManager",
    "run_server",
]
