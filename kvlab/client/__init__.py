"""Synchronous client for kvlab servers."""

from .client import KVClient
from .commands import GeoLocation, GeoResult, StreamEntry
from .connection import Connection
from .pipeline import Pipeline
from .pubsub import Message, Subscription

__all__ = [
    'KVClient',
    'Connection',
    'Pipeline',
    'Subscription',
    'Message',
    'GeoLocation',
    'GeoResult',
    'StreamEntry',
]
