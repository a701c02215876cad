"""Keyspace module for kvlab."""

from .datatypes import HashValue, SetValue, SortedSet
from .hyperloglog import HyperLogLog
from .store import KVStore, type_name
from .streams import ConsumerGroup, Stream, StreamID

__all__ = [
    "KVStore",
    "type_name",
    "HashValue",
    "SetValue",
    "SortedSet",
    "HyperLogLog",
    "Stream",
    "StreamID",
    "ConsumerGroup",
]
