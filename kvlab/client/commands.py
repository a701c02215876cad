"""
Client Command Surface

Every command is a thin method that hands its arguments to
``execute_command`` together with a response callback. KVClient executes
the command immediately; Pipeline queues it and applies the callback when
the batch is executed.
"""

import datetime
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..exceptions import NotFound

Value = Union[str, bytes, int, float]


@dataclass
class GeoLocation:
    """A named point for GEOADD."""
    name: Value
    longitude: float
    latitude: float


@dataclass
class GeoResult:
    """One GEOSEARCH hit with the requested extras."""
    name: Any
    distance: Optional[float] = None
    hash: Optional[int] = None
    longitude: Optional[float] = None
    latitude: Optional[float] = None


@dataclass
class StreamEntry:
    """One stream entry. fields is None for an entry deleted while pending."""
    id: str
    fields: Optional[Dict[Any, Any]]


# ----------------------------------------------------------------------
# Response callbacks
# ----------------------------------------------------------------------

def bool_ok(reply) -> bool:
    return reply == "OK"


def to_bool(reply) -> bool:
    return bool(reply)


def float_or_none(reply) -> Optional[float]:
    return None if reply is None else float(reply)


def raise_not_found(reply):
    if reply is None:
        raise NotFound("key not found")
    return reply


def pairs_to_dict(reply) -> dict:
    if not reply:
        return {}
    return dict(zip(reply[::2], reply[1::2]))


def score_pairs(reply) -> List[Tuple[Any, float]]:
    if not reply:
        return []
    return [(member, float(score)) for member, score in zip(reply[::2], reply[1::2])]


def geo_positions(reply) -> List[Optional[Tuple[float, float]]]:
    return [None if pos is None else (float(pos[0]), float(pos[1])) for pos in reply]


def stream_entries(reply) -> List[StreamEntry]:
    return [
        StreamEntry(_as_str(entry_id), None if fields is None else pairs_to_dict(fields))
        for entry_id, fields in (reply or [])
    ]


def stream_batches(reply) -> List[Tuple[Any, List[StreamEntry]]]:
    """XREAD/XREADGROUP reply; a timed out blocking read gives []."""
    if reply is None:
        return []
    return [(name, stream_entries(entries)) for name, entries in reply]


def pending_summary(reply) -> dict:
    count, lowest, highest, consumers = reply
    return {
        "pending": count,
        "min": None if lowest is None else _as_str(lowest),
        "max": None if highest is None else _as_str(highest),
        "consumers": [
            {"name": name, "pending": int(pending)} for name, pending in (consumers or [])
        ],
    }


def pending_range(reply) -> List[dict]:
    return [
        {
            "message_id": _as_str(entry_id),
            "consumer": consumer,
            "time_since_delivered": idle,
            "times_delivered": delivered,
        }
        for entry_id, consumer, idle, delivered in reply
    ]


def _as_str(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


def _geo_results(withdist: bool, withhash: bool, withcoord: bool) -> Callable:
    def parse(reply):
        if not (withdist or withhash or withcoord):
            return reply
        results = []
        for item in reply:
            result = GeoResult(name=item[0])
            rest = iter(item[1:])
            if withdist:
                result.distance = float(next(rest))
            if withhash:
                result.hash = int(next(rest))
            if withcoord:
                lon, lat = next(rest)
                result.longitude, result.latitude = float(lon), float(lat)
            results.append(result)
        return results
    return parse


def _seconds(value) -> Union[int, float]:
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    return value


def _millis(value) -> int:
    if isinstance(value, datetime.timedelta):
        return int(value.total_seconds() * 1000)
    return int(value)


class CommandsMixin:
    """
    Command methods shared by KVClient and Pipeline.

    Subclasses provide ``execute_command(*args, callback=None, timeout=...)``.
    """

    def execute_command(self, *args, callback: Callable = None, **options):
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Server and keyspace
    # ------------------------------------------------------------------

    def ping(self):
        return self.execute_command("PING")

    def echo(self, message: Value):
        return self.execute_command("ECHO", message)

    def select(self, db: int):
        return self.execute_command("SELECT", db, callback=bool_ok)

    def flushdb(self):
        return self.execute_command("FLUSHDB", callback=bool_ok)

    def flushall(self):
        return self.execute_command("FLUSHALL", callback=bool_ok)

    def dbsize(self):
        return self.execute_command("DBSIZE")

    def delete(self, *names: Value):
        return self.execute_command("DEL", *names)

    def exists(self, *names: Value):
        return self.execute_command("EXISTS", *names)

    def expire(self, name: Value, time):
        """Set a TTL in seconds (int or timedelta)."""
        return self.execute_command("EXPIRE", name, int(_seconds(time)), callback=to_bool)

    def pexpire(self, name: Value, time):
        return self.execute_command("PEXPIRE", name, _millis(time), callback=to_bool)

    def ttl(self, name: Value):
        return self.execute_command("TTL", name)

    def pttl(self, name: Value):
        return self.execute_command("PTTL", name)

    def persist(self, name: Value):
        return self.execute_command("PERSIST", name, callback=to_bool)

    def type(self, name: Value):
        return self.execute_command("TYPE", name)

    def keys(self, pattern: Value = "*"):
        return self.execute_command("KEYS", pattern)

    # ------------------------------------------------------------------
    # Strings
    # ------------------------------------------------------------------

    def set(self, name: Value, value: Value, ex=None, px=None, nx: bool = False,
            xx: bool = False, keepttl: bool = False):
        """
        Set a string value.

        Args:
            ex: Expiry in seconds (int, float or timedelta)
            px: Expiry in milliseconds
            nx: Only set if the key does not exist
            xx: Only set if the key exists
            keepttl: Retain the existing TTL

        Returns:
            True if the value was set, False if NX/XX prevented it
        """
        args = ["SET", name, value]
        if ex is not None:
            seconds = _seconds(ex)
            if isinstance(seconds, float) and not seconds.is_integer():
                args.extend(["PX", int(seconds * 1000)])
            else:
                args.extend(["EX", int(seconds)])
        if px is not None:
            args.extend(["PX", _millis(px)])
        if nx:
            args.append("NX")
        if xx:
            args.append("XX")
        if keepttl:
            args.append("KEEPTTL")
        return self.execute_command(*args, callback=bool_ok)

    def setex(self, name: Value, time, value: Value):
        return self.execute_command("SETEX", name, int(_seconds(time)), value, callback=bool_ok)

    def psetex(self, name: Value, time_ms, value: Value):
        return self.execute_command("PSETEX", name, _millis(time_ms), value, callback=bool_ok)

    def get(self, name: Value):
        """
        Get a string value.

        Raises:
            NotFound: The key is absent or expired
        """
        return self.execute_command("GET", name, callback=raise_not_found)

    def mget(self, *names: Value):
        return self.execute_command("MGET", *names)

    def incr(self, name: Value, amount: int = 1):
        if amount == 1:
            return self.execute_command("INCR", name)
        return self.incrby(name, amount)

    def incrby(self, name: Value, amount: int = 1):
        return self.execute_command("INCRBY", name, amount)

    def decr(self, name: Value, amount: int = 1):
        if amount == 1:
            return self.execute_command("DECR", name)
        return self.incrby(name, -amount)

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def lpush(self, name: Value, *values: Value):
        return self.execute_command("LPUSH", name, *values)

    def rpush(self, name: Value, *values: Value):
        return self.execute_command("RPUSH", name, *values)

    def lpop(self, name: Value, count: int = None):
        if count is None:
            return self.execute_command("LPOP", name)
        return self.execute_command("LPOP", name, count, callback=lambda r: r or [])

    def rpop(self, name: Value, count: int = None):
        if count is None:
            return self.execute_command("RPOP", name)
        return self.execute_command("RPOP", name, count, callback=lambda r: r or [])

    def llen(self, name: Value):
        return self.execute_command("LLEN", name)

    def lrange(self, name: Value, start: int, end: int):
        return self.execute_command("LRANGE", name, start, end)

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    def sadd(self, name: Value, *values: Value):
        return self.execute_command("SADD", name, *values)

    def srem(self, name: Value, *values: Value):
        return self.execute_command("SREM", name, *values)

    def scard(self, name: Value):
        return self.execute_command("SCARD", name)

    def smembers(self, name: Value):
        return self.execute_command("SMEMBERS", name)

    def sismember(self, name: Value, value: Value):
        return self.execute_command("SISMEMBER", name, value, callback=to_bool)

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------

    def zadd(self, name: Value, mapping: Dict[Value, float], nx: bool = False,
             xx: bool = False, ch: bool = False):
        """
        Add members with scores.

        Args:
            mapping: member -> score

        Returns:
            Number of new members (or changed members with ch=True)
        """
        if not mapping:
            raise ValueError("ZADD requires at least one member/score pair")
        args = ["ZADD", name]
        if nx:
            args.append("NX")
        if xx:
            args.append("XX")
        if ch:
            args.append("CH")
        for member, score in mapping.items():
            args.extend([score, member])
        return self.execute_command(*args)

    def zrange(self, name: Value, start: int, end: int, withscores: bool = False,
               desc: bool = False):
        args = ["ZRANGE", name, start, end]
        if desc:
            args.append("REV")
        if withscores:
            args.append("WITHSCORES")
            return self.execute_command(*args, callback=score_pairs)
        return self.execute_command(*args)

    def zpopmax(self, name: Value, count: int = None):
        """Pop the highest scored members as [(member, score), ...]."""
        args = ["ZPOPMAX", name] if count is None else ["ZPOPMAX", name, count]
        return self.execute_command(*args, callback=score_pairs)

    def zpopmin(self, name: Value, count: int = None):
        args = ["ZPOPMIN", name] if count is None else ["ZPOPMIN", name, count]
        return self.execute_command(*args, callback=score_pairs)

    def zcard(self, name: Value):
        return self.execute_command("ZCARD", name)

    def zscore(self, name: Value, value: Value):
        return self.execute_command("ZSCORE", name, value, callback=float_or_none)

    def zrem(self, name: Value, *values: Value):
        return self.execute_command("ZREM", name, *values)

    def zrank(self, name: Value, value: Value):
        return self.execute_command("ZRANK", name, value)

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    def hset(self, name: Value, key: Value = None, value: Value = None,
             mapping: Dict[Value, Value] = None):
        """Set one field and/or every field of mapping. Returns fields added."""
        if key is None and not mapping:
            raise ValueError("'hset' with no key value pairs")
        args = ["HSET", name]
        if key is not None:
            args.extend([key, value])
        for field_name, field_value in (mapping or {}).items():
            args.extend([field_name, field_value])
        return self.execute_command(*args)

    def hget(self, name: Value, key: Value):
        return self.execute_command("HGET", name, key)

    def hgetall(self, name: Value):
        return self.execute_command("HGETALL", name, callback=pairs_to_dict)

    def hdel(self, name: Value, *keys: Value):
        return self.execute_command("HDEL", name, *keys)

    def hlen(self, name: Value):
        return self.execute_command("HLEN", name)

    def hexists(self, name: Value, key: Value):
        return self.execute_command("HEXISTS", name, key, callback=to_bool)

    # ------------------------------------------------------------------
    # Geo
    # ------------------------------------------------------------------

    def geoadd(self, name: Value, *locations: Union[GeoLocation, Tuple[float, float, Value]]):
        """
        Add named points.

        Args:
            locations: GeoLocation objects or (longitude, latitude, name) tuples
        """
        args = ["GEOADD", name]
        for location in locations:
            if isinstance(location, GeoLocation):
                args.extend([location.longitude, location.latitude, location.name])
            else:
                args.extend(location)
        return self.execute_command(*args)

    def geodist(self, name: Value, place1: Value, place2: Value, unit: str = "m"):
        """Distance between two members in unit, or None if one is missing."""
        return self.execute_command(
            "GEODIST", name, place1, place2, unit, callback=float_or_none
        )

    def geopos(self, name: Value, *values: Value):
        return self.execute_command("GEOPOS", name, *values, callback=geo_positions)

    def geosearch(self, name: Value, member: Value = None, longitude: float = None,
                  latitude: float = None, radius: float = None, unit: str = "m",
                  sort: str = None, count: int = None, any: bool = False,
                  withdist: bool = False, withcoord: bool = False, withhash: bool = False):
        """
        Find members within radius of a member or of a coordinate.

        Returns:
            Member names, or GeoResult objects when any WITH* flag is set
        """
        if (member is None) == (longitude is None or latitude is None):
            raise ValueError("geosearch needs exactly one of member or longitude/latitude")
        if radius is None:
            raise ValueError("geosearch needs a radius")
        args = ["GEOSEARCH", name]
        if member is not None:
            args.extend(["FROMMEMBER", member])
        else:
            args.extend(["FROMLONLAT", longitude, latitude])
        args.extend(["BYRADIUS", radius, unit])
        if sort is not None:
            args.append(sort.upper())
        if count is not None:
            args.extend(["COUNT", count])
            if any:
                args.append("ANY")
        if withcoord:
            args.append("WITHCOORD")
        if withdist:
            args.append("WITHDIST")
        if withhash:
            args.append("WITHHASH")
        return self.execute_command(*args, callback=_geo_results(withdist, withhash, withcoord))

    # ------------------------------------------------------------------
    # Cardinality estimator
    # ------------------------------------------------------------------

    def pfadd(self, name: Value, *values: Value):
        return self.execute_command("PFADD", name, *values)

    def pfcount(self, *sources: Value):
        return self.execute_command("PFCOUNT", *sources)

    def pfmerge(self, dest: Value, *sources: Value):
        return self.execute_command("PFMERGE", dest, *sources, callback=bool_ok)

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def xadd(self, name: Value, fields: Dict[Value, Value], id: Value = "*",
             maxlen: int = None, approximate: bool = False, nomkstream: bool = False):
        """
        Append an entry to a stream.

        Returns:
            The entry id, or None when nomkstream and the stream is missing
        """
        if not fields:
            raise ValueError("XADD requires at least one field/value pair")
        args = ["XADD", name]
        if nomkstream:
            args.append("NOMKSTREAM")
        if maxlen is not None:
            args.extend(["MAXLEN", "~" if approximate else "=", maxlen])
        args.append(id)
        for field_name, field_value in fields.items():
            args.extend([field_name, field_value])
        return self.execute_command(*args, callback=lambda r: None if r is None else _as_str(r))

    def xlen(self, name: Value):
        return self.execute_command("XLEN", name)

    def xrange(self, name: Value, min: Value = "-", max: Value = "+", count: int = None):
        args = ["XRANGE", name, min, max]
        if count is not None:
            args.extend(["COUNT", count])
        return self.execute_command(*args, callback=stream_entries)

    def xgroup_create(self, name: Value, groupname: Value, id: Value = "$",
                      mkstream: bool = False):
        args = ["XGROUP", "CREATE", name, groupname, id]
        if mkstream:
            args.append("MKSTREAM")
        return self.execute_command(*args, callback=bool_ok)

    def xgroup_createconsumer(self, name: Value, groupname: Value, consumername: Value):
        return self.execute_command("XGROUP", "CREATECONSUMER", name, groupname, consumername)

    def xgroup_delconsumer(self, name: Value, groupname: Value, consumername: Value):
        return self.execute_command("XGROUP", "DELCONSUMER", name, groupname, consumername)

    def xgroup_destroy(self, name: Value, groupname: Value):
        return self.execute_command("XGROUP", "DESTROY", name, groupname)

    def _read_args(self, streams: Dict[Value, Value], count: Optional[int], block) -> Tuple[list, dict]:
        if not streams:
            raise ValueError("streams must be a non-empty dict")
        args = []
        options = {}
        if count is not None:
            args.extend(["COUNT", count])
        if block is not None:
            block_ms = _millis(block)
            args.extend(["BLOCK", block_ms])
            options["timeout"] = self._blocking_timeout(block_ms)
        args.append("STREAMS")
        args.extend(streams.keys())
        args.extend(streams.values())
        return args, options

    def _blocking_timeout(self, block_ms: int) -> Optional[float]:
        """Socket timeout for a blocking read; overridden by KVClient."""
        return None

    def xreadgroup(self, groupname: Value, consumername: Value, streams: Dict[Value, Value],
                   count: int = None, block=None, noack: bool = False):
        """
        Read from streams as a member of a consumer group.

        Args:
            streams: stream name -> '>' for new entries, or an id to replay
                this consumer's pending entries
            block: Milliseconds (or timedelta) to wait; 0 waits forever

        Returns:
            [(stream, [StreamEntry, ...]), ...]; [] when nothing arrived
        """
        args, options = self._read_args(streams, count, block)
        if noack:
            args.insert(0, "NOACK")
        return self.execute_command(
            "XREADGROUP", "GROUP", groupname, consumername, *args,
            callback=stream_batches, **options
        )

    def xread(self, streams: Dict[Value, Value], count: int = None, block=None):
        args, options = self._read_args(streams, count, block)
        return self.execute_command("XREAD", *args, callback=stream_batches, **options)

    def xack(self, name: Value, groupname: Value, *ids: Value):
        return self.execute_command("XACK", name, groupname, *ids)

    def xpending(self, name: Value, groupname: Value):
        return self.execute_command("XPENDING", name, groupname, callback=pending_summary)

    def xpending_range(self, name: Value, groupname: Value, min: Value = "-",
                       max: Value = "+", count: int = 10, consumername: Value = None):
        args = ["XPENDING", name, groupname, min, max, count]
        if consumername is not None:
            args.append(consumername)
        return self.execute_command(*args, callback=pending_range)

    # ------------------------------------------------------------------
    # Pub/Sub
    # ------------------------------------------------------------------

    def publish(self, channel: Value, message: Value):
        """Returns the number of subscribers that received the message."""
        return self.execute_command("PUBLISH", channel, message)
