"""
Command Dispatcher

Maps command names to handlers that operate on the keyspace. Every
handler runs to completion without awaiting, so a command (and a whole
EXEC) is atomic with respect to other connections sharing the event loop.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..exceptions import CommandError
from ..protocol.commands import Command, Reply
from ..store import geo
from ..store.datatypes import HashValue, SetValue, SortedSet
from ..store.hyperloglog import HyperLogLog
from ..store.store import KVStore
from ..store.streams import MAX_ID, MIN_ID, ConsumerGroup, Stream, StreamID
from .pubsub import PubSubManager

logger = logging.getLogger(__name__)

NOT_INTEGER = "value is not an integer or out of range"
NOT_FLOAT = "value is not a valid float"
SYNTAX = "syntax error"


@dataclass
class CommandSpec:
    """Handler plus arity (negative means 'at least')."""
    handler: Callable
    arity: int

    def accepts(self, argc: int) -> bool:
        # argc includes the command name
        if self.arity >= 0:
            return argc == self.arity
        return argc >= -self.arity


@dataclass
class BlockingRead:
    """
    Returned by a read that found nothing but may block.

    The connection loop waits for a write to one of ``keys`` (or for
    ``timeout`` seconds, None meaning forever) and calls ``retry``, which
    returns a Reply or None when there is still nothing to deliver.
    """
    db: int
    keys: List[bytes]
    timeout: Optional[float]
    retry: Callable[[], Optional[Reply]]


def _int(arg: bytes) -> int:
    try:
        return int(arg)
    except ValueError:
        raise CommandError(NOT_INTEGER)


def _float(arg: bytes) -> float:
    try:
        value = float(arg)
    except ValueError:
        raise CommandError(NOT_FLOAT)
    if value != value:
        raise CommandError(NOT_FLOAT)
    return value


def _wrong_args(name: str) -> CommandError:
    return CommandError(f"wrong number of arguments for '{name.lower()}' command")


def _pairs(values: Sequence[bytes]) -> List[Tuple[bytes, bytes]]:
    return list(zip(values[0::2], values[1::2]))


def _flatten(fields) -> list:
    flat = []
    for name, value in fields:
        flat.append(name)
        flat.append(value)
    return flat


class CommandDispatcher:
    """
    Executes parsed commands against a set of numbered databases.

    Usage:
        dispatcher = CommandDispatcher([KVStore() for _ in range(16)])
        reply = dispatcher.execute(client, Command("SET", [b"k", b"v"]))

    The ``client`` argument is the connection state; handlers read and
    update its ``db`` attribute.
    """

    def __init__(self, databases: List[KVStore], pubsub: PubSubManager = None):
        self.databases = databases
        self.pubsub = pubsub if pubsub is not None else PubSubManager()
        self._waiters: Dict[Tuple[int, bytes], List[asyncio.Future]] = {}
        self.commands: Dict[str, CommandSpec] = {
            # Connection / keyspace
            "PING": CommandSpec(self.cmd_ping, -1),
            "ECHO": CommandSpec(self.cmd_echo, 2),
            "SELECT": CommandSpec(self.cmd_select, 2),
            "FLUSHDB": CommandSpec(self.cmd_flushdb, -1),
            "FLUSHALL": CommandSpec(self.cmd_flushall, -1),
            "DBSIZE": CommandSpec(self.cmd_dbsize, 1),
            "DEL": CommandSpec(self.cmd_del, -2),
            "EXISTS": CommandSpec(self.cmd_exists, -2),
            "EXPIRE": CommandSpec(self.cmd_expire, 3),
            "PEXPIRE": CommandSpec(self.cmd_pexpire, 3),
            "TTL": CommandSpec(self.cmd_ttl, 2),
            "PTTL": CommandSpec(self.cmd_pttl, 2),
            "PERSIST": CommandSpec(self.cmd_persist, 2),
            "TYPE": CommandSpec(self.cmd_type, 2),
            "KEYS": CommandSpec(self.cmd_keys, 2),
            # Strings
            "SET": CommandSpec(self.cmd_set, -3),
            "SETEX": CommandSpec(self.cmd_setex, 4),
            "PSETEX": CommandSpec(self.cmd_psetex, 4),
            "GET": CommandSpec(self.cmd_get, 2),
            "MGET": CommandSpec(self.cmd_mget, -2),
            "INCR": CommandSpec(self.cmd_incr, 2),
            "INCRBY": CommandSpec(self.cmd_incrby, 3),
            "DECR": CommandSpec(self.cmd_decr, 2),
            # Lists
            "LPUSH": CommandSpec(self.cmd_lpush, -3),
            "RPUSH": CommandSpec(self.cmd_rpush, -3),
            "LPOP": CommandSpec(self.cmd_lpop, -2),
            "RPOP": CommandSpec(self.cmd_rpop, -2),
            "LLEN": CommandSpec(self.cmd_llen, 2),
            "LRANGE": CommandSpec(self.cmd_lrange, 4),
            # Sets
            "SADD": CommandSpec(self.cmd_sadd, -3),
            "SREM": CommandSpec(self.cmd_srem, -3),
            "SCARD": CommandSpec(self.cmd_scard, 2),
            "SMEMBERS": CommandSpec(self.cmd_smembers, 2),
            "SISMEMBER": CommandSpec(self.cmd_sismember, 3),
            # Sorted sets
            "ZADD": CommandSpec(self.cmd_zadd, -4),
            "ZRANGE": CommandSpec(self.cmd_zrange, -4),
            "ZPOPMAX": CommandSpec(self.cmd_zpopmax, -2),
            "ZPOPMIN": CommandSpec(self.cmd_zpopmin, -2),
            "ZCARD": CommandSpec(self.cmd_zcard, 2),
            "ZSCORE": CommandSpec(self.cmd_zscore, 3),
            "ZREM": CommandSpec(self.cmd_zrem, -3),
            "ZRANK": CommandSpec(self.cmd_zrank, 3),
            # Hashes
            "HSET": CommandSpec(self.cmd_hset, -4),
            "HGET": CommandSpec(self.cmd_hget, 3),
            "HGETALL": CommandSpec(self.cmd_hgetall, 2),
            "HDEL": CommandSpec(self.cmd_hdel, -3),
            "HLEN": CommandSpec(self.cmd_hlen, 2),
            "HEXISTS": CommandSpec(self.cmd_hexists, 3),
            # Geo
            "GEOADD": CommandSpec(self.cmd_geoadd, -5),
            "GEODIST": CommandSpec(self.cmd_geodist, -4),
            "GEOPOS": CommandSpec(self.cmd_geopos, -2),
            "GEOSEARCH": CommandSpec(self.cmd_geosearch, -7),
            # Cardinality estimator
            "PFADD": CommandSpec(self.cmd_pfadd, -2),
            "PFCOUNT": CommandSpec(self.cmd_pfcount, -2),
            "PFMERGE": CommandSpec(self.cmd_pfmerge, -2),
            # Streams
            "XADD": CommandSpec(self.cmd_xadd, -5),
            "XLEN": CommandSpec(self.cmd_xlen, 2),
            "XRANGE": CommandSpec(self.cmd_xrange, -4),
            "XGROUP": CommandSpec(self.cmd_xgroup, -2),
            "XREADGROUP": CommandSpec(self.cmd_xreadgroup, -7),
            "XREAD": CommandSpec(self.cmd_xread, -4),
            "XACK": CommandSpec(self.cmd_xack, -4),
            "XPENDING": CommandSpec(self.cmd_xpending, -3),
            # Pub/Sub
            "PUBLISH": CommandSpec(self.cmd_publish, 3),
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def check(self, command: Command) -> None:
        """
        Validate that a command exists and has a valid argument count.

        Raises:
            CommandError: Unknown command or wrong arity
        """
        spec = self.commands.get(command.name)
        if spec is None:
            shown = " ".join(f"'{arg.decode(errors='replace')}'" for arg in command.args[:8])
            raise CommandError(
                f"unknown command '{command.name.lower()}', with args beginning with: {shown}"
            )
        if not spec.accepts(len(command.args) + 1):
            raise _wrong_args(command.name)

    def execute(self, client, command: Command, allow_block: bool = True) -> Union[Reply, BlockingRead]:
        """
        Run one command.

        Args:
            client: Connection state (needs a ``db`` attribute)
            command: The parsed command
            allow_block: False inside EXEC, where blocking reads return
                immediately

        Returns:
            A Reply (errors included as error replies) or a BlockingRead
        """
        try:
            self.check(command)
            spec = self.commands[command.name]
            result = spec.handler(client, command.args)
        except CommandError as exc:
            return Reply.error(str(exc))

        if isinstance(result, BlockingRead) and not allow_block:
            return Reply.null_array()
        return result

    def db(self, client) -> KVStore:
        return self.databases[client.db]

    # ------------------------------------------------------------------
    # Blocking reads
    # ------------------------------------------------------------------

    def add_waiter(self, db: int, keys: Sequence[bytes]) -> asyncio.Future:
        """Future resolved by the next write to any of keys in db."""
        future = asyncio.get_running_loop().create_future()
        for key in keys:
            self._waiters.setdefault((db, key), []).append(future)
        return future

    def remove_waiter(self, db: int, keys: Sequence[bytes], future: asyncio.Future) -> None:
        for key in keys:
            waiters = self._waiters.get((db, key))
            if not waiters:
                continue
            if future in waiters:
                waiters.remove(future)
            if not waiters:
                del self._waiters[(db, key)]

    def _signal(self, db: int, key: bytes) -> None:
        for future in self._waiters.pop((db, key), []):
            if not future.done():
                future.set_result(key)

    # ------------------------------------------------------------------
    # Connection / keyspace
    # ------------------------------------------------------------------

    def cmd_ping(self, client, args):
        if len(args) > 1:
            raise _wrong_args("ping")
        return Reply.bulk(args[0]) if args else Reply.simple("PONG")

    def cmd_echo(self, client, args):
        return Reply.bulk(args[0])

    def cmd_select(self, client, args):
        index = _int(args[0])
        if not 0 <= index < len(self.databases):
            raise CommandError("ERR DB index is out of range")
        client.db = index
        return Reply.ok()

    def cmd_flushdb(self, client, args):
        self.db(client).clear()
        return Reply.ok()

    def cmd_flushall(self, client, args):
        for store in self.databases:
            store.clear()
        return Reply.ok()

    def cmd_dbsize(self, client, args):
        return Reply.integer(len(self.db(client).keys()))

    def cmd_del(self, client, args):
        store = self.db(client)
        return Reply.integer(sum(1 for key in args if store.delete(key)))

    def cmd_exists(self, client, args):
        store = self.db(client)
        return Reply.integer(sum(1 for key in args if store.exists(key)))

    def _expire(self, client, key: bytes, ttl: float):
        if ttl <= 0:
            # A deadline in the past deletes the key right away
            return Reply.integer(1 if self.db(client).delete(key) else 0)
        return Reply.integer(1 if self.db(client).expire(key, ttl) else 0)

    def cmd_expire(self, client, args):
        return self._expire(client, args[0], _int(args[1]))

    def cmd_pexpire(self, client, args):
        return self._expire(client, args[0], _int(args[1]) / 1000.0)

    def cmd_ttl(self, client, args):
        remaining = self.db(client).ttl_ms(args[0])
        if remaining < 0:
            return Reply.integer(remaining)
        return Reply.integer((remaining + 500) // 1000)

    def cmd_pttl(self, client, args):
        return Reply.integer(self.db(client).ttl_ms(args[0]))

    def cmd_persist(self, client, args):
        return Reply.integer(1 if self.db(client).persist(args[0]) else 0)

    def cmd_type(self, client, args):
        return Reply.simple(self.db(client).type_of(args[0]))

    def cmd_keys(self, client, args):
        return Reply.array(self.db(client).keys(args[0]))

    # ------------------------------------------------------------------
    # Strings
    # ------------------------------------------------------------------

    def cmd_set(self, client, args):
        key, value = args[0], args[1]
        ttl = 0.0
        nx = xx = keep_ttl = False
        i = 2
        while i < len(args):
            option = args[i].upper()
            if option in (b"EX", b"PX") and i + 1 < len(args) and not ttl:
                amount = _int(args[i + 1])
                if amount <= 0:
                    raise CommandError("invalid expire time in 'set' command")
                ttl = amount if option == b"EX" else amount / 1000.0
                i += 2
                continue
            if option == b"NX" and not xx:
                nx = True
            elif option == b"XX" and not nx:
                xx = True
            elif option == b"KEEPTTL":
                keep_ttl = True
            else:
                raise CommandError(SYNTAX)
            i += 1
        if keep_ttl and ttl:
            raise CommandError(SYNTAX)

        store = self.db(client)
        exists = store.exists(key)
        if (nx and exists) or (xx and not exists):
            return Reply.nil()
        store.put(key, value, ttl=ttl, keep_ttl=keep_ttl)
        return Reply.ok()

    def _setex(self, client, key: bytes, ttl: float, value: bytes, name: str = "setex"):
        if ttl <= 0:
            raise CommandError(f"invalid expire time in '{name}' command")
        self.db(client).put(key, value, ttl=ttl)
        return Reply.ok()

    def cmd_setex(self, client, args):
        return self._setex(client, args[0], _int(args[1]), args[2])

    def cmd_psetex(self, client, args):
        return self._setex(client, args[0], _int(args[1]) / 1000.0, args[2], "psetex")

    def cmd_get(self, client, args):
        return Reply.bulk(self.db(client).get_typed(args[0], bytes))

    def cmd_mget(self, client, args):
        store = self.db(client)
        values = []
        for key in args:
            value = store.get(key)
            values.append(value if isinstance(value, bytes) else None)
        return Reply.array(values)

    def _incrby(self, client, key: bytes, delta: int):
        store = self.db(client)
        current = store.get_typed(key, bytes)
        number = 0
        if current is not None:
            number = _int(current)
        number += delta
        store.put(key, str(number).encode(), keep_ttl=True)
        return Reply.integer(number)

    def cmd_incr(self, client, args):
        return self._incrby(client, args[0], 1)

    def cmd_incrby(self, client, args):
        return self._incrby(client, args[0], _int(args[1]))

    def cmd_decr(self, client, args):
        return self._incrby(client, args[0], -1)

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def cmd_lpush(self, client, args):
        items = self.db(client).get_or_create(args[0], deque)
        items.extendleft(args[1:])
        return Reply.integer(len(items))

    def cmd_rpush(self, client, args):
        items = self.db(client).get_or_create(args[0], deque)
        items.extend(args[1:])
        return Reply.integer(len(items))

    def _pop(self, client, args, left: bool):
        if len(args) > 2:
            raise CommandError(SYNTAX)
        store = self.db(client)
        items = store.get_typed(args[0], deque)
        count = None
        if len(args) == 2:
            count = _int(args[1])
            if count < 0:
                raise CommandError("value is out of range, must be positive")
        if items is None:
            return Reply.null_array() if count is not None else Reply.nil()

        take = 1 if count is None else min(count, len(items))
        popped = [items.popleft() if left else items.pop() for _ in range(take)]
        store.drop_if_empty(args[0])
        if count is None:
            return Reply.bulk(popped[0])
        return Reply.array(popped)

    def cmd_lpop(self, client, args):
        return self._pop(client, args, left=True)

    def cmd_rpop(self, client, args):
        return self._pop(client, args, left=False)

    def cmd_llen(self, client, args):
        items = self.db(client).get_typed(args[0], deque)
        return Reply.integer(len(items) if items else 0)

    def cmd_lrange(self, client, args):
        items = self.db(client).get_typed(args[0], deque)
        start, stop = _int(args[1]), _int(args[2])
        if not items:
            return Reply.array([])
        length = len(items)
        if start < 0:
            start = max(length + start, 0)
        if stop < 0:
            stop = length + stop
        stop = min(stop, length - 1)
        if start > stop:
            return Reply.array([])
        return Reply.array(list(items)[start:stop + 1])

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    def cmd_sadd(self, client, args):
        members = self.db(client).get_or_create(args[0], SetValue)
        return Reply.integer(sum(1 for member in args[1:] if members.add(member)))

    def cmd_srem(self, client, args):
        store = self.db(client)
        members = store.get_typed(args[0], SetValue)
        if members is None:
            return Reply.integer(0)
        removed = sum(1 for member in args[1:] if members.remove(member))
        store.drop_if_empty(args[0])
        return Reply.integer(removed)

    def cmd_scard(self, client, args):
        members = self.db(client).get_typed(args[0], SetValue)
        return Reply.integer(len(members) if members else 0)

    def cmd_smembers(self, client, args):
        members = self.db(client).get_typed(args[0], SetValue)
        return Reply.array(list(members) if members else [])

    def cmd_sismember(self, client, args):
        members = self.db(client).get_typed(args[0], SetValue)
        return Reply.integer(1 if members and args[1] in members else 0)

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------

    def cmd_zadd(self, client, args):
        key = args[0]
        nx = xx = ch = False
        i = 1
        while i < len(args):
            option = args[i].upper()
            if option == b"NX":
                nx = True
            elif option == b"XX":
                xx = True
            elif option == b"CH":
                ch = True
            else:
                break
            i += 1
        if nx and xx:
            raise CommandError("ERR XX and NX options at the same time are not compatible")
        rest = args[i:]
        if not rest or len(rest) % 2:
            raise CommandError(SYNTAX)
        pairs = [(_float(score), member) for score, member in _pairs(rest)]

        zset = self.db(client).get_or_create(key, SortedSet)
        added = changed = 0
        for score, member in pairs:
            old = zset.score(member)
            if (nx and old is not None) or (xx and old is None):
                continue
            if zset.add(member, score):
                added += 1
            elif old != score:
                changed += 1
        self.db(client).drop_if_empty(key)
        return Reply.integer(added + changed if ch else added)

    def cmd_zrange(self, client, args):
        start, stop = _int(args[1]), _int(args[2])
        withscores = reverse = False
        for option in args[3:]:
            option = option.upper()
            if option == b"WITHSCORES":
                withscores = True
            elif option == b"REV":
                reverse = True
            else:
                raise CommandError(SYNTAX)
        zset = self.db(client).get_typed(args[0], SortedSet)
        if zset is None:
            return Reply.array([])
        result = []
        for member, score in zset.range(start, stop, reverse=reverse):
            result.append(member)
            if withscores:
                result.append(score)
        return Reply.array(result)

    def _zpop(self, client, args, highest: bool):
        if len(args) > 2:
            raise CommandError(SYNTAX)
        count = 1
        if len(args) == 2:
            count = _int(args[1])
            if count < 0:
                raise CommandError("value is out of range, must be positive")
        store = self.db(client)
        zset = store.get_typed(args[0], SortedSet)
        if zset is None:
            return Reply.array([])
        popped = zset.pop_max(count) if highest else zset.pop_min(count)
        store.drop_if_empty(args[0])
        return Reply.array(_flatten(popped))

    def cmd_zpopmax(self, client, args):
        return self._zpop(client, args, highest=True)

    def cmd_zpopmin(self, client, args):
        return self._zpop(client, args, highest=False)

    def cmd_zcard(self, client, args):
        zset = self.db(client).get_typed(args[0], SortedSet)
        return Reply.integer(len(zset) if zset else 0)

    def cmd_zscore(self, client, args):
        zset = self.db(client).get_typed(args[0], SortedSet)
        score = zset.score(args[1]) if zset else None
        return Reply.of(score)

    def cmd_zrem(self, client, args):
        store = self.db(client)
        zset = store.get_typed(args[0], SortedSet)
        if zset is None:
            return Reply.integer(0)
        removed = sum(1 for member in args[1:] if zset.remove(member))
        store.drop_if_empty(args[0])
        return Reply.integer(removed)

    def cmd_zrank(self, client, args):
        zset = self.db(client).get_typed(args[0], SortedSet)
        return Reply.of(zset.rank(args[1]) if zset else None)

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    def cmd_hset(self, client, args):
        if len(args) % 2 == 0:
            raise _wrong_args("hset")
        fields = self.db(client).get_or_create(args[0], HashValue)
        added = 0
        for name, value in _pairs(args[1:]):
            if name not in fields:
                added += 1
            fields[name] = value
        return Reply.integer(added)

    def cmd_hget(self, client, args):
        fields = self.db(client).get_typed(args[0], HashValue)
        return Reply.bulk(fields.get(args[1]) if fields else None)

    def cmd_hgetall(self, client, args):
        fields = self.db(client).get_typed(args[0], HashValue)
        return Reply.array(_flatten(fields.items()) if fields else [])

    def cmd_hdel(self, client, args):
        store = self.db(client)
        fields = store.get_typed(args[0], HashValue)
        if fields is None:
            return Reply.integer(0)
        removed = sum(1 for name in args[1:] if fields.pop(name, None) is not None)
        store.drop_if_empty(args[0])
        return Reply.integer(removed)

    def cmd_hlen(self, client, args):
        fields = self.db(client).get_typed(args[0], HashValue)
        return Reply.integer(len(fields) if fields else 0)

    def cmd_hexists(self, client, args):
        fields = self.db(client).get_typed(args[0], HashValue)
        return Reply.integer(1 if fields and args[1] in fields else 0)

    # ------------------------------------------------------------------
    # Geo
    # ------------------------------------------------------------------

    def cmd_geoadd(self, client, args):
        triples = args[1:]
        if len(triples) % 3:
            raise CommandError(
                "syntax error. Try GEOADD key [x1] [y1] [name1] [x2] [y2] [name2] ... "
            )
        scored = []
        for i in range(0, len(triples), 3):
            longitude, latitude = _float(triples[i]), _float(triples[i + 1])
            scored.append((triples[i + 2], float(geo.encode(longitude, latitude))))

        zset = self.db(client).get_or_create(args[0], SortedSet)
        return Reply.integer(sum(1 for member, score in scored if zset.add(member, score)))

    def cmd_geodist(self, client, args):
        if len(args) > 4:
            raise CommandError(SYNTAX)
        factor = geo.unit_factor(args[3].decode(errors="replace")) if len(args) == 4 else 1.0
        zset = self.db(client).get_typed(args[0], SortedSet)
        if zset is None:
            return Reply.nil()
        first, second = geo.position(zset, args[1]), geo.position(zset, args[2])
        if first is None or second is None:
            return Reply.nil()
        meters = geo.distance(first[0], first[1], second[0], second[1])
        return Reply.bulk(f"{meters / factor:.4f}".encode())

    def cmd_geopos(self, client, args):
        zset = self.db(client).get_typed(args[0], SortedSet)
        result = []
        for member in args[1:]:
            pos = geo.position(zset, member) if zset else None
            result.append(None if pos is None else Reply.array([repr(pos[0]), repr(pos[1])]))
        return Reply.array(result)

    def cmd_geosearch(self, client, args):
        key = args[0]
        zset = self.db(client).get_typed(key, SortedSet)
        center = None
        radius_m = factor = None
        order = None
        count = None
        withdist = withcoord = withhash = False
        from_member = None

        i = 1
        while i < len(args):
            option = args[i].upper()
            remaining = len(args) - i - 1
            if option == b"FROMMEMBER" and remaining >= 1 and center is None:
                from_member = args[i + 1]
                center = ()
                i += 2
            elif option == b"FROMLONLAT" and remaining >= 2 and center is None:
                center = (_float(args[i + 1]), _float(args[i + 2]))
                geo.validate(*center)
                i += 3
            elif option == b"BYRADIUS" and remaining >= 2 and radius_m is None:
                factor = geo.unit_factor(args[i + 2].decode(errors="replace"))
                radius = _float(args[i + 1])
                if radius < 0:
                    raise CommandError("radius cannot be negative")
                radius_m = radius * factor
                i += 3
            elif option in (b"ASC", b"DESC"):
                order = option
                i += 1
            elif option == b"COUNT" and remaining >= 1:
                count = _int(args[i + 1])
                if count <= 0:
                    raise CommandError("ERR COUNT must be > 0")
                i += 2
                if i < len(args) and args[i].upper() == b"ANY":
                    i += 1
            elif option == b"WITHDIST":
                withdist = True
                i += 1
            elif option == b"WITHCOORD":
                withcoord = True
                i += 1
            elif option == b"WITHHASH":
                withhash = True
                i += 1
            else:
                raise CommandError(SYNTAX)

        if center is None:
            raise CommandError("exactly one of FROMMEMBER or FROMLONLAT can be specified for geosearch")
        if radius_m is None:
            raise CommandError("exactly one of BYRADIUS and BYBOX can be specified for geosearch")
        if zset is None:
            return Reply.array([])
        if from_member is not None:
            center = geo.position(zset, from_member)
            if center is None:
                raise CommandError("could not decode requested zset member")

        found = geo.search(zset, center[0], center[1], radius_m)
        if order == b"ASC":
            found.sort(key=lambda item: item[1])
        elif order == b"DESC":
            found.sort(key=lambda item: item[1], reverse=True)
        if count is not None:
            found = found[:count]

        if not (withdist or withcoord or withhash):
            return Reply.array([member for member, _, _ in found])
        result = []
        for member, dist, (lon, lat) in found:
            item = [member]
            if withdist:
                item.append(f"{dist / factor:.4f}".encode())
            if withhash:
                item.append(int(zset.score(member)))
            if withcoord:
                item.append(Reply.array([repr(lon), repr(lat)]))
            result.append(Reply.array(item))
        return Reply.array(result)

    # ------------------------------------------------------------------
    # Cardinality estimator
    # ------------------------------------------------------------------

    def _hll(self, store: KVStore, key: bytes) -> Optional[HyperLogLog]:
        value = store.get(key)
        if value is not None and not isinstance(value, HyperLogLog):
            raise CommandError("WRONGTYPE Key is not a valid HyperLogLog string value.")
        return value

    def cmd_pfadd(self, client, args):
        store = self.db(client)
        hll = self._hll(store, args[0])
        created = hll is None
        if created:
            hll = HyperLogLog()
            store.put(args[0], hll)
        changed = hll.add(*args[1:])
        return Reply.integer(1 if created or changed else 0)

    def cmd_pfcount(self, client, args):
        store = self.db(client)
        estimators = [hll for hll in (self._hll(store, key) for key in args) if hll is not None]
        if len(estimators) == 1:
            return Reply.integer(estimators[0].count())
        return Reply.integer(HyperLogLog.union(estimators).count())

    def cmd_pfmerge(self, client, args):
        store = self.db(client)
        sources = [self._hll(store, key) for key in args]
        merged = HyperLogLog.union(hll for hll in sources if hll is not None)
        store.put(args[0], merged, keep_ttl=True)
        return Reply.ok()

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def _group(self, client, key: bytes, group: bytes, command: str) -> Tuple[Stream, ConsumerGroup]:
        stream = self.db(client).get_typed(key, Stream)
        if stream is None or group not in stream.groups:
            raise CommandError(
                f"NOGROUP No such key '{key.decode(errors='replace')}' or consumer group "
                f"'{group.decode(errors='replace')}' in {command} with GROUP option"
            )
        return stream, stream.groups[group]

    def cmd_xadd(self, client, args):
        key = args[0]
        nomkstream = False
        maxlen = None
        i = 1
        while i < len(args):
            option = args[i].upper()
            if option == b"NOMKSTREAM":
                nomkstream = True
                i += 1
            elif option == b"MAXLEN" and i + 1 < len(args):
                i += 1
                if args[i] in (b"~", b"="):
                    i += 1
                if i >= len(args):
                    raise CommandError(SYNTAX)
                maxlen = _int(args[i])
                if maxlen < 0:
                    raise CommandError("The MAXLEN argument must be >= 0.")
                i += 1
            else:
                break
        rest = args[i:]
        if len(rest) < 3 or len(rest) % 2 == 0:
            raise _wrong_args("xadd")
        entry_id, fields = rest[0], _pairs(rest[1:])
        if entry_id != b"*":
            StreamID.parse(entry_id)

        store = self.db(client)
        stream = store.get_typed(key, Stream)
        if stream is None:
            if nomkstream:
                return Reply.nil()
            stream = Stream()
            new_id = stream.add(fields, entry_id)
            store.put(key, stream)
        else:
            new_id = stream.add(fields, entry_id)
        if maxlen is not None and len(stream.entries) > maxlen:
            del stream.entries[:len(stream.entries) - maxlen]
        self._signal(client.db, key)
        return Reply.bulk(new_id.encode())

    def cmd_xlen(self, client, args):
        stream = self.db(client).get_typed(args[0], Stream)
        return Reply.integer(len(stream) if stream else 0)

    def _entries_reply(self, entries) -> Reply:
        return Reply.array([
            Reply.array([entry_id.encode(), None if fields is None else Reply.array(_flatten(fields))])
            for entry_id, fields in entries
        ])

    def cmd_xrange(self, client, args):
        start = MIN_ID if args[1] == b"-" else StreamID.parse(args[1], default_seq=0)
        end = MAX_ID if args[2] == b"+" else StreamID.parse(args[2], default_seq=MAX_ID.seq)
        count = None
        if len(args) == 5 and args[3].upper() == b"COUNT":
            count = _int(args[4])
        elif len(args) != 3:
            raise CommandError(SYNTAX)
        stream = self.db(client).get_typed(args[0], Stream)
        if stream is None or (count is not None and count <= 0):
            return Reply.array([])
        return self._entries_reply(stream.range(start, end, count))

    def cmd_xgroup(self, client, args):
        sub = args[0].upper()
        store = self.db(client)

        if sub == b"CREATE":
            if len(args) not in (4, 5):
                raise _wrong_args("xgroup|create")
            key, group, start = args[1], args[2], args[3]
            mkstream = len(args) == 5 and args[4].upper() == b"MKSTREAM"
            if len(args) == 5 and not mkstream:
                raise CommandError(SYNTAX)
            stream = store.get_typed(key, Stream)
            if stream is None:
                if not mkstream:
                    raise CommandError(
                        "The XGROUP subcommand requires the key to exist. Note that for CREATE "
                        "you may want to use the MKSTREAM option to create an empty stream "
                        "automatically."
                    )
                stream = Stream()
                store.put(key, stream)
            stream.create_group(group, start)
            logger.debug(f"Created consumer group {group!r} on {key!r}")
            return Reply.ok()

        if sub in (b"CREATECONSUMER", b"DELCONSUMER"):
            if len(args) != 4:
                raise _wrong_args(f"xgroup|{sub.decode(errors='replace').lower()}")
            key, group, consumer = args[1], args[2], args[3]
            stream = store.get_typed(key, Stream)
            if stream is None or group not in stream.groups:
                raise CommandError(
                    f"NOGROUP No such consumer group '{group.decode(errors='replace')}' "
                    f"for key name '{key.decode(errors='replace')}'"
                )
            if sub == b"CREATECONSUMER":
                return Reply.integer(1 if stream.groups[group].create_consumer(consumer) else 0)
            return Reply.integer(stream.groups[group].delete_consumer(consumer))

        if sub == b"DESTROY":
            if len(args) != 3:
                raise _wrong_args("xgroup|destroy")
            stream = store.get_typed(args[1], Stream)
            if stream is None:
                raise CommandError(
                    "The XGROUP subcommand requires the key to exist. Note that for CREATE "
                    "you may want to use the MKSTREAM option to create an empty stream "
                    "automatically."
                )
            return Reply.integer(1 if stream.groups.pop(args[2], None) is not None else 0)

        raise CommandError(f"unknown subcommand '{args[0].decode(errors='replace')}'. Try XGROUP HELP.")

    @staticmethod
    def _parse_read_options(args: Sequence[bytes], start: int):
        """Parse COUNT/BLOCK/NOACK ... STREAMS k1 k2 id1 id2."""
        count = None
        block = None
        noack = False
        i = start
        while i < len(args):
            option = args[i].upper()
            if option == b"COUNT" and i + 1 < len(args):
                count = _int(args[i + 1])
                i += 2
            elif option == b"BLOCK" and i + 1 < len(args):
                block = _int(args[i + 1])
                if block < 0:
                    raise CommandError("timeout is negative")
                i += 2
            elif option == b"NOACK":
                noack = True
                i += 1
            elif option == b"STREAMS":
                i += 1
                break
            else:
                raise CommandError(SYNTAX)
        else:
            raise CommandError(SYNTAX)

        rest = args[i:]
        if not rest or len(rest) % 2:
            raise CommandError(
                "Unbalanced 'xread' list of streams: for each stream key an ID or '$' must be specified."
            )
        half = len(rest) // 2
        if count is not None and count <= 0:
            count = None
        return count, block, noack, list(zip(rest[:half], rest[half:]))

    @staticmethod
    def _timeout(block: Optional[int]) -> Optional[float]:
        return None if block == 0 else block / 1000.0

    def cmd_xreadgroup(self, client, args):
        if args[0].upper() != b"GROUP":
            raise CommandError(SYNTAX)
        group_name, consumer = args[1], args[2]
        count, block, noack, streams = self._parse_read_options(args, 3)

        def read_once() -> Optional[Reply]:
            result = []
            for key, cursor in streams:
                stream, group = self._group(client, key, group_name, "XREADGROUP")
                entries = stream.read_group(group, consumer, cursor, count, noack)
                if entries or cursor != b">":
                    result.append(Reply.array([key, self._entries_reply(entries)]))
            return Reply.array(result) if result else None

        reply = read_once()
        if reply is not None:
            return reply
        if block is None:
            return Reply.null_array()
        return BlockingRead(
            db=client.db,
            keys=[key for key, _ in streams],
            timeout=self._timeout(block),
            retry=read_once,
        )

    def cmd_xread(self, client, args):
        count, block, noack, streams = self._parse_read_options(args, 0)
        if noack:
            raise CommandError(SYNTAX)
        store = self.db(client)
        cursors = []
        for key, cursor in streams:
            if cursor == b"$":
                stream = store.get_typed(key, Stream)
                cursors.append((key, stream.last_id if stream else MIN_ID))
            else:
                cursors.append((key, StreamID.parse(cursor)))

        def read_once() -> Optional[Reply]:
            result = []
            for key, after in cursors:
                stream = store.get_typed(key, Stream)
                entries = stream.after(after, count) if stream else []
                if entries:
                    result.append(Reply.array([key, self._entries_reply(entries)]))
            return Reply.array(result) if result else None

        reply = read_once()
        if reply is not None:
            return reply
        if block is None:
            return Reply.null_array()
        return BlockingRead(
            db=client.db,
            keys=[key for key, _ in cursors],
            timeout=self._timeout(block),
            retry=read_once,
        )

    def cmd_xack(self, client, args):
        ids = [StreamID.parse(raw) for raw in args[2:]]
        stream = self.db(client).get_typed(args[0], Stream)
        if stream is None or args[1] not in stream.groups:
            return Reply.integer(0)
        return Reply.integer(stream.groups[args[1]].ack(ids))

    def cmd_xpending(self, client, args):
        stream, group = self._group(client, args[0], args[1], "XPENDING")
        if len(args) == 2:
            total, lowest, highest, consumers = group.summary()
            if not total:
                return Reply.array([0, None, None, None])
            return Reply.array([
                total,
                lowest.encode(),
                highest.encode(),
                Reply.array([Reply.array([name, str(n).encode()]) for name, n in consumers]),
            ])

        if len(args) not in (5, 6):
            raise CommandError(SYNTAX)
        start = MIN_ID if args[2] == b"-" else StreamID.parse(args[2])
        end = MAX_ID if args[3] == b"+" else StreamID.parse(args[3], default_seq=MAX_ID.seq)
        count = _int(args[4])
        consumer = args[5] if len(args) == 6 else None
        now_ms = int(time.time() * 1000)
        rows = []
        for entry_id in sorted(group.pending):
            if len(rows) >= count:
                break
            record = group.pending[entry_id]
            if not start <= entry_id <= end:
                continue
            if consumer is not None and record.consumer != consumer:
                continue
            idle = max(0, now_ms - int(record.delivered_at * 1000))
            rows.append(Reply.array([entry_id.encode(), record.consumer, idle, record.delivery_count]))
        return Reply.array(rows)

    # ------------------------------------------------------------------
    # Pub/Sub
    # ------------------------------------------------------------------

    def cmd_publish(self, client, args):
        return Reply.integer(self.pubsub.publish(args[0], args[1]))

    def get_stats(self) -> dict:
        return {
            "databases": len(self.databases),
            "keys": sum(store.size() for store in self.databases),
            "blocked_keys": len(self._waiters),
            "pubsub": self.pubsub.get_stats(),
        }
