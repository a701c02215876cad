"""
Streams and consumer groups.

A Stream is an append-only log of (id, fields) entries with strictly
increasing ids. A ConsumerGroup tracks the last id handed out to the group
and, per consumer, the entries delivered but not yet acknowledged (the
pending entries list).
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from ..exceptions import CommandError

Fields = List[Tuple[bytes, bytes]]

INVALID_ID = "Invalid stream ID specified as stream command argument"


@dataclass(frozen=True, order=True)
class StreamID:
    """Entry id: milliseconds timestamp plus a sequence number."""
    ms: int
    seq: int

    @classmethod
    def parse(cls, raw: Union[bytes, str], default_seq: int = 0) -> "StreamID":
        """
        Parse '<ms>-<seq>' or '<ms>'.

        Raises:
            CommandError: Malformed id
        """
        if isinstance(raw, bytes):
            raw = raw.decode("ascii", errors="replace")
        ms, sep, seq = raw.partition("-")
        try:
            parsed = cls(int(ms), int(seq) if sep else default_seq)
        except ValueError:
            raise CommandError(INVALID_ID)
        if parsed.ms < 0 or parsed.seq < 0:
            raise CommandError(INVALID_ID)
        return parsed

    def encode(self) -> bytes:
        return str(self).encode()

    def __str__(self) -> str:
        return f"{self.ms}-{self.seq}"


MIN_ID = StreamID(0, 0)
MAX_ID = StreamID(2 ** 64 - 1, 2 ** 64 - 1)


@dataclass
class PendingEntry:
    """Delivery record of one entry inside a group."""
    consumer: bytes
    delivered_at: float
    delivery_count: int = 1


@dataclass
class Consumer:
    name: bytes
    seen_at: float = field(default_factory=time.time)
    pending: Dict[StreamID, None] = field(default_factory=dict)


class ConsumerGroup:
    """
    Named cursor over a stream shared by several consumers.

    Entries progress unread -> pending (delivered, unacknowledged) ->
    acknowledged. Reading with the '>' cursor only hands out entries past
    last_delivered, so two consumers never receive the same new entry.
    """

    def __init__(self, name: bytes, last_delivered: StreamID):
        self.name = name
        self.last_delivered = last_delivered
        self.pending: Dict[StreamID, PendingEntry] = {}
        self.consumers: Dict[bytes, Consumer] = {}

    def create_consumer(self, name: bytes) -> bool:
        if name in self.consumers:
            return False
        self.consumers[name] = Consumer(name)
        return True

    def consumer(self, name: bytes) -> Consumer:
        """Look up a consumer, creating it on first use."""
        self.create_consumer(name)
        consumer = self.consumers[name]
        consumer.seen_at = time.time()
        return consumer

    def delete_consumer(self, name: bytes) -> int:
        """Remove a consumer. Returns how many pending entries it held."""
        consumer = self.consumers.pop(name, None)
        if consumer is None:
            return 0
        for entry_id in consumer.pending:
            self.pending.pop(entry_id, None)
        return len(consumer.pending)

    def ack(self, ids: Sequence[StreamID]) -> int:
        acked = 0
        for entry_id in ids:
            record = self.pending.pop(entry_id, None)
            if record is None:
                continue
            consumer = self.consumers.get(record.consumer)
            if consumer is not None:
                consumer.pending.pop(entry_id, None)
            acked += 1
        return acked

    def summary(self) -> Tuple[int, Optional[StreamID], Optional[StreamID], List[Tuple[bytes, int]]]:
        """(count, smallest id, greatest id, [(consumer, count), ...])."""
        if not self.pending:
            return 0, None, None, []
        ids = sorted(self.pending)
        per_consumer = [
            (consumer.name, len(consumer.pending))
            for consumer in self.consumers.values() if consumer.pending
        ]
        return len(ids), ids[0], ids[-1], per_consumer


class Stream:
    """Append-only log of field/value entries."""

    def __init__(self):
        self.entries: List[Tuple[StreamID, Fields]] = []
        self.last_id = MIN_ID
        self.groups: Dict[bytes, ConsumerGroup] = {}

    def __len__(self) -> int:
        return len(self.entries)

    def next_id(self) -> StreamID:
        now_ms = int(time.time() * 1000)
        if now_ms > self.last_id.ms:
            return StreamID(now_ms, 0)
        return StreamID(self.last_id.ms, self.last_id.seq + 1)

    def add(self, fields: Fields, entry_id: bytes = b"*") -> StreamID:
        """
        Append an entry.

        Args:
            fields: Field/value pairs
            entry_id: b'*' to generate an id, or an explicit '<ms>-<seq>'

        Raises:
            CommandError: Explicit id not greater than the last one
        """
        if entry_id == b"*":
            new_id = self.next_id()
        else:
            new_id = StreamID.parse(entry_id)
            if new_id == MIN_ID:
                raise CommandError("The ID specified in XADD must be greater than 0-0")
            if new_id <= self.last_id:
                raise CommandError(
                    "The ID specified in XADD is equal or smaller than the target stream top item"
                )
        self.entries.append((new_id, list(fields)))
        self.last_id = new_id
        return new_id

    def range(self, start: StreamID, end: StreamID, count: Optional[int] = None) -> List[Tuple[StreamID, Fields]]:
        """Entries with start <= id <= end, oldest first."""
        result = []
        for entry_id, fields in self.entries:
            if entry_id < start:
                continue
            if entry_id > end or (count is not None and len(result) >= count):
                break
            result.append((entry_id, fields))
        return result

    def after(self, entry_id: StreamID, count: Optional[int] = None) -> List[Tuple[StreamID, Fields]]:
        """Entries with an id strictly greater than entry_id."""
        result = []
        for current, fields in self.entries:
            if current <= entry_id:
                continue
            if count is not None and len(result) >= count:
                break
            result.append((current, fields))
        return result

    def lookup(self, entry_id: StreamID) -> Optional[Fields]:
        for current, fields in self.entries:
            if current == entry_id:
                return fields
        return None

    def create_group(self, name: bytes, start: bytes) -> None:
        """
        Create a consumer group.

        Args:
            start: b'$' for the current last id, or an explicit id

        Raises:
            CommandError: BUSYGROUP when the group exists
        """
        if name in self.groups:
            raise CommandError("BUSYGROUP Consumer Group name already exists")
        last = self.last_id if start == b"$" else StreamID.parse(start)
        self.groups[name] = ConsumerGroup(name, last)

    def read_group(
            self,
            group: ConsumerGroup,
            consumer_name: bytes,
            cursor: bytes,
            count: Optional[int] = None,
            noack: bool = False,
    ) -> List[Tuple[StreamID, Optional[Fields]]]:
        """
        Deliver entries to a consumer of a group.

        With cursor b'>' only never-delivered entries are returned and the
        group cursor advances. With an explicit id the consumer's own
        pending entries after that id are returned again; entries deleted
        from the stream come back with fields None.
        """
        consumer = group.consumer(consumer_name)
        now = time.time()

        if cursor == b">":
            delivered = self.after(group.last_delivered, count)
            for entry_id, _ in delivered:
                group.last_delivered = entry_id
                if noack:
                    continue
                group.pending[entry_id] = PendingEntry(consumer_name, now)
                consumer.pending[entry_id] = None
            return delivered

        start = StreamID.parse(cursor)
        history = []
        for entry_id in sorted(consumer.pending):
            if entry_id <= start:
                continue
            if count is not None and len(history) >= count:
                break
            record = group.pending[entry_id]
            record.delivered_at = now
            record.delivery_count += 1
            history.append((entry_id, self.lookup(entry_id)))
        return history
