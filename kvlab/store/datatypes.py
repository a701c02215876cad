"""
Collection value types held by the keyspace: sets, hashes and sorted sets.
Lists are stored as plain collections.deque objects.
"""

from bisect import bisect_left, insort
from typing import Dict, Iterator, List, Optional, Tuple


class HashValue(dict):
    """Field -> value mapping stored under one key."""


class SetValue:
    """
    Set of unique members.

    Members are kept in insertion order so that SMEMBERS output is stable.
    """

    __slots__ = ("_members",)

    def __init__(self, members=()):
        self._members: Dict[bytes, None] = dict.fromkeys(members)

    def add(self, member: bytes) -> bool:
        """Add a member. Returns False if it was already present."""
        if member in self._members:
            return False
        self._members[member] = None
        return True

    def remove(self, member: bytes) -> bool:
        if member not in self._members:
            return False
        del self._members[member]
        return True

    def __contains__(self, member) -> bool:
        return member in self._members

    def __len__(self) -> int:
        return len(self._members)

    def __iter__(self) -> Iterator[bytes]:
        return iter(list(self._members))


class SortedSet:
    """
    Members with a numeric score, ordered by (score, member).

    A dict gives O(1) score lookup; a sorted list of (score, member)
    pairs gives rank-based access. Both are updated together.
    """

    __slots__ = ("_scores", "_ordered")

    def __init__(self):
        self._scores: Dict[bytes, float] = {}
        self._ordered: List[Tuple[float, bytes]] = []

    def add(self, member: bytes, score: float) -> bool:
        """
        Insert a member or update its score.

        Returns:
            True if the member is new
        """
        old = self._scores.get(member)
        if old is not None:
            if old == score:
                return False
            self._ordered.pop(bisect_left(self._ordered, (old, member)))
            self._scores[member] = score
            insort(self._ordered, (score, member))
            return False
        self._scores[member] = score
        insort(self._ordered, (score, member))
        return True

    def remove(self, member: bytes) -> bool:
        score = self._scores.pop(member, None)
        if score is None:
            return False
        self._ordered.pop(bisect_left(self._ordered, (score, member)))
        return True

    def score(self, member: bytes) -> Optional[float]:
        return self._scores.get(member)

    def rank(self, member: bytes) -> Optional[int]:
        score = self._scores.get(member)
        if score is None:
            return None
        return bisect_left(self._ordered, (score, member))

    def range(self, start: int, stop: int, reverse: bool = False) -> List[Tuple[bytes, float]]:
        """
        Members between two ranks, both inclusive.

        Negative ranks count from the end (-1 is the highest score).
        """
        length = len(self._ordered)
        if start < 0:
            start = max(length + start, 0)
        if stop < 0:
            stop = length + stop
        if stop >= length:
            stop = length - 1
        if start > stop or start >= length:
            return []
        items = self._ordered[::-1] if reverse else self._ordered
        return [(member, score) for score, member in items[start:stop + 1]]

    def pop_max(self, count: int = 1) -> List[Tuple[bytes, float]]:
        """Remove and return up to count members with the highest scores."""
        popped = []
        while self._ordered and len(popped) < count:
            score, member = self._ordered.pop()
            del self._scores[member]
            popped.append((member, score))
        return popped

    def pop_min(self, count: int = 1) -> List[Tuple[bytes, float]]:
        """Remove and return up to count members with the lowest scores."""
        count = min(count, len(self._ordered))
        popped = self._ordered[:count]
        del self._ordered[:count]
        for _, member in popped:
            del self._scores[member]
        return [(member, score) for score, member in popped]

    def items(self) -> List[Tuple[bytes, float]]:
        """All (member, score) pairs in member insertion order."""
        return list(self._scores.items())

    def __contains__(self, member) -> bool:
        return member in self._scores

    def __len__(self) -> int:
        return len(self._scores)
