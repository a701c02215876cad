"""
HyperLogLog cardinality estimator.

Small cardinalities are tracked exactly with a sparse set of 64-bit
element hashes; past SPARSE_LIMIT the structure switches to 16384 dense
registers (14-bit precision, ~0.81% standard error).
"""

import hashlib
import math
from typing import Iterable

HLL_P = 14
HLL_REGISTERS = 1 << HLL_P  # 16384
HLL_Q = 64 - HLL_P  # bits left for the run length
HLL_ALPHA = 0.7213 / (1 + 1.079 / HLL_REGISTERS)

SPARSE_LIMIT = 2048


def hash64(element: bytes) -> int:
    return int.from_bytes(hashlib.blake2b(element, digest_size=8).digest(), "little")


def _register_of(hashed: int):
    """Split a hash into (register index, run length of zeros + 1)."""
    index = hashed & (HLL_REGISTERS - 1)
    rest = (hashed >> HLL_P) | (1 << HLL_Q)
    count = 1
    while not rest & 1:
        rest >>= 1
        count += 1
    return index, count


class HyperLogLog:
    """
    Probabilistic distinct counter.

    Usage:
        hll = HyperLogLog()
        hll.add(b"Dicki", b"Budi")
        hll.count()  # 2
    """

    __slots__ = ("_sparse", "_registers")

    def __init__(self):
        self._sparse = set()
        self._registers = None

    @property
    def is_sparse(self) -> bool:
        return self._registers is None

    def add(self, *elements: bytes) -> bool:
        """
        Add elements.

        Returns:
            True if the internal state changed
        """
        changed = False
        for element in elements:
            hashed = hash64(element)
            if self._registers is None:
                if hashed not in self._sparse:
                    self._sparse.add(hashed)
                    changed = True
                    if len(self._sparse) > SPARSE_LIMIT:
                        self._promote()
            elif self._update(hashed):
                changed = True
        return changed

    def count(self) -> int:
        """Estimate the number of distinct elements added so far."""
        if self._registers is None:
            return len(self._sparse)
        return self._estimate(self._registers)

    def merge(self, *others: "HyperLogLog") -> None:
        """Fold other estimators into this one (register-wise union)."""
        for other in others:
            if other._registers is None and self._registers is None:
                self._sparse |= other._sparse
                if len(self._sparse) > SPARSE_LIMIT:
                    self._promote()
                continue
            if self._registers is None:
                self._promote()
            if other._registers is None:
                for hashed in other._sparse:
                    self._update(hashed)
            else:
                registers = self._registers
                for i, value in enumerate(other._registers):
                    if value > registers[i]:
                        registers[i] = value

    def copy(self) -> "HyperLogLog":
        clone = HyperLogLog()
        clone._sparse = set(self._sparse)
        if self._registers is not None:
            clone._registers = bytearray(self._registers)
        return clone

    @classmethod
    def union(cls, estimators: Iterable["HyperLogLog"]) -> "HyperLogLog":
        merged = cls()
        merged.merge(*estimators)
        return merged

    def _promote(self) -> None:
        self._registers = bytearray(HLL_REGISTERS)
        for hashed in self._sparse:
            self._update(hashed)
        self._sparse = set()

    def _update(self, hashed: int) -> bool:
        index, count = _register_of(hashed)
        if count > self._registers[index]:
            self._registers[index] = count
            return True
        return False

    @staticmethod
    def _estimate(registers: bytearray) -> int:
        sum_inv = 0.0
        zeros = 0
        for value in registers:
            sum_inv += 2.0 ** -value
            if value == 0:
                zeros += 1

        # Raw estimate: alpha * m^2 / sum(2^(-M[i]))
        estimate = HLL_ALPHA * HLL_REGISTERS * HLL_REGISTERS / sum_inv

        # Linear counting for the small range
        if estimate <= 2.5 * HLL_REGISTERS and zeros > 0:
            estimate = HLL_REGISTERS * math.log(HLL_REGISTERS / zeros)

        return int(round(estimate))
