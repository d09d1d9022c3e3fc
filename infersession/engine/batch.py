"""Growable decode batch handed to the backend on every decode call.

The buffer is an arena: it is pre-sized, filled slot by slot, and cleared
between calls. Growth is explicit (`ensure_capacity`) and always drops the
current contents, so callers must repopulate every slot after a grow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator

from .errors import CapacityExceeded

logger = logging.getLogger(__name__)


@dataclass
class BatchSlot:
    token_id: int
    position: int
    seq_ids: tuple[int, ...]
    wants_logits: bool


class BatchBuffer:
    """Fixed-capacity batch of decode slots.

    Invariants:
    - `count <= capacity`
    - every populated slot has `len(seq_ids) <= max_lanes`
    - `capacity` and `max_lanes` never shrink
    """

    def __init__(self, capacity: int = 256, max_lanes: int = 1) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be > 0, got {capacity}")
        if max_lanes <= 0:
            raise ValueError(f"max_lanes must be > 0, got {max_lanes}")
        self._capacity = capacity
        self._max_lanes = max_lanes
        self._slots: list[BatchSlot | None] = [None] * capacity
        self._count = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def max_lanes(self) -> int:
        return self._max_lanes

    @property
    def count(self) -> int:
        return self._count

    @property
    def slots(self) -> list[BatchSlot]:
        """Populated slots, in insertion order."""
        return [s for s in self._slots[: self._count] if s is not None]

    def __len__(self) -> int:
        return self._count

    def __iter__(self) -> Iterator[BatchSlot]:
        return iter(self.slots)

    def ensure_capacity(self, required: int, lanes: int = 1) -> bool:
        """Grow to hold `required` slots of up to `lanes` sequence ids each.

        Returns True if the buffer was reallocated. A reallocated buffer is
        empty (count == 0).
        """
        if required <= self._capacity and lanes <= self._max_lanes:
            return False

        self._capacity = max(required, self._capacity)
        self._max_lanes = max(lanes, self._max_lanes)
        self._slots = [None] * self._capacity
        self._count = 0
        logger.debug("batch buffer grown to capacity=%d lanes=%d", self._capacity, self._max_lanes)
        return True

    def clear(self) -> None:
        self._count = 0

    def add(self, token_id: int, position: int, seq_ids: Iterable[int], wants_logits: bool) -> int:
        """Append one slot and return its index."""
        seq = tuple(int(s) for s in seq_ids)
        idx = self._count
        if idx >= self._capacity:
            raise CapacityExceeded(f"batch add: capacity exceeded ({idx} >= {self._capacity})")
        if len(seq) > self._max_lanes:
            raise CapacityExceeded(f"batch add: len(seq_ids) ({len(seq)}) > max_lanes ({self._max_lanes})")

        self._slots[idx] = BatchSlot(
            token_id=int(token_id),
            position=int(position),
            seq_ids=seq,
            wants_logits=bool(wants_logits),
        )
        self._count += 1
        return idx

    def set_logits(self, index: int, wants_logits: bool = True) -> None:
        if not 0 <= index < self._count:
            raise IndexError(f"batch slot {index} is not populated (count={self._count})")
        slot = self._slots[index]
        assert slot is not None
        slot.wants_logits = bool(wants_logits)

    def last_logits_index(self) -> int | None:
        """Index of the last slot that requests logits, or None."""
        for idx in range(self._count - 1, -1, -1):
            slot = self._slots[idx]
            if slot is not None and slot.wants_logits:
                return idx
        return None
