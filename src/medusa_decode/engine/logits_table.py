"""Indexed ``(slot, head) -> logits`` table for the Medusa heads."""

from __future__ import annotations

from collections.abc import Sequence

from torch import Tensor


class LogitsTable:
    """Fixed-size table of logits handles, one entry per (slot, head).

    Entries are references to caller-owned tensors (or views into them);
    the table never copies or mutates them.  Row ``num_heads * slot + head``
    holds head ``head`` of the request in ``slot``.
    """

    def __init__(self, max_batch_size: int, num_heads: int) -> None:
        self.max_batch_size = max_batch_size
        self.num_heads = num_heads
        self._entries: list[Tensor | None] = [None] * (max_batch_size * num_heads)

    def set(self, slot: int, head: int, logits: Tensor) -> None:
        self._entries[self.num_heads * slot + head] = logits

    def get(self, slot: int, head: int) -> Tensor:
        entry = self._entries[self.num_heads * slot + head]
        if entry is None:
            raise RuntimeError(f"No logits recorded for slot {slot}, head {head}")
        return entry

    def clear(self, slot: int) -> None:
        start = self.num_heads * slot
        for i in range(start, start + self.num_heads):
            self._entries[i] = None

    def gather(self, medusa_logits: Sequence[Sequence[Tensor]], batch_slots: Sequence[int]) -> None:
        """Record every head's logits of the active slots.

        Args:
            medusa_logits: Head logits indexed ``[slot][head]``.
            batch_slots: Active slots.
        """
        for slot in batch_slots:
            heads = medusa_logits[slot]
            for head in range(self.num_heads):
                self.set(slot, head, heads[head])

    def rows(self, batch_slots: Sequence[int]) -> list[Tensor]:
        """Entries of the active slots, ordered by batch position then head."""
        return [self.get(slot, head) for slot in batch_slots for head in range(self.num_heads)]
