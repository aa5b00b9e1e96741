"""Batch slot bookkeeping shared by the state stores and the engine stages."""

from __future__ import annotations

from collections.abc import Sequence


def check_batch_slots(batch_size: int, batch_slots: Sequence[int], max_batch_size: int) -> None:
    """Validate an active slot list against the batch size and slot capacity."""
    if batch_size < 1 or batch_size > max_batch_size:
        raise ValueError(f"batch_size must be in [1, {max_batch_size}], got {batch_size}")
    if len(batch_slots) != batch_size:
        raise ValueError(
            f"batch_slots length ({len(batch_slots)}) != batch_size ({batch_size})"
        )
    for slot in batch_slots:
        if not (0 <= slot < max_batch_size):
            raise ValueError(f"batch slot {slot} out of range [0, {max_batch_size})")
    if len(set(batch_slots)) != len(batch_slots):
        raise ValueError(f"batch_slots must be unique, got {list(batch_slots)}")


def tile_batch_slots(batch_slots: Sequence[int], num_heads: int) -> list[int]:
    """Expand request slots into per-(slot, head) rows.

    Row ``num_heads * slot + head`` addresses head ``head`` of the request
    in ``slot``; the result is ordered by batch position, then head.
    """
    return [num_heads * slot + head for slot in batch_slots for head in range(num_heads)]
