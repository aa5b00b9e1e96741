"""Pack accepted paths into contiguous, prefix-summed arrays."""

from __future__ import annotations

from collections.abc import Sequence

import torch
from torch import Tensor


class PathPacker:
    """Compacts per-request accepted paths for downstream consumers.

    ``num_new_tokens_cum_sum[b]`` is the start of the ``b``-th active
    request's region and ``num_new_tokens_cum_sum[batch_size]`` the total.
    ``paths_offsets[cum_sum[b] + i]`` is the tree node of the ``i``-th
    accepted token of that request.
    """

    def pack(
        self,
        num_new_tokens: Tensor,
        best_path_ids: Tensor,
        paths: Tensor,
        batch_slots: Sequence[int],
        paths_offsets: Tensor,
        num_new_tokens_cum_sum: Tensor,
    ) -> tuple[Tensor, Tensor]:
        """Fill ``paths_offsets`` and ``num_new_tokens_cum_sum`` in place.

        Args:
            num_new_tokens: Accepted length per slot.
            best_path_ids: Winning path per slot.
            paths: ``[W, D + 1]`` or ``[max_batch_size, W, D + 1]`` path table.
            batch_slots: Active slots; output order follows this list.
            paths_offsets: Output, at least ``sum(num_new_tokens)`` entries.
            num_new_tokens_cum_sum: Output, at least ``batch_size + 1`` entries.

        Returns:
            ``(paths_offsets, num_new_tokens_cum_sum)``.
        """
        slot_index = torch.tensor(list(batch_slots), dtype=torch.long, device=num_new_tokens.device)
        counts = num_new_tokens[slot_index]
        num_new_tokens_cum_sum[0] = 0
        num_new_tokens_cum_sum[1 : len(batch_slots) + 1] = torch.cumsum(counts, dim=0)

        offset = 0
        for slot, count in zip(batch_slots, counts.tolist(), strict=True):
            path_table = paths[slot] if paths.ndim == 3 else paths
            best_path = path_table[int(best_path_ids[slot])]
            paths_offsets[offset : offset + count] = best_path[:count].to(paths_offsets.device)
            offset += count
        return paths_offsets, num_new_tokens_cum_sum
