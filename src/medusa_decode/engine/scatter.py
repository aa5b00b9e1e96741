"""Map flat per-head candidates onto the draft tree."""

from __future__ import annotations

from collections.abc import Sequence

import torch
from torch import Tensor


def check_tree_ids(tree_ids: Tensor, max_batch_size: int, max_decoding_tokens: int) -> None:
    """Validate a tree topology mapping.

    ``tree_ids`` is ``[W]`` (shared) or ``[max_batch_size, W]``; every entry
    must address the ``W``-wide flat candidate buffer.

    Raises:
        ValueError: On a malformed shape or an out-of-range source index.
    """
    if tree_ids.ndim == 1:
        expected: tuple[int, ...] = (max_decoding_tokens,)
    elif tree_ids.ndim == 2:
        expected = (max_batch_size, max_decoding_tokens)
    else:
        raise ValueError(f"tree_ids must be 1-D or 2-D, got shape {tuple(tree_ids.shape)}")
    if tuple(tree_ids.shape) != expected:
        raise ValueError(f"tree_ids shape {tuple(tree_ids.shape)} != expected {expected}")
    if tree_ids.numel() > 0:
        lo, hi = int(tree_ids.min()), int(tree_ids.max())
        if lo < 0 or hi >= max_decoding_tokens:
            raise ValueError(
                f"tree_ids entries must be in [0, {max_decoding_tokens}), got range [{lo}, {hi}]"
            )


class TreeScatter:
    """Copies flat candidates into tree-node order using a fixed topology.

    Node ``n`` of a request takes its value from ``flat[slot, tree_ids[n]]``.
    Only the first ``tokens_per_step[slot]`` nodes are written.  CUDA tensors
    go through the Triton kernel; everything else takes the torch path.
    """

    def __init__(self, max_batch_size: int, max_decoding_tokens: int) -> None:
        self.max_batch_size = max_batch_size
        self.max_decoding_tokens = max_decoding_tokens

    def scatter(
        self,
        flat_candidates: Tensor,
        tree_ids: Tensor,
        tokens_per_step: Tensor,
        batch_slots: Sequence[int],
        next_draft_tokens: Tensor,
    ) -> Tensor:
        """Write the next draft tree of every active request.

        Returns:
            ``next_draft_tokens``.
        """
        check_tree_ids(tree_ids, self.max_batch_size, self.max_decoding_tokens)

        if next_draft_tokens.is_cuda:
            from medusa_decode.kernels.tree_scatter import triton_scatter_draft_tokens

            device = next_draft_tokens.device
            return triton_scatter_draft_tokens(
                next_draft_tokens,
                flat_candidates.to(device),
                tree_ids.to(device),
                tokens_per_step.to(device),
                torch.tensor(list(batch_slots), dtype=torch.int32, device=device),
            )

        for slot in batch_slots:
            num_nodes = int(tokens_per_step[slot])
            sources = tree_ids[slot] if tree_ids.ndim == 2 else tree_ids
            next_draft_tokens[slot, :num_nodes] = flat_candidates[slot, sources[:num_nodes]]
        return next_draft_tokens
