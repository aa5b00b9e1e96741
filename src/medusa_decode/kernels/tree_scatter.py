"""Triton kernel scattering flat Medusa head candidates into the draft tree.

One program per active request.  Each program loads the request's tree
width, gathers ``flat[slot, tree_ids[n]]`` for every active node ``n`` and
stores it at ``draft[slot, n]``.  Index validation happens on the host
before launch; the kernel assumes every source index is in range.
"""

from __future__ import annotations

import triton
import triton.language as tl
from torch import Tensor


@triton.jit
def _scatter_draft_tokens_kernel(
    DRAFT,  # [max_batch_size, W] output
    FLAT,  # [max_batch_size, W] per-head candidates
    TREE_IDS,  # [W] or [max_batch_size, W]
    TOKENS_PER_STEP,  # [max_batch_size]
    BATCH_SLOTS,  # [batch]
    stride_draft_row,
    stride_flat_row,
    stride_tree_row,
    TREE_PER_SLOT: tl.constexpr,
    BLOCK_SIZE: tl.constexpr,
):
    bi = tl.program_id(0)
    slot = tl.load(BATCH_SLOTS + bi).to(tl.int64)
    num_tokens = tl.load(TOKENS_PER_STEP + slot)

    offsets = tl.arange(0, BLOCK_SIZE)
    mask = offsets < num_tokens

    if TREE_PER_SLOT:
        tree_row = TREE_IDS + slot * stride_tree_row
    else:
        tree_row = TREE_IDS
    src = tl.load(tree_row + offsets, mask=mask, other=0)

    tokens = tl.load(FLAT + slot * stride_flat_row + src, mask=mask, other=0)
    tl.store(DRAFT + slot * stride_draft_row + offsets, tokens, mask=mask)


def triton_scatter_draft_tokens(
    draft_tokens: Tensor,
    flat_candidates: Tensor,
    tree_ids: Tensor,
    tokens_per_step: Tensor,
    batch_slots: Tensor,
) -> Tensor:
    """Scatter flat candidates into ``draft_tokens`` in place.

    Args:
        draft_tokens: Output tree, ``[max_batch_size, W]``.
        flat_candidates: Per-head candidates, ``[max_batch_size, W]``.
        tree_ids: Source offset per node, ``[W]`` or ``[max_batch_size, W]``.
        tokens_per_step: Active tree width per slot, ``[max_batch_size]``.
        batch_slots: Active slots, ``[batch]``.

    Returns:
        ``draft_tokens``.
    """
    if draft_tokens.ndim != 2 or flat_candidates.ndim != 2:
        raise ValueError("draft_tokens and flat_candidates must be 2-D [max_batch_size, W]")
    if draft_tokens.stride(-1) != 1 or flat_candidates.stride(-1) != 1:
        raise ValueError("draft_tokens and flat_candidates must be contiguous in the last dimension")
    if tree_ids.stride(-1) != 1:
        raise ValueError(f"tree_ids must be contiguous in the last dimension, got {tree_ids.stride()}")

    width = draft_tokens.shape[1]
    tree_per_slot = tree_ids.ndim == 2
    grid = (batch_slots.numel(),)
    _scatter_draft_tokens_kernel[grid](
        draft_tokens,
        flat_candidates,
        tree_ids,
        tokens_per_step,
        batch_slots,
        draft_tokens.stride(0),
        flat_candidates.stride(0),
        tree_ids.stride(0) if tree_per_slot else 0,
        TREE_PER_SLOT=tree_per_slot,
        BLOCK_SIZE=triton.next_power_of_2(width),
    )
    return draft_tokens
