"""Batched top-k sampling with per-row top-k and per-row generators.

Reference implementation of the sampling kernel interface used by the
Medusa layer.  A single ``torch.topk`` call over the whole batch builds a
candidate pool of width ``max_top_k``; each row then keeps its own ``k``
best candidates and either draws one of them or returns all of them.

Two addressing modes are supported:

- flat batch: ``logits`` is one ``[rows, vocab]`` tensor;
- pointer-indirected: ``logits`` is a sequence of 1-D ``[vocab]`` tensors,
  one per row, which may live in unrelated storage (e.g. views into
  different Medusa head outputs).
"""

from __future__ import annotations

from collections.abc import Sequence

import torch
import torch.nn.functional as F
from torch import Tensor


def _as_rows(logits: Tensor | Sequence[Tensor]) -> Tensor:
    if isinstance(logits, Tensor):
        if logits.ndim != 2:
            raise ValueError(f"logits must be 2-D [rows, vocab], got shape {tuple(logits.shape)}")
        return logits
    if len(logits) == 0:
        raise ValueError("logits must contain at least one row")
    for row in logits:
        if row.ndim != 1:
            raise ValueError(f"indirected logits rows must be 1-D, got shape {tuple(row.shape)}")
    return torch.stack(list(logits))


def batch_top_k_sample(
    logits: Tensor | Sequence[Tensor],
    top_ks: Sequence[int] | Tensor,
    generators: Sequence[torch.Generator | None],
    max_top_k: int,
    *,
    return_all_top_k: bool = False,
) -> Tensor:
    """Top-k sample every row of a batch.

    Args:
        logits: ``[rows, vocab]`` tensor or a sequence of ``[vocab]`` tensors.
        top_ks: Top-k per row, each in ``[1, max_top_k]``.
        generators: RNG per row.  Only consumed when drawing.
        max_top_k: Width of the shared candidate pool.
        return_all_top_k: Return every selected candidate instead of drawing one.

    Returns:
        ``[rows]`` sampled token ids, or with ``return_all_top_k`` a
        ``[rows, max_top_k]`` tensor holding each row's ``k`` candidates in
        descending score order followed by ``-1`` padding.
    """
    rows = _as_rows(logits)
    num_rows, vocab_size = rows.shape
    ks = top_ks.tolist() if isinstance(top_ks, Tensor) else list(top_ks)
    if len(ks) != num_rows:
        raise ValueError(f"top_ks length ({len(ks)}) != number of rows ({num_rows})")
    if not return_all_top_k and len(generators) != num_rows:
        raise ValueError(f"generators length ({len(generators)}) != number of rows ({num_rows})")
    for k in ks:
        if not (1 <= k <= max_top_k):
            raise ValueError(f"top-k must be in [1, {max_top_k}], got {k}")

    pool_size = min(max_top_k, vocab_size)
    values, indices = torch.topk(rows.float(), pool_size, dim=-1)

    if return_all_top_k:
        out = torch.full((num_rows, max_top_k), -1, dtype=torch.long, device=rows.device)
        for r, k in enumerate(ks):
            k = min(k, pool_size)
            out[r, :k] = indices[r, :k]
        return out

    out = torch.empty(num_rows, dtype=torch.long, device=rows.device)
    for r, (k, gen) in enumerate(zip(ks, generators, strict=True)):
        k = min(k, pool_size)
        probs = F.softmax(values[r, :k], dim=-1)
        choice = torch.multinomial(probs, num_samples=1, generator=gen)
        out[r] = indices[r, choice[0]]
    return out
