"""Setup, input and output bundles for one Medusa decoding step.

These are the only types exchanged with the runtime that drives the
generation loop.  Every per-request tensor is addressed by batch slot
(row ``slot`` belongs to whichever request currently owns that slot),
except ``MedusaDecodingInputs.logits`` which is ordered like
``batch_slots``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import torch
from torch import Tensor

from medusa_decode.config import MedusaConfig


@dataclass
class MedusaSetupParams:
    """Per-batch sampling configuration consumed by ``MedusaDecodingLayer.setup``.

    Attributes:
        random_seed: One seed broadcast to every request, or one per request.
            ``None`` uses the configured default seed.
        runtime_top_k: Top-k of the primary sampler, one per request.
            ``None`` means top-1.
        runtime_heads_top_k: Top-k of every Medusa head, one row of ``D``
            values per request (or the same values flattened row-major).
            ``None`` means top-1 for every head.
    """

    random_seed: list[int] | None = None
    runtime_top_k: list[int] | None = None
    runtime_heads_top_k: Sequence[Sequence[int]] | Sequence[int] | None = None


@dataclass
class MedusaDecodingInputs:
    """Inputs of one decoding step.

    Attributes:
        logits: Base model logits, ``[batch, vocab]`` or ``[batch, W, vocab]``,
            rows ordered like ``batch_slots``.  In the 3-D form row ``n`` is the
            target distribution *for* node ``n``, i.e. the base model output at
            the parent of ``n``.  Row 0 is the distribution of the root token.
        batch_slots: Slots of the active requests, in batch order.
        medusa_logits: Head logits indexed ``[slot][head]``.  Each entry is
            ``[W, vocab]`` or ``[vocab]``.  Row ``n`` holds the scores of the
            tokens *following* node ``n`` (the head output at ``n`` itself),
            which is the opposite offset from ``logits``.
        paths: Path table, ``[W, D + 1]`` or ``[max_batch_size, W, D + 1]``,
            padded with ``-1``.
        tree_ids: Flat candidate offset feeding each tree node, ``[W]`` or
            ``[max_batch_size, W]``.
        end_ids: End-of-sequence token per slot, ``[max_batch_size]``.
        cur_tokens_per_step: Tree width of the current step per slot.  Updated
            in place to ``target_tokens_per_step`` after verification.
        target_tokens_per_step: Tree width of the next step per slot.
        target_tokens: Optional precomputed target tokens per tree node,
            ``[max_batch_size, W]``.  Used for the nodes ``>= 1`` that the
            step's tree width or candidate paths reach, when ``logits``
            carries only one distribution per request.
    """

    logits: Tensor | None = None
    batch_slots: list[int] | None = None
    medusa_logits: Sequence[Sequence[Tensor]] | None = None
    paths: Tensor | None = None
    tree_ids: Tensor | None = None
    end_ids: Tensor | None = None
    cur_tokens_per_step: Tensor | None = None
    target_tokens_per_step: Tensor | None = None
    target_tokens: Tensor | None = None

    @property
    def batch_size(self) -> int:
        if self.batch_slots is None:
            return 0
        return len(self.batch_slots)


@dataclass
class MedusaDecodingOutputs:
    """Outputs of one decoding step, pre-allocated and updated in place.

    Attributes:
        output_ids: Generated sequences, ``[max_batch_size, max_seq_len]``.
        sequence_lengths: Current length of every sequence, ``[max_batch_size]``.
        next_draft_tokens: Draft tree per slot, ``[max_batch_size, W]``.  Read
            as the current tree, then overwritten with the next one.
        num_new_tokens: Tokens committed this step per slot.
        num_new_tokens_cum_sum: Exclusive prefix sum of ``num_new_tokens`` over
            the active batch, ``[max_batch_size + 1]``.
        paths_offsets: Tree-node offsets of every accepted token, packed by
            batch order, ``[max_batch_size * (D + 1)]``.
        finished: End-of-sequence flag per slot.
    """

    output_ids: Tensor | None = None
    sequence_lengths: Tensor | None = None
    next_draft_tokens: Tensor | None = None
    num_new_tokens: Tensor | None = None
    num_new_tokens_cum_sum: Tensor | None = None
    paths_offsets: Tensor | None = None
    finished: Tensor | None = None

    @staticmethod
    def allocate(config: MedusaConfig, max_seq_len: int) -> MedusaDecodingOutputs:
        """Allocate zeroed output buffers sized for *config*."""
        if max_seq_len < 1:
            raise ValueError(f"max_seq_len must be >= 1, got {max_seq_len}")
        device = config.torch_device
        batch = config.max_batch_size

        def _ids(*shape: int) -> Tensor:
            return torch.zeros(shape, dtype=torch.long, device=device)

        return MedusaDecodingOutputs(
            output_ids=_ids(batch, max_seq_len),
            sequence_lengths=_ids(batch),
            next_draft_tokens=_ids(batch, config.max_decoding_tokens),
            num_new_tokens=_ids(batch),
            num_new_tokens_cum_sum=_ids(batch + 1),
            paths_offsets=_ids(batch * config.max_path_len),
            finished=torch.zeros(batch, dtype=torch.bool, device=device),
        )
