"""Primary and Medusa head sampling stages."""

from __future__ import annotations

from collections.abc import Sequence

import torch
from torch import Tensor

from medusa_decode.engine.logits_table import LogitsTable
from medusa_decode.kernels.topk_sampling import batch_top_k_sample
from medusa_decode.state.random_state import RandomStateProvisioner
from medusa_decode.state.topk_config import TopKConfigStore


class PrimarySampler:
    """Samples the target ("true") tokens of every active request.

    With 2-D logits ``[batch, vocab]`` one token per request is drawn and
    stored at tree node 0.  With 3-D logits ``[batch, W, vocab]`` every node
    ``0 .. tokens_per_step-1`` is drawn, row ``n`` being the target
    distribution *of* node ``n``: the model output at node ``n``'s parent,
    not at ``n`` itself.  Draws use the request's primary top-k and generator.

    Args:
        top_k_config: Primary top-k per slot.
        random_state: Primary generator per slot.
        target_tokens: Output buffer, ``[max_batch_size, W]``.
    """

    def __init__(
        self,
        top_k_config: TopKConfigStore,
        random_state: RandomStateProvisioner,
        target_tokens: Tensor,
    ) -> None:
        self.top_k_config = top_k_config
        self.random_state = random_state
        self.target_tokens = target_tokens

    def sample_true_tokens(
        self,
        logits: Tensor,
        batch_slots: Sequence[int],
        tokens_per_step: Tensor | None = None,
    ) -> Tensor:
        """Draw target tokens and write them to ``target_tokens``.

        Args:
            logits: ``[batch, vocab]`` or ``[batch, W, vocab]``, rows ordered
                like ``batch_slots``.
            batch_slots: Active slots.
            tokens_per_step: Number of leading nodes to sample per slot; required
                for 3-D logits.

        Returns:
            The ``target_tokens`` buffer.
        """
        if logits.ndim == 2:
            row_index = list(range(len(batch_slots)))
            row_slots = list(batch_slots)
            row_nodes = [0] * len(batch_slots)
            rows = logits
        elif logits.ndim == 3:
            if tokens_per_step is None:
                raise ValueError("tokens_per_step must be provided for per-node logits")
            row_index, row_slots, row_nodes = [], [], []
            for bi, slot in enumerate(batch_slots):
                num_nodes = int(tokens_per_step[slot])
                for node in range(num_nodes):
                    row_index.append(bi)
                    row_slots.append(slot)
                    row_nodes.append(node)
            rows = logits[
                torch.tensor(row_index, device=logits.device),
                torch.tensor(row_nodes, device=logits.device),
            ]
        else:
            raise ValueError(
                f"logits must be [batch, vocab] or [batch, W, vocab], got shape {tuple(logits.shape)}"
            )

        top_ks = [self.top_k_config.top_k(slot) for slot in row_slots]
        generators = [self.random_state.generator(slot) for slot in row_slots]
        tokens = batch_top_k_sample(rows, top_ks, generators, self.top_k_config.max_top_k)

        self.target_tokens[
            torch.tensor(row_slots, device=self.target_tokens.device),
            torch.tensor(row_nodes, device=self.target_tokens.device),
        ] = tokens.to(self.target_tokens.device)
        return self.target_tokens


class DraftResampler:
    """Samples fresh candidates for every Medusa head of every live request.

    Head ``h`` of the request in ``slot`` contributes ``heads_top_k[slot][h]``
    candidates, in descending score order, written to the flat candidate
    buffer at ``cumulative_top_k[slot, h]``.  Finished requests are skipped
    and their rows of the buffer are left as they were.

    Args:
        top_k_config: Head top-k values and cumulative offsets per slot.
        random_state: Head generator per (slot, head).
        flat_candidates: Output buffer, ``[max_batch_size, W]``.
    """

    def __init__(
        self,
        top_k_config: TopKConfigStore,
        random_state: RandomStateProvisioner,
        flat_candidates: Tensor,
    ) -> None:
        self.top_k_config = top_k_config
        self.random_state = random_state
        self.flat_candidates = flat_candidates
        self.num_heads = top_k_config.num_heads

    def resample_draft_heads(
        self,
        selected_logits: LogitsTable,
        batch_slots: Sequence[int],
        finished: Tensor | None = None,
    ) -> Tensor:
        """Fill the flat candidate buffer for the live requests.

        Args:
            selected_logits: Head logits chosen by path verification.
            batch_slots: Active slots.
            finished: End-of-sequence flag per slot; finished slots are skipped.

        Returns:
            The ``flat_candidates`` buffer.
        """
        if finished is None:
            live = list(batch_slots)
        else:
            live = [slot for slot in batch_slots if not bool(finished[slot])]
        if not live:
            return self.flat_candidates

        top_ks: list[int] = []
        generators: list[torch.Generator] = []
        destinations: list[tuple[int, int, int]] = []
        for slot in live:
            heads_top_k = self.top_k_config.heads_top_k(slot)
            offsets = self.top_k_config.cumulative_offsets(slot)
            for head in range(self.num_heads):
                top_ks.append(heads_top_k[head])
                generators.append(self.random_state.head_generator(slot, head))
                destinations.append((slot, offsets[head], heads_top_k[head]))

        candidates = batch_top_k_sample(
            selected_logits.rows(live),
            top_ks,
            generators,
            self.top_k_config.max_heads_top_k,
            return_all_top_k=True,
        ).to(self.flat_candidates.device)

        for row, (slot, start, k) in enumerate(destinations):
            self.flat_candidates[slot, start : start + k] = candidates[row, :k]
        return self.flat_candidates
