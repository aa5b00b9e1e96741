"""Runtime top-k tables for the primary sampler and the Medusa heads."""

from __future__ import annotations

from collections.abc import Sequence

import torch
from torch import Tensor

from medusa_decode.config import TOP_K_MAX, MedusaConfig
from medusa_decode.state.slots import check_batch_slots

_DEFAULT_TOP_K = 1


def _flatten_heads_top_k(
    runtime_heads_top_k: Sequence[Sequence[int]] | Sequence[int],
    num_heads: int,
) -> list[int]:
    """Flatten nested ``[batch][head]`` values row-major; flat input passes through.

    Raises:
        ValueError: If a nested row does not hold exactly ``num_heads`` values.
    """
    flat: list[int] = []
    for i, item in enumerate(runtime_heads_top_k):
        if isinstance(item, Sequence):
            if len(item) != num_heads:
                raise ValueError(
                    f"runtime_heads_top_k row {i} has {len(item)} values, expected {num_heads}"
                )
            flat.extend(int(v) for v in item)
        else:
            flat.append(int(item))
    return flat


class TopKConfigStore:
    """Slot-indexed top-k configuration with cumulative head offsets.

    Holds, for every slot, the primary sampler top-k and the top-k of each
    of the ``num_heads`` Medusa heads.  Head ``h`` of a request writes its
    candidates into the request's flat candidate buffer starting at
    ``cumulative_top_k[slot, h]``, the exclusive running sum of the head
    top-k values in head order.

    The running maxima ``max_top_k`` and ``max_heads_top_k`` size the
    kernels' candidate pools and only ever grow within a session.

    Attributes:
        runtime_top_k: Primary top-k per slot, ``[max_batch_size]``.
        runtime_heads_top_k: Head top-k per slot, ``[max_batch_size, num_heads]``.
        cumulative_top_k: Candidate offsets per slot, ``[max_batch_size, num_heads]``.
    """

    def __init__(
        self,
        max_batch_size: int,
        num_heads: int,
        max_decoding_tokens: int,
        *,
        top_k_max: int = TOP_K_MAX,
        vocab_size: int | None = None,
    ) -> None:
        self.max_batch_size = max_batch_size
        self.num_heads = num_heads
        self.max_decoding_tokens = max_decoding_tokens
        self.top_k_max = top_k_max
        self.vocab_size = vocab_size

        self.runtime_top_k = torch.full((max_batch_size,), _DEFAULT_TOP_K, dtype=torch.long)
        self.runtime_heads_top_k = torch.full(
            (max_batch_size, num_heads), _DEFAULT_TOP_K, dtype=torch.long
        )
        # Offsets consistent with the all-top-1 default: head h starts at h.
        self.cumulative_top_k = (
            torch.arange(num_heads, dtype=torch.long).unsqueeze(0).repeat(max_batch_size, 1)
        )
        self._max_top_k = _DEFAULT_TOP_K
        self._max_heads_top_k = _DEFAULT_TOP_K

    @staticmethod
    def from_config(config: MedusaConfig) -> TopKConfigStore:
        return TopKConfigStore(
            config.max_batch_size,
            config.max_draft_path_len,
            config.max_decoding_tokens,
            top_k_max=config.top_k_max,
            vocab_size=config.vocab_size,
        )

    @property
    def max_top_k(self) -> int:
        """Largest primary top-k configured so far in this session."""
        return self._max_top_k

    @property
    def max_heads_top_k(self) -> int:
        """Largest head top-k configured so far in this session."""
        return self._max_heads_top_k

    def configure(
        self,
        batch_size: int,
        batch_slots: Sequence[int],
        runtime_top_k: Sequence[int] | None = None,
        runtime_heads_top_k: Sequence[Sequence[int]] | Sequence[int] | None = None,
    ) -> None:
        """Set the top-k values of the active requests.

        All inputs are validated before anything is written, so a failing
        call leaves the store unchanged.

        Args:
            batch_size: Number of active requests.
            batch_slots: Slot of each active request.
            runtime_top_k: Primary top-k per request, ``None`` for top-1.
            runtime_heads_top_k: Head top-k per request, nested ``[batch][head]``
                or flattened row-major.  ``None`` or empty for top-1.

        Raises:
            ValueError: On a length mismatch, an out-of-range value, or a
                request whose head candidates do not fit in the tree width.
        """
        check_batch_slots(batch_size, batch_slots, self.max_batch_size)

        if runtime_top_k is None:
            top_k = [_DEFAULT_TOP_K] * batch_size
        else:
            top_k = [int(k) for k in runtime_top_k]
        if len(top_k) != batch_size:
            raise ValueError(
                f"runtime_top_k size ({len(top_k)}) != batch_size ({batch_size})"
            )

        num_rows = batch_size * self.num_heads
        if runtime_heads_top_k is None or len(runtime_heads_top_k) == 0:
            heads_top_k = [_DEFAULT_TOP_K] * num_rows
        else:
            heads_top_k = _flatten_heads_top_k(runtime_heads_top_k, self.num_heads)
        if len(heads_top_k) != num_rows:
            raise ValueError(
                f"runtime_heads_top_k size ({len(heads_top_k)}) != "
                f"batch_size * num_heads ({num_rows})"
            )

        for k in top_k:
            self._check_range("runtime_top_k", k)
        for k in heads_top_k:
            self._check_range("runtime_heads_top_k", k)

        rows = [
            heads_top_k[bi * self.num_heads : (bi + 1) * self.num_heads]
            for bi in range(batch_size)
        ]
        for bi, row in enumerate(rows):
            if sum(row) > self.max_decoding_tokens:
                raise ValueError(
                    f"head top-k values {row} of request {bi} need {sum(row)} candidate "
                    f"positions, but max_decoding_tokens is {self.max_decoding_tokens}"
                )

        for bi, slot in enumerate(batch_slots):
            self.runtime_top_k[slot] = top_k[bi]
            cumulative = 0
            for hi, k in enumerate(rows[bi]):
                self.runtime_heads_top_k[slot, hi] = k
                self.cumulative_top_k[slot, hi] = cumulative
                cumulative += k

        self._max_top_k = max(self._max_top_k, max(top_k))
        self._max_heads_top_k = max(self._max_heads_top_k, max(heads_top_k))

    def top_k(self, slot: int) -> int:
        return int(self.runtime_top_k[slot])

    def heads_top_k(self, slot: int) -> list[int]:
        return self.runtime_heads_top_k[slot].tolist()

    def cumulative_offsets(self, slot: int) -> list[int]:
        return self.cumulative_top_k[slot].tolist()

    def tiled_heads_top_k(self, batch_slots: Sequence[int]) -> Tensor:
        """Head top-k of the active requests, flattened by batch position then head."""
        return self.runtime_heads_top_k[list(batch_slots)].reshape(-1)

    def _check_range(self, name: str, k: int) -> None:
        limit = self.top_k_max
        if self.vocab_size is not None:
            limit = min(limit, self.vocab_size)
        if not (1 <= k <= limit):
            raise ValueError(f"{name} values must be in [1, {limit}], got {k}")
