"""Tree path verification: pick and commit the longest accepted draft path.

For every active request, each candidate path of the draft tree is walked
from its first node.  At path position ``i`` the draft token stored at
node ``path[i]`` is compared with the target token sampled for the same
node.  The accepted prefix ends at the first mismatch, right after an
accepted end-of-sequence token, or at the end of the path.

Position 0 is always committed, even when its draft token mismatches: its
target token is the primary sample, not a draft.  Accepted lengths are
therefore in ``[1, D + 1]``.

Among the candidate paths of a request the longest accepted prefix wins;
equal lengths resolve to the lowest path id.  The committed tokens are the
target tokens along the winning prefix.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import torch
from torch import Tensor

from medusa_decode.engine.logits_table import LogitsTable

PATH_SENTINEL = -1


@dataclass(frozen=True)
class AcceptedPath:
    """Verification result for one request.

    Attributes:
        slot: Batch slot of the request.
        path_id: Winning candidate path.
        tokens: Committed tokens, ``len(tokens)`` is the accepted length.
        last_node: Tree node of the last committed token.
        finished: Whether an end-of-sequence token was committed.
    """

    slot: int
    path_id: int
    tokens: list[int]
    last_node: int
    finished: bool

    @property
    def num_new_tokens(self) -> int:
        return len(self.tokens)


def accepted_prefix(
    path: Sequence[int],
    draft_tokens: Sequence[int],
    target_tokens: Sequence[int],
    end_id: int,
) -> tuple[int, bool]:
    """Accepted length of one path and whether it ends with end-of-sequence.

    Returns ``(0, False)`` for a path with no nodes.
    """
    if len(path) == 0 or path[0] == PATH_SENTINEL:
        return 0, False

    matched = 0
    for node in path:
        if node == PATH_SENTINEL:
            break
        if draft_tokens[node] != target_tokens[node]:
            break
        matched += 1
        if target_tokens[node] == end_id:
            return matched, True

    if matched == 0:
        # The primary sample at position 0 is committed regardless.
        return 1, target_tokens[path[0]] == end_id
    return matched, False


def select_best_path(
    paths: Sequence[Sequence[int]],
    num_candidates: int,
    draft_tokens: Sequence[int],
    target_tokens: Sequence[int],
    end_id: int,
) -> tuple[int, int, bool]:
    """Return ``(path_id, accepted_length, finished)`` of the best candidate.

    Only the first ``num_candidates`` paths are read.  Ties go to the
    lowest path id.

    Raises:
        RuntimeError: If no candidate path has a node.
    """
    best_id, best_len, best_end = -1, 0, False
    for path_id in range(min(num_candidates, len(paths))):
        length, has_end = accepted_prefix(paths[path_id], draft_tokens, target_tokens, end_id)
        if length > best_len:
            best_id, best_len, best_end = path_id, length, has_end
    if best_id < 0:
        raise RuntimeError(
            f"No valid candidate path among the first {num_candidates} paths"
        )
    return best_id, best_len, best_end


class PathVerifier:
    """Accepts draft tokens along the best tree path and commits them.

    Args:
        num_heads: Number of Medusa heads ``D``.
        best_path_ids: Output buffer, winning path per slot.
        selected_logits: Output table of head logits at the last accepted node.
    """

    def __init__(self, num_heads: int, best_path_ids: Tensor, selected_logits: LogitsTable) -> None:
        self.num_heads = num_heads
        self.best_path_ids = best_path_ids
        self.selected_logits = selected_logits

    def verify(
        self,
        *,
        batch_slots: Sequence[int],
        paths: Tensor,
        draft_tokens: Tensor,
        target_tokens: Tensor,
        end_ids: Tensor,
        medusa_logits: LogitsTable,
        cur_tokens_per_step: Tensor,
        target_tokens_per_step: Tensor,
        output_ids: Tensor,
        sequence_lengths: Tensor,
        num_new_tokens: Tensor,
        finished: Tensor,
    ) -> list[AcceptedPath]:
        """Verify every active request and commit its accepted tokens.

        Args:
            batch_slots: Active slots.
            paths: ``[W, D + 1]`` or ``[max_batch_size, W, D + 1]`` path table.
            draft_tokens: Current draft tree per slot, ``[max_batch_size, W]``.
            target_tokens: Target token per tree node, ``[max_batch_size, W]``.
            end_ids: End-of-sequence id per slot.
            medusa_logits: Head logits of the active slots, one row per tree
                node (``[W, vocab]``) or a single ``[vocab]`` row.
            cur_tokens_per_step: Candidate paths per slot; replaced by
                ``target_tokens_per_step`` once the slot is verified.
            target_tokens_per_step: Tree width of the next step per slot.
            output_ids: Output sequences, ``[max_batch_size, max_seq_len]``.
            sequence_lengths: Sequence lengths, advanced by the accepted length.
            num_new_tokens: Accepted length per slot.
            finished: End-of-sequence flag per slot.

        Returns:
            One :class:`AcceptedPath` per active request, in batch order.

        Raises:
            RuntimeError: If a request has no valid candidate path or its
                output sequence cannot hold the accepted tokens.
        """
        shared_paths = paths.tolist() if paths.ndim == 2 else None
        max_seq_len = output_ids.shape[-1]

        # Select for the whole batch first so a failure commits nothing.
        results: list[AcceptedPath] = []
        selected_rows: list[list[Tensor]] = []
        for slot in batch_slots:
            slot_paths = shared_paths if shared_paths is not None else paths[slot].tolist()
            target = target_tokens[slot].tolist()
            path_id, length, has_end = select_best_path(
                slot_paths,
                int(cur_tokens_per_step[slot]),
                draft_tokens[slot].tolist(),
                target,
                int(end_ids[slot]),
            )
            best_path = slot_paths[path_id][:length]

            seq_len = int(sequence_lengths[slot])
            if seq_len + length > max_seq_len:
                raise RuntimeError(
                    f"Output overflow for slot {slot}: {seq_len} + {length} tokens "
                    f"exceeds max_seq_len {max_seq_len}"
                )
            selected_rows.append(self._head_rows(slot, best_path[-1], medusa_logits))
            results.append(
                AcceptedPath(
                    slot=slot,
                    path_id=path_id,
                    tokens=[target[node] for node in best_path],
                    last_node=best_path[-1],
                    finished=has_end,
                )
            )

        for result, rows in zip(results, selected_rows, strict=True):
            slot, length = result.slot, result.num_new_tokens
            seq_len = int(sequence_lengths[slot])
            output_ids[slot, seq_len : seq_len + length] = torch.tensor(
                result.tokens, dtype=output_ids.dtype, device=output_ids.device
            )
            sequence_lengths[slot] = seq_len + length
            num_new_tokens[slot] = length
            self.best_path_ids[slot] = result.path_id
            if result.finished:
                finished[slot] = True
            for head, row in enumerate(rows):
                self.selected_logits.set(slot, head, row)
            cur_tokens_per_step[slot] = target_tokens_per_step[slot]
        return results

    def _head_rows(self, slot: int, node: int, medusa_logits: LogitsTable) -> list[Tensor]:
        """Logits row of every head of *slot* at tree node *node*."""
        rows: list[Tensor] = []
        for head in range(self.num_heads):
            logits = medusa_logits.get(slot, head)
            if logits.ndim == 1:
                rows.append(logits)
                continue
            if node >= logits.shape[0]:
                raise RuntimeError(
                    f"Head {head} logits of slot {slot} have {logits.shape[0]} rows, "
                    f"no row for tree node {node}"
                )
            rows.append(logits[node])
        return rows
