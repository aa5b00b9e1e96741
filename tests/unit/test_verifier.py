"""Unit tests for draft path acceptance and commit."""

from __future__ import annotations

import pytest
import torch

from medusa_decode.engine.logits_table import LogitsTable
from medusa_decode.engine.verifier import (
    AcceptedPath,
    PathVerifier,
    accepted_prefix,
    select_best_path,
)

END_ID = 99
MAX_BATCH_SIZE = 2
NUM_HEADS = 2
WIDTH = 5
VOCAB = 8
MAX_SEQ_LEN = 6

# Three candidate paths over a five-node tree, padded to D + 1 = 3.
PATHS = [[0, 1, 2], [0, 1, 3], [0, 4, -1]]
DRAFT = [5, 7, 9, 7, 2]
TARGET = [5, 7, 2, 2, 7]

# ---------------------------------------------------------------------------
# accepted_prefix / select_best_path
# ---------------------------------------------------------------------------


class TestAcceptedPrefix:
    def test_stops_at_first_mismatch(self) -> None:
        assert accepted_prefix(PATHS[0], DRAFT, TARGET, END_ID) == (2, False)

    def test_full_match(self) -> None:
        assert accepted_prefix([0, 1, 3], [5, 7, 0, 2], [5, 7, 0, 2], END_ID) == (3, False)

    def test_first_mismatch_still_commits_one(self) -> None:
        assert accepted_prefix([0, 1], [4, 7], [5, 7], END_ID) == (1, False)

    def test_stops_at_sentinel(self) -> None:
        assert accepted_prefix([0, 4, -1], [5, 0, 0, 0, 7], [5, 0, 0, 0, 7], END_ID) == (2, False)

    def test_end_id_is_accepted_then_stops(self) -> None:
        assert accepted_prefix([0, 1, 2], [5, END_ID, 3], [5, END_ID, 3], END_ID) == (2, True)

    def test_end_id_at_position_0(self) -> None:
        assert accepted_prefix([0, 1], [END_ID, 1], [END_ID, 1], END_ID) == (1, True)

    def test_end_id_at_position_0_without_match(self) -> None:
        assert accepted_prefix([0, 1], [3, 1], [END_ID, 1], END_ID) == (1, True)

    def test_empty_path(self) -> None:
        assert accepted_prefix([], DRAFT, TARGET, END_ID) == (0, False)
        assert accepted_prefix([-1, -1], DRAFT, TARGET, END_ID) == (0, False)


class TestSelectBestPath:
    def test_tie_goes_to_lowest_id(self) -> None:
        assert select_best_path(PATHS, 3, DRAFT, TARGET, END_ID) == (0, 2, False)

    def test_longest_wins(self) -> None:
        target = [5, 2, 9, 7, 2]
        assert select_best_path(PATHS, 3, DRAFT, target, END_ID) == (2, 2, False)

    def test_only_first_candidates_read(self) -> None:
        target = [5, 2, 9, 7, 2]
        # Path 2 would win but is outside the candidate count.
        assert select_best_path(PATHS, 2, DRAFT, target, END_ID) == (0, 1, False)

    def test_no_valid_path(self) -> None:
        with pytest.raises(RuntimeError, match="No valid candidate path"):
            select_best_path(PATHS, 0, DRAFT, TARGET, END_ID)
        with pytest.raises(RuntimeError, match="No valid candidate path"):
            select_best_path([[-1, -1, -1]], 1, DRAFT, TARGET, END_ID)


# ---------------------------------------------------------------------------
# PathVerifier
# ---------------------------------------------------------------------------


def _head_logits() -> LogitsTable:
    """Head ``h`` of slot ``s`` scores node ``n`` with row value ``100*s + 10*h + n``."""
    table = LogitsTable(MAX_BATCH_SIZE, NUM_HEADS)
    for slot in range(MAX_BATCH_SIZE):
        for head in range(NUM_HEADS):
            base = 100 * slot + 10 * head
            rows = torch.arange(WIDTH, dtype=torch.float32).unsqueeze(1) + base
            table.set(slot, head, rows.expand(WIDTH, VOCAB))
    return table


class _Buffers:
    def __init__(self) -> None:
        self.paths = torch.tensor(PATHS, dtype=torch.long)
        self.draft = torch.tensor([DRAFT, [3, 1, 1, 1, 1]], dtype=torch.long)
        self.target = torch.tensor([TARGET, [3, 4, 4, 4, 4]], dtype=torch.long)
        self.end_ids = torch.full((MAX_BATCH_SIZE,), END_ID, dtype=torch.long)
        self.cur = torch.tensor([3, 3])
        self.next = torch.tensor([2, 1])
        self.output_ids = torch.zeros(MAX_BATCH_SIZE, MAX_SEQ_LEN, dtype=torch.long)
        self.sequence_lengths = torch.tensor([1, 0])
        self.num_new_tokens = torch.zeros(MAX_BATCH_SIZE, dtype=torch.long)
        self.finished = torch.zeros(MAX_BATCH_SIZE, dtype=torch.bool)
        self.best_path_ids = torch.full((MAX_BATCH_SIZE,), -1, dtype=torch.long)
        self.selected = LogitsTable(MAX_BATCH_SIZE, NUM_HEADS)

    def verify(self, batch_slots: list[int]) -> list[AcceptedPath]:
        verifier = PathVerifier(NUM_HEADS, self.best_path_ids, self.selected)
        return verifier.verify(
            batch_slots=batch_slots,
            paths=self.paths,
            draft_tokens=self.draft,
            target_tokens=self.target,
            end_ids=self.end_ids,
            medusa_logits=_head_logits(),
            cur_tokens_per_step=self.cur,
            target_tokens_per_step=self.next,
            output_ids=self.output_ids,
            sequence_lengths=self.sequence_lengths,
            num_new_tokens=self.num_new_tokens,
            finished=self.finished,
        )


class TestPathVerifier:
    def test_commits_best_path(self) -> None:
        buf = _Buffers()
        results = buf.verify([0, 1])

        assert results[0] == AcceptedPath(slot=0, path_id=0, tokens=[5, 7], last_node=1, finished=False)
        assert results[1] == AcceptedPath(slot=1, path_id=0, tokens=[3], last_node=0, finished=False)
        assert buf.output_ids[0, :3].tolist() == [0, 5, 7]
        assert buf.output_ids[1, :1].tolist() == [3]
        assert buf.sequence_lengths.tolist() == [3, 1]
        assert buf.num_new_tokens.tolist() == [2, 1]
        assert buf.best_path_ids.tolist() == [0, 0]
        assert not buf.finished.any()

    def test_updates_tokens_per_step(self) -> None:
        buf = _Buffers()
        buf.verify([0, 1])
        assert buf.cur.tolist() == [2, 1]

    def test_selected_logits_at_last_accepted_node(self) -> None:
        buf = _Buffers()
        buf.verify([0, 1])
        # Slot 0 ends at node 1, slot 1 at node 0.
        assert buf.selected.get(0, 0)[0].item() == 1.0
        assert buf.selected.get(0, 1)[0].item() == 11.0
        assert buf.selected.get(1, 0)[0].item() == 100.0
        assert buf.selected.get(1, 1)[0].item() == 110.0

    def test_one_dimensional_head_logits_used_as_is(self) -> None:
        buf = _Buffers()
        table = LogitsTable(MAX_BATCH_SIZE, NUM_HEADS)
        row = torch.arange(VOCAB, dtype=torch.float32)
        for head in range(NUM_HEADS):
            table.set(0, head, row)
        verifier = PathVerifier(NUM_HEADS, buf.best_path_ids, buf.selected)
        verifier.verify(
            batch_slots=[0],
            paths=buf.paths,
            draft_tokens=buf.draft,
            target_tokens=buf.target,
            end_ids=buf.end_ids,
            medusa_logits=table,
            cur_tokens_per_step=buf.cur,
            target_tokens_per_step=buf.next,
            output_ids=buf.output_ids,
            sequence_lengths=buf.sequence_lengths,
            num_new_tokens=buf.num_new_tokens,
            finished=buf.finished,
        )
        assert buf.selected.get(0, 1) is row

    def test_end_id_marks_finished(self) -> None:
        buf = _Buffers()
        buf.draft[1] = torch.tensor([3, END_ID, 1, 1, 1])
        buf.target[1] = torch.tensor([3, END_ID, 4, 4, 4])
        results = buf.verify([1])

        assert results[0].finished
        assert results[0].tokens == [3, END_ID]
        assert buf.finished.tolist() == [False, True]

    def test_end_id_at_position_0_finishes(self) -> None:
        buf = _Buffers()
        buf.target[1, 0] = END_ID
        results = buf.verify([1])
        assert results[0].tokens == [END_ID]
        assert buf.finished[1].item()

    def test_per_slot_paths(self) -> None:
        buf = _Buffers()
        buf.paths = torch.tensor([PATHS, [[0, 2, -1], [0, 1, -1], [0, 3, 4]]], dtype=torch.long)
        buf.target[1] = torch.tensor([3, 1, 4, 4, 4])
        results = buf.verify([0, 1])
        assert results[1].path_id == 1
        assert results[1].tokens == [3, 1]

    def test_output_overflow_commits_nothing(self) -> None:
        buf = _Buffers()
        buf.sequence_lengths[1] = MAX_SEQ_LEN
        with pytest.raises(RuntimeError, match="Output overflow"):
            buf.verify([0, 1])
        # Slot 0 verified fine but nothing is committed.
        assert buf.sequence_lengths.tolist() == [1, MAX_SEQ_LEN]
        assert buf.num_new_tokens.tolist() == [0, 0]
        assert buf.cur.tolist() == [3, 3]
        assert not buf.output_ids.any()

    def test_missing_head_row(self) -> None:
        buf = _Buffers()
        table = LogitsTable(MAX_BATCH_SIZE, NUM_HEADS)
        for head in range(NUM_HEADS):
            table.set(0, head, torch.zeros(1, VOCAB))
        verifier = PathVerifier(NUM_HEADS, buf.best_path_ids, buf.selected)
        with pytest.raises(RuntimeError, match="no row for tree node 1"):
            verifier.verify(
                batch_slots=[0],
                paths=buf.paths,
                draft_tokens=buf.draft,
                target_tokens=buf.target,
                end_ids=buf.end_ids,
                medusa_logits=table,
                cur_tokens_per_step=buf.cur,
                target_tokens_per_step=buf.next,
                output_ids=buf.output_ids,
                sequence_lengths=buf.sequence_lengths,
                num_new_tokens=buf.num_new_tokens,
                finished=buf.finished,
            )
