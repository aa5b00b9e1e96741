"""Unit tests for tree scatter and accepted-path packing."""

from __future__ import annotations

import pytest
import torch

from medusa_decode.engine.packer import PathPacker
from medusa_decode.engine.scatter import TreeScatter, check_tree_ids

MAX_BATCH_SIZE = 3
WIDTH = 5

# ---------------------------------------------------------------------------
# check_tree_ids
# ---------------------------------------------------------------------------


class TestCheckTreeIds:
    def test_shared_and_per_slot_shapes(self) -> None:
        check_tree_ids(torch.tensor([0, 0, 1, 2, 4]), MAX_BATCH_SIZE, WIDTH)
        check_tree_ids(torch.zeros(MAX_BATCH_SIZE, WIDTH, dtype=torch.long), MAX_BATCH_SIZE, WIDTH)

    def test_wrong_shape(self) -> None:
        with pytest.raises(ValueError, match="shape"):
            check_tree_ids(torch.zeros(WIDTH - 1, dtype=torch.long), MAX_BATCH_SIZE, WIDTH)
        with pytest.raises(ValueError, match="1-D or 2-D"):
            check_tree_ids(torch.zeros(1, 1, WIDTH, dtype=torch.long), MAX_BATCH_SIZE, WIDTH)

    def test_out_of_range(self) -> None:
        with pytest.raises(ValueError, match="tree_ids entries"):
            check_tree_ids(torch.tensor([0, 1, 2, 3, WIDTH]), MAX_BATCH_SIZE, WIDTH)
        with pytest.raises(ValueError, match="tree_ids entries"):
            check_tree_ids(torch.tensor([-1, 1, 2, 3, 4]), MAX_BATCH_SIZE, WIDTH)


# ---------------------------------------------------------------------------
# TreeScatter
# ---------------------------------------------------------------------------


@pytest.fixture()
def flat() -> torch.Tensor:
    """Row ``s`` holds ``10*s + i`` at offset ``i``."""
    return torch.arange(WIDTH).unsqueeze(0) + 10 * torch.arange(MAX_BATCH_SIZE).unsqueeze(1)


class TestTreeScatter:
    def test_shared_topology(self, flat: torch.Tensor) -> None:
        draft = torch.full((MAX_BATCH_SIZE, WIDTH), -1, dtype=torch.long)
        TreeScatter(MAX_BATCH_SIZE, WIDTH).scatter(
            flat, torch.tensor([0, 0, 1, 2, 4]), torch.tensor([5, 5, 5]), [0, 2], draft
        )
        assert draft[0].tolist() == [0, 0, 1, 2, 4]
        assert draft[2].tolist() == [20, 20, 21, 22, 24]
        assert (draft[1] == -1).all()

    def test_only_active_nodes_written(self, flat: torch.Tensor) -> None:
        draft = torch.full((MAX_BATCH_SIZE, WIDTH), -1, dtype=torch.long)
        TreeScatter(MAX_BATCH_SIZE, WIDTH).scatter(
            flat, torch.tensor([4, 3, 2, 1, 0]), torch.tensor([1, 2, 1]), [1], draft
        )
        assert draft[1].tolist() == [14, 13, -1, -1, -1]

    def test_per_slot_topology(self, flat: torch.Tensor) -> None:
        draft = torch.zeros(MAX_BATCH_SIZE, WIDTH, dtype=torch.long)
        tree_ids = torch.tensor([[0, 1, 2, 3, 4], [1, 1, 1, 1, 1], [4, 4, 0, 0, 2]])
        TreeScatter(MAX_BATCH_SIZE, WIDTH).scatter(
            flat, tree_ids, torch.full((MAX_BATCH_SIZE,), WIDTH), [0, 1, 2], draft
        )
        assert draft[0].tolist() == [0, 1, 2, 3, 4]
        assert draft[1].tolist() == [11] * WIDTH
        assert draft[2].tolist() == [24, 24, 20, 20, 22]

    def test_bad_topology_writes_nothing(self, flat: torch.Tensor) -> None:
        draft = torch.full((MAX_BATCH_SIZE, WIDTH), -1, dtype=torch.long)
        with pytest.raises(ValueError):
            TreeScatter(MAX_BATCH_SIZE, WIDTH).scatter(
                flat, torch.tensor([0, 1, 2, 3, 9]), torch.tensor([5, 5, 5]), [0], draft
            )
        assert (draft == -1).all()


# ---------------------------------------------------------------------------
# PathPacker
# ---------------------------------------------------------------------------


class TestPathPacker:
    def test_pack_shared_paths(self) -> None:
        paths = torch.tensor([[0, 1, 2], [0, 1, 3], [0, 4, -1]])
        num_new_tokens = torch.tensor([2, 0, 3])
        best_path_ids = torch.tensor([2, 0, 1])
        offsets = torch.full((MAX_BATCH_SIZE * 3,), -9, dtype=torch.long)
        cum_sum = torch.full((MAX_BATCH_SIZE + 1,), -9, dtype=torch.long)

        PathPacker().pack(num_new_tokens, best_path_ids, paths, [2, 0], offsets, cum_sum)

        assert cum_sum[:3].tolist() == [0, 3, 5]
        assert offsets[:5].tolist() == [0, 1, 3, 0, 4]

    def test_pack_follows_slot_list_order(self) -> None:
        paths = torch.tensor([[0, 1, 2], [0, 2, -1]])
        num_new_tokens = torch.tensor([1, 2, 0])
        best_path_ids = torch.tensor([0, 1, 0])
        offsets = torch.zeros(9, dtype=torch.long)
        cum_sum = torch.zeros(4, dtype=torch.long)

        PathPacker().pack(num_new_tokens, best_path_ids, paths, [1, 0], offsets, cum_sum)

        assert cum_sum[:3].tolist() == [0, 2, 3]
        assert offsets[:3].tolist() == [0, 2, 0]

    def test_pack_per_slot_paths(self) -> None:
        paths = torch.tensor(
            [
                [[0, 1, 2], [0, 3, -1]],
                [[0, 2, 4], [0, 1, -1]],
                [[0, 1, 2], [0, 1, 2]],
            ]
        )
        num_new_tokens = torch.tensor([2, 3, 1])
        best_path_ids = torch.tensor([1, 0, 0])
        offsets = torch.zeros(9, dtype=torch.long)
        cum_sum = torch.zeros(4, dtype=torch.long)

        PathPacker().pack(num_new_tokens, best_path_ids, paths, [0, 1, 2], offsets, cum_sum)

        assert cum_sum.tolist() == [0, 2, 5, 6]
        assert offsets[:6].tolist() == [0, 3, 0, 2, 4, 0]
