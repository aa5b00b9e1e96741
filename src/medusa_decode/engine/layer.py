"""Medusa decoding layer: one accept / verify / resample / repack step.

Each call to :meth:`MedusaDecodingLayer.forward` runs, in order:

1. primary sampling of the target tokens,
2. acceptance of the longest matching draft path per request,
3. top-k resampling of every Medusa head from the accepted node's logits,
4. scatter of the new candidates into the next draft tree,
5. packing of the accepted paths into prefix-summed arrays.

All buffers are allocated once in ``__init__`` for the full slot capacity
and tree shape; steps address them through the active batch slots.
"""

from __future__ import annotations

import logging

import torch
from torch import Tensor

from medusa_decode.config import MedusaConfig
from medusa_decode.engine.logits_table import LogitsTable
from medusa_decode.engine.packer import PathPacker
from medusa_decode.engine.sampler import DraftResampler, PrimarySampler
from medusa_decode.engine.scatter import TreeScatter, check_tree_ids
from medusa_decode.engine.verifier import PATH_SENTINEL, AcceptedPath, PathVerifier
from medusa_decode.params import MedusaDecodingInputs, MedusaDecodingOutputs, MedusaSetupParams
from medusa_decode.state.random_state import RandomStateProvisioner
from medusa_decode.state.slots import check_batch_slots
from medusa_decode.state.topk_config import TopKConfigStore

logger = logging.getLogger(__name__)

_REQUIRED_INPUTS = (
    "logits",
    "batch_slots",
    "medusa_logits",
    "paths",
    "tree_ids",
    "end_ids",
    "cur_tokens_per_step",
    "target_tokens_per_step",
)

_REQUIRED_OUTPUTS = (
    "output_ids",
    "sequence_lengths",
    "next_draft_tokens",
    "num_new_tokens",
    "num_new_tokens_cum_sum",
    "paths_offsets",
    "finished",
)


class MedusaDecodingLayer:
    """Per-step control of Medusa tree speculative decoding.

    Args:
        config: Static decoder shape.

    Attributes:
        top_k_config: Primary and head top-k tables.
        random_state: Primary and head generators.
        target_tokens: Target token per tree node, ``[max_batch_size, W]``.
        flat_candidates: Head candidates before tree scatter, ``[max_batch_size, W]``.
        best_path_ids: Winning path per slot after the last step.
    """

    def __init__(self, config: MedusaConfig) -> None:
        self.config = config
        device = config.torch_device
        batch = config.max_batch_size
        width = config.max_decoding_tokens
        num_heads = config.max_draft_path_len

        self.top_k_config = TopKConfigStore.from_config(config)
        self.random_state = RandomStateProvisioner.from_config(config)

        self.target_tokens = torch.zeros(batch, width, dtype=torch.long, device=device)
        self.flat_candidates = torch.zeros(batch, width, dtype=torch.long, device=device)
        self.best_path_ids = torch.zeros(batch, dtype=torch.long, device=device)
        self.medusa_input_logits = LogitsTable(batch, num_heads)
        self.selected_logits = LogitsTable(batch, num_heads)

        self.primary_sampler = PrimarySampler(
            self.top_k_config, self.random_state, self.target_tokens
        )
        self.verifier = PathVerifier(num_heads, self.best_path_ids, self.selected_logits)
        self.draft_resampler = DraftResampler(
            self.top_k_config, self.random_state, self.flat_candidates
        )
        self.tree_scatter = TreeScatter(batch, width)
        self.path_packer = PathPacker()

    @property
    def max_top_k(self) -> int:
        return self.top_k_config.max_top_k

    @property
    def max_heads_top_k(self) -> int:
        return self.top_k_config.max_heads_top_k

    @property
    def workspace_size(self) -> int:
        """Candidate pool entries needed by the larger of the two sampling passes."""
        cfg = self.config
        primary = cfg.max_batch_size * cfg.max_decoding_tokens * self.max_top_k
        heads = cfg.max_batch_size * cfg.max_draft_path_len * self.max_heads_top_k
        return max(primary, heads)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def setup(
        self,
        batch_size: int,
        batch_slots: list[int],
        setup_params: MedusaSetupParams,
    ) -> None:
        """Seed random state and configure top-k for a new set of requests.

        Everything is validated before any state changes, so a rejected
        setup leaves the previous configuration intact.

        Raises:
            ValueError: On a slot, seed or top-k size mismatch or range error.
        """
        check_batch_slots(batch_size, batch_slots, self.config.max_batch_size)
        self.random_state.resolve_seeds(batch_size, setup_params.random_seed)

        self.top_k_config.configure(
            batch_size,
            batch_slots,
            setup_params.runtime_top_k,
            setup_params.runtime_heads_top_k,
        )
        self.random_state.seed(batch_size, batch_slots, setup_params.random_seed)
        self.random_state.seed_heads(batch_size, batch_slots, setup_params.random_seed)
        for slot in batch_slots:
            self.medusa_input_logits.clear(slot)
            self.selected_logits.clear(slot)

        logger.debug(
            "Medusa setup: slots=%s max_top_k=%d max_heads_top_k=%d",
            batch_slots,
            self.max_top_k,
            self.max_heads_top_k,
        )

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def forward(
        self,
        outputs: MedusaDecodingOutputs,
        inputs: MedusaDecodingInputs,
    ) -> list[AcceptedPath]:
        """Run one decoding step for the active batch.

        Inputs and topology are fully validated before the first stage
        runs.  ``outputs`` and ``inputs.cur_tokens_per_step`` are updated in
        place.

        Returns:
            The accepted path of every active request, in batch order.

        Raises:
            ValueError: On a missing input or a malformed topology.
            RuntimeError: If a request has no valid path or its output overflows.
        """
        self._check_inputs(outputs, inputs)

        self._sample_primary_tokens(inputs)
        accepted = self._accept_draft_tokens(outputs, inputs)
        self._sample_new_draft_tokens(outputs, inputs)
        self._scatter_new_draft_tokens(outputs, inputs)
        self._pack_accepted_paths(outputs, inputs)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Medusa step: accepted=%s finished=%s",
                {a.slot: a.num_new_tokens for a in accepted},
                [a.slot for a in accepted if a.finished],
            )
        return accepted

    __call__ = forward

    def _sample_primary_tokens(self, inputs: MedusaDecodingInputs) -> None:
        logger.debug("sample primary tokens start")
        assert inputs.logits is not None and inputs.batch_slots is not None

        widths = self._target_widths(inputs)
        self.primary_sampler.sample_true_tokens(inputs.logits, inputs.batch_slots, widths)
        if inputs.logits.ndim == 2 and inputs.target_tokens is not None:
            for slot in inputs.batch_slots:
                num_nodes = int(widths[slot])
                self.target_tokens[slot, 1:num_nodes] = inputs.target_tokens[slot, 1:num_nodes]

        logger.debug("sample primary tokens stop")

    def _accept_draft_tokens(
        self, outputs: MedusaDecodingOutputs, inputs: MedusaDecodingInputs
    ) -> list[AcceptedPath]:
        logger.debug("accept draft tokens start")
        assert inputs.batch_slots is not None and inputs.medusa_logits is not None

        self.medusa_input_logits.gather(inputs.medusa_logits, inputs.batch_slots)
        accepted = self.verifier.verify(
            batch_slots=inputs.batch_slots,
            paths=inputs.paths,  # type: ignore[arg-type]
            draft_tokens=outputs.next_draft_tokens,  # type: ignore[arg-type]
            target_tokens=self.target_tokens,
            end_ids=inputs.end_ids,  # type: ignore[arg-type]
            medusa_logits=self.medusa_input_logits,
            cur_tokens_per_step=inputs.cur_tokens_per_step,  # type: ignore[arg-type]
            target_tokens_per_step=inputs.target_tokens_per_step,  # type: ignore[arg-type]
            output_ids=outputs.output_ids,  # type: ignore[arg-type]
            sequence_lengths=outputs.sequence_lengths,  # type: ignore[arg-type]
            num_new_tokens=outputs.num_new_tokens,  # type: ignore[arg-type]
            finished=outputs.finished,  # type: ignore[arg-type]
        )

        logger.debug("accept draft tokens stop")
        return accepted

    def _sample_new_draft_tokens(
        self, outputs: MedusaDecodingOutputs, inputs: MedusaDecodingInputs
    ) -> None:
        logger.debug("sample new draft tokens start")
        assert inputs.batch_slots is not None

        self.draft_resampler.resample_draft_heads(
            self.selected_logits, inputs.batch_slots, outputs.finished
        )

        logger.debug("sample new draft tokens stop")

    def _scatter_new_draft_tokens(
        self, outputs: MedusaDecodingOutputs, inputs: MedusaDecodingInputs
    ) -> None:
        logger.debug("scatter new draft tokens start")
        assert inputs.batch_slots is not None

        self.tree_scatter.scatter(
            self.flat_candidates,
            inputs.tree_ids,  # type: ignore[arg-type]
            inputs.cur_tokens_per_step,  # type: ignore[arg-type]
            inputs.batch_slots,
            outputs.next_draft_tokens,  # type: ignore[arg-type]
        )

        logger.debug("scatter new draft tokens stop")

    def _pack_accepted_paths(
        self, outputs: MedusaDecodingOutputs, inputs: MedusaDecodingInputs
    ) -> None:
        logger.debug("pack accepted paths start")
        assert inputs.batch_slots is not None

        self.path_packer.pack(
            outputs.num_new_tokens,  # type: ignore[arg-type]
            self.best_path_ids,
            inputs.paths,  # type: ignore[arg-type]
            inputs.batch_slots,
            outputs.paths_offsets,  # type: ignore[arg-type]
            outputs.num_new_tokens_cum_sum,  # type: ignore[arg-type]
        )

        logger.debug("pack accepted paths stop")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_inputs(self, outputs: MedusaDecodingOutputs, inputs: MedusaDecodingInputs) -> None:
        """Reject missing inputs and malformed topology before any stage runs."""
        for name in _REQUIRED_INPUTS:
            if getattr(inputs, name) is None:
                raise ValueError(f"{name} must be provided for Medusa decoding")
        for name in _REQUIRED_OUTPUTS:
            if getattr(outputs, name) is None:
                raise ValueError(f"{name} must be provided for Medusa decoding")

        cfg = self.config
        batch_slots = inputs.batch_slots
        logits = inputs.logits
        assert batch_slots is not None and logits is not None
        check_batch_slots(len(batch_slots), batch_slots, cfg.max_batch_size)

        if logits.ndim not in (2, 3) or logits.shape[0] != len(batch_slots):
            raise ValueError(
                f"logits must be [batch, vocab] or [batch, W, vocab] with batch = "
                f"{len(batch_slots)}, got shape {tuple(logits.shape)}"
            )

        self._check_paths(inputs.paths)  # type: ignore[arg-type]
        check_tree_ids(inputs.tree_ids, cfg.max_batch_size, cfg.max_decoding_tokens)  # type: ignore[arg-type]

        cur = inputs.cur_tokens_per_step
        nxt = inputs.target_tokens_per_step
        assert cur is not None and nxt is not None
        for slot in batch_slots:
            for name, value in (
                ("cur_tokens_per_step", cur[slot]),
                ("target_tokens_per_step", nxt[slot]),
            ):
                if not (1 <= int(value) <= cfg.max_decoding_tokens):
                    raise ValueError(
                        f"{name}[{slot}] must be in [1, {cfg.max_decoding_tokens}], got {int(value)}"
                    )

        widths = self._target_widths(inputs)
        for slot in batch_slots:
            width = int(widths[slot])
            if logits.ndim == 3 and width > logits.shape[1]:
                raise ValueError(
                    f"logits provide {logits.shape[1]} tree nodes, slot {slot} needs {width}"
                )
            if logits.ndim == 2 and width > 1 and inputs.target_tokens is None:
                raise ValueError(
                    "target_tokens must be provided for Medusa decoding when logits "
                    "carry one distribution per request"
                )

        assert inputs.medusa_logits is not None
        for slot in batch_slots:
            try:
                heads = inputs.medusa_logits[slot]
            except (IndexError, KeyError) as exc:
                raise ValueError(f"medusa_logits has no entry for slot {slot}") from exc
            if len(heads) < cfg.max_draft_path_len:
                raise ValueError(
                    f"medusa_logits[{slot}] has {len(heads)} heads, "
                    f"expected {cfg.max_draft_path_len}"
                )

    def _check_paths(self, paths: Tensor) -> None:
        cfg = self.config
        if paths.ndim == 3 and paths.shape[0] != cfg.max_batch_size:
            raise ValueError(
                f"per-slot paths must have {cfg.max_batch_size} rows, got shape {tuple(paths.shape)}"
            )
        if paths.ndim not in (2, 3):
            raise ValueError(f"paths must be 2-D or 3-D, got shape {tuple(paths.shape)}")
        if paths.shape[-2] > cfg.max_decoding_tokens or paths.shape[-1] > cfg.max_path_len:
            raise ValueError(
                f"paths shape {tuple(paths.shape)} exceeds [{cfg.max_decoding_tokens}, "
                f"{cfg.max_path_len}]"
            )
        if paths.numel() > 0:
            lo, hi = int(paths.min()), int(paths.max())
            if lo < PATH_SENTINEL or hi >= cfg.max_decoding_tokens:
                raise ValueError(
                    f"paths entries must be {PATH_SENTINEL} or in [0, {cfg.max_decoding_tokens}), "
                    f"got range [{lo}, {hi}]"
                )

    def _target_widths(self, inputs: MedusaDecodingInputs) -> Tensor:
        """Number of leading tree nodes that need a target token, per slot.

        At least the tree width of the step, widened so that every node a
        candidate path reaches has a target to compare against.
        """
        assert inputs.batch_slots is not None
        assert inputs.paths is not None and inputs.cur_tokens_per_step is not None
        paths = inputs.paths
        widths = torch.zeros(self.config.max_batch_size, dtype=torch.long)
        for slot in inputs.batch_slots:
            num_candidates = int(inputs.cur_tokens_per_step[slot])
            candidates = (paths[slot] if paths.ndim == 3 else paths)[:num_candidates]
            width = num_candidates
            if candidates.numel() > 0:
                width = max(width, int(candidates.max()) + 1)
            widths[slot] = width
        return widths
