"""Decoder domain configuration for Medusa tree decoding."""

from __future__ import annotations

from dataclasses import dataclass

import torch

# Upper bound on any top-k value accepted by the sampling kernels.
TOP_K_MAX = 1024

# Seed used when the caller does not provide one.
DEFAULT_SEED = 0


@dataclass
class MedusaConfig:
    """Static shape of the Medusa decoding layer.

    Every buffer the layer owns is sized from these values once, at
    construction.  Steps only address a live prefix of those buffers.

    Attributes:
        max_batch_size: Number of request slots.
        max_draft_path_len: Number of Medusa heads ``D`` (max draft path length).
        max_decoding_tokens: Tree width ``W`` (max tokens decoded per step).
        vocab_size: Vocabulary size of the logits handed to the layer.
        device: Torch device string for buffers and generators.
        default_seed: Seed used when ``setup`` receives no random seed.
        top_k_max: Largest top-k a request may configure.
    """

    max_batch_size: int
    max_draft_path_len: int
    max_decoding_tokens: int
    vocab_size: int
    device: str = "cpu"
    default_seed: int = DEFAULT_SEED
    top_k_max: int = TOP_K_MAX

    def __post_init__(self) -> None:
        self.validate()

    @property
    def max_path_len(self) -> int:
        """Longest candidate path, root included."""
        return self.max_draft_path_len + 1

    @property
    def torch_device(self) -> torch.device:
        return torch.device(self.device)

    def validate(self) -> None:
        """Validate configuration values, raising ``ValueError`` on invalid settings."""
        if self.max_batch_size < 1:
            raise ValueError(f"max_batch_size must be >= 1, got {self.max_batch_size}")
        if self.max_draft_path_len < 1:
            raise ValueError(f"max_draft_path_len must be >= 1, got {self.max_draft_path_len}")
        if self.max_decoding_tokens < 1:
            raise ValueError(f"max_decoding_tokens must be >= 1, got {self.max_decoding_tokens}")
        if self.max_decoding_tokens < self.max_draft_path_len:
            raise ValueError(
                f"max_decoding_tokens ({self.max_decoding_tokens}) must be >= "
                f"max_draft_path_len ({self.max_draft_path_len})"
            )
        if self.vocab_size < 1:
            raise ValueError(f"vocab_size must be >= 1, got {self.vocab_size}")
        if not (1 <= self.top_k_max <= TOP_K_MAX):
            raise ValueError(f"top_k_max must be in [1, {TOP_K_MAX}], got {self.top_k_max}")
        if self.default_seed < 0:
            raise ValueError(f"default_seed must be >= 0, got {self.default_seed}")
