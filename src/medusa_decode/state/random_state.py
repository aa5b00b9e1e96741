"""Per-slot random generator state for the primary and Medusa head samplers."""

from __future__ import annotations

from collections.abc import Sequence

import torch

from medusa_decode.config import DEFAULT_SEED, MedusaConfig
from medusa_decode.state.slots import check_batch_slots, tile_batch_slots

_MAX_SEED = 2**64 - 1


class RandomStateProvisioner:
    """Owns one ``torch.Generator`` per request slot and one per (slot, head).

    Generators are created once for the full slot capacity and re-seeded in
    place whenever a batch is set up, so a slot's stream only changes when
    its owner changes.

    Attributes:
        generators: Primary sampler generators, indexed by slot.
        head_generators: Medusa head generators, indexed by
            ``num_heads * slot + head``.
    """

    def __init__(
        self,
        max_batch_size: int,
        num_heads: int,
        *,
        device: str | torch.device = "cpu",
        default_seed: int = DEFAULT_SEED,
    ) -> None:
        self.max_batch_size = max_batch_size
        self.num_heads = num_heads
        self.default_seed = default_seed
        self.generators = [torch.Generator(device=device) for _ in range(max_batch_size)]
        self.head_generators = [
            torch.Generator(device=device) for _ in range(max_batch_size * num_heads)
        ]
        for gen in self.generators + self.head_generators:
            gen.manual_seed(default_seed)

    @staticmethod
    def from_config(config: MedusaConfig) -> RandomStateProvisioner:
        return RandomStateProvisioner(
            config.max_batch_size,
            config.max_draft_path_len,
            device=config.torch_device,
            default_seed=config.default_seed,
        )

    def resolve_seeds(self, batch_size: int, seeds: Sequence[int] | None) -> list[int]:
        """Return one seed per request.

        A single seed is broadcast; ``batch_size`` seeds are used as given;
        ``None`` falls back to the default seed.  Any other length raises.
        """
        if seeds is None:
            return [self.default_seed] * batch_size
        if len(seeds) == 1:
            resolved = [seeds[0]] * batch_size
        elif len(seeds) == batch_size:
            resolved = list(seeds)
        else:
            raise ValueError(
                f"Random seed vector size mismatch: got {len(seeds)} seeds "
                f"for batch_size {batch_size}"
            )
        for s in resolved:
            if not (0 <= s <= _MAX_SEED):
                raise ValueError(f"random seed must be in [0, 2**64), got {s}")
        return resolved

    def seed(
        self,
        batch_size: int,
        batch_slots: Sequence[int],
        seeds: Sequence[int] | None = None,
    ) -> None:
        """Seed the primary generators of the active slots."""
        check_batch_slots(batch_size, batch_slots, self.max_batch_size)
        resolved = self.resolve_seeds(batch_size, seeds)
        for slot, s in zip(batch_slots, resolved, strict=True):
            self.generators[slot].manual_seed(s)

    def seed_heads(
        self,
        batch_size: int,
        batch_slots: Sequence[int],
        seeds: Sequence[int] | None = None,
    ) -> None:
        """Seed every head generator of the active slots.

        Each request's seed is replicated across its ``num_heads`` heads,
        giving ``batch_size * num_heads`` seeds.
        """
        check_batch_slots(batch_size, batch_slots, self.max_batch_size)
        resolved = self.resolve_seeds(batch_size, seeds)
        tiled_seeds = [s for s in resolved for _ in range(self.num_heads)]
        tiled_slots = tile_batch_slots(batch_slots, self.num_heads)
        for row, s in zip(tiled_slots, tiled_seeds, strict=True):
            self.head_generators[row].manual_seed(s)

    def generator(self, slot: int) -> torch.Generator:
        return self.generators[slot]

    def head_generator(self, slot: int, head: int) -> torch.Generator:
        return self.head_generators[self.num_heads * slot + head]
