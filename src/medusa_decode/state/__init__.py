"""State subpackage: slot-indexed sampling configuration and random state."""

from medusa_decode.state.random_state import RandomStateProvisioner
from medusa_decode.state.slots import check_batch_slots, tile_batch_slots
from medusa_decode.state.topk_config import TopKConfigStore

__all__ = [
    "RandomStateProvisioner",
    "TopKConfigStore",
    "check_batch_slots",
    "tile_batch_slots",
]
