"""Engine: Medusa decoding layer and its per-step stages."""

from medusa_decode.engine.layer import MedusaDecodingLayer
from medusa_decode.engine.logits_table import LogitsTable
from medusa_decode.engine.packer import PathPacker
from medusa_decode.engine.sampler import DraftResampler, PrimarySampler
from medusa_decode.engine.scatter import TreeScatter, check_tree_ids
from medusa_decode.engine.verifier import (
    PATH_SENTINEL,
    AcceptedPath,
    PathVerifier,
    accepted_prefix,
    select_best_path,
)

__all__ = [
    "PATH_SENTINEL",
    "AcceptedPath",
    "DraftResampler",
    "LogitsTable",
    "MedusaDecodingLayer",
    "PathPacker",
    "PathVerifier",
    "PrimarySampler",
    "TreeScatter",
    "accepted_prefix",
    "check_tree_ids",
    "select_best_path",
]
