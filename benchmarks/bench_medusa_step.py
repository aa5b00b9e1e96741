"""Medusa decoding step benchmark: per-step latency on synthetic draft trees.

Builds a fan-plus-chain tree (head 0 proposes ``--head0-top-k`` candidates,
the remaining heads extend the first candidate as a chain), feeds random
logits whose targets agree with the draft with probability
``--accept-prob``, and times ``MedusaDecodingLayer.forward``.

Usage:
    uv run python benchmarks/bench_medusa_step.py
    uv run python benchmarks/bench_medusa_step.py \
        --batch-size 16 --num-heads 4 --head0-top-k 8 --vocab-size 32000 --steps 200
"""

from __future__ import annotations

import argparse
import json
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

import torch

from medusa_decode.config import MedusaConfig
from medusa_decode.engine.layer import MedusaDecodingLayer
from medusa_decode.params import MedusaDecodingInputs, MedusaDecodingOutputs, MedusaSetupParams

REPORTS_DIR = Path(__file__).parent / "reports"


# ---------------------------------------------------------------------------
# Synthetic tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyntheticTree:
    """Topology tensors for a fan-plus-chain draft tree."""

    width: int
    heads_top_k: list[int]
    tree_ids: torch.Tensor
    paths: torch.Tensor


def build_tree(num_heads: int, head0_top_k: int) -> SyntheticTree:
    """Node 0 is the root, nodes ``1..k`` are head 0's candidates, and the
    remaining heads hang a chain off node 1."""
    k = head0_top_k
    width = 1 + k + (num_heads - 1)
    heads_top_k = [k] + [1] * (num_heads - 1)

    tree_ids = [0] + list(range(k)) + [k + h - 1 for h in range(1, num_heads)]

    paths = torch.full((width, num_heads + 1), -1, dtype=torch.long)
    paths[0, 0] = 0
    paths[0, 1] = 1
    for h in range(1, num_heads):
        paths[0, h + 1] = k + h
    for c in range(1, k):
        paths[c, 0] = 0
        paths[c, 1] = 1 + c

    return SyntheticTree(
        width=width,
        heads_top_k=heads_top_k,
        tree_ids=torch.tensor(tree_ids, dtype=torch.long),
        paths=paths,
    )


def make_step_inputs(
    outputs: MedusaDecodingOutputs,
    tree: SyntheticTree,
    config: MedusaConfig,
    *,
    accept_prob: float,
    gen: torch.Generator,
) -> MedusaDecodingInputs:
    """Random logits whose targets match the current draft with ``accept_prob``."""
    assert outputs.next_draft_tokens is not None
    batch = config.max_batch_size
    device = config.torch_device
    draft = outputs.next_draft_tokens.cpu()

    logits = torch.randn(batch, config.vocab_size, generator=gen)
    agree_root = torch.rand(batch, generator=gen) < accept_prob
    for b in range(batch):
        if agree_root[b]:
            logits[b, int(draft[b, 0])] += 100.0

    random_targets = torch.randint(0, config.vocab_size, (batch, tree.width), generator=gen)
    agree = torch.rand(batch, tree.width, generator=gen) < accept_prob
    target_tokens = torch.where(agree, draft, random_targets)

    medusa_logits = [
        [
            torch.randn(tree.width, config.vocab_size, generator=gen).to(device)
            for _ in range(config.max_draft_path_len)
        ]
        for _ in range(batch)
    ]

    return MedusaDecodingInputs(
        logits=logits.to(device),
        batch_slots=list(range(batch)),
        medusa_logits=medusa_logits,
        paths=tree.paths.to(device),
        tree_ids=tree.tree_ids.to(device),
        end_ids=torch.full((batch,), -1, dtype=torch.long, device=device),
        cur_tokens_per_step=torch.full((batch,), tree.width, dtype=torch.long, device=device),
        target_tokens_per_step=torch.full((batch,), tree.width, dtype=torch.long, device=device),
        target_tokens=target_tokens.to(device),
    )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


@dataclass
class StepReport:
    """Latency and acceptance metrics over the timed steps."""

    steps: int
    step_mean_ms: float
    step_p50_ms: float
    step_p95_ms: float
    step_max_ms: float
    mean_accepted_len: float


def latency_quantiles(latencies_ms: list[float], qs: tuple[float, ...]) -> list[float]:
    """Linearly interpolated quantiles (0-1) of the step latencies."""
    samples = torch.tensor(latencies_ms, dtype=torch.float64)
    return torch.quantile(samples, torch.tensor(qs, dtype=torch.float64)).tolist()


def run(args: argparse.Namespace) -> StepReport:
    device = "cuda" if torch.cuda.is_available() and not args.cpu else "cpu"
    tree = build_tree(args.num_heads, args.head0_top_k)
    config = MedusaConfig(
        max_batch_size=args.batch_size,
        max_draft_path_len=args.num_heads,
        max_decoding_tokens=tree.width,
        vocab_size=args.vocab_size,
        device=device,
    )
    layer = MedusaDecodingLayer(config)
    layer.setup(
        args.batch_size,
        list(range(args.batch_size)),
        MedusaSetupParams(
            random_seed=[args.seed],
            runtime_top_k=[args.top_k] * args.batch_size,
            runtime_heads_top_k=[tree.heads_top_k] * args.batch_size,
        ),
    )

    total_steps = args.warmup + args.steps
    max_seq_len = total_steps * (args.num_heads + 1)
    outputs = MedusaDecodingOutputs.allocate(config, max_seq_len)
    gen = torch.Generator().manual_seed(args.seed)

    latencies_ms: list[float] = []
    accepted_lens: list[int] = []
    for step in range(total_steps):
        inputs = make_step_inputs(outputs, tree, config, accept_prob=args.accept_prob, gen=gen)
        if device == "cuda":
            torch.cuda.synchronize()
        t0 = time.perf_counter()
        accepted = layer.forward(outputs, inputs)
        if device == "cuda":
            torch.cuda.synchronize()
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        if step >= args.warmup:
            latencies_ms.append(elapsed_ms)
            accepted_lens.extend(a.num_new_tokens for a in accepted)

    p50, p95 = latency_quantiles(latencies_ms, (0.5, 0.95))
    return StepReport(
        steps=args.steps,
        step_mean_ms=sum(latencies_ms) / len(latencies_ms),
        step_p50_ms=p50,
        step_p95_ms=p95,
        step_max_ms=max(latencies_ms),
        mean_accepted_len=sum(accepted_lens) / len(accepted_lens),
    )


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Medusa decoding step benchmark")
    parser.add_argument("--batch-size", type=int, default=8)
    parser.add_argument("--num-heads", type=int, default=4, help="Medusa heads (max draft path length)")
    parser.add_argument("--head0-top-k", type=int, default=4, help="Candidates proposed by head 0")
    parser.add_argument("--top-k", type=int, default=1, help="Primary sampler top-k")
    parser.add_argument("--vocab-size", type=int, default=32000)
    parser.add_argument("--accept-prob", type=float, default=0.7)
    parser.add_argument("--steps", type=int, default=100)
    parser.add_argument("--warmup", type=int, default=5)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--cpu", action="store_true", help="Force CPU even when CUDA is available")
    parser.add_argument("--json", action="store_true", help=f"Write a JSON report to {REPORTS_DIR}")
    args = parser.parse_args()

    if args.steps < 1:
        parser.error("--steps must be >= 1")
    if not 0.0 <= args.accept_prob <= 1.0:
        parser.error("--accept-prob must be in [0, 1]")

    report = run(args)

    print()
    print("=== Medusa Step Benchmark ===")
    print(f"Batch size:       {args.batch_size}")
    print(f"Heads / width:    {args.num_heads} / {1 + args.head0_top_k + args.num_heads - 1}")
    print(f"Vocab size:       {args.vocab_size}")
    print(f"Accept prob:      {args.accept_prob}")
    print()
    print("Per-step latency:")
    print(f"  Mean:           {report.step_mean_ms:.2f} ms")
    print(f"  P50:            {report.step_p50_ms:.2f} ms")
    print(f"  P95:            {report.step_p95_ms:.2f} ms")
    print(f"  Max:            {report.step_max_ms:.2f} ms")
    print(f"Mean accepted:    {report.mean_accepted_len:.2f} tokens/request/step")
    print()

    if args.json:
        REPORTS_DIR.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        path = REPORTS_DIR / f"medusa_step_{stamp}.json"
        payload = {**asdict(report), **vars(args), "pytorch_version": torch.__version__}
        path.write_text(json.dumps(payload, indent=2))
        print(f"Report written to {path}")


if __name__ == "__main__":
    main()
