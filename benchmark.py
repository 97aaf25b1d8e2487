"""
Coconut Engine Benchmark
========================
numpy (one request at a time) vs torch (one batch) on the same weights:
1. Agreement (max abs difference of final states)
2. Throughput (thoughts/second) per transform
3. Batch scaling of the torch engine

Both engines run a fixed thought budget with convergence disabled so every
row does the same amount of work.
"""

import argparse
import json
import time
from pathlib import Path
from typing import Dict, List

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import torch
from tqdm import tqdm

from coconut.coconut_config import build_config
from coconut.coconut_model import continuous_thought_forward
from coconut.coconut_options import TRANSFORM_TYPES, ReasoningOptions
from coconut.coconut_torch import TorchLatentEngine

# =============================================================================
# BENCHMARK FUNCTIONS
# =============================================================================

def random_states(rng: np.random.Generator, batch: int, dim: int, dtype) -> np.ndarray:
    return rng.normal(0.0, 1.0, size=(batch, dim)).astype(dtype)


def run_numpy(config, states: np.ndarray, num_thoughts: int, options: ReasoningOptions) -> Dict:
    start = time.time()
    finals = []
    for row in tqdm(states, desc="numpy", leave=False):
        result = continuous_thought_forward(config, row, num_thoughts, options)
        finals.append(result.final_state)
    elapsed = time.time() - start
    return {
        'elapsed': elapsed,
        'thoughts_per_sec': len(states) * num_thoughts / max(elapsed, 1e-9),
        'finals': np.stack(finals),
    }


def run_torch(engine: TorchLatentEngine, states: np.ndarray, num_thoughts: int,
              options: ReasoningOptions) -> Dict:
    start = time.time()
    result = engine.run(states, num_thoughts, options)
    if engine.device_.type == 'cuda':
        torch.cuda.synchronize()
    elapsed = time.time() - start
    return {
        'elapsed': elapsed,
        'thoughts_per_sec': len(states) * num_thoughts / max(elapsed, 1e-9),
        'finals': result.final_states,
    }


def compare_transforms(config, engine, states, num_thoughts) -> Dict[str, Dict]:
    results = {}
    for transform in TRANSFORM_TYPES:
        options = ReasoningOptions(transform_type=transform, convergence_threshold=-1.0)
        np_res = run_numpy(config, states, num_thoughts, options)
        torch_res = run_torch(engine, states, num_thoughts, options)
        results[transform] = {
            'numpy_tps': np_res['thoughts_per_sec'],
            'torch_tps': torch_res['thoughts_per_sec'],
            'max_abs_diff': float(np.max(np.abs(np_res['finals'] - torch_res['finals']))),
        }
        print(f"{transform:14s} | numpy: {np_res['thoughts_per_sec']:9.1f} t/s | "
              f"torch: {torch_res['thoughts_per_sec']:9.1f} t/s | "
              f"max diff: {results[transform]['max_abs_diff']:.2e}")
    return results


def batch_scaling(engine, rng, dim, dtype, num_thoughts, sizes: List[int]) -> List[float]:
    options = ReasoningOptions(convergence_threshold=-1.0)
    rates = []
    for size in tqdm(sizes, desc="batch scaling"):
        states = random_states(rng, size, dim, dtype)
        rates.append(run_torch(engine, states, num_thoughts, options)['thoughts_per_sec'])
    return rates


def plot_results(results: Dict, sizes: List[int], rates: List[float], out_path: Path):
    """Create benchmark visualization."""
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    # 1. Throughput per transform
    ax = axes[0]
    names = list(results)
    x = np.arange(len(names))
    width = 0.35
    ax.bar(x - width/2, [results[n]['numpy_tps'] for n in names], width, label='numpy', color='blue', alpha=0.7)
    ax.bar(x + width/2, [results[n]['torch_tps'] for n in names], width, label='torch', color='red', alpha=0.7)
    ax.set_xticks(x)
    ax.set_xticklabels(names)
    ax.set_ylabel('Thoughts / second')
    ax.set_title('Throughput by Transform')
    ax.legend()

    # 2. Torch batch scaling
    ax = axes[1]
    ax.plot(sizes, rates, 'r-o', linewidth=2)
    ax.set_xlabel('Batch size')
    ax.set_ylabel('Thoughts / second')
    ax.set_xscale('log', base=2)
    ax.set_title('Torch Batch Scaling')
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(out_path, dpi=150, bbox_inches='tight')
    plt.close()

    print(f"\nVisualization saved to {out_path}")


# =============================================================================
# MAIN
# =============================================================================

def main():
    parser = argparse.ArgumentParser(description="Benchmark numpy vs torch latent engines")
    parser.add_argument('--model-dim', type=int, default=64)
    parser.add_argument('--heads', type=int, default=4)
    parser.add_argument('--layers', type=int, default=2)
    parser.add_argument('--batch', type=int, default=32)
    parser.add_argument('--thoughts', type=int, default=20)
    parser.add_argument('--precision', choices=['float32', 'float64'], default='float64')
    parser.add_argument('--device', choices=['cpu', 'cuda'], default='cpu')
    parser.add_argument('--out', type=str, default='benchmark_results')
    args = parser.parse_args()

    print("=" * 70)
    print("COCONUT ENGINE BENCHMARK")
    print("=" * 70)

    config = build_config(
        model_dim=args.model_dim,
        num_heads=args.heads,
        num_layers=args.layers,
        intermediate_dim=args.model_dim * 4,
        vocab_size=1000,
        precision=args.precision,
        device=args.device,
        seed=0,
    )
    engine = TorchLatentEngine(config)
    print(f"Device: {engine.device_} | params: {config.parameter_count():,}")

    rng = np.random.default_rng(0)
    states = random_states(rng, args.batch, args.model_dim, config.dtype)

    results = compare_transforms(config, engine, states, args.thoughts)
    sizes = [1, 4, 16, 64, 256]
    rates = batch_scaling(engine, rng, args.model_dim, config.dtype, args.thoughts, sizes)

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    with open(out_dir / 'benchmark_results.json', 'w') as f:
        json.dump({'transforms': results, 'batch_sizes': sizes, 'batch_rates': rates}, f, indent=2)
    plot_results(results, sizes, rates, out_dir / 'benchmark_results.png')


if __name__ == "__main__":
    main()
