"""
Plot one continuous thought run: per-step change, attention gate,
routing confidence and the hidden state as a heatmap.
"""

import argparse
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np

from coconut.coconut_config import build_config, tokens_to_hidden_state
from coconut.coconut_model import ReasoningResult, continuous_thought_forward
from coconut.coconut_text import HashTokenizer


def plot_trajectory(result: ReasoningResult, out_path: Path, title: str = ''):
    fig, axes = plt.subplots(2, 2, figsize=(12, 9))
    steps = np.arange(1, len(result.thought_trajectory) + 1)

    ax = axes[0, 0]
    ax.plot(steps, result.reasoning_trace['convergence_analysis']['step_changes'], 'b-o', linewidth=2)
    ax.set_xlabel('Thought')
    ax.set_ylabel('‖h_new - h_prev‖')
    ax.set_yscale('log')
    ax.set_title('Step Change')
    ax.grid(True, alpha=0.3)

    ax = axes[0, 1]
    ax.plot(steps, [p.attention_probability for p in result.attention_patterns], 'r-', label='gate')
    ax.plot(steps, [d.selected_path[0] for d in result.routing_decisions], 'g--', label='routing max')
    ax.set_xlabel('Thought')
    ax.set_ylim(0, 1)
    ax.set_title('Attention Gate / Routing Confidence')
    ax.legend()
    ax.grid(True, alpha=0.3)

    ax = axes[1, 0]
    ax.plot(steps, [np.linalg.norm(h) for h in result.thought_trajectory], 'k-', linewidth=2)
    ax.set_xlabel('Thought')
    ax.set_ylabel('‖h‖')
    ax.set_title('Hidden State Norm')
    ax.grid(True, alpha=0.3)

    ax = axes[1, 1]
    if result.thought_trajectory:
        im = ax.imshow(np.stack(result.thought_trajectory).T, aspect='auto', cmap='coolwarm')
        fig.colorbar(im, ax=ax)
    ax.set_xlabel('Thought')
    ax.set_ylabel('Dimension')
    ax.set_title('Trajectory')

    fig.suptitle(title or f"termination: {result.termination}")
    plt.tight_layout()
    plt.savefig(out_path, dpi=150, bbox_inches='tight')
    plt.close()
    print(f"Saved to {out_path}")


def main():
    parser = argparse.ArgumentParser(description="Plot a continuous thought trajectory")
    parser.add_argument('prompt', type=str)
    parser.add_argument('--thoughts', type=int, default=30)
    parser.add_argument('--transform', choices=['standard', 'hierarchical', 'superposition', 'recursive'],
                        default='standard')
    parser.add_argument('--model-dim', type=int, default=32)
    parser.add_argument('--seed', type=int, default=0)
    parser.add_argument('--out', type=str, default='trajectory.png')
    args = parser.parse_args()

    config = build_config(model_dim=args.model_dim, num_heads=4, num_layers=1,
                          intermediate_dim=args.model_dim * 4, vocab_size=5000, seed=args.seed)
    tokens = HashTokenizer(vocab_size=config.vocab_size).encode(args.prompt)
    initial = tokens_to_hidden_state(config, tokens)
    result = continuous_thought_forward(config, initial, args.thoughts, transform_type=args.transform)
    if not result.ok:
        print(result.error)
    plot_trajectory(result, Path(args.out), f"{args.transform}: {args.prompt[:40]}")


if __name__ == "__main__":
    main()
