#!/usr/bin/env python3
"""
Coconut Continuous Reasoning Runner
===================================
Runs text prompts through the latent reasoner and reports the trace.

Pipeline per prompt:
- tokenize (hash words, or a saved BPE tokenizer)
- average embeddings into the initial hidden state
- continuous thought loop with the chosen transform
- project to logits, decode the top-k tokens
- optionally annotate the trajectory against a thought hierarchy

Results are written as JSON next to the logs.
"""

import argparse
import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path

import numpy as np
from tqdm import tqdm

from coconut.coconut_batch import latent_states_from_result, route_initial_messages
from coconut.coconut_hierarchy import MessageRouter, plan_hierarchy
from coconut.coconut_model import LatentReasoner
from coconut.coconut_options import (
    ReasoningOptions, scaled_convergence_threshold, select_transform_type,
)
from coconut.coconut_text import BPETokenizer, HashTokenizer, describe_conclusion, top_k_tokens

# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(log_dir: Path, log_name: str = "reasoning"):
    """Setup logging to both file and console."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{log_name}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    formatter = logging.Formatter(
        '%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    logger = logging.getLogger('coconut')
    logger.setLevel(logging.DEBUG)
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    # One line per prompt, for tail -f
    progress_path = log_dir / "progress.log"
    progress_handler = logging.FileHandler(progress_path, mode='w')
    progress_handler.setLevel(logging.INFO)
    progress_handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s', datefmt='%H:%M:%S'))

    progress_logger = logging.getLogger('progress')
    progress_logger.setLevel(logging.INFO)
    progress_logger.addHandler(progress_handler)

    return logger, progress_logger, log_path, progress_path

# =============================================================================
# CONFIGURATION
# =============================================================================

class Config:
    # Model
    MODEL_DIM = 64
    NUM_HEADS = 4
    NUM_LAYERS = 2
    INTERMEDIATE_DIM = 256
    VOCAB_SIZE = 5000
    PRECISION = 'float32'
    SEED = 42

    # Reasoning
    NUM_THOUGHTS = 16
    TRANSFORM = None             # None: derived from hierarchy settings
    ACTIVATION = 'gelu'
    MAX_STEPS = 1000
    TIMEOUT = 300.0
    SCALING_MODE = 'adaptive'
    MESSAGE_PASSING = False
    RECURSIVE_DEPTH = 0
    TOP_K = 10

    # Paths
    SCRIPT_DIR = Path(__file__).parent
    OUTPUT_DIR = SCRIPT_DIR / "outputs"
    LOG_DIR = SCRIPT_DIR / "logs"

# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def format_time(seconds):
    """Format seconds into human readable string."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        return f"{seconds/60:.1f}m"


def load_prompts(args) -> list:
    prompts = list(args.prompt or [])
    if args.prompt_file:
        with open(args.prompt_file, 'r', encoding='utf-8') as f:
            prompts += [line.strip() for line in f if line.strip()]
    return prompts


def build_options() -> ReasoningOptions:
    transform = Config.TRANSFORM or select_transform_type(
        recursive_depth=Config.RECURSIVE_DEPTH,
        message_passing=Config.MESSAGE_PASSING,
        latent_state_count=Config.NUM_THOUGHTS,
    )
    return ReasoningOptions(
        transform_type=transform,
        activation=Config.ACTIVATION,
        convergence_threshold=scaled_convergence_threshold(Config.NUM_THOUGHTS, Config.SCALING_MODE),
        max_computation_steps=Config.MAX_STEPS,
        timeout=Config.TIMEOUT,
    )


def reason_one(reasoner, hierarchy, options, prompt, tokenizer):
    tokens = tokenizer.encode(prompt)
    start = time.time()
    logits, result = reasoner.reason_tokens(tokens, Config.NUM_THOUGHTS, options)
    elapsed = time.time() - start

    record = {
        'prompt': prompt,
        'tokens': len(tokens),
        'termination': result.termination,
        'error': result.error,
        'elapsed': elapsed,
        'convergence_metrics': result.convergence_metrics,
        'reasoning_trace': result.reasoning_trace,
    }
    if logits is not None:
        record['top_tokens'] = top_k_tokens(logits, Config.TOP_K)
        record['conclusion'] = describe_conclusion(tokenizer, logits, tokens, Config.TOP_K)

    states = latent_states_from_result(hierarchy, result)
    record['latent_states'] = [
        {
            'position': s.position,
            'metadata': s.metadata,
            'messages': len(s.messages),
            'coherence': s.superposition_state.coherence_level,
        }
        for s in states
    ]
    if hierarchy.channels is not None:
        router = MessageRouter(hierarchy)
        record['message_routing'] = route_initial_messages(router, states)
    return record


def main():
    parser = argparse.ArgumentParser(description="Run continuous latent reasoning on prompts")
    parser.add_argument('--prompt', action='append', help='Prompt text (repeatable)')
    parser.add_argument('--prompt-file', type=str, default=None, help='One prompt per line')
    parser.add_argument('--tokenizer', type=str, default=None, help='Saved BPE tokenizer JSON')
    parser.add_argument('--thoughts', type=int, default=Config.NUM_THOUGHTS)
    parser.add_argument('--transform', choices=['standard', 'hierarchical', 'superposition', 'recursive'],
                        default=Config.TRANSFORM)
    parser.add_argument('--activation', choices=['relu', 'gelu', 'swish'], default=Config.ACTIVATION)
    parser.add_argument('--scaling-mode', choices=['linear', 'exponential', 'adaptive'],
                        default=Config.SCALING_MODE)
    parser.add_argument('--message-passing', action='store_true')
    parser.add_argument('--recursive-depth', type=int, default=Config.RECURSIVE_DEPTH)
    parser.add_argument('--model-dim', type=int, default=Config.MODEL_DIM)
    parser.add_argument('--heads', type=int, default=Config.NUM_HEADS)
    parser.add_argument('--layers', type=int, default=Config.NUM_LAYERS)
    parser.add_argument('--precision', choices=['float32', 'float64'], default=Config.PRECISION)
    parser.add_argument('--seed', type=int, default=Config.SEED)
    parser.add_argument('--max-steps', type=int, default=Config.MAX_STEPS)
    parser.add_argument('--timeout', type=float, default=Config.TIMEOUT, help='Seconds per prompt')
    args = parser.parse_args()

    # Update config
    Config.NUM_THOUGHTS = args.thoughts
    Config.TRANSFORM = args.transform
    Config.ACTIVATION = args.activation
    Config.SCALING_MODE = args.scaling_mode
    Config.MESSAGE_PASSING = args.message_passing
    Config.RECURSIVE_DEPTH = args.recursive_depth
    Config.MODEL_DIM = args.model_dim
    Config.NUM_HEADS = args.heads
    Config.NUM_LAYERS = args.layers
    Config.PRECISION = args.precision
    Config.SEED = args.seed
    Config.MAX_STEPS = args.max_steps
    Config.TIMEOUT = args.timeout

    Config.OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    logger, progress_logger, log_path, progress_path = setup_logging(Config.LOG_DIR)

    logger.info("="*70)
    logger.info("COCONUT CONTINUOUS REASONING")
    logger.info("="*70)
    logger.info(f"Log file: {log_path}")
    logger.info(f"Progress file: {progress_path}")

    prompts = load_prompts(args)
    if not prompts:
        logger.error("No prompts given (use --prompt or --prompt-file)")
        return

    if args.tokenizer:
        tokenizer = BPETokenizer.from_file(args.tokenizer)
        Config.VOCAB_SIZE = tokenizer.actual_vocab_size
    else:
        tokenizer = HashTokenizer(vocab_size=Config.VOCAB_SIZE)
    logger.info(f"Tokenizer: {type(tokenizer).__name__} (vocab {Config.VOCAB_SIZE:,})")

    reasoner = LatentReasoner(
        tokenizer=tokenizer,
        model_dim=Config.MODEL_DIM,
        num_heads=Config.NUM_HEADS,
        num_layers=Config.NUM_LAYERS,
        intermediate_dim=Config.MODEL_DIM * 4,
        vocab_size=Config.VOCAB_SIZE,
        precision=Config.PRECISION,
        seed=Config.SEED,
    )
    hierarchy = plan_hierarchy(
        Config.NUM_THOUGHTS,
        Config.SCALING_MODE,
        message_passing=Config.MESSAGE_PASSING,
        recursive_depth=Config.RECURSIVE_DEPTH,
    )
    options = build_options()
    logger.info(f"Transform: {options.transform_type} | threshold: {options.convergence_threshold:.4f}")

    records = []
    for i, prompt in enumerate(tqdm(prompts, desc="Reasoning")):
        record = reason_one(reasoner, hierarchy, options, prompt, tokenizer)
        records.append(record)
        progress_logger.info(
            f"[{i + 1}/{len(prompts)}] {record['termination']} | "
            f"{record['reasoning_trace']['total_thoughts']} thoughts | {format_time(record['elapsed'])}"
        )
        if record['error']:
            logger.warning(f"Prompt {i + 1} failed: {record['error']}")

    stats = reasoner.get_stats()
    logger.info("-"*70)
    for key, value in stats.items():
        logger.info(f"{key}: {value}")

    out_path = Config.OUTPUT_DIR / f"reasoning_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
    with open(out_path, 'w') as f:
        json.dump({'stats': stats, 'results': records}, f, indent=2, default=_json_default)
    logger.info(f"Results saved to {out_path}")


def _json_default(obj):
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    raise TypeError(f"Not JSON serializable: {type(obj).__name__}")


if __name__ == "__main__":
    main()
