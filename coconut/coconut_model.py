"""
Coconut: Continuous Thought Loop
=================================
Drives repeated latent forward steps on a single hidden state.

    h₀ → step → h₁ → step → h₂ → ... → h_final

Termination (checked before every step, in order):
- thought budget exhausted
- max_computation_steps reached (safety valve, logged as a warning)
- cancellation token set / deadline passed
- early convergence: ‖h_new - h_prev‖ < convergence_threshold (checked after the step)

Any exception inside the loop is recovered into a ReasoningResult carrying
the error message and the partial trajectory; nothing propagates.
"""

import logging
import math
import threading
import time
import numpy as np
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from .coconut_config import ModelConfig, build_config, hidden_state_to_logits, tokens_to_hidden_state
from .coconut_core import as_vector, freeze, norm
from .coconut_errors import (
    ComputationFailed, DimensionMismatch, ReasoningCancelled, StepLimitReached, TimeoutExceeded,
)
from .coconut_options import PARALLEL_STREAM_STEP_LIMIT, ReasoningOptions
from .coconut_transforms import (
    AttentionPattern, RoutingDecision, compute_attention_pattern, latent_forward_step,
)

logger = logging.getLogger('coconut')


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True, eq=False)
class ReasoningResult:
    """Outcome of one continuous thought run. Histories are chronological."""
    final_state: np.ndarray
    thought_trajectory: List[np.ndarray]
    attention_patterns: List[AttentionPattern]
    routing_decisions: List[RoutingDecision]
    convergence_metrics: Dict[str, float]
    reasoning_trace: Dict[str, Any]
    termination: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ParallelStream:
    """Bookkeeping for an auxiliary stream; never feeds back into the carried state."""
    stream_id: int
    hidden_state: Optional[np.ndarray] = None
    sync_points: List[int] = field(default_factory=list)


@dataclass
class _Accumulator:
    current_hidden: np.ndarray
    thought_trajectory: List[np.ndarray] = field(default_factory=list)
    attention_patterns: List[AttentionPattern] = field(default_factory=list)
    routing_decisions: List[RoutingDecision] = field(default_factory=list)
    step_changes: List[float] = field(default_factory=list)
    streams: List[ParallelStream] = field(default_factory=list)


# =============================================================================
# METRICS
# =============================================================================

def _binary_entropy(p: float) -> float:
    if p <= 0.0 or p >= 1.0:
        return 0.0
    return -(p * math.log(p) + (1.0 - p) * math.log(1.0 - p))


def attention_entropy(patterns: Sequence[AttentionPattern]) -> float:
    """Mean binary entropy (nats) of the per-step attention gates."""
    if not patterns:
        return 0.0
    return float(np.mean([_binary_entropy(p.attention_probability) for p in patterns]))


def routing_diversity(decisions: Sequence[RoutingDecision]) -> float:
    """Distinct selected paths divided by the number of steps."""
    if not decisions:
        return 0.0
    return len({d.selected_path[1] for d in decisions}) / len(decisions)


def _convergence_metrics(acc: _Accumulator) -> Dict[str, float]:
    return {
        'trajectory_length': len(acc.thought_trajectory),
        'final_norm': norm(acc.current_hidden),
        'attention_entropy': attention_entropy(acc.attention_patterns),
        'routing_diversity': routing_diversity(acc.routing_decisions),
    }


def _reasoning_trace(acc: _Accumulator, termination: str) -> Dict[str, Any]:
    decisions = acc.routing_decisions
    patterns = acc.attention_patterns
    paths = Counter(d.selected_path[1] for d in decisions)

    return {
        'total_thoughts': len(acc.thought_trajectory),
        'termination': termination,
        'routing_summary': {
            'diversity': routing_diversity(decisions),
            'dominant_path': paths.most_common(1)[0][0] if paths else None,
            'mean_selected_probability': (
                float(np.mean([d.selected_path[0] for d in decisions])) if decisions else 0.0
            ),
        },
        'attention_summary': {
            'average_entropy': attention_entropy(patterns),
            'mean_probability': float(np.mean([p.attention_probability for p in patterns])) if patterns else 0.0,
            'mean_score': float(np.mean([p.attention_score for p in patterns])) if patterns else 0.0,
        },
        'convergence_analysis': {
            'converged': termination == 'converged',
            'step_changes': list(acc.step_changes),
            'final_change': acc.step_changes[-1] if acc.step_changes else None,
        },
        'parallel_streams': {
            'count': len(acc.streams),
            'sync_points': sum(len(s.sync_points) for s in acc.streams),
        },
    }


def _finish(acc: _Accumulator, termination: str, error: Optional[str] = None) -> ReasoningResult:
    return ReasoningResult(
        final_state=acc.current_hidden,
        thought_trajectory=list(acc.thought_trajectory),
        attention_patterns=list(acc.attention_patterns),
        routing_decisions=list(acc.routing_decisions),
        convergence_metrics=_convergence_metrics(acc),
        reasoning_trace=_reasoning_trace(acc, termination),
        termination=termination,
        error=error,
    )


# =============================================================================
# LOOP
# =============================================================================

def _process_parallel_streams(acc: _Accumulator, step: int):
    """Record the new carried state on every auxiliary stream."""
    for stream in acc.streams:
        stream.hidden_state = acc.current_hidden
        stream.sync_points.append(step)


def _check_interrupts(options: ReasoningOptions, deadline: Optional[float]):
    token = options.cancel_token
    if token is not None and token.cancelled:
        raise ReasoningCancelled("cancellation requested")
    if deadline is not None and time.monotonic() > deadline:
        raise TimeoutExceeded(f"exceeded timeout of {options.timeout}s")


def _run_loop(config: ModelConfig, acc: _Accumulator, num_thoughts: int,
              options: ReasoningOptions, deadline: Optional[float]) -> str:
    remaining = num_thoughts
    while True:
        if remaining <= 0:
            return 'budget_exhausted'

        steps = len(acc.thought_trajectory)
        if steps >= options.max_computation_steps:
            raise StepLimitReached(f"reached {options.max_computation_steps} computation steps")

        _check_interrupts(options, deadline)

        previous = acc.current_hidden
        try:
            new_hidden, decision = latent_forward_step(config, previous, options)
            new_hidden = freeze(new_hidden)
            pattern = compute_attention_pattern(config, previous, new_hidden)
        except Exception as e:
            raise ComputationFailed(f"step {steps + 1}: {e}") from e

        acc.current_hidden = new_hidden
        acc.thought_trajectory.append(new_hidden)
        acc.attention_patterns.append(pattern)
        acc.routing_decisions.append(decision)

        if options.parallel_processing and steps < PARALLEL_STREAM_STEP_LIMIT:
            _process_parallel_streams(acc, steps)

        change = norm(new_hidden - previous)
        acc.step_changes.append(change)
        if change < options.convergence_threshold:
            logger.debug(f"Converged after {steps + 1} thoughts (change={change:.6f})")
            return 'converged'

        remaining -= 1


def continuous_thought_forward(
    config: ModelConfig,
    initial_state: Union[np.ndarray, Sequence[float]],
    num_thoughts: int,
    options: Optional[Union[ReasoningOptions, Dict[str, Any]]] = None,
    **overrides,
) -> ReasoningResult:
    """
    Run continuous thought reasoning in latent space.

    Args:
        config: Shared, read-only model weights
        initial_state: Starting hidden state of length model_dim
        num_thoughts: Thought budget (0 returns the initial state untouched)
        options: ReasoningOptions or a plain dict of option names
        **overrides: Individual option overrides

    Returns:
        ReasoningResult; on failure result.error holds
        "Continuous reasoning failed: <message>"
    """
    if options is None or isinstance(options, dict):
        options = ReasoningOptions.from_mapping(options, **overrides)
    elif overrides:
        options = options.with_overrides(**overrides)

    acc = _Accumulator(current_hidden=np.zeros(0))
    try:
        initial = as_vector(initial_state)
        if initial.shape[0] != config.model_dim:
            raise DimensionMismatch(config.model_dim, initial.shape[0], "initial state")
        acc.current_hidden = freeze(initial.astype(config.dtype))
        if options.parallel_streams > 1:
            acc.streams = [ParallelStream(stream_id=i) for i in range(1, options.parallel_streams + 1)]

        deadline = time.monotonic() + options.timeout if options.timeout is not None else None
        termination = _run_loop(config, acc, num_thoughts, options, deadline)
        return _finish(acc, termination)

    except StepLimitReached:
        logger.warning(
            f"Reached maximum computation steps ({options.max_computation_steps}), "
            f"terminating early"
        )
        return _finish(acc, 'step_limit')
    except TimeoutExceeded as e:
        logger.warning(f"Continuous reasoning timed out after {len(acc.thought_trajectory)} thoughts")
        return _finish(acc, 'timeout', f"Continuous reasoning failed: {e}")
    except ReasoningCancelled as e:
        logger.warning(f"Continuous reasoning cancelled after {len(acc.thought_trajectory)} thoughts")
        return _finish(acc, 'cancelled', f"Continuous reasoning failed: {e}")
    except Exception as e:
        logger.error(f"Continuous reasoning failed: {e}")
        return _finish(acc, 'error', f"Continuous reasoning failed: {e}")


# =============================================================================
# LATENT REASONER
# =============================================================================

class LatentReasoner:
    """
    Tokens in, logits out, continuous thought in between.

    Owns one ModelConfig and aggregate statistics. Each call builds its own
    accumulator, so concurrent calls on one reasoner do not interfere; the
    statistics counters are updated under a lock.
    """

    def __init__(self, config: Optional[ModelConfig] = None, tokenizer=None, **config_kwargs):
        self.config = config or build_config(**config_kwargs)
        self.tokenizer = tokenizer

        # Statistics
        self.total_requests = 0
        self.total_thoughts = 0
        self.converged_count = 0
        self.failure_count = 0
        self.step_limit_count = 0
        self._stats_lock = threading.Lock()

    def reason_tokens(self, tokens: Sequence[int], num_thoughts: int,
                      options: Optional[ReasoningOptions] = None, **overrides):
        """
        Returns:
            Tuple of (logits or None on failure, ReasoningResult)
        """
        initial = tokens_to_hidden_state(self.config, tokens)
        result = continuous_thought_forward(self.config, initial, num_thoughts, options, **overrides)

        with self._stats_lock:
            self.total_requests += 1
            self.total_thoughts += len(result.thought_trajectory)
            if result.termination == 'converged':
                self.converged_count += 1
            elif result.termination == 'step_limit':
                self.step_limit_count += 1
            if not result.ok:
                self.failure_count += 1
        if not result.ok:
            return None, result

        return hidden_state_to_logits(self.config, result.final_state), result

    def reason_text(self, text: str, num_thoughts: int,
                    options: Optional[ReasoningOptions] = None, **overrides):
        if self.tokenizer is None:
            raise ValueError("LatentReasoner was built without a tokenizer")
        return self.reason_tokens(self.tokenizer.encode(text), num_thoughts, options, **overrides)

    def get_stats(self) -> Dict:
        """Aggregate statistics across calls."""
        with self._stats_lock:
            return {
                'total_requests': self.total_requests,
                'total_thoughts': self.total_thoughts,
                'mean_trajectory_length': self.total_thoughts / max(1, self.total_requests),
                'converged': self.converged_count,
                'step_limited': self.step_limit_count,
                'failures': self.failure_count,
                'convergence_rate': self.converged_count / max(1, self.total_requests),
            }


__all__ = [
    'ReasoningResult', 'ParallelStream', 'LatentReasoner', 'continuous_thought_forward',
    'attention_entropy', 'routing_diversity',
]
