"""
Coconut Latent Forward Step
============================
One refinement of a hidden state vector:

    routing_probs = softmax(R · h)
    projected     = activation(C · h)
    normalized    = LayerNorm₀(h + projected)
    h'            = transform(normalized, routing_probs)

Transforms:
- standard:      pre-norm transformer blocks over every layer
- hierarchical:  exploration / analysis / synthesis projection picked by routing confidence
- superposition: split into contiguous chunks, annotate, collapse back to full width
- recursive:     depth-indexed meta-reasoning projections, at most 2 deep
"""

import math
import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .coconut_config import ModelConfig, TransformerLayer
from .coconut_core import (
    ANALYSIS_THRESHOLD, SYNTHESIS_THRESHOLD, add, apply_activation, as_vector, dot, gelu,
    layer_normalize, matvec, norm, sigmoid, softmax,
)
from .coconut_errors import DimensionMismatch
from .coconut_options import ReasoningOptions


# =============================================================================
# RECORDS
# =============================================================================

@dataclass(frozen=True, eq=False)
class RoutingDecision:
    routing_probabilities: np.ndarray
    selected_path: Tuple[float, int]  # (probability, index) of the most likely path
    latent_norm: float
    activation_stats: Dict[str, float]


@dataclass(frozen=True, eq=False)
class AttentionPattern:
    attention_score: float
    attention_probability: float
    attended_value: np.ndarray  # model_dim wide
    query_norm: float
    key_norm: float
    value_norm: float


@dataclass(frozen=True, eq=False)
class SuperpositionComponent:
    state_vector: np.ndarray  # contiguous chunk of the hidden vector
    probability_amplitude: float
    quantum_phase: float
    collapse_probability: float
    component_id: int
    offset: int  # start index of the chunk in the hidden vector


@dataclass(frozen=True, eq=False)
class SuperpositionState:
    components: Tuple[SuperpositionComponent, ...]
    amplitudes: np.ndarray  # unit L2 norm
    coherence_level: float
    entanglement_map: Dict[int, List[int]]
    phase_information: Dict[int, Dict[int, Dict[str, float]]]


# =============================================================================
# FORWARD STEP
# =============================================================================

def _activation_stats(vector: np.ndarray) -> Dict[str, float]:
    if vector.size == 0:
        return {'mean': 0.0, 'std': 0.0, 'min': 0.0, 'max': 0.0, 'sparsity': 0.0}
    return {
        'mean': float(np.mean(vector)),
        'std': float(np.std(vector)),
        'min': float(np.min(vector)),
        'max': float(np.max(vector)),
        'sparsity': float(np.mean(vector <= 0.0)),
    }


def latent_forward_step(config: ModelConfig, hidden: np.ndarray,
                        options: ReasoningOptions) -> Tuple[np.ndarray, RoutingDecision]:
    """
    Refine one hidden state.

    Args:
        config: Model weights
        hidden: Current hidden state of length model_dim
        options: Activation and transform selection

    Returns:
        Tuple of (new hidden state, routing decision)
    """
    hidden = as_vector(hidden).astype(config.dtype, copy=False)
    if hidden.shape[0] != config.model_dim:
        raise DimensionMismatch(config.model_dim, hidden.shape[0], "hidden state")

    # Step 1: Routing distribution over latent paths
    routing_probs = softmax(matvec(config.latent_routing_weights, hidden))

    # Step 2: Continuous thought projection + activation
    activated = apply_activation(matvec(config.continuous_thought_weights, hidden), options.activation)

    # Step 3: Residual + layer norm (layer 0, first norm block)
    ln = config.layers[0].layer_norm1
    normalized = layer_normalize(add(hidden, activated), ln.weight, ln.bias)

    # Step 4: Transform
    final = dispatch_transform(config, normalized, routing_probs, options)
    final = final.astype(config.dtype, copy=False)

    best = int(np.argmax(routing_probs))
    decision = RoutingDecision(
        routing_probabilities=routing_probs,
        selected_path=(float(routing_probs[best]), best),
        latent_norm=norm(final),
        activation_stats=_activation_stats(activated),
    )
    return final, decision


def compute_attention_pattern(config: ModelConfig, previous: np.ndarray,
                              current: np.ndarray) -> AttentionPattern:
    """
    Single-head attention between consecutive hidden states (layer 0, head 0).

    The score is gated with a logistic sigmoid rather than a softmax, and the
    gated head value is mapped back to model width by the head's output matrix.
    """
    head = config.layers[0].heads[0]
    query = matvec(head.query_weights, current)
    key = matvec(head.key_weights, previous)
    value = matvec(head.value_weights, previous)

    score = dot(query, key) / math.sqrt(config.model_dim)
    probability = sigmoid(score)
    attended = matvec(head.output_weights, value * probability)

    return AttentionPattern(
        attention_score=score,
        attention_probability=probability,
        attended_value=attended.astype(config.dtype, copy=False),
        query_norm=norm(query),
        key_norm=norm(key),
        value_norm=norm(value),
    )


def dispatch_transform(config: ModelConfig, hidden: np.ndarray, routing_probs: np.ndarray,
                       options: ReasoningOptions) -> np.ndarray:
    transform = options.transform_type
    if transform == 'standard':
        return standard_transform(config, hidden)
    if transform == 'hierarchical':
        return hierarchical_transform(config, hidden, routing_probs)
    if transform == 'superposition':
        state = build_superposition_state(hidden, options.superposition_components)
        return collapse_superposition(state, hidden.shape[0], options.collapse_strategy)
    if transform == 'recursive':
        return recursive_transform(config, hidden, options.effective_max_recursion)
    raise ValueError(f"Unknown transform type: {transform!r}")


# =============================================================================
# STANDARD
# =============================================================================

def _self_attention(layer: TransformerLayer, x: np.ndarray) -> np.ndarray:
    # A single position attends only to itself: softmax weight 1, so each
    # head reduces to its value path.
    mixed = sum(matvec(head.output_weights, matvec(head.value_weights, x)) for head in layer.heads)
    return matvec(layer.output_projection, mixed)


def _feedforward(layer: TransformerLayer, x: np.ndarray) -> np.ndarray:
    ff = layer.feedforward
    return matvec(ff.w2, gelu(matvec(ff.w1, x) + ff.bias1)) + ff.bias2


def standard_transform(config: ModelConfig, hidden: np.ndarray) -> np.ndarray:
    """Pre-norm transformer blocks over all layers; residual adds inside each block."""
    x = hidden
    for layer in config.layers:
        ln1, ln2 = layer.layer_norm1, layer.layer_norm2
        x = add(x, _self_attention(layer, layer_normalize(x, ln1.weight, ln1.bias)))
        x = add(x, _feedforward(layer, layer_normalize(x, ln2.weight, ln2.bias)))
    return x


# =============================================================================
# HIERARCHICAL
# =============================================================================

def classify_hierarchy_level(routing_probs: np.ndarray) -> str:
    """Map routing confidence to a reasoning stage."""
    if len(routing_probs) == 0:
        return 'exploration'
    max_prob = float(np.max(routing_probs))
    if max_prob > SYNTHESIS_THRESHOLD:
        return 'synthesis'
    if max_prob > ANALYSIS_THRESHOLD:
        return 'analysis'
    return 'exploration'


def hierarchical_transform(config: ModelConfig, hidden: np.ndarray,
                           routing_probs: np.ndarray) -> np.ndarray:
    level = classify_hierarchy_level(routing_probs)
    projected = matvec(config.strategy_weights[level], hidden)
    if level == 'synthesis':
        # compression
        ln = config.synthesis_norm
        projected = layer_normalize(projected, ln.weight, ln.bias)
    return projected


# =============================================================================
# SUPERPOSITION
# =============================================================================

def _normalize_amplitudes(amplitudes: np.ndarray) -> np.ndarray:
    total = np.sqrt(np.sum(np.square(amplitudes)))
    if total > 0:
        return amplitudes / total
    return np.full_like(amplitudes, 1.0 / np.sqrt(len(amplitudes)))


def _phase_relationships(components, amplitudes) -> Tuple[Dict, Dict]:
    phase_info: Dict[int, Dict[int, Dict[str, float]]] = {}
    entanglement: Dict[int, List[int]] = {}
    n = len(components)
    for i in range(n):
        phase_info[i] = {}
        for j in range(n):
            if i == j:
                continue
            delta = abs(components[i].quantum_phase - components[j].quantum_phase)
            alignment = (1.0 + math.cos(delta)) / 2.0
            a_i, a_j = float(amplitudes[i]), float(amplitudes[j])
            similarity = min(a_i, a_j) / max(a_i, a_j) if max(a_i, a_j) > 0 else 1.0
            coherence = (alignment + similarity) / 2.0
            if j > i:
                phase_info[i][j] = {
                    'phase_difference': delta,
                    'interference': a_i * a_j * alignment,
                    'constructive': math.cos(delta) > 0,
                    'coherence': coherence,
                }
            if coherence > 0.7 and math.cos(delta) > 0:
                entanglement.setdefault(i, []).append(j)
    return phase_info, entanglement


def build_superposition_state(hidden: np.ndarray, num_components: int = 5) -> SuperpositionState:
    """
    Decompose a hidden vector into contiguous chunks.

    Each chunk gets amplitude ‖chunk‖/10, phase atan2(Σchunk, len(chunk)) and
    collapse probability min(1, 0.1·‖chunk‖). Amplitudes are then scaled to
    unit L2 norm (uniform when the vector is all zeros).
    """
    hidden = as_vector(hidden)
    if hidden.size == 0:
        raise DimensionMismatch("non-empty", 0, "superposition input")
    k = max(1, min(num_components, hidden.shape[0]))

    components = []
    offset = 0
    for idx, chunk in enumerate(np.array_split(hidden, k)):
        chunk_norm = norm(chunk)
        components.append(SuperpositionComponent(
            state_vector=chunk.copy(),
            probability_amplitude=chunk_norm / 10.0,
            quantum_phase=math.atan2(float(np.sum(chunk)), len(chunk)),
            collapse_probability=min(1.0, chunk_norm * 0.1),
            component_id=idx,
            offset=offset,
        ))
        offset += len(chunk)

    amplitudes = _normalize_amplitudes(np.array([c.probability_amplitude for c in components]))
    variance = float(np.var(hidden))
    phase_info, entanglement = _phase_relationships(components, amplitudes)

    return SuperpositionState(
        components=tuple(components),
        amplitudes=amplitudes,
        coherence_level=1.0 / (1.0 + variance),
        entanglement_map=entanglement,
        phase_information=phase_info,
    )


def collapse_superposition(state: SuperpositionState, width: int,
                           strategy: str = 'max_amplitude') -> np.ndarray:
    """
    Collapse to a single full-width vector.

    max_amplitude: dominant chunk kept at its offset, zeros elsewhere.
    weighted:      every chunk scaled by k·amplitude².
    """
    dtype = state.components[0].state_vector.dtype
    collapsed = np.zeros(width, dtype=dtype)
    if strategy == 'max_amplitude':
        dominant = state.components[int(np.argmax(state.amplitudes))]
        end = dominant.offset + len(dominant.state_vector)
        collapsed[dominant.offset:end] = dominant.state_vector
    elif strategy == 'weighted':
        k = len(state.components)
        for component, amplitude in zip(state.components, state.amplitudes):
            end = component.offset + len(component.state_vector)
            collapsed[component.offset:end] = component.state_vector * (k * amplitude ** 2)
    else:
        raise ValueError(f"Unknown collapse strategy: {strategy!r}")
    return collapsed


# =============================================================================
# RECURSIVE
# =============================================================================

def recursive_transform(config: ModelConfig, hidden: np.ndarray, max_recursion: int,
                        depth: int = 0) -> np.ndarray:
    """Apply meta-reasoning projections for depths [depth, min(max_recursion, 2))."""
    max_recursion = min(max_recursion, len(config.meta_reasoning_weights))
    if depth >= max_recursion:
        return hidden
    meta_state = matvec(config.meta_reasoning_weights[depth], hidden)
    return recursive_transform(config, meta_state, max_recursion, depth + 1)
