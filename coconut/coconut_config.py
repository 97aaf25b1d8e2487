"""
Coconut Model Configuration
============================
Dimensions plus every weight tensor of the latent transformer, built once by
deterministic initialization and read-only afterwards.

Initialization schemes:
- normal:  N(0, 0.02²)                         (embeddings, output projection)
- xavier:  U(-√(6/(fan_in+fan_out)), +limit)   (attention, feed-forward, latent)
- zeros / ones                                 (biases, layer-norm params)

A ModelConfig holds no mutable state, so one instance can be shared by any
number of concurrent reasoning requests without locking.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .coconut_core import DTYPES, MAX_META_DEPTH, NORMAL_INIT_STD, as_vector, freeze
from .coconut_errors import DimensionMismatch, InvalidSchemaConfig

logger = logging.getLogger('coconut')

DEVICES = ('cpu', 'cuda')
HIERARCHY_STRATEGIES = ('exploration', 'analysis', 'synthesis')


# =============================================================================
# WEIGHT INITIALIZATION
# =============================================================================

def init_matrix(rng: np.random.Generator, rows: int, cols: int, scheme: str,
                dtype=np.float32) -> np.ndarray:
    """
    Initialize a (rows, cols) matrix.

    Args:
        rng: Seeded random generator (never the global numpy state)
        rows, cols: Shape; for xavier they are the fan-out and fan-in
        scheme: 'normal', 'xavier', 'zeros' or 'ones'
    """
    if scheme == 'normal':
        values = rng.normal(0.0, NORMAL_INIT_STD, size=(rows, cols))
    elif scheme == 'xavier':
        limit = np.sqrt(6.0 / (rows + cols))
        values = rng.uniform(-limit, limit, size=(rows, cols))
    elif scheme == 'zeros':
        values = np.zeros((rows, cols))
    elif scheme == 'ones':
        values = np.ones((rows, cols))
    else:
        raise InvalidSchemaConfig(f"Unknown init scheme: {scheme!r}")
    return freeze(values.astype(dtype))


def init_vector(rng: np.random.Generator, size: int, scheme: str, dtype=np.float32) -> np.ndarray:
    return freeze(init_matrix(rng, 1, size, scheme, dtype)[0].copy())


# =============================================================================
# WEIGHT CONTAINERS
# =============================================================================

@dataclass(frozen=True, eq=False)
class LayerNormParams:
    weight: np.ndarray  # (model_dim,)
    bias: np.ndarray    # (model_dim,)


@dataclass(frozen=True, eq=False)
class AttentionHead:
    """One head: query/key/value are (head_dim, model_dim), output is (model_dim, head_dim)."""
    query_weights: np.ndarray
    key_weights: np.ndarray
    value_weights: np.ndarray
    output_weights: np.ndarray


@dataclass(frozen=True, eq=False)
class FeedForward:
    w1: np.ndarray      # (intermediate_dim, model_dim)
    w2: np.ndarray      # (model_dim, intermediate_dim)
    bias1: np.ndarray   # (intermediate_dim,)
    bias2: np.ndarray   # (model_dim,)


@dataclass(frozen=True, eq=False)
class TransformerLayer:
    heads: Tuple[AttentionHead, ...]
    output_projection: np.ndarray  # (model_dim, model_dim)
    feedforward: FeedForward
    layer_norm1: LayerNormParams
    layer_norm2: LayerNormParams


@dataclass(frozen=True, eq=False)
class ModelConfig:
    """Dimensions and weights of the latent transformer. Never mutated."""
    model_dim: int
    num_heads: int
    num_layers: int
    intermediate_dim: int
    vocab_size: int
    max_sequence_length: int
    device: str
    precision: str
    seed: Optional[int]

    embedding_matrix: np.ndarray          # (vocab_size, model_dim)
    layers: Tuple[TransformerLayer, ...]
    output_projection: np.ndarray         # (model_dim, vocab_size)
    latent_routing_weights: np.ndarray    # (model_dim, model_dim)
    continuous_thought_weights: np.ndarray  # (model_dim, model_dim)

    # Per-transform parameters
    strategy_weights: Dict[str, np.ndarray]   # exploration / analysis / synthesis
    synthesis_norm: LayerNormParams
    meta_reasoning_weights: Tuple[np.ndarray, ...]  # one per recursion depth

    @property
    def head_dim(self) -> int:
        return self.model_dim // self.num_heads

    @property
    def dtype(self):
        return DTYPES[self.precision]

    def parameter_count(self) -> int:
        """Total number of scalar weights."""
        tensors: List[np.ndarray] = [
            self.embedding_matrix, self.output_projection,
            self.latent_routing_weights, self.continuous_thought_weights,
            self.synthesis_norm.weight, self.synthesis_norm.bias,
            *self.strategy_weights.values(), *self.meta_reasoning_weights,
        ]
        for layer in self.layers:
            for head in layer.heads:
                tensors += [head.query_weights, head.key_weights,
                            head.value_weights, head.output_weights]
            ff = layer.feedforward
            tensors += [layer.output_projection, ff.w1, ff.w2, ff.bias1, ff.bias2,
                        layer.layer_norm1.weight, layer.layer_norm1.bias,
                        layer.layer_norm2.weight, layer.layer_norm2.bias]
        return sum(t.size for t in tensors)


# =============================================================================
# CONSTRUCTION
# =============================================================================

def _validate_dims(model_dim, num_heads, num_layers, intermediate_dim, vocab_size,
                   max_sequence_length, device, precision):
    dims = {
        'model_dim': model_dim, 'num_heads': num_heads, 'num_layers': num_layers,
        'intermediate_dim': intermediate_dim, 'vocab_size': vocab_size,
        'max_sequence_length': max_sequence_length,
    }
    for name, value in dims.items():
        if not isinstance(value, (int, np.integer)) or isinstance(value, bool) or value < 1:
            raise InvalidSchemaConfig(f"{name} must be a positive integer, got {value!r}")
    if model_dim % num_heads != 0:
        raise InvalidSchemaConfig(
            f"model_dim ({model_dim}) must be divisible by num_heads ({num_heads})"
        )
    if precision not in DTYPES:
        raise InvalidSchemaConfig(f"precision must be one of {sorted(DTYPES)}, got {precision!r}")
    if device not in DEVICES:
        raise InvalidSchemaConfig(f"device must be one of {DEVICES}, got {device!r}")


def _layer_norm(rng, dim, dtype) -> LayerNormParams:
    return LayerNormParams(
        weight=init_vector(rng, dim, 'ones', dtype),
        bias=init_vector(rng, dim, 'zeros', dtype),
    )


def _init_layer(rng, model_dim, num_heads, intermediate_dim, dtype) -> TransformerLayer:
    head_dim = model_dim // num_heads
    heads = tuple(
        AttentionHead(
            query_weights=init_matrix(rng, head_dim, model_dim, 'xavier', dtype),
            key_weights=init_matrix(rng, head_dim, model_dim, 'xavier', dtype),
            value_weights=init_matrix(rng, head_dim, model_dim, 'xavier', dtype),
            output_weights=init_matrix(rng, model_dim, head_dim, 'xavier', dtype),
        )
        for _ in range(num_heads)
    )
    feedforward = FeedForward(
        w1=init_matrix(rng, intermediate_dim, model_dim, 'xavier', dtype),
        w2=init_matrix(rng, model_dim, intermediate_dim, 'xavier', dtype),
        bias1=init_vector(rng, intermediate_dim, 'zeros', dtype),
        bias2=init_vector(rng, model_dim, 'zeros', dtype),
    )
    return TransformerLayer(
        heads=heads,
        output_projection=init_matrix(rng, model_dim, model_dim, 'xavier', dtype),
        feedforward=feedforward,
        layer_norm1=_layer_norm(rng, model_dim, dtype),
        layer_norm2=_layer_norm(rng, model_dim, dtype),
    )


def build_config(
    model_dim: int = 768,
    num_heads: int = 12,
    num_layers: int = 12,
    intermediate_dim: int = 3072,
    vocab_size: int = 50257,
    max_sequence_length: int = 2048,
    device: str = 'cpu',
    precision: str = 'float32',
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
) -> ModelConfig:
    """
    Build a ModelConfig with freshly initialized weights.

    Deterministic for a given seed (or generator state); no other side effects.

    Args:
        model_dim: Hidden state width
        num_heads: Attention heads per layer (must divide model_dim)
        num_layers: Transformer layers
        intermediate_dim: Feed-forward hidden width
        vocab_size: Embedding rows and logit width
        device: 'cpu' or 'cuda' (used by the torch engine only)
        precision: 'float32' or 'float64'
        seed: Seed for a new numpy Generator
        rng: Explicit generator; takes precedence over seed

    Returns:
        Read-only ModelConfig
    """
    _validate_dims(model_dim, num_heads, num_layers, intermediate_dim, vocab_size,
                   max_sequence_length, device, precision)
    rng = rng if rng is not None else np.random.default_rng(seed)
    dtype = DTYPES[precision]

    embedding_matrix = init_matrix(rng, vocab_size, model_dim, 'normal', dtype)
    layers = tuple(
        _init_layer(rng, model_dim, num_heads, intermediate_dim, dtype)
        for _ in range(num_layers)
    )
    output_projection = init_matrix(rng, model_dim, vocab_size, 'normal', dtype)
    latent_routing_weights = init_matrix(rng, model_dim, model_dim, 'xavier', dtype)
    continuous_thought_weights = init_matrix(rng, model_dim, model_dim, 'xavier', dtype)

    strategy_weights = {
        name: init_matrix(rng, model_dim, model_dim, 'xavier', dtype)
        for name in HIERARCHY_STRATEGIES
    }
    meta_reasoning_weights = tuple(
        init_matrix(rng, model_dim, model_dim, 'xavier', dtype)
        for _ in range(MAX_META_DEPTH)
    )

    config = ModelConfig(
        model_dim=model_dim,
        num_heads=num_heads,
        num_layers=num_layers,
        intermediate_dim=intermediate_dim,
        vocab_size=vocab_size,
        max_sequence_length=max_sequence_length,
        device=device,
        precision=precision,
        seed=seed,
        embedding_matrix=embedding_matrix,
        layers=layers,
        output_projection=output_projection,
        latent_routing_weights=latent_routing_weights,
        continuous_thought_weights=continuous_thought_weights,
        strategy_weights=strategy_weights,
        synthesis_norm=_layer_norm(rng, model_dim, dtype),
        meta_reasoning_weights=meta_reasoning_weights,
    )
    logger.info(
        f"Latent transformer initialized: dim={model_dim} heads={num_heads} "
        f"layers={num_layers} vocab={vocab_size} params={config.parameter_count():,}"
    )
    return config


# =============================================================================
# TOKEN <-> HIDDEN STATE
# =============================================================================

def tokens_to_hidden_state(config: ModelConfig, tokens: Sequence[int]) -> np.ndarray:
    """
    Average the embedding rows of a token sequence into one hidden vector.

    Token ids outside [0, vocab_size) contribute a zero vector instead of
    raising. An empty sequence gives the zero vector.

    Returns:
        Read-only vector of length model_dim
    """
    embeddings = []
    for token in tokens:
        token = int(token)
        if 0 <= token < config.vocab_size:
            embeddings.append(config.embedding_matrix[token])
        else:
            embeddings.append(np.zeros(config.model_dim, dtype=config.dtype))

    if not embeddings:
        return freeze(np.zeros(config.model_dim, dtype=config.dtype))
    if len(embeddings) == 1:
        return freeze(embeddings[0].copy())
    return freeze(np.mean(np.stack(embeddings), axis=0).astype(config.dtype))


def hidden_state_to_logits(config: ModelConfig, hidden: np.ndarray) -> np.ndarray:
    """
    Project a hidden vector onto the vocabulary.

    Returns:
        Read-only logits of length vocab_size
    """
    hidden = as_vector(hidden)
    if hidden.shape[0] != config.model_dim:
        raise DimensionMismatch(config.model_dim, hidden.shape[0], "hidden state")
    return freeze((hidden.astype(config.dtype) @ config.output_projection).astype(config.dtype))
