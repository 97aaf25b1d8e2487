"""
Coconut: Continuous Latent Reasoning
=====================================
Core numeric primitives for the latent transformer.

Every hidden state is a 1-D float vector of length model_dim, and every
operation here is pure: inputs are never modified, outputs are fresh arrays.

Key Constants:
- Layer-norm epsilon: 1e-5 (added to the population variance)
- GELU tanh approximation coefficient: 0.044715
- Weight init std for normal tensors: 0.02
"""

import math
import numpy as np
from typing import Callable, Dict

from .coconut_errors import DimensionMismatch


# =============================================================================
# CONSTANTS
# =============================================================================

LAYER_NORM_EPS = 1e-5
GELU_COEFF = 0.044715
SQRT_2_OVER_PI = math.sqrt(2.0 / math.pi)
NORMAL_INIT_STD = 0.02

# Hierarchical transform thresholds on max(routing_probs)
SYNTHESIS_THRESHOLD = 0.7
ANALYSIS_THRESHOLD = 0.4

# Recursive transform depth cap
MAX_META_DEPTH = 2

DTYPES = {
    'float32': np.float32,
    'float64': np.float64,
}


# =============================================================================
# VECTOR OPERATIONS
# =============================================================================

def as_vector(values, dtype=None) -> np.ndarray:
    """Coerce a sequence of floats to a 1-D array."""
    vec = np.asarray(values, dtype=dtype)
    if vec.dtype.kind != 'f':
        vec = vec.astype(float)
    if vec.ndim != 1:
        raise DimensionMismatch("1-D", f"{vec.ndim}-D", "vector rank")
    return vec


def _check_same_length(a: np.ndarray, b: np.ndarray, what: str = "vector"):
    if a.shape != b.shape:
        raise DimensionMismatch(a.shape[0], b.shape[0], what)


def dot(a: np.ndarray, b: np.ndarray) -> float:
    """Dot product of two equal-length vectors."""
    a, b = as_vector(a), as_vector(b)
    _check_same_length(a, b)
    return float(a @ b)


def matvec(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """
    Multiply a (rows, cols) matrix by a length-cols vector.

    Returns:
        Vector of length rows
    """
    vector = as_vector(vector, dtype=matrix.dtype)
    if matrix.ndim != 2 or matrix.shape[1] != vector.shape[0]:
        raise DimensionMismatch(matrix.shape[-1], vector.shape[0], "matrix-vector")
    return matrix @ vector


def add(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    a, b = as_vector(a), as_vector(b)
    _check_same_length(a, b)
    return a + b


def norm(vector: np.ndarray) -> float:
    """Euclidean (L2) norm."""
    return float(np.sqrt(np.sum(np.square(as_vector(vector)))))


def softmax(logits: np.ndarray) -> np.ndarray:
    """
    Numerically stable softmax.

    The maximum is subtracted before exponentiating, so the result is
    invariant under adding a constant to every logit.
    """
    logits = as_vector(logits)
    if logits.size == 0:
        return logits
    exp_logits = np.exp(logits - np.max(logits))
    return exp_logits / np.sum(exp_logits)


def sigmoid(x):
    """Logistic function, stable for large |x|."""
    x = np.asarray(x, dtype=float)
    out = np.empty_like(x)
    pos = x >= 0
    out[pos] = 1.0 / (1.0 + np.exp(-x[pos]))
    exp_x = np.exp(x[~pos])
    out[~pos] = exp_x / (1.0 + exp_x)
    return out if out.ndim else float(out)


# =============================================================================
# ACTIVATIONS
# =============================================================================

def relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(0.0, x)


def gelu(x: np.ndarray) -> np.ndarray:
    """GELU, tanh approximation: 0.5·x·(1 + tanh(√(2/π)·(x + 0.044715·x³)))"""
    return 0.5 * x * (1.0 + np.tanh(SQRT_2_OVER_PI * (x + GELU_COEFF * np.power(x, 3))))


def swish(x: np.ndarray) -> np.ndarray:
    """x · sigmoid(x)"""
    return x * sigmoid(x)


ACTIVATIONS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    'relu': relu,
    'gelu': gelu,
    'swish': swish,
}


def apply_activation(vector: np.ndarray, activation: str) -> np.ndarray:
    fn = ACTIVATIONS.get(activation)
    if fn is None:
        raise ValueError(f"Unknown activation: {activation!r}")
    return fn(as_vector(vector)).astype(np.asarray(vector).dtype, copy=False)


# =============================================================================
# LAYER NORMALIZATION
# =============================================================================

def layer_normalize(vector: np.ndarray, weight: np.ndarray, bias: np.ndarray) -> np.ndarray:
    """
    Normalize a vector to zero mean and unit variance, then apply an affine map.

    Uses the population variance (divide by len(v)) with eps = 1e-5 added
    before the square root.

    Args:
        vector: Input of shape (d,)
        weight: Per-element scale of shape (d,)
        bias: Per-element shift of shape (d,)

    Returns:
        (v - mean) / std * weight + bias
    """
    vector = as_vector(vector)
    weight = as_vector(weight)
    bias = as_vector(bias)
    _check_same_length(vector, weight, "layer-norm weight")
    _check_same_length(vector, bias, "layer-norm bias")

    mean = np.mean(vector)
    variance = np.mean(np.square(vector - mean))
    std = np.sqrt(variance + LAYER_NORM_EPS)
    return (vector - mean) / std * weight + bias


def freeze(array: np.ndarray) -> np.ndarray:
    """Mark an array read-only and return it."""
    array.setflags(write=False)
    return array
