"""
Options for a continuous thought run, plus helpers that derive them from
orchestration-level settings.
"""

import threading
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional

from .coconut_core import ACTIVATIONS
from .coconut_errors import InvalidReasoningOptions

TRANSFORM_TYPES = ('standard', 'hierarchical', 'superposition', 'recursive')
COLLAPSE_STRATEGIES = ('max_amplitude', 'weighted')
SCALING_MODES = ('linear', 'exponential', 'adaptive')

DEFAULT_CONVERGENCE_THRESHOLD = 0.01
DEFAULT_MAX_COMPUTATION_STEPS = 1000
DEFAULT_TIMEOUT_SECONDS = 300.0
PARALLEL_STREAM_STEP_LIMIT = 50


class CancellationToken:
    """Set from any thread; the loop checks it before every step."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class ReasoningOptions:
    """Knobs for continuous_thought_forward. Validated on construction."""
    transform_type: str = 'standard'
    activation: str = 'gelu'
    convergence_threshold: float = DEFAULT_CONVERGENCE_THRESHOLD
    max_computation_steps: int = DEFAULT_MAX_COMPUTATION_STEPS
    superposition_components: int = 5
    collapse_strategy: str = 'max_amplitude'
    max_recursion: int = 2
    parallel_processing: bool = False
    parallel_streams: int = 1
    timeout: Optional[float] = DEFAULT_TIMEOUT_SECONDS  # seconds; None disables
    cancel_token: Optional[CancellationToken] = None

    def __post_init__(self):
        if self.transform_type not in TRANSFORM_TYPES:
            raise InvalidReasoningOptions(
                f"transform_type must be one of {TRANSFORM_TYPES}, got {self.transform_type!r}"
            )
        if self.activation not in ACTIVATIONS:
            raise InvalidReasoningOptions(
                f"activation must be one of {tuple(ACTIVATIONS)}, got {self.activation!r}"
            )
        if self.collapse_strategy not in COLLAPSE_STRATEGIES:
            raise InvalidReasoningOptions(
                f"collapse_strategy must be one of {COLLAPSE_STRATEGIES}, got {self.collapse_strategy!r}"
            )
        if self.superposition_components < 1:
            raise InvalidReasoningOptions("superposition_components must be at least 1")
        if self.max_computation_steps < 0:
            raise InvalidReasoningOptions("max_computation_steps must be non-negative")
        if self.parallel_streams < 1:
            raise InvalidReasoningOptions("parallel_streams must be at least 1")
        if self.timeout is not None and self.timeout <= 0:
            raise InvalidReasoningOptions("timeout must be positive or None")

    @property
    def effective_max_recursion(self) -> int:
        """max_recursion clamped to [0, 2]."""
        return max(0, min(self.max_recursion, 2))

    @classmethod
    def from_mapping(cls, opts: Optional[Mapping[str, Any]] = None, **overrides) -> "ReasoningOptions":
        """Build options from a plain dict; unknown keys are rejected."""
        merged = dict(opts or {})
        merged.update(overrides)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(merged) - known)
        if unknown:
            raise InvalidReasoningOptions(f"Unknown reasoning options: {unknown}")
        return cls(**merged)

    def with_overrides(self, **overrides) -> "ReasoningOptions":
        return replace(self, **overrides)


# =============================================================================
# DERIVATION FROM ORCHESTRATION SETTINGS
# =============================================================================

def select_transform_type(recursive_depth: int = 0, message_passing: bool = False,
                          latent_state_count: int = 0) -> str:
    """Recursive beats hierarchical beats superposition (over 100 states) beats standard."""
    if recursive_depth > 0:
        return 'recursive'
    if message_passing:
        return 'hierarchical'
    if latent_state_count > 100:
        return 'superposition'
    return 'standard'


def scaled_convergence_threshold(num_thoughts: int, scaling_mode: str = 'adaptive') -> float:
    """Tighter thresholds for larger runs and non-linear hierarchies."""
    if num_thoughts <= 64:
        scale_factor = 1.0
    elif num_thoughts <= 256:
        scale_factor = 0.8
    elif num_thoughts <= 1024:
        scale_factor = 0.6
    else:
        scale_factor = 0.4

    mode_factor = {'linear': 1.0, 'exponential': 0.8, 'adaptive': 0.9}.get(scaling_mode, 0.9)
    return DEFAULT_CONVERGENCE_THRESHOLD * scale_factor * mode_factor
