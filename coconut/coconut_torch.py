"""
Coconut PyTorch Engine
=======================
Batched evaluation of the continuous thought loop.

The weights of a numpy ModelConfig are copied once into torch buffers, then
many independent hidden states advance together:

    H[B, D] → forward_step → H'[B, D] → ... (rows stop on convergence)

Per-row semantics match continuous_thought_forward: same transforms, same
convergence test, same step ceiling. Inference only; nothing here is trained.
"""

import logging
import time
import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from .coconut_config import HIERARCHY_STRATEGIES, ModelConfig
from .coconut_core import ANALYSIS_THRESHOLD, LAYER_NORM_EPS, SYNTHESIS_THRESHOLD
from .coconut_errors import DimensionMismatch
from .coconut_options import ReasoningOptions

logger = logging.getLogger('coconut')

TORCH_DTYPES = {
    'float32': torch.float32,
    'float64': torch.float64,
}


@dataclass(frozen=True, eq=False)
class BatchedReasoningResult:
    final_states: np.ndarray         # (B, D)
    steps: np.ndarray                # (B,) thoughts taken per row
    converged: np.ndarray            # (B,) bool
    trajectories: List[np.ndarray]   # per row, (steps[b], D)
    termination: str                 # budget_exhausted / converged / step_limit / cancelled / timeout


def resolve_device(requested: str) -> torch.device:
    if requested == 'cuda' and not torch.cuda.is_available():
        logger.warning("CUDA requested but unavailable, using cpu")
        return torch.device('cpu')
    return torch.device(requested)


class TorchLatentEngine(nn.Module):
    """
    Batched latent forward steps over a frozen ModelConfig.

    Buffers (no parameters):
        routing, thought:      (D, D)
        ln0_weight, ln0_bias:  (D,)
        value[l], output[l]:   (H, hd, D), (H, D, hd)
        strategy:              (3, D, D) exploration / analysis / synthesis
        meta:                  (2, D, D)
    """

    def __init__(self, config: ModelConfig, device: Optional[str] = None):
        super().__init__()
        self.config = config
        self.model_dim = config.model_dim
        self.dtype = TORCH_DTYPES[config.precision]
        self.device_ = resolve_device(device or config.device)

        def t(array: np.ndarray) -> torch.Tensor:
            return torch.as_tensor(np.array(array), dtype=self.dtype)

        self.register_buffer('routing', t(config.latent_routing_weights))
        self.register_buffer('thought', t(config.continuous_thought_weights))
        ln0 = config.layers[0].layer_norm1
        self.register_buffer('ln0_weight', t(ln0.weight))
        self.register_buffer('ln0_bias', t(ln0.bias))

        self.num_layers = len(config.layers)
        for idx, layer in enumerate(config.layers):
            self.register_buffer(f'value_{idx}', t(np.stack([h.value_weights for h in layer.heads])))
            self.register_buffer(f'output_{idx}', t(np.stack([h.output_weights for h in layer.heads])))
            self.register_buffer(f'proj_{idx}', t(layer.output_projection))
            ff = layer.feedforward
            self.register_buffer(f'w1_{idx}', t(ff.w1))
            self.register_buffer(f'b1_{idx}', t(ff.bias1))
            self.register_buffer(f'w2_{idx}', t(ff.w2))
            self.register_buffer(f'b2_{idx}', t(ff.bias2))
            self.register_buffer(f'ln1w_{idx}', t(layer.layer_norm1.weight))
            self.register_buffer(f'ln1b_{idx}', t(layer.layer_norm1.bias))
            self.register_buffer(f'ln2w_{idx}', t(layer.layer_norm2.weight))
            self.register_buffer(f'ln2b_{idx}', t(layer.layer_norm2.bias))

        self.register_buffer('strategy', t(np.stack([config.strategy_weights[s] for s in HIERARCHY_STRATEGIES])))
        self.register_buffer('synthesis_w', t(config.synthesis_norm.weight))
        self.register_buffer('synthesis_b', t(config.synthesis_norm.bias))
        self.register_buffer('meta', t(np.stack(config.meta_reasoning_weights)))

        self.to(self.device_)
        self.eval()

    def _buf(self, name: str, idx: int) -> torch.Tensor:
        return getattr(self, f'{name}_{idx}')

    def _layer_norm(self, x: torch.Tensor, weight: torch.Tensor, bias: torch.Tensor) -> torch.Tensor:
        return F.layer_norm(x, (self.model_dim,), weight, bias, eps=LAYER_NORM_EPS)

    @staticmethod
    def _activate(x: torch.Tensor, activation: str) -> torch.Tensor:
        if activation == 'gelu':
            return F.gelu(x, approximate='tanh')
        if activation == 'relu':
            return F.relu(x)
        if activation == 'swish':
            return F.silu(x)
        raise ValueError(f"Unknown activation: {activation!r}")

    # =========================================================================
    # TRANSFORMS
    # =========================================================================

    def standard(self, x: torch.Tensor) -> torch.Tensor:
        for idx in range(self.num_layers):
            h = self._layer_norm(x, self._buf('ln1w', idx), self._buf('ln1b', idx))
            heads = torch.einsum('bd,hkd->bhk', h, self._buf('value', idx))
            mixed = torch.einsum('bhk,hdk->bd', heads, self._buf('output', idx))
            x = x + mixed @ self._buf('proj', idx).T

            h = self._layer_norm(x, self._buf('ln2w', idx), self._buf('ln2b', idx))
            inner = F.gelu(h @ self._buf('w1', idx).T + self._buf('b1', idx), approximate='tanh')
            x = x + inner @ self._buf('w2', idx).T + self._buf('b2', idx)
        return x

    def hierarchical(self, x: torch.Tensor, routing_probs: torch.Tensor) -> torch.Tensor:
        max_prob = routing_probs.max(dim=1).values
        level = torch.zeros_like(max_prob, dtype=torch.long)
        level = torch.where(max_prob > ANALYSIS_THRESHOLD, torch.ones_like(level), level)
        level = torch.where(max_prob > SYNTHESIS_THRESHOLD, torch.full_like(level, 2), level)

        projected = torch.einsum('sde,be->sbd', self.strategy, x)           # (3, B, D)
        chosen = projected[level, torch.arange(x.shape[0], device=x.device)]  # (B, D)
        compressed = self._layer_norm(chosen, self.synthesis_w, self.synthesis_b)
        return torch.where((level == 2).unsqueeze(1), compressed, chosen)

    def superposition(self, x: torch.Tensor, num_components: int, strategy: str) -> torch.Tensor:
        k = max(1, min(num_components, self.model_dim))
        sizes = [len(c) for c in np.array_split(np.arange(self.model_dim), k)]
        chunks = torch.split(x, sizes, dim=1)
        chunk_norms = torch.stack([c.norm(dim=1) for c in chunks], dim=1)  # (B, k)

        if strategy == 'max_amplitude':
            dominant = chunk_norms.argmax(dim=1)                            # (B,)
            owner = torch.repeat_interleave(torch.arange(k, device=x.device),
                                            torch.tensor(sizes, device=x.device))
            return torch.where(owner.unsqueeze(0) == dominant.unsqueeze(1), x, torch.zeros_like(x))

        if strategy == 'weighted':
            sq = chunk_norms ** 2
            total = sq.sum(dim=1, keepdim=True)
            amp_sq = torch.where(total > 0, sq / torch.where(total > 0, total, torch.ones_like(total)),
                                 torch.full_like(sq, 1.0 / k))
            factors = torch.repeat_interleave(k * amp_sq, torch.tensor(sizes, device=x.device), dim=1)
            return x * factors

        raise ValueError(f"Unknown collapse strategy: {strategy!r}")

    def recursive(self, x: torch.Tensor, max_recursion: int) -> torch.Tensor:
        for depth in range(min(max_recursion, self.meta.shape[0])):
            x = x @ self.meta[depth].T
        return x

    # =========================================================================
    # STEP / LOOP
    # =========================================================================

    @torch.no_grad()
    def forward_step(self, hidden: torch.Tensor,
                     options: ReasoningOptions) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            hidden: (B, D)

        Returns:
            Tuple of (new hidden (B, D), routing probabilities (B, D))
        """
        if hidden.dim() != 2 or hidden.shape[1] != self.model_dim:
            raise DimensionMismatch(self.model_dim, tuple(hidden.shape), "batched hidden state")

        routing_probs = F.softmax(hidden @ self.routing.T, dim=1)
        activated = self._activate(hidden @ self.thought.T, options.activation)
        normalized = self._layer_norm(hidden + activated, self.ln0_weight, self.ln0_bias)

        transform = options.transform_type
        if transform == 'standard':
            out = self.standard(normalized)
        elif transform == 'hierarchical':
            out = self.hierarchical(normalized, routing_probs)
        elif transform == 'superposition':
            out = self.superposition(normalized, options.superposition_components, options.collapse_strategy)
        elif transform == 'recursive':
            out = self.recursive(normalized, options.effective_max_recursion)
        else:
            raise ValueError(f"Unknown transform type: {transform!r}")
        return out, routing_probs

    forward = forward_step

    def _to_tensor(self, states: Union[np.ndarray, torch.Tensor]) -> torch.Tensor:
        if isinstance(states, torch.Tensor):
            return states.to(device=self.device_, dtype=self.dtype)
        return torch.as_tensor(np.asarray(states), dtype=self.dtype, device=self.device_)

    @torch.no_grad()
    def run(self, initial_states: Union[np.ndarray, torch.Tensor], num_thoughts: int,
            options: Optional[ReasoningOptions] = None, **overrides) -> BatchedReasoningResult:
        """
        Advance every row until its budget, its convergence, or the shared step ceiling.

        Args:
            initial_states: (B, D)
            num_thoughts: Thought budget per row
        """
        if options is None:
            options = ReasoningOptions.from_mapping(None, **overrides)
        elif overrides:
            options = options.with_overrides(**overrides)

        current = self._to_tensor(initial_states)
        if current.dim() != 2 or current.shape[1] != self.model_dim:
            raise DimensionMismatch(self.model_dim, tuple(current.shape), "batched initial states")
        batch = current.shape[0]

        active = torch.ones(batch, dtype=torch.bool, device=self.device_)
        converged = torch.zeros(batch, dtype=torch.bool, device=self.device_)
        steps = torch.zeros(batch, dtype=torch.long, device=self.device_)
        history: List[torch.Tensor] = []

        deadline = time.monotonic() + options.timeout if options.timeout is not None else None
        budget = min(num_thoughts, options.max_computation_steps)
        termination = 'budget_exhausted'

        for _ in range(max(0, budget)):
            token = options.cancel_token
            if token is not None and token.cancelled:
                termination = 'cancelled'
                break
            if deadline is not None and time.monotonic() > deadline:
                termination = 'timeout'
                break

            new, _ = self.forward_step(current, options)
            change = (new - current).norm(dim=1)
            mask = active.unsqueeze(1)
            current = torch.where(mask, new, current)
            history.append(current)
            steps = steps + active.long()

            just_converged = active & (change < options.convergence_threshold)
            converged = converged | just_converged
            active = active & ~just_converged
            if not bool(active.any()):
                termination = 'converged'
                break

        if termination == 'budget_exhausted' and num_thoughts > options.max_computation_steps and bool(active.any()):
            logger.warning(
                f"Reached maximum computation steps ({options.max_computation_steps}), "
                f"terminating early"
            )
            termination = 'step_limit'

        final = current.cpu().numpy()
        steps_np = steps.cpu().numpy()
        stacked = torch.stack(history).cpu().numpy() if history else np.zeros((0, batch, self.model_dim))
        trajectories = [stacked[:steps_np[b], b].copy() for b in range(batch)]

        logger.debug(f"Batched run: rows={batch} max_steps={int(steps_np.max(initial=0))} termination={termination}")
        return BatchedReasoningResult(
            final_states=final,
            steps=steps_np,
            converged=converged.cpu().numpy(),
            trajectories=trajectories,
            termination=termination,
        )
