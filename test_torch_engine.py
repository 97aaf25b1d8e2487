"""Tests that the batched torch engine matches the numpy loop"""
import numpy as np
import pytest

torch = pytest.importorskip('torch')

from coconut.coconut_config import build_config
from coconut.coconut_model import continuous_thought_forward
from coconut.coconut_options import CancellationToken, ReasoningOptions
from coconut.coconut_torch import TorchLatentEngine
from coconut.coconut_transforms import latent_forward_step

TRANSFORMS = ['standard', 'hierarchical', 'superposition', 'recursive']


def make_engine(**kwargs):
    opts = dict(model_dim=12, num_heads=3, num_layers=2, intermediate_dim=24, vocab_size=32,
                precision='float64', seed=0)
    opts.update(kwargs)
    cfg = build_config(**opts)
    return cfg, TorchLatentEngine(cfg)


def random_states(batch=5, dim=12, seed=0):
    return np.random.default_rng(seed).normal(0, 1, size=(batch, dim))


@pytest.mark.parametrize('transform', TRANSFORMS)
@pytest.mark.parametrize('activation', ['relu', 'gelu', 'swish'])
def test_forward_step_matches_numpy(transform, activation):
    cfg, engine = make_engine()
    options = ReasoningOptions(transform_type=transform, activation=activation)
    states = random_states()

    out, routing = engine.forward_step(torch.as_tensor(states), options)
    for row in range(states.shape[0]):
        expected, decision = latent_forward_step(cfg, states[row], options)
        np.testing.assert_allclose(out[row].numpy(), expected, rtol=1e-8, atol=1e-10)
        np.testing.assert_allclose(routing[row].numpy(), decision.routing_probabilities, rtol=1e-8)


def test_weighted_collapse_matches_numpy():
    cfg, engine = make_engine()
    options = ReasoningOptions(transform_type='superposition', collapse_strategy='weighted',
                               superposition_components=5)
    states = random_states()
    out, _ = engine.forward_step(torch.as_tensor(states), options)
    for row in range(states.shape[0]):
        expected, _ = latent_forward_step(cfg, states[row], options)
        np.testing.assert_allclose(out[row].numpy(), expected, rtol=1e-8, atol=1e-10)


@pytest.mark.parametrize('transform', TRANSFORMS)
def test_run_matches_numpy_loop(transform):
    cfg, engine = make_engine()
    states = random_states(batch=3)
    options = ReasoningOptions(transform_type=transform, convergence_threshold=-1.0)

    batched = engine.run(states, 4, options)
    assert batched.final_states.shape == (3, 12)
    assert list(batched.steps) == [4, 4, 4]
    assert not batched.converged.any()
    for row in range(3):
        expected = continuous_thought_forward(cfg, states[row], 4, options)
        np.testing.assert_allclose(batched.final_states[row], expected.final_state, rtol=1e-7, atol=1e-9)
        assert batched.trajectories[row].shape == (4, 12)


def test_run_converges_per_row():
    _, engine = make_engine()
    result = engine.run(random_states(batch=4), 10, convergence_threshold=1e9)
    assert result.converged.all()
    assert list(result.steps) == [1, 1, 1, 1]
    assert result.termination == 'converged'


def test_run_step_ceiling():
    _, engine = make_engine()
    result = engine.run(random_states(batch=2), 10, max_computation_steps=3, convergence_threshold=-1.0)
    assert list(result.steps) == [3, 3]
    assert result.termination == 'step_limit'


def test_run_zero_thoughts():
    _, engine = make_engine()
    states = random_states(batch=2)
    result = engine.run(states, 0)
    np.testing.assert_array_equal(result.final_states, states)
    assert all(t.shape == (0, 12) for t in result.trajectories)


def test_run_cancelled():
    _, engine = make_engine()
    token = CancellationToken()
    token.cancel()
    result = engine.run(random_states(batch=2), 5, cancel_token=token)
    assert result.termination == 'cancelled'
    assert list(result.steps) == [0, 0]


def test_float32_engine():
    cfg, engine = make_engine(precision='float32')
    states = random_states().astype(np.float32)
    out, _ = engine.forward_step(torch.as_tensor(states), ReasoningOptions())
    assert out.dtype == torch.float32
    expected, _ = latent_forward_step(cfg, states[0], ReasoningOptions())
    np.testing.assert_allclose(out[0].numpy(), expected, rtol=1e-4, atol=1e-5)
