"""Tests for the continuous thought loop and the LatentReasoner facade"""
import itertools

import numpy as np
import pytest

import coconut.coconut_model as coconut_model
from coconut.coconut_config import build_config, tokens_to_hidden_state
from coconut.coconut_errors import InvalidReasoningOptions
from coconut.coconut_model import LatentReasoner, continuous_thought_forward
from coconut.coconut_options import (
    CancellationToken, ReasoningOptions, scaled_convergence_threshold, select_transform_type,
)
from coconut.coconut_text import HashTokenizer


def small_config(**kwargs):
    opts = dict(model_dim=8, num_heads=2, num_layers=1, intermediate_dim=16, vocab_size=16, seed=0)
    opts.update(kwargs)
    return build_config(**opts)


def random_hidden(dim=8, seed=3):
    return np.random.default_rng(seed).normal(0, 1, size=dim).astype(np.float32)


def test_zero_thoughts_returns_initial_state():
    cfg = small_config()
    h0 = random_hidden()
    result = continuous_thought_forward(cfg, h0, 0)
    assert result.ok
    np.testing.assert_array_equal(result.final_state, h0)
    assert result.thought_trajectory == []
    assert result.termination == 'budget_exhausted'
    assert result.reasoning_trace['total_thoughts'] == 0


def test_step_ceiling_is_exact():
    cfg = small_config()
    result = continuous_thought_forward(cfg, random_hidden(), 10,
                                        max_computation_steps=4, convergence_threshold=-1.0)
    assert result.ok
    assert len(result.thought_trajectory) == 4
    assert result.termination == 'step_limit'
    assert len(result.attention_patterns) == 4
    assert len(result.routing_decisions) == 4


def test_step_ceiling_logs_warning(caplog):
    cfg = small_config()
    with caplog.at_level('WARNING', logger='coconut'):
        continuous_thought_forward(cfg, random_hidden(), 5,
                                   max_computation_steps=2, convergence_threshold=-1.0)
    assert any('maximum computation steps' in r.message for r in caplog.records)


def test_end_to_end_recursive():
    cfg = build_config(model_dim=8, num_heads=2, num_layers=1, vocab_size=16, seed=0)
    h0 = tokens_to_hidden_state(cfg, [])
    np.testing.assert_array_equal(h0, np.zeros(8))

    result = continuous_thought_forward(cfg, np.zeros(8), 5, transform_type='recursive',
                                        max_recursion=2, convergence_threshold=-1)
    assert result.ok
    assert len(result.thought_trajectory) == 5
    assert all(v.shape == (8,) for v in result.thought_trajectory)
    assert result.final_state.shape == (8,)
    # zero biases make the zero vector a fixed point of this path
    np.testing.assert_array_equal(result.final_state, np.zeros(8))

    moved = continuous_thought_forward(cfg, random_hidden(), 5, transform_type='recursive',
                                       max_recursion=2, convergence_threshold=-1)
    assert not np.allclose(moved.final_state, random_hidden())


@pytest.mark.parametrize('transform', ['standard', 'hierarchical', 'superposition', 'recursive'])
@pytest.mark.parametrize('activation', ['relu', 'gelu', 'swish'])
def test_every_transform_runs(transform, activation):
    cfg = small_config()
    result = continuous_thought_forward(cfg, random_hidden(), 3, transform_type=transform,
                                        activation=activation, convergence_threshold=-1.0)
    assert result.ok
    assert len(result.thought_trajectory) == 3
    assert result.final_state.shape == (8,)
    np.testing.assert_array_equal(result.final_state, result.thought_trajectory[-1])


def test_early_convergence():
    cfg = small_config()
    result = continuous_thought_forward(cfg, random_hidden(), 10, convergence_threshold=1e9)
    assert result.termination == 'converged'
    assert len(result.thought_trajectory) == 1
    assert result.reasoning_trace['convergence_analysis']['converged']


def test_trajectory_is_chronological():
    cfg = small_config()
    options = ReasoningOptions(convergence_threshold=-1.0)
    result = continuous_thought_forward(cfg, random_hidden(), 3, options)
    h = random_hidden()
    for expected in result.thought_trajectory:
        h, _ = coconut_model.latent_forward_step(cfg, h, options)
        np.testing.assert_allclose(expected, h, rtol=1e-6)


def test_metrics():
    cfg = small_config()
    result = continuous_thought_forward(cfg, random_hidden(), 6, convergence_threshold=-1.0)
    metrics = result.convergence_metrics
    assert metrics['trajectory_length'] == 6
    assert metrics['final_norm'] == pytest.approx(float(np.linalg.norm(result.final_state)), rel=1e-5)
    assert 0.0 < metrics['routing_diversity'] <= 1.0
    assert 0.0 <= metrics['attention_entropy'] <= np.log(2) + 1e-9

    trace = result.reasoning_trace
    assert trace['total_thoughts'] == 6
    assert trace['termination'] == 'budget_exhausted'
    assert len(trace['convergence_analysis']['step_changes']) == 6
    assert trace['routing_summary']['dominant_path'] in range(8)


def test_parallel_streams_bookkeeping():
    cfg = small_config()
    plain = continuous_thought_forward(cfg, random_hidden(), 4, convergence_threshold=-1.0)
    result = continuous_thought_forward(cfg, random_hidden(), 4, convergence_threshold=-1.0,
                                        parallel_processing=True, parallel_streams=3)
    assert result.reasoning_trace['parallel_streams'] == {'count': 3, 'sync_points': 12}
    np.testing.assert_array_equal(result.final_state, plain.final_state)


def test_wrong_initial_length_is_error_result():
    result = continuous_thought_forward(small_config(), np.ones(5), 3)
    assert not result.ok
    assert result.termination == 'error'
    assert result.error.startswith('Continuous reasoning failed:')


def test_step_failure_keeps_partial_trajectory(monkeypatch):
    cfg = small_config()
    real_step = coconut_model.latent_forward_step
    calls = itertools.count()

    def flaky_step(config, hidden, options):
        if next(calls) == 2:
            raise FloatingPointError("overflow")
        return real_step(config, hidden, options)

    monkeypatch.setattr(coconut_model, 'latent_forward_step', flaky_step)
    result = continuous_thought_forward(cfg, random_hidden(), 5, convergence_threshold=-1.0)
    assert result.termination == 'error'
    assert 'overflow' in result.error
    assert len(result.thought_trajectory) == 2
    np.testing.assert_array_equal(result.final_state, result.thought_trajectory[-1])


def test_cancellation():
    token = CancellationToken()
    token.cancel()
    result = continuous_thought_forward(small_config(), random_hidden(), 5, cancel_token=token)
    assert result.termination == 'cancelled'
    assert not result.ok
    assert result.thought_trajectory == []


def test_timeout(monkeypatch):
    clock = itertools.count(step=10)
    monkeypatch.setattr(coconut_model.time, 'monotonic', lambda: float(next(clock)))
    result = continuous_thought_forward(small_config(), random_hidden(), 5, timeout=1.0)
    assert result.termination == 'timeout'
    assert result.error.startswith('Continuous reasoning failed:')


def test_invalid_options_raise():
    with pytest.raises(InvalidReasoningOptions):
        continuous_thought_forward(small_config(), random_hidden(), 1, transform_type='quantum')
    with pytest.raises(InvalidReasoningOptions):
        continuous_thought_forward(small_config(), random_hidden(), 1, {'unknown_knob': 1})


def test_options_from_mapping():
    options = ReasoningOptions.from_mapping({'transform_type': 'recursive', 'max_recursion': 9})
    assert options.effective_max_recursion == 2
    assert options.with_overrides(activation='relu').activation == 'relu'


def test_option_derivation():
    assert select_transform_type(recursive_depth=1, message_passing=True) == 'recursive'
    assert select_transform_type(message_passing=True) == 'hierarchical'
    assert select_transform_type(latent_state_count=101) == 'superposition'
    assert select_transform_type() == 'standard'
    assert scaled_convergence_threshold(10, 'linear') == pytest.approx(0.01)
    assert scaled_convergence_threshold(100, 'exponential') == pytest.approx(0.01 * 0.8 * 0.8)
    assert scaled_convergence_threshold(5000, 'adaptive') == pytest.approx(0.01 * 0.4 * 0.9)


def test_latent_reasoner_stats():
    reasoner = LatentReasoner(tokenizer=HashTokenizer(vocab_size=16), model_dim=8, num_heads=2,
                              num_layers=1, intermediate_dim=16, vocab_size=16, seed=0)
    logits, result = reasoner.reason_text("The quick brown fox", 3, convergence_threshold=-1.0)
    assert logits.shape == (16,)
    assert result.ok
    reasoner.reason_tokens([1, 2], 2, convergence_threshold=1e9)

    stats = reasoner.get_stats()
    assert stats['total_requests'] == 2
    assert stats['total_thoughts'] == 4
    assert stats['converged'] == 1
    assert stats['failures'] == 0


def test_latent_reasoner_stats_under_threads():
    from concurrent.futures import ThreadPoolExecutor

    reasoner = LatentReasoner(model_dim=8, num_heads=2, num_layers=1, intermediate_dim=16,
                              vocab_size=16, seed=0)
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda i: reasoner.reason_tokens([i % 16], 3, convergence_threshold=-1.0),
                      range(64)))

    stats = reasoner.get_stats()
    assert stats['total_requests'] == 64
    assert stats['total_thoughts'] == 64 * 3
    assert stats['mean_trajectory_length'] == 3.0
