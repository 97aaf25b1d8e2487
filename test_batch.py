"""Tests for parallel latent state annotation"""
import numpy as np
import pytest

from coconut.coconut_batch import (
    annotate_latent_states, latent_states_from_result, message_channel_id, route_initial_messages,
)
from coconut.coconut_config import build_config
from coconut.coconut_hierarchy import MessageRouter, plan_hierarchy
from coconut.coconut_model import continuous_thought_forward

METADATA_KEYS = {
    'reasoning_step', 'vector_norm', 'attention_score', 'routing_probability', 'hierarchy_level',
    'specialization', 'stream_id', 'exploration_width', 'abstraction_level', 'scaling_mode',
}


def random_trajectory(n, dim=8, seed=0):
    rng = np.random.default_rng(seed)
    return [rng.normal(size=dim) for _ in range(n)]


def test_states_from_result():
    cfg = build_config(model_dim=8, num_heads=2, num_layers=1, intermediate_dim=16, vocab_size=16, seed=0)
    h0 = np.random.default_rng(1).normal(size=8)
    result = continuous_thought_forward(cfg, h0, 12, convergence_threshold=-1.0)
    hierarchy = plan_hierarchy(12, 'linear')

    states = latent_states_from_result(hierarchy, result, workers=3)
    assert [s.position for s in states] == list(range(1, 13))
    for state, vector, pattern, decision in zip(states, result.thought_trajectory,
                                                result.attention_patterns, result.routing_decisions):
        assert set(state.metadata) == METADATA_KEYS
        np.testing.assert_array_equal(state.hidden_state, vector)
        assert state.metadata['attention_score'] == pattern.attention_score
        assert state.metadata['routing_probability'] == decision.selected_path[0]
        assert state.metadata['vector_norm'] == pytest.approx(float(np.linalg.norm(vector)), rel=1e-5)
        assert state.messages == []
        assert state.recursive_context == {}
        assert np.sum(state.superposition_state.amplitudes ** 2) == pytest.approx(1.0, abs=1e-6)


def test_worker_count_does_not_change_records():
    hierarchy = plan_hierarchy(40, 'adaptive', message_passing=True)
    trajectory = random_trajectory(40)
    one = annotate_latent_states(hierarchy, trajectory, workers=1)
    many = annotate_latent_states(hierarchy, trajectory, workers=7)
    assert [s.position for s in many] == list(range(1, 41))
    for a, b in zip(one, many):
        assert a.metadata == b.metadata
        assert [m.message_type for m in a.messages] == [m.message_type for m in b.messages]


def test_missing_step_records_default_to_zero():
    states = annotate_latent_states(plan_hierarchy(3, 'linear'), random_trajectory(3))
    assert all(s.metadata['attention_score'] == 0.0 for s in states)
    assert all(s.metadata['routing_probability'] == 0.0 for s in states)


def test_empty_trajectory():
    assert annotate_latent_states(plan_hierarchy(5, 'linear'), []) == []


def test_upward_messages():
    hierarchy = plan_hierarchy(100, 'linear', message_passing=True)
    states = annotate_latent_states(hierarchy, random_trajectory(25), workers=2)

    first = states[0]
    assert first.metadata['hierarchy_level'] == 0
    assert first.messages == []

    state = states[24]
    assert state.metadata['hierarchy_level'] == 2
    (message,) = state.messages
    assert message.message_type == 'summary'
    assert message.content['type'] == 'initialization'
    assert message.priority == 0.5
    assert message.sender == ('thought', 25)
    assert message.receiver == ('level', 1)
    assert message.content['vector_norm'] == pytest.approx(state.metadata['vector_norm'])


def test_lateral_messages():
    hierarchy = plan_hierarchy(1000, 'adaptive', message_passing=True)
    states = annotate_latent_states(hierarchy, random_trajectory(60, dim=4), workers=4)
    for position, stream in [(1, 1), (3, 3), (50, 50), (51, 1)]:
        state = states[position - 1]
        assert state.metadata['stream_id'] == stream
        (message,) = state.messages
        assert message.message_type == 'coordination'
        assert message.content['type'] == 'lateral_coordination'
        assert message.priority == 0.3
        assert message.receiver == ('stream', stream)


def test_recursive_context():
    hierarchy = plan_hierarchy(200, 'adaptive', recursive_depth=2)
    states = annotate_latent_states(hierarchy, random_trajectory(130, dim=4))
    ctx1, ctx51, ctx120 = states[0].recursive_context, states[50].recursive_context, states[119].recursive_context
    assert ctx1['recursive_level'] == 0 and ctx1['parent_level'] is None
    assert ctx51['recursive_level'] == 1 and ctx51['parent_level'] == 0
    assert ctx120['recursive_level'] == 2
    assert ctx120['termination_conditions']['resource_limit'] == 300
    assert ctx120['meta_variables']['recursive_optimization']
    assert ctx51['meta_variables']['abstraction_level'] == 0.5


def test_initial_messages_route_through_channels():
    hierarchy = plan_hierarchy(1000, 'adaptive', message_passing=True)
    states = annotate_latent_states(hierarchy, random_trajectory(300, dim=4), workers=4)
    router = MessageRouter(hierarchy)

    counts = route_initial_messages(router, states)
    # 200 lateral on level 0, 100 upward + 100 lateral on level 1
    assert counts == {'accepted': 400, 'rejected': 0}
    assert router.get_stats()['posted'] == 400

    state = states[249]
    upward, lateral = state.messages
    assert message_channel_id(state, upward) == 'upward_1'
    assert message_channel_id(state, lateral) == f"lateral_1_{state.metadata['stream_id']}"
    assert router.pending('upward_1') == 100
    drained = router.drain('upward_1')
    assert [m.content['position'] for m in drained] == list(range(201, 301))
