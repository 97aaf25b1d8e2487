"""Tests for hierarchy planning, message routing and recursive nodes"""
import math

import pytest

from coconut.coconut_errors import InvalidSchemaConfig
from coconut.coconut_hierarchy import (
    CONTROL_CHANNEL_ID, Message, MessageRouter, build_recursive_nodes, compression_ratio,
    filtering_threshold, level_for_position, plan_hierarchy,
)


@pytest.mark.parametrize('n', [1, 5, 10, 23, 100, 257])
def test_linear_levels_partition_positions(n):
    hierarchy = plan_hierarchy(n, 'linear')
    seen = [p for level in hierarchy.levels.values() for p in level.thoughts]
    assert sorted(seen) == list(range(1, n + 1))
    assert len(seen) == len(set(seen))
    for idx, level in hierarchy.levels.items():
        assert level.priority == pytest.approx(1.0 - idx * 0.1)
        for p in level.thoughts:
            assert level_for_position(hierarchy, p) == idx


def test_adaptive_small_is_linear():
    hierarchy = plan_hierarchy(16, 'adaptive')
    assert hierarchy.layout == 'linear'
    assert hierarchy.compression_ratio == 1.0


def test_adaptive_balanced():
    hierarchy = plan_hierarchy(100, 'adaptive')
    assert hierarchy.layout == 'balanced'
    assert hierarchy.num_levels == 11
    level = hierarchy.levels[0]
    assert level.fan_out == 10
    assert level.thoughts_per_node == 1
    assert level.exploration_strategy == 'breadth_first'
    assert hierarchy.levels[2].exploration_strategy == 'depth_first'
    assert hierarchy.levels[3].memory_pressure == pytest.approx(0.3)
    assert level_for_position(hierarchy, 100) == 9
    assert hierarchy.compression_ratio == 0.8


def test_adaptive_deep():
    hierarchy = plan_hierarchy(1000, 'adaptive')
    assert hierarchy.layout == 'deep'
    assert hierarchy.num_levels == 5
    specs = [hierarchy.levels[i].specialization for i in range(5)]
    assert specs == ['exploration', 'exploration', 'analysis', 'analysis', 'synthesis']
    assert hierarchy.levels[0].capacity == 200
    assert hierarchy.levels[0].parallel_streams == 50
    assert hierarchy.levels[4].abstraction_level == pytest.approx(0.8)
    assert level_for_position(hierarchy, 1000) == 4
    assert hierarchy.compression_ratio == 0.6


def test_exponential_levels():
    hierarchy = plan_hierarchy(1000, 'exponential')
    assert hierarchy.num_levels == math.ceil(math.log2(1000))
    assert hierarchy.levels[0].capacity == 1
    assert hierarchy.levels[9].capacity == 501
    assert hierarchy.levels[2].certainty_threshold == pytest.approx(0.4)
    assert hierarchy.levels[2].pruning_rate == pytest.approx(0.15)
    assert hierarchy.compression_ratio == pytest.approx(max(0.1, 0.9 - 3 / 4))
    assert level_for_position(hierarchy, 1) == 0
    assert level_for_position(hierarchy, 1000) == 9


def test_exponential_minimum_three_levels():
    assert plan_hierarchy(2, 'exponential').num_levels == 3


def test_compression_ratio_tiers():
    assert compression_ratio(64, 'adaptive') == 1.0
    assert compression_ratio(1024, 'adaptive') == 0.6
    assert compression_ratio(5000, 'adaptive') == 0.4
    assert compression_ratio(5, 'exponential') == pytest.approx(0.65)
    assert compression_ratio(10 ** 6, 'exponential') == pytest.approx(0.1)


def test_invalid_thought_count():
    with pytest.raises(InvalidSchemaConfig):
        plan_hierarchy(0, 'linear')


def test_unknown_mode_falls_back_to_adaptive(caplog):
    with caplog.at_level('WARNING', logger='coconut'):
        hierarchy = plan_hierarchy(100, 'spiral')
    assert hierarchy.scaling_mode == 'adaptive'
    assert hierarchy.layout == 'balanced'
    assert any('spiral' in r.message for r in caplog.records)


def test_protocols():
    hierarchy = plan_hierarchy(1000, 'adaptive', custom_protocols={'lateral': 'competition'})
    protocols = hierarchy.protocols
    assert protocols.upward == 'aggregation'
    assert protocols.lateral == 'competition'
    level0, level2, level4 = protocols.levels[0], protocols.levels[2], protocols.levels[4]
    assert level0.routing_strategy == 'broadcast'
    assert level2.routing_strategy == 'selective'
    assert level4.routing_strategy == 'direct'
    assert level2.aggregation_function == 'intersection'
    assert level4.aggregation_function == 'weighted_sum'
    assert level0.message_capacity == max(5, min(200, 50 * 3))
    assert filtering_threshold(2) == pytest.approx(0.2)
    assert filtering_threshold(40) == 0.8

    with pytest.raises(InvalidSchemaConfig):
        plan_hierarchy(10, 'linear', custom_protocols={'sideways': 'x'})


def test_channels():
    hierarchy = plan_hierarchy(100, 'linear', message_passing=True)
    channels = hierarchy.channels
    assert set(channels.upward) == set(range(1, 10))
    assert set(channels.downward) == set(range(0, 9))
    assert channels.upward[3].target_level == 2
    assert channels.upward[3].priority == pytest.approx(0.6)
    assert channels.downward[8].priority == pytest.approx(0.1)
    assert all(not by_stream for by_stream in channels.lateral.values())
    assert CONTROL_CHANNEL_ID in channels.registry
    assert len(channels.registry) == 9 + 9 + 1


def test_lateral_channels():
    hierarchy = plan_hierarchy(1000, 'adaptive', message_passing=True)
    lateral = hierarchy.channels.lateral[0]
    assert len(lateral) == 50
    assert lateral[1].channel_id == 'lateral_0_1'
    assert 1 not in lateral[1].peer_streams
    assert len(lateral[1].peer_streams) == 49


def test_no_channels_without_message_passing():
    hierarchy = plan_hierarchy(100, 'linear')
    assert hierarchy.channels is None
    with pytest.raises(InvalidSchemaConfig):
        MessageRouter(hierarchy)


def make_message(message_type, priority, tag=0):
    return Message(sender=('level', 1), receiver=('level', 0), content={'tag': tag},
                   message_type=message_type, priority=priority)


def test_router_filters_type_and_priority():
    router = MessageRouter(plan_hierarchy(100, 'linear', message_passing=True))
    # level 1 filtering threshold is 0.15
    assert not router.post(make_message('aggregation', 0.1), 'upward_1')
    assert not router.post(make_message('guidance', 0.9), 'upward_1')
    assert router.post(make_message('summary', 0.5), 'upward_1')
    assert router.pending('upward_1') == 1
    with pytest.raises(KeyError):
        router.post(make_message('summary', 0.5), 'upward_99')


def test_router_capacity_and_drain_order():
    router = MessageRouter(plan_hierarchy(100, 'linear', message_passing=True))
    capacity = router.protocols.levels[1].message_capacity
    assert capacity == 10

    for tag in range(capacity):
        assert router.post(make_message('aggregation', 0.5, tag), 'upward_1')
    assert router.post(make_message('consensus', 0.9, 'high'), 'upward_1')
    assert not router.post(make_message('consensus', 0.2, 'low'), 'upward_1')
    assert router.pending('upward_1') == capacity

    drained = router.drain('upward_1')
    tags = [m.content['tag'] for m in drained]
    assert tags[0] == 'high'
    # newest of the equal-priority messages was evicted, the rest stay oldest first
    assert tags[1:] == list(range(capacity - 1))
    assert router.pending('upward_1') == 0
    assert router.get_stats()['evicted'] == 1


def test_control_channel_accepts_control_messages():
    router = MessageRouter(plan_hierarchy(20, 'linear', message_passing=True))
    assert router.post(make_message('global_sync', 0.01), CONTROL_CHANNEL_ID)
    assert not router.post(make_message('aggregation', 1.0), CONTROL_CHANNEL_ID)


def test_recursive_nodes():
    nodes = build_recursive_nodes(3)
    assert [n.task for n in nodes] == ['base_reasoning', 'meta_reasoning', 'meta_meta_reasoning']
    assert nodes[0].parent is None and nodes[0].children == (1,)
    assert nodes[2].parent == 1 and nodes[2].children == ()
    assert nodes[2].meta_level['recursive_power'] == 4.0
    assert nodes[2].termination_conditions['max_iterations'] == 14
    assert nodes[2].termination_conditions['resource_limit'] == 700
    assert nodes[1].meta_variables['exploration_budget'] == 42


def test_recursive_depth_capped():
    hierarchy = plan_hierarchy(10, 'linear', recursive_depth=9)
    assert hierarchy.recursive_depth == 5
    assert len(hierarchy.recursive_nodes) == 5
    assert hierarchy.recursive_nodes[-1].task == 'transcendent_reasoning'
    assert plan_hierarchy(10, 'linear').recursive_nodes == ()
