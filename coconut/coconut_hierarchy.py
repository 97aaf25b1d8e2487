"""
Coconut Thought Hierarchy
==========================
Multi-level grouping of thought positions, the message-passing layout
derived from it, and a bounded arena of recursive meta-reasoning nodes.

Scaling modes:
- linear:      positions 1..n chunked into groups of max(1, n // 10)
- exponential: max(3, ⌈log₂ n⌉) levels, level l holds min(round(n^(l/L)), n)
- adaptive:    linear (n ≤ 16), balanced tree (n ≤ 256), deep hierarchy otherwise

Nothing here touches the model weights; the hierarchy only parameterizes the
batch annotation path.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .coconut_errors import InvalidSchemaConfig
from .coconut_options import SCALING_MODES

logger = logging.getLogger('coconut')

MAX_RECURSIVE_DEPTH = 5
DEFAULT_PROTOCOLS = {
    'upward': 'aggregation',
    'downward': 'decomposition',
    'lateral': 'collaboration',
    'recursive': 'meta_reasoning',
}

UPWARD_MESSAGE_TYPES = ('aggregation', 'summary', 'consensus')
DOWNWARD_MESSAGE_TYPES = ('decomposition', 'guidance', 'constraints')
LATERAL_MESSAGE_TYPES = ('coordination', 'synchronization', 'conflict_resolution')
CONTROL_MESSAGE_TYPES = ('system_control', 'emergency_override', 'global_sync')
CONTROL_CHANNEL_ID = 'control_global'

RECURSIVE_TASKS = (
    'base_reasoning',
    'meta_reasoning',
    'meta_meta_reasoning',
    'system_reasoning',
    'transcendent_reasoning',
    'ultimate_reasoning',
)


def _round(x: float) -> int:
    """Round half away from zero (inputs here are never negative)."""
    return int(math.floor(x + 0.5))


# =============================================================================
# LEVELS
# =============================================================================

@dataclass(frozen=True)
class HierarchyLevel:
    """One tier of the hierarchy. Layout-specific fields stay None where unused."""
    level: int
    capacity: int
    exploration_width: int
    specialization: str = 'exploration'
    priority: float = 1.0
    parallel_streams: int = 1
    abstraction_level: float = 0.0
    thoughts: Tuple[int, ...] = ()

    # exponential
    certainty_threshold: Optional[float] = None
    pruning_rate: Optional[float] = None
    # balanced tree
    fan_out: Optional[int] = None
    thoughts_per_node: Optional[int] = None
    exploration_strategy: Optional[str] = None
    memory_pressure: Optional[float] = None


def _level_priority(level: int) -> float:
    return 1.0 - level * 0.1


def linear_levels(num_thoughts: int) -> Dict[int, HierarchyLevel]:
    group_size = max(1, num_thoughts // 10)
    levels = {}
    for level, start in enumerate(range(1, num_thoughts + 1, group_size)):
        group = tuple(range(start, min(start + group_size, num_thoughts + 1)))
        levels[level] = HierarchyLevel(
            level=level,
            capacity=len(group),
            exploration_width=len(group),
            priority=_level_priority(level),
            thoughts=group,
        )
    return levels


def exponential_level_count(num_thoughts: int) -> int:
    return max(3, math.ceil(math.log2(num_thoughts)))


def exponential_levels(num_thoughts: int) -> Dict[int, HierarchyLevel]:
    count = exponential_level_count(num_thoughts)
    base = num_thoughts ** (1.0 / count)
    levels = {}
    for level in range(count):
        capacity = min(_round(base ** level), num_thoughts)
        levels[level] = HierarchyLevel(
            level=level,
            capacity=capacity,
            exploration_width=max(1, capacity),
            priority=_level_priority(level),
            certainty_threshold=0.1 + level * 0.15,
            pruning_rate=0.05 + level * 0.05,
        )
    return levels


def balanced_levels(num_thoughts: int) -> Dict[int, HierarchyLevel]:
    fan_out = max(1, _round(math.sqrt(num_thoughts)))
    count = num_thoughts // fan_out + 1
    per_node = max(1, num_thoughts // (fan_out * count))
    return {
        level: HierarchyLevel(
            level=level,
            capacity=fan_out,
            exploration_width=fan_out,
            priority=_level_priority(level),
            fan_out=fan_out,
            thoughts_per_node=per_node,
            exploration_strategy='breadth_first' if level < 2 else 'depth_first',
            memory_pressure=level * 0.1,
        )
        for level in range(count)
    }


def depth_specialization(level: int, depth: int) -> str:
    ratio = level / depth
    if ratio < 0.3:
        return 'exploration'
    if ratio < 0.7:
        return 'analysis'
    return 'synthesis'


def deep_level_count(num_thoughts: int) -> int:
    return _round(math.log10(num_thoughts)) + 2


def deep_levels(num_thoughts: int) -> Dict[int, HierarchyLevel]:
    depth = deep_level_count(num_thoughts)
    per_level = num_thoughts // depth
    streams = max(1, per_level // 4)
    return {
        level: HierarchyLevel(
            level=level,
            capacity=per_level,
            exploration_width=streams,
            specialization=depth_specialization(level, depth),
            priority=_level_priority(level),
            parallel_streams=streams,
            abstraction_level=level / depth,
        )
        for level in range(depth)
    }


def hierarchy_layout(num_thoughts: int, scaling_mode: str) -> str:
    """Which level builder a (count, mode) pair resolves to."""
    if scaling_mode == 'linear':
        return 'linear'
    if scaling_mode == 'exponential':
        return 'exponential'
    if num_thoughts <= 16:
        return 'linear'
    if num_thoughts <= 256:
        return 'balanced'
    return 'deep'


_LAYOUT_BUILDERS = {
    'linear': linear_levels,
    'exponential': exponential_levels,
    'balanced': balanced_levels,
    'deep': deep_levels,
}


def compression_ratio(num_thoughts: int, scaling_mode: str) -> float:
    if scaling_mode == 'linear':
        return 1.0
    if scaling_mode == 'exponential':
        return max(0.1, 0.9 - math.log10(max(num_thoughts, 10)) / 4)
    if num_thoughts <= 64:
        return 1.0
    if num_thoughts <= 256:
        return 0.8
    if num_thoughts <= 1024:
        return 0.6
    return 0.4


# =============================================================================
# MESSAGE PROTOCOLS
# =============================================================================

@dataclass(frozen=True)
class LevelProtocol:
    message_capacity: int
    routing_strategy: str
    aggregation_function: str
    filtering_threshold: float


@dataclass(frozen=True)
class MessageProtocols:
    upward: str
    downward: str
    lateral: str
    recursive: str
    levels: Dict[int, LevelProtocol]


def message_capacity(level: HierarchyLevel) -> int:
    return max(5, min(level.capacity, level.exploration_width * 3))


def routing_strategy(level: HierarchyLevel) -> str:
    if level.level == 0:
        return 'broadcast'
    return {
        'exploration': 'flood',
        'analysis': 'selective',
        'synthesis': 'direct',
    }.get(level.specialization, 'adaptive')


def aggregation_function(level: HierarchyLevel) -> str:
    return {
        'exploration': 'union',
        'analysis': 'intersection',
        'synthesis': 'weighted_sum',
    }.get(level.specialization, 'average')


def filtering_threshold(level: int) -> float:
    return min(0.8, 0.1 + level * 0.05)


def build_protocols(levels: Mapping[int, HierarchyLevel],
                    custom_protocols: Optional[Mapping[str, str]] = None) -> MessageProtocols:
    protocols = dict(DEFAULT_PROTOCOLS)
    if custom_protocols:
        unknown = sorted(set(custom_protocols) - set(DEFAULT_PROTOCOLS))
        if unknown:
            raise InvalidSchemaConfig(f"Unknown message protocol directions: {unknown}")
        protocols.update(custom_protocols)

    per_level = {
        idx: LevelProtocol(
            message_capacity=message_capacity(level),
            routing_strategy=routing_strategy(level),
            aggregation_function=aggregation_function(level),
            filtering_threshold=filtering_threshold(idx),
        )
        for idx, level in levels.items()
    }
    return MessageProtocols(levels=per_level, **protocols)


# =============================================================================
# CHANNELS
# =============================================================================

@dataclass(frozen=True)
class Channel:
    channel_id: str
    kind: str  # upward / downward / lateral / control
    message_types: Tuple[str, ...]
    priority: float
    capacity: Optional[int] = None
    source_level: Optional[int] = None
    target_level: Optional[int] = None
    stream_id: Optional[int] = None
    peer_streams: Tuple[int, ...] = ()

    @property
    def level(self) -> Optional[int]:
        return self.source_level


@dataclass(frozen=True)
class ChannelSet:
    upward: Dict[int, Channel]
    downward: Dict[int, Channel]
    lateral: Dict[int, Dict[int, Channel]]
    control: Channel
    registry: Dict[str, Channel]


def build_channels(levels: Mapping[int, HierarchyLevel]) -> ChannelSet:
    """Upward for level > 0, downward for level < max, lateral per stream, one control."""
    max_level = max(levels)

    upward = {
        idx: Channel(
            channel_id=f"upward_{idx}",
            kind='upward',
            message_types=UPWARD_MESSAGE_TYPES,
            priority=0.3 + idx * 0.1,
            capacity=level.capacity,
            source_level=idx,
            target_level=idx - 1,
        )
        for idx, level in levels.items() if idx > 0
    }
    downward = {
        idx: Channel(
            channel_id=f"downward_{idx}",
            kind='downward',
            message_types=DOWNWARD_MESSAGE_TYPES,
            priority=max(0.1, 0.8 - idx * 0.1),
            capacity=level.capacity,
            source_level=idx,
            target_level=idx + 1,
        )
        for idx, level in levels.items() if idx < max_level
    }

    lateral: Dict[int, Dict[int, Channel]] = {}
    for idx, level in levels.items():
        streams = level.parallel_streams
        lateral[idx] = {}
        if streams <= 1:
            continue
        for stream_id in range(1, streams + 1):
            lateral[idx][stream_id] = Channel(
                channel_id=f"lateral_{idx}_{stream_id}",
                kind='lateral',
                message_types=LATERAL_MESSAGE_TYPES,
                priority=0.5,
                source_level=idx,
                target_level=idx,
                stream_id=stream_id,
                peer_streams=tuple(s for s in range(1, streams + 1) if s != stream_id),
            )

    control = Channel(
        channel_id=CONTROL_CHANNEL_ID,
        kind='control',
        message_types=CONTROL_MESSAGE_TYPES,
        priority=1.0,
    )

    registry = {}
    for channel in list(upward.values()) + list(downward.values()):
        registry[channel.channel_id] = channel
    for by_stream in lateral.values():
        for channel in by_stream.values():
            registry[channel.channel_id] = channel
    registry[control.channel_id] = control

    return ChannelSet(upward=upward, downward=downward, lateral=lateral,
                      control=control, registry=registry)


# =============================================================================
# MESSAGES
# =============================================================================

@dataclass
class Message:
    sender: Tuple[str, int]    # ('thought', position) or ('level', idx)
    receiver: Tuple[str, int]  # ('level', idx) or ('stream', id)
    content: Dict[str, Any]
    message_type: str
    priority: float
    timestamp: float = field(default_factory=time.monotonic)


class MessageRouter:
    """
    Bounded, priority-ordered mailboxes, one per registered channel.

    A message is accepted when its type is allowed on the channel and its
    priority reaches the source level's filtering threshold. A full mailbox
    evicts its lowest-priority message (newest first among equals) when the
    incoming one outranks it, otherwise the incoming message is dropped.
    """

    def __init__(self, hierarchy: "ThoughtHierarchy"):
        if hierarchy.channels is None:
            raise InvalidSchemaConfig("hierarchy was planned without message passing")
        self.channels = hierarchy.channels.registry
        self.protocols = hierarchy.protocols
        self._control_capacity = max(
            p.message_capacity for p in self.protocols.levels.values()
        )
        self._queues: Dict[str, List[Tuple[int, Message]]] = {cid: [] for cid in self.channels}
        self._seq = 0
        self._lock = threading.Lock()

        self.posted = 0
        self.rejected = 0
        self.evicted = 0

    def _limits(self, channel: Channel) -> Tuple[int, float]:
        if channel.source_level is None:
            return self._control_capacity, 0.0
        proto = self.protocols.levels[channel.source_level]
        return proto.message_capacity, proto.filtering_threshold

    def post(self, message: Message, channel_id: str) -> bool:
        """
        Returns:
            True if the message was queued
        """
        channel = self.channels.get(channel_id)
        if channel is None:
            raise KeyError(f"Unknown channel: {channel_id!r}")
        capacity, threshold = self._limits(channel)

        with self._lock:
            if message.message_type not in channel.message_types or message.priority < threshold:
                self.rejected += 1
                return False

            queue = self._queues[channel_id]
            if len(queue) >= capacity:
                # lowest priority, newest among equals
                victim = min(range(len(queue)), key=lambda i: (queue[i][1].priority, -queue[i][0]))
                if queue[victim][1].priority >= message.priority:
                    self.rejected += 1
                    return False
                del queue[victim]
                self.evicted += 1

            queue.append((self._seq, message))
            self._seq += 1
            self.posted += 1
            return True

    def pending(self, channel_id: str) -> int:
        return len(self._queues[channel_id])

    def drain(self, channel_id: str) -> List[Message]:
        """Remove and return queued messages, highest priority first, oldest first on ties."""
        with self._lock:
            queue = self._queues[channel_id]
            self._queues[channel_id] = []
        queue.sort(key=lambda item: (-item[1].priority, item[0]))
        return [message for _, message in queue]

    def get_stats(self) -> Dict:
        return {
            'posted': self.posted,
            'rejected': self.rejected,
            'evicted': self.evicted,
            'pending': sum(len(q) for q in self._queues.values()),
        }


# =============================================================================
# RECURSIVE NODES
# =============================================================================

@dataclass(frozen=True)
class RecursiveNode:
    """A meta-reasoning tier. parent / children are indices into the owning arena."""
    depth: int
    task: str
    parent: Optional[int]
    children: Tuple[int, ...]
    meta_level: Dict[str, float]
    meta_variables: Dict[str, float]
    termination_conditions: Dict[str, Any]


def recursive_task(depth: int) -> str:
    return RECURSIVE_TASKS[min(depth, len(RECURSIVE_TASKS) - 1)]


def meta_level(depth: int) -> Dict[str, float]:
    return {
        'abstraction_level': depth / 5.0,
        'recursive_power': 2.0 ** depth,
        'complexity_tolerance': 1.0 + depth * 0.5,
        'meta_cognitive_depth': depth + 1,
    }


def meta_variables(depth: int) -> Dict[str, float]:
    return {
        'recursive_depth': depth,
        'convergence_criteria': 0.1 + depth * 0.02,
        'exploration_budget': max(10, 50 - depth * 8),
        'abstraction_threshold': depth * 0.2,
        'meta_learning_rate': 0.1 / (depth + 1),
    }


def termination_conditions(depth: int) -> Dict[str, Any]:
    return {
        'max_iterations': max(5, 20 - depth * 3),
        'convergence_threshold': 0.01 * (depth + 1),
        'resource_limit': max(100, 1000 - depth * 150),
        'quality_threshold': 0.8 - depth * 0.1,
        'infinite_recursion_detection': True,
    }


def build_recursive_nodes(max_depth: int) -> Tuple[RecursiveNode, ...]:
    """A chain of nodes for depths 0..max_depth-1, capped at MAX_RECURSIVE_DEPTH."""
    if max_depth > MAX_RECURSIVE_DEPTH:
        logger.warning(f"Recursive depth {max_depth} capped at {MAX_RECURSIVE_DEPTH}")
        max_depth = MAX_RECURSIVE_DEPTH
    return tuple(
        RecursiveNode(
            depth=depth,
            task=recursive_task(depth),
            parent=depth - 1 if depth > 0 else None,
            children=(depth + 1,) if depth < max_depth - 1 else (),
            meta_level=meta_level(depth),
            meta_variables=meta_variables(depth),
            termination_conditions=termination_conditions(depth),
        )
        for depth in range(max(0, max_depth))
    )


# =============================================================================
# HIERARCHY
# =============================================================================

@dataclass(frozen=True)
class ThoughtHierarchy:
    num_thoughts: int
    scaling_mode: str
    layout: str  # linear / exponential / balanced / deep
    levels: Dict[int, HierarchyLevel]
    compression_ratio: float
    protocols: MessageProtocols
    message_passing: bool = False
    channels: Optional[ChannelSet] = None
    recursive_depth: int = 0
    recursive_nodes: Tuple[RecursiveNode, ...] = ()

    @property
    def num_levels(self) -> int:
        return len(self.levels)

    def level_for_position(self, position: int) -> int:
        return level_for_position(self, position)


def level_for_position(hierarchy: ThoughtHierarchy, position: int) -> int:
    """Hierarchy level of a 1-based thought position."""
    n = hierarchy.num_thoughts
    if position < 1:
        raise ValueError(f"positions are 1-based, got {position}")
    last = hierarchy.num_levels - 1
    offset = position - 1

    if hierarchy.layout == 'linear':
        level = offset // max(1, n // 10)
    elif hierarchy.layout == 'exponential':
        level = offset // max(1, n // hierarchy.num_levels)
    elif hierarchy.layout == 'balanced':
        level = offset // hierarchy.levels[0].fan_out
    else:
        level = offset // max(1, hierarchy.levels[0].capacity)
    return min(last, level)


def plan_hierarchy(
    num_thoughts: int,
    scaling_mode: str = 'adaptive',
    *,
    message_passing: bool = False,
    recursive_depth: int = 0,
    custom_protocols: Optional[Mapping[str, str]] = None,
) -> ThoughtHierarchy:
    """
    Build the level map and everything derived from it.

    Args:
        num_thoughts: Number of thought positions (at least 1)
        scaling_mode: 'linear', 'exponential' or 'adaptive' (unknown modes fall back to adaptive)
        message_passing: Also build channels for a MessageRouter
        recursive_depth: Recursive node count, capped at 5
        custom_protocols: Overrides for the upward/downward/lateral/recursive protocols

    Returns:
        ThoughtHierarchy
    """
    if not isinstance(num_thoughts, int) or isinstance(num_thoughts, bool) or num_thoughts < 1:
        raise InvalidSchemaConfig(f"num_thoughts must be a positive integer, got {num_thoughts!r}")
    if scaling_mode not in SCALING_MODES:
        logger.warning(f"Unknown scaling mode {scaling_mode!r}, using adaptive")
        scaling_mode = 'adaptive'

    layout = hierarchy_layout(num_thoughts, scaling_mode)
    levels = _LAYOUT_BUILDERS[layout](num_thoughts)
    depth = max(0, min(recursive_depth, MAX_RECURSIVE_DEPTH))

    hierarchy = ThoughtHierarchy(
        num_thoughts=num_thoughts,
        scaling_mode=scaling_mode,
        layout=layout,
        levels=levels,
        compression_ratio=compression_ratio(num_thoughts, scaling_mode),
        protocols=build_protocols(levels, custom_protocols),
        message_passing=message_passing,
        channels=build_channels(levels) if message_passing else None,
        recursive_depth=depth,
        recursive_nodes=build_recursive_nodes(recursive_depth) if recursive_depth > 0 else (),
    )
    logger.info(
        f"Hierarchy planned: thoughts={num_thoughts} mode={scaling_mode} layout={layout} "
        f"levels={len(levels)} compression={hierarchy.compression_ratio:.2f}"
    )
    return hierarchy
