"""
Batch annotation of latent states.

Each trajectory vector becomes one LatentState record carrying its own
position, so chunks can be computed on a thread pool and concatenated in any
completion order. Nothing shared is written while the pool runs.
"""

import logging
import math
import os
import time
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .coconut_core import norm
from .coconut_hierarchy import Message, MessageRouter, ThoughtHierarchy, level_for_position
from .coconut_model import ReasoningResult
from .coconut_transforms import (
    AttentionPattern, RoutingDecision, SuperpositionState, build_superposition_state,
)

logger = logging.getLogger('coconut')

RECURSIVE_POSITION_STRIDE = 50


@dataclass(frozen=True, eq=False)
class LatentState:
    position: int  # 1-based
    hidden_state: np.ndarray
    metadata: Dict[str, Any]
    messages: List[Message] = field(default_factory=list)
    recursive_context: Dict[str, Any] = field(default_factory=dict)
    superposition_state: Optional[SuperpositionState] = None


def stream_for_position(streams: int, position: int) -> int:
    return (position - 1) % max(1, streams) + 1


def initial_messages(hierarchy: ThoughtHierarchy, position: int, vector: np.ndarray) -> List[Message]:
    """Upward summary to the parent level, lateral coordination on this position's stream."""
    level = level_for_position(hierarchy, position)
    info = hierarchy.levels[level]
    vector_norm = norm(vector)
    messages = []

    if level > 0:
        messages.append(Message(
            sender=('thought', position),
            receiver=('level', level - 1),
            content={
                'type': 'initialization',
                'position': position,
                'hierarchy_level': level,
                'vector_norm': vector_norm,
            },
            message_type='summary',
            priority=0.5,
        ))

    if info.parallel_streams > 1:
        stream_id = stream_for_position(info.parallel_streams, position)
        messages.append(Message(
            sender=('thought', position),
            receiver=('stream', stream_id),
            content={
                'type': 'lateral_coordination',
                'position': position,
                'stream_id': stream_id,
                'vector_norm': vector_norm,
            },
            message_type='coordination',
            priority=0.3,
        ))
    return messages


def recursive_context(hierarchy: ThoughtHierarchy, position: int) -> Dict[str, Any]:
    depth = hierarchy.recursive_depth
    level = min(depth, (position - 1) // RECURSIVE_POSITION_STRIDE)
    return {
        'recursive_level': level,
        'parent_level': level - 1 if level > 0 else None,
        'meta_variables': {
            'abstraction_level': level / depth,
            'meta_reasoning_enabled': level > 0,
            'recursive_optimization': level > 1,
        },
        'termination_conditions': {
            'max_recursive_depth': depth,
            'convergence_threshold': 0.01 * (level + 1),
            'resource_limit': max(100, 500 - level * 100),
        },
    }


def _annotate_one(hierarchy: ThoughtHierarchy, position: int, vector: np.ndarray,
                  pattern: Optional[AttentionPattern], decision: Optional[RoutingDecision],
                  superposition_components: int) -> LatentState:
    level = level_for_position(hierarchy, position)
    info = hierarchy.levels[level]

    metadata = {
        'reasoning_step': position,
        'vector_norm': norm(vector),
        'attention_score': pattern.attention_score if pattern is not None else 0.0,
        'routing_probability': decision.selected_path[0] if decision is not None else 0.0,
        'hierarchy_level': level,
        'specialization': info.specialization,
        'stream_id': stream_for_position(info.parallel_streams, position),
        'exploration_width': info.exploration_width,
        'abstraction_level': info.abstraction_level,
        'scaling_mode': hierarchy.scaling_mode,
    }
    return LatentState(
        position=position,
        hidden_state=vector,
        metadata=metadata,
        messages=initial_messages(hierarchy, position, vector) if hierarchy.message_passing else [],
        recursive_context=recursive_context(hierarchy, position) if hierarchy.recursive_depth > 0 else {},
        superposition_state=build_superposition_state(vector, superposition_components),
    )


def _at(items: Optional[Sequence], index: int):
    if items is None or index >= len(items):
        return None
    return items[index]


def annotate_latent_states(
    hierarchy: ThoughtHierarchy,
    trajectory: Sequence[np.ndarray],
    attention_patterns: Optional[Sequence[AttentionPattern]] = None,
    routing_decisions: Optional[Sequence[RoutingDecision]] = None,
    *,
    workers: Optional[int] = None,
    superposition_components: int = 5,
) -> List[LatentState]:
    """
    Build one LatentState per trajectory vector.

    Args:
        hierarchy: Planned hierarchy; positions beyond its thought count
            land on its last level
        trajectory: Hidden vectors, position i+1 at index i
        attention_patterns, routing_decisions: Optional per-step records
        workers: Chunk / thread count (default os.cpu_count())

    Returns:
        Records sorted by position
    """
    total = len(trajectory)
    if total == 0:
        return []

    workers = max(1, min(workers or os.cpu_count() or 1, total))
    chunk_size = math.ceil(total / workers)
    chunks = [range(start, min(start + chunk_size, total)) for start in range(0, total, chunk_size)]

    def run_chunk(indices: range) -> List[LatentState]:
        return [
            _annotate_one(hierarchy, i + 1, np.asarray(trajectory[i]),
                          _at(attention_patterns, i), _at(routing_decisions, i),
                          superposition_components)
            for i in indices
        ]

    start_time = time.time()
    states: List[LatentState] = []
    with ThreadPoolExecutor(max_workers=len(chunks)) as pool:
        for chunk_states in pool.map(run_chunk, chunks):
            states.extend(chunk_states)
    states.sort(key=lambda s: s.position)

    logger.debug(
        f"Annotated {total} latent states in {len(chunks)} chunks "
        f"({time.time() - start_time:.3f}s)"
    )
    return states


def latent_states_from_result(hierarchy: ThoughtHierarchy, result: ReasoningResult,
                              **kwargs) -> List[LatentState]:
    return annotate_latent_states(
        hierarchy,
        result.thought_trajectory,
        result.attention_patterns,
        result.routing_decisions,
        **kwargs,
    )


def message_channel_id(state: LatentState, message: Message) -> str:
    """Channel a state's initial message travels on: upward_<level> or lateral_<level>_<stream>."""
    level = state.metadata['hierarchy_level']
    kind, target = message.receiver
    if kind == 'level':
        return f"upward_{level}"
    return f"lateral_{level}_{target}"


def route_initial_messages(router: MessageRouter, states: Sequence[LatentState]) -> Dict[str, int]:
    """Post every state's initial messages to their channels."""
    accepted = rejected = 0
    for state in states:
        for message in state.messages:
            if router.post(message, message_channel_id(state, message)):
                accepted += 1
            else:
                rejected += 1
    if rejected:
        logger.debug(f"Routed {accepted} initial messages, {rejected} rejected")
    return {'accepted': accepted, 'rejected': rejected}
