"""
Retrieval policy registry and relevance scoring.

A policy weights the semantic, keyword and importance signals of a memory,
decays it by age, and restricts which memories a query may return.
"""

import time
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional, TypeVar

from ..models.core import MemoryType, RetrievalPolicy
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import age_in_days

logger = get_logger(__name__)

DEFAULT_POLICY_NAME = 'chat'

POLICIES: Mapping[str, RetrievalPolicy] = MappingProxyType({
    'chat':
    RetrievalPolicy(name='chat',
                    description='Balanced recall for conversational lookups',
                    semantic_weight=0.55,
                    keyword_weight=0.25,
                    importance_weight=0.2,
                    recency_half_life_days=21,
                    max_results=12,
                    context_budget=1800),
    'planning':
    RetrievalPolicy(name='planning',
                    description='Recent projects and activity for planning work',
                    semantic_weight=0.4,
                    keyword_weight=0.2,
                    importance_weight=0.4,
                    recency_half_life_days=14,
                    max_results=15,
                    time_range_days=45,
                    allowed_types=(MemoryType.PROJECT.value, MemoryType.LOG_EVENT.value),
                    context_budget=2200),
    'profile':
    RetrievalPolicy(name='profile',
                    description='Long-lived facts and preferences about the user',
                    semantic_weight=0.35,
                    keyword_weight=0.25,
                    importance_weight=0.4,
                    recency_half_life_days=90,
                    max_results=10,
                    allowed_types=(MemoryType.FACT.value, MemoryType.PREFERENCE.value, MemoryType.REFERENCE.value),
                    context_budget=1500),
    'summarization':
    RetrievalPolicy(name='summarization',
                    description='Short window of recent activity for digests',
                    semantic_weight=0.5,
                    keyword_weight=0.2,
                    importance_weight=0.3,
                    recency_half_life_days=10,
                    max_results=8,
                    time_range_days=14,
                    allowed_types=(MemoryType.LOG_EVENT.value, MemoryType.PROJECT.value),
                    context_budget=1200),
    'insight':
    RetrievalPolicy(name='insight',
                    description='Wide recall for pattern and insight generation',
                    semantic_weight=0.5,
                    keyword_weight=0.2,
                    importance_weight=0.3,
                    recency_half_life_days=30,
                    max_results=20,
                    context_budget=2500),
})

T = TypeVar('T')


def get_policy(name: Any = None) -> RetrievalPolicy:
    """
    Look up a policy by name, case-insensitively.

    Never fails: unknown, missing or non-string names yield the chat policy.
    """
    if isinstance(name, str):
        policy = POLICIES.get(name.strip().lower())
        if policy is not None:
            return policy
        if name.strip():
            logger.debug(f"Unknown retrieval policy '{name}', falling back to '{DEFAULT_POLICY_NAME}'")
    return POLICIES[DEFAULT_POLICY_NAME]


def list_policies() -> List[RetrievalPolicy]:
    return list(POLICIES.values())


def recency_factor(age_days: float, half_life_days: float) -> float:
    """Exponential half-life decay; ages below zero count as zero."""
    if half_life_days <= 0:
        return 1.0
    return 0.5**(max(0.0, age_days) / half_life_days)


def apply_policy_score(semantic: float, keyword: float, importance: float, recency_days: float,
                       policy: RetrievalPolicy) -> float:
    """
    Blend raw signals into a policy score.

    The weighted sum is scaled by ``0.8 + 0.2 * recency`` so the result always
    lies in ``[0.8 * raw, raw]``.

    Args:
        semantic: Semantic similarity in [0, 1]
        keyword: Keyword score in [0, 1]
        importance: Memory importance (clamped to [0, 1])
        recency_days: Age of the memory in days
        policy: Policy supplying weights and half-life

    Returns:
        The policy score
    """
    importance = max(0.0, min(1.0, importance or 0.0))
    recency = recency_factor(recency_days, policy.recency_half_life_days)
    raw = semantic * policy.semantic_weight + keyword * policy.keyword_weight + importance * policy.importance_weight
    return raw * (0.8 + 0.2 * recency)


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def passes_policy(item: Any, policy: RetrievalPolicy, now: Optional[float] = None) -> bool:
    """True when the item's category and age are allowed by the policy.

    Items without a category are not excluded by the allow-list.
    """
    if policy.allowed_types:
        memory_type = _field(item, 'memory_type')
        memory_type = getattr(memory_type, 'value', memory_type)
        if memory_type and memory_type not in policy.allowed_types:
            return False
    if policy.time_range_days:
        if age_in_days(_field(item, 'timestamp'), now) > policy.time_range_days:
            return False
    return True


def filter_by_policy(items: Iterable[T], policy: RetrievalPolicy, now: Optional[float] = None) -> List[T]:
    """
    Drop items outside the policy's allowed types or time range.

    Args:
        items: Memories, search results or dicts exposing ``memory_type`` and ``timestamp``
        policy: Policy to apply
        now: Reference time in epoch seconds (defaults to the current time)

    Returns:
        Items that pass, in their original order
    """
    if now is None:
        now = time.time()
    return [item for item in items if passes_policy(item, policy, now)]
