"""
Memory type inference, importance scoring and metadata merging.
"""

import math
import re
from typing import Any, Dict, Optional

from ..models.core import MemoryType

MEMORY_TYPE_WEIGHTS = {
    MemoryType.FACT.value: 0.95,
    MemoryType.PREFERENCE.value: 0.75,
    MemoryType.PROJECT.value: 0.8,
    MemoryType.LOG_EVENT.value: 0.55,
    MemoryType.REFERENCE.value: 0.7,
}
DEFAULT_TYPE_WEIGHT = 0.6

CONTENT_TYPE_HINTS = (
    (re.compile(r'(project|milestone|roadmap|ticket|issue)'), MemoryType.PROJECT.value),
    (re.compile(r'(email|chat|message|meeting|call|task)'), MemoryType.LOG_EVENT.value),
    (re.compile(r'(preference|habit|routine)'), MemoryType.PREFERENCE.value),
    (re.compile(r'(fact|reference|snippet)'), MemoryType.FACT.value),
)

TEXT_HINTS = (
    (re.compile(r'(preference|likes|favorite|habit|routine)', re.IGNORECASE), MemoryType.PREFERENCE.value),
    (re.compile(r'(fact|definition|reference|glossary)', re.IGNORECASE), MemoryType.FACT.value),
    (re.compile(r'(project|milestone|roadmap)', re.IGNORECASE), MemoryType.PROJECT.value),
    (re.compile(r'(todo|task|meeting|call|email|conversation|chat|thread)', re.IGNORECASE), MemoryType.LOG_EVENT.value),
    (re.compile(r'(article|doc|documentation|guide|tutorial)', re.IGNORECASE), MemoryType.REFERENCE.value),
)

MAX_MERGED_LIST_LENGTH = 50
DUPLICATE_IMPORTANCE_BOOST = 0.05


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if value is None or math.isnan(value):
        return low
    return max(low, min(high, value))


def _known_type(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip().upper() in MEMORY_TYPE_WEIGHTS:
        return value.strip().upper()
    return None


def infer_memory_type(metadata: Optional[Dict[str, Any]] = None, title: Optional[str] = None,
                      content_preview: Optional[str] = None) -> str:
    """
    Pick a memory type from explicit metadata, the capture's content type, then text hints.

    Falls back to REFERENCE.
    """
    metadata = metadata or {}

    explicit = _known_type(metadata.get('memory_type'))
    if explicit:
        return explicit

    content_type = metadata.get('content_type')
    if isinstance(content_type, str):
        lowered = content_type.lower()
        for pattern, memory_type in CONTENT_TYPE_HINTS:
            if pattern.search(lowered):
                return memory_type

    haystack = f"{title or ''} {content_preview or ''}".strip()
    for pattern, memory_type in TEXT_HINTS:
        if pattern.search(haystack):
            return memory_type

    if metadata.get('is_fact') is True:
        return MemoryType.FACT.value
    if metadata.get('preference') or metadata.get('preference_type'):
        return MemoryType.PREFERENCE.value
    if metadata.get('thread_id') or metadata.get('email_id'):
        return MemoryType.LOG_EVENT.value

    return MemoryType.REFERENCE.value


def normalize_importance(raw: Any) -> float:
    """Map an importance hint onto [0, 1]; 1-10 ratings are divided by 10 and percentages by 100."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw):
        return 0.0
    if raw > 10:
        return clamp(raw / 100.0)
    if raw > 1:
        return clamp(raw / 10.0)
    return clamp(float(raw))


def calculate_importance(memory_type: str, content_length: int, metadata: Optional[Dict[str, Any]] = None) -> float:
    """
    Importance score in [0.05, 1] from type weight, content length, topical richness and extracted importance.

    Args:
        memory_type: Inferred memory type
        content_length: Length of the raw content in characters
        metadata: Merged capture and extracted metadata

    Returns:
        Importance score
    """
    metadata = metadata or {}
    topics = metadata.get('topics') or []
    categories = metadata.get('categories') or []

    type_weight = MEMORY_TYPE_WEIGHTS.get(memory_type, DEFAULT_TYPE_WEIGHT)
    length_boost = clamp(content_length / 6000.0, 0.0, 0.35)
    topical_boost = clamp((len(topics) + len(categories)) / 40.0, 0.0, 0.2)
    metadata_boost = normalize_importance(metadata.get('importance')) * 0.4

    return clamp(0.25 + type_weight * 0.4 + length_boost + topical_boost + metadata_boost, 0.05, 1.0)


def merge_metadata(existing: Optional[Dict[str, Any]], incoming: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Merge incoming metadata into an existing map.

    Lists are unioned (order preserved, capped at 50 entries), dicts are
    shallow-merged, and other values are replaced. ``None`` values are ignored.
    """
    base = dict(existing or {})
    merged = dict(base)

    for key, value in (incoming or {}).items():
        if value is None:
            continue
        current = base.get(key)
        if isinstance(value, list) and isinstance(current, list):
            combined = []
            for item in current + value:
                if item not in combined:
                    combined.append(item)
            merged[key] = combined[:MAX_MERGED_LIST_LENGTH]
        elif isinstance(value, dict):
            merged[key] = {**(current if isinstance(current, dict) else {}), **value}
        else:
            merged[key] = value

    return merged
