"""
Groups ranked search results into labelled context blocks for prompting.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models.core import MemoryType, RetrievalPolicy, SearchResult
from ..utils.timestamp_utils import age_in_days, to_datetime

FALLBACK_LABEL = 'Relevant Memories'
TRUNCATION_MARK = '…'


@dataclass
class ContextBlock:
    label: str
    items: List[SearchResult] = field(default_factory=list)


@dataclass
class MemoryContext:
    blocks: List[ContextBlock]
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'blocks': [{
                'label': block.label,
                'items': [item.to_dict() for item in block.items]
            } for block in self.blocks],
            'text': self.text,
        }


def _block_specs(now: float) -> List[tuple]:
    def is_recent(item: SearchResult) -> bool:
        return age_in_days(item.timestamp, now) <= 7 or item.memory_type == MemoryType.LOG_EVENT.value

    return [
        ('Key Facts & Preferences', lambda item: item.memory_type in (MemoryType.FACT.value, MemoryType.PREFERENCE.value), 3),
        ('Projects & Plans', lambda item: item.memory_type == MemoryType.PROJECT.value, 3),
        ('Recent Activity', is_recent, 4),
    ]


def _render_item(index: int, item: SearchResult) -> str:
    date_text = f' ({to_datetime(item.timestamp).strftime("%Y-%m-%d")})' if item.timestamp else ''
    return f"{index}. {item.title or 'Untitled'}{date_text} - {item.summary or ''}"


def build_context(results: List[SearchResult], policy: RetrievalPolicy, profile_text: Optional[str] = None,
                  now: Optional[float] = None) -> MemoryContext:
    """
    Build prompt context from search results.

    Results are ordered by importance and sorted into Key Facts & Preferences,
    Projects & Plans and Recent Activity blocks; when none apply a single
    Relevant Memories block holds up to ``policy.max_results`` items. The
    rendered text is cut to the policy's context budget.

    Args:
        results: Ranked search results
        policy: Policy supplying max results and context budget
        profile_text: Optional user profile prepended to the text
        now: Reference time in epoch seconds

    Returns:
        MemoryContext with the blocks and rendered text
    """
    now = time.time() if now is None else now
    ordered = sorted(results, key=lambda item: item.importance_score or 0.0, reverse=True)

    blocks = []
    for label, predicate, block_limit in _block_specs(now):
        items = [item for item in ordered if predicate(item)][:block_limit]
        if items:
            blocks.append(ContextBlock(label=label, items=items))

    if not blocks and ordered:
        blocks.append(ContextBlock(label=FALLBACK_LABEL, items=ordered[:policy.max_results]))

    parts = []
    if profile_text:
        parts.append(f'User Profile Snapshot:\n{profile_text}')
    for block in blocks:
        lines = '\n'.join(_render_item(index, item) for index, item in enumerate(block.items, start=1))
        parts.append(f'{block.label}:\n{lines}')

    text = '\n\n'.join(parts)
    if policy.context_budget and len(text) > policy.context_budget:
        text = text[:policy.context_budget - len(TRUNCATION_MARK)] + TRUNCATION_MARK

    return MemoryContext(blocks=blocks, text=text)
