"""
Core data models for the memory mesh.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class MemoryType(str, Enum):
    """Category a memory is filed under; retrieval policies allow-list these."""
    FACT = 'FACT'
    PREFERENCE = 'PREFERENCE'
    LOG_EVENT = 'LOG_EVENT'
    REFERENCE = 'REFERENCE'
    PROJECT = 'PROJECT'


class RelationType(str, Enum):
    """Channel that produced a relation between two memories."""
    SEMANTIC = 'semantic'
    TOPICAL = 'topical'
    TEMPORAL = 'temporal'


@dataclass
class Memory:
    """A captured piece of content belonging to one owner.

    ``(owner_id, canonical_hash)`` is unique; the row is only created once the
    summary exists.
    """
    id: str
    owner_id: str
    content: str
    canonical_text: str
    canonical_hash: str
    timestamp: int  # epoch seconds of the capture
    url: Optional[str] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    memory_type: str = MemoryType.REFERENCE.value
    importance_score: float = 0.0
    access_count: int = 0
    last_accessed: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[int] = None


@dataclass
class MemorySnapshot:
    """Immutable copy of the raw text and summary taken at ingestion."""
    id: str
    owner_id: str
    raw_text: str
    summary: str
    summary_hash: str
    created_at: int


@dataclass
class MemoryRelation:
    """Directed edge of the memory mesh. Edges are stored in both directions."""
    memory_id: str
    related_memory_id: str
    similarity_score: float
    relation_type: str
    created_at: int
    id: Optional[str] = None


@dataclass(frozen=True)
class RetrievalPolicy:
    """Named weighting and filtering profile used to rank search results."""
    name: str
    description: str
    semantic_weight: float
    keyword_weight: float
    importance_weight: float
    recency_half_life_days: float
    max_results: int
    time_range_days: Optional[int] = None
    allowed_types: Optional[Tuple[str, ...]] = None
    context_budget: Optional[int] = None


@dataclass
class SearchCandidate:
    """Raw signals for one memory, collected from the keyword and semantic channels."""
    memory: Memory
    keyword_score: float = 0.0
    semantic_score: float = 0.0
    channel: str = 'keyword'


@dataclass
class SearchResult:
    memory_id: str
    title: Optional[str]
    summary: Optional[str]
    url: Optional[str]
    memory_type: str
    timestamp: int
    importance_score: float
    keyword_score: float
    semantic_score: float
    blended_score: float
    policy_score: float
    channel: str
    rank: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchResponse:
    """Envelope returned by hybrid search."""
    query: str
    results: List[SearchResult]
    total: int
    page: int
    limit: int
    applied_policy: str
    applied_filters: Dict[str, Any]
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query': self.query,
            'results': [result.to_dict() for result in self.results],
            'total': self.total,
            'page': self.page,
            'limit': self.limit,
            'applied_policy': self.applied_policy,
            'applied_filters': self.applied_filters,
            'degraded': self.degraded,
        }


@dataclass
class IngestResult:
    memory_id: str
    deduplicated: bool


@dataclass
class LinkResult:
    memory_id: str
    edges_created: int
    edges_pruned: int


@dataclass
class IngestionJob:
    """A queued capture. ``attempt`` counts deliveries, starting at 1."""
    job_id: str
    owner_id: str
    raw_text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    receipt: Optional[str] = None
