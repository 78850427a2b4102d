"""
Memory mesh maintenance: links each new memory to its most similar neighbours and prunes weak edges.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from ..models.core import LinkResult, Memory, MemoryRelation, RelationType
from ..utils.bedrock_embed import BedrockEmbedError
from ..utils.config import GraphConfig
from ..utils.errors import FatalProviderError, GraphConsistencyError, NotFoundError, TransientProviderError
from ..utils.logging_config import get_logger
from ..utils.memory_store import MemoryStore
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import SECONDS_PER_DAY, SECONDS_PER_HOUR, now_seconds
from .canonicalizer import url_host

logger = get_logger(__name__)

TOPICAL_FIELD_WEIGHTS = (
    ('topics', 0.4),
    ('categories', 0.3),
    ('keyPoints', 0.2),
    ('searchableTerms', 0.1),
)
SAME_HOST_BOOST = 0.1

SECONDS_PER_WEEK = 7 * SECONDS_PER_DAY
SECONDS_PER_MONTH = 30 * SECONDS_PER_DAY


@dataclass
class EdgeCandidate:
    memory: Memory
    score: float
    relation_type: str
    semantic: float = 0.0
    topical: float = 0.0
    temporal: float = 0.0


def _as_term_set(values: Any) -> Set[str]:
    if not isinstance(values, (list, tuple, set)):
        return set()
    return {str(value).strip().lower() for value in values if str(value).strip()}


def set_overlap(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard overlap of two term collections; 0 when either is empty."""
    set_a, set_b = set(a), set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def topical_similarity(a: Memory, b: Memory) -> float:
    """
    Weighted metadata overlap of two memories.

    Topics, categories, key points and searchable terms contribute 0.4, 0.3,
    0.2 and 0.1 of their Jaccard overlap; memories from the same host get
    +0.1. Capped at 1.
    """
    meta_a = a.metadata or {}
    meta_b = b.metadata or {}
    score = sum(weight * set_overlap(_as_term_set(meta_a.get(key)), _as_term_set(meta_b.get(key)))
                for key, weight in TOPICAL_FIELD_WEIGHTS)

    host_a, host_b = url_host(a.url), url_host(b.url)
    if host_a and host_a == host_b:
        score += SAME_HOST_BOOST
    return min(1.0, score)


def temporal_proximity(a_timestamp: Optional[int], b_timestamp: Optional[int]) -> float:
    """
    Tiered closeness of two capture times.

    Same hour scores 0.9-1.0, same day 0.7-0.9, same week 0.4-0.7 and same
    month 0.1-0.4, each decaying linearly inside its tier. Anything further
    apart scores 0.
    """
    if a_timestamp is None or b_timestamp is None:
        return 0.0
    diff = abs(int(a_timestamp) - int(b_timestamp))
    if diff <= SECONDS_PER_HOUR:
        return 0.9 + 0.1 * (1 - diff / SECONDS_PER_HOUR)
    if diff <= SECONDS_PER_DAY:
        return 0.7 + 0.2 * (1 - diff / SECONDS_PER_DAY)
    if diff <= SECONDS_PER_WEEK:
        return 0.4 + 0.3 * (1 - diff / SECONDS_PER_WEEK)
    if diff <= SECONDS_PER_MONTH:
        return 0.1 + 0.3 * (1 - diff / SECONDS_PER_MONTH)
    return 0.0


def combine_channels(semantic: float, topical: float, temporal: float, config: GraphConfig) -> Tuple[float, str]:
    """Maximum weighted channel score and the channel that produced it; ties favour semantic, then topical."""
    weighted = (
        (semantic * config.semantic_weight, RelationType.SEMANTIC.value),
        (topical * config.topical_weight, RelationType.TOPICAL.value),
        (temporal * config.temporal_weight, RelationType.TEMPORAL.value),
    )
    best_score, best_type = weighted[0]
    for score, relation_type in weighted[1:]:
        if score > best_score:
            best_score, best_type = score, relation_type
    return max(0.0, min(1.0, best_score)), best_type


class _OwnerLock:

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class RelationGraphBuilder:
    """Maintains bidirectional, degree-bounded similarity edges between one owner's memories."""

    def __init__(self, store: MemoryStore, vector_index=None, embedder=None, verifier=None,
                 graph_config: Optional[GraphConfig] = None):
        """
        Initialize the graph builder.

        Args:
            store: Relational store holding memories and relations
            vector_index: Vector index with ``get_vector``, ``upsert_vector`` and ``query_vectors`` (optional)
            embedder: Embedder used when a memory has no stored vector (optional)
            verifier: Object with ``verify_relation(source, candidate, similarity, temporal_proximity)`` (optional)
            graph_config: Channel weights and thresholds
        """
        self.store = store
        self.vector_index = vector_index
        self.embedder = embedder
        self.verifier = verifier
        self.config = graph_config or GraphConfig()
        self._owner_locks: Dict[str, _OwnerLock] = {}
        self._owner_locks_guard = threading.Lock()
        logger.info('Initialized RelationGraphBuilder')

    @contextmanager
    def _owner_lock(self, owner_id: str) -> Iterator[None]:
        """Serialize relation writes per owner. A lock is dropped from the registry once nobody holds or awaits it."""
        with self._owner_locks_guard:
            entry = self._owner_locks.get(owner_id)
            if entry is None:
                entry = self._owner_locks[owner_id] = _OwnerLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._owner_locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._owner_locks[owner_id]

    def link_memory(self, memory_id: str, owner_id: Optional[str] = None, now: Optional[int] = None) -> LinkResult:
        """
        Link a memory into its owner's mesh, replacing any edges it already has.

        Args:
            memory_id: Memory to link
            owner_id: Expected owner (optional, checked against the stored memory)
            now: Creation timestamp for the written edges

        Returns:
            LinkResult with the number of neighbour links created and pruned

        Raises:
            NotFoundError: If the memory does not exist
            GraphConsistencyError: If ``owner_id`` does not own the memory
        """
        memory = self.store.get_memory(memory_id)
        if memory is None:
            raise NotFoundError(f'Unknown memory: {memory_id}')
        if owner_id is not None and memory.owner_id != owner_id:
            raise GraphConsistencyError(f'Memory {memory_id} does not belong to owner {owner_id}')

        now = now_seconds() if now is None else now
        with self._owner_lock(memory.owner_id):
            candidates = self._score_candidates(memory)
            selected = self._select(memory, candidates)
            created, pruned = self._persist(memory, selected, now)

        logger.info(f'Linked memory {memory_id}: {created} created, {pruned} pruned, {len(selected)} neighbours')
        return LinkResult(memory_id=memory_id, edges_created=created, edges_pruned=pruned)

    def _semantic_scores(self, memory: Memory) -> Dict[str, float]:
        if self.vector_index is None:
            return {}
        try:
            vector = self.vector_index.get_vector(memory.id)
            if vector is None and self.embedder is not None:
                vector = self.embedder.embed_document(embedding_text(memory))
                self.vector_index.upsert_vector(memory.id, memory.owner_id, vector)
            if vector is None:
                return {}
            hits = self.vector_index.query_vectors(vector, memory.owner_id, self.config.semantic_candidates + 1)
        except (OpenSearchError, BedrockEmbedError) as e:
            logger.warning(f'Semantic channel unavailable while linking {memory.id}: {e}')
            return {}
        return {memory_id: score for memory_id, score in hits if memory_id != memory.id}

    def _score_candidates(self, memory: Memory) -> List[EdgeCandidate]:
        semantic = self._semantic_scores(memory)

        others = {m.id: m for m in self.store.list_memories(memory.owner_id, limit=self.config.candidate_scan_limit)}
        missing = [memory_id for memory_id in semantic if memory_id not in others]
        if missing:
            others.update(self.store.get_memories(missing))
        others.pop(memory.id, None)

        candidates = []
        for other in others.values():
            if other.owner_id != memory.owner_id:
                continue
            semantic_score = semantic.get(other.id, 0.0)
            topical_score = topical_similarity(memory, other)
            temporal_score = temporal_proximity(memory.timestamp, other.timestamp)
            score, relation_type = combine_channels(semantic_score, topical_score, temporal_score, self.config)
            if score <= 0:
                continue
            candidates.append(
                EdgeCandidate(memory=other,
                              score=score,
                              relation_type=relation_type,
                              semantic=semantic_score,
                              topical=topical_score,
                              temporal=temporal_score))

        candidates.sort(key=lambda c: (c.score, c.temporal), reverse=True)
        logger.debug(f'Scored {len(candidates)} candidates for memory {memory.id}')
        return candidates

    def _verify(self, memory: Memory, candidate: EdgeCandidate) -> bool:
        try:
            return self.verifier.verify_relation({
                'title': memory.title,
                'summary': memory.summary
            }, {
                'title': candidate.memory.title,
                'summary': candidate.memory.summary
            }, candidate.score, candidate.temporal)
        except (TransientProviderError, FatalProviderError) as e:
            logger.warning(f'Relation verifier failed for {memory.id} -> {candidate.memory.id}, keeping score: {e}')
            return True

    def _select(self, memory: Memory, candidates: List[EdgeCandidate]) -> List[EdgeCandidate]:
        accepted: List[EdgeCandidate] = []
        rejected: Set[str] = set()

        for candidate in candidates:
            if len(accepted) >= self.config.max_degree:
                break
            if candidate.score < self.config.min_similarity:
                continue
            if self.verifier is not None and candidate.score < self.config.verify_threshold:
                if not self._verify(memory, candidate):
                    rejected.add(candidate.memory.id)
                    continue
            accepted.append(candidate)

        if len(accepted) < self.config.min_degree:
            chosen = {c.memory.id for c in accepted}
            for candidate in candidates:
                if len(accepted) >= self.config.min_degree:
                    break
                if candidate.memory.id in chosen or candidate.memory.id in rejected:
                    continue
                if candidate.score >= self.config.floor_similarity:
                    accepted.append(candidate)
                    chosen.add(candidate.memory.id)

        return accepted

    def _check_edge(self, source: Memory, target: Memory) -> None:
        if source.id == target.id:
            raise GraphConsistencyError(f'Refusing self-loop on memory {source.id}')
        if source.owner_id != target.owner_id:
            raise GraphConsistencyError(f'Refusing edge {source.id} -> {target.id} across owners')

    def _persist(self, memory: Memory, selected: List[EdgeCandidate], now: int) -> Tuple[int, int]:
        for candidate in selected:
            self._check_edge(memory, candidate.memory)

        existing_neighbours = {relation.related_memory_id for relation in self.store.get_outgoing_relations(memory.id)}
        selected_by_id = {candidate.memory.id: candidate for candidate in selected}

        deletes: Set[Tuple[str, str]] = set()
        pruned_pairs: Set[frozenset] = set()
        for neighbour_id in existing_neighbours - set(selected_by_id):
            deletes.update({(memory.id, neighbour_id), (neighbour_id, memory.id)})
            pruned_pairs.add(frozenset((memory.id, neighbour_id)))

        # Re-bound each neighbour's degree with the new edge in place
        for neighbour_id, candidate in list(selected_by_id.items()):
            edges = {r.related_memory_id: r.similarity_score for r in self.store.get_outgoing_relations(neighbour_id)}
            edges = {k: v for k, v in edges.items() if (neighbour_id, k) not in deletes}
            edges[memory.id] = candidate.score
            if len(edges) <= self.config.max_degree:
                continue
            ranked = sorted(edges.items(), key=lambda item: item[1], reverse=True)
            for dropped_id, _ in ranked[self.config.max_degree:]:
                if dropped_id == memory.id:
                    selected_by_id.pop(neighbour_id)
                    continue
                deletes.update({(neighbour_id, dropped_id), (dropped_id, neighbour_id)})
                pruned_pairs.add(frozenset((neighbour_id, dropped_id)))

        upserts = []
        for neighbour_id, candidate in selected_by_id.items():
            for source_id, target_id in ((memory.id, neighbour_id), (neighbour_id, memory.id)):
                upserts.append(
                    MemoryRelation(memory_id=source_id,
                                   related_memory_id=target_id,
                                   similarity_score=candidate.score,
                                   relation_type=candidate.relation_type,
                                   created_at=now))

        # A neighbour that dropped this memory keeps no edge in either direction
        for neighbour_id in existing_neighbours & (set(c.memory.id for c in selected) - set(selected_by_id)):
            deletes.update({(memory.id, neighbour_id), (neighbour_id, memory.id)})
            pruned_pairs.add(frozenset((memory.id, neighbour_id)))

        self.store.apply_relation_changes(upserts, sorted(deletes))

        created = len(set(selected_by_id) - existing_neighbours)
        return created, len(pruned_pairs)

    def cleanup(self, owner_id: Optional[str] = None, now: Optional[int] = None) -> int:
        """
        Remove weak edges, and old edges that never became strong.

        Args:
            owner_id: Restrict cleanup to one owner's mesh (optional)
            now: Reference time in epoch seconds

        Returns:
            Number of relation rows removed
        """
        now = now_seconds() if now is None else now
        cutoff = now - self.config.cleanup_age_days * SECONDS_PER_DAY

        def _delete() -> int:
            return self.store.delete_weak_relations(self.config.cleanup_threshold, self.config.cleanup_age_threshold,
                                                    cutoff, owner_id)

        if owner_id is not None:
            with self._owner_lock(owner_id):
                removed = _delete()
        else:
            removed = _delete()

        logger.info(f"Relation cleanup removed {removed} edges (owner={owner_id or 'all'})")
        return removed

    def get_memory_relations(self, memory_id: str) -> Dict[str, Any]:
        """Outgoing and incoming relations of a memory with summary statistics."""
        memory = self.store.get_memory(memory_id)
        if memory is None:
            raise NotFoundError(f'Unknown memory: {memory_id}')

        outgoing = self.store.get_outgoing_relations(memory_id)
        incoming = self.store.get_incoming_relations(memory_id)
        related = self.store.get_memories([r.related_memory_id for r in outgoing] + [r.memory_id for r in incoming])

        def describe(relation: MemoryRelation, other_id: str) -> Dict[str, Any]:
            other = related.get(other_id)
            return {
                'memory_id': other_id,
                'title': other.title if other else None,
                'url': other.url if other else None,
                'similarity_score': relation.similarity_score,
                'relation_type': relation.relation_type,
                'created_at': relation.created_at,
            }

        all_relations = outgoing + incoming
        by_type: Dict[str, int] = {}
        for relation in all_relations:
            by_type[relation.relation_type] = by_type.get(relation.relation_type, 0) + 1

        return {
            'memory_id': memory_id,
            'outgoing': [describe(r, r.related_memory_id) for r in outgoing],
            'incoming': [describe(r, r.memory_id) for r in incoming],
            'stats': {
                'outgoing': len(outgoing),
                'incoming': len(incoming),
                'by_type': by_type,
                'average_similarity': (sum(r.similarity_score for r in all_relations) / len(all_relations)
                                       if all_relations else 0.0),
            },
        }

    def get_mesh(self, owner_id: str, limit: int = 50) -> Dict[str, Any]:
        """
        Snapshot of an owner's mesh for visualisation.

        Returns:
            Dict with ``nodes``, undirected ``edges`` and ``clusters`` keyed by memory type
        """
        if not self.store.user_exists(owner_id):
            raise NotFoundError(f'Unknown owner: {owner_id}')

        memories = self.store.list_memories(owner_id, limit=limit)
        nodes = [{
            'id': m.id,
            'title': m.title,
            'url': m.url,
            'type': m.memory_type,
            'importance_score': m.importance_score,
            'timestamp': m.timestamp,
        } for m in memories]

        edges = []
        seen: Set[frozenset] = set()
        for relation in self.store.list_relations([m.id for m in memories]):
            pair = frozenset((relation.memory_id, relation.related_memory_id))
            if pair in seen:
                continue
            seen.add(pair)
            edges.append({
                'source': relation.memory_id,
                'target': relation.related_memory_id,
                'relation_type': relation.relation_type,
                'similarity_score': relation.similarity_score,
            })

        clusters: Dict[str, List[str]] = {}
        for node in nodes:
            clusters.setdefault(node['type'], []).append(node['id'])

        return {'nodes': nodes, 'edges': edges, 'clusters': clusters}


def embedding_text(memory: Memory) -> str:
    """Text indexed in the vector store for a memory: title plus summary (or raw content)."""
    return '\n'.join(part for part in (memory.title, memory.summary or memory.content) if part)
