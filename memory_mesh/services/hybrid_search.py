"""
Hybrid search: keyword and semantic candidate channels fused into one ranked, paginated result set.
"""

import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional, Tuple

from ..models.context import RequestContext
from ..models.core import Memory, SearchCandidate, SearchResponse, SearchResult
from ..utils.config import SearchConfig
from ..utils.errors import InvalidQueryError, NotFoundError, QueryCancelledError
from ..utils.logging_config import get_logger
from ..utils.memory_store import MemoryStore
from ..utils.timestamp_utils import age_in_days
from .retrieval_policy import apply_policy_score, filter_by_policy, get_policy

logger = get_logger(__name__)

NON_WORD_RE = re.compile(r'[^\w\s]')

TITLE_TOKEN_SCORE = 0.4
SUMMARY_TOKEN_SCORE = 0.3
CONTENT_TOKEN_SCORE = 0.2
TITLE_PHRASE_BONUS = 0.2
SUMMARY_PHRASE_BONUS = 0.15
COVERAGE_BOOST = 0.3

SEMANTIC_WORKERS = 4


def tokenize(query: str) -> List[str]:
    """Lowercase, replace punctuation with spaces, split, and keep tokens longer than two characters."""
    return [token for token in NON_WORD_RE.sub(' ', (query or '').lower()).split() if len(token) > 2]


def _contains_word(text: str, token: str) -> bool:
    return re.search(rf'\b{re.escape(token)}\b', text) is not None


def keyword_score(memory: Memory, tokens: List[str], query: str) -> float:
    """
    Keyword relevance of a memory for the tokenized query.

    Each token scores 0.4/0.3/0.2 for a word match in title/summary/content;
    the sum is averaged over tokens, phrase bonuses are added, and the result
    is boosted by token coverage and clamped to [0, 1].

    Args:
        memory: Candidate memory
        tokens: Output of ``tokenize(query)``
        query: Original query text

    Returns:
        Score in [0, 1]
    """
    if not tokens:
        return 0.0

    title = (memory.title or '').lower()
    summary = (memory.summary or '').lower()
    content = (memory.content or '').lower()

    score = 0.0
    matched = 0
    for token in tokens:
        hit = False
        if _contains_word(title, token):
            score += TITLE_TOKEN_SCORE
            hit = True
        if _contains_word(summary, token):
            score += SUMMARY_TOKEN_SCORE
            hit = True
        if _contains_word(content, token):
            score += CONTENT_TOKEN_SCORE
            hit = True
        if hit:
            matched += 1

    score /= len(tokens)

    phrase = (query or '').strip().lower()
    if phrase:
        if phrase in title:
            score += TITLE_PHRASE_BONUS
        if phrase in summary:
            score += SUMMARY_PHRASE_BONUS

    coverage = matched / len(tokens)
    score *= 1 + COVERAGE_BOOST * coverage
    return max(0.0, min(1.0, score))


def blend_scores(keyword: Optional[float], semantic: Optional[float], config: Optional[SearchConfig] = None) -> Tuple[float, str]:
    """
    Fuse channel scores for one memory.

    Args:
        keyword: Keyword score, or None when the keyword channel missed the memory
        semantic: Semantic score, or None when the semantic channel missed the memory

    Returns:
        Tuple of (blended score, channel label)
    """
    config = config or SearchConfig()
    if keyword is not None and semantic is not None:
        return keyword * config.keyword_fusion_weight + semantic * config.semantic_fusion_weight, 'hybrid'
    if keyword is not None:
        return keyword * config.keyword_fusion_weight, 'keyword'
    if semantic is not None:
        return semantic, 'semantic'
    return 0.0, 'none'


class HybridSearchService:
    """Runs the keyword and semantic channels concurrently and blends their results.

    The keyword channel runs on the calling thread and the semantic channel on a
    dedicated pool. A hung embedding or vector call only holds a semantic worker,
    and the search returns keyword results once ``channel_timeout`` expires.
    """

    def __init__(self, store: MemoryStore, embedder=None, vector_index=None, search_config: Optional[SearchConfig] = None):
        """
        Initialize the search service.

        Args:
            store: Relational store used by the keyword channel and to load memories
            embedder: Object with ``embed_query(text)``; the semantic channel is disabled when None
            vector_index: Object with ``query_vectors(vector, owner_id, limit)``
            search_config: Fusion weights, limits and timeouts
        """
        self.store = store
        self.embedder = embedder
        self.vector_index = vector_index
        self.config = search_config or SearchConfig()
        self._semantic_executor = ThreadPoolExecutor(max_workers=SEMANTIC_WORKERS, thread_name_prefix='semantic-search')
        logger.info('Initialized HybridSearchService')

    def _keyword_channel(self, owner_id: str, tokens: List[str], query: str, fetch_limit: int) -> Dict[str, Tuple[Memory, float]]:
        hits = {}
        for memory in self.store.keyword_candidates(owner_id, tokens, fetch_limit):
            score = keyword_score(memory, tokens, query)
            if score > 0:
                hits[memory.id] = (memory, score)
        logger.debug(f'Keyword channel returned {len(hits)} candidates for owner {owner_id}')
        return hits

    def _semantic_channel(self, owner_id: str, query: str, fetch_limit: int, ctx: RequestContext) -> Dict[str, float]:
        ctx.raise_if_cancelled()
        vector = self.embedder.embed_query(query)
        ctx.raise_if_cancelled()
        hits = self.vector_index.query_vectors(vector, owner_id, fetch_limit)
        scores = {memory_id: score for memory_id, score in hits if score >= self.config.min_semantic_score}
        logger.debug(f'Semantic channel returned {len(scores)} candidates for owner {owner_id}')
        return scores

    def _resolve_limit(self, limit: Optional[int], policy_max: int) -> int:
        if limit is None:
            limit = policy_max or self.config.default_limit
        return max(1, min(int(limit), self.config.max_limit))

    def search(self,
               owner_id: str,
               query: str,
               policy_name: Optional[str] = None,
               limit: Optional[int] = None,
               page: int = 1,
               ctx: Optional[RequestContext] = None,
               now: Optional[float] = None) -> SearchResponse:
        """
        Search an owner's memories.

        Args:
            owner_id: Owner whose memories are searched
            query: Natural-language query
            policy_name: Retrieval policy name (falls back to chat)
            limit: Page size (defaults to the policy's max results, capped at the configured maximum)
            page: 1-based page number
            ctx: Request context carrying the cancel event
            now: Reference time in epoch seconds for policy filters

        Returns:
            SearchResponse with ranked results and the applied policy

        Raises:
            InvalidQueryError: If the query is empty
            NotFoundError: If the owner does not exist
            QueryCancelledError: If the request is cancelled before the semantic lookup
        """
        if not isinstance(query, str) or not query.strip():
            raise InvalidQueryError('Search query must be a non-empty string')

        ctx = ctx or RequestContext(owner_id=owner_id)
        now = time.time() if now is None else now
        policy = get_policy(policy_name)
        limit = self._resolve_limit(limit, policy.max_results)
        page = max(1, int(page or 1))

        if not self.store.user_exists(owner_id):
            raise NotFoundError(f'Unknown owner: {owner_id}')

        ctx.raise_if_cancelled()
        query = query.strip()
        tokens = tokenize(query)
        fetch_limit = min(self.config.max_limit, limit * page) * self.config.candidate_multiplier

        semantic_enabled = self.embedder is not None and self.vector_index is not None
        semantic_future = (self._semantic_executor.submit(self._semantic_channel, owner_id, query, fetch_limit, ctx)
                           if semantic_enabled else None)
        keyword_hits = self._keyword_channel(owner_id, tokens, query, fetch_limit)

        semantic_hits: Dict[str, float] = {}
        degraded = False
        if semantic_future is not None:
            try:
                semantic_hits = semantic_future.result(timeout=self.config.channel_timeout)
            except QueryCancelledError:
                logger.info(f'Search {ctx.request_id} cancelled')
                raise
            except FutureTimeoutError:
                semantic_future.cancel()
                logger.warning(f'Semantic channel timed out after {self.config.channel_timeout}s; using keyword results only')
                degraded = True
            except Exception as e:
                logger.warning(f'Semantic channel failed; using keyword results only: {e}')
                degraded = True

        candidates = self._merge(owner_id, keyword_hits, semantic_hits)
        candidates = filter_by_policy(candidates, policy, now)

        scored = []
        for candidate in candidates:
            keyword = candidate.keyword_score if candidate.channel in ('keyword', 'hybrid') else None
            semantic = candidate.semantic_score if candidate.channel in ('semantic', 'hybrid') else None
            blended, _ = blend_scores(keyword, semantic, self.config)
            scored.append((candidate, blended))
        scored.sort(key=lambda item: (item[1], item[0].memory.timestamp), reverse=True)

        start = (page - 1) * limit
        results = []
        for index, (candidate, blended) in enumerate(scored[start:start + limit], start=start + 1):
            memory = candidate.memory
            policy_score = apply_policy_score(candidate.semantic_score, candidate.keyword_score, memory.importance_score,
                                              age_in_days(memory.timestamp, now), policy)
            results.append(
                SearchResult(memory_id=memory.id,
                             title=memory.title,
                             summary=memory.summary,
                             url=memory.url,
                             memory_type=memory.memory_type,
                             timestamp=memory.timestamp,
                             importance_score=memory.importance_score,
                             keyword_score=candidate.keyword_score,
                             semantic_score=candidate.semantic_score,
                             blended_score=blended,
                             policy_score=policy_score,
                             channel=candidate.channel,
                             rank=index))

        logger.info(f'Search for owner {owner_id} returned {len(results)}/{len(scored)} results '
                    f'(policy={policy.name}, degraded={degraded})')

        return SearchResponse(query=query,
                              results=results,
                              total=len(scored),
                              page=page,
                              limit=limit,
                              applied_policy=policy.name,
                              applied_filters={
                                  'allowed_types': list(policy.allowed_types) if policy.allowed_types else None,
                                  'time_range_days': policy.time_range_days,
                                  'semantic_enabled': semantic_enabled and not degraded,
                              },
                              degraded=degraded)

    def _merge(self, owner_id: str, keyword_hits: Dict[str, Tuple[Memory, float]],
               semantic_hits: Dict[str, float]) -> List[SearchCandidate]:
        memories = {memory_id: memory for memory_id, (memory, _) in keyword_hits.items()}
        missing = [memory_id for memory_id in semantic_hits if memory_id not in memories]
        if missing:
            memories.update(self.store.get_memories(missing))

        candidates = []
        for memory_id in set(keyword_hits) | set(semantic_hits):
            memory = memories.get(memory_id)
            if memory is None or memory.owner_id != owner_id:
                # Vector index entries can outlive their rows
                continue
            in_keyword = memory_id in keyword_hits
            in_semantic = memory_id in semantic_hits
            channel = 'hybrid' if in_keyword and in_semantic else ('keyword' if in_keyword else 'semantic')
            candidates.append(
                SearchCandidate(memory=memory,
                                keyword_score=keyword_hits[memory_id][1] if in_keyword else 0.0,
                                semantic_score=semantic_hits.get(memory_id, 0.0),
                                channel=channel))
        return candidates

    def shutdown(self) -> None:
        self._semantic_executor.shutdown(wait=False)
