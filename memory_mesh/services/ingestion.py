"""
Ingestion pipeline: captured text to a deduplicated, summarized, embedded and linked memory.

The Memory row is written only after summarization succeeds. A redelivered
job resolves to the same memory id and completes whatever snapshot, vector
or link step the earlier delivery did not finish.
"""

import random
import time
import uuid
from typing import Any, Callable, Dict, Optional

from ..models.context import RequestContext
from ..models.core import IngestResult, Memory, MemorySnapshot
from ..utils.bedrock_embed import BedrockEmbedError
from ..utils.config import RetryConfig
from ..utils.errors import (DuplicateContentError, FatalProviderError, GraphConsistencyError, InvalidContentError,
                            NotFoundError, TransientProviderError)
from ..utils.logging_config import get_logger
from ..utils.memory_store import MemoryStore, MemoryStoreError
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import SECONDS_PER_HOUR, now_seconds, to_seconds
from .canonicalizer import canonicalize, fingerprint, normalize_url, text_similarity
from .memory_scoring import DUPLICATE_IMPORTANCE_BOOST, calculate_importance, infer_memory_type, merge_metadata
from .relation_graph import RelationGraphBuilder, embedding_text

logger = get_logger(__name__)

URL_DUPLICATE_WINDOW_SECONDS = SECONDS_PER_HOUR
URL_DUPLICATE_SIMILARITY = 0.9

# Capture fields stored on the memory row itself rather than in its metadata
ROW_FIELDS = ('title', 'url', 'timestamp')


def retry_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff before retry number ``attempt`` (1-based): capped exponential plus uniform jitter."""
    base = min(config.base_delay * (2**(attempt - 1)), config.max_delay)
    return base + random.uniform(0, config.jitter)


def _capture_time(metadata: Dict[str, Any], now: int) -> int:
    value = metadata.get('timestamp')
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return now
    return to_seconds(value)


class IngestionPipeline:
    """Turns raw captured text into a stored, linked memory."""

    def __init__(self,
                 store: MemoryStore,
                 summarizer,
                 embedder=None,
                 vector_index=None,
                 graph_builder: Optional[RelationGraphBuilder] = None,
                 retry_config: Optional[RetryConfig] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 extract_metadata: bool = True):
        """
        Initialize the pipeline.

        Args:
            store: Relational store
            summarizer: Object with ``summarize(text, metadata)`` and optionally ``extract_metadata``
            embedder: Object with ``embed_document(text)`` (optional)
            vector_index: Object with ``upsert_vector(memory_id, owner_id, vector)`` (optional)
            graph_builder: Relation graph builder used to link new memories (optional)
            retry_config: Bounded retry policy for summarization
            sleep: Sleep function used between retries
            extract_metadata: Whether to ask the summarizer for structured metadata
        """
        self.store = store
        self.summarizer = summarizer
        self.embedder = embedder
        self.vector_index = vector_index
        self.graph_builder = graph_builder
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep
        self.extract_metadata = extract_metadata
        logger.info('Initialized IngestionPipeline')

    def ingest(self, owner_id: str, raw_text: str, metadata: Optional[Dict[str, Any]] = None,
               ctx: Optional[RequestContext] = None) -> IngestResult:
        """
        Ingest one capture.

        Args:
            owner_id: Owner of the new memory
            raw_text: Captured text
            metadata: Capture metadata (title, url, timestamp, content_type, ...)
            ctx: Request context carrying job id and attempt

        Returns:
            IngestResult with the memory id and whether it was deduplicated

        Raises:
            InvalidContentError: If the text is empty
            NotFoundError: If the owner does not exist
            FatalProviderError: If summarization fails fatally or retries are exhausted
        """
        if not isinstance(raw_text, str) or not raw_text.strip():
            raise InvalidContentError('Captured text must be a non-empty string')
        if not self.store.user_exists(owner_id):
            raise NotFoundError(f'Unknown owner: {owner_id}')

        ctx = ctx or RequestContext(owner_id=owner_id)
        metadata = dict(metadata or {})
        now = now_seconds()
        job_label = ctx.job_id or ctx.request_id

        canonical_text = canonicalize(raw_text)
        canonical_hash = fingerprint(canonical_text)

        existing = self._find_duplicate(owner_id, canonical_text, canonical_hash, metadata.get('url'), now)
        if existing is not None:
            self._merge_duplicate(existing, metadata, now)
            if existing.canonical_hash == canonical_hash:
                self._complete_downstream(existing, raw_text, now, job_label)
            logger.info(f'[{job_label}] Capture deduplicated into memory {existing.id}')
            return IngestResult(memory_id=existing.id, deduplicated=True)

        summary = self.summarize_with_retry(raw_text, metadata, ctx)

        extracted = self._extract_metadata(raw_text, summary, metadata)
        capture_metadata = {k: v for k, v in metadata.items() if k not in ROW_FIELDS}
        merged_metadata = merge_metadata(capture_metadata, extracted)

        memory_type = infer_memory_type(merged_metadata, metadata.get('title'), raw_text[:500])
        memory = Memory(id=str(uuid.uuid4()),
                        owner_id=owner_id,
                        url=metadata.get('url'),
                        title=metadata.get('title'),
                        content=raw_text,
                        summary=summary,
                        canonical_text=canonical_text,
                        canonical_hash=canonical_hash,
                        memory_type=memory_type,
                        timestamp=_capture_time(metadata, now),
                        importance_score=calculate_importance(memory_type, len(raw_text), merged_metadata),
                        access_count=0,
                        last_accessed=None,
                        metadata=merged_metadata,
                        created_at=now)

        try:
            memory = self.store.insert_memory(memory)
        except DuplicateContentError as e:
            logger.info(f'[{job_label}] Concurrent insert won the race; using memory {e.existing_memory_id}')
            return IngestResult(memory_id=e.existing_memory_id, deduplicated=True)

        self._write_snapshot(owner_id, raw_text, summary, now)

        self._index_vector(memory, job_label)
        self._link(memory, job_label)

        logger.info(f'[{job_label}] Ingested memory {memory.id} ({memory_type}) for owner {owner_id}')
        return IngestResult(memory_id=memory.id, deduplicated=False)

    def summarize_with_retry(self, text: str, metadata: Dict[str, Any], ctx: Optional[RequestContext] = None) -> str:
        """
        Summarize with bounded exponential backoff.

        Transient failures are retried up to ``max_attempts`` attempts in total;
        anything else aborts immediately.

        Raises:
            FatalProviderError: On a non-retryable failure or when attempts are exhausted
        """
        max_attempts = max(1, self.retry_config.max_attempts)
        job_label = (ctx.job_id or ctx.request_id) if ctx else '-'

        for attempt in range(1, max_attempts + 1):
            try:
                return self.summarizer.summarize(text, metadata)
            except TransientProviderError as e:
                if attempt >= max_attempts:
                    logger.error(f'[{job_label}] Summarization failed after {attempt} attempts: {e}')
                    raise FatalProviderError(f'Summarization failed after {attempt} attempts: {e}',
                                             status_code=e.status_code,
                                             attempts=attempt) from e
                delay = retry_delay(attempt, self.retry_config)
                logger.warning(f'[{job_label}] Summarization attempt {attempt}/{max_attempts} failed, '
                               f'retrying in {delay:.1f}s: {e}')
                self._sleep(delay)
            except FatalProviderError as e:
                e.attempts = attempt
                logger.error(f'[{job_label}] Summarization failed permanently on attempt {attempt}: {e}')
                raise

        raise FatalProviderError(f'Summarization failed after {max_attempts} attempts', attempts=max_attempts)

    def _find_duplicate(self, owner_id: str, canonical_text: str, canonical_hash: str, url: Optional[str],
                        now: int) -> Optional[Memory]:
        existing = self.store.find_by_canonical_hash(owner_id, canonical_hash)
        if existing is not None or not url:
            return existing

        target_url = normalize_url(url)
        for candidate in self.store.find_recent_with_url(owner_id, now - URL_DUPLICATE_WINDOW_SECONDS):
            if normalize_url(candidate.url) != target_url:
                continue
            if text_similarity(canonical_text, candidate.canonical_text) >= URL_DUPLICATE_SIMILARITY:
                logger.debug(f'Near-duplicate of memory {candidate.id} at {target_url}')
                return candidate
        return None

    def _merge_duplicate(self, existing: Memory, metadata: Dict[str, Any], now: int) -> None:
        incoming = {k: v for k, v in metadata.items() if k not in ROW_FIELDS}
        self.store.record_duplicate_access(existing.id, DUPLICATE_IMPORTANCE_BOOST,
                                           merge_metadata(existing.metadata, incoming), now)

    def _write_snapshot(self, owner_id: str, raw_text: str, summary: str, now: int) -> bool:
        return self.store.insert_snapshot(
            MemorySnapshot(id=str(uuid.uuid4()),
                           owner_id=owner_id,
                           raw_text=raw_text,
                           summary=summary,
                           summary_hash=fingerprint(summary),
                           created_at=now))

    def _complete_downstream(self, memory: Memory, raw_text: str, now: int, job_label: str) -> None:
        """
        Finish the steps after the row insert that an earlier delivery of the same capture did not reach.

        Snapshot writes are absorbed when already present; the vector is indexed
        when missing and a memory without edges is linked again.
        """
        if memory.summary and self._write_snapshot(memory.owner_id, raw_text, memory.summary, now):
            logger.info(f'[{job_label}] Wrote missing snapshot for memory {memory.id}')

        if self.embedder is not None and self.vector_index is not None:
            try:
                has_vector = self.vector_index.get_vector(memory.id) is not None
            except OpenSearchError as e:
                logger.warning(f'[{job_label}] Could not check vector for memory {memory.id}: {e}')
                has_vector = True
            if not has_vector:
                self._index_vector(memory, job_label)

        if self.graph_builder is not None and not self.store.get_outgoing_relations(memory.id):
            self._link(memory, job_label)

    def _extract_metadata(self, text: str, summary: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        if not self.extract_metadata or not hasattr(self.summarizer, 'extract_metadata'):
            return {}
        try:
            return self.summarizer.extract_metadata(text, summary, metadata) or {}
        except (TransientProviderError, FatalProviderError) as e:
            logger.warning(f'Metadata extraction failed, continuing without it: {e}')
            return {}

    def _index_vector(self, memory: Memory, job_label: str) -> None:
        if self.embedder is None or self.vector_index is None:
            return
        try:
            vector = self.embedder.embed_document(embedding_text(memory))
            self.vector_index.upsert_vector(memory.id, memory.owner_id, vector)
        except (BedrockEmbedError, OpenSearchError) as e:
            logger.warning(f'[{job_label}] Could not index vector for memory {memory.id}; '
                           f'linking without semantic channel: {e}')

    def _link(self, memory: Memory, job_label: str) -> None:
        if self.graph_builder is None:
            return
        try:
            self.graph_builder.link_memory(memory.id, memory.owner_id)
        except (MemoryStoreError, GraphConsistencyError) as e:
            logger.error(f'[{job_label}] Linking memory {memory.id} failed; it can be re-linked later: {e}')
