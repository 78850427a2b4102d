"""Shared fixtures: an in-memory SQLite store and scripted stand-ins for Bedrock and OpenSearch."""

import math
import time
import uuid

import pytest

from memory_mesh.models.core import Memory
from memory_mesh.services.canonicalizer import canonicalize, fingerprint
from memory_mesh.utils.config import DatabaseConfig
from memory_mesh.utils.memory_store import MemoryStore

NOW = 1_700_000_000


def _cosine(a, b):
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeVectorIndex:
    """Exact cosine search over vectors kept in a dict."""

    def __init__(self):
        self.vectors = {}
        self.owners = {}
        self.fixed_hits = None
        self.error = None
        self.queries = []

    def upsert_vector(self, memory_id, owner_id, vector):
        if self.error:
            raise self.error
        self.vectors[memory_id] = list(vector)
        self.owners[memory_id] = owner_id
        return True

    def get_vector(self, memory_id):
        return self.vectors.get(memory_id)

    def query_vectors(self, vector, owner_id, limit=20, filter_memory_ids=None):
        self.queries.append((owner_id, limit))
        if self.error:
            raise self.error
        if self.fixed_hits is not None:
            return list(self.fixed_hits)[:limit]
        hits = [(memory_id, max(0.0, min(1.0, _cosine(vector, stored))))
                for memory_id, stored in self.vectors.items() if self.owners[memory_id] == owner_id]
        hits.sort(key=lambda item: item[1], reverse=True)
        return hits[:limit]

    def health_check(self):
        return True


class FakeEmbedder:
    def __init__(self, vector=None, error=None):
        self.vector = vector or [1.0, 0.0, 0.0]
        self.error = error
        self.calls = []

    def embed_document(self, text):
        self.calls.append(('document', text))
        if self.error:
            raise self.error
        return list(self.vector)

    def embed_query(self, text):
        self.calls.append(('query', text))
        if self.error:
            raise self.error
        return list(self.vector)

    def health_check(self):
        return self.error is None


class FakeLLM:
    """Summarizer whose ``summarize`` outcomes can be scripted.

    Each scripted entry is either a summary string or an exception to raise;
    once the script runs out a summary is derived from the text.
    """

    def __init__(self, script=None, metadata=None, related=True):
        self.script = list(script or [])
        self.metadata = metadata or {}
        self.related = related
        self.summarize_calls = 0
        self.verify_calls = []

    def summarize(self, text, metadata=None):
        self.summarize_calls += 1
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return f'Summary: {text[:80]}'

    def extract_metadata(self, text, summary, metadata=None):
        return dict(self.metadata)

    def verify_relation(self, source, candidate, similarity, temporal_proximity=0.0):
        self.verify_calls.append((source, candidate, similarity))
        if isinstance(self.related, Exception):
            raise self.related
        return self.related

    def health_check(self):
        return True


class SleepRecorder:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def store():
    memory_store = MemoryStore(DatabaseConfig(url='sqlite://', echo=False))
    memory_store.create_user('alice')
    memory_store.create_user('bob')
    yield memory_store
    memory_store.engine.dispose()


@pytest.fixture
def vector_index():
    return FakeVectorIndex()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def make_memory(store, vector_index):
    """Insert a memory row directly, optionally with a vector in the fake index."""

    def _make(owner_id='alice', title=None, summary=None, content=None, memory_type='REFERENCE', timestamp=NOW,
              url=None, metadata=None, importance_score=0.5, vector=None):
        content = content or summary or title or 'captured page'
        canonical_text = canonicalize(content) + f' {uuid.uuid4()}'
        memory = Memory(id=str(uuid.uuid4()),
                        owner_id=owner_id,
                        content=content,
                        canonical_text=canonical_text,
                        canonical_hash=fingerprint(canonical_text),
                        timestamp=timestamp,
                        url=url,
                        title=title,
                        summary=summary,
                        memory_type=memory_type,
                        importance_score=importance_score,
                        metadata=metadata or {},
                        created_at=int(time.time()))
        memory = store.insert_memory(memory)
        if vector is not None:
            vector_index.upsert_vector(memory.id, owner_id, vector)
        return memory

    return _make
