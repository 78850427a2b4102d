"""Tests for keyword scoring, score fusion and the hybrid search service."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from memory_mesh.models.context import RequestContext
from memory_mesh.models.core import Memory
from memory_mesh.services.hybrid_search import (SEMANTIC_WORKERS, HybridSearchService, blend_scores, keyword_score,
                                                tokenize)
from memory_mesh.utils.bedrock_embed import BedrockEmbedError
from memory_mesh.utils.config import SearchConfig
from memory_mesh.utils.errors import InvalidQueryError, NotFoundError, QueryCancelledError

from .conftest import NOW, FakeEmbedder


def _memory(title=None, summary=None, content=''):
    return Memory(id='m1', owner_id='alice', content=content, canonical_text='', canonical_hash='h', timestamp=NOW,
                  title=title, summary=summary)


@pytest.fixture
def keyword_service(store):
    service = HybridSearchService(store)
    yield service
    service.shutdown()


@pytest.fixture
def hybrid_service(store, embedder, vector_index):
    service = HybridSearchService(store, embedder=embedder, vector_index=vector_index)
    yield service
    service.shutdown()


class TestTokenize:

    def test_drops_punctuation_and_short_tokens(self):
        assert tokenize('React-Hooks, in JS!') == ['react', 'hooks']

    def test_empty_query(self):
        assert tokenize('') == []
        assert tokenize(None) == []


class TestKeywordScore:

    def test_title_match_with_phrase_bonus(self):
        memory = _memory(title='React hooks', summary='Guide to component state', content='useState examples')
        assert keyword_score(memory, tokenize('react hooks'), 'react hooks') == pytest.approx(0.78)

    def test_word_boundary_required(self):
        memory = _memory(title='Reactive streams')
        assert keyword_score(memory, ['react'], 'react') == 0.0

    def test_partial_coverage(self):
        memory = _memory(summary='notes about python packaging')
        # 0.3 / 2 tokens, no phrase bonus, coverage 0.5
        assert keyword_score(memory, ['python', 'rust'], 'python rust') == pytest.approx(0.15 * 1.15)

    def test_clamped_to_one(self):
        memory = _memory(title='rust async', summary='rust async', content='rust async')
        assert keyword_score(memory, ['rust', 'async'], 'rust async') == 1.0

    def test_no_tokens(self):
        assert keyword_score(_memory(title='anything'), [], '') == 0.0


class TestBlendScores:

    def test_hybrid(self):
        score, channel = blend_scores(0.8, 0.6)
        assert score == pytest.approx(0.68)
        assert channel == 'hybrid'

    def test_keyword_only_is_discounted(self):
        score, channel = blend_scores(0.78, None)
        assert score == pytest.approx(0.312)
        assert channel == 'keyword'

    def test_semantic_only_is_passed_through(self):
        assert blend_scores(None, 0.7) == (0.7, 'semantic')

    def test_custom_weights(self):
        config = SearchConfig(keyword_fusion_weight=0.5, semantic_fusion_weight=0.5)
        assert blend_scores(0.2, 0.4, config)[0] == pytest.approx(0.3)


class TestHybridSearchValidation:

    def test_empty_query_rejected_before_store_access(self):
        store = MagicMock()
        service = HybridSearchService(store)
        try:
            with pytest.raises(InvalidQueryError):
                service.search('alice', '   ')
            store.user_exists.assert_not_called()
            store.keyword_candidates.assert_not_called()
        finally:
            service.shutdown()

    def test_non_string_query_rejected(self, keyword_service):
        with pytest.raises(InvalidQueryError):
            keyword_service.search('alice', None)

    def test_unknown_owner(self, keyword_service):
        with pytest.raises(NotFoundError):
            keyword_service.search('mallory', 'python')

    def test_cancelled_request(self, keyword_service, make_memory):
        make_memory(title='python tips')
        ctx = RequestContext(owner_id='alice')
        ctx.cancel()
        with pytest.raises(QueryCancelledError):
            keyword_service.search('alice', 'python', ctx=ctx, now=NOW)


class TestHybridSearchKeywordChannel:

    def test_keyword_only_result(self, keyword_service, make_memory):
        memory = make_memory(title='React hooks', summary='Guide to component state',
                             content='useState and useEffect examples for components')

        response = keyword_service.search('alice', 'react hooks', now=NOW)

        assert response.total == 1
        result = response.results[0]
        assert result.memory_id == memory.id
        assert result.channel == 'keyword'
        assert result.keyword_score == pytest.approx(0.78)
        assert result.blended_score == pytest.approx(0.312)
        assert result.rank == 1
        assert response.applied_filters['semantic_enabled'] is False
        assert response.degraded is False

    def test_only_owner_memories_returned(self, keyword_service, make_memory):
        make_memory(owner_id='bob', title='python tips')
        mine = make_memory(title='python tips')

        response = keyword_service.search('alice', 'python', now=NOW)

        assert [r.memory_id for r in response.results] == [mine.id]

    def test_limit_defaults_to_policy_and_is_capped(self, keyword_service, make_memory):
        make_memory(title='python tips')
        assert keyword_service.search('alice', 'python', now=NOW).limit == 12
        assert keyword_service.search('alice', 'python', policy_name='insight', now=NOW).limit == 20
        assert keyword_service.search('alice', 'python', limit=500, now=NOW).limit == 100

    def test_pagination(self, keyword_service, make_memory):
        ids = [make_memory(title='python tips', timestamp=NOW - i * 60).id for i in range(5)]

        page_two = keyword_service.search('alice', 'python', limit=2, page=2, now=NOW)
        page_three = keyword_service.search('alice', 'python', limit=2, page=3, now=NOW)

        assert page_two.total == 5
        assert [r.rank for r in page_two.results] == [3, 4]
        # Equal scores fall back to newest first
        assert [r.memory_id for r in page_two.results] == ids[2:4]
        assert [r.memory_id for r in page_three.results] == ids[4:]

    def test_policy_filters_types_and_age(self, keyword_service, make_memory):
        make_memory(title='python tips', memory_type='REFERENCE')
        project = make_memory(title='python migration', memory_type='PROJECT', timestamp=NOW - 86400)
        make_memory(title='python rewrite', memory_type='PROJECT', timestamp=NOW - 60 * 86400)

        response = keyword_service.search('alice', 'python', policy_name='planning', now=NOW)

        assert [r.memory_id for r in response.results] == [project.id]
        assert response.applied_policy == 'planning'
        assert response.applied_filters['allowed_types'] == ['PROJECT', 'LOG_EVENT']
        assert response.applied_filters['time_range_days'] == 45

    def test_unknown_policy_falls_back_to_chat(self, keyword_service, make_memory):
        make_memory(title='python tips')
        assert keyword_service.search('alice', 'python', policy_name='nonexistent', now=NOW).applied_policy == 'chat'

    def test_to_dict(self, keyword_service, make_memory):
        make_memory(title='python tips')
        payload = keyword_service.search('alice', 'python', now=NOW).to_dict()
        assert payload['query'] == 'python'
        assert payload['results'][0]['title'] == 'python tips'
        assert payload['results'][0]['policy_score'] > 0


class TestHybridSearchSemanticChannel:

    def test_hybrid_result(self, hybrid_service, vector_index, make_memory):
        memory = make_memory(title='React hooks', summary='Guide to component state', content='useState examples')
        vector_index.fixed_hits = [(memory.id, 0.6)]

        result = hybrid_service.search('alice', 'react hooks', now=NOW).results[0]

        assert result.channel == 'hybrid'
        assert result.blended_score == pytest.approx(0.78 * 0.4 + 0.6 * 0.6)

    def test_semantic_only_result(self, hybrid_service, vector_index, make_memory):
        memory = make_memory(title='Weekend hiking trail')
        vector_index.fixed_hits = [(memory.id, 0.7)]

        result = hybrid_service.search('alice', 'mountain walks', now=NOW).results[0]

        assert result.channel == 'semantic'
        assert result.blended_score == pytest.approx(0.7)

    def test_semantic_hits_below_minimum_dropped(self, hybrid_service, vector_index, make_memory):
        memory = make_memory(title='Weekend hiking trail')
        vector_index.fixed_hits = [(memory.id, 0.1)]

        assert hybrid_service.search('alice', 'mountain walks', now=NOW).total == 0

    def test_semantic_hits_for_other_owners_and_missing_rows_ignored(self, hybrid_service, vector_index, make_memory):
        theirs = make_memory(owner_id='bob', title='Weekend hiking trail')
        vector_index.fixed_hits = [(theirs.id, 0.9), ('deleted-memory', 0.9)]

        assert hybrid_service.search('alice', 'mountain walks', now=NOW).total == 0

    def test_semantic_beats_keyword_only(self, hybrid_service, vector_index, make_memory):
        keyword_hit = make_memory(title='React hooks', summary='Guide to component state', content='useState examples')
        semantic_hit = make_memory(title='Component lifecycle')
        vector_index.fixed_hits = [(semantic_hit.id, 0.5)]

        results = hybrid_service.search('alice', 'react hooks', now=NOW).results

        assert [r.memory_id for r in results] == [semantic_hit.id, keyword_hit.id]

    def test_embedder_failure_degrades_to_keyword(self, store, vector_index, make_memory):
        memory = make_memory(title='python tips')
        service = HybridSearchService(store, embedder=FakeEmbedder(error=BedrockEmbedError('throttled')),
                                      vector_index=vector_index)
        try:
            response = service.search('alice', 'python', now=NOW)
        finally:
            service.shutdown()

        assert response.degraded is True
        assert response.applied_filters['semantic_enabled'] is False
        assert [r.memory_id for r in response.results] == [memory.id]

    def test_semantic_timeout_degrades_to_keyword(self, store, vector_index, make_memory):
        memory = make_memory(title='python tips')

        class SlowEmbedder(FakeEmbedder):

            def embed_query(self, text):
                time.sleep(0.5)
                return super().embed_query(text)

        service = HybridSearchService(store, embedder=SlowEmbedder(), vector_index=vector_index,
                                      search_config=SearchConfig(channel_timeout=0.05))
        try:
            response = service.search('alice', 'python', now=NOW)
        finally:
            service.shutdown()

        assert response.degraded is True
        assert [r.memory_id for r in response.results] == [memory.id]

    def test_hung_semantic_calls_never_block_keyword_results(self, store, vector_index, make_memory):
        memory = make_memory(title='python tips')
        release = threading.Event()

        class HangingEmbedder(FakeEmbedder):

            def embed_query(self, text):
                release.wait()
                return super().embed_query(text)

        service = HybridSearchService(store, embedder=HangingEmbedder(), vector_index=vector_index,
                                      search_config=SearchConfig(channel_timeout=0.05))
        responses = []

        def run_searches():
            # More searches than semantic workers, so later ones queue behind hung calls
            for _ in range(SEMANTIC_WORKERS + 2):
                responses.append(service.search('alice', 'python', now=NOW))

        runner = threading.Thread(target=run_searches, daemon=True)
        try:
            runner.start()
            runner.join(timeout=10)
            finished = not runner.is_alive()
        finally:
            release.set()
            service.shutdown()

        assert finished
        assert len(responses) == SEMANTIC_WORKERS + 2
        assert all(response.degraded for response in responses)
        assert all([r.memory_id for r in response.results] == [memory.id] for response in responses)
