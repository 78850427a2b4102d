"""Tests for memory type inference, importance and metadata merging."""

import pytest

from memory_mesh.services.memory_scoring import (calculate_importance, clamp, infer_memory_type, merge_metadata,
                                                 normalize_importance)


class TestInferMemoryType:

    def test_explicit_type_wins(self):
        assert infer_memory_type({'memory_type': 'fact', 'content_type': 'email'}) == 'FACT'

    @pytest.mark.parametrize('content_type, expected', [
        ('email', 'LOG_EVENT'),
        ('project-board', 'PROJECT'),
        ('snippet', 'FACT'),
        ('habit-tracker', 'PREFERENCE'),
    ])
    def test_content_type_hints(self, content_type, expected):
        assert infer_memory_type({'content_type': content_type}) == expected

    def test_text_hints(self):
        assert infer_memory_type({}, title='My favorite editor settings') == 'PREFERENCE'
        assert infer_memory_type({}, title='Sprint roadmap') == 'PROJECT'
        assert infer_memory_type({}, content_preview='Notes from the weekly meeting') == 'LOG_EVENT'

    def test_metadata_flags(self):
        assert infer_memory_type({'is_fact': True}) == 'FACT'
        assert infer_memory_type({'thread_id': 't-1'}) == 'LOG_EVENT'

    def test_default_reference(self):
        assert infer_memory_type(None, title='Untitled', content_preview='lorem ipsum') == 'REFERENCE'


class TestImportance:

    @pytest.mark.parametrize('raw, expected', [
        (0.5, 0.5),
        (8, 0.8),
        (75, 0.75),
        (1000, 1.0),
        (-2, 0.0),
        (True, 0.0),
        ('high', 0.0),
        (float('nan'), 0.0),
        (None, 0.0),
    ])
    def test_normalize_importance(self, raw, expected):
        assert normalize_importance(raw) == pytest.approx(expected)

    def test_base_score_by_type(self):
        assert calculate_importance('REFERENCE', 0) == pytest.approx(0.25 + 0.7 * 0.4)
        assert calculate_importance('UNKNOWN', 0) == pytest.approx(0.25 + 0.6 * 0.4)

    def test_boosts_and_upper_bound(self):
        assert calculate_importance('FACT', 60, {'importance': 8}) == pytest.approx(0.25 + 0.38 + 0.01 + 0.32)
        assert calculate_importance('FACT', 100_000, {'importance': 10, 'topics': ['a'] * 20}) == 1.0

    def test_clamp(self):
        assert clamp(1.5) == 1.0
        assert clamp(-1) == 0.0
        assert clamp(float('nan')) == 0.0


class TestMergeMetadata:

    def test_lists_are_unioned_in_order(self):
        merged = merge_metadata({'topics': ['a', 'b']}, {'topics': ['b', 'c']})
        assert merged['topics'] == ['a', 'b', 'c']

    def test_lists_are_capped(self):
        merged = merge_metadata({'tags': list(range(40))}, {'tags': list(range(30, 70))})
        assert merged['tags'] == list(range(50))

    def test_dicts_are_shallow_merged(self):
        merged = merge_metadata({'source': {'app': 'web', 'version': 1}}, {'source': {'version': 2}})
        assert merged['source'] == {'app': 'web', 'version': 2}

    def test_scalars_replaced_and_none_ignored(self):
        merged = merge_metadata({'sentiment': 'neutral', 'lang': 'en'}, {'sentiment': 'positive', 'lang': None})
        assert merged == {'sentiment': 'positive', 'lang': 'en'}

    def test_inputs_not_mutated(self):
        existing = {'topics': ['a']}
        merge_metadata(existing, {'topics': ['b']})
        assert existing == {'topics': ['a']}
