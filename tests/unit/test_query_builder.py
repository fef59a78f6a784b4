"""
Unit tests for the Elasticsearch query builder.
"""

from datetime import datetime, timezone

import pytest

from famtracker.storage.queries import QueryBuilder


class TestQueryBuilder:
    def test_empty_builder_matches_all(self):
        assert QueryBuilder().build() == {"query": {"match_all": {}}}

    def test_filters_compose_into_bool_filter(self):
        body = QueryBuilder().term("user_id", "alice").exists("speed").build()

        assert body["query"] == {"bool": {"filter": [
            {"term": {"user_id": "alice"}},
            {"exists": {"field": "speed"}},
        ]}}

    def test_range_omits_missing_bounds(self):
        start = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

        body = QueryBuilder().range("timestamp", gte=start).build()

        assert body["query"]["bool"]["filter"] == [
            {"range": {"timestamp": {"gte": "2024-01-15T10:00:00+00:00"}}}
        ]

    def test_range_without_bounds_adds_nothing(self):
        body = QueryBuilder().term("user_id", "alice").range("timestamp").build()

        assert body["query"]["bool"]["filter"] == [{"term": {"user_id": "alice"}}]

    def test_missing_uses_must_not(self):
        body = QueryBuilder().missing("matched_speed_limit").build()

        assert body["query"] == {"bool": {"must_not": [{"exists": {"field": "matched_speed_limit"}}]}}

    def test_terms_serializes_values(self):
        body = QueryBuilder().terms("group_id", ["G", "H"]).build()

        assert body["query"]["bool"]["filter"] == [{"terms": {"group_id": ["G", "H"]}}]

    def test_sort_size_collapse_and_search_after(self):
        body = (
            QueryBuilder()
            .sort("timestamp", "desc")
            .size(50)
            .collapse("user_id")
            .search_after([1705312800000])
            .build()
        )

        assert body["sort"] == [{"timestamp": {"order": "desc"}}]
        assert body["size"] == 50
        assert body["collapse"] == {"field": "user_id"}
        assert body["search_after"] == [1705312800000]

    def test_search_after_none_is_omitted(self):
        assert "search_after" not in QueryBuilder().search_after(None).build()

    def test_aggregations(self):
        body = QueryBuilder().size(0).aggregate("avg_speed", {"avg": {"field": "speed"}}).build()

        assert body["aggs"] == {"avg_speed": {"avg": {"field": "speed"}}}
        assert body["size"] == 0

    def test_invalid_sort_order_rejected(self):
        with pytest.raises(ValueError):
            QueryBuilder().sort("timestamp", "newest")

    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            QueryBuilder().size(-1)
