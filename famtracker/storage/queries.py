"""
Composable Elasticsearch query builder.

Filters are added as structured clauses, never by string concatenation,
so optional parameters such as time bounds compose freely:

    body = (
        QueryBuilder()
        .term("user_id", user_id)
        .range("timestamp", gte=start_time, lte=end_time)
        .sort("timestamp", "desc")
        .size(limit)
        .build()
    )
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class QueryBuilder:
    """Builds a search body from filter, sort, size and aggregation clauses."""

    def __init__(self):
        self._filters: List[Dict[str, Any]] = []
        self._must_not: List[Dict[str, Any]] = []
        self._sort: List[Dict[str, Any]] = []
        self._size: Optional[int] = None
        self._aggs: Dict[str, Any] = {}
        self._collapse: Optional[str] = None
        self._search_after: Optional[List[Any]] = None

    def term(self, field: str, value: Any) -> "QueryBuilder":
        self._filters.append({"term": {field: _serialize(value)}})
        return self

    def terms(self, field: str, values: Iterable[Any]) -> "QueryBuilder":
        self._filters.append({"terms": {field: [_serialize(v) for v in values]}})
        return self

    def range(
        self,
        field: str,
        gte: Any = None,
        lte: Any = None,
        gt: Any = None,
        lt: Any = None,
    ) -> "QueryBuilder":
        """Add a range filter. Bounds left as None are omitted; no bounds adds nothing."""
        bounds = {
            op: _serialize(value)
            for op, value in (("gte", gte), ("lte", lte), ("gt", gt), ("lt", lt))
            if value is not None
        }
        if bounds:
            self._filters.append({"range": {field: bounds}})
        return self

    def exists(self, field: str) -> "QueryBuilder":
        self._filters.append({"exists": {"field": field}})
        return self

    def missing(self, field: str) -> "QueryBuilder":
        self._must_not.append({"exists": {"field": field}})
        return self

    def sort(self, field: str, order: str = "desc") -> "QueryBuilder":
        if order not in ("asc", "desc"):
            raise ValueError(f"sort order must be 'asc' or 'desc', got {order!r}")
        self._sort.append({field: {"order": order}})
        return self

    def size(self, size: int) -> "QueryBuilder":
        if size < 0:
            raise ValueError("size cannot be negative")
        self._size = size
        return self

    def collapse(self, field: str) -> "QueryBuilder":
        """Keep only the top hit per distinct value of ``field``."""
        self._collapse = field
        return self

    def search_after(self, values: Optional[List[Any]]) -> "QueryBuilder":
        self._search_after = values
        return self

    def aggregate(self, name: str, aggregation: Dict[str, Any]) -> "QueryBuilder":
        self._aggs[name] = aggregation
        return self

    def build_query(self) -> Dict[str, Any]:
        if not self._filters and not self._must_not:
            return {"match_all": {}}
        bool_query: Dict[str, Any] = {}
        if self._filters:
            bool_query["filter"] = list(self._filters)
        if self._must_not:
            bool_query["must_not"] = list(self._must_not)
        return {"bool": bool_query}

    def build(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"query": self.build_query()}
        if self._sort:
            body["sort"] = list(self._sort)
        if self._size is not None:
            body["size"] = self._size
        if self._aggs:
            body["aggs"] = dict(self._aggs)
        if self._collapse:
            body["collapse"] = {"field": self._collapse}
        if self._search_after is not None:
            body["search_after"] = list(self._search_after)
        return body
