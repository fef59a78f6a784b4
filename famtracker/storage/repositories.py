"""
Repositories over the Elasticsearch indices.

Each repository turns typed models into documents and QueryBuilder bodies
and parses responses back into models. Services depend on these rather
than on raw search bodies.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from famtracker.models import Membership, PositionReport, RoadSegment, SpeedStats, membership_document_id
from famtracker.storage.elasticsearch import (
    MEMBERSHIPS_INDEX,
    POSITION_REPORTS_INDEX,
    ROAD_SEGMENTS_INDEX,
    ElasticsearchService,
)
from famtracker.storage.queries import QueryBuilder

logger = logging.getLogger(__name__)

# Upper bound on members of one family in a single collapse query
MAX_GROUP_FAN = 1000

# Membership searches page through results with search_after
MEMBERSHIP_PAGE_SIZE = 1000


def _hits(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    return response.get("hits", {}).get("hits", [])


def _agg_value(aggregations: Dict[str, Any], name: str) -> float:
    value = aggregations.get(name, {}).get("value")
    return float(value) if value is not None else 0.0


class PositionReportRepository:
    """Append-only store of position reports."""

    def __init__(self, es: ElasticsearchService):
        self.es = es

    async def add(self, report: PositionReport) -> None:
        # Visible to history and stats as soon as the submit returns
        await self.es.index_document(
            POSITION_REPORTS_INDEX, report.id, report.to_document(), refresh="wait_for"
        )

    async def latest_per_user(self, group_id: str, since: datetime) -> List[PositionReport]:
        """Newest report of each user in the group with a timestamp after ``since``."""
        body = (
            QueryBuilder()
            .term("group_id", group_id)
            .range("timestamp", gt=since)
            .sort("timestamp", "desc")
            .collapse("user_id")
            .size(MAX_GROUP_FAN)
            .build()
        )
        response = await self.es.search_documents(POSITION_REPORTS_INDEX, body)
        return [PositionReport.from_document(hit["_source"]) for hit in _hits(response)]

    async def history(
        self,
        user_id: str,
        start_time: Optional[datetime],
        end_time: Optional[datetime],
        limit: int,
    ) -> List[PositionReport]:
        """A user's reports inside the optional bounds, newest first."""
        body = (
            QueryBuilder()
            .term("user_id", user_id)
            .range("timestamp", gte=start_time, lte=end_time)
            .sort("timestamp", "desc")
            .size(limit)
            .build()
        )
        response = await self.es.search_documents(POSITION_REPORTS_INDEX, body)
        return [PositionReport.from_document(hit["_source"]) for hit in _hits(response)]

    async def speed_stats(self, user_id: str, since: datetime) -> SpeedStats:
        """
        Aggregate speed over a user's reports after ``since``.

        Reports without speed are excluded. Speeding is read from the
        stored ``overspeed`` field, which is only present when the speed
        exceeded the matched limit at ingestion.
        """
        body = (
            QueryBuilder()
            .term("user_id", user_id)
            .range("timestamp", gt=since)
            .exists("speed")
            .size(0)
            .aggregate("count", {"value_count": {"field": "speed"}})
            .aggregate("avg_speed", {"avg": {"field": "speed"}})
            .aggregate("max_speed", {"max": {"field": "speed"}})
            .aggregate("with_limit", {"filter": {"exists": {"field": "matched_speed_limit"}}})
            .aggregate("speeding", {
                "filter": {"exists": {"field": "overspeed"}},
                "aggs": {"avg_overspeed": {"avg": {"field": "overspeed"}}},
            })
            .build()
        )
        response = await self.es.search_documents(POSITION_REPORTS_INDEX, body)
        aggregations = response.get("aggregations") or {}

        count = int(_agg_value(aggregations, "count"))
        if count == 0:
            return SpeedStats()

        speeding = aggregations.get("speeding", {})
        return SpeedStats(
            count=count,
            avg_speed=_agg_value(aggregations, "avg_speed"),
            max_speed=_agg_value(aggregations, "max_speed"),
            speeding_count=int(speeding.get("doc_count", 0)),
            points_with_limit=int(aggregations.get("with_limit", {}).get("doc_count", 0)),
            avg_overspeed=_agg_value(speeding, "avg_overspeed"),
        )


class MembershipRepository:
    """Reads memberships and updates the per-membership visibility flag."""

    def __init__(self, es: ElasticsearchService, page_size: int = MEMBERSHIP_PAGE_SIZE):
        self.es = es
        self.page_size = page_size

    async def get(self, group_id: str, user_id: str) -> Optional[Membership]:
        source = await self.es.get_document(MEMBERSHIPS_INDEX, membership_document_id(group_id, user_id))
        if source is None:
            return None
        return Membership.model_validate(source)

    async def _search(self, field: str, value: str, tiebreaker: str) -> List[Membership]:
        """All memberships matching ``field == value``, oldest first."""
        memberships: List[Membership] = []
        search_after: Optional[List[Any]] = None

        while True:
            body = (
                QueryBuilder()
                .term(field, value)
                .sort("joined_at", "asc")
                .sort(tiebreaker, "asc")
                .size(self.page_size)
                .search_after(search_after)
                .build()
            )
            response = await self.es.search_documents(MEMBERSHIPS_INDEX, body)
            hits = _hits(response)
            memberships.extend(Membership.model_validate(hit["_source"]) for hit in hits)
            if len(hits) < self.page_size:
                return memberships
            search_after = hits[-1]["sort"]

    async def list_for_user(self, user_id: str) -> List[Membership]:
        return await self._search("user_id", user_id, tiebreaker="group_id")

    async def list_for_group(self, group_id: str) -> List[Membership]:
        return await self._search("group_id", group_id, tiebreaker="user_id")

    async def set_visibility(self, group_id: str, user_id: str, is_visible: bool) -> Optional[Membership]:
        """Update the flag; returns the updated membership, or None if there is none."""
        membership = await self.get(group_id, user_id)
        if membership is None:
            return None
        await self.es.update_document(
            MEMBERSHIPS_INDEX,
            membership.document_id,
            {"is_visible": is_visible},
        )
        return membership.model_copy(update={"is_visible": is_visible})


class RoadSegmentRepository:
    """Read-only access to road reference data."""

    def __init__(self, es: ElasticsearchService, page_size: int = 5000):
        self.es = es
        self.page_size = page_size

    async def load_all(self) -> List[RoadSegment]:
        """
        Load every road segment, paging with search_after on segment_id.

        Documents with unusable geometry are skipped and logged.
        """
        segments: List[RoadSegment] = []
        skipped = 0
        search_after: Optional[List[Any]] = None

        while True:
            body = (
                QueryBuilder()
                .sort("segment_id", "asc")
                .size(self.page_size)
                .search_after(search_after)
                .build()
            )
            response = await self.es.search_documents(ROAD_SEGMENTS_INDEX, body)
            hits = _hits(response)
            for hit in hits:
                try:
                    segments.append(RoadSegment.from_document(hit["_source"]))
                except (PydanticValidationError, KeyError, TypeError, ValueError) as e:
                    skipped += 1
                    logger.warning(
                        "Skipping invalid road segment",
                        extra={"extra_data": {"doc_id": hit.get("_id"), "error": str(e)}}
                    )
            if len(hits) < self.page_size:
                break
            search_after = hits[-1]["sort"]

        logger.info(
            "Loaded road segments",
            extra={"extra_data": {"count": len(segments), "skipped": skipped}}
        )
        return segments
