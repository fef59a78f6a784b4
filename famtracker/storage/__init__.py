"""
Storage layer: the Elasticsearch resource handle, index definitions,
repositories and the composable query builder.
"""

from famtracker.storage.elasticsearch import (
    MEMBERSHIPS_INDEX,
    POSITION_REPORTS_INDEX,
    ROAD_SEGMENTS_INDEX,
    ElasticsearchService,
)
from famtracker.storage.queries import QueryBuilder
from famtracker.storage.repositories import (
    MembershipRepository,
    PositionReportRepository,
    RoadSegmentRepository,
)

__all__ = [
    "MEMBERSHIPS_INDEX",
    "POSITION_REPORTS_INDEX",
    "ROAD_SEGMENTS_INDEX",
    "ElasticsearchService",
    "QueryBuilder",
    "MembershipRepository",
    "PositionReportRepository",
    "RoadSegmentRepository",
]
