"""
Speed statistics over a user's recent reports.

Computed at query time from stored reports; there is no running state.
"""

import logging
from datetime import timedelta
from typing import Iterable, Optional

from famtracker.errors.exceptions import permission_denied
from famtracker.membership.authority import MembershipAuthority
from famtracker.models import PositionReport, SpeedStats, StatsResponse, utc_now
from famtracker.storage.repositories import PositionReportRepository
from famtracker.telemetry.service import TelemetryService

logger = logging.getLogger(__name__)


def summarize_reports(reports: Iterable[PositionReport]) -> SpeedStats:
    """
    Aggregate speed statistics over in-memory reports.

    Mirrors the store-side aggregation: reports without speed are ignored,
    a report is speeding when its speed exceeds its matched limit, and an
    empty input yields all zeros.
    """
    speeds = []
    with_limit = 0
    overspeeds = []
    for report in reports:
        if report.speed is None:
            continue
        speeds.append(report.speed)
        if report.matched_speed_limit is not None:
            with_limit += 1
            if report.speed > report.matched_speed_limit:
                overspeeds.append(report.speed - report.matched_speed_limit)

    if not speeds:
        return SpeedStats()

    return SpeedStats(
        count=len(speeds),
        avg_speed=sum(speeds) / len(speeds),
        max_speed=max(speeds),
        speeding_count=len(overspeeds),
        points_with_limit=with_limit,
        avg_overspeed=sum(overspeeds) / len(overspeeds) if overspeeds else 0.0,
    )


class StatisticsAggregator:
    def __init__(
        self,
        reports: PositionReportRepository,
        membership: MembershipAuthority,
        window_hours: float = 24,
        telemetry: Optional[TelemetryService] = None,
    ):
        self.reports = reports
        self.membership = membership
        self.window = timedelta(hours=window_hours)
        self.telemetry = telemetry

    async def stats(
        self,
        requester_id: str,
        subject_id: str,
        window: Optional[timedelta] = None,
    ) -> StatsResponse:
        """
        Speed statistics for ``subject_id`` over the trailing window.

        Raises:
            PermissionDeniedError: The requester is not the subject and
                shares no group with them
        """
        if not await self.membership.can_view(requester_id, subject_id):
            raise permission_denied(requester_id, subject_id)

        window = window or self.window
        stats = await self.reports.speed_stats(subject_id, utc_now() - window)

        logger.debug(
            "Speed statistics computed",
            extra={"extra_data": {
                "requester_id": requester_id,
                "subject_id": subject_id,
                "count": stats.count,
                "speeding_count": stats.speeding_count,
            }}
        )
        return StatsResponse(
            user_id=subject_id,
            window_hours=window.total_seconds() / 3600,
            stats=stats,
        )
