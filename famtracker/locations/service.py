"""
Read paths over stored position reports: the family map and per-user history.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from famtracker.errors.exceptions import not_group_member, permission_denied, validation_error
from famtracker.membership.authority import MembershipAuthority
from famtracker.models import CurrentPosition, FamilyPositions, HistoryEntry, HistoryPage, utc_now
from famtracker.storage.repositories import MembershipRepository, PositionReportRepository

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class LocationQueryService:
    def __init__(
        self,
        reports: PositionReportRepository,
        memberships: MembershipRepository,
        membership: MembershipAuthority,
        current_window_minutes: int = 5,
        history_default_limit: int = 100,
        history_max_limit: int = 1000,
    ):
        self.reports = reports
        self.memberships = memberships
        self.membership = membership
        self.current_window = timedelta(minutes=current_window_minutes)
        self.history_default_limit = history_default_limit
        self.history_max_limit = history_max_limit

    async def current_positions(self, requester_id: str, group_id: str) -> FamilyPositions:
        """
        Latest fresh position of each visible member of the group.

        Members who turned visibility off are left out even if they
        reported recently.

        Raises:
            AuthorizationError: The requester is not a member of the group
        """
        if not await self.membership.is_member(requester_id, group_id):
            raise not_group_member(requester_id, group_id)

        since = utc_now() - self.current_window
        latest = await self.reports.latest_per_user(group_id, since)
        members = await self.memberships.list_for_group(group_id)
        visible = {m.user_id for m in members if m.is_visible}

        positions = [
            CurrentPosition.from_report(report)
            for report in latest
            if report.user_id in visible and report.timestamp > since
        ]
        return FamilyPositions(group_id=group_id, locations=positions)

    async def history(
        self,
        requester_id: str,
        subject_id: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> HistoryPage:
        """
        A user's reports inside the optional time bounds, newest first.

        Raises:
            ValidationError: limit outside 1..max, or start_time after end_time
            PermissionDeniedError: The requester may not view the subject
        """
        limit = self.history_default_limit if limit is None else limit
        if not 1 <= limit <= self.history_max_limit:
            raise validation_error(
                f"limit must be between 1 and {self.history_max_limit}",
                details={"field": "limit", "value": limit},
            )

        start_time = _as_utc(start_time)
        end_time = _as_utc(end_time)
        if start_time is not None and end_time is not None and start_time > end_time:
            raise validation_error(
                "start_time must not be after end_time",
                details={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
            )

        if not await self.membership.can_view(requester_id, subject_id):
            raise permission_denied(requester_id, subject_id)

        reports = await self.reports.history(subject_id, start_time, end_time, limit)
        reports.sort(key=lambda report: report.timestamp, reverse=True)
        entries: List[HistoryEntry] = [HistoryEntry.from_report(r) for r in reports[:limit]]
        return HistoryPage(user_id=subject_id, count=len(entries), history=entries)
