"""
Position ingestion pipeline.

A submission is validated, checked against group membership, enriched
with the nearest road's speed limit, persisted, and handed to the live
fan-out. Enrichment and fan-out are best effort: neither can cause a
report to be rejected once it is authorized.
"""

import asyncio
import logging
import time
import uuid
import weakref
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from famtracker.broadcast.channels import Broadcaster
from famtracker.errors.exceptions import not_group_member, unauthorized, validation_error
from famtracker.membership.authority import MembershipAuthority
from famtracker.models import (
    EnrichedReport,
    PositionReport,
    PositionSubmission,
    RoadMatch,
    compute_overspeed,
    utc_now,
)
from famtracker.roads.index import RoadNetworkIndex
from famtracker.storage.repositories import PositionReportRepository
from famtracker.telemetry.service import TelemetryService

logger = logging.getLogger(__name__)


def parse_submission(payload: Union[PositionSubmission, Dict[str, Any]]) -> PositionSubmission:
    """Validate a raw payload, raising the application ValidationError on failure."""
    if isinstance(payload, PositionSubmission):
        return payload
    try:
        return PositionSubmission.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            {"loc": [str(part) for part in error["loc"]], "msg": error["msg"], "type": error["type"]}
            for error in e.errors()
        ]
        raise validation_error("Invalid position report", details={"validation_errors": errors}) from e


class IngestionService:
    """
    Accepts position reports from authenticated users.

    Reports of one user are persisted and published in the order they
    acquire that user's lock; different users never contend.
    """

    def __init__(
        self,
        reports: PositionReportRepository,
        membership: MembershipAuthority,
        road_index: RoadNetworkIndex,
        broadcaster: Broadcaster,
        match_timeout_seconds: float = 0.5,
        telemetry: Optional[TelemetryService] = None,
    ):
        self.reports = reports
        self.membership = membership
        self.road_index = road_index
        self.broadcaster = broadcaster
        self.match_timeout_seconds = match_timeout_seconds
        self.telemetry = telemetry
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    async def submit_position(
        self,
        user_id: str,
        submission: Union[PositionSubmission, Dict[str, Any]],
    ) -> EnrichedReport:
        """
        Ingest one position report.

        Raises:
            ValidationError: Malformed or out-of-range payload; nothing stored
            AuthorizationError: The user is not a member of the group; nothing stored
            AppException: The store is unavailable (retryable, 503)
        """
        if not user_id:
            raise unauthorized()
        submission = parse_submission(submission)
        started = time.perf_counter()

        # Held from receipt so one user's reports are stored in arrival order
        async with self._lock_for(user_id):
            if not await self.membership.is_member(user_id, submission.group_id):
                logger.warning(
                    "Position rejected: not a group member",
                    extra={"extra_data": {"user_id": user_id, "group_id": submission.group_id}}
                )
                raise not_group_member(user_id, submission.group_id)

            match = await self._match_road(submission.latitude, submission.longitude)
            report = self._build_report(user_id, submission, match)
            await self.reports.add(report)
            await self._publish(report)

        duration_ms = (time.perf_counter() - started) * 1000
        if self.telemetry:
            self.telemetry.record_metric(
                "ingestion.duration_ms",
                duration_ms,
                tags={"matched": str(match is not None).lower()},
            )

        logger.info(
            "Position report stored",
            extra={"extra_data": {
                "report_id": report.id,
                "user_id": user_id,
                "group_id": report.group_id,
                "matched_road_id": report.matched_road_id,
                "duration_ms": round(duration_ms, 2),
            }}
        )
        return EnrichedReport.from_report(report)

    def _build_report(
        self,
        user_id: str,
        submission: PositionSubmission,
        match: Optional[RoadMatch],
    ) -> PositionReport:
        speed_limit = match.speed_limit if match else None
        return PositionReport(
            id=uuid.uuid4().hex,
            user_id=user_id,
            group_id=submission.group_id,
            latitude=submission.latitude,
            longitude=submission.longitude,
            speed=submission.speed,
            heading=submission.heading,
            accuracy=submission.accuracy,
            altitude=submission.altitude,
            timestamp=utc_now(),
            matched_road_id=match.segment_id if match else None,
            matched_road_name=match.name if match else None,
            matched_speed_limit=speed_limit,
            road_distance_m=match.distance_m if match else None,
            overspeed=compute_overspeed(submission.speed, speed_limit),
        )

    async def _match_road(self, latitude: float, longitude: float) -> Optional[RoadMatch]:
        """Nearest road within the time budget; None on timeout or failure."""
        outcome = "unmatched"
        try:
            match = await asyncio.wait_for(
                self.road_index.nearest(latitude, longitude),
                timeout=self.match_timeout_seconds,
            )
            if match is not None:
                outcome = "matched"
            return match
        except asyncio.TimeoutError:
            outcome = "timeout"
            logger.warning(
                "Road match timed out, storing report unmatched",
                extra={"extra_data": {"timeout_seconds": self.match_timeout_seconds}}
            )
            return None
        except Exception as e:
            outcome = "error"
            logger.warning(
                "Road match failed, storing report unmatched",
                exc_info=True,
                extra={"extra_data": {"error": str(e)}}
            )
            return None
        finally:
            if self.telemetry:
                self.telemetry.record_metric("road_match.outcome", 1, tags={"outcome": outcome})

    async def _publish(self, report: PositionReport) -> None:
        try:
            await self.broadcaster.publish(report)
        except Exception as e:
            logger.warning(
                "Failed to publish position update",
                extra={"extra_data": {
                    "report_id": report.id,
                    "group_id": report.group_id,
                    "error": str(e),
                }}
            )
