"""
Service wiring for the FamTracker backend.

The container builds every component from Settings and owns their
lifetimes. The FastAPI lifespan calls ``start`` and ``stop``; tests build
a container with in-memory repositories instead of Elasticsearch.
"""

import logging
from typing import Any, Optional

from famtracker.broadcast.channels import Broadcaster
from famtracker.config.settings import Settings
from famtracker.health.service import HealthCheckService
from famtracker.ingestion.service import IngestionService
from famtracker.locations.service import LocationQueryService
from famtracker.membership.authority import MembershipAuthority
from famtracker.roads.index import RoadNetworkIndex
from famtracker.roads.refresher import RoadIndexRefresher
from famtracker.stats.aggregator import StatisticsAggregator
from famtracker.storage.elasticsearch import ElasticsearchService
from famtracker.storage.repositories import (
    MembershipRepository,
    PositionReportRepository,
    RoadSegmentRepository,
)
from famtracker.telemetry.service import TelemetryService

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        es_service: Optional[Any] = None,
        telemetry: Optional[TelemetryService] = None,
        configure_logging: bool = True,
        reports: Optional[Any] = None,
        memberships: Optional[Any] = None,
        roads: Optional[Any] = None,
    ):
        self.settings = settings
        self.telemetry = telemetry or TelemetryService(settings, configure_logging=configure_logging)
        self.es_service = es_service or ElasticsearchService(settings, telemetry=self.telemetry)

        self.reports = reports or PositionReportRepository(self.es_service)
        self.memberships = memberships or MembershipRepository(self.es_service)
        self.roads = roads or RoadSegmentRepository(self.es_service)

        self.road_index = RoadNetworkIndex(
            default_radius_m=settings.road_match_radius_m,
            ready_timeout_seconds=settings.road_index_ready_timeout_seconds,
        )
        self.membership = MembershipAuthority(self.memberships, telemetry=self.telemetry)
        self.broadcaster = Broadcaster(
            self.membership,
            buffer_size=settings.broadcast_buffer_size,
            telemetry=self.telemetry,
        )
        self.ingestion = IngestionService(
            self.reports,
            self.membership,
            self.road_index,
            self.broadcaster,
            match_timeout_seconds=settings.road_match_timeout_seconds,
            telemetry=self.telemetry,
        )
        self.locations = LocationQueryService(
            self.reports,
            self.memberships,
            self.membership,
            current_window_minutes=settings.current_position_window_minutes,
            history_default_limit=settings.history_default_limit,
            history_max_limit=settings.history_max_limit,
        )
        self.statistics = StatisticsAggregator(
            self.reports,
            self.membership,
            window_hours=settings.stats_window_hours,
            telemetry=self.telemetry,
        )
        self.health = HealthCheckService(
            es_service=self.es_service,
            road_index=self.road_index,
            broadcaster=self.broadcaster,
        )
        self.refresher = RoadIndexRefresher(
            self.road_index,
            self.roads,
            interval_seconds=settings.road_refresh_interval_seconds,
            telemetry=self.telemetry,
        )

    async def start(self) -> None:
        """
        Connect to the store, then begin loading the road index in the background.

        A store that is down at startup does not stop the process; the
        readiness probe reports it and requests fail with 503 until it
        comes back.
        """
        try:
            await self.es_service.connect()
        except Exception as e:
            logger.error(
                "Failed to prepare Elasticsearch indices at startup",
                extra={"extra_data": {"error": str(e)}}
            )
        self.refresher.start()
        logger.info(
            "FamTracker services started",
            extra={"extra_data": {"environment": self.settings.environment.value}}
        )

    async def stop(self) -> None:
        await self.refresher.stop()
        await self.broadcaster.shutdown()
        await self.es_service.close()
        logger.info("FamTracker services stopped")
