"""
Periodic reload of the road index from the road_segments index.
"""

import asyncio
import logging
import time
import uuid
from typing import Optional

from famtracker.errors.exceptions import AppException
from famtracker.resilience.retry import RetryConfig, RetryExhaustedException, retry_async
from famtracker.roads.index import RoadNetworkIndex
from famtracker.storage.repositories import RoadSegmentRepository
from famtracker.telemetry.service import TelemetryService, set_request_id

logger = logging.getLogger(__name__)

# While the first load keeps failing, retry sooner than the refresh interval
INITIAL_LOAD_RETRY_SECONDS = 30.0


class RoadIndexRefresher:
    """
    Owns the background task that rebuilds the road index.

    The first load starts immediately; afterwards the index is rebuilt
    wholesale every ``interval_seconds``. A failed refresh keeps serving
    the previous snapshot.
    """

    def __init__(
        self,
        index: RoadNetworkIndex,
        repository: RoadSegmentRepository,
        interval_seconds: float,
        telemetry: Optional[TelemetryService] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.index = index
        self.repository = repository
        self.interval_seconds = interval_seconds
        self.telemetry = telemetry
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            initial_delay=1.0,
            max_delay=10.0,
            jitter=0.1,
            retryable_exceptions=(AppException,),
        )
        self._task: Optional[asyncio.Task] = None

    async def refresh_once(self) -> bool:
        """Load all segments and rebuild. Returns False if the refresh failed."""
        started = time.perf_counter()
        try:
            segments = await retry_async(
                self.repository.load_all,
                config=self.retry_config,
                operation_name="road_segments.load_all",
            )
        except RetryExhaustedException as e:
            logger.error(
                "Road index refresh failed, keeping previous snapshot",
                extra={"extra_data": {
                    "attempts": e.attempts,
                    "error": str(e.last_exception),
                    "index_ready": self.index.ready,
                }}
            )
            if self.telemetry:
                self.telemetry.record_metric("road_index.refresh_failed", 1)
            return False

        snapshot = await self.index.rebuild_async(segments)
        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Road index refreshed",
            extra={"extra_data": {
                "segment_count": len(snapshot),
                "duration_ms": round(duration_ms, 2),
            }}
        )
        if self.telemetry:
            self.telemetry.record_metric("road_index.refresh_duration_ms", duration_ms)
            self.telemetry.record_metric("road_index.segment_count", len(snapshot))
        return True

    async def _run(self) -> None:
        while True:
            # Correlates the log lines of one refresh cycle
            set_request_id(f"road-refresh-{uuid.uuid4().hex[:8]}")
            try:
                await self.refresh_once()
            except Exception:
                logger.exception("Unexpected error while refreshing road index")
            if self.index.ready:
                delay = self.interval_seconds
            else:
                delay = min(self.interval_seconds, INITIAL_LOAD_RETRY_SECONDS)
            await asyncio.sleep(delay)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="road-index-refresher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
