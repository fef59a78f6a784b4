"""
Health check service for the FamTracker backend.

Readiness covers the position store (critical) and the road index
(non-critical: while it loads, reports are stored unmatched). Each check
is bounded by a timeout and reports its response time.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from famtracker.broadcast.channels import Broadcaster
from famtracker.roads.index import RoadNetworkIndex
from famtracker.storage.elasticsearch import ElasticsearchService

logger = logging.getLogger(__name__)

CRITICAL_DEPENDENCIES = frozenset({"elasticsearch"})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DependencyHealth:
    """
    Health status of a single dependency.

    Attributes:
        name: The name of the dependency (e.g., "elasticsearch", "road_index")
        healthy: Whether the dependency is healthy and responding
        response_time_ms: The time taken to check the dependency in milliseconds
        error: Optional error message if the dependency check failed
        details: Optional extra state such as segment counts
    """
    name: str
    healthy: bool
    response_time_ms: float
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "name": self.name,
            "healthy": self.healthy,
            "response_time_ms": round(self.response_time_ms, 2),
        }
        if self.error is not None:
            result["error"] = self.error
        if self.details is not None:
            result["details"] = self.details
        return result


@dataclass
class HealthStatus:
    """Overall status: "healthy", "degraded" or "unhealthy"."""
    status: str
    timestamp: str
    dependencies: List[DependencyHealth] = field(default_factory=list)
    live_updates: Optional[Dict[str, Any]] = None

    @property
    def is_unhealthy(self) -> bool:
        return self.status == "unhealthy"

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "status": self.status,
            "timestamp": self.timestamp,
            "dependencies": [dep.to_dict() for dep in self.dependencies],
        }
        if self.live_updates is not None:
            result["live_updates"] = self.live_updates
        return result


class HealthCheckService:
    def __init__(
        self,
        es_service: ElasticsearchService,
        road_index: RoadNetworkIndex,
        broadcaster: Optional[Broadcaster] = None,
        check_timeout: float = 5.0,
    ):
        self.es_service = es_service
        self.road_index = road_index
        self.broadcaster = broadcaster
        self.check_timeout = check_timeout

    async def check_readiness(self) -> HealthStatus:
        dependencies = [await self._check_elasticsearch(), self._check_road_index()]
        return HealthStatus(
            status=determine_overall_status(dependencies),
            timestamp=_now_iso(),
            dependencies=dependencies,
            live_updates=self.broadcaster.stats() if self.broadcaster else None,
        )

    async def check_liveness(self) -> Dict[str, Any]:
        """The process is running; no dependencies are touched."""
        return {"status": "alive", "timestamp": _now_iso()}

    async def check_health(self) -> Dict[str, Any]:
        return {"status": "ok", "timestamp": _now_iso()}

    async def _check_elasticsearch(self) -> DependencyHealth:
        start_time = time.perf_counter()
        try:
            reachable = await asyncio.wait_for(self.es_service.ping(), timeout=self.check_timeout)
            error = None if reachable else "Elasticsearch ping returned False"
        except asyncio.TimeoutError:
            reachable = False
            error = f"Elasticsearch health check timed out after {self.check_timeout} seconds"

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        if error:
            logger.warning(
                "Elasticsearch health check failed",
                extra={"extra_data": {"error": error, "response_time_ms": round(elapsed_ms, 2)}}
            )
        return DependencyHealth(
            name="elasticsearch",
            healthy=reachable,
            response_time_ms=elapsed_ms,
            error=error,
            details={"circuit_breaker": self.es_service.circuit_breaker.stats()},
        )

    def _check_road_index(self) -> DependencyHealth:
        start_time = time.perf_counter()
        status = self.road_index.status()
        return DependencyHealth(
            name="road_index",
            healthy=status["ready"],
            response_time_ms=(time.perf_counter() - start_time) * 1000,
            error=None if status["ready"] else "Road index is still loading",
            details=status,
        )


def determine_overall_status(dependencies: List[DependencyHealth]) -> str:
    """
    - "healthy": every dependency is healthy
    - "unhealthy": a critical dependency (Elasticsearch) is down
    - "degraded": only non-critical dependencies are down
    """
    unhealthy = {dep.name for dep in dependencies if not dep.healthy}
    if not unhealthy:
        return "healthy"
    if unhealthy & CRITICAL_DEPENDENCIES:
        return "unhealthy"
    return "degraded"
