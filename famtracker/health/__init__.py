"""
Health checks for the FamTracker backend: liveness, and readiness of the
position store and the road index.
"""

from famtracker.health.service import (
    DependencyHealth,
    HealthCheckService,
    HealthStatus,
    determine_overall_status,
)

__all__ = [
    "HealthCheckService",
    "HealthStatus",
    "DependencyHealth",
    "determine_overall_status",
]
