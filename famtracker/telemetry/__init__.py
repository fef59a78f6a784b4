"""
Telemetry module for structured logging and observability.

This module provides:
- JSONFormatter for structured JSON log output
- TelemetryService for centralized logging, audit events and metrics
- Optional integration with OpenTelemetry for distributed tracing
"""

from famtracker.telemetry.service import (
    JSONFormatter,
    TelemetryService,
    set_request_id,
    get_request_id,
)

__all__ = [
    "JSONFormatter",
    "TelemetryService",
    "set_request_id",
    "get_request_id",
]
