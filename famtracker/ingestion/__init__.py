"""
Position ingestion: validation, authorization, road enrichment,
persistence and hand-off to the live fan-out.
"""

from famtracker.ingestion.service import IngestionService, parse_submission

__all__ = ["IngestionService", "parse_submission"]
