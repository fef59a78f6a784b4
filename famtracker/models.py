"""
Data models shared across the FamTracker backend.

Request payloads are validated here with Pydantic; stored documents and
API responses are typed models rather than free-form dictionaries.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PositionSubmission(BaseModel):
    """
    A position report as sent by a mobile client.

    Speed is in metres per second. The server assigns the timestamp on
    receipt, so clients cannot back-date or future-date reports.
    """
    model_config = ConfigDict(extra="ignore")

    group_id: str = Field(..., min_length=1, max_length=128, description="Family the report belongs to")
    latitude: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in degrees")
    speed: Optional[float] = Field(None, ge=0, le=200, description="Speed in m/s")
    heading: Optional[float] = Field(None, ge=0, le=360, description="Heading in degrees")
    accuracy: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="Horizontal accuracy in metres")
    altitude: Optional[float] = Field(None, allow_inf_nan=False, description="Altitude in metres")

    @field_validator("group_id")
    @classmethod
    def validate_group_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("group_id cannot be blank")
        return v


class PositionReport(BaseModel):
    """A persisted, enriched position report. Never mutated after creation."""

    id: str
    user_id: str
    group_id: str
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    timestamp: datetime
    matched_road_id: Optional[int] = None
    matched_road_name: Optional[str] = None
    matched_speed_limit: Optional[float] = None
    road_distance_m: Optional[float] = None
    overspeed: Optional[float] = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def to_document(self) -> Dict[str, Any]:
        """Render the report as an Elasticsearch document."""
        document = self.model_dump(exclude_none=True)
        document["timestamp"] = self.timestamp.isoformat()
        document["location"] = {"lat": self.latitude, "lon": self.longitude}
        return document

    @classmethod
    def from_document(cls, source: Dict[str, Any]) -> "PositionReport":
        return cls.model_validate({k: v for k, v in source.items() if k != "location"})


def compute_overspeed(speed: Optional[float], speed_limit: Optional[float]) -> Optional[float]:
    """Amount by which speed exceeds the limit, or None when it does not."""
    if speed is None or speed_limit is None:
        return None
    excess = speed - speed_limit
    return excess if excess > 0 else None


class EnrichedReport(BaseModel):
    """Response to a position submission, also the live event payload."""

    id: str
    user_id: str
    group_id: str
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    timestamp: datetime
    speed_limit: Optional[float] = None
    road_name: Optional[str] = None

    @classmethod
    def from_report(cls, report: PositionReport) -> "EnrichedReport":
        return cls(
            id=report.id,
            user_id=report.user_id,
            group_id=report.group_id,
            latitude=report.latitude,
            longitude=report.longitude,
            speed=report.speed,
            heading=report.heading,
            accuracy=report.accuracy,
            altitude=report.altitude,
            timestamp=report.timestamp,
            speed_limit=report.matched_speed_limit,
            road_name=report.matched_road_name,
        )


class CurrentPosition(BaseModel):
    """Latest fresh position of one visible family member."""

    user_id: str
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    timestamp: datetime
    speed_limit: Optional[float] = None

    @classmethod
    def from_report(cls, report: PositionReport) -> "CurrentPosition":
        return cls(
            user_id=report.user_id,
            latitude=report.latitude,
            longitude=report.longitude,
            speed=report.speed,
            heading=report.heading,
            accuracy=report.accuracy,
            altitude=report.altitude,
            timestamp=report.timestamp,
            speed_limit=report.matched_speed_limit,
        )


class FamilyPositions(BaseModel):
    group_id: str
    locations: List[CurrentPosition]


class HistoryEntry(BaseModel):
    id: str
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    timestamp: datetime
    speed_limit: Optional[float] = None

    @classmethod
    def from_report(cls, report: PositionReport) -> "HistoryEntry":
        return cls(
            id=report.id,
            latitude=report.latitude,
            longitude=report.longitude,
            speed=report.speed,
            heading=report.heading,
            accuracy=report.accuracy,
            altitude=report.altitude,
            timestamp=report.timestamp,
            speed_limit=report.matched_speed_limit,
        )


class HistoryPage(BaseModel):
    """A user's reports, newest first."""

    user_id: str
    count: int
    history: List[HistoryEntry]


class SpeedStats(BaseModel):
    """Speed aggregates over a trailing window. All zero when there is no data."""

    count: int = 0
    avg_speed: float = 0.0
    max_speed: float = 0.0
    speeding_count: int = 0
    points_with_limit: int = 0
    avg_overspeed: float = 0.0


class StatsResponse(BaseModel):
    user_id: str
    window_hours: float
    stats: SpeedStats


class MemberRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class Membership(BaseModel):
    """One user's membership in one group."""

    group_id: str
    user_id: str
    role: MemberRole = MemberRole.MEMBER
    is_visible: bool = True
    joined_at: datetime = Field(default_factory=utc_now)

    @property
    def document_id(self) -> str:
        return membership_document_id(self.group_id, self.user_id)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def membership_document_id(group_id: str, user_id: str) -> str:
    """Deterministic document ID; makes (group, user) unique in the store."""
    return f"{group_id}:{user_id}"


class VisibilityUpdate(BaseModel):
    is_visible: bool


class RoadSegment(BaseModel):
    """
    Immutable road reference data.

    ``coordinates`` are (longitude, latitude) pairs in GeoJSON order.
    """
    model_config = ConfigDict(frozen=True)

    segment_id: int
    name: Optional[str] = None
    speed_limit: Optional[float] = None
    coordinates: Tuple[Tuple[float, float], ...]

    @field_validator("coordinates")
    @classmethod
    def validate_coordinates(cls, v: Tuple[Tuple[float, float], ...]) -> Tuple[Tuple[float, float], ...]:
        if len(v) < 2:
            raise ValueError("a road segment needs at least two points")
        for lon, lat in v:
            if not (math.isfinite(lon) and math.isfinite(lat)):
                raise ValueError("coordinates must be finite")
            if not (-180 <= lon <= 180 and -90 <= lat <= 90):
                raise ValueError(f"coordinate out of range: ({lon}, {lat})")
        return v

    @classmethod
    def from_document(cls, source: Dict[str, Any]) -> "RoadSegment":
        geometry = source.get("geometry") or {}
        return cls(
            segment_id=source["segment_id"],
            name=source.get("name"),
            speed_limit=source.get("speed_limit"),
            coordinates=tuple(tuple(point[:2]) for point in geometry.get("coordinates", ())),
        )


class RoadMatch(BaseModel):
    """Nearest road within the match radius."""
    model_config = ConfigDict(frozen=True)

    segment_id: int
    name: Optional[str] = None
    speed_limit: Optional[float] = None
    distance_m: float
