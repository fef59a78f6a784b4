"""
Nearest-road lookup over the road reference data.

Segments are held in an immutable snapshot: a shapely STRtree over the
segment LineStrings plus flattened edge arrays. A query selects candidate
segments whose bounding box meets a lon/lat envelope around the point,
locates the foot of the perpendicular on each candidate edge in a local
tangent plane, and measures the WGS84 geodesic distance to that foot with
pyproj.

Rebuilding produces a new snapshot and swaps it in with one assignment,
so a query always runs against one complete snapshot.
"""

import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from pyproj import Geod
from shapely import STRtree
from shapely.geometry import LineString, box

from famtracker.models import RoadMatch, RoadSegment

logger = logging.getLogger(__name__)

GEOD = Geod(ellps="WGS84")

# Distances closer than this are ties; the lowest segment_id wins
TIE_TOLERANCE_M = 1e-6

# Lower bounds on the length of a degree on WGS84, used for the envelope
_MIN_METERS_PER_DEGREE_LAT = 110_574.0
_MIN_METERS_PER_DEGREE_LON_AT_EQUATOR = 111_319.0
_ENVELOPE_MARGIN = 1.1


def _wrap_longitude(lon):
    return (lon + 180.0) % 360.0 - 180.0


def search_envelopes(latitude: float, longitude: float, radius_m: float) -> List[tuple]:
    """
    Lon/lat boxes that together contain every point within ``radius_m``.

    Returns one box, or two when the envelope crosses the antimeridian.
    """
    dlat = radius_m / _MIN_METERS_PER_DEGREE_LAT * _ENVELOPE_MARGIN
    min_lat = max(-90.0, latitude - dlat)
    max_lat = min(90.0, latitude + dlat)

    cos_lat = math.cos(math.radians(min(90.0, abs(latitude) + dlat)))
    if cos_lat < 1e-9:
        return [(-180.0, min_lat, 180.0, max_lat)]
    dlon = radius_m / (_MIN_METERS_PER_DEGREE_LON_AT_EQUATOR * cos_lat) * _ENVELOPE_MARGIN
    if dlon >= 180.0:
        return [(-180.0, min_lat, 180.0, max_lat)]

    west = longitude - dlon
    east = longitude + dlon
    boxes = [(max(-180.0, west), min_lat, min(180.0, east), max_lat)]
    if west < -180.0:
        boxes.append((west + 360.0, min_lat, 180.0, max_lat))
    if east > 180.0:
        boxes.append((-180.0, min_lat, east - 360.0, max_lat))
    return boxes


def _plane_scale(latitude: float) -> tuple:
    """Metres per degree of longitude and latitude at ``latitude``."""
    phi = math.radians(latitude)
    per_lat = 111_132.954 - 559.822 * math.cos(2 * phi) + 1.175 * math.cos(4 * phi)
    per_lon = 111_412.84 * math.cos(phi) - 93.5 * math.cos(3 * phi)
    return max(per_lon, 1e-3), per_lat


class RoadSnapshot:
    """
    One immutable build of the road index.

    Not mutated after construction, so it is safe to query from executor
    threads while a newer snapshot is being built.
    """

    def __init__(self, segments: Sequence[RoadSegment]):
        started = time.perf_counter()
        self.segments: tuple = tuple(segments)
        self.built_at = datetime.now(timezone.utc)

        lines = [LineString(segment.coordinates) for segment in self.segments]
        self._tree: Optional[STRtree] = STRtree(lines) if lines else None

        # Edge i runs from _edge_start[i] to _edge_end[i] and belongs to
        # segment _edge_owner[i]; segment p owns edges offsets[p]:offsets[p+1]
        starts, ends, owners = [], [], []
        offsets = [0]
        for position, segment in enumerate(self.segments):
            coords = np.asarray(segment.coordinates, dtype=float)
            starts.append(coords[:-1])
            ends.append(coords[1:])
            owners.append(np.full(len(coords) - 1, position, dtype=np.int64))
            offsets.append(offsets[-1] + len(coords) - 1)

        if starts:
            self._edge_start = np.concatenate(starts)
            self._edge_end = np.concatenate(ends)
            self._edge_owner = np.concatenate(owners)
        else:
            self._edge_start = np.empty((0, 2))
            self._edge_end = np.empty((0, 2))
            self._edge_owner = np.empty(0, dtype=np.int64)
        self._edge_offsets = np.asarray(offsets, dtype=np.int64)

        self.build_duration_ms = (time.perf_counter() - started) * 1000

    def __len__(self) -> int:
        return len(self.segments)

    def candidates(self, latitude: float, longitude: float, radius_m: float) -> np.ndarray:
        """Positions of segments whose bounding box meets the search envelope."""
        if self._tree is None:
            return np.empty(0, dtype=np.int64)
        found = [
            self._tree.query(box(*envelope))
            for envelope in search_envelopes(latitude, longitude, radius_m)
        ]
        return np.unique(np.concatenate(found)).astype(np.int64)

    def nearest(self, latitude: float, longitude: float, radius_m: float) -> Optional[RoadMatch]:
        """
        Nearest segment within ``radius_m`` metres (inclusive), or None.

        Equidistant segments (within TIE_TOLERANCE_M) resolve to the lowest
        segment_id.
        """
        positions = self.candidates(latitude, longitude, radius_m)
        if positions.size == 0:
            return None

        edges = np.concatenate([
            np.arange(self._edge_offsets[p], self._edge_offsets[p + 1])
            for p in positions
        ])
        distances = self.edge_distances(latitude, longitude, edges)

        per_segment: Dict[int, float] = {}
        for owner, distance in zip(self._edge_owner[edges].tolist(), distances.tolist()):
            if distance < per_segment.get(owner, math.inf):
                per_segment[owner] = distance

        best = min(per_segment.values())
        if best > radius_m:
            return None

        winner = min(
            (owner for owner, distance in per_segment.items() if distance - best <= TIE_TOLERANCE_M),
            key=lambda owner: self.segments[owner].segment_id,
        )
        segment = self.segments[winner]
        return RoadMatch(
            segment_id=segment.segment_id,
            name=segment.name,
            speed_limit=segment.speed_limit,
            distance_m=per_segment[winner],
        )

    def edge_distances(self, latitude: float, longitude: float, edges: np.ndarray) -> np.ndarray:
        """Geodesic distance in metres from the point to the closest point of each edge."""
        kx, ky = _plane_scale(latitude)

        start = self._edge_start[edges]
        end = self._edge_end[edges]
        ax = _wrap_longitude(start[:, 0] - longitude) * kx
        ay = (start[:, 1] - latitude) * ky
        bx = _wrap_longitude(end[:, 0] - longitude) * kx
        by = (end[:, 1] - latitude) * ky

        # Foot of the perpendicular from the origin, clamped to the edge
        dx = bx - ax
        dy = by - ay
        length_sq = dx * dx + dy * dy
        with np.errstate(invalid="ignore", divide="ignore"):
            t = np.where(length_sq > 0, -(ax * dx + ay * dy) / length_sq, 0.0)
        t = np.clip(t, 0.0, 1.0)
        foot_lon = _wrap_longitude(longitude + (ax + t * dx) / kx)
        foot_lat = np.clip(latitude + (ay + t * dy) / ky, -90.0, 90.0)

        origin_lon = np.full(foot_lon.shape, longitude)
        origin_lat = np.full(foot_lat.shape, latitude)
        _, _, distances = GEOD.inv(origin_lon, origin_lat, foot_lon, foot_lat)
        return np.asarray(distances, dtype=float)


class RoadNetworkIndex:
    """
    Swappable nearest-road index.

    Queries wait up to ``ready_timeout_seconds`` for the first build and
    then report no match; they never fail because the index is loading.
    """

    def __init__(self, default_radius_m: float = 20.0, ready_timeout_seconds: float = 2.0):
        self.default_radius_m = default_radius_m
        self.ready_timeout_seconds = ready_timeout_seconds
        self._snapshot: Optional[RoadSnapshot] = None
        self._ready = asyncio.Event()

    @property
    def ready(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> Optional[RoadSnapshot]:
        return self._snapshot

    def install(self, snapshot: RoadSnapshot) -> None:
        """Swap in a finished snapshot."""
        previous = self._snapshot
        self._snapshot = snapshot
        self._ready.set()
        logger.info(
            "Road index snapshot installed",
            extra={"extra_data": {
                "segment_count": len(snapshot),
                "previous_segment_count": len(previous) if previous is not None else None,
                "build_duration_ms": round(snapshot.build_duration_ms, 2),
            }}
        )

    def rebuild(self, segments: Sequence[RoadSegment]) -> RoadSnapshot:
        """Build a snapshot from the full segment set and swap it in."""
        snapshot = RoadSnapshot(segments)
        self.install(snapshot)
        return snapshot

    async def rebuild_async(self, segments: Sequence[RoadSegment]) -> RoadSnapshot:
        """Like rebuild, with the build itself run in the default executor."""
        loop = asyncio.get_running_loop()
        snapshot = await loop.run_in_executor(None, RoadSnapshot, list(segments))
        self.install(snapshot)
        return snapshot

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        if self._ready.is_set():
            return True
        timeout = self.ready_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def nearest(
        self,
        latitude: float,
        longitude: float,
        radius_m: Optional[float] = None,
    ) -> Optional[RoadMatch]:
        """
        Nearest segment within the radius, or None.

        The lookup runs in the default executor against whichever snapshot
        is current when it starts.
        """
        if not await self.wait_ready():
            logger.warning(
                "Road index not ready, skipping match",
                extra={"extra_data": {"ready_timeout_seconds": self.ready_timeout_seconds}}
            )
            return None

        snapshot = self._snapshot
        radius = self.default_radius_m if radius_m is None else radius_m
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, snapshot.nearest, latitude, longitude, radius)

    def status(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        if snapshot is None:
            return {"ready": False, "segment_count": 0, "built_at": None}
        return {
            "ready": True,
            "segment_count": len(snapshot),
            "built_at": snapshot.built_at.isoformat(),
            "build_duration_ms": round(snapshot.build_duration_ms, 2),
        }
