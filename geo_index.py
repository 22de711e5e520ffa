"""
Geographic index over ride origins and destinations.

Each ride owns exactly two entries in ``ride_geo_points`` (one per kind).
Nearby queries pre-filter with a bounding box the database can answer from
the (kind, lat, lng) index, then apply the exact haversine distance.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ValidationError
from models import RideGeoPoint

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000
METERS_PER_DEGREE_LAT = 111000.0
# Slack added to bounding boxes so a radius of 0 still matches the exact point
_BBOX_EPSILON_DEG = 1e-9


class PointKind(str, Enum):
    ORIGIN = "origin"
    DESTINATION = "destination"


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    def __post_init__(self):
        if not -90.0 <= self.lat <= 90.0:
            raise ValidationError(f"Latitude {self.lat} is out of range")
        if not -180.0 <= self.lng <= 180.0:
            raise ValidationError(f"Longitude {self.lng} is out of range")


class NearbyHit(NamedTuple):
    ride_id: str
    distance_m: float


def haversine_distance(a: GeoPoint, b: GeoPoint) -> float:
    """
    Great-circle distance between two points in meters.

    Args:
        a: First point
        b: Second point

    Returns:
        Distance in meters (0 for identical points, symmetric in its arguments)
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [a.lat, a.lng, b.lat, b.lng])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # Rounding can push h marginally above 1 for antipodal points
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, h)))


def bounding_box(point: GeoPoint, radius_m: float):
    """Return (lat_min, lat_max, lng_min, lng_max); longitude bounds are None when unbounded."""
    lat_offset = radius_m / METERS_PER_DEGREE_LAT + _BBOX_EPSILON_DEG
    lat_min = max(-90.0, point.lat - lat_offset)
    lat_max = min(90.0, point.lat + lat_offset)

    cos_lat = math.cos(math.radians(point.lat))
    if cos_lat < 1e-6:
        return lat_min, lat_max, None, None
    lng_offset = radius_m / (METERS_PER_DEGREE_LAT * cos_lat) + _BBOX_EPSILON_DEG
    lng_min = point.lng - lng_offset
    lng_max = point.lng + lng_offset
    if lng_min < -180.0 or lng_max > 180.0:
        # Box wraps the antimeridian; fall back to the latitude band only
        return lat_min, lat_max, None, None
    return lat_min, lat_max, lng_min, lng_max


def polyline_bounds(line: Sequence[GeoPoint]) -> Tuple[float, float, float, float]:
    """(lat_min, lat_max, lng_min, lng_max) covering every vertex of ``line``."""
    lats = [p.lat for p in line]
    lngs = [p.lng for p in line]
    return min(lats), max(lats), min(lngs), max(lngs)


def polyline_distance(point: GeoPoint, line: Sequence[GeoPoint]) -> Tuple[float, float]:
    """
    Distance from ``point`` to the nearest segment of ``line``.

    Segments are measured in a local flat projection centred on ``point``,
    which is accurate for route segments of a few hundred kilometres.

    Returns:
        (distance_m, position) where position is the segment index plus the
        fraction along that segment, so positions increase along the line
    """
    if not line:
        raise ValidationError("Route must contain at least one point")

    lat0 = math.radians(point.lat)
    kx = EARTH_RADIUS_M * math.cos(lat0)

    def project(p: GeoPoint) -> Tuple[float, float]:
        dlng = (p.lng - point.lng + 180.0) % 360.0 - 180.0
        return kx * math.radians(dlng), EARTH_RADIUS_M * math.radians(p.lat - point.lat)

    projected = [project(p) for p in line]
    if len(projected) == 1:
        return math.hypot(*projected[0]), 0.0

    best = (math.inf, 0.0)
    for i, ((ax, ay), (bx, by)) in enumerate(zip(projected, projected[1:])):
        dx, dy = bx - ax, by - ay
        length_sq = dx * dx + dy * dy
        t = 0.0 if length_sq == 0 else max(0.0, min(1.0, -(ax * dx + ay * dy) / length_sq))
        distance = math.hypot(ax + t * dx, ay + t * dy)
        if distance < best[0]:
            best = (distance, i + t)
    return best


class GeoIndex:
    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def index_ride(self, ride_id: str, origin: GeoPoint, destination: GeoPoint) -> None:
        """Insert or move the ride's two entries. Re-indexing never adds rows."""
        result = await self.db.execute(select(RideGeoPoint).where(RideGeoPoint.ride_id == ride_id))
        existing: Dict[str, RideGeoPoint] = {row.kind: row for row in result.scalars().all()}

        for kind, point in ((PointKind.ORIGIN, origin), (PointKind.DESTINATION, destination)):
            row = existing.get(kind.value)
            if row is None:
                self.db.add(RideGeoPoint(ride_id=ride_id, kind=kind.value, lat=point.lat, lng=point.lng))
            else:
                row.lat = point.lat
                row.lng = point.lng
        await self.db.flush()

    async def remove_ride(self, ride_id: str) -> None:
        await self.db.execute(delete(RideGeoPoint).where(RideGeoPoint.ride_id == ride_id))

    async def query_nearby(
        self,
        point: GeoPoint,
        radius_m: float,
        kind: Optional[PointKind] = None,
    ) -> List[NearbyHit]:
        """
        Find indexed rides within ``radius_m`` of ``point``.

        Args:
            point: Search center
            radius_m: Search radius in meters (0 matches only the exact point)
            kind: Restrict to origins or destinations; when None a ride is
                reported once, at the closer of its two points

        Returns:
            List of (ride_id, distance_m), nearest first. The haversine
            filter and the per-ride dedup need every candidate row before
            anything can be ordered, so the result is built in full; a list
            can also be iterated again by the caller.
        """
        if radius_m < 0:
            raise ValidationError("Search radius cannot be negative")

        lat_min, lat_max, lng_min, lng_max = bounding_box(point, radius_m)
        stmt = select(RideGeoPoint.ride_id, RideGeoPoint.lat, RideGeoPoint.lng).where(
            RideGeoPoint.lat.between(lat_min, lat_max)
        )
        if lng_min is not None:
            stmt = stmt.where(RideGeoPoint.lng.between(lng_min, lng_max))
        if kind is not None:
            stmt = stmt.where(RideGeoPoint.kind == kind.value)

        result = await self.db.execute(stmt)

        nearest: Dict[str, float] = {}
        for ride_id, lat, lng in result.all():
            distance = haversine_distance(point, GeoPoint(lat, lng))
            if distance > radius_m:
                continue
            if ride_id not in nearest or distance < nearest[ride_id]:
                nearest[ride_id] = distance

        hits = [NearbyHit(ride_id, distance) for ride_id, distance in nearest.items()]
        hits.sort(key=lambda hit: (hit.distance_m, hit.ride_id))
        logger.debug(
            "nearby (%.5f, %.5f) r=%.0fm kind=%s -> %d hits",
            point.lat, point.lng, radius_m, kind.value if kind else "any", len(hits),
        )
        return hits
