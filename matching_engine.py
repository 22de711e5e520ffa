import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, settings as default_settings
from errors import ValidationError
from geo_index import GeoIndex, GeoPoint, PointKind, bounding_box, polyline_distance
from models import Ride
from schemas import RideStatus, SearchFilters, as_utc_naive

logger = logging.getLogger(__name__)


@dataclass
class RideMatch:
    ride: Ride
    origin_distance_m: float
    destination_distance_m: float
    score_m: float = field(init=False)

    def __post_init__(self):
        self.score_m = self.origin_distance_m + self.destination_distance_m


class MatchingEngine:
    """
    Finds posted rides that travel the passenger's way.

    Matching Strategy:
    1. **Proximity**: the ride's origin must lie within R1 of the search origin
       and its destination within R2 of the search destination.
    2. **Corridor**: a ride with a route also matches when its line passes
       within R1 of the search origin and later within R2 of the search
       destination; distances are then measured to the line.
    3. **Date**: the ride departs on the requested calendar day (local time),
       is still upcoming and has a free seat.
    4. **Filters**: optional price range, booking mode and free seats.
    5. **Ranking**: origin distance + destination distance, ascending; ties go
       to the earliest departure.

    Search is read-only and takes no locks; seat counts may be slightly stale
    and are re-validated when booking.
    """

    def __init__(self, db_session: AsyncSession, config: Optional[Settings] = None):
        self.db = db_session
        self.config = config or default_settings
        self.geo_index = GeoIndex(db_session)

    def local_day_bounds(self, day: date) -> Tuple[datetime, datetime]:
        """UTC (naive) start and end of ``day`` in the configured local timezone."""
        tz = ZoneInfo(self.config.local_timezone)
        start = datetime.combine(day, time.min, tzinfo=tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
        return as_utc_naive(start), as_utc_naive(end)

    def _radius_m(self, radius_km: Optional[float]) -> float:
        if radius_km is None:
            radius_km = self.config.search_radius_default_km
        if radius_km < 0:
            raise ValidationError("Search radius cannot be negative")
        if radius_km > self.config.search_radius_max_km:
            raise ValidationError(
                f"Search radius cannot exceed {self.config.search_radius_max_km:g} km"
            )
        return radius_km * 1000.0

    @staticmethod
    def _check_filters(filters: SearchFilters) -> None:
        if filters.min_price is not None and filters.min_price < 0:
            raise ValidationError("Minimum price cannot be negative")
        if (
            filters.min_price is not None
            and filters.max_price is not None
            and filters.min_price > filters.max_price
        ):
            raise ValidationError("Minimum price is above maximum price")
        if filters.min_seats is not None and filters.min_seats < 1:
            raise ValidationError("Minimum free seats must be at least 1")
        if filters.max_results is not None and filters.max_results < 1:
            raise ValidationError("max_results must be at least 1")

    @staticmethod
    def _overlaps_route_box(point: GeoPoint, radius_m: float):
        lat_min, lat_max, lng_min, lng_max = bounding_box(point, radius_m)
        conditions = [Ride.route_lat_min <= lat_max, Ride.route_lat_max >= lat_min]
        if lng_min is not None:
            conditions += [Ride.route_lng_min <= lng_max, Ride.route_lng_max >= lng_min]
        return conditions

    async def _corridor_legs(
        self,
        origin: GeoPoint,
        destination: GeoPoint,
        origin_radius: float,
        destination_radius: float,
        day_start: datetime,
        day_end: datetime,
    ) -> Dict[str, Tuple[float, float]]:
        """Rides whose route passes near the origin and then near the destination."""
        stmt = select(Ride).where(
            Ride.route_lat_min.isnot(None),
            Ride.status == RideStatus.UPCOMING.value,
            Ride.departure_time >= day_start,
            Ride.departure_time < day_end,
            *self._overlaps_route_box(origin, origin_radius),
            *self._overlaps_route_box(destination, destination_radius),
        )
        result = await self.db.execute(stmt)

        legs = {}
        for ride in result.scalars().all():
            line = [GeoPoint(ride.origin_lat, ride.origin_lng)]
            line += [GeoPoint(lat, lng) for lat, lng in ride.route]
            line.append(GeoPoint(ride.destination_lat, ride.destination_lng))
            origin_m, pickup_at = polyline_distance(origin, line)
            destination_m, dropoff_at = polyline_distance(destination, line)
            if origin_m > origin_radius or destination_m > destination_radius:
                continue
            # The ride must reach the pickup before the drop-off
            if pickup_at > dropoff_at:
                continue
            legs[ride.id] = (origin_m, destination_m)
        return legs

    async def search(
        self,
        origin: GeoPoint,
        destination: GeoPoint,
        day: date,
        filters: Optional[SearchFilters] = None,
    ) -> List[RideMatch]:
        filters = filters or SearchFilters()
        self._check_filters(filters)
        origin_radius = self._radius_m(filters.origin_radius_km)
        destination_radius = self._radius_m(filters.destination_radius_km)
        day_start, day_end = self.local_day_bounds(day)

        # 1. Both endpoints near
        origin_hits = {
            hit.ride_id: hit.distance_m
            for hit in await self.geo_index.query_nearby(origin, origin_radius, PointKind.ORIGIN)
        }
        destination_hits = {
            hit.ride_id: hit.distance_m
            for hit in await self.geo_index.query_nearby(destination, destination_radius, PointKind.DESTINATION)
        }
        legs = {
            ride_id: (origin_hits[ride_id], destination_hits[ride_id])
            for ride_id in origin_hits.keys() & destination_hits.keys()
        }

        # 2. Or along the route
        corridor = await self._corridor_legs(
            origin, destination, origin_radius, destination_radius, day_start, day_end
        )
        for ride_id, (origin_m, destination_m) in corridor.items():
            endpoint = legs.get(ride_id, (math.inf, math.inf))
            legs[ride_id] = (min(origin_m, endpoint[0]), min(destination_m, endpoint[1]))

        if not legs:
            return []

        # 3. + 4. Date, status, free seats and filters
        stmt = select(Ride).where(
            Ride.id.in_(sorted(legs)),
            Ride.status == RideStatus.UPCOMING.value,
            Ride.departure_time >= day_start,
            Ride.departure_time < day_end,
            Ride.seats_available > 0,
        )
        if filters.min_price is not None:
            stmt = stmt.where(func.coalesce(Ride.price, 0) >= filters.min_price)
        if filters.max_price is not None:
            stmt = stmt.where(func.coalesce(Ride.price, 0) <= filters.max_price)
        if filters.booking_mode is not None:
            stmt = stmt.where(Ride.booking_mode == filters.booking_mode.value)
        if filters.min_seats is not None:
            stmt = stmt.where(Ride.seats_available >= filters.min_seats)

        result = await self.db.execute(stmt)
        rides = result.scalars().all()

        # 5. Rank
        matches = [
            RideMatch(
                ride=ride,
                origin_distance_m=legs[ride.id][0],
                destination_distance_m=legs[ride.id][1],
            )
            for ride in rides
        ]
        matches.sort(key=lambda m: (m.score_m, m.ride.departure_time, m.ride.id))

        limit = filters.max_results or self.config.search_max_results
        logger.info(
            "Search %s: %d near origin, %d on a corridor, %d candidates, %d matched",
            day.isoformat(), len(origin_hits), len(corridor), len(legs), len(matches),
        )
        return matches[:limit]
