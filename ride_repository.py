"""
Ride postings and their seat inventory.

Seat counters are only ever changed through conditional UPDATE statements
(read, assert sufficiency and write in one statement), so the table can
never hold an overbooked or over-restored ride even if a caller forgets to
take the ride lock.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, settings as default_settings
from errors import (
    AuthorizationError,
    InsufficientSeatsError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from geo_index import GeoIndex, GeoPoint, haversine_distance, polyline_bounds
from locks import RideLockRegistry, ride_locks
from models import ACTIVE_BOOKING_STATUSES, Booking, Ride, utcnow
from notifications import EventType, LoggingNotificationGateway, NotificationGateway, RideEvent
from schemas import BookingMode, BookingStatus, RidePatch, RideStatus, as_utc_naive

logger = logging.getLogger(__name__)

RIDE_CANCELLED_REASON = "Ride cancelled by driver"
RIDE_COMPLETED_REASON = "Ride completed"


class RideRepository:
    """CRUD for ride postings. Owns the seats_available invariants."""

    def __init__(
        self,
        db_session: AsyncSession,
        notifier: Optional[NotificationGateway] = None,
        locks: Optional[RideLockRegistry] = None,
        config: Optional[Settings] = None,
    ):
        self.db = db_session
        self.notifier = notifier or LoggingNotificationGateway()
        self.locks = locks or ride_locks
        self.config = config or default_settings
        self.geo_index = GeoIndex(db_session)

    # ===================== Validation =====================

    def _validate_seats_total(self, seats_total: int) -> None:
        if seats_total < 1:
            raise ValidationError("A ride needs at least 1 seat")
        if seats_total > self.config.max_seats:
            raise ValidationError(f"A ride can offer at most {self.config.max_seats} seats")

    def _validate_route(self, origin: GeoPoint, destination: GeoPoint) -> None:
        if haversine_distance(origin, destination) <= self.config.same_point_tolerance_m:
            raise ValidationError("Origin and destination must be different places")

    @staticmethod
    def _validate_departure(departure_time: datetime) -> datetime:
        departure_time = as_utc_naive(departure_time)
        if departure_time <= utcnow():
            raise ValidationError("Departure time must be in the future")
        return departure_time

    @staticmethod
    def _validate_price(price: Optional[float]) -> None:
        if price is not None and price < 0:
            raise ValidationError("Price cannot be negative")

    @staticmethod
    def _validate_polyline(route: Optional[Sequence[Sequence[float]]]) -> Optional[List[List[float]]]:
        if route is None:
            return None
        points = []
        for pair in route:
            if len(pair) != 2:
                raise ValidationError("Route points must be [lat, lng] pairs")
            point = GeoPoint(float(pair[0]), float(pair[1]))
            points.append([point.lat, point.lng])
        return points

    @staticmethod
    def _set_route(ride: Ride, route: Optional[List[List[float]]]) -> None:
        """Store the polyline and the box the matcher pre-filters corridors with."""
        ride.route = route
        if not route:
            ride.route_lat_min = ride.route_lat_max = None
            ride.route_lng_min = ride.route_lng_max = None
            return
        line = [GeoPoint(ride.origin_lat, ride.origin_lng)]
        line += [GeoPoint(lat, lng) for lat, lng in route]
        line.append(GeoPoint(ride.destination_lat, ride.destination_lng))
        ride.route_lat_min, ride.route_lat_max, ride.route_lng_min, ride.route_lng_max = polyline_bounds(line)

    # ===================== Queries =====================

    async def get_ride(self, ride_id: str, for_update: bool = False) -> Ride:
        stmt = select(Ride).where(Ride.id == ride_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        ride = result.scalar_one_or_none()
        if ride is None:
            raise NotFoundError("Ride not found")
        return ride

    async def list_driver_rides(
        self,
        driver_id: str,
        status: Optional[RideStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Ride]:
        stmt = select(Ride).where(Ride.driver_id == driver_id).order_by(Ride.departure_time.desc())
        if status is not None:
            stmt = stmt.where(Ride.status == status.value)
        if limit:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_active_bookings(self, ride_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Booking.id)).where(
                Booking.ride_id == ride_id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
        )
        return result.scalar_one()

    # ===================== Driver Operations =====================

    async def create_ride(
        self,
        driver_id: str,
        origin: GeoPoint,
        destination: GeoPoint,
        departure_time: datetime,
        seats_total: int,
        price: Optional[float] = None,
        booking_mode: BookingMode = BookingMode.INSTANT,
        origin_address: str = "",
        destination_address: str = "",
        route: Optional[Sequence[Sequence[float]]] = None,
        notes: Optional[str] = None,
    ) -> Ride:
        """
        Publish a new ride with every seat open.

        Raises:
            ValidationError: bad seat count, past departure, negative price or
                origin and destination at the same place
        """
        self._validate_seats_total(seats_total)
        departure_time = self._validate_departure(departure_time)
        self._validate_route(origin, destination)
        self._validate_price(price)
        route = self._validate_polyline(route)

        ride = Ride(
            driver_id=driver_id,
            origin_lat=origin.lat,
            origin_lng=origin.lng,
            origin_address=origin_address,
            destination_lat=destination.lat,
            destination_lng=destination.lng,
            destination_address=destination_address,
            departure_time=departure_time,
            seats_total=seats_total,
            seats_available=seats_total,
            price=price,
            booking_mode=BookingMode(booking_mode).value,
            status=RideStatus.UPCOMING.value,
            notes=notes,
        )
        self._set_route(ride, route)
        self.db.add(ride)
        await self.db.flush()
        await self.geo_index.index_ride(ride.id, origin, destination)
        await self.db.commit()
        await self.db.refresh(ride)

        logger.info("Ride %s created by driver %s (%d seats, %s)", ride.id, driver_id, seats_total, ride.booking_mode)
        return ride

    async def update_ride(self, ride_id: str, driver_id: str, patch: RidePatch) -> Ride:
        """
        Apply a driver's edit to an upcoming ride.

        Raises:
            NotFoundError: unknown ride
            AuthorizationError: caller does not own the ride
            InvalidStateError: ride is no longer upcoming, or seats_total is
                changed while bookings are active
            ValidationError: patched values fail the creation rules
        """
        async with self.locks.hold(ride_id):
            try:
                ride = await self.get_ride(ride_id, for_update=True)
                if ride.driver_id != driver_id:
                    raise AuthorizationError("Only the driver can edit this ride")

                fields = patch.model_fields_set
                if not fields:
                    await self.db.commit()
                    return ride
                if ride.status != RideStatus.UPCOMING.value:
                    if "seats_total" in fields:
                        raise InvalidStateError("Seats can only be changed on upcoming rides")
                    raise InvalidStateError(f"Cannot edit a ride that is {ride.status}")

                origin = GeoPoint(ride.origin_lat, ride.origin_lng)
                destination = GeoPoint(ride.destination_lat, ride.destination_lng)
                if "origin" in fields and patch.origin is not None:
                    origin = GeoPoint(patch.origin.lat, patch.origin.lng)
                    ride.origin_address = patch.origin.address
                if "destination" in fields and patch.destination is not None:
                    destination = GeoPoint(patch.destination.lat, patch.destination.lng)
                    ride.destination_address = patch.destination.address
                moved = (origin.lat, origin.lng, destination.lat, destination.lng) != (
                    ride.origin_lat, ride.origin_lng, ride.destination_lat, ride.destination_lng,
                )
                if moved:
                    self._validate_route(origin, destination)
                    ride.origin_lat, ride.origin_lng = origin.lat, origin.lng
                    ride.destination_lat, ride.destination_lng = destination.lat, destination.lng

                if "departure_time" in fields and patch.departure_time is not None:
                    ride.departure_time = self._validate_departure(patch.departure_time)
                if "price" in fields:
                    self._validate_price(patch.price)
                    ride.price = patch.price
                if "booking_mode" in fields and patch.booking_mode is not None:
                    ride.booking_mode = patch.booking_mode.value
                if "route" in fields or moved:
                    route = self._validate_polyline(patch.route) if "route" in fields else ride.route
                    self._set_route(ride, route)
                if "notes" in fields:
                    ride.notes = patch.notes

                if "seats_total" in fields and patch.seats_total is not None:
                    self._validate_seats_total(patch.seats_total)
                    if patch.seats_total != ride.seats_total:
                        if await self.count_active_bookings(ride.id):
                            raise InvalidStateError("Seats cannot be changed after bookings exist")
                        ride.seats_total = patch.seats_total
                        ride.seats_available = patch.seats_total

                if moved:
                    await self.geo_index.index_ride(ride.id, origin, destination)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        await self.db.refresh(ride)
        logger.info("Ride %s updated by driver %s: %s", ride.id, driver_id, sorted(fields))
        return ride

    async def delete_ride(self, ride_id: str, driver_id: str) -> Ride:
        """
        Cancel a ride and every active booking on it.

        The ride row is kept with status=cancelled so bookings keep their
        reference; its geo entries are dropped so it no longer matches searches.
        Only an upcoming ride can be cancelled; once started it has to be
        completed.
        """
        async with self.locks.hold(ride_id):
            try:
                ride = await self.get_ride(ride_id, for_update=True)
                if ride.driver_id != driver_id:
                    raise AuthorizationError("Only the driver can cancel this ride")
                if ride.status != RideStatus.UPCOMING.value:
                    raise InvalidStateError(f"Cannot cancel - ride is {ride.status}")

                active = await self._cancel_active_bookings(ride.id, ACTIVE_BOOKING_STATUSES, RIDE_CANCELLED_REASON)
                ride.status = RideStatus.CANCELLED.value
                ride.seats_available = ride.seats_total
                await self.geo_index.remove_ride(ride.id)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info("Ride %s cancelled by driver %s, %d bookings cancelled", ride.id, driver_id, len(active))

        events = [
            RideEvent(
                type=EventType.BOOKING_CANCELLED,
                ride_id=ride.id,
                booking_id=booking.id,
                actor_id=driver_id,
            )
            for booking in active
        ]
        events.append(RideEvent(type=EventType.RIDE_CANCELLED, ride_id=ride.id, actor_id=driver_id))
        await self.notifier.publish_all(events)
        return ride

    async def start_ride(self, ride_id: str, driver_id: str) -> Ride:
        return await self._advance_status(ride_id, driver_id, RideStatus.UPCOMING, RideStatus.IN_PROGRESS)

    async def complete_ride(self, ride_id: str, driver_id: str) -> Ride:
        return await self._advance_status(ride_id, driver_id, RideStatus.IN_PROGRESS, RideStatus.COMPLETED)

    async def _advance_status(
        self,
        ride_id: str,
        driver_id: str,
        expected: RideStatus,
        target: RideStatus,
    ) -> Ride:
        async with self.locks.hold(ride_id):
            try:
                ride = await self.get_ride(ride_id, for_update=True)
                if ride.driver_id != driver_id:
                    raise AuthorizationError("Only the driver can change the ride status")
                if ride.status != expected.value:
                    raise InvalidStateError(f"Cannot move a ride from {ride.status} to {target.value}")
                dropped: List[Booking] = []
                if target == RideStatus.COMPLETED:
                    # Pending requests can no longer be answered once the trip is over
                    dropped = await self._cancel_active_bookings(
                        ride.id, (BookingStatus.PENDING.value,), RIDE_COMPLETED_REASON
                    )
                ride.status = target.value
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info("Ride %s is now %s, %d pending bookings dropped", ride.id, target.value, len(dropped))
        await self.notifier.publish_all([
            RideEvent(type=EventType.BOOKING_CANCELLED, ride_id=ride.id, booking_id=booking.id, actor_id=driver_id)
            for booking in dropped
        ])
        return ride

    async def _cancel_active_bookings(
        self,
        ride_id: str,
        statuses: Sequence[str],
        reason: str,
    ) -> List[Booking]:
        """Cancel the ride's bookings in ``statuses``; seat counters are the caller's job."""
        result = await self.db.execute(
            select(Booking).where(Booking.ride_id == ride_id, Booking.status.in_(statuses))
        )
        cancelled = list(result.scalars().all())
        now = utcnow()
        for booking in cancelled:
            booking.status = BookingStatus.CANCELLED.value
            booking.cancellation_reason = reason
            booking.cancelled_at = now
        return cancelled

    # ===================== Seat Inventory =====================
    # Both run inside the caller's transaction; the caller holds the ride lock.

    async def decrement_seats(self, ride_id: str, count: int) -> int:
        """Take ``count`` seats; returns the new seats_available."""
        stmt = (
            update(Ride)
            .where(Ride.id == ride_id, Ride.seats_available >= count)
            .values(seats_available=Ride.seats_available - count)
            .returning(Ride.seats_available)
        )
        result = await self.db.execute(stmt)
        remaining = result.scalar_one_or_none()
        if remaining is None:
            ride = await self.get_ride(ride_id, for_update=True)
            raise InsufficientSeatsError(ride.seats_available, count)
        return remaining

    async def restore_seats(self, ride_id: str, count: int) -> int:
        """Give back ``count`` seats; returns the new seats_available."""
        stmt = (
            update(Ride)
            .where(Ride.id == ride_id, Ride.seats_available + count <= Ride.seats_total)
            .values(seats_available=Ride.seats_available + count)
            .returning(Ride.seats_available)
        )
        result = await self.db.execute(stmt)
        restored = result.scalar_one_or_none()
        if restored is None:
            # Either the ride is gone or the restore would exceed seats_total
            await self.get_ride(ride_id)
            raise InvalidStateError("Cannot restore more seats than the ride offers")
        return restored
