"""
Booking lifecycle: instant and request-approve flows, driver responses and
cancellations.

Every transition that reads and then writes a ride's seat inventory or its
set of active bookings runs as one unit: the ride lock is held from the first
read of the ride until the transaction has committed or rolled back. Events
are published only after a successful commit.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import (
    AuthorizationError,
    DuplicateBookingError,
    InsufficientSeatsError,
    InvalidStateError,
    NotFoundError,
    SelfBookingError,
    ValidationError,
)
from locks import RideLockRegistry, ride_locks
from models import ACTIVE_BOOKING_STATUSES, Booking, Ride, utcnow
from notifications import EventType, LoggingNotificationGateway, NotificationGateway, RideEvent
from ride_repository import RideRepository
from schemas import BookingMode, BookingStatus, RideStatus

logger = logging.getLogger(__name__)

# Booking mode decides where a new booking starts and which event announces it
INITIAL_STATUS = {
    BookingMode.INSTANT: BookingStatus.CONFIRMED,
    BookingMode.REQUEST: BookingStatus.PENDING,
}
CREATED_EVENT = {
    BookingMode.INSTANT: EventType.BOOKING_CONFIRMED,
    BookingMode.REQUEST: EventType.BOOKING_PENDING,
}
WRONG_MODE_MESSAGE = {
    BookingMode.INSTANT: "This ride needs driver approval - send a booking request instead",
    BookingMode.REQUEST: "This ride is booked instantly - no request needed",
}


class BookingEngine:
    """State machine for bookings: pending -> confirmed/declined, pending/confirmed -> cancelled."""

    def __init__(
        self,
        db_session: AsyncSession,
        notifier: Optional[NotificationGateway] = None,
        locks: Optional[RideLockRegistry] = None,
        rides: Optional[RideRepository] = None,
    ):
        self.db = db_session
        self.notifier = notifier or LoggingNotificationGateway()
        self.locks = locks or ride_locks
        self.rides = rides or RideRepository(db_session, notifier=self.notifier, locks=self.locks)

    # ===================== Queries =====================

    async def _get_booking(self, booking_id: str, for_update: bool = False) -> Booking:
        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    async def find_active_booking(self, ride_id: str, passenger_id: str) -> Optional[Booking]:
        result = await self.db.execute(
            select(Booking).where(
                Booking.ride_id == ride_id,
                Booking.passenger_id == passenger_id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
        )
        return result.scalars().first()

    async def _find_by_idempotency_key(self, passenger_id: str, idempotency_key: str) -> Optional[Booking]:
        result = await self.db.execute(
            select(Booking).where(
                Booking.passenger_id == passenger_id,
                Booking.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    async def get_booking(self, booking_id: str, actor_id: str) -> Booking:
        """Fetch a booking visible to its passenger or to the ride's driver."""
        booking = await self._get_booking(booking_id)
        if booking.passenger_id != actor_id:
            ride = await self.rides.get_ride(booking.ride_id)
            if ride.driver_id != actor_id:
                raise AuthorizationError("You cannot view this booking")
        return booking

    async def list_ride_bookings(self, ride_id: str, driver_id: str) -> List[Booking]:
        ride = await self.rides.get_ride(ride_id)
        if ride.driver_id != driver_id:
            raise AuthorizationError("Only the driver can list bookings for this ride")
        result = await self.db.execute(
            select(Booking).where(Booking.ride_id == ride_id).order_by(Booking.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_passenger_bookings(self, passenger_id: str) -> List[Booking]:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.passenger_id == passenger_id)
            .order_by(Booking.created_at.desc())
        )
        return list(result.scalars().all())

    # ===================== Passenger Operations =====================

    async def book_instant(
        self,
        ride_id: str,
        passenger_id: str,
        seats: int = 1,
        idempotency_key: Optional[str] = None,
    ) -> Booking:
        """
        Book seats on an instant ride; the booking is confirmed immediately.

        Raises:
            NotFoundError: unknown ride
            InvalidStateError: ride is not instant or no longer upcoming
            SelfBookingError: the passenger is the ride's driver
            DuplicateBookingError: passenger already holds an active booking
            ValidationError: seats outside 1..seats_total
            InsufficientSeatsError: not enough seats left at commit time
        """
        return await self._create_booking(ride_id, passenger_id, seats, BookingMode.INSTANT, idempotency_key)

    async def request_booking(
        self,
        ride_id: str,
        passenger_id: str,
        seats: int = 1,
        idempotency_key: Optional[str] = None,
    ) -> Booking:
        """Ask the driver for seats; the booking stays pending and no seat is reserved yet."""
        return await self._create_booking(ride_id, passenger_id, seats, BookingMode.REQUEST, idempotency_key)

    async def _create_booking(
        self,
        ride_id: str,
        passenger_id: str,
        seats: int,
        mode: BookingMode,
        idempotency_key: Optional[str],
    ) -> Booking:
        async with self.locks.hold(ride_id):
            try:
                ride = await self.rides.get_ride(ride_id, for_update=True)

                if idempotency_key:
                    replay = await self._find_by_idempotency_key(passenger_id, idempotency_key)
                    if replay is not None:
                        if replay.ride_id != ride_id:
                            raise ValidationError("Idempotency key was already used for another ride")
                        # Release the row lock; nothing was written
                        await self.db.commit()
                        logger.info("Replayed booking %s for key %s", replay.id, idempotency_key)
                        return replay

                if ride.booking_mode != mode.value:
                    raise InvalidStateError(WRONG_MODE_MESSAGE[mode])
                if ride.status != RideStatus.UPCOMING.value:
                    raise InvalidStateError(f"Cannot book - ride is {ride.status}")
                if ride.driver_id == passenger_id:
                    raise SelfBookingError()
                if await self.find_active_booking(ride.id, passenger_id) is not None:
                    raise DuplicateBookingError()
                if seats < 1 or seats > ride.seats_total:
                    raise ValidationError(f"Seats must be between 1 and {ride.seats_total}")

                status = INITIAL_STATUS[mode]
                if status == BookingStatus.CONFIRMED:
                    if seats > ride.seats_available:
                        raise InsufficientSeatsError(ride.seats_available, seats)
                    await self.rides.decrement_seats(ride.id, seats)

                now = utcnow()
                booking = Booking(
                    ride_id=ride.id,
                    passenger_id=passenger_id,
                    seats_booked=seats,
                    status=status.value,
                    idempotency_key=idempotency_key,
                    created_at=now,
                    updated_at=now,
                    responded_at=now if status == BookingStatus.CONFIRMED else None,
                )
                self.db.add(booking)
                await self.db.flush()
                await self.db.commit()
            except IntegrityError as exc:
                await self.db.rollback()
                # SQLite names the columns, PostgreSQL the constraint
                if "idempotency_key" in str(exc.orig):
                    raise ValidationError("Idempotency key was already used for another ride")
                # The partial unique index caught a second active booking
                raise DuplicateBookingError()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            "Booking %s %s: passenger %s, ride %s, %d seat(s)",
            booking.id, booking.status, passenger_id, ride_id, seats,
        )
        await self.notifier.publish_all([
            RideEvent(type=CREATED_EVENT[mode], ride_id=ride_id, booking_id=booking.id, actor_id=passenger_id)
        ])
        return booking

    # ===================== Driver Operations =====================

    async def respond_to_request(self, booking_id: str, driver_id: str, accept: bool) -> Booking:
        """
        Accept or decline a pending booking.

        Accepting re-checks availability: if other bookings took the seats in
        the meantime an InsufficientSeatsError is raised and the booking stays
        pending, so the driver can retry later or decline.
        """
        booking = await self._get_booking(booking_id)
        async with self.locks.hold(booking.ride_id):
            try:
                booking = await self._get_booking(booking_id, for_update=True)
                ride = await self.rides.get_ride(booking.ride_id, for_update=True)
                if ride.driver_id != driver_id:
                    raise AuthorizationError("Only the driver can respond to this request")
                if booking.status != BookingStatus.PENDING.value:
                    raise InvalidStateError(f"Booking is already {booking.status}")

                if accept:
                    if ride.status != RideStatus.UPCOMING.value:
                        raise InvalidStateError(f"Cannot accept - ride is {ride.status}")
                    if booking.seats_booked > ride.seats_available:
                        raise InsufficientSeatsError(ride.seats_available, booking.seats_booked)
                    await self.rides.decrement_seats(ride.id, booking.seats_booked)
                    booking.status = BookingStatus.CONFIRMED.value
                    event_type = EventType.BOOKING_CONFIRMED
                else:
                    booking.status = BookingStatus.DECLINED.value
                    event_type = EventType.BOOKING_DECLINED
                booking.responded_at = utcnow()
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info("Booking %s %s by driver %s", booking.id, booking.status, driver_id)
        await self.notifier.publish_all([
            RideEvent(type=event_type, ride_id=booking.ride_id, booking_id=booking.id, actor_id=driver_id)
        ])
        return booking

    # ===================== Shared Operations =====================

    async def cancel_booking(self, booking_id: str, actor_id: str, reason: Optional[str] = None) -> Booking:
        """
        Cancel a pending or confirmed booking, by its passenger or the ride's driver.

        Seats held by a confirmed booking go back to the ride. Cancellation is
        final; a cancelled booking cannot be restored.
        """
        booking = await self._get_booking(booking_id)
        async with self.locks.hold(booking.ride_id):
            try:
                booking = await self._get_booking(booking_id, for_update=True)
                ride: Ride = await self.rides.get_ride(booking.ride_id, for_update=True)
                if actor_id not in (booking.passenger_id, ride.driver_id):
                    raise AuthorizationError("Only the passenger or the driver can cancel this booking")
                if booking.status not in ACTIVE_BOOKING_STATUSES:
                    raise InvalidStateError(f"Cannot cancel - booking is already {booking.status}")

                if booking.status == BookingStatus.CONFIRMED.value:
                    await self.rides.restore_seats(ride.id, booking.seats_booked)
                booking.status = BookingStatus.CANCELLED.value
                booking.cancellation_reason = reason
                booking.cancelled_at = utcnow()
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info("Booking %s cancelled by %s", booking.id, actor_id)
        await self.notifier.publish_all([
            RideEvent(
                type=EventType.BOOKING_CANCELLED,
                ride_id=booking.ride_id,
                booking_id=booking.id,
                actor_id=actor_id,
            )
        ])
        return booking
