import asyncio

import pytest
from sqlalchemy import func, select

from booking_engine import BookingEngine
from errors import DuplicateBookingError, InsufficientSeatsError
from models import Booking, Ride
from schemas import BookingMode, BookingStatus

DRIVER = "driver-1"


def engine_factory(session_factory, notifier, locks):
    async def attempt(operation, *args, **kwargs):
        # Each caller gets its own session, as concurrent HTTP requests would
        async with session_factory() as session:
            engine = BookingEngine(session, notifier=notifier, locks=locks)
            try:
                booking = await getattr(engine, operation)(*args, **kwargs)
                return booking.status
            except InsufficientSeatsError:
                return "insufficient"
            except DuplicateBookingError:
                return "duplicate"

    return attempt


async def load_ride(session_factory, ride_id):
    async with session_factory() as session:
        return await session.get(Ride, ride_id)


async def confirmed_seats(session_factory, ride_id):
    async with session_factory() as session:
        result = await session.execute(
            select(func.coalesce(func.sum(Booking.seats_booked), 0)).where(
                Booking.ride_id == ride_id,
                Booking.status == BookingStatus.CONFIRMED.value,
            )
        )
        return result.scalar_one()


@pytest.mark.asyncio
async def test_two_passengers_race_for_last_seat(session_factory, make_ride, notifier, locks):
    ride = await make_ride(seats_total=1)
    attempt = engine_factory(session_factory, notifier, locks)

    results = await asyncio.gather(
        attempt("book_instant", ride.id, "passenger-a", 1),
        attempt("book_instant", ride.id, "passenger-b", 1),
    )

    assert sorted(results) == [BookingStatus.CONFIRMED.value, "insufficient"]
    assert (await load_ride(session_factory, ride.id)).seats_available == 0
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_many_concurrent_bookings_never_overbook(session_factory, make_ride, notifier, locks):
    ride = await make_ride(seats_total=5)
    attempt = engine_factory(session_factory, notifier, locks)

    results = await asyncio.gather(
        *[attempt("book_instant", ride.id, f"passenger-{i}", 1 + i % 2) for i in range(10)]
    )

    stored = await load_ride(session_factory, ride.id)
    booked = await confirmed_seats(session_factory, ride.id)
    assert 0 <= stored.seats_available <= stored.seats_total
    assert booked <= stored.seats_total
    assert booked + stored.seats_available == stored.seats_total
    assert results.count(BookingStatus.CONFIRMED.value) >= 3


@pytest.mark.asyncio
async def test_same_passenger_double_submit_books_once(session_factory, make_ride, notifier, locks):
    ride = await make_ride(seats_total=4)
    attempt = engine_factory(session_factory, notifier, locks)

    results = await asyncio.gather(
        attempt("book_instant", ride.id, "passenger-a", 1),
        attempt("book_instant", ride.id, "passenger-a", 1),
    )

    assert sorted(results) == [BookingStatus.CONFIRMED.value, "duplicate"]
    assert (await load_ride(session_factory, ride.id)).seats_available == 3


@pytest.mark.asyncio
async def test_concurrent_accepts_respect_capacity(session_factory, make_ride, bookings, notifier, locks):
    ride = await make_ride(seats_total=3, booking_mode=BookingMode.REQUEST)
    ride_id = ride.id
    first = await bookings.request_booking(ride_id, "passenger-a", 2)
    second = await bookings.request_booking(ride_id, "passenger-b", 2)
    attempt = engine_factory(session_factory, notifier, locks)

    results = await asyncio.gather(
        attempt("respond_to_request", first.id, DRIVER, True),
        attempt("respond_to_request", second.id, DRIVER, True),
    )

    assert sorted(results) == [BookingStatus.CONFIRMED.value, "insufficient"]
    assert (await load_ride(session_factory, ride_id)).seats_available == 1


@pytest.mark.asyncio
async def test_cancel_and_book_interleave_cleanly(session_factory, make_ride, bookings, notifier, locks):
    ride = await make_ride(seats_total=2)
    ride_id = ride.id
    held = await bookings.book_instant(ride_id, "passenger-a", 2)
    attempt = engine_factory(session_factory, notifier, locks)

    results = await asyncio.gather(
        attempt("cancel_booking", held.id, "passenger-a", "Plans changed"),
        attempt("book_instant", ride_id, "passenger-b", 2),
    )

    stored = await load_ride(session_factory, ride_id)
    assert results[0] == BookingStatus.CANCELLED.value
    assert results[1] in (BookingStatus.CONFIRMED.value, "insufficient")
    assert stored.seats_available == (0 if results[1] == BookingStatus.CONFIRMED.value else 2)
