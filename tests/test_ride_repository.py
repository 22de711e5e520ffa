import pytest
from datetime import timedelta
from sqlalchemy import select

from errors import (
    AuthorizationError,
    InsufficientSeatsError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from geo_index import GeoIndex, GeoPoint, PointKind
from models import RideGeoPoint, utcnow
from notifications import EventType
from ride_repository import RIDE_CANCELLED_REASON, RIDE_COMPLETED_REASON
from schemas import BookingMode, BookingStatus, Location, RidePatch, RideStatus

PRAGUE = GeoPoint(50.0755, 14.4378)
BRNO = GeoPoint(49.1951, 16.6068)
OSTRAVA = GeoPoint(49.8209, 18.2625)
DRIVER = "driver-1"


@pytest.mark.asyncio
async def test_create_ride_opens_every_seat(make_ride):
    ride = await make_ride(seats_total=3, price=150, origin_address="Praha hl.n.", notes="No smoking")

    assert ride.seats_total == 3
    assert ride.seats_available == 3
    assert ride.status == RideStatus.UPCOMING.value
    assert ride.booking_mode == BookingMode.INSTANT.value
    assert ride.price == 150
    assert ride.origin_address == "Praha hl.n."


@pytest.mark.asyncio
async def test_create_ride_indexes_both_points(test_db, make_ride):
    ride = await make_ride()

    result = await test_db.execute(select(RideGeoPoint).where(RideGeoPoint.ride_id == ride.id))
    kinds = sorted(point.kind for point in result.scalars().all())
    assert kinds == [PointKind.DESTINATION.value, PointKind.ORIGIN.value]


@pytest.mark.asyncio
@pytest.mark.parametrize("seats_total", [0, -1, 9])
async def test_create_ride_rejects_bad_seat_count(make_ride, seats_total):
    with pytest.raises(ValidationError):
        await make_ride(seats_total=seats_total)


@pytest.mark.asyncio
async def test_create_ride_rejects_past_departure(make_ride):
    with pytest.raises(ValidationError):
        await make_ride(departure_time=utcnow() - timedelta(minutes=5))


@pytest.mark.asyncio
async def test_create_ride_rejects_same_origin_and_destination(make_ride):
    with pytest.raises(ValidationError):
        await make_ride(destination=GeoPoint(50.0756, 14.4379))


@pytest.mark.asyncio
async def test_create_ride_rejects_negative_price(make_ride):
    with pytest.raises(ValidationError):
        await make_ride(price=-10)


@pytest.mark.asyncio
async def test_get_unknown_ride(rides):
    with pytest.raises(NotFoundError):
        await rides.get_ride("missing")


@pytest.mark.asyncio
async def test_update_by_non_owner_is_rejected(rides, make_ride):
    ride = await make_ride()

    with pytest.raises(AuthorizationError):
        await rides.update_ride(ride.id, "someone-else", RidePatch(price=10))


@pytest.mark.asyncio
async def test_update_price_and_make_free(rides, make_ride):
    ride = await make_ride(price=200)
    ride_id = ride.id

    updated = await rides.update_ride(ride_id, DRIVER, RidePatch(price=120))
    assert updated.price == 120

    updated = await rides.update_ride(ride_id, DRIVER, RidePatch(price=None))
    assert updated.price is None


@pytest.mark.asyncio
async def test_update_seats_without_bookings_resets_inventory(rides, make_ride):
    ride = await make_ride(seats_total=4)

    updated = await rides.update_ride(ride.id, DRIVER, RidePatch(seats_total=2))

    assert updated.seats_total == 2
    assert updated.seats_available == 2


@pytest.mark.asyncio
async def test_update_seats_after_bookings_exist_is_rejected(rides, bookings, make_ride):
    ride = await make_ride(seats_total=4)
    ride_id = ride.id
    await bookings.book_instant(ride_id, "passenger-a", 1)

    with pytest.raises(InvalidStateError):
        await rides.update_ride(ride_id, DRIVER, RidePatch(seats_total=3))


@pytest.mark.asyncio
async def test_update_seats_on_started_ride_is_rejected(rides, make_ride):
    ride = await make_ride()
    ride_id = ride.id
    await rides.start_ride(ride_id, DRIVER)

    with pytest.raises(InvalidStateError):
        await rides.update_ride(ride_id, DRIVER, RidePatch(seats_total=2))


@pytest.mark.asyncio
async def test_update_destination_reindexes(test_db, rides, make_ride):
    ride = await make_ride()
    ride_id = ride.id

    await rides.update_ride(
        ride_id, DRIVER, RidePatch(destination=Location(lat=OSTRAVA.lat, lng=OSTRAVA.lng, address="Ostrava"))
    )

    index = GeoIndex(test_db)
    assert [hit.ride_id for hit in await index.query_nearby(OSTRAVA, 100, PointKind.DESTINATION)] == [ride_id]
    assert await index.query_nearby(BRNO, 100, PointKind.DESTINATION) == []


@pytest.mark.asyncio
async def test_update_departure_into_past_is_rejected(rides, make_ride):
    ride = await make_ride()

    with pytest.raises(ValidationError):
        await rides.update_ride(ride.id, DRIVER, RidePatch(departure_time=utcnow() - timedelta(hours=1)))


@pytest.mark.asyncio
async def test_delete_ride_cancels_active_bookings(rides, bookings, make_ride, notifier):
    ride = await make_ride(seats_total=4)
    ride_id = ride.id
    confirmed = await bookings.book_instant(ride_id, "passenger-a", 2)
    confirmed_id = confirmed.id

    cancelled = await rides.delete_ride(ride_id, DRIVER)

    assert cancelled.status == RideStatus.CANCELLED.value
    assert cancelled.seats_available == cancelled.seats_total
    booking = await bookings.get_booking(confirmed_id, "passenger-a")
    assert booking.status == BookingStatus.CANCELLED.value
    assert booking.cancellation_reason == RIDE_CANCELLED_REASON
    assert notifier.types()[-2:] == [EventType.BOOKING_CANCELLED, EventType.RIDE_CANCELLED]
    assert notifier.events[-2].booking_id == confirmed_id


@pytest.mark.asyncio
async def test_delete_ride_by_non_owner_is_rejected(rides, make_ride):
    ride = await make_ride()

    with pytest.raises(AuthorizationError):
        await rides.delete_ride(ride.id, "someone-else")


@pytest.mark.asyncio
async def test_cancelled_ride_cannot_be_cancelled_again(rides, make_ride):
    ride = await make_ride()
    ride_id = ride.id
    await rides.delete_ride(ride_id, DRIVER)

    with pytest.raises(InvalidStateError):
        await rides.delete_ride(ride_id, DRIVER)


@pytest.mark.asyncio
async def test_status_advances_upcoming_to_completed(rides, make_ride):
    ride = await make_ride()
    ride_id = ride.id

    assert (await rides.start_ride(ride_id, DRIVER)).status == RideStatus.IN_PROGRESS.value
    assert (await rides.complete_ride(ride_id, DRIVER)).status == RideStatus.COMPLETED.value
    with pytest.raises(InvalidStateError):
        await rides.start_ride(ride_id, DRIVER)


@pytest.mark.asyncio
async def test_started_ride_cannot_be_cancelled(rides, bookings, make_ride):
    ride = await make_ride(seats_total=3)
    ride_id = ride.id
    confirmed = await bookings.book_instant(ride_id, "passenger-a", 2)
    confirmed_id = confirmed.id
    await rides.start_ride(ride_id, DRIVER)

    with pytest.raises(InvalidStateError):
        await rides.delete_ride(ride_id, DRIVER)

    stored = await rides.get_ride(ride_id, for_update=True)
    assert stored.status == RideStatus.IN_PROGRESS.value
    assert stored.seats_available == 1
    booking = await bookings.get_booking(confirmed_id, "passenger-a")
    assert booking.status == BookingStatus.CONFIRMED.value


@pytest.mark.asyncio
async def test_completing_ride_drops_pending_requests(rides, bookings, make_ride, notifier):
    ride = await make_ride(seats_total=4, booking_mode=BookingMode.REQUEST)
    ride_id = ride.id
    accepted = await bookings.request_booking(ride_id, "passenger-a", 1)
    await bookings.respond_to_request(accepted.id, DRIVER, accept=True)
    waiting = await bookings.request_booking(ride_id, "passenger-b", 2)
    accepted_id, waiting_id = accepted.id, waiting.id

    await rides.start_ride(ride_id, DRIVER)
    completed = await rides.complete_ride(ride_id, DRIVER)

    assert completed.status == RideStatus.COMPLETED.value
    assert completed.seats_available == 3
    dropped = await bookings.get_booking(waiting_id, "passenger-b")
    assert dropped.status == BookingStatus.CANCELLED.value
    assert dropped.cancellation_reason == RIDE_COMPLETED_REASON
    assert dropped.cancelled_at is not None
    kept = await bookings.get_booking(accepted_id, "passenger-a")
    assert kept.status == BookingStatus.CONFIRMED.value
    assert notifier.types()[-1] == EventType.BOOKING_CANCELLED
    assert notifier.events[-1].booking_id == waiting_id


@pytest.mark.asyncio
async def test_starting_ride_keeps_pending_requests(rides, bookings, make_ride):
    ride = await make_ride(booking_mode=BookingMode.REQUEST)
    ride_id = ride.id
    waiting = await bookings.request_booking(ride_id, "passenger-b", 1)

    await rides.start_ride(ride_id, DRIVER)

    assert (await bookings.get_booking(waiting.id, "passenger-b")).status == BookingStatus.PENDING.value


@pytest.mark.asyncio
async def test_route_box_covers_endpoints_and_route(rides, make_ride):
    ride = await make_ride(route=[[49.3961, 15.5912]])
    ride_id = ride.id

    assert (ride.route_lat_min, ride.route_lat_max) == (BRNO.lat, PRAGUE.lat)
    assert (ride.route_lng_min, ride.route_lng_max) == (PRAGUE.lng, BRNO.lng)

    moved = await rides.update_ride(
        ride_id, DRIVER, RidePatch(destination=Location(lat=OSTRAVA.lat, lng=OSTRAVA.lng, address="Ostrava"))
    )
    assert moved.route_lng_max == OSTRAVA.lng
    assert moved.route_lat_min == 49.3961

    cleared = await rides.update_ride(ride_id, DRIVER, RidePatch(route=None))
    assert cleared.route is None
    assert cleared.route_lat_min is None


@pytest.mark.asyncio
async def test_decrement_seats_is_conditional(test_db, rides, make_ride):
    ride = await make_ride(seats_total=2)
    ride_id = ride.id

    assert await rides.decrement_seats(ride_id, 2) == 0
    with pytest.raises(InsufficientSeatsError) as exc_info:
        await rides.decrement_seats(ride_id, 1)
    await test_db.commit()

    assert exc_info.value.extra["seats_available"] == 0
    assert (await rides.get_ride(ride_id, for_update=True)).seats_available == 0


@pytest.mark.asyncio
async def test_restore_seats_never_exceeds_total(test_db, rides, make_ride):
    ride = await make_ride(seats_total=2)
    ride_id = ride.id

    await rides.decrement_seats(ride_id, 1)
    assert await rides.restore_seats(ride_id, 1) == 2
    with pytest.raises(InvalidStateError):
        await rides.restore_seats(ride_id, 1)


@pytest.mark.asyncio
async def test_list_driver_rides(rides, make_ride, departure):
    first = await make_ride()
    second = await make_ride(departure_time=departure + timedelta(hours=2))
    await make_ride(driver_id="driver-2")

    listed = await rides.list_driver_rides(DRIVER)

    assert [ride.id for ride in listed] == [second.id, first.id]
