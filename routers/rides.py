from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from booking_engine import BookingEngine
from geo_index import GeoPoint, haversine_distance
from matching_engine import MatchingEngine
from pricing import suggest_price
from ride_repository import RideRepository
from routers.deps import (
    get_booking_engine,
    get_current_user_id,
    get_matching_engine,
    get_ride_repository,
)
from schemas import (
    BookingMode,
    BookingResponse,
    PriceSuggestion,
    RideCreate,
    RideMatchResponse,
    RidePatch,
    RideResponse,
    RideStatus,
    SearchFilters,
)

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post("", response_model=RideResponse)
async def create_ride(
    ride: RideCreate,
    user_id: str = Depends(get_current_user_id),
    repo: RideRepository = Depends(get_ride_repository),
):
    return await repo.create_ride(
        driver_id=user_id,
        origin=GeoPoint(ride.origin.lat, ride.origin.lng),
        destination=GeoPoint(ride.destination.lat, ride.destination.lng),
        departure_time=ride.departure_time,
        seats_total=ride.seats_total,
        price=ride.price,
        booking_mode=ride.booking_mode,
        origin_address=ride.origin.address,
        destination_address=ride.destination.address,
        route=ride.route,
        notes=ride.notes,
    )


@router.get("/search", response_model=List[RideMatchResponse])
async def search_rides(
    origin_lat: float = Query(ge=-90, le=90),
    origin_lng: float = Query(ge=-180, le=180),
    dest_lat: float = Query(ge=-90, le=90),
    dest_lng: float = Query(ge=-180, le=180),
    on: date = Query(alias="date"),
    radius_km: Optional[float] = None,
    origin_radius_km: Optional[float] = None,
    destination_radius_km: Optional[float] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    booking_mode: Optional[BookingMode] = None,
    min_seats: Optional[int] = None,
    max_results: Optional[int] = None,
    matcher: MatchingEngine = Depends(get_matching_engine),
):
    filters = SearchFilters(
        min_price=min_price,
        max_price=max_price,
        booking_mode=booking_mode,
        min_seats=min_seats,
        origin_radius_km=origin_radius_km if origin_radius_km is not None else radius_km,
        destination_radius_km=destination_radius_km if destination_radius_km is not None else radius_km,
        max_results=max_results,
    )
    matches = await matcher.search(
        GeoPoint(origin_lat, origin_lng),
        GeoPoint(dest_lat, dest_lng),
        on,
        filters,
    )
    return [RideMatchResponse.model_validate(match) for match in matches]


@router.get("/price-suggestion", response_model=PriceSuggestion)
async def price_suggestion(
    origin_lat: float = Query(ge=-90, le=90),
    origin_lng: float = Query(ge=-180, le=180),
    dest_lat: float = Query(ge=-90, le=90),
    dest_lng: float = Query(ge=-180, le=180),
):
    distance = haversine_distance(GeoPoint(origin_lat, origin_lng), GeoPoint(dest_lat, dest_lng))
    price = suggest_price(distance)
    return PriceSuggestion(distance_m=distance, suggested=price.suggested, min=price.min, max=price.max)


@router.get("/mine", response_model=List[RideResponse])
async def list_my_rides(
    status: Optional[RideStatus] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    user_id: str = Depends(get_current_user_id),
    repo: RideRepository = Depends(get_ride_repository),
):
    return await repo.list_driver_rides(user_id, status=status, limit=limit)


@router.get("/{ride_id}", response_model=RideResponse)
async def get_ride(ride_id: str, repo: RideRepository = Depends(get_ride_repository)):
    return await repo.get_ride(ride_id)


@router.patch("/{ride_id}", response_model=RideResponse)
async def update_ride(
    ride_id: str,
    patch: RidePatch,
    user_id: str = Depends(get_current_user_id),
    repo: RideRepository = Depends(get_ride_repository),
):
    return await repo.update_ride(ride_id, user_id, patch)


@router.delete("/{ride_id}", response_model=RideResponse)
async def cancel_ride(
    ride_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: RideRepository = Depends(get_ride_repository),
):
    return await repo.delete_ride(ride_id, user_id)


@router.post("/{ride_id}/start", response_model=RideResponse)
async def start_ride(
    ride_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: RideRepository = Depends(get_ride_repository),
):
    return await repo.start_ride(ride_id, user_id)


@router.post("/{ride_id}/complete", response_model=RideResponse)
async def complete_ride(
    ride_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: RideRepository = Depends(get_ride_repository),
):
    return await repo.complete_ride(ride_id, user_id)


@router.get("/{ride_id}/bookings", response_model=List[BookingResponse])
async def list_ride_bookings(
    ride_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return await engine.list_ride_bookings(ride_id, user_id)
