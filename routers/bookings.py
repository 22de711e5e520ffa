from typing import List

from fastapi import APIRouter, Depends

from booking_engine import BookingEngine
from routers.deps import get_booking_engine, get_current_user_id
from schemas import BookingCancel, BookingCreate, BookingDecision, BookingResponse

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("/instant", response_model=BookingResponse)
async def book_instant(
    request: BookingCreate,
    user_id: str = Depends(get_current_user_id),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return await engine.book_instant(
        request.ride_id, user_id, request.seats, idempotency_key=request.idempotency_key
    )


@router.post("/request", response_model=BookingResponse)
async def request_booking(
    request: BookingCreate,
    user_id: str = Depends(get_current_user_id),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return await engine.request_booking(
        request.ride_id, user_id, request.seats, idempotency_key=request.idempotency_key
    )


@router.get("/mine", response_model=List[BookingResponse])
async def list_my_bookings(
    user_id: str = Depends(get_current_user_id),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return await engine.list_passenger_bookings(user_id)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return await engine.get_booking(booking_id, user_id)


@router.post("/{booking_id}/respond", response_model=BookingResponse)
async def respond_to_request(
    booking_id: str,
    decision: BookingDecision,
    user_id: str = Depends(get_current_user_id),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return await engine.respond_to_request(booking_id, user_id, decision.accept)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    body: BookingCancel,
    user_id: str = Depends(get_current_user_id),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return await engine.cancel_booking(booking_id, user_id, body.reason)
