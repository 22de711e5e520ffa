from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum


class RideStatus(str, Enum):
    UPCOMING = "upcoming"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingMode(str, Enum):
    INSTANT = "instant"
    REQUEST = "request"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    DECLINED = "declined"


def as_utc_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed to be UTC already."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Shared
class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: str = ""


# Ride Schemas
class RideCreate(BaseModel):
    origin: Location
    destination: Location
    departure_time: datetime
    seats_total: int
    price: Optional[float] = None
    booking_mode: BookingMode = BookingMode.INSTANT
    route: Optional[List[List[float]]] = None
    notes: Optional[str] = None

    @field_validator("departure_time")
    @classmethod
    def normalize_departure(cls, value):
        return as_utc_naive(value)


class RidePatch(BaseModel):
    """Fields a driver may edit; anything left unset is untouched."""
    origin: Optional[Location] = None
    destination: Optional[Location] = None
    departure_time: Optional[datetime] = None
    seats_total: Optional[int] = None
    price: Optional[float] = None
    booking_mode: Optional[BookingMode] = None
    route: Optional[List[List[float]]] = None
    notes: Optional[str] = None

    @field_validator("departure_time")
    @classmethod
    def normalize_departure(cls, value):
        return as_utc_naive(value) if value is not None else value


class RideResponse(BaseModel):
    id: str
    driver_id: str
    origin_lat: float
    origin_lng: float
    origin_address: str
    destination_lat: float
    destination_lng: float
    destination_address: str
    route: Optional[List[List[float]]] = None
    departure_time: datetime
    seats_total: int
    seats_available: int
    price: Optional[float] = None
    booking_mode: BookingMode
    status: RideStatus
    notes: Optional[str] = None

    class Config:
        from_attributes = True


# Search Schemas
class SearchFilters(BaseModel):
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    booking_mode: Optional[BookingMode] = None
    min_seats: Optional[int] = None
    origin_radius_km: Optional[float] = None
    destination_radius_km: Optional[float] = None
    max_results: Optional[int] = None


class RideMatchResponse(BaseModel):
    ride: RideResponse
    origin_distance_m: float
    destination_distance_m: float
    score_m: float

    class Config:
        from_attributes = True


class PriceSuggestion(BaseModel):
    distance_m: float
    suggested: int
    min: int
    max: int


# Booking Schemas
class BookingCreate(BaseModel):
    ride_id: str
    seats: int = 1
    idempotency_key: Optional[str] = None


class BookingDecision(BaseModel):
    accept: bool


class BookingCancel(BaseModel):
    reason: Optional[str] = None


class BookingResponse(BaseModel):
    id: str
    ride_id: str
    passenger_id: str
    seats_booked: int
    status: BookingStatus
    cancellation_reason: Optional[str] = None
    created_at: datetime
    responded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ErrorResponse(BaseModel):
    error: str
    detail: str

