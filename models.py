from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    ForeignKey,
    DateTime,
    JSON,
    Text,
    CheckConstraint,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from database import Base
from schemas import BookingStatus, RideStatus
import datetime
import uuid

ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)


def generate_uuid():
    return str(uuid.uuid4())


def utcnow():
    # Timestamps are stored as naive UTC
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Ride(Base):
    __tablename__ = "rides"
    __table_args__ = (
        CheckConstraint("seats_total >= 1", name="ck_rides_seats_total_positive"),
        CheckConstraint(
            "seats_available >= 0 AND seats_available <= seats_total",
            name="ck_rides_seats_available_bounds",
        ),
        CheckConstraint("price IS NULL OR price >= 0", name="ck_rides_price_non_negative"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    driver_id = Column(String, nullable=False, index=True)

    origin_lat = Column(Float, nullable=False)
    origin_lng = Column(Float, nullable=False)
    origin_address = Column(String, nullable=False, default="")
    destination_lat = Column(Float, nullable=False)
    destination_lng = Column(Float, nullable=False)
    destination_address = Column(String, nullable=False, default="")
    # [[lat, lng], ...]
    route = Column(JSON, nullable=True)
    # Box around origin + route + destination; NULL when there is no route
    route_lat_min = Column(Float, nullable=True)
    route_lat_max = Column(Float, nullable=True)
    route_lng_min = Column(Float, nullable=True)
    route_lng_max = Column(Float, nullable=True)

    departure_time = Column(DateTime, nullable=False, index=True)
    seats_total = Column(Integer, nullable=False)
    seats_available = Column(Integer, nullable=False)
    price = Column(Float, nullable=True)  # None means free
    booking_mode = Column(String, nullable=False)  # instant, request
    status = Column(String, nullable=False, default=RideStatus.UPCOMING.value, index=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    bookings = relationship("Booking", back_populates="ride")
    geo_points = relationship("RideGeoPoint", back_populates="ride", cascade="all, delete-orphan")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("seats_booked >= 1", name="ck_bookings_seats_booked_positive"),
        # A passenger holds at most one pending/confirmed booking per ride
        Index(
            "uq_bookings_active_passenger",
            "ride_id",
            "passenger_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'confirmed')"),
            postgresql_where=text("status IN ('pending', 'confirmed')"),
        ),
        UniqueConstraint("passenger_id", "idempotency_key", name="uq_bookings_idempotency_key"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    ride_id = Column(String, ForeignKey("rides.id"), nullable=False, index=True)
    passenger_id = Column(String, nullable=False, index=True)
    seats_booked = Column(Integer, nullable=False)
    status = Column(String, nullable=False)  # pending, confirmed, cancelled, declined
    cancellation_reason = Column(Text, nullable=True)
    idempotency_key = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    responded_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    ride = relationship("Ride", back_populates="bookings")


class RideGeoPoint(Base):
    __tablename__ = "ride_geo_points"
    __table_args__ = (
        UniqueConstraint("ride_id", "kind", name="uq_ride_geo_points_ride_kind"),
        Index("ix_ride_geo_points_kind_lat_lng", "kind", "lat", "lng"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(String, ForeignKey("rides.id"), nullable=False)
    kind = Column(String, nullable=False)  # origin, destination
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)

    ride = relationship("Ride", back_populates="geo_points")
