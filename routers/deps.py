from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine import BookingEngine
from database import get_db
from locks import RideLockRegistry
from matching_engine import MatchingEngine
from notifications import NotificationGateway
from ride_repository import RideRepository


async def get_current_user_id(x_user_id: str = Header(default=None)) -> str:
    # Identity is verified upstream by the auth provider; we only need the id
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def get_notifier(request: Request) -> NotificationGateway:
    return request.app.state.notifier


def get_locks(request: Request) -> RideLockRegistry:
    return request.app.state.ride_locks


def get_ride_repository(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
    locks: RideLockRegistry = Depends(get_locks),
) -> RideRepository:
    return RideRepository(db, notifier=notifier, locks=locks)


def get_booking_engine(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationGateway = Depends(get_notifier),
    locks: RideLockRegistry = Depends(get_locks),
) -> BookingEngine:
    return BookingEngine(db, notifier=notifier, locks=locks)


def get_matching_engine(db: AsyncSession = Depends(get_db)) -> MatchingEngine:
    return MatchingEngine(db)
