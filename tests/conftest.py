import pytest
import pytest_asyncio
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from booking_engine import BookingEngine
from config import settings
from database import Base, get_db
from geo_index import GeoPoint
from locks import RideLockRegistry
from main import app
from notifications import RecordingNotificationGateway
from ride_repository import RideRepository
from routers.deps import get_locks, get_notifier
from schemas import BookingMode, as_utc_naive

PRAGUE = GeoPoint(50.0755, 14.4378)
BRNO = GeoPoint(49.1951, 16.6068)
DRIVER = "driver-1"


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    # File-backed so concurrent sessions share one database
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rideshare.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotificationGateway()


@pytest.fixture
def locks():
    return RideLockRegistry()


@pytest.fixture
def rides(test_db, notifier, locks):
    return RideRepository(test_db, notifier=notifier, locks=locks)


@pytest.fixture
def bookings(test_db, notifier, locks, rides):
    return BookingEngine(test_db, notifier=notifier, locks=locks, rides=rides)


@pytest.fixture
def search_day():
    """A local calendar day two days ahead."""
    return date.today() + timedelta(days=2)


@pytest.fixture
def departure(search_day):
    """Local noon on ``search_day``, as naive UTC."""
    local_noon = datetime.combine(search_day, time(12, 0), tzinfo=ZoneInfo(settings.local_timezone))
    return as_utc_naive(local_noon)


@pytest.fixture
def make_ride(rides, departure):
    async def _make_ride(
        driver_id=DRIVER,
        origin=PRAGUE,
        destination=BRNO,
        seats_total=4,
        booking_mode=BookingMode.INSTANT,
        **kwargs,
    ):
        kwargs.setdefault("departure_time", departure)
        return await rides.create_ride(
            driver_id,
            origin,
            destination,
            seats_total=seats_total,
            booking_mode=booking_mode,
            **kwargs,
        )

    return _make_ride


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, notifier, locks):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_locks] = lambda: locks
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
