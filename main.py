from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from config import configure_logging
from database import engine, Base
from errors import RideShareError
from locks import ride_locks
from notifications import LoggingNotificationGateway
from routers import bookings, rides

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()

app = FastAPI(title="Community Ride Share", lifespan=lifespan)
app.state.notifier = LoggingNotificationGateway()
app.state.ride_locks = ride_locks

app.include_router(rides.router)
app.include_router(bookings.router)


@app.exception_handler(RideShareError)
async def ride_share_error_handler(request: Request, exc: RideShareError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def read_root():
    return {"message": "Welcome to Community Ride Share"}
