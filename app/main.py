import asyncio
import importlib
import logging
import uuid
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.config import settings
from app.db.session import async_session
from app.errors import BookingPersistenceFailed, LayoutChangeRefused, ReservationError
from app.logging_setup import TRACE_ID_CTX, setup_logging
from app.services.booking_finalizer import BookingFinalizer
from app.services.booking_store import SqlBookingStore
from app.services.seat_events import SeatEventHub
from app.services.seat_lock import SeatLockService
from app.services.seat_state import InMemorySeatStateStore, RedisSeatStateStore

logger = logging.getLogger(__name__)

# initialize logging and Sentry
setup_logging(settings.LOG_LEVEL)
if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN)


def build_seat_store():
    if settings.SEAT_STORE_BACKEND == "memory":
        return InMemorySeatStateStore()
    from app.redis_client import redis_client

    return RedisSeatStateStore(redis_client)


async def sweep_forever(seat_locks: SeatLockService, interval: float, max_events: int):
    """In-process expiry sweep and stream trim for deployments without Celery beat."""
    while True:
        await asyncio.sleep(interval)
        try:
            await seat_locks.sweep_and_trim(max_events)
        except Exception:
            logger.exception("Expiry sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = build_seat_store()
    seat_locks = SeatLockService(store)
    app.state.seat_store = store
    app.state.seat_locks = seat_locks
    app.state.seat_events = SeatEventHub(store)
    app.state.booking_finalizer = BookingFinalizer(seat_locks, SqlBookingStore(async_session))

    sweeper = None
    if settings.SEAT_SWEEP_IN_PROCESS or settings.SEAT_STORE_BACKEND == "memory":
        sweeper = asyncio.create_task(
            sweep_forever(seat_locks, settings.SEAT_SWEEP_INTERVAL_SECONDS, settings.SEAT_EVENT_STREAM_MAXLEN)
        )
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        await app.state.seat_events.close()
        if isinstance(store, RedisSeatStateStore):
            from app.redis_client import close_redis

            await close_redis()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    TRACE_ID_CTX.set(trace_id)
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    # persistence failures are logged with a traceback by the finalizer
    if isinstance(exc, LayoutChangeRefused):
        logger.warning(exc.detail)
    elif not isinstance(exc, BookingPersistenceFailed):
        logger.debug("Reservation request rejected: %s", exc.detail, extra={"error": exc.code})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# List of module names to include as routers
MODULES = [
    "seatmaps",
    "bookings",
]


for mod in MODULES:
    pkg = importlib.import_module(f"app.modules.{mod}.router")
    app.include_router(pkg.router, prefix=f"/{mod}")


@app.get("/")
async def root():
    return {"app": settings.APP_NAME, "status": "ok"}


@app.get("/metrics")
async def metrics():
    content = generate_latest()
    return Response(content=content, media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready(request: Request):
    # readiness: the seat state store must answer
    try:
        await request.app.state.seat_store.ping()
    except Exception:
        logger.exception("Seat store unavailable")
        return Response(status_code=503, content="seat store unavailable")
    return {"status": "ready"}
