"""
FastAPI application factory.

* Registers routes for bookings, drivers, queue / hardware, chat, locations &
  emergencies, feeds and admin.
* Starts / stops the pending-booking sweeper and the Redis change relay via
  lifespan events.
* Maps ``StoreError`` to 503 so clients know the request is safe to retry.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api.dependencies import get_store
from src.api.middleware import limiter
from src.api.routes import admin, bookings, chat, drivers, feeds, locations, queue
from src.config import settings
from src.infrastructure.change_relay import RedisChangeRelay
from src.infrastructure.errors import StoreError
from src.infrastructure.redis_client import get_redis
from src.workers import matcher as _matcher

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the sweeper and change relay on startup; stop them on shutdown."""
    store = get_store()
    relay = RedisChangeRelay(await get_redis(), store, settings.change_channel)
    await relay.start()
    await _matcher.start_matching_loop(store)
    yield
    await _matcher.stop_matching_loop()
    await relay.stop()
    store.subscriptions.close_all()


async def _store_unavailable(request: Request, exc: StoreError) -> JSONResponse:
    logger.warning("Store unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Store unavailable, retry"})


def create_app() -> FastAPI:
    app = FastAPI(
        title="TODA Booking API",
        description=(
            "Booking lifecycle and driver matching for tricycle (TODA) "
            "ride-hailing.  Passengers book, queued drivers are matched "
            "first-come first-served, and every change is pushed to "
            "subscribed clients in real time."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(StoreError, _store_unavailable)

    # Routers
    app.include_router(bookings.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(queue.router, prefix="/api/v1")
    app.include_router(chat.router, prefix="/api/v1")
    app.include_router(locations.router, prefix="/api/v1")
    app.include_router(feeds.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
