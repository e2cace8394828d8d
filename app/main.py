from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.database import close_db, get_session_context, init_db
from app.errors import RestaurantError
from app.services.seed_service import SeedService
from app.websocket.channels import channel_broker, register_realtime_websocket

# Import all models to register them with Base BEFORE init_db
# This ensures create_all() sees all tables
from app.models import (  # noqa: F401
    Restaurant,
    User,
    QueueEntry,
    LoyaltyReward,
    LightningDeal,
    Redemption,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
LOGGER = logging.getLogger("restaurant-engagement")


async def sweep_idle_connections() -> None:
    """Drop realtime connections that stopped pinging."""
    interval = settings.ws_heartbeat_seconds
    while True:
        await asyncio.sleep(interval)
        closed = await channel_broker.close_idle(interval * 2)
        if closed:
            LOGGER.info("Closed %d idle realtime connections", closed)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown events."""
    # create_all() is idempotent
    try:
        await init_db()
        LOGGER.info("Database initialized")
    except Exception as e:
        LOGGER.error("Database initialization failed: %s", e)
        raise

    # Auto-seed default data in development if DB is empty
    if settings.is_development:
        try:
            async with get_session_context() as session:
                result = await SeedService(session).ensure_default_data()
                if result.get("restaurants_created", 0) > 0:
                    LOGGER.info("Seeded default data: %s", result)
                else:
                    LOGGER.info("Default data already present; skipping seeding")
        except Exception as e:
            LOGGER.warning("Default data seeding failed: %s", e)

    sweeper = asyncio.create_task(sweep_idle_connections())

    yield

    # Shutdown
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await close_db()


app = FastAPI(
    title="Restaurant Engagement Platform",
    description="Virtual waitlist, QR redemptions and realtime updates for restaurants",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS (needed for browser preflight requests)
if settings.is_development:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RestaurantError)
async def restaurant_error_handler(request: Request, exc: RestaurantError) -> JSONResponse:
    """Render domain errors as ``{message, reason}`` with the error's status."""
    LOGGER.info("%s %s -> %s: %s", request.method, request.url.path, exc.reason, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.message, "reason": exc.reason},
    )


@app.get("/healthz")
async def health_check() -> dict:
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "restaurant-engagement-platform",
        "realtime": channel_broker.stats(),
    }


@app.get("/")
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Restaurant Engagement Platform",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/healthz",
        "websocket": "/ws",
    }


# Include API routers
from app.api import loyalty_router, redemptions_router, waitlist_router  # noqa: E402

app.include_router(waitlist_router)
app.include_router(redemptions_router)
app.include_router(loyalty_router)

register_realtime_websocket(app)
