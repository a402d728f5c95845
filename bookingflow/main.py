"""FastAPI application entry point — wires everything together.

Usage:
    python -m bookingflow.main

Serves the booking and webhook routes and runs the expiry sweep in the
background.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from bookingflow.api.routes import booking_error_handler, booking_router, webhook_router
from bookingflow.config import settings
from bookingflow.db.engine import async_session_factory, db_lifespan, redis_client
from bookingflow.errors import BookingError
from bookingflow.events import start_event_system, stop_event_system, subscribe
from bookingflow.notifications import log_on_event
from bookingflow.security.authorization import RoleAuthorizer
from bookingflow.security.encryption import require_encryption_key
from bookingflow.security.rate_limiter import RateLimiter
from bookingflow.service.orchestrator import BookingOrchestrator
from bookingflow.storage.redis_tokens import RedisRecoveryTokenStore
from bookingflow.storage.sql import SqlBookingStore

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_INTERVAL_SECONDS = 300


def build_orchestrator() -> BookingOrchestrator:
    """Production wiring: PostgreSQL bookings, Redis tokens and rate limits."""
    return BookingOrchestrator(
        SqlBookingStore(async_session_factory),
        RedisRecoveryTokenStore(redis_client),
        authorizer=RoleAuthorizer(),
        attempt_limiter=RateLimiter(redis_client),
    )


async def _expiry_loop(orchestrator: BookingOrchestrator) -> None:
    """Periodically expire abandoned bookings."""
    while True:
        try:
            await asyncio.sleep(EXPIRY_SWEEP_INTERVAL_SECONDS)
            await orchestrator.expire_stale_bookings()
        except asyncio.CancelledError:
            logger.info("Expiry sweep shutting down")
            break
        except Exception:
            logger.exception("Expiry sweep failed")


# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting bookingflow (env=%s)", settings.environment)
    require_encryption_key(settings)

    # 1. Database + Redis
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Event system with the notification log subscriber
        await start_event_system()
        subscribe(log_on_event)
        logger.info("Event system started")

        # 3. Orchestrator + background expiry sweep
        orchestrator = build_orchestrator()
        app.state.orchestrator = orchestrator
        sweep = asyncio.create_task(_expiry_loop(orchestrator))

        try:
            yield
        finally:
            logger.info("Shutting down bookingflow...")
            sweep.cancel()
            try:
                await sweep
            except asyncio.CancelledError:
                pass

            await stop_event_system()
            logger.info("Event system stopped")

    logger.info("bookingflow shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="bookingflow API",
    description="Booking lifecycle state machine with payment and scheduling webhooks",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(booking_router)
app.include_router(webhook_router)
app.add_exception_handler(BookingError, booking_error_handler)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.environment,
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "bookingflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
