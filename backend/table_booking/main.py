"""
Table Reservation API - Main Application Entry Point

A restaurant reservation service demonstrating:
- A status state machine as the single path for status changes
- Append-only audit trail of every status change
- Per-user double-booking detection
- Concurrency-safe lifecycle writes with optimistic locking
- Structured logging with request correlation
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from table_booking.api.middleware import RequestLoggingMiddleware
from table_booking.api.router import api_router
from table_booking.core.config import get_settings
from table_booking.core.exceptions import ReservationError, reservation_error_handler
from table_booking.core.logging import get_logger, setup_logging
from table_booking.core.metrics import metrics_endpoint
from table_booking.db.session import dispose_engine
from table_booking.services.cache_service import close_redis, get_cache_stats, get_redis
from table_booking.services.store_factory import get_store

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        store=get_store().name,
        timezone=settings.RESTAURANT_TIMEZONE,
    )

    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Running without cache")

    yield

    await close_redis()
    await dispose_engine()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Restaurant table reservations with an auditable, concurrency-safe lifecycle",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

app.add_exception_handler(ReservationError, reservation_error_handler)

app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    cache_stats = await get_cache_stats()
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "store": get_store().name,
        "cache": cache_stats,
    }


@app.get("/metrics", tags=["Health"], include_in_schema=False)
async def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
