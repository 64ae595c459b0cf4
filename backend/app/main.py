"""
Rail Booking API - Main Application Entry Point

Seat selection, booking and M-Pesa payment for a passenger railway:
- Time-boxed seat holds resolved by the database, never by read-then-write
- Bookings finalized exactly once, whichever of webhook and poll arrives first
- Live seat maps over WebSocket
- Redis caching of the catalog, structured logging, Prometheus metrics
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.exceptions import RailBookingError
from app.core.logging import setup_logging, get_logger
from app.core.metrics import metrics_endpoint
from app.api.router import api_router
from app.api.middleware import RequestLoggingMiddleware
from app.api.routes import seat_feed
from app.infrastructure.mpesa import close_payment_gateway
from app.services.booking_sweeper import booking_sweeper
from app.services.cache_service import get_redis, close_redis, get_cache_stats
from app.services.change_feed import change_feed

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        mpesa_environment=settings.MPESA_ENVIRONMENT,
        mpesa_configured=settings.mpesa_configured,
    )

    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
        await change_feed.start(redis_client)
    else:
        logger.warning("redis_unavailable", message="Running without cache or cross-worker seat updates")

    if settings.PENDING_BOOKING_SWEEP_ENABLED:
        await booking_sweeper.start()

    yield

    await booking_sweeper.stop()
    await close_payment_gateway()
    await change_feed.stop()
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Train seat booking API with seat holds and M-Pesa payments",
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


@app.exception_handler(RailBookingError)
async def rail_booking_error_handler(request: Request, exc: RailBookingError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log("request_rejected", error=exc.code, detail=exc.message, status_code=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message},
    )


app.include_router(api_router)
app.include_router(seat_feed.router)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    cache_stats = await get_cache_stats()
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "cache": cache_stats,
        "mpesa": "configured" if settings.mpesa_configured else "demo",
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
