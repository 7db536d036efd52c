"""
Study Hall Booking API.

Seats and private cabins are booked for date ranges, priced by tier, paid
through EKQR (UPI), Razorpay or at the desk, and reconciled from webhooks,
a periodic recovery sweep and operator-triggered recovery.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from studyhall.api.middleware import RequestLoggingMiddleware
from studyhall.api.router import api_router
from studyhall.core.config import get_settings
from studyhall.core.logging import get_logger, setup_logging
from studyhall.core.metrics import metrics_endpoint
from studyhall.infrastructure.gateways import close_gateways
from studyhall.infrastructure.redis_client import close_redis, get_redis
from studyhall.services.cache_service import get_cache_stats
from studyhall.services.scheduler import start_scheduler, stop_scheduler

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger = get_logger(__name__)

    redis_client = await get_redis()
    logger.info(
        "application_starting",
        environment=settings.ENVIRONMENT,
        reservation_lock=settings.RESERVATION_LOCK,
        redis=redis_client is not None,
        scheduler=settings.SCHEDULER_ENABLED,
    )
    if redis_client is None and settings.RESERVATION_LOCK == "redis":
        logger.warning("redis_lock_degraded", message="Falling back to in-process locks")

    app.state.sweeps = start_scheduler() if settings.SCHEDULER_ENABLED else []
    try:
        yield
    finally:
        # Sweeps first: they may still be talking to gateways and Redis
        await stop_scheduler(app.state.sweeps)
        await close_gateways()
        await close_redis()
        logger.info("application_shutdown")


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description=__doc__,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    application.add_middleware(RequestLoggingMiddleware)
    application.include_router(api_router)

    @application.get("/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "reservation_lock": settings.RESERVATION_LOCK,
            "scheduler": settings.SCHEDULER_ENABLED,
            "cache": await get_cache_stats(),
        }

    @application.get("/metrics", include_in_schema=False)
    async def metrics():
        return metrics_endpoint()

    return application


app = create_app()
