"""
Background sweeps started from the application lifespan.

- recovery loop: settle pending gateway payments every RECOVERY_INTERVAL_SECONDS
- expiry loop: complete lapsed bookings every EXPIRY_INTERVAL_SECONDS

Each iteration uses its own session. An overlapping run (another instance,
or an operator calling the admin endpoint) is harmless: both sweeps are
idempotent.
"""

import asyncio
from typing import Awaitable, Callable, List

from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.core.config import get_settings
from studyhall.core.logging import get_logger
from studyhall.db.session import SessionLocal
from studyhall.infrastructure.gateways import get_gateways
from studyhall.services.expiry_service import release_expired
from studyhall.services.reconciliation_service import run_recovery_sweep
from studyhall.services.strategy_factory import get_reservation_lock

logger = get_logger(__name__)


async def recovery_job(db: AsyncSession) -> None:
    await run_recovery_sweep(db, get_reservation_lock(), get_gateways())


async def expiry_job(db: AsyncSession) -> None:
    await release_expired(db)


async def run_periodically(name: str, job: Callable[[AsyncSession], Awaitable[None]], interval: float) -> None:
    """Run `job` forever, one session per run; failures are logged and retried next interval."""
    while True:
        logger.info("scheduler_job_starting", job=name)
        async with SessionLocal() as db:
            try:
                await job(db)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("scheduler_job_failed", job=name)
                await db.rollback()
        await asyncio.sleep(interval)


def start_scheduler() -> List[asyncio.Task]:
    settings = get_settings()
    tasks = [
        asyncio.create_task(
            run_periodically("payment_recovery", recovery_job, settings.RECOVERY_INTERVAL_SECONDS),
            name="payment_recovery",
        ),
        asyncio.create_task(
            run_periodically("booking_expiry", expiry_job, settings.EXPIRY_INTERVAL_SECONDS),
            name="booking_expiry",
        ),
    ]
    logger.info(
        "scheduler_started",
        recovery_interval=settings.RECOVERY_INTERVAL_SECONDS,
        expiry_interval=settings.EXPIRY_INTERVAL_SECONDS,
    )
    return tasks


async def stop_scheduler(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("scheduler_stopped")
