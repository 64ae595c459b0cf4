"""
Background sweeper for abandoned checkouts.

A pending booking whose payment never arrived keeps nothing reserved once its
hold lapses, but it would stay pending forever. The sweeper periodically runs
expire_stale_bookings() so such bookings end up cancelled and their seats
show as available again.
"""

import asyncio
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import get_settings
from app.core.logging import get_logger
from app.db.session import AsyncSessionLocal
from app.services.booking_service import expire_stale_bookings

logger = get_logger(__name__)
settings = get_settings()


class BookingSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        interval_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.PENDING_BOOKING_SWEEP_INTERVAL_SECONDS
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self.running:
            logger.warning("booking_sweeper_already_running")
            return

        self.running = True
        self.task = asyncio.create_task(self._run())
        logger.info("booking_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self.running:
            return

        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("booking_sweeper_stopped")

    async def sweep_once(self) -> list[int]:
        async with self.session_factory() as db:
            try:
                return await expire_stale_bookings(db)
            except Exception:
                await db.rollback()
                raise

    async def _run(self) -> None:
        while self.running:
            try:
                expired = await self.sweep_once()
                if expired:
                    logger.info("booking_sweep_completed", expired=len(expired))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("booking_sweep_failed", error=str(e))
            await asyncio.sleep(self.interval_seconds)


booking_sweeper = BookingSweeper()
