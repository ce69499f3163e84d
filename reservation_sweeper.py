# reservation_sweeper.py
# Periodic expiry sweep: cancels reservations whose deadline has passed

import asyncio
import logging
from typing import Callable, Optional

from config import settings
from database import SessionLocal
from investment_errors import StoreUnavailable
from investment_transaction_service import InvestmentTransactionService

log = logging.getLogger(__name__)


class ReservationSweeper:
    """
    Runs InvestmentTransactionService.sweep_expired on a fixed interval.

    Holds no state beyond the asyncio task; stopping it and starting a new
    one is always safe because the sweep itself is idempotent.
    """

    def __init__(
        self,
        service: Optional[InvestmentTransactionService] = None,
        session_factory: Callable = SessionLocal,
        interval_seconds: Optional[float] = None
    ):
        self.service = service or InvestmentTransactionService()
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.RESERVATION_SWEEP_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        async with self.session_factory() as db:
            return await self.service.sweep_expired(db)

    async def _loop(self):
        log.info(f"Reservation sweeper started (every {self.interval_seconds}s)")
        while True:
            try:
                await self.run_once()
            except StoreUnavailable as e:
                # Retried on the next tick
                log.error(f"Reservation sweep failed: {e}")
            await asyncio.sleep(self.interval_seconds)

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("Reservation sweeper stopped")
