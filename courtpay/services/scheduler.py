"""Background scheduler for the expired-hold sweep."""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from courtpay.core.config import settings
from courtpay.services.expiry_service import ExpiredBookingsService, expired_bookings_service

logger = logging.getLogger(__name__)


class ExpirySweepScheduler:
    """Runs the expired booking sweep at a fixed interval."""

    def __init__(
        self,
        service: ExpiredBookingsService = expired_bookings_service,
        interval_minutes: int = settings.EXPIRY_SWEEP_INTERVAL_MINUTES,
    ):
        """Initialize the scheduler."""
        self.service = service
        self.interval_minutes = interval_minutes
        self.scheduler = AsyncIOScheduler()
        self.running = False

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler is already running")
            return

        logger.info(f"Starting expiry sweep scheduler (every {self.interval_minutes} min)")

        self.scheduler.add_job(
            self._sweep,
            IntervalTrigger(minutes=self.interval_minutes),
            id="expired_bookings_job",
            name="Cancel expired booking holds",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        self.running = True
        logger.info("Expiry sweep scheduler started")

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            return

        logger.info("Stopping expiry sweep scheduler")
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Expiry sweep scheduler stopped")

    async def _sweep(self):
        """Cancel expired holds. Failures are logged and retried on the next tick."""
        try:
            result = await self.service.cancel_expired_bookings()
            if result.cancelled:
                logger.info(f"Expiry sweep cancelled bookings: {', '.join(result.booking_ids)}")
        except Exception as e:
            logger.error(f"Error in expiry sweep: {e}", exc_info=True)


# Singleton instance
expiry_scheduler = ExpirySweepScheduler()
