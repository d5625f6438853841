import asyncio
import logging
from datetime import datetime
from typing import Optional

from croniter import croniter

from relay.api.v1.metrics import JOBS_PURGED
from relay.services.queue import JobQueue
from relay.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

DAILY_AT_MIDNIGHT = "0 0 * * *"


class RetentionTicker:
    """
    Deletes old COMPLETED/FAILED posts on a cron schedule (daily by default),
    independently of the dispatch loop.
    """

    def __init__(
        self,
        queue: JobQueue,
        retention_days: Optional[int] = None,
        schedule: str = DAILY_AT_MIDNIGHT,
        clock: Clock = utc_now,
    ):
        if not croniter.is_valid(schedule):
            raise ValueError(f"Invalid retention schedule: {schedule!r}")
        self.queue = queue
        self.retention_days = retention_days if retention_days is not None else queue.config.retention_days
        self.schedule = schedule
        self.clock = clock
        self._running = False
        self._task = None

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        return croniter(self.schedule, after or self.clock()).get_next(datetime)

    async def run_once(self) -> int:
        logger.info("Running cleanup...")
        deleted = await self.queue.purge_older_than(self.retention_days)
        JOBS_PURGED.inc(deleted)
        return deleted

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Retention ticker started (schedule='{self.schedule}', days={self.retention_days})")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Retention ticker stopped.")

    async def _loop(self):
        while self._running:
            now = self.clock()
            delay = (self.next_run(now) - now).total_seconds()
            await asyncio.sleep(max(delay, 0))
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in retention sweep: {e}", exc_info=True)
