"""
Repeating timers backed by APScheduler.

The coordinator only needs a small capability from a timer: start repeating
a callback every N seconds, and cancel synchronously. SchedulerTimer provides
it with an interval job on an AsyncIOScheduler, so ticks run on the same
event loop as everything else.
"""

import asyncio
import logging
import uuid
from typing import Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, EVENT_JOB_MAX_INSTANCES
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


class CancellableTimer:
    """
    A repeating timer.

    start() arms the timer to call ``callback`` every ``interval`` seconds,
    first tick one interval from now. cancel() is synchronous and idempotent:
    once it returns, no further tick is delivered.
    """

    def start(self, interval: float, callback: Callable[[], None]):
        raise NotImplementedError

    def cancel(self):
        raise NotImplementedError

    @property
    def active(self) -> bool:
        raise NotImplementedError


def create_scheduler(loop: Optional[asyncio.AbstractEventLoop] = None) -> AsyncIOScheduler:
    """
    Create and start an AsyncIOScheduler bound to the running event loop.

    Must be called from inside the loop when ``loop`` is not given.
    """
    if loop is None:
        loop = asyncio.get_running_loop()

    job_defaults = {
        'coalesce': True,  # Collapse a backlog of missed ticks into one
        'max_instances': 1,
        'misfire_grace_time': 1
    }
    scheduler = AsyncIOScheduler(event_loop=loop, job_defaults=job_defaults)
    _setup_event_listeners(scheduler)
    scheduler.start()
    logger.debug("Timer scheduler started")
    return scheduler


def _setup_event_listeners(scheduler: AsyncIOScheduler):
    """Setup APScheduler event listeners for logging."""

    def job_error_listener(event):
        logger.error(
            f"Timer '{event.job_id}' raised exception: {event.exception}\n{event.traceback}"
        )

    def job_missed_listener(event):
        logger.warning(f"Timer '{event.job_id}' missed scheduled tick")

    def job_max_instances_listener(event):
        logger.debug(f"Timer '{event.job_id}' tick skipped, previous tick still running")

    scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
    scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
    scheduler.add_listener(job_max_instances_listener, EVENT_JOB_MAX_INSTANCES)


class SchedulerTimer(CancellableTimer):
    """CancellableTimer implemented as an APScheduler interval job."""

    def __init__(self, scheduler: AsyncIOScheduler, name: Optional[str] = None):
        """
        Initialize timer.

        Args:
            scheduler: Running AsyncIOScheduler that owns the job
            name: Label used in the job id (for logs)
        """
        self.scheduler = scheduler
        self.name = name or "timer"
        self.job_id: Optional[str] = None
        self._callback: Optional[Callable[[], None]] = None

    async def _tick(self):
        # Coroutine job: AsyncIOExecutor runs it on the loop, not in a thread
        if self._callback is not None:
            self._callback()

    def start(self, interval: float, callback: Callable[[], None]):
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.cancel()

        self._callback = callback
        self.job_id = f"{self.name}-{uuid.uuid4().hex[:8]}"
        self.scheduler.add_job(
            self._tick,
            'interval',
            seconds=interval,
            id=self.job_id,
            name=self.name,
        )
        logger.debug(f"Timer '{self.job_id}' started (interval={interval}s)")

    def cancel(self):
        if self.job_id is None:
            return

        job_id = self.job_id
        self.job_id = None
        self._callback = None
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass
        logger.debug(f"Timer '{job_id}' cancelled")

    @property
    def active(self) -> bool:
        return self.job_id is not None

    def __repr__(self):
        return f"SchedulerTimer(job_id={self.job_id})"
