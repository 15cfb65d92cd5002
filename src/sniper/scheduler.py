"""Wall-clock job scheduler.

Each registered job fires at a fixed local time in its own timezone
(falling back to the timing timezone), once a day or repeatedly at a
fixed interval from that time. Jobs run as asyncio tasks: a job still
running when its next trigger comes around is skipped, and a failing job
is logged without stopping the scheduler.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sniper.config import ScheduledJob
from sniper.logging import get_logger

logger = get_logger(__name__)

JobHandler = Callable[[], Awaitable[object]]

_ONE_DAY = timedelta(days=1)


def _daily_offsets(job: ScheduledJob) -> list[timedelta]:
    """Times of day (as offsets from midnight) at which job fires."""
    anchor = timedelta(
        hours=job.at.hour,
        minutes=job.at.minute,
        seconds=job.at.second,
        microseconds=job.at.microsecond,
    )
    if job.every is None:
        return [anchor]
    offset = anchor % job.every
    offsets = []
    while offset < _ONE_DAY:
        offsets.append(offset)
        offset += job.every
    return offsets


def next_run_at(job: ScheduledJob, now: datetime) -> datetime:
    """Next trigger of job strictly after now, in now's timezone."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    offsets = _daily_offsets(job)
    for offset in offsets:
        candidate = midnight + offset
        if candidate > now:
            return candidate
    return midnight + _ONE_DAY + offsets[0]


class CycleScheduler:
    """Fires named handlers at wall-clock times.

    Args:
        jobs: Job registrations from settings.
        handlers: Handler name ("cycle", "protection") to coroutine factory.
        default_timezone: IANA zone for jobs that do not name one.
        clock: Returns the current aware datetime for a zone (injectable for tests).
        sleep: Awaitable sleep (injectable for tests).
    """

    def __init__(
        self,
        jobs: list[ScheduledJob],
        handlers: dict[str, JobHandler],
        default_timezone: str = "Asia/Kolkata",
        clock: Callable[[ZoneInfo], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        unknown = {job.handler for job in jobs} - set(handlers)
        if unknown:
            raise ValueError(f"no handler registered for: {', '.join(sorted(unknown))}")
        self._jobs = jobs
        self._handlers = handlers
        self._default_tz = default_timezone
        self._clock = clock or (lambda tz: datetime.now(tz))
        self._sleep = sleep
        self._loops: list[asyncio.Task] = []
        self._running: dict[str, asyncio.Task] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._loops)

    def start(self) -> None:
        """Start one loop task per job. No-op if already started."""
        if self._loops:
            return
        for job in self._jobs:
            self._loops.append(asyncio.create_task(self._job_loop(job), name=f"job-{job.name}"))
        logger.info("scheduler_started", jobs=[job.name for job in self._jobs])

    async def stop(self) -> None:
        """Cancel job loops and any job still in progress."""
        tasks = self._loops + list(self._running.values())
        self._loops = []
        self._running.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("scheduler_stopped")

    def next_runs(self) -> dict[str, str]:
        """Next trigger time per job, ISO formatted."""
        result = {}
        for job in self._jobs:
            tz = ZoneInfo(job.timezone or self._default_tz)
            result[job.name] = next_run_at(job, self._clock(tz)).isoformat()
        return result

    async def _job_loop(self, job: ScheduledJob) -> None:
        tz = ZoneInfo(job.timezone or self._default_tz)
        while True:
            target = next_run_at(job, self._clock(tz))
            logger.info("job_scheduled", job=job.name, run_at=target.isoformat())
            # Re-read the clock after every wake-up so drift cannot fire early
            remaining = (target - self._clock(tz)).total_seconds()
            while remaining > 0:
                await self._sleep(remaining)
                remaining = (target - self._clock(tz)).total_seconds()
            self.fire(job)

    def fire(self, job: ScheduledJob) -> asyncio.Task | None:
        """Run a job now unless its previous run is still in progress."""
        previous = self._running.get(job.name)
        if previous is not None and not previous.done():
            logger.warning("job_skipped_still_running", job=job.name)
            return None
        task = asyncio.create_task(self._run_job(job), name=f"run-{job.name}")
        self._running[job.name] = task
        return task

    async def _run_job(self, job: ScheduledJob) -> None:
        handler = self._handlers[job.handler]
        logger.info("job_started", job=job.name, handler=job.handler)
        try:
            await handler()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("job_failed", job=job.name, handler=job.handler, exc_info=True)
        else:
            logger.info("job_finished", job=job.name)
