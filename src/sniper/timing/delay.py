"""Sub-second wall-clock alignment for order submission.

The entry must go out a few hundred milliseconds before a minute boundary
and the protective order just after it. DelayCoordinator computes the
target instant inside the current minute of a named timezone and suspends
until then.

Two rules shape the wait:

- Fail-open: a target that has already passed this minute returns at once
  instead of waiting for the next minute.
- No drift: the remaining time is re-derived from a fresh clock read after
  every wake-up, never accumulated from sleep durations.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sniper.config import TimingSettings
from sniper.logging import get_logger

logger = get_logger(__name__)

_ONE_MINUTE = timedelta(minutes=1)


def target_instant(now: datetime, target_second: int, target_millisecond: int) -> datetime:
    """Return the instant of second:millisecond relative to now's minute.

    An offset of 60 s or more denotes the boundary into the next minute.
    Once the caller has moved past second 59 that boundary was already
    crossed, so the occurrence that opened the current minute is returned.
    """
    offset = timedelta(seconds=target_second, milliseconds=target_millisecond)
    minute_start = now.replace(second=0, microsecond=0)
    target = minute_start + offset
    if offset >= _ONE_MINUTE and now.second < 59:
        target -= _ONE_MINUTE
    return target


class DelayCoordinator:
    """Awaits wall-clock offsets within the current minute.

    Args:
        settings: Timezone and the entry/protection offsets.
        clock: Returns the current aware datetime (injectable for tests).
        sleep: Coroutine function used to suspend (injectable for tests).
    """

    def __init__(
        self,
        settings: TimingSettings,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._tz = ZoneInfo(settings.timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))
        self._sleep = sleep

    def now(self) -> datetime:
        return self._clock().astimezone(self._tz)

    async def await_wall_clock_offset(self, target_second: int, target_millisecond: int = 0) -> float:
        """Suspend until second:millisecond of the current minute.

        Args:
            target_second: Second within the minute (60 = next minute boundary).
            target_millisecond: Millisecond within that second.

        Returns:
            Seconds actually waited; 0.0 when the target had already passed.
        """
        started = self.now()
        target = target_instant(started, target_second, target_millisecond)

        if started >= target:
            logger.info(
                "wall_clock_target_passed",
                target=target.isoformat(timespec="milliseconds"),
                now=started.isoformat(timespec="milliseconds"),
            )
            return 0.0

        logger.info(
            "waiting_for_wall_clock_target",
            target=target.isoformat(timespec="milliseconds"),
            wait_ms=int((target - started).total_seconds() * 1000),
        )

        while True:
            remaining = (target - self.now()).total_seconds()
            if remaining <= 0:
                break
            await self._sleep(remaining)

        finished = self.now()
        logger.info(
            "wall_clock_target_reached",
            target=target.isoformat(timespec="milliseconds"),
            lateness_ms=int((finished - target).total_seconds() * 1000),
        )
        return (finished - started).total_seconds()

    async def await_entry_window(self) -> float:
        """Wait for the configured entry submission offset."""
        return await self.await_wall_clock_offset(
            self._settings.entry_second, self._settings.entry_millisecond
        )

    async def await_protection_window(self) -> float:
        """Wait for the configured protective-order submission offset."""
        return await self.await_wall_clock_offset(
            self._settings.protection_second, self._settings.protection_millisecond
        )
