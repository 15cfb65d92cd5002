"""Short-lived keyed mailbox for protective-order handoff.

The entry step posts the protective order it computed; the protection step
(the same cycle, or a separately scheduled job) takes it. A value is set
once, read once and deleted after use. Entries expire after a TTL so a
stale request from an earlier cycle can never be submitted.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Generic, TypeVar

from sniper.logging import get_logger

logger = get_logger(__name__)

V = TypeVar("V")


class ProtectionMailbox(Generic[V]):
    """In-process set/get/delete store with per-entry TTL and awaitable reads.

    Args:
        ttl: Default lifetime of an entry in seconds.
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(self, ttl: float = 120.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[V, float]] = {}
        self._arrivals: dict[str, asyncio.Event] = {}

    def put(self, key: str, value: V, ttl: float | None = None) -> None:
        """Store a value, replacing any previous one, and wake waiters."""
        if self.get(key) is not None:
            logger.warning("mailbox_entry_replaced", key=key)
        expires_at = self._clock() + (self._ttl if ttl is None else ttl)
        self._entries[key] = (value, expires_at)
        self._arrival(key).set()
        logger.info("mailbox_put", key=key)

    def get(self, key: str) -> V | None:
        """Return the live value for key without removing it."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            logger.warning("mailbox_entry_expired", key=key)
            self.delete(key)
            return None
        return value

    def delete(self, key: str) -> None:
        """Remove the value for key (no-op if absent)."""
        self._entries.pop(key, None)
        event = self._arrivals.get(key)
        if event is not None:
            event.clear()

    def take(self, key: str) -> V | None:
        """Return and remove the live value for key."""
        value = self.get(key)
        if value is not None:
            self.delete(key)
        return value

    async def wait_for(self, key: str, timeout: float = 30.0) -> V | None:
        """Take the value for key, waiting up to timeout for it to arrive.

        Returns:
            The value, or None if nothing arrived in time. A timeout is a
            normal "no action" result, not an error.
        """
        value = self.take(key)
        if value is not None:
            return value

        logger.info("mailbox_waiting", key=key, timeout=timeout)
        deadline = self._clock() + timeout
        event = self._arrival(key)
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning("mailbox_wait_timeout", key=key, timeout=timeout)
                return None
            try:
                await asyncio.wait_for(event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                logger.warning("mailbox_wait_timeout", key=key, timeout=timeout)
                return None
            value = self.take(key)
            if value is not None:
                return value
            event.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def _arrival(self, key: str) -> asyncio.Event:
        event = self._arrivals.get(key)
        if event is None:
            event = asyncio.Event()
            self._arrivals[key] = event
        return event
