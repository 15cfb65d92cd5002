"""Typed publish/subscribe relay between decoupled components.

Publishers never know who listens: the executor announces entries and
protection outcomes, the account stream announces funding fees, and the
force-close listener or the API consume whichever events they need.

Each published event is delivered at most once to each registered
handler, in subscription order. A failing handler is logged and does not
prevent delivery to the others.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, TypeVar

from sniper.logging import get_logger
from sniper.models import OrderSide

logger = get_logger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for bus events."""

    created_at: float = field(default_factory=time.time, kw_only=True)


@dataclass(frozen=True)
class EntryPlaced(Event):
    """The entry market order was acknowledged by the exchange."""

    order_id: str
    symbol: str
    side: OrderSide
    quantity: Decimal
    fill_price: Decimal


@dataclass(frozen=True)
class ProtectionPlaced(Event):
    """The protective stop-limit order was accepted."""

    order_id: str
    symbol: str
    stop_price: Decimal
    limit_price: Decimal
    attempts: int


@dataclass(frozen=True)
class PositionUnprotected(Event):
    """All protective-order attempts failed; the position is open and unprotected."""

    symbol: str
    side: OrderSide
    quantity: Decimal
    attempts: int
    error: str


@dataclass(frozen=True)
class FundingFeeObserved(Event):
    """A funding fee was applied to the account."""

    asset: str
    change: Decimal
    event_time_ms: int = 0


E = TypeVar("E", bound=Event)
Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    """In-process async event relay keyed by event type."""

    def __init__(self) -> None:
        self._handlers: dict[type[Event], list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], Awaitable[None]]) -> None:
        """Register a coroutine handler for one event type."""
        self._handlers[event_type].append(handler)
        logger.debug("event_handler_subscribed", event_type=event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Callable[[E], Awaitable[None]]) -> None:
        """Remove a previously registered handler (no-op if absent)."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event_type: type[Event]) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event: Event) -> int:
        """Deliver an event to every handler of its exact type.

        Returns:
            Number of handlers that completed without raising.
        """
        handlers = list(self._handlers.get(type(event), []))
        delivered = 0
        for handler in handlers:
            try:
                await handler(event)
                delivered += 1
            except Exception:
                logger.error(
                    "event_handler_failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    exc_info=True,
                )
        logger.debug("event_published", event_type=type(event).__name__, handlers=len(handlers))
        return delivered
