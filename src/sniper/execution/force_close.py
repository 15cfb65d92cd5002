"""Close the position once the funding fee has been collected.

Arms itself when an entry is placed and fires on the first close signal:
a FundingFeeObserved event from the account stream, or an explicit
request_close() from the operator. Exactly one reduce-only market order is
sent per armed position, however many signals arrive.
"""

import asyncio

from sniper.events.bus import EntryPlaced, EventBus, FundingFeeObserved
from sniper.exceptions import ExchangeApiError
from sniper.exchange.client import ExchangeClient
from sniper.logging import get_logger
from sniper.models import OrderResult

logger = get_logger(__name__)


class ForceCloseListener:
    """Event-driven single-shot position close.

    Args:
        bus: Event bus delivering EntryPlaced and FundingFeeObserved.
        exchange: REST client used for the closing order.
        enabled: When False, close signals are only logged.
    """

    def __init__(self, bus: EventBus, exchange: ExchangeClient, enabled: bool = False) -> None:
        self._bus = bus
        self._exchange = exchange
        self._enabled = enabled
        self._position: EntryPlaced | None = None
        self._fired = False
        self._lock = asyncio.Lock()

    @property
    def armed(self) -> bool:
        return self._position is not None and not self._fired

    def register(self) -> None:
        self._bus.subscribe(EntryPlaced, self.on_entry_placed)
        self._bus.subscribe(FundingFeeObserved, self.on_funding_fee)

    def unregister(self) -> None:
        self._bus.unsubscribe(EntryPlaced, self.on_entry_placed)
        self._bus.unsubscribe(FundingFeeObserved, self.on_funding_fee)

    async def on_entry_placed(self, event: EntryPlaced) -> None:
        self._position = event
        self._fired = False
        logger.info("force_close_armed", symbol=event.symbol, quantity=str(event.quantity))

    async def on_funding_fee(self, event: FundingFeeObserved) -> None:
        logger.info("funding_fee_signal", asset=event.asset, change=str(event.change))
        await self.request_close(reason="funding_fee")

    async def request_close(self, reason: str = "manual") -> OrderResult | None:
        """Send the closing order if armed and not yet fired.

        Returns:
            The closing order, or None when nothing was sent.
        """
        async with self._lock:
            position = self._position
            if position is None or self._fired:
                logger.debug("force_close_ignored", reason=reason, armed=self.armed)
                return None

            if not self._enabled:
                logger.info("force_close_disabled", reason=reason, symbol=position.symbol)
                return None

            # Flag before awaiting so a concurrent signal cannot send a second order
            self._fired = True
            try:
                order = await self._exchange.place_market_order(
                    position.symbol,
                    position.side.opposite,
                    position.quantity,
                    reduce_only=True,
                )
            except ExchangeApiError as exc:
                logger.critical(
                    "force_close_failed",
                    reason=reason,
                    symbol=position.symbol,
                    quantity=str(position.quantity),
                    code=exc.code,
                    error=exc.message,
                )
                return None

            logger.info(
                "position_force_closed",
                reason=reason,
                symbol=position.symbol,
                order_id=order.order_id,
                quantity=str(order.filled_qty),
            )
            return order
