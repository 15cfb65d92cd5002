"""End-to-end timed entry with guaranteed protection.

One cycle walks a fixed state machine:

    IDLE -> RULES_FETCHED -> FEED_ACTIVE -> SIZED -> ENTRY_SUBMITTED
         -> PROTECTION_SUBMITTED -> CLOSED        (FAILED from any step)

Failures before the entry is acknowledged abort the cycle with no position
opened. After the entry, every failure path ends in either a retried
protective order or a critical `position_unprotected` alert plus a
PositionUnprotected event. Never neither.

The protective order is retried a bounded number of times with a fixed
delay table; the retry loop returns a tagged Ok/Err instead of raising
through several frames.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from decimal import Decimal

from sniper.config import AppSettings
from sniper.events.bus import EntryPlaced, EventBus, PositionUnprotected, ProtectionPlaced
from sniper.exceptions import (
    EntryRejected,
    ExchangeApiError,
    InsufficientSize,
    ProtectionFailed,
    ProtectionPending,
    RuleFetchFailed,
    SniperError,
)
from sniper.exchange.client import ExchangeClient
from sniper.execution.mailbox import ProtectionMailbox
from sniper.logging import bind_cycle, get_logger, unbind_cycle
from sniper.market_data.price_feed import PriceFeed
from sniper.models import (
    CycleOutcome,
    CycleState,
    Err,
    Ok,
    OrderResult,
    OrderSide,
    ProtectiveOrderRequest,
    Result,
    TradingRules,
)
from sniper.position.sizing import SizingCalculator
from sniper.selection import SymbolSelection
from sniper.timing.delay import DelayCoordinator

logger = get_logger(__name__)

# One position at a time, so one mailbox slot
PROTECTION_KEY = "protective-order"

_REJECTED_STATUSES = {"REJECTED", "EXPIRED", "CANCELED"}


class OrderExecutor:
    """Runs trading cycles for the selected symbol.

    Args:
        settings: Application settings (trading, protection).
        exchange: Signed REST client.
        price_feed: Book-ticker cache supplying the entry size.
        delay: Wall-clock alignment for entry and protection.
        sizing: Protective price calculator.
        mailbox: Handoff slot for protective orders.
        bus: Event bus for entry/protection outcomes.
        selection: Resolves the symbol when run_cycle() is given none.
    """

    def __init__(
        self,
        settings: AppSettings,
        exchange: ExchangeClient,
        price_feed: PriceFeed,
        delay: DelayCoordinator,
        sizing: SizingCalculator,
        mailbox: ProtectionMailbox[ProtectiveOrderRequest],
        bus: EventBus,
        selection: SymbolSelection,
    ) -> None:
        self._settings = settings
        self._exchange = exchange
        self._feed = price_feed
        self._delay = delay
        self._sizing = sizing
        self._mailbox = mailbox
        self._bus = bus
        self._selection = selection
        self._cycle_lock = asyncio.Lock()
        self._last_outcome: CycleOutcome | None = None
        # Cycle whose protective order sits in the mailbox, with that order
        self._handoff: tuple[CycleOutcome, ProtectiveOrderRequest] | None = None

    @property
    def last_outcome(self) -> CycleOutcome | None:
        return self._last_outcome

    @property
    def is_busy(self) -> bool:
        return self._cycle_lock.locked()

    def get_status(self) -> dict:
        """Snapshot for the control API."""
        return {
            "cycle_running": self.is_busy,
            "feed_running": self._feed.is_running,
            "feed_symbol": self._feed.symbol,
            "protection_pending": PROTECTION_KEY in self._mailbox,
            "last_outcome": self._last_outcome.to_dict() if self._last_outcome else None,
        }

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, symbol: str | None = None) -> CycleOutcome | None:
        """Run one full cycle.

        Args:
            symbol: Symbol to trade; resolved from SymbolSelection when omitted.

        Returns:
            The cycle outcome, or None if another cycle was already running.
            Failures are recorded on the outcome (state FAILED, error_kind).
        """
        if self._cycle_lock.locked():
            logger.warning("cycle_already_running")
            return None

        async with self._cycle_lock:
            outcome = CycleOutcome(cycle_id=uuid.uuid4().hex[:12], symbol=symbol or "")
            self._last_outcome = outcome
            try:
                await self._alert_if_handoff_lost()
                if self._handoff is not None:
                    raise ProtectionPending(
                        f"cycle {self._handoff[0].cycle_id} still awaits its protective order"
                    )
                if not symbol:
                    outcome.symbol = await self._selection.resolve()
                bind_cycle(outcome.cycle_id, outcome.symbol)
                logger.info("cycle_started", side=self._settings.trading.entry_side)
                await self._execute(outcome)
            except ProtectionFailed as exc:
                # Already alerted at critical level where it was raised
                self._fail(outcome, exc)
            except SniperError as exc:
                self._fail(outcome, exc)
                logger.error(
                    "cycle_failed",
                    state_reached=outcome.state.value,
                    error_kind=exc.kind,
                    error=str(exc),
                    position_opened=outcome.entry is not None,
                )
            finally:
                await self._feed.stop()
                if outcome.state is CycleState.PROTECTION_SUBMITTED:
                    outcome.state = CycleState.CLOSED
                outcome.finished_at = time.time()
                logger.info(
                    "cycle_finished",
                    state=outcome.state.value,
                    duration_ms=int((outcome.finished_at - outcome.started_at) * 1000),
                )
                unbind_cycle()
        return outcome

    async def _execute(self, outcome: CycleOutcome) -> None:
        symbol = outcome.symbol
        side = OrderSide(self._settings.trading.entry_side)

        # IDLE -> RULES_FETCHED
        balance, rules, leverage = await self._fetch_prerequisites(symbol)
        outcome.state = CycleState.RULES_FETCHED

        # RULES_FETCHED -> FEED_ACTIVE
        await self._feed.start(symbol, balance, leverage, rules.step_size)
        outcome.state = CycleState.FEED_ACTIVE

        # FEED_ACTIVE -> SIZED
        await self._delay.await_entry_window()
        quantity = self._feed.get_quantity(symbol, max_age_ms=self._settings.trading.max_quote_age_ms)
        if quantity <= 0 or quantity < rules.min_qty:
            raise InsufficientSize(
                f"derived quantity {quantity} below minimum {rules.min_qty} for {symbol}"
            )
        outcome.quantity = quantity
        outcome.state = CycleState.SIZED
        logger.info("entry_sized", quantity=str(quantity), balance=str(balance), leverage=leverage)

        # SIZED -> ENTRY_SUBMITTED
        entry = await self._submit_entry(symbol, side, quantity)
        outcome.entry = entry
        outcome.state = CycleState.ENTRY_SUBMITTED

        # ENTRY_SUBMITTED -> PROTECTION_SUBMITTED
        await self._protect(outcome, entry, rules, quantity)

    async def _fetch_prerequisites(self, symbol: str) -> tuple[Decimal, TradingRules, int]:
        """Fetch balance, trading rules and set leverage concurrently.

        Raises:
            RuleFetchFailed: Any leg failed; carries the first exchange error code.
        """
        trading = self._settings.trading
        results = await asyncio.gather(
            self._exchange.fetch_available_balance(trading.quote_asset),
            self._exchange.fetch_trading_rules(symbol),
            self._exchange.change_leverage(symbol, trading.leverage),
            return_exceptions=True,
        )

        legs = ("balance", "trading_rules", "leverage")
        failures = [(leg, r) for leg, r in zip(legs, results) if isinstance(r, BaseException)]
        for leg, error in failures:
            logger.error(
                "prerequisite_fetch_failed",
                leg=leg,
                code=getattr(error, "code", None),
                error=str(error),
            )
        if failures:
            leg, error = failures[0]
            if not isinstance(error, Exception):
                raise error
            code = getattr(error, "code", type(error).__name__)
            raise RuleFetchFailed(f"{leg} fetch failed: {code}") from error

        balance, rules, leverage = results
        return balance, rules, leverage  # type: ignore[return-value]

    async def _submit_entry(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        """Place the entry market order. Never retried.

        Raises:
            EntryRejected: Exchange refused the order or reported it dead.
        """
        try:
            entry = await self._exchange.place_market_order(symbol, side, quantity)
        except ExchangeApiError as exc:
            raise EntryRejected(f"entry order rejected: {exc.code}") from exc

        if entry.status.upper() in _REJECTED_STATUSES:
            raise EntryRejected(f"entry order {entry.order_id} ended {entry.status}")

        logger.info(
            "entry_filled",
            order_id=entry.order_id,
            side=side.value,
            filled_qty=str(entry.filled_qty),
            avg_price=str(entry.avg_price),
        )
        return entry

    def _entry_price(self, entry: OrderResult) -> Decimal | None:
        """Average fill price, falling back to the cached quote."""
        if entry.avg_price > 0:
            return entry.avg_price
        quote = self._feed.get_quote(entry.symbol)
        if quote is None:
            return None
        fallback = quote.ask if entry.side is OrderSide.BUY else quote.bid
        logger.warning("entry_fill_price_missing", fallback_price=str(fallback))
        return fallback

    async def _protect(
        self,
        outcome: CycleOutcome,
        entry: OrderResult,
        rules: TradingRules,
        sized_quantity: Decimal,
    ) -> None:
        quantity = entry.filled_qty if entry.filled_qty > 0 else sized_quantity
        protective_side = entry.side.opposite

        try:
            await self._bus.publish(
                EntryPlaced(
                    order_id=entry.order_id,
                    symbol=entry.symbol,
                    side=entry.side,
                    quantity=quantity,
                    fill_price=entry.avg_price,
                )
            )

            entry_price = self._entry_price(entry)
            if entry_price is None:
                raise ProtectionFailed("no fill price and no cached quote to derive protection")

            prices = self._sizing.protective_prices(entry_price, entry.side, rules.tick_size)
            outcome.protective_prices = prices
            request = ProtectiveOrderRequest(
                symbol=entry.symbol,
                side=protective_side,
                quantity=quantity,
                stop_price=prices.stop_price,
                limit_price=prices.limit_price,
                time_in_force=self._settings.protection.time_in_force,
                cycle_id=outcome.cycle_id,
            )
            logger.info(
                "protection_computed",
                entry_price=str(entry_price),
                stop_price=str(prices.stop_price),
                limit_price=str(prices.limit_price),
            )

            if self._settings.protection.handoff:
                self._mailbox.put(PROTECTION_KEY, request)
                self._handoff = (outcome, request)
                outcome.protection_handed_off = True
                logger.info("protection_handed_off", key=PROTECTION_KEY)
                return

            await self._delay.await_protection_window()
            result = await self.place_protection_with_retry(request)
        except ProtectionFailed as exc:
            await self._alert_unprotected(entry.symbol, entry.side, quantity, 0, str(exc))
            raise
        except Exception as exc:
            await self._alert_unprotected(entry.symbol, entry.side, quantity, 0, repr(exc))
            raise ProtectionFailed(f"protection step crashed: {exc!r}") from exc

        await self._finish_protection(outcome, request, result, entry.side)

    async def _finish_protection(
        self,
        outcome: CycleOutcome | None,
        request: ProtectiveOrderRequest,
        result: Result[OrderResult],
        entry_side: OrderSide,
    ) -> OrderResult:
        if isinstance(result, Err):
            await self._alert_unprotected(
                request.symbol, entry_side, request.quantity, result.attempts, result.error
            )
            raise ProtectionFailed(
                f"protective order failed after {result.attempts} attempts: {result.error}"
            )

        order = result.value
        if outcome is not None:
            outcome.protection = order
            outcome.state = CycleState.PROTECTION_SUBMITTED
        logger.info("protection_placed", order_id=order.order_id, attempts=result.attempts)
        await self._bus.publish(
            ProtectionPlaced(
                order_id=order.order_id,
                symbol=request.symbol,
                stop_price=request.stop_price,
                limit_price=request.limit_price,
                attempts=result.attempts,
            )
        )
        return order

    async def place_protection_with_retry(self, request: ProtectiveOrderRequest) -> Result[OrderResult]:
        """Submit the protective order with a bounded number of attempts.

        Waits backoff_ms[attempt] between attempts (the last entry repeats).
        No attempt is made after the final failure.

        Returns:
            Ok(order, attempts) on success, Err(kind, error, attempts) otherwise.
        """
        protection = self._settings.protection
        max_attempts = max(1, protection.max_attempts)
        backoff_ms = protection.backoff_ms or [0]
        last_error = ""

        for attempt in range(1, max_attempts + 1):
            try:
                order = await self._exchange.place_stop_order(request)
                return Ok(order, attempts=attempt)
            except ExchangeApiError as exc:
                last_error = str(exc)
                logger.warning(
                    "protection_attempt_failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    code=exc.code,
                    error=exc.message,
                )
            except Exception as exc:
                last_error = repr(exc)
                logger.warning(
                    "protection_attempt_failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    code="unexpected",
                    error=last_error,
                    exc_info=True,
                )
            if attempt < max_attempts:
                delay_ms = backoff_ms[min(attempt - 1, len(backoff_ms) - 1)]
                await asyncio.sleep(delay_ms / 1000)

        return Err(kind=ProtectionFailed.kind, error=last_error, attempts=max_attempts)

    async def _alert_unprotected(
        self,
        symbol: str,
        entry_side: OrderSide,
        quantity: Decimal,
        attempts: int,
        error: str,
    ) -> None:
        logger.critical(
            "position_unprotected",
            alert="MANUAL ACTION REQUIRED",
            position_side=entry_side.value,
            quantity=str(quantity),
            attempts=attempts,
            error=error,
        )
        await self._bus.publish(
            PositionUnprotected(
                symbol=symbol,
                side=entry_side,
                quantity=quantity,
                attempts=attempts,
                error=error,
            )
        )

    @staticmethod
    def _fail(outcome: CycleOutcome, exc: SniperError) -> None:
        outcome.state = CycleState.FAILED
        outcome.error_kind = exc.kind
        outcome.error = str(exc)

    # ------------------------------------------------------------------
    # Handoff
    # ------------------------------------------------------------------

    async def run_pending_protection(self, timeout: float | None = None) -> OrderResult | None:
        """Place a protective order handed off by an earlier cycle.

        Waits up to `timeout` (default handoff_timeout) for the request to
        arrive. No request in time means there is nothing to protect.

        Returns:
            The protective order, or None when no request arrived.

        Raises:
            ProtectionFailed: The request expired unplaced, or it arrived and
                every attempt failed.
        """
        if await self._alert_if_handoff_lost():
            raise ProtectionFailed("handed-off protective order expired before placement")

        wait = self._settings.protection.handoff_timeout if timeout is None else timeout
        request = await self._mailbox.wait_for(PROTECTION_KEY, timeout=wait)
        if request is None:
            if await self._alert_if_handoff_lost():
                raise ProtectionFailed("handed-off protective order expired before placement")
            logger.info("no_protective_order_pending", waited=wait)
            return None

        outcome = None
        if self._handoff is not None and self._handoff[0].cycle_id == request.cycle_id:
            outcome = self._handoff[0]
        self._handoff = None
        entry_side = request.side.opposite

        try:
            await self._delay.await_protection_window()
            result = await self.place_protection_with_retry(request)
        except Exception as exc:
            await self._alert_unprotected(request.symbol, entry_side, request.quantity, 0, repr(exc))
            error = ProtectionFailed(f"protection step crashed: {exc!r}")
            if outcome is not None:
                self._fail(outcome, error)
            raise error from exc

        try:
            order = await self._finish_protection(outcome, request, result, entry_side)
        except ProtectionFailed as exc:
            if outcome is not None:
                self._fail(outcome, exc)
            raise
        if outcome is not None:
            outcome.state = CycleState.CLOSED
        return order

    async def _alert_if_handoff_lost(self) -> bool:
        """Alert when a handed-off order left the mailbox without being taken.

        Returns:
            True if a lost order was found (and alerted).
        """
        if self._handoff is None or PROTECTION_KEY in self._mailbox:
            return False
        outcome, request = self._handoff
        self._handoff = None
        error = ProtectionFailed(
            f"protective order for cycle {outcome.cycle_id} expired before a protection job took it"
        )
        await self._alert_unprotected(
            request.symbol, request.side.opposite, request.quantity, 0, str(error)
        )
        self._fail(outcome, error)
        return True
