"""Tests for OrderExecutor -- full cycle, failure paths and protection retry.

The exchange, price feed and delay coordinator are mocked; sizing, the
mailbox, the event bus and symbol selection are real.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import ccxt
import pytest

from sniper.config import AppSettings, ProtectionSettings
from sniper.events.bus import EntryPlaced, EventBus, PositionUnprotected, ProtectionPlaced
from sniper.exceptions import ExchangeApiError, FeedNotReady, ProtectionFailed, StaleQuote
from sniper.execution.executor import PROTECTION_KEY, OrderExecutor
from sniper.execution.mailbox import ProtectionMailbox
from sniper.models import CycleState, OrderResult, OrderSide, Quote, TradingRules
from sniper.position.sizing import SizingCalculator
from sniper.selection import SymbolSelection

RULES = TradingRules(
    symbol="BTCUSDT",
    step_size=Decimal("0.001"),
    tick_size=Decimal("0.1"),
    min_qty=Decimal("0.001"),
)


def _order(
    order_id: str = "entry-1",
    side: OrderSide = OrderSide.BUY,
    qty: str = "0.020",
    price: str = "45000.10",
    status: str = "FILLED",
) -> OrderResult:
    return OrderResult(
        order_id=order_id,
        symbol="BTCUSDT",
        side=side,
        filled_qty=Decimal(qty),
        avg_price=Decimal(price),
        status=status,
    )


def _stop_ack(order_id: str = "stop-1") -> OrderResult:
    return _order(order_id=order_id, side=OrderSide.SELL, qty="0", price="0", status="NEW")


@pytest.fixture()
def exchange() -> AsyncMock:
    client = AsyncMock()
    client.fetch_available_balance = AsyncMock(return_value=Decimal("100"))
    client.fetch_trading_rules = AsyncMock(return_value=RULES)
    client.change_leverage = AsyncMock(return_value=10)
    client.place_market_order = AsyncMock(return_value=_order())
    client.place_stop_order = AsyncMock(return_value=_stop_ack())
    return client


@pytest.fixture()
def price_feed() -> MagicMock:
    feed = MagicMock()
    feed.start = AsyncMock()
    feed.stop = AsyncMock()
    feed.is_running = False
    feed.symbol = None
    feed.get_quantity = MagicMock(return_value=Decimal("0.020"))
    feed.get_quote = MagicMock(
        return_value=Quote(
            bid=Decimal("44999.9"),
            ask=Decimal("45000.0"),
            observed_at_ms=0,
            derived_quantity=Decimal("0.020"),
        )
    )
    return feed


@pytest.fixture()
def delay() -> AsyncMock:
    coordinator = AsyncMock()
    coordinator.await_entry_window = AsyncMock(return_value=0.0)
    coordinator.await_protection_window = AsyncMock(return_value=0.0)
    return coordinator


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def published(bus: EventBus) -> list:
    events: list = []

    async def _record(event) -> None:
        events.append(event)

    for event_type in (EntryPlaced, ProtectionPlaced, PositionUnprotected):
        bus.subscribe(event_type, _record)
    return events


@pytest.fixture()
def mailbox() -> ProtectionMailbox:
    return ProtectionMailbox()


def _executor(
    settings: AppSettings,
    exchange: AsyncMock,
    price_feed: MagicMock,
    delay: AsyncMock,
    mailbox: ProtectionMailbox,
    bus: EventBus,
) -> OrderExecutor:
    return OrderExecutor(
        settings=settings,
        exchange=exchange,
        price_feed=price_feed,
        delay=delay,
        sizing=SizingCalculator(settings.protection),
        mailbox=mailbox,
        bus=bus,
        selection=SymbolSelection(configured_symbol=settings.trading.symbol),
    )


@pytest.fixture()
def executor(mock_settings, exchange, price_feed, delay, mailbox, bus) -> OrderExecutor:
    return _executor(mock_settings, exchange, price_feed, delay, mailbox, bus)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestHappyPath:
    @pytest.mark.asyncio()
    async def test_full_cycle_places_entry_and_protection(
        self, executor, exchange, price_feed, delay, published
    ) -> None:
        outcome = await executor.run_cycle()

        assert outcome.state is CycleState.CLOSED
        assert outcome.symbol == "BTCUSDT"
        assert outcome.quantity == Decimal("0.020")
        assert outcome.error_kind is None

        price_feed.start.assert_awaited_once_with("BTCUSDT", Decimal("100"), 10, Decimal("0.001"))
        exchange.place_market_order.assert_awaited_once_with("BTCUSDT", OrderSide.BUY, Decimal("0.020"))
        delay.await_entry_window.assert_awaited_once()
        delay.await_protection_window.assert_awaited_once()

        request = exchange.place_stop_order.await_args.args[0]
        assert request.side is OrderSide.SELL
        assert request.reduce_only is True
        assert request.quantity == Decimal("0.020")
        assert request.stop_price == Decimal("44910.0")
        assert request.limit_price == Decimal("44865.0")
        assert request.stop_price < Decimal("45000.10")

        assert [type(e) for e in published] == [EntryPlaced, ProtectionPlaced]
        price_feed.stop.assert_awaited()

    @pytest.mark.asyncio()
    async def test_explicit_symbol_wins(self, executor, exchange) -> None:
        outcome = await executor.run_cycle("ETHUSDT")
        assert outcome.symbol == "ETHUSDT"
        exchange.fetch_trading_rules.assert_awaited_once_with("ETHUSDT")

    @pytest.mark.asyncio()
    async def test_sell_entry_protected_above(
        self, mock_settings, exchange, price_feed, delay, mailbox, bus
    ) -> None:
        mock_settings.trading.entry_side = "SELL"
        exchange.place_market_order = AsyncMock(return_value=_order(side=OrderSide.SELL))
        executor = _executor(mock_settings, exchange, price_feed, delay, mailbox, bus)

        await executor.run_cycle()

        request = exchange.place_stop_order.await_args.args[0]
        assert request.side is OrderSide.BUY
        assert request.stop_price > Decimal("45000.10")
        assert request.limit_price >= request.stop_price

    @pytest.mark.asyncio()
    async def test_missing_fill_price_falls_back_to_quote(self, executor, exchange) -> None:
        exchange.place_market_order = AsyncMock(return_value=_order(price="0"))

        outcome = await executor.run_cycle()

        assert outcome.state is CycleState.CLOSED
        request = exchange.place_stop_order.await_args.args[0]
        # Fallback uses the ask (45000.0) for a BUY entry
        assert request.stop_price == Decimal("44910.0")

    @pytest.mark.asyncio()
    async def test_status_reports_last_outcome(self, executor) -> None:
        assert executor.get_status()["last_outcome"] is None
        await executor.run_cycle()
        status = executor.get_status()
        assert status["cycle_running"] is False
        assert status["last_outcome"]["state"] == "closed"

    @pytest.mark.asyncio()
    async def test_cycle_with_production_logging(
        self, configured_logging, executor, exchange, published
    ) -> None:
        outcome = await executor.run_cycle()

        assert outcome.state is CycleState.CLOSED
        exchange.place_stop_order.assert_awaited_once()
        assert [type(e) for e in published] == [EntryPlaced, ProtectionPlaced]


# ---------------------------------------------------------------------------
# Failures before entry: no position opened
# ---------------------------------------------------------------------------


class TestPreEntryFailures:
    @pytest.mark.asyncio()
    async def test_rule_fetch_failure_aborts(self, executor, exchange, price_feed) -> None:
        exchange.fetch_trading_rules = AsyncMock(side_effect=ExchangeApiError("-1121", "Invalid symbol."))

        outcome = await executor.run_cycle()

        assert outcome.state is CycleState.FAILED
        assert outcome.error_kind == "rule_fetch_failed"
        assert "-1121" in outcome.error
        price_feed.start.assert_not_awaited()
        exchange.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_feed_not_ready_aborts(self, executor, exchange, price_feed) -> None:
        price_feed.get_quantity = MagicMock(side_effect=FeedNotReady("no quote"))

        outcome = await executor.run_cycle()

        assert outcome.state is CycleState.FAILED
        assert outcome.error_kind == "feed_not_ready"
        exchange.place_market_order.assert_not_awaited()
        price_feed.stop.assert_awaited()

    @pytest.mark.asyncio()
    async def test_stale_quote_aborts(self, executor, exchange, price_feed) -> None:
        price_feed.get_quantity = MagicMock(side_effect=StaleQuote("old"))

        outcome = await executor.run_cycle()

        assert outcome.error_kind == "stale_quote"
        exchange.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_zero_quantity_aborts(self, executor, exchange, price_feed) -> None:
        price_feed.get_quantity = MagicMock(return_value=Decimal("0.000"))

        outcome = await executor.run_cycle()

        assert outcome.error_kind == "insufficient_size"
        exchange.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_entry_rejected_places_no_protection(self, executor, exchange, published) -> None:
        exchange.place_market_order = AsyncMock(
            side_effect=ExchangeApiError("-2019", "Margin is insufficient.")
        )

        outcome = await executor.run_cycle()

        assert outcome.state is CycleState.FAILED
        assert outcome.error_kind == "entry_rejected"
        exchange.place_stop_order.assert_not_awaited()
        assert published == []

    @pytest.mark.asyncio()
    async def test_rejected_status_is_entry_rejected(self, executor, exchange) -> None:
        exchange.place_market_order = AsyncMock(return_value=_order(status="EXPIRED", qty="0"))

        outcome = await executor.run_cycle()

        assert outcome.error_kind == "entry_rejected"
        exchange.place_stop_order.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_no_symbol(self, mock_settings, exchange, price_feed, delay, mailbox, bus) -> None:
        mock_settings.trading.symbol = ""
        executor = _executor(mock_settings, exchange, price_feed, delay, mailbox, bus)

        outcome = await executor.run_cycle()

        assert outcome.error_kind == "no_symbol"
        exchange.fetch_available_balance.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_funding_scan_error_is_recorded(
        self, mock_settings, exchange, price_feed, delay, mailbox, bus
    ) -> None:
        scanner = MagicMock()
        scanner.select_symbol = AsyncMock(side_effect=ccxt.NetworkError("binanceusdm GET timed out"))
        executor = OrderExecutor(
            settings=mock_settings,
            exchange=exchange,
            price_feed=price_feed,
            delay=delay,
            sizing=SizingCalculator(mock_settings.protection),
            mailbox=mailbox,
            bus=bus,
            selection=SymbolSelection(scanner=scanner, select_by_funding=True),
        )

        outcome = await executor.run_cycle()

        assert outcome.state is CycleState.FAILED
        assert outcome.error_kind == "no_symbol"
        assert "NetworkError" in outcome.error
        exchange.place_market_order.assert_not_awaited()


# ---------------------------------------------------------------------------
# Protection retry
# ---------------------------------------------------------------------------


class TestProtectionRetry:
    @pytest.mark.parametrize("failures", [0, 1, 3, 7])
    @pytest.mark.asyncio()
    async def test_succeeds_after_transient_failures(self, executor, exchange, failures) -> None:
        exchange.place_stop_order = AsyncMock(
            side_effect=[ExchangeApiError("-1001", "Internal error")] * failures + [_stop_ack()]
        )

        with patch("sniper.execution.executor.asyncio.sleep", new_callable=AsyncMock):
            outcome = await executor.run_cycle()

        assert outcome.state is CycleState.CLOSED
        assert exchange.place_stop_order.await_count == failures + 1
        assert outcome.protection.order_id == "stop-1"

    @pytest.mark.asyncio()
    async def test_unexpected_error_counts_as_failed_attempt(self, executor, exchange) -> None:
        exchange.place_stop_order = AsyncMock(
            side_effect=[ValueError("Expecting value: line 1 column 1"), _stop_ack()]
        )

        with patch("sniper.execution.executor.asyncio.sleep", new_callable=AsyncMock):
            outcome = await executor.run_cycle()

        assert outcome.state is CycleState.CLOSED
        assert exchange.place_stop_order.await_count == 2

    @pytest.mark.asyncio()
    async def test_eight_failures_raise_protection_failed_and_alert(
        self, executor, exchange, published
    ) -> None:
        exchange.place_stop_order = AsyncMock(side_effect=ExchangeApiError("-2021", "Order would immediately trigger."))

        with patch("sniper.execution.executor.asyncio.sleep", new_callable=AsyncMock):
            outcome = await executor.run_cycle()

        assert exchange.place_stop_order.await_count == 8
        assert outcome.state is CycleState.FAILED
        assert outcome.error_kind == "protection_failed"
        assert outcome.entry is not None
        alerts = [e for e in published if isinstance(e, PositionUnprotected)]
        assert len(alerts) == 1
        assert alerts[0].attempts == 8
        assert alerts[0].quantity == Decimal("0.020")
        assert "-2021" in alerts[0].error

    @pytest.mark.asyncio()
    async def test_backoff_table_between_attempts(
        self, mock_settings, exchange, price_feed, delay, mailbox, bus
    ) -> None:
        mock_settings.protection = ProtectionSettings(max_attempts=4, backoff_ms=[100, 250])
        exchange.place_stop_order = AsyncMock(side_effect=ExchangeApiError("-1001"))
        executor = _executor(mock_settings, exchange, price_feed, delay, mailbox, bus)

        with patch("sniper.execution.executor.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            outcome = await executor.run_cycle()

        assert outcome.error_kind == "protection_failed"
        assert [c.args[0] for c in mock_sleep.await_args_list] == [0.1, 0.25, 0.25]

    @pytest.mark.asyncio()
    async def test_unexpected_crash_after_entry_still_alerts(
        self, executor, delay, published
    ) -> None:
        delay.await_protection_window = AsyncMock(side_effect=RuntimeError("clock exploded"))

        outcome = await executor.run_cycle()

        assert outcome.error_kind == "protection_failed"
        assert any(isinstance(e, PositionUnprotected) for e in published)


# ---------------------------------------------------------------------------
# Handoff mode
# ---------------------------------------------------------------------------


class TestHandoff:
    @pytest.fixture()
    def handoff_executor(self, mock_settings, exchange, price_feed, delay, mailbox, bus) -> OrderExecutor:
        mock_settings.protection = ProtectionSettings(handoff=True, backoff_ms=[0], handoff_timeout=0.05)
        return _executor(mock_settings, exchange, price_feed, delay, mailbox, bus)

    @pytest.mark.asyncio()
    async def test_cycle_posts_to_mailbox(self, handoff_executor, exchange, mailbox) -> None:
        outcome = await handoff_executor.run_cycle()

        assert outcome.protection_handed_off is True
        assert outcome.state is CycleState.ENTRY_SUBMITTED
        exchange.place_stop_order.assert_not_awaited()
        assert PROTECTION_KEY in mailbox

    @pytest.mark.asyncio()
    async def test_protection_job_takes_request(self, handoff_executor, exchange, mailbox) -> None:
        outcome = await handoff_executor.run_cycle()

        order = await handoff_executor.run_pending_protection()

        assert order.order_id == "stop-1"
        assert PROTECTION_KEY not in mailbox
        assert outcome.state is CycleState.CLOSED
        assert outcome.protection is order
        exchange.place_stop_order.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_protection_job_without_request_does_nothing(self, handoff_executor, exchange) -> None:
        assert await handoff_executor.run_pending_protection(timeout=0.01) is None
        exchange.place_stop_order.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_expired_request_alerts(
        self, mock_settings, exchange, price_feed, delay, bus, published
    ) -> None:
        now = [0.0]
        mailbox = ProtectionMailbox(ttl=120.0, clock=lambda: now[0])
        mock_settings.protection = ProtectionSettings(handoff=True, backoff_ms=[0])
        executor = _executor(mock_settings, exchange, price_feed, delay, mailbox, bus)
        outcome = await executor.run_cycle()

        now[0] += 121
        with pytest.raises(ProtectionFailed):
            await executor.run_pending_protection(timeout=0.01)

        exchange.place_stop_order.assert_not_awaited()
        alerts = [e for e in published if isinstance(e, PositionUnprotected)]
        assert len(alerts) == 1
        assert alerts[0].side is OrderSide.BUY
        assert alerts[0].quantity == Decimal("0.020")
        assert outcome.state is CycleState.FAILED
        assert outcome.error_kind == "protection_failed"

    @pytest.mark.asyncio()
    async def test_expired_request_alerts_at_next_cycle(
        self, mock_settings, exchange, price_feed, delay, bus, published
    ) -> None:
        now = [0.0]
        mailbox = ProtectionMailbox(ttl=120.0, clock=lambda: now[0])
        mock_settings.protection = ProtectionSettings(handoff=True, backoff_ms=[0])
        executor = _executor(mock_settings, exchange, price_feed, delay, mailbox, bus)
        first = await executor.run_cycle()

        now[0] += 121
        second = await executor.run_cycle()

        assert first.state is CycleState.FAILED
        assert len([e for e in published if isinstance(e, PositionUnprotected)]) == 1
        assert second.protection_handed_off is True
        assert exchange.place_market_order.await_count == 2

    @pytest.mark.asyncio()
    async def test_second_cycle_refused_while_request_pending(
        self, handoff_executor, exchange, published
    ) -> None:
        first = await handoff_executor.run_cycle()
        second = await handoff_executor.run_cycle()

        assert second.state is CycleState.FAILED
        assert second.error_kind == "protection_pending"
        exchange.place_market_order.assert_awaited_once()

        order = await handoff_executor.run_pending_protection()

        assert first.state is CycleState.CLOSED
        assert first.protection is order
        exchange.place_stop_order.assert_awaited_once()
        assert not any(isinstance(e, PositionUnprotected) for e in published)

    @pytest.mark.asyncio()
    async def test_crash_in_protection_job_alerts(
        self, handoff_executor, delay, published
    ) -> None:
        outcome = await handoff_executor.run_cycle()
        delay.await_protection_window = AsyncMock(side_effect=RuntimeError("clock exploded"))

        with pytest.raises(ProtectionFailed):
            await handoff_executor.run_pending_protection()

        assert any(isinstance(e, PositionUnprotected) for e in published)
        assert outcome.state is CycleState.FAILED
        assert outcome.error_kind == "protection_failed"

    @pytest.mark.asyncio()
    async def test_protection_job_exhausts_retries(
        self, handoff_executor, exchange, published
    ) -> None:
        outcome = await handoff_executor.run_cycle()
        exchange.place_stop_order = AsyncMock(side_effect=ExchangeApiError("-1001"))

        with patch("sniper.execution.executor.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ProtectionFailed):
                await handoff_executor.run_pending_protection()

        assert exchange.place_stop_order.await_count == 8
        assert outcome.state is CycleState.FAILED
        alerts = [e for e in published if isinstance(e, PositionUnprotected)]
        assert [a.attempts for a in alerts] == [8]
