"""Entry point for the timed-entry funding sniper.

Wires all components together, optionally embeds the FastAPI control API,
and starts the daily scheduler. When the API is enabled (default), the
scheduler and the API share a single asyncio event loop via uvicorn's
programmatic API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown and SIGUSR1 to force-close
the armed position.

Component wiring order (in _build_components):
1. BinanceFuturesClient (signed REST)
2. EventBus, FundingState, ProtectionMailbox
3. PriceFeed, AccountStream (optional), FundingRateScanner (optional)
4. DelayCoordinator, SizingCalculator, SymbolSelection
5. OrderExecutor
6. ForceCloseListener
7. CycleScheduler
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from sniper.config import AppSettings
from sniper.events.bus import EventBus
from sniper.events.funding_state import FundingState
from sniper.exchange.binance_client import BinanceFuturesClient
from sniper.execution.executor import OrderExecutor
from sniper.execution.force_close import ForceCloseListener
from sniper.execution.mailbox import ProtectionMailbox
from sniper.logging import get_logger, setup_logging
from sniper.market_data.account_stream import AccountStream
from sniper.market_data.funding_scanner import FundingRateScanner
from sniper.market_data.price_feed import PriceFeed
from sniper.position.sizing import SizingCalculator
from sniper.scheduler import CycleScheduler
from sniper.selection import SymbolSelection
from sniper.timing.delay import DelayCoordinator


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all components from settings.

    Does not open any connection; streams and the scheduler are started by
    _start_components().

    Returns:
        Dict mapping component names to instances.
    """
    logger = get_logger("sniper.main")

    exchange_client = BinanceFuturesClient(settings.exchange)
    if not settings.exchange.api_key.get_secret_value():
        logger.warning(
            "no_api_keys_configured",
            note="Public endpoints will work. Balance, leverage and orders will fail.",
        )

    bus = EventBus()
    funding_state = FundingState(bus)
    mailbox: ProtectionMailbox = ProtectionMailbox(ttl=settings.protection.mailbox_ttl)

    price_feed = PriceFeed(
        settings.exchange.ws_url,
        settings.stream,
        settings.trading.balance_buffer_ratio,
    )
    account_stream = None
    if settings.stream.account_stream_enabled:
        account_stream = AccountStream(
            exchange_client, funding_state, settings.exchange.ws_url, settings.stream
        )

    scanner = None
    if settings.trading.select_by_funding:
        scanner = FundingRateScanner(settings.exchange)

    selection = SymbolSelection(
        configured_symbol=settings.trading.symbol,
        scanner=scanner,
        select_by_funding=settings.trading.select_by_funding,
        funding_threshold=settings.trading.funding_threshold,
    )

    executor = OrderExecutor(
        settings=settings,
        exchange=exchange_client,
        price_feed=price_feed,
        delay=DelayCoordinator(settings.timing),
        sizing=SizingCalculator(settings.protection),
        mailbox=mailbox,
        bus=bus,
        selection=selection,
    )

    force_close = ForceCloseListener(bus, exchange_client, enabled=settings.trading.force_close_enabled)
    force_close.register()

    if settings.protection.handoff and not any(
        job.handler == "protection" for job in settings.scheduler.jobs
    ):
        logger.warning(
            "handoff_without_protection_job",
            note="Handed-off protective orders are only placed by a 'protection' job.",
        )

    scheduler = CycleScheduler(
        jobs=settings.scheduler.jobs,
        handlers={
            "cycle": executor.run_cycle,
            "protection": executor.run_pending_protection,
        },
        default_timezone=settings.timing.timezone,
    )

    return {
        "exchange_client": exchange_client,
        "bus": bus,
        "funding_state": funding_state,
        "mailbox": mailbox,
        "price_feed": price_feed,
        "account_stream": account_stream,
        "scanner": scanner,
        "selection": selection,
        "executor": executor,
        "force_close": force_close,
        "scheduler": scheduler,
    }


async def _start_components(settings: AppSettings, components: dict[str, Any]) -> None:
    logger = get_logger("sniper.main")
    if components["scanner"] is not None:
        await components["scanner"].connect()
    if components["account_stream"] is not None:
        await components["account_stream"].start()
    if settings.scheduler.enabled:
        components["scheduler"].start()
    else:
        logger.info("scheduler_disabled")


async def _stop_components(components: dict[str, Any]) -> None:
    logger = get_logger("sniper.main")
    await components["scheduler"].stop()
    if components["account_stream"] is not None:
        await components["account_stream"].stop()
    await components["price_feed"].stop()
    if components["scanner"] is not None:
        await components["scanner"].close()
    components["force_close"].unregister()
    await components["exchange_client"].close()
    logger.info("funding_sniper_stopped")


def _setup_signal_handlers(stop_event: asyncio.Event | None, force_close: ForceCloseListener) -> None:
    """Register OS signal handlers.

    SIGINT/SIGTERM set stop_event (omitted when uvicorn owns shutdown).
    SIGUSR1 force-closes the armed position.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("sniper.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    def _close_handler() -> None:
        logger.warning("force_close_signal_received")
        asyncio.create_task(force_close.request_close(reason="signal_SIGUSR1"))

    if stop_event is not None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _graceful_handler)

    loop.add_signal_handler(signal.SIGUSR1, _close_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start streams and the scheduler with the API; stop them on shutdown."""
    logger = get_logger("sniper.main")
    settings = app.state.settings
    components = app.state.components

    # Route handlers read these from app.state
    app.state.executor = components["executor"]
    app.state.selection = components["selection"]
    app.state.force_close = components["force_close"]
    app.state.scheduler = components["scheduler"]

    _setup_signal_handlers(None, components["force_close"])
    await _start_components(settings, components)
    logger.info("lifespan_started", jobs=len(settings.scheduler.jobs))

    yield

    cycle_task = app.state.cycle_task
    if cycle_task is not None and not cycle_task.done():
        cycle_task.cancel()
        try:
            await cycle_task
        except asyncio.CancelledError:
            pass

    await _stop_components(components)


async def run() -> None:
    """Run the sniper with or without the control API (API_ENABLED)."""
    settings = AppSettings()
    setup_logging(settings.log_level)
    logger = get_logger("sniper.main")

    components = _build_components(settings)

    if settings.api.enabled:
        from sniper.api.app import create_control_app

        app = create_control_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info("starting_with_api", host=settings.api.host, port=settings.api.port)

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
        return

    stop_event = asyncio.Event()
    _setup_signal_handlers(stop_event, components["force_close"])
    logger.info(
        "starting_without_api",
        symbol=settings.trading.symbol or None,
        entry_side=settings.trading.entry_side,
        leverage=settings.trading.leverage,
    )
    try:
        await _start_components(settings, components)
        await stop_event.wait()
    finally:
        await _stop_components(components)


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
