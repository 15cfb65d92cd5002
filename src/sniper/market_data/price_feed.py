"""Streaming best-bid/best-ask cache with a continuously derived order size.

Subscribes to the exchange's bookTicker channel for one symbol. Every
message replaces the cached Quote and recomputes the maximum order quantity
from the ASK price (conservative for a buy-side entry), so reading the size
right before order submission is a plain dictionary lookup.

The stream's reader task is the only writer to the cache. Readers (the
executor's sizing step, the API) never mutate it. Connection drops are
logged and retried with doubling backoff until stop() is called.
"""

import asyncio
import json
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any

import websockets

from sniper.config import StreamSettings
from sniper.exceptions import FeedNotReady, StaleQuote
from sniper.logging import get_logger
from sniper.models import Quote, SizingInput
from sniper.position.sizing import calculate_quantity

logger = get_logger(__name__)


class PriceFeed:
    """Top-of-book cache for the traded symbol.

    Args:
        ws_url: Base websocket URL (e.g. "wss://fstream.binance.com/ws").
        settings: Reconnect and ping behaviour.
        balance_buffer_ratio: Safety margin applied to balance when sizing.
        connect: Websocket connect factory (injectable for tests).
        clock: Returns Unix time in seconds, used for quote age.
    """

    def __init__(
        self,
        ws_url: str,
        settings: StreamSettings,
        balance_buffer_ratio: Decimal,
        connect: Callable[..., Any] = websockets.connect,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ws_url = ws_url.rstrip("/")
        self._settings = settings
        self._buffer = balance_buffer_ratio
        self._connect = connect
        self._clock = clock

        self._quotes: dict[str, Quote] = {}
        self._symbol: str | None = None
        self._available_balance = Decimal("0")
        self._leverage = 1
        self._step_size = Decimal("0.001")
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._messages = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def symbol(self) -> str | None:
        return self._symbol

    async def start(
        self,
        symbol: str,
        available_balance: Decimal,
        leverage: int,
        step_size: Decimal,
    ) -> None:
        """Open the bookTicker subscription for symbol in the background.

        A feed that is already running is stopped first, so there is never
        more than one subscription.
        """
        if self._running:
            logger.warning("price_feed_restarting", previous=self._symbol, symbol=symbol)
            await self.stop()

        self._symbol = symbol
        self._available_balance = available_balance
        self._leverage = leverage
        self._step_size = step_size
        self._messages = 0
        self._running = True
        self._task = asyncio.create_task(self._stream_loop(symbol))
        logger.info(
            "price_feed_started",
            symbol=symbol,
            available_balance=str(available_balance),
            leverage=leverage,
            step_size=str(step_size),
        )

    async def stop(self) -> None:
        """Close the subscription and clear cached quotes. Safe to call twice."""
        was_running = self._running
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._quotes.clear()
        if was_running:
            logger.info("price_feed_stopped", symbol=self._symbol, messages=self._messages)

    def stream_url(self, symbol: str) -> str:
        return f"{self._ws_url}/{symbol.lower()}@bookTicker"

    async def _stream_loop(self, symbol: str) -> None:
        """Connect, read until the socket closes, reconnect with backoff."""
        url = self.stream_url(symbol)
        delay = self._settings.reconnect_initial_delay

        while self._running:
            try:
                logger.info("price_feed_connecting", url=url)
                async with self._connect(url, ping_interval=self._settings.ping_interval) as ws:
                    delay = self._settings.reconnect_initial_delay
                    async for raw in ws:
                        self.handle_message(symbol, raw)
                logger.warning("price_feed_closed", symbol=symbol)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("price_feed_error", symbol=symbol, exc_info=True)

            if self._running:
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._settings.reconnect_max_delay)

    def handle_message(self, symbol: str, raw: str | bytes) -> Quote | None:
        """Parse one bookTicker message and replace the cached Quote.

        bookTicker payload: {"s": "BTCUSDT", "b": "43110.1", "a": "43110.2", "E": 1700000000000}
        Combined-stream wrappers ({"stream": ..., "data": {...}}) are unwrapped.
        """
        try:
            payload = json.loads(raw)
            if "data" in payload:
                payload = payload["data"]
            bid = Decimal(str(payload["b"]))
            ask = Decimal(str(payload["a"]))
            observed_at_ms = int(payload.get("E") or payload.get("T") or self._clock() * 1000)
        except (ValueError, KeyError, TypeError, InvalidOperation):
            logger.warning("price_feed_bad_message", symbol=symbol, raw=str(raw)[:200])
            return None

        quantity = calculate_quantity(
            SizingInput(
                available_balance=self._available_balance,
                leverage=self._leverage,
                reference_price=ask,
                step_size=self._step_size,
                balance_buffer_ratio=self._buffer,
            )
        )
        quote = Quote(bid=bid, ask=ask, observed_at_ms=observed_at_ms, derived_quantity=quantity)
        self._quotes[symbol] = quote
        self._messages += 1
        return quote

    def get_quote(self, symbol: str) -> Quote | None:
        """Return the latest Quote for symbol, or None before the first message."""
        return self._quotes.get(symbol)

    def quote_age_ms(self, symbol: str) -> int | None:
        quote = self._quotes.get(symbol)
        if quote is None:
            return None
        return int(self._clock() * 1000) - quote.observed_at_ms

    def get_quantity(self, symbol: str, max_age_ms: int | None = None) -> Decimal:
        """Return the last derived order quantity for symbol.

        Args:
            symbol: Exchange symbol.
            max_age_ms: Reject quotes older than this; None accepts any age.

        Raises:
            FeedNotReady: No message has arrived yet.
            StaleQuote: The cached quote is older than max_age_ms.
        """
        quote = self._quotes.get(symbol)
        if quote is None:
            raise FeedNotReady(f"bookTicker not available yet for {symbol}")
        if max_age_ms is not None:
            age = self.quote_age_ms(symbol)
            if age is not None and age > max_age_ms:
                raise StaleQuote(f"bookTicker for {symbol} is {age} ms old (limit {max_age_ms} ms)")
        return quote.derived_quantity
