"""Funding-rate scan for symbol selection, via ccxt async.

Uses the public binanceusdm funding-rate endpoint to find the perpetual
with the largest absolute funding rate beyond a threshold. Only public
endpoints are used, so no credentials are passed to ccxt.
"""

from decimal import Decimal, InvalidOperation

import ccxt.async_support as ccxt_async

from sniper.config import ExchangeSettings
from sniper.logging import get_logger

logger = get_logger(__name__)


class FundingRateScanner:
    """Ranks USD-M perpetuals by absolute funding rate.

    Args:
        settings: Exchange settings (testnet detection from base_url).
        exchange: Optional pre-built ccxt exchange (tests inject a mock).
    """

    def __init__(
        self,
        settings: ExchangeSettings,
        exchange: ccxt_async.binanceusdm | None = None,
    ) -> None:
        self._settings = settings
        if exchange is None:
            exchange = ccxt_async.binanceusdm({"enableRateLimit": True})
            if "testnet" in settings.base_url:
                exchange.set_sandbox_mode(True)
        self._exchange = exchange
        self._markets: dict = {}

    @property
    def exchange(self) -> ccxt_async.binanceusdm:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def connect(self) -> None:
        """Load markets once so symbol ids can be resolved."""
        logger.info("connecting_funding_scanner")
        self._markets = await self._exchange.load_markets()
        logger.info("funding_scanner_connected", market_count=len(self._markets))

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        await self._exchange.close()
        logger.info("funding_scanner_closed")

    async def fetch_rates(self) -> dict[str, Decimal]:
        """Return {exchange_symbol_id: funding_rate} for all perpetuals."""
        raw_rates = await self._exchange.fetch_funding_rates()
        rates: dict[str, Decimal] = {}
        for unified, entry in raw_rates.items():
            info = entry.get("info") or {}
            symbol_id = info.get("symbol") or unified
            raw_rate = entry.get("fundingRate")
            if raw_rate is None:
                continue
            try:
                rates[symbol_id] = Decimal(str(raw_rate))
            except InvalidOperation:
                logger.warning("invalid_funding_rate", symbol=symbol_id, raw=raw_rate)
        logger.debug("funding_rates_fetched", count=len(rates))
        return rates

    async def select_symbol(self, threshold: Decimal) -> str | None:
        """Pick the symbol with the largest |rate| at or beyond threshold.

        Args:
            threshold: Minimum absolute funding rate (e.g. Decimal("0.006") for 0.6%).

        Returns:
            Exchange symbol id, or None when no rate qualifies.
        """
        rates = await self.fetch_rates()
        candidates = {s: r for s, r in rates.items() if abs(r) >= threshold}
        if not candidates:
            logger.info("no_funding_candidates", threshold=str(threshold), scanned=len(rates))
            return None

        symbol = max(candidates, key=lambda s: abs(candidates[s]))
        logger.info(
            "funding_candidate_selected",
            symbol=symbol,
            rate=str(candidates[symbol]),
            candidates=len(candidates),
        )
        return symbol
