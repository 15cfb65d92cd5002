"""Which symbol the next cycle trades.

An operator override (set through the control API) wins over the
configured symbol, which wins over a funding-rate scan when enabled.
The selection is an explicit object handed to whoever needs it.
"""

from decimal import Decimal

import ccxt

from sniper.exceptions import NoSymbolSelected
from sniper.logging import get_logger
from sniper.market_data.funding_scanner import FundingRateScanner

logger = get_logger(__name__)


class SymbolSelection:
    """Resolves the trading symbol for a cycle.

    Args:
        configured_symbol: Symbol from settings ("" when unset).
        scanner: Funding-rate scanner used when select_by_funding is on.
        select_by_funding: Fall back to the funding scan when nothing else is set.
        funding_threshold: Minimum absolute funding rate for the scan.
    """

    def __init__(
        self,
        configured_symbol: str = "",
        scanner: FundingRateScanner | None = None,
        select_by_funding: bool = False,
        funding_threshold: Decimal = Decimal("0.006"),
    ) -> None:
        self._configured = configured_symbol.upper()
        self._scanner = scanner
        self._select_by_funding = select_by_funding
        self._threshold = funding_threshold
        self._override: str | None = None

    @property
    def override(self) -> str | None:
        return self._override

    @property
    def configured(self) -> str:
        return self._configured

    def set_override(self, symbol: str) -> str:
        """Force the next cycles to trade symbol."""
        self._override = symbol.strip().upper()
        logger.info("symbol_override_set", symbol=self._override)
        return self._override

    def clear_override(self) -> None:
        self._override = None
        logger.info("symbol_override_cleared")

    async def resolve(self) -> str:
        """Return the symbol for the next cycle.

        Raises:
            NoSymbolSelected: Nothing configured, the scan found no candidate,
                or the scan itself failed (chained to the ccxt error).
        """
        if self._override:
            return self._override
        if self._configured:
            return self._configured
        if self._select_by_funding and self._scanner is not None:
            try:
                symbol = await self._scanner.select_symbol(self._threshold)
            except ccxt.BaseError as exc:
                logger.error("funding_scan_failed", error=str(exc))
                raise NoSymbolSelected(f"funding scan failed: {type(exc).__name__}") from exc
            if symbol:
                return symbol
        raise NoSymbolSelected("no symbol override, configured symbol or funding candidate")
