"""Position size and protective price calculation.

All calculations use Decimal arithmetic exclusively -- no float conversions.

Sizing flow:
1. effective_balance = available_balance * balance_buffer_ratio
2. raw_qty = effective_balance * leverage / reference_price
3. Round down to the instrument's step_size (never negative)

Protective prices are rounded to tick_size AWAY from the entry price, so a
rounded price is never closer to the entry than the configured percentage.
"""

from decimal import Decimal

from sniper.config import ProtectionSettings
from sniper.exchange.types import round_to_step, round_to_tick
from sniper.models import OrderSide, ProtectivePrice, SizingInput


def calculate_quantity(sizing: SizingInput) -> Decimal:
    """Return the largest tradeable quantity for the given balance and leverage.

    Steps:
    1. effective = available_balance * balance_buffer_ratio
    2. raw = effective * leverage / reference_price
    3. floor(raw / step_size) * step_size, at step_size precision

    Args:
        sizing: Balance, leverage, price and exchange step size.

    Returns:
        Non-negative quantity that is a multiple of step_size. Zero when the
        reference price is not positive.
    """
    if sizing.reference_price <= 0:
        return round_to_step(Decimal("0"), sizing.step_size)

    effective_balance = sizing.available_balance * sizing.balance_buffer_ratio
    raw_qty = effective_balance * sizing.leverage / sizing.reference_price
    return round_to_step(raw_qty, sizing.step_size)


class SizingCalculator:
    """Calculates entry quantities and protective stop/limit prices.

    Args:
        settings: Protection settings holding stop and limit percentages.
    """

    def __init__(self, settings: ProtectionSettings) -> None:
        self._settings = settings

    def quantity(
        self,
        available_balance: Decimal,
        leverage: int,
        reference_price: Decimal,
        step_size: Decimal,
        balance_buffer_ratio: Decimal,
    ) -> Decimal:
        """Convenience wrapper around calculate_quantity()."""
        return calculate_quantity(
            SizingInput(
                available_balance=available_balance,
                leverage=leverage,
                reference_price=reference_price,
                step_size=step_size,
                balance_buffer_ratio=balance_buffer_ratio,
            )
        )

    def protective_prices(
        self, entry_price: Decimal, entry_side: OrderSide, tick_size: Decimal
    ) -> ProtectivePrice:
        """Compute stop and limit prices protecting a filled entry.

        A BUY entry is protected by a SELL stop below the entry, floored to
        tick_size; a SELL entry by a BUY stop above it, ceiled. The limit
        price sits further out (limit_loss_percent) to bound slippage.

        Args:
            entry_price: Average fill price of the entry order.
            entry_side: Side of the entry order.
            tick_size: Exchange price increment.

        Returns:
            ProtectivePrice strictly below (BUY) or above (SELL) the entry.
        """
        if entry_price <= 0:
            raise ValueError(f"entry_price must be positive, got {entry_price}")

        stop_pct = self._settings.stop_loss_percent
        limit_pct = self._settings.limit_loss_percent

        if entry_side is OrderSide.BUY:
            stop = round_to_tick(entry_price * (1 - stop_pct), tick_size, up=False)
            limit = round_to_tick(entry_price * (1 - limit_pct), tick_size, up=False)
            if stop >= entry_price:
                stop = round_to_tick(entry_price - tick_size, tick_size, up=False)
            limit = min(limit, stop)
        else:
            stop = round_to_tick(entry_price * (1 + stop_pct), tick_size, up=True)
            limit = round_to_tick(entry_price * (1 + limit_pct), tick_size, up=True)
            if stop <= entry_price:
                stop = round_to_tick(entry_price + tick_size, tick_size, up=True)
            limit = max(limit, stop)

        return ProtectivePrice(stop_price=stop, limit_price=limit)
