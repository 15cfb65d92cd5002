"""Funding-fee tracking fed by the private account-update stream.

Binance delivers funding settlements as ACCOUNT_UPDATE events with reason
"FUNDING_FEE"; each balance entry carries the balance change in "bc".
FundingState records which assets were settled and republishes each
non-zero change on the EventBus as FundingFeeObserved.
"""

from decimal import Decimal, InvalidOperation

from sniper.events.bus import EventBus, FundingFeeObserved
from sniper.logging import get_logger

logger = get_logger(__name__)


class FundingState:
    """Remembers which assets had a funding fee applied.

    Args:
        bus: Event bus receiving FundingFeeObserved notifications.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._resolved: dict[str, Decimal] = {}

    async def on_account_update(self, event: dict) -> int:
        """Handle one ACCOUNT_UPDATE payload.

        Args:
            event: Decoded stream message ({"e": "ACCOUNT_UPDATE", "E": ..., "a": {...}}).

        Returns:
            Number of FundingFeeObserved events published.
        """
        account = event.get("a") or {}
        event_time_ms = int(event.get("E", 0) or 0)
        published = 0

        for balance in account.get("B", []):
            asset = balance.get("a")
            try:
                change = Decimal(str(balance.get("bc", "0")))
            except InvalidOperation:
                logger.warning("invalid_balance_change", asset=asset, raw=balance.get("bc"))
                continue
            if not asset or change == 0:
                continue

            self._resolved[asset] = change
            logger.info("funding_fee_detected", asset=asset, change=str(change))
            await self._bus.publish(
                FundingFeeObserved(asset=asset, change=change, event_time_ms=event_time_ms)
            )
            published += 1

        return published

    def is_resolved(self, asset: str) -> bool:
        """Whether a funding fee has been observed for the asset."""
        return asset in self._resolved

    def last_change(self, asset: str) -> Decimal | None:
        return self._resolved.get(asset)

    def clear(self, asset: str | None = None) -> None:
        """Forget one asset, or all assets when none is given."""
        if asset is None:
            self._resolved.clear()
        else:
            self._resolved.pop(asset, None)
