"""Market data layer -- book-ticker price feed, account stream, and funding scan."""

from sniper.market_data.account_stream import AccountStream
from sniper.market_data.funding_scanner import FundingRateScanner
from sniper.market_data.price_feed import PriceFeed

__all__ = ["AccountStream", "FundingRateScanner", "PriceFeed"]
