"""AMM pricing package: curve math and reserve/position models."""

from .curve import PRICE_SCALE, buy_cost, fee_for, marginal_price, sell_proceeds
from .models import (
    MarketPrices,
    PayoutSnapshot,
    Position,
    RedemptionReceipt,
    ShareReserves,
    TradeQuote,
    TradeReceipt,
    TransferReceipt,
)

__all__ = [
    "PRICE_SCALE",
    "MarketPrices",
    "PayoutSnapshot",
    "Position",
    "RedemptionReceipt",
    "ShareReserves",
    "TradeQuote",
    "TradeReceipt",
    "TransferReceipt",
    "buy_cost",
    "fee_for",
    "marginal_price",
    "sell_proceeds",
]
