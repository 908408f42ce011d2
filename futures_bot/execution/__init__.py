"""Execution: exchange gateway, Binance Futures implementation and position lifecycle."""

from futures_bot.execution.base import ExchangeGateway, ExchangePosition, OrderAck, OrderSpec
from futures_bot.execution.binance_futures import BinanceFuturesGateway
from futures_bot.execution.positions import PositionManager, bracket_prices, entry_quantity

__all__ = [
    "ExchangeGateway",
    "ExchangePosition",
    "OrderAck",
    "OrderSpec",
    "BinanceFuturesGateway",
    "PositionManager",
    "bracket_prices",
    "entry_quantity",
]
