"""Utils: Telegram, timeframes, exchange filters."""

from futures_bot.utils.telegram import send_telegram, TelegramNotifier
from futures_bot.utils.timeframes import timeframe_seconds, timeframe_minutes
from futures_bot.utils.exchange_filters import SymbolFilters, parse_symbol_filters, round_quantity, round_price

__all__ = [
    "send_telegram",
    "TelegramNotifier",
    "timeframe_seconds",
    "timeframe_minutes",
    "SymbolFilters",
    "parse_symbol_filters",
    "round_quantity",
    "round_price",
]
