"""Strategies: signal generation and entry filters."""

from futures_bot.strategies.base import BaseStrategy
from futures_bot.strategies.rsi_candle import RsiCandleStrategy
from futures_bot.strategies.filters import FilterChain, FilterVerdict

__all__ = ["BaseStrategy", "RsiCandleStrategy", "FilterChain", "FilterVerdict"]
