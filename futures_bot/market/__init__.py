"""Market data: candle cache and indicator engine."""

from futures_bot.market.cache import MarketDataCache, PriceSeries
from futures_bot.market.indicators import IndicatorEngine, wilder_rsi

__all__ = ["MarketDataCache", "PriceSeries", "IndicatorEngine", "wilder_rsi"]
