"""
RSI extreme + candle colour entry rule.
Long: RSI below the long threshold on a green candle.
Short: RSI above the short threshold on a red candle.
"""

from __future__ import annotations
from typing import Optional

from futures_bot.core.types import Candle, IndicatorSnapshot, Signal, SignalAction
from futures_bot.strategies.base import BaseStrategy


def _clamp(x: float) -> float:
    return max(0.0, min(1.0, x))


class RsiCandleStrategy(BaseStrategy):
    """
    Confidence grows with the distance past the threshold:
    LONG  = (long_threshold - rsi) / long_threshold
    SHORT = (rsi - short_threshold) / (100 - short_threshold)
    """

    def __init__(self, rsi_long_threshold: float = 30.0, rsi_short_threshold: float = 70.0):
        self.rsi_long_threshold = rsi_long_threshold
        self.rsi_short_threshold = rsi_short_threshold

    @classmethod
    def from_settings(cls, settings) -> "RsiCandleStrategy":
        return cls(settings.rsi_long_threshold, settings.rsi_short_threshold)

    def evaluate(self, indicators: Optional[IndicatorSnapshot], last_candle: Optional[Candle]) -> Signal:
        if indicators is None or indicators.rsi is None or last_candle is None:
            return Signal(SignalAction.WAIT, "insufficient data")
        rsi = indicators.rsi
        green, red = last_candle.is_green, last_candle.is_red
        if rsi < self.rsi_long_threshold and green:
            return Signal(
                SignalAction.LONG,
                f"RSI oversold ({rsi:.2f}) + green candle",
                _clamp((self.rsi_long_threshold - rsi) / self.rsi_long_threshold),
            )
        if rsi > self.rsi_short_threshold and red:
            return Signal(
                SignalAction.SHORT,
                f"RSI overbought ({rsi:.2f}) + red candle",
                _clamp((rsi - self.rsi_short_threshold) / (100 - self.rsi_short_threshold)),
            )
        return Signal(SignalAction.WAIT, f"no signal: RSI={rsi:.2f}, green={green}, red={red}")
