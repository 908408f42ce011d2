"""Abstract strategy: indicators + candle shape -> signal."""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Optional

from futures_bot.core.types import Candle, IndicatorSnapshot, Signal


class BaseStrategy(ABC):
    """Strategy maps the latest indicator snapshot and last closed candle to a Signal."""

    @abstractmethod
    def evaluate(self, indicators: Optional[IndicatorSnapshot], last_candle: Optional[Candle]) -> Signal:
        """
        Return LONG, SHORT or WAIT. Must be deterministic and free of side
        effects; missing inputs yield WAIT.
        """
        pass
