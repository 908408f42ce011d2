"""
Per-symbol rolling candle store and latest ticker.
"""

from __future__ import annotations
import logging
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional

from futures_bot.core.types import Candle, Ticker

logger = logging.getLogger("futures_bot.market.cache")


class PriceSeries:
    """
    Bounded candle sequence. Only the last candle may be provisional; a final
    candle is never replaced.
    """

    def __init__(self, cap: int = 200):
        if cap < 1:
            raise ValueError("cap must be positive")
        self._candles: Deque[Candle] = deque(maxlen=cap)

    @property
    def cap(self) -> int:
        return self._candles.maxlen

    def __len__(self) -> int:
        return len(self._candles)

    def apply(self, candle: Candle) -> bool:
        """
        Merge a streamed candle. Returns True when this call finalized a new
        candle (the only case in which indicators must be recomputed).
        """
        last = self._candles[-1] if self._candles else None
        if last is not None:
            if candle.open_time < last.open_time:
                logger.debug("Ignoring stale candle %d (last %d)", candle.open_time, last.open_time)
                return False
            if candle.open_time == last.open_time:
                if last.is_final:
                    return False
                self._candles[-1] = candle
                return candle.is_final
            if not last.is_final:
                # previous interval never received its final update
                logger.warning("Dropping unfinalized candle %d", last.open_time)
                self._candles.pop()
        self._candles.append(candle)
        return candle.is_final

    def extend(self, candles: Iterable[Candle]) -> None:
        for c in candles:
            self.apply(c)

    def final_candles(self) -> List[Candle]:
        candles = list(self._candles)
        if candles and not candles[-1].is_final:
            candles.pop()
        return candles

    def last(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def last_final(self) -> Optional[Candle]:
        for c in reversed(self._candles):
            if c.is_final:
                return c
        return None

    def recent(self, n: int) -> List[Candle]:
        return list(self._candles)[-n:]


class MarketDataCache:
    """Candles and tickers for every streamed symbol."""

    def __init__(self, history_limit: int = 200):
        self.history_limit = history_limit
        self._series: Dict[str, PriceSeries] = {}
        self._tickers: Dict[str, Ticker] = {}

    def series(self, symbol: str) -> PriceSeries:
        s = self._series.get(symbol)
        if s is None:
            s = self._series[symbol] = PriceSeries(self.history_limit)
        return s

    def seed(self, symbol: str, candles: Iterable[Candle]) -> None:
        """Replace a symbol's history (e.g. from REST klines at startup)."""
        s = PriceSeries(self.history_limit)
        s.extend(candles)
        self._series[symbol] = s
        logger.info("Seeded %s with %d candles", symbol, len(s))

    def apply_candle(self, symbol: str, candle: Candle) -> bool:
        return self.series(symbol).apply(candle)

    def update_ticker(self, ticker: Ticker) -> None:
        self._tickers[ticker.symbol] = ticker

    def ticker(self, symbol: str) -> Optional[Ticker]:
        return self._tickers.get(symbol)

    def last_price(self, symbol: str) -> Optional[float]:
        """Latest ticker price, else last candle close."""
        t = self.ticker(symbol)
        if t is not None:
            return t.price
        s = self._series.get(symbol)
        last = s.last() if s is not None else None
        return last.close if last is not None else None
