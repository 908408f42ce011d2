"""
Indicator snapshot per symbol, recomputed from finalized candles only.
"""

from __future__ import annotations
import logging
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from futures_bot.core.types import Candle, IndicatorSnapshot
from futures_bot.market.cache import MarketDataCache

logger = logging.getLogger("futures_bot.market.indicators")


def candles_to_frame(candles: List[Candle]) -> pd.DataFrame:
    """OHLCV DataFrame with columns: close_time, open, high, low, close, volume."""
    return pd.DataFrame(
        {
            "close_time": [c.close_time for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        }
    )


def wilder_rsi(closes: np.ndarray, period: int) -> Optional[float]:
    """Latest RSI using Wilder smoothing seeded with the simple mean of the first `period` moves."""
    if len(closes) < period + 1:
        return None
    delta = np.diff(closes)
    gains = np.clip(delta, 0, None)
    losses = np.clip(-delta, 0, None)
    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for g, l in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + g) / period
        avg_loss = (avg_loss * (period - 1) + l) / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return float(100 - (100 / (1 + rs)))


def _last(series: pd.Series) -> Optional[float]:
    value = series.iloc[-1]
    return None if pd.isna(value) else float(value)


class IndicatorEngine:
    """
    Computes IndicatorSnapshot from a symbol's finalized candles. An indicator
    whose history requirement is not met is left as None. Snapshots are
    replaced whole, never mutated.
    """

    def __init__(
        self,
        cache: MarketDataCache,
        rsi_period: int = 14,
        ema_fast: int = 20,
        ema_slow: int = 50,
        sma_fast: int = 20,
        sma_slow: int = 50,
        macd_fast: int = 12,
        macd_slow: int = 26,
        macd_signal: int = 9,
        bb_period: int = 20,
        bb_std: float = 2.0,
        stoch_k: int = 14,
        stoch_d: int = 3,
        volume_ma_len: int = 20,
        atr_len: int = 14,
    ):
        self.cache = cache
        self.rsi_period = rsi_period
        self.ema_fast = ema_fast
        self.ema_slow = ema_slow
        self.sma_fast = sma_fast
        self.sma_slow = sma_slow
        self.macd_fast = macd_fast
        self.macd_slow = macd_slow
        self.macd_signal = macd_signal
        self.bb_period = bb_period
        self.bb_std = bb_std
        self.stoch_k = stoch_k
        self.stoch_d = stoch_d
        self.volume_ma_len = volume_ma_len
        self.atr_len = atr_len
        self._snapshots: Dict[str, IndicatorSnapshot] = {}

    @classmethod
    def from_settings(cls, cache: MarketDataCache, settings) -> "IndicatorEngine":
        return cls(
            cache,
            rsi_period=settings.rsi_period,
            ema_fast=settings.ema_fast,
            ema_slow=settings.ema_slow,
            sma_fast=settings.sma_fast,
            sma_slow=settings.sma_slow,
            macd_fast=settings.macd_fast,
            macd_slow=settings.macd_slow,
            macd_signal=settings.macd_signal,
            bb_period=settings.bb_period,
            bb_std=settings.bb_std,
            stoch_k=settings.stoch_k,
            stoch_d=settings.stoch_d,
            volume_ma_len=settings.volume_ma_len,
            atr_len=settings.atr_len,
        )

    def get(self, symbol: str) -> Optional[IndicatorSnapshot]:
        return self._snapshots.get(symbol)

    def update(self, symbol: str) -> Optional[IndicatorSnapshot]:
        """Recompute and store the snapshot for symbol. None if no finalized candles yet."""
        candles = self.cache.series(symbol).final_candles()
        if not candles:
            return None
        snapshot = self.compute(symbol, candles)
        self._snapshots[symbol] = snapshot
        logger.debug("Indicators %s @ %d: rsi=%s ema=%s/%s vol_ratio=%s", symbol, snapshot.timestamp,
                     snapshot.rsi, snapshot.ema_fast, snapshot.ema_slow, snapshot.volume_ratio)
        return snapshot

    def compute(self, symbol: str, candles: List[Candle]) -> IndicatorSnapshot:
        """Pure computation over the given finalized candles."""
        df = candles_to_frame(candles)
        n = len(df)
        close = df["close"]
        values: Dict[str, Optional[float]] = {}

        values["rsi"] = wilder_rsi(close.to_numpy(dtype=float), self.rsi_period)

        if n >= self.ema_fast:
            values["ema_fast"] = _last(close.ewm(span=self.ema_fast, adjust=False).mean())
        if n >= self.ema_slow:
            values["ema_slow"] = _last(close.ewm(span=self.ema_slow, adjust=False).mean())
        if n >= self.sma_fast:
            values["sma_fast"] = _last(close.rolling(self.sma_fast).mean())
        if n >= self.sma_slow:
            values["sma_slow"] = _last(close.rolling(self.sma_slow).mean())

        if n >= self.macd_slow + self.macd_signal:
            macd = close.ewm(span=self.macd_fast, adjust=False).mean() - close.ewm(span=self.macd_slow, adjust=False).mean()
            signal = macd.ewm(span=self.macd_signal, adjust=False).mean()
            values["macd"] = _last(macd)
            values["macd_signal"] = _last(signal)
            values["macd_histogram"] = _last(macd - signal)

        if n >= self.bb_period:
            mid = close.rolling(self.bb_period).mean()
            std = close.rolling(self.bb_period).std(ddof=0)
            values["bb_mid"] = _last(mid)
            values["bb_upper"] = _last(mid + self.bb_std * std)
            values["bb_lower"] = _last(mid - self.bb_std * std)

        if n >= self.stoch_k + self.stoch_d - 1:
            lowest = df["low"].rolling(self.stoch_k).min()
            highest = df["high"].rolling(self.stoch_k).max()
            k = 100 * (close - lowest) / (highest - lowest).replace(0, np.nan)
            values["stoch_k"] = _last(k)
            values["stoch_d"] = _last(k.rolling(self.stoch_d).mean())

        if n >= self.atr_len + 1:
            high_low = df["high"] - df["low"]
            high_close = (df["high"] - close.shift()).abs()
            low_close = (df["low"] - close.shift()).abs()
            tr = pd.concat([high_low, high_close, low_close], axis=1).max(axis=1)
            values["atr"] = _last(tr.rolling(self.atr_len).mean())

        if n >= self.volume_ma_len:
            avg_volume = df["volume"].iloc[-self.volume_ma_len:].mean()
            if avg_volume > 0:
                values["volume_ratio"] = float(df["volume"].iloc[-1] / avg_volume)

        last = candles[-1]
        return IndicatorSnapshot(symbol=symbol, timestamp=last.close_time, price=last.close, **values)
