"""
Core data types: candles, indicator snapshots, signals, positions, daily stats.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def entry_order_side(self) -> str:
        return "BUY" if self is Side.LONG else "SELL"

    @property
    def exit_order_side(self) -> str:
        return "SELL" if self is Side.LONG else "BUY"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1


class SignalAction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    WAIT = "WAIT"

    @property
    def side(self) -> Optional[Side]:
        if self is SignalAction.WAIT:
            return None
        return Side(self.value)


class PositionState(str, Enum):
    FLAT = "FLAT"
    ENTERING = "ENTERING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    HALTED = "HALTED"


@dataclass(frozen=True)
class Candle:
    """OHLCV kline. Times are epoch milliseconds."""
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int
    is_final: bool

    @property
    def is_green(self) -> bool:
        return self.close > self.open

    @property
    def is_red(self) -> bool:
        return self.close < self.open


@dataclass(frozen=True)
class Ticker:
    """Latest 24h ticker for a symbol."""
    symbol: str
    price: float
    high: float
    low: float
    volume: float
    timestamp: int


@dataclass(frozen=True)
class IndicatorSnapshot:
    """
    Indicator values computed from finalized candles. Fields whose history
    requirement was not met are None.
    """
    symbol: str
    timestamp: int
    price: float
    rsi: Optional[float] = None
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    sma_fast: Optional[float] = None
    sma_slow: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None
    bb_upper: Optional[float] = None
    bb_mid: Optional[float] = None
    bb_lower: Optional[float] = None
    stoch_k: Optional[float] = None
    stoch_d: Optional[float] = None
    atr: Optional[float] = None
    volume_ratio: Optional[float] = None

    def bb_position(self) -> Optional[float]:
        """Where price sits inside the Bollinger band: 0 at lower, 1 at upper."""
        if self.bb_upper is None or self.bb_lower is None:
            return None
        width = self.bb_upper - self.bb_lower
        if width <= 0:
            return None
        return (self.price - self.bb_lower) / width


@dataclass(frozen=True)
class Signal:
    """Directional entry signal with confidence in [0, 1]."""
    action: SignalAction
    reason: str = ""
    confidence: float = 0.0


@dataclass(frozen=True)
class Position:
    """
    Open position owned by the position manager. Bracket order ids are
    either both set or both None.
    """
    symbol: str
    side: Side
    entry_price: float
    quantity: float
    tp_price: float
    sl_price: float
    opened_at: datetime
    tp_order_id: Optional[str] = None
    sl_order_id: Optional[str] = None

    @property
    def protected(self) -> bool:
        return self.tp_order_id is not None and self.sl_order_id is not None

    def realized_pnl(self, exit_price: float) -> float:
        return (exit_price - self.entry_price) * self.quantity * self.side.sign


@dataclass(frozen=True)
class ClosedTrade:
    """Position close recorded for the day."""
    symbol: str
    side: Side
    quantity: float
    entry_price: float
    exit_price: float
    pnl: float
    exit_reason: str  # "take_profit" | "stop_loss" | "manual" | "halt" | "external"
    opened_at: datetime
    closed_at: datetime


@dataclass(frozen=True)
class DailyStats:
    """Per-UTC-day PnL bookkeeping owned by the risk governor."""
    date: date
    start_balance: float
    target_profit: float
    max_loss_budget: float
    pnl: float = 0.0
    trades: int = 0
    closed_pnls: tuple = field(default_factory=tuple)
