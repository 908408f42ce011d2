"""
Veto gates applied to a candidate signal, in fixed order:
trend (EMA), band position (Bollinger), volume ratio, UTC blackout hours.
A disabled gate always admits. A gate whose inputs are missing admits.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, FrozenSet, List, Optional, Sequence, Tuple

from futures_bot.core.types import Candle, IndicatorSnapshot, Signal, SignalAction

logger = logging.getLogger("futures_bot.strategies.filters")


@dataclass(frozen=True)
class FilterVerdict:
    admitted: bool
    gate: str = ""
    reason: str = ""


_ADMIT = FilterVerdict(True)

Gate = Callable[[Signal, IndicatorSnapshot, datetime], Optional[str]]


class FilterChain:
    """Short-circuits on the first veto."""

    GATES = ("trend", "band", "volume", "time")

    def __init__(
        self,
        enable_trend_filter: bool = True,
        enable_band_filter: bool = True,
        enable_volume_filter: bool = True,
        enable_time_filter: bool = True,
        blackout_hours: FrozenSet[int] = frozenset({12, 14, 16, 20}),
        band_long_max: float = 0.8,
        band_short_min: float = 0.2,
        min_volume_ratio: float = 1.2,
        clock: Callable[[], datetime] = None,
    ):
        self.blackout_hours = frozenset(blackout_hours)
        self.band_long_max = band_long_max
        self.band_short_min = band_short_min
        self.min_volume_ratio = min_volume_ratio
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        enabled = {
            "trend": enable_trend_filter,
            "band": enable_band_filter,
            "volume": enable_volume_filter,
            "time": enable_time_filter,
        }
        impl = {
            "trend": self._trend,
            "band": self._band,
            "volume": self._volume,
            "time": self._time,
        }
        self._gates: List[Tuple[str, Gate]] = [(name, impl[name]) for name in self.GATES if enabled[name]]

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], datetime] = None) -> "FilterChain":
        return cls(
            enable_trend_filter=settings.enable_trend_filter,
            enable_band_filter=settings.enable_band_filter,
            enable_volume_filter=settings.enable_volume_filter,
            enable_time_filter=settings.enable_time_filter,
            blackout_hours=settings.blackout_hours,
            band_long_max=settings.band_long_max,
            band_short_min=settings.band_short_min,
            min_volume_ratio=settings.min_volume_ratio,
            clock=clock,
        )

    @property
    def active_gates(self) -> Sequence[str]:
        return [name for name, _ in self._gates]

    def evaluate(
        self,
        signal: Signal,
        indicators: IndicatorSnapshot,
        recent_candles: Sequence[Candle] = (),
        now: Optional[datetime] = None,
    ) -> FilterVerdict:
        """Run the gates; return the first veto or an admit verdict."""
        if signal.action is SignalAction.WAIT:
            return FilterVerdict(False, "signal", "WAIT is never admitted")
        now = now or self._clock()
        for name, gate in self._gates:
            reason = gate(signal, indicators, now)
            if reason:
                logger.info("%s filter rejected %s %s: %s", name, indicators.symbol, signal.action.value, reason)
                return FilterVerdict(False, name, reason)
        return _ADMIT

    def admit(
        self,
        signal: Signal,
        indicators: IndicatorSnapshot,
        recent_candles: Sequence[Candle] = (),
        now: Optional[datetime] = None,
    ) -> bool:
        return self.evaluate(signal, indicators, recent_candles, now).admitted

    def _trend(self, signal: Signal, ind: IndicatorSnapshot, now: datetime) -> Optional[str]:
        if ind.ema_fast is None or ind.ema_slow is None:
            logger.debug("trend filter skipped: EMAs not available")
            return None
        if signal.action is SignalAction.LONG and ind.ema_fast <= ind.ema_slow:
            return f"EMA fast {ind.ema_fast:.4f} <= slow {ind.ema_slow:.4f}"
        if signal.action is SignalAction.SHORT and ind.ema_fast >= ind.ema_slow:
            return f"EMA fast {ind.ema_fast:.4f} >= slow {ind.ema_slow:.4f}"
        return None

    def _band(self, signal: Signal, ind: IndicatorSnapshot, now: datetime) -> Optional[str]:
        pos = ind.bb_position()
        if pos is None:
            logger.debug("band filter skipped: bands not available")
            return None
        if signal.action is SignalAction.LONG and pos > self.band_long_max:
            return f"price too high in band ({pos:.2f} > {self.band_long_max})"
        if signal.action is SignalAction.SHORT and pos < self.band_short_min:
            return f"price too low in band ({pos:.2f} < {self.band_short_min})"
        return None

    def _volume(self, signal: Signal, ind: IndicatorSnapshot, now: datetime) -> Optional[str]:
        if ind.volume_ratio is None:
            logger.debug("volume filter skipped: volume ratio not available")
            return None
        if ind.volume_ratio < self.min_volume_ratio:
            return f"low volume (ratio {ind.volume_ratio:.2f} < {self.min_volume_ratio})"
        return None

    def _time(self, signal: Signal, ind: IndicatorSnapshot, now: datetime) -> Optional[str]:
        hour = now.astimezone(timezone.utc).hour if now.tzinfo else now.hour
        if hour in self.blackout_hours:
            return f"blackout hour {hour:02d} UTC"
        return None
