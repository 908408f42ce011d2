"""
Risk governor: daily profit target and loss budget, UTC day reset.
Limits are percentages of the balance at the start of the day.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Callable, Optional

from futures_bot.core.errors import ConfigurationError, RiskLimitBreach
from futures_bot.core.types import DailyStats

logger = logging.getLogger("futures_bot.risk")


@dataclass(frozen=True)
class RiskCheck:
    """
    proceed: new entries allowed this cycle.
    halt: a breach was detected for the first time; the caller must halt and flatten.
    """
    proceed: bool
    breach: Optional[RiskLimitBreach] = None
    halt: bool = False
    reason: str = ""


class RiskGovernor:
    """
    Owns DailyStats. PnL only moves through record_close(). A breach is
    latched: it requests a halt once and blocks entries until clear_breach().
    """

    def __init__(
        self,
        daily_target_percent: float,
        daily_max_loss_percent: float,
        clock: Callable[[], datetime] = None,
    ):
        self.daily_target_percent = daily_target_percent
        self.daily_max_loss_percent = daily_max_loss_percent
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stats: Optional[DailyStats] = None
        self._breach: Optional[RiskLimitBreach] = None

    @property
    def stats(self) -> Optional[DailyStats]:
        return self._stats

    @property
    def breach(self) -> Optional[RiskLimitBreach]:
        return self._breach

    def today(self) -> date:
        return self._clock().astimezone(timezone.utc).date()

    def configure(self, daily_target_percent: float, daily_max_loss_percent: float) -> None:
        """New percentages; they apply from the next reset."""
        self.daily_target_percent = daily_target_percent
        self.daily_max_loss_percent = daily_max_loss_percent

    def needs_reset(self, today: Optional[date] = None) -> bool:
        today = today or self.today()
        return self._stats is None or self._stats.date != today

    def reset(self, balance: float, today: Optional[date] = None) -> Optional[DailyStats]:
        """
        Start a new day from `balance`. Returns the finished day's stats
        (None on first start).
        """
        if balance <= 0:
            raise ConfigurationError(f"account balance must be positive to derive daily limits, got {balance}")
        today = today or self.today()
        previous = self._stats
        self._stats = DailyStats(
            date=today,
            start_balance=balance,
            target_profit=balance * self.daily_target_percent / 100.0,
            max_loss_budget=balance * self.daily_max_loss_percent / 100.0,
        )
        logger.info(
            "Daily stats reset for %s: balance=%.2f target=%.2f max_loss=%.2f",
            today, balance, self._stats.target_profit, self._stats.max_loss_budget,
        )
        return previous

    def record_close(self, pnl: float) -> DailyStats:
        """Account a confirmed position close."""
        if self._stats is None:
            raise RuntimeError("record_close before the first reset")
        s = self._stats
        self._stats = replace(s, pnl=s.pnl + pnl, trades=s.trades + 1, closed_pnls=s.closed_pnls + (pnl,))
        logger.info("Closed trade pnl=%.4f, daily pnl=%.4f over %d trades", pnl, self._stats.pnl, self._stats.trades)
        return self._stats

    def check_limits(self, stats: Optional[DailyStats] = None) -> RiskCheck:
        """Evaluate target/loss limits. Only the first breach sets halt=True."""
        if self._breach is not None:
            return RiskCheck(proceed=False, breach=self._breach, reason="halted by daily limit")
        stats = stats or self._stats
        if stats is None:
            return RiskCheck(proceed=False, reason="daily stats not initialised")
        if stats.target_profit > 0 and stats.pnl >= stats.target_profit:
            self._breach = RiskLimitBreach.TARGET_REACHED
            reason = f"daily target reached: pnl {stats.pnl:.2f} >= {stats.target_profit:.2f}"
        elif stats.max_loss_budget > 0 and stats.pnl <= -stats.max_loss_budget:
            self._breach = RiskLimitBreach.LOSS_LIMIT
            reason = f"daily loss limit hit: pnl {stats.pnl:.2f} <= -{stats.max_loss_budget:.2f}"
        else:
            return RiskCheck(proceed=True)
        logger.warning("%s", reason)
        return RiskCheck(proceed=False, breach=self._breach, halt=True, reason=reason)

    def clear_breach(self) -> None:
        """Explicit operator restart."""
        if self._breach is not None:
            logger.info("Clearing daily limit latch (%s)", self._breach.value)
        self._breach = None
