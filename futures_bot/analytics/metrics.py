"""
Per-day trade metrics: win rate, profit factor, expectancy, ROI.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class DaySummary:
    """Aggregate of one UTC day's closed positions."""
    total_trades: int
    winning_trades: int
    losing_trades: int
    total_pnl: float
    win_rate: float
    profit_factor: float
    expectancy: float
    roi_pct: float

    def format(self, start_balance: float) -> str:
        pf = "inf" if self.profit_factor == float("inf") else f"{self.profit_factor:.2f}"
        return (
            "Daily Summary\n"
            f"Total PnL: ${self.total_pnl:.2f}\n"
            f"Trades: {self.total_trades} (wins {self.winning_trades}, losses {self.losing_trades})\n"
            f"Win rate: {self.win_rate * 100:.1f}%\n"
            f"Profit factor: {pf}\n"
            f"Expectancy: ${self.expectancy:.2f}/trade\n"
            f"Start balance: ${start_balance:.2f}\n"
            f"ROI: {self.roi_pct:.2f}%"
        )


def win_rate(pnls: Sequence[float]) -> float:
    """Fraction of trades with positive PnL."""
    if not pnls:
        return 0.0
    return sum(1 for p in pnls if p > 0) / len(pnls)


def profit_factor(pnls: Sequence[float]) -> float:
    """Gross profit / gross loss; inf when there are wins and no losses."""
    gross_win = sum(p for p in pnls if p > 0)
    gross_loss = -sum(p for p in pnls if p < 0)
    if gross_loss <= 0:
        return float("inf") if gross_win > 0 else 0.0
    return gross_win / gross_loss


def expectancy(pnls: Sequence[float]) -> float:
    """Average PnL per trade."""
    return sum(pnls) / len(pnls) if pnls else 0.0


def summarize_day(pnls: Sequence[float], start_balance: float) -> DaySummary:
    total = sum(pnls)
    return DaySummary(
        total_trades=len(pnls),
        winning_trades=sum(1 for p in pnls if p > 0),
        losing_trades=sum(1 for p in pnls if p < 0),
        total_pnl=total,
        win_rate=win_rate(pnls),
        profit_factor=profit_factor(pnls),
        expectancy=expectancy(pnls),
        roi_pct=(total / start_balance * 100.0) if start_balance > 0 else 0.0,
    )
