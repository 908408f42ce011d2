"""Analytics: daily trade metrics."""

from futures_bot.analytics.metrics import (
    DaySummary,
    summarize_day,
    win_rate,
    profit_factor,
    expectancy,
)

__all__ = [
    "DaySummary",
    "summarize_day",
    "win_rate",
    "profit_factor",
    "expectancy",
]
