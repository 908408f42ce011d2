"""Live: signal-check scheduler and the trading engine."""

from futures_bot.live.scheduler import Scheduler
from futures_bot.live.engine import EngineStatus, TradingEngine

__all__ = ["Scheduler", "EngineStatus", "TradingEngine"]
