"""Core: config, types, errors, logging."""

from futures_bot.core.config import load_config, Config, Settings
from futures_bot.core.errors import (
    EngineError,
    TransientNetworkError,
    ExchangeRejection,
    GatewayResponseError,
    ConfigurationError,
    PartialBracketFailure,
    RiskLimitBreach,
)
from futures_bot.core.types import (
    Candle,
    Ticker,
    IndicatorSnapshot,
    Signal,
    SignalAction,
    Side,
    Position,
    PositionState,
    ClosedTrade,
    DailyStats,
)
from futures_bot.core.events import EngineEvent, EventKind
from futures_bot.core.logger import setup_logging, current_cycle

__all__ = [
    "load_config",
    "Config",
    "Settings",
    "EngineError",
    "TransientNetworkError",
    "ExchangeRejection",
    "GatewayResponseError",
    "ConfigurationError",
    "PartialBracketFailure",
    "RiskLimitBreach",
    "Candle",
    "Ticker",
    "IndicatorSnapshot",
    "Signal",
    "SignalAction",
    "Side",
    "Position",
    "PositionState",
    "ClosedTrade",
    "DailyStats",
    "EngineEvent",
    "EventKind",
    "setup_logging",
    "current_cycle",
]
