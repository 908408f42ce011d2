"""
Engine error taxonomy. Every failure the engine handles maps onto one of these.
"""

from __future__ import annotations
from enum import Enum
from typing import Optional, Sequence


class EngineError(Exception):
    """Base for all engine errors."""


class TransientNetworkError(EngineError):
    """Rate limit, timeout, dropped connection or exchange 5xx. Retryable."""


class ExchangeRejection(EngineError):
    """Exchange (or local pre-check) refused the request. Not retryable."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        return f"[{self.code}] {base}" if self.code is not None else base


class GatewayResponseError(ExchangeRejection):
    """Exchange payload failed validation at the gateway boundary."""


class ConfigurationError(EngineError, ValueError):
    """Invalid settings. The previous settings stay active."""


class PartialBracketFailure(EngineError):
    """Entry filled but one or both bracket legs could not be placed."""

    def __init__(self, symbol: str, side: str, missing: Sequence[str], cause: Optional[BaseException] = None):
        self.symbol = symbol
        self.side = side
        self.missing = tuple(missing)
        self.cause = cause
        super().__init__(f"{symbol} {side} position unprotected: missing {', '.join(self.missing)} ({cause})")


class RiskLimitBreach(str, Enum):
    """Daily limit that forced the engine to halt."""
    TARGET_REACHED = "target_reached"
    LOSS_LIMIT = "loss_limit"
