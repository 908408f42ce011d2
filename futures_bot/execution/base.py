"""Abstract exchange gateway: market data, streams, orders and positions."""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from futures_bot.core.types import Candle, Side, Ticker
from futures_bot.utils.exchange_filters import SymbolFilters

CandleHandler = Callable[[Candle], Awaitable[None]]
TickerHandler = Callable[[Ticker], Awaitable[None]]


@dataclass(frozen=True)
class OrderSpec:
    """Order request. stop_price is required for TAKE_PROFIT_MARKET / STOP_MARKET."""
    symbol: str
    side: str  # "BUY" | "SELL"
    type: str  # "MARKET" | "TAKE_PROFIT_MARKET" | "STOP_MARKET"
    quantity: float
    stop_price: Optional[float] = None
    reduce_only: bool = False
    position_side: Optional[str] = None  # "LONG" | "SHORT" in hedge mode


@dataclass(frozen=True)
class OrderAck:
    """Exchange view of an order."""
    order_id: str
    status: str  # NEW | PARTIALLY_FILLED | FILLED | CANCELED | EXPIRED | REJECTED
    avg_price: float = 0.0
    executed_qty: float = 0.0

    @property
    def filled(self) -> bool:
        return self.status == "FILLED" and self.executed_qty > 0


@dataclass(frozen=True)
class ExchangePosition:
    """Non-zero position as reported by the exchange."""
    symbol: str
    side: Side
    quantity: float
    entry_price: float
    unrealized_pnl: float = 0.0


class ExchangeGateway(ABC):
    """
    Async exchange boundary. Implementations raise TransientNetworkError for
    retryable failures, ExchangeRejection for refusals and
    GatewayResponseError for payloads that fail validation.
    """

    @abstractmethod
    async def get_kline_history(self, symbol: str, interval: str, limit: int = 200) -> List[Candle]:
        """Oldest first. The still-open interval comes back with is_final=False."""
        pass

    @abstractmethod
    async def stream_klines(self, symbol: str, interval: str, on_candle: CandleHandler) -> None:
        """Run until cancelled, awaiting on_candle for every kline update."""
        pass

    @abstractmethod
    async def stream_tickers(self, symbols: Sequence[str], on_ticker: TickerHandler) -> None:
        """Run until cancelled, awaiting on_ticker for every ticker update."""
        pass

    @abstractmethod
    async def place_order(self, spec: OrderSpec) -> OrderAck:
        pass

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str) -> OrderAck:
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> None:
        pass

    @abstractmethod
    async def cancel_all_orders(self, symbol: str) -> None:
        pass

    @abstractmethod
    async def get_positions(self, symbol: str) -> List[ExchangePosition]:
        pass

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        pass

    @abstractmethod
    async def set_margin_type(self, symbol: str, margin_type: str) -> None:
        pass

    @abstractmethod
    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        pass

    @abstractmethod
    async def get_balance(self, asset: str = "USDT") -> float:
        """Wallet balance for asset."""
        pass

    async def close(self) -> None:
        """Release connections. Default no-op."""
        return None
