"""Shared fakes and builders for the test suite. No network access."""

from __future__ import annotations
import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import pytest

from futures_bot.core.config import Settings
from futures_bot.core.errors import ExchangeRejection
from futures_bot.core.types import Candle, IndicatorSnapshot, Side
from futures_bot.execution.base import ExchangeGateway, ExchangePosition, OrderAck, OrderSpec
from futures_bot.utils.exchange_filters import SymbolFilters

MINUTE_MS = 60_000

# 03:00 UTC: outside the default blackout hours
QUIET_HOUR = datetime(2024, 3, 1, 3, 0, tzinfo=timezone.utc)


def make_candle(i: int, open_: float, close: float, volume: float = 10.0, final: bool = True) -> Candle:
    return Candle(
        open_time=i * 5 * MINUTE_MS,
        open=open_,
        high=max(open_, close) + 0.5,
        low=min(open_, close) - 0.5,
        close=close,
        volume=volume,
        close_time=(i + 1) * 5 * MINUTE_MS - 1,
        is_final=final,
    )


def downtrend_then_green(n: int = 60) -> List[Candle]:
    """Steady decline (RSI near zero, fast EMA under slow) closed by one small green candle."""
    candles = [make_candle(i, 200.0 - 2 * i, 198.0 - 2 * i) for i in range(n - 1)]
    last_close = candles[-1].close
    candles.append(make_candle(n - 1, last_close, last_close + 0.5))
    return candles


def make_snapshot(**kw) -> IndicatorSnapshot:
    values = dict(symbol="BTCUSDT", timestamp=0, price=100.0)
    values.update(kw)
    return IndicatorSnapshot(**values)


class FakeGateway(ExchangeGateway):
    """
    In-memory exchange. Market orders fill at `price` and move the position
    book; TP/SL orders rest as NEW until fill_resting() is called.
    """

    def __init__(
        self,
        price: float = 100.0,
        balance: float = 1000.0,
        filters: Optional[SymbolFilters] = None,
        history: Sequence[Candle] = (),
    ):
        self.price = price
        self.balance = balance
        self.filters = filters or SymbolFilters(min_qty=0.001, step_size=0.001, tick_size=0.01, min_notional=5.0)
        self.history = list(history)
        self.placed: List[OrderSpec] = []
        self.orders: Dict[str, OrderSpec] = {}
        self.acks: Dict[str, OrderAck] = {}
        self.cancelled: List[str] = []
        self.cancel_all_calls = 0
        self.positions: Dict[Side, ExchangePosition] = {}
        self.failures: Dict[str, List[Exception]] = {}
        # None entries let that call through
        self.cancel_failures: List[Optional[Exception]] = []
        self.cancel_all_failures: List[Exception] = []
        self.balance_failures: List[Exception] = []
        self.poll_failures: List[Exception] = []
        self.margin_failures: List[Exception] = []
        self.poll_delay = 0.0
        self.stream_error: Optional[Exception] = None
        self.market_status = "FILLED"
        self.order_delay = 0.0
        self.leverage_calls: List[int] = []
        self.margin_calls: List[str] = []
        self._next_id = 0

    # helpers

    def market_orders(self) -> List[OrderSpec]:
        return [s for s in self.placed if s.type == "MARKET"]

    def resting(self, type_: str) -> List[str]:
        return [oid for oid, s in self.orders.items() if s.type == type_ and self.acks[oid].status == "NEW"]

    def fill_resting(self, order_id: str, price: float) -> None:
        """Simulate a TP/SL trigger: order FILLED and the position gone."""
        spec = self.orders[order_id]
        self.acks[order_id] = OrderAck(order_id, "FILLED", price, spec.quantity)
        self.positions.pop(self._position_side(spec), None)

    def _position_side(self, spec: OrderSpec) -> Side:
        if spec.position_side:
            return Side(spec.position_side)
        buy = spec.side == "BUY"
        if spec.reduce_only:
            buy = not buy
        return Side.LONG if buy else Side.SHORT

    # gateway

    async def get_kline_history(self, symbol, interval, limit=200):
        return self.history[-limit:]

    async def stream_klines(self, symbol, interval, on_candle):
        while self.stream_error is None:
            await asyncio.sleep(0.001)
        raise self.stream_error

    async def stream_tickers(self, symbols, on_ticker):
        await asyncio.Event().wait()

    async def place_order(self, spec: OrderSpec) -> OrderAck:
        self.placed.append(spec)
        if self.order_delay:
            await asyncio.sleep(self.order_delay)
        pending = self.failures.get(spec.type)
        if pending:
            raise pending.pop(0)
        self._next_id += 1
        oid = str(self._next_id)
        self.orders[oid] = spec
        if spec.type != "MARKET":
            ack = OrderAck(oid, "NEW")
        elif self.market_status != "FILLED":
            ack = OrderAck(oid, self.market_status)
        else:
            ack = OrderAck(oid, "FILLED", self.price, spec.quantity)
            side = self._position_side(spec)
            closing = spec.reduce_only or (spec.position_side and spec.side == side.exit_order_side)
            if closing:
                self.positions.pop(side, None)
            else:
                self.positions[side] = ExchangePosition(spec.symbol, side, spec.quantity, self.price)
        self.acks[oid] = ack
        return ack

    async def get_order(self, symbol, order_id):
        return self.acks[order_id]

    async def cancel_order(self, symbol, order_id):
        if self.cancel_failures:
            error = self.cancel_failures.pop(0)
            if error is not None:
                raise error
        ack = self.acks.get(order_id)
        if ack is None or ack.status != "NEW":
            raise ExchangeRejection("Unknown order sent.", -2011)
        self.acks[order_id] = OrderAck(order_id, "CANCELED")
        self.cancelled.append(order_id)

    async def cancel_all_orders(self, symbol):
        if self.cancel_all_failures:
            raise self.cancel_all_failures.pop(0)
        self.cancel_all_calls += 1
        for oid, ack in list(self.acks.items()):
            if ack.status == "NEW":
                self.acks[oid] = OrderAck(oid, "CANCELED")
                self.cancelled.append(oid)

    async def get_positions(self, symbol):
        if self.poll_delay:
            await asyncio.sleep(self.poll_delay)
        if self.poll_failures:
            raise self.poll_failures.pop(0)
        return list(self.positions.values())

    async def set_leverage(self, symbol, leverage):
        self.leverage_calls.append(leverage)

    async def set_margin_type(self, symbol, margin_type):
        if self.margin_failures:
            raise self.margin_failures.pop(0)
        self.margin_calls.append(margin_type)

    async def get_symbol_filters(self, symbol):
        return self.filters

    async def get_balance(self, asset="USDT"):
        if self.balance_failures:
            raise self.balance_failures.pop(0)
        return self.balance


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def settings():
    # qty_usdt * leverage / 100 = 1.0 contract at the fake's default price
    return Settings(
        qty_usdt=10.0,
        leverage=10,
        take_profit_percent=2.0,
        stop_loss_percent=1.0,
        check_interval_seconds=3600,
        fill_confirm_delay=0.0,
        bracket_retry_base_delay=0.01,
        bracket_retry_max_delay=0.02,
    )
