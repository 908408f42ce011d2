"""
Binance USDT-M Futures gateway on python-binance's AsyncClient, with retry,
rate-limit handling and payload validation.
"""

from __future__ import annotations
import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp
from binance import AsyncClient, BinanceSocketManager
from binance.exceptions import BinanceAPIException, BinanceRequestException

from futures_bot.core.errors import ExchangeRejection, GatewayResponseError, TransientNetworkError
from futures_bot.core.types import Candle, Side, Ticker
from futures_bot.execution.base import (
    CandleHandler,
    ExchangeGateway,
    ExchangePosition,
    OrderAck,
    OrderSpec,
    TickerHandler,
)
from futures_bot.utils.exchange_filters import SymbolFilters, parse_symbol_filters
from futures_bot.utils.retry import backoff_delay, call_with_retry, retry_transient

logger = logging.getLogger("futures_bot.execution.binance")

# Binance error codes that mean "try again" rather than "refused"
_TRANSIENT_CODES = (-1001, -1003, -1007, -1008)
_NO_NEED_TO_CHANGE_MARGIN = -4046
_DUPLICATE_CLIENT_ORDER_ID = -4116

STREAM_RECONNECT_DELAY = 5.0
STREAM_RECONNECT_MAX_DELAY = 60.0


def _require(payload: Any, key: str, cast: Callable[[Any], Any] = float) -> Any:
    """Fetch and convert a required field; GatewayResponseError if missing or malformed."""
    if not isinstance(payload, dict):
        raise GatewayResponseError(f"expected object with {key!r}, got {type(payload).__name__}")
    if key not in payload or payload[key] is None:
        raise GatewayResponseError(f"missing field {key!r}")
    try:
        return cast(payload[key])
    except (TypeError, ValueError) as e:
        raise GatewayResponseError(f"bad value for {key!r}: {payload[key]!r}") from e


def _fmt(x: float) -> str:
    """Plain decimal string (Binance rejects scientific notation)."""
    return f"{x:.8f}".rstrip("0").rstrip(".")


def parse_kline_row(row: Sequence[Any], now_ms: int) -> Candle:
    """REST kline row: [openTime, o, h, l, c, v, closeTime, ...]."""
    if not isinstance(row, (list, tuple)) or len(row) < 7:
        raise GatewayResponseError(f"malformed kline row: {row!r}")
    try:
        close_time = int(row[6])
        return Candle(
            open_time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time=close_time,
            is_final=close_time < now_ms,
        )
    except (TypeError, ValueError) as e:
        raise GatewayResponseError(f"malformed kline row: {row!r}") from e


def parse_kline_event(data: Dict[str, Any]) -> Candle:
    """Stream kline payload {"e": "kline", "k": {...}}."""
    k = _require(data, "k", dict)
    return Candle(
        open_time=_require(k, "t", int),
        open=_require(k, "o"),
        high=_require(k, "h"),
        low=_require(k, "l"),
        close=_require(k, "c"),
        volume=_require(k, "v"),
        close_time=_require(k, "T", int),
        is_final=_require(k, "x", bool),
    )


def parse_ticker_event(data: Dict[str, Any]) -> Ticker:
    """Stream 24hrTicker payload."""
    return Ticker(
        symbol=_require(data, "s", str),
        price=_require(data, "c"),
        high=_require(data, "h"),
        low=_require(data, "l"),
        volume=_require(data, "v"),
        timestamp=_require(data, "E", int),
    )


def parse_order(payload: Dict[str, Any]) -> OrderAck:
    avg = payload.get("avgPrice")
    return OrderAck(
        order_id=str(_require(payload, "orderId", int)),
        status=_require(payload, "status", str),
        avg_price=float(avg) if avg not in (None, "") else 0.0,
        executed_qty=_require(payload, "executedQty") if "executedQty" in payload else 0.0,
    )


def parse_positions(symbol: str, payload: Any) -> List[ExchangePosition]:
    if not isinstance(payload, list):
        raise GatewayResponseError(f"positions: expected list, got {type(payload).__name__}")
    out: List[ExchangePosition] = []
    for p in payload:
        if _require(p, "symbol", str) != symbol:
            continue
        amt = _require(p, "positionAmt")
        if amt == 0:
            continue
        pos_side = _require(p, "positionSide", str)
        if pos_side in ("LONG", "SHORT"):
            side = Side(pos_side)
        else:
            side = Side.LONG if amt > 0 else Side.SHORT
        out.append(ExchangePosition(
            symbol=symbol,
            side=side,
            quantity=abs(amt),
            entry_price=_require(p, "entryPrice"),
            unrealized_pnl=_require(p, "unRealizedProfit"),
        ))
    return out


class BinanceFuturesGateway(ExchangeGateway):
    """Binance USDT-M Futures (testnet and live)."""

    def __init__(
        self,
        client: AsyncClient,
        max_retries: int = 4,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 8.0,
    ):
        self._client = client
        self._bsm: Optional[BinanceSocketManager] = None
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._filters: Dict[str, SymbolFilters] = {}

    @classmethod
    async def create(
        cls,
        api_key: str,
        api_secret: str,
        testnet: bool = True,
        **kwargs: Any,
    ) -> "BinanceFuturesGateway":
        client = await AsyncClient.create(api_key, api_secret, testnet=testnet)
        logger.info("Binance Futures: using %s", "TESTNET" if testnet else "LIVE")
        return cls(client, **kwargs)

    async def close(self) -> None:
        await self._client.close_connection()

    async def _call(self, fn: Callable[..., Awaitable[Any]], **params: Any) -> Any:
        """Await a client call and map its failures onto the engine taxonomy."""
        try:
            return await fn(**params)
        except BinanceAPIException as e:
            if e.status_code in (418, 429) or e.status_code >= 500 or e.code in _TRANSIENT_CODES:
                raise TransientNetworkError(f"{fn.__name__}: {e.status_code} {e.message}") from e
            raise ExchangeRejection(e.message, e.code) from e
        except BinanceRequestException as e:
            raise GatewayResponseError(f"{fn.__name__}: {e.message}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"{fn.__name__}: {e!r}") from e

    # --- market data

    @retry_transient
    async def get_kline_history(self, symbol: str, interval: str, limit: int = 200) -> List[Candle]:
        raw = await self._call(self._client.futures_klines, symbol=symbol, interval=interval, limit=limit)
        if not isinstance(raw, list):
            raise GatewayResponseError(f"klines: expected list, got {type(raw).__name__}")
        now_ms = int(time.time() * 1000)
        return [parse_kline_row(row, now_ms) for row in raw]

    async def stream_klines(self, symbol: str, interval: str, on_candle: CandleHandler) -> None:
        async def handle(data: Dict[str, Any]) -> None:
            await on_candle(parse_kline_event(data))
        await self._run_stream([f"{symbol.lower()}@kline_{interval}"], handle)

    async def stream_tickers(self, symbols: Sequence[str], on_ticker: TickerHandler) -> None:
        async def handle(data: Dict[str, Any]) -> None:
            await on_ticker(parse_ticker_event(data))
        await self._run_stream([f"{s.lower()}@ticker" for s in symbols], handle)

    async def _run_stream(self, streams: List[str], handle: Callable[[Dict[str, Any]], Awaitable[None]]) -> None:
        """Consume a multiplex socket forever, reconnecting with backoff."""
        attempt = 0
        while True:
            if self._bsm is None:
                self._bsm = BinanceSocketManager(self._client)
            try:
                async with self._bsm.futures_multiplex_socket(streams) as socket:
                    logger.info("Stream connected: %s", ",".join(streams))
                    attempt = 0
                    while True:
                        msg = await socket.recv()
                        if not msg:
                            continue
                        if msg.get("e") == "error":
                            raise TransientNetworkError(f"stream error: {msg.get('m')}")
                        try:
                            await handle(msg.get("data", msg))
                        except GatewayResponseError as e:
                            logger.error("Dropping malformed stream message on %s: %s", streams[0], e)
            except asyncio.CancelledError:
                logger.info("Stream stopped: %s", ",".join(streams))
                raise
            except (TransientNetworkError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                delay = backoff_delay(attempt, STREAM_RECONNECT_DELAY, STREAM_RECONNECT_MAX_DELAY)
                attempt += 1
                logger.warning("Stream %s dropped (%s), reconnecting in %.0fs", ",".join(streams), e, delay)
                await asyncio.sleep(delay)

    # --- account / symbol setup

    @retry_transient
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._call(self._client.futures_change_leverage, symbol=symbol, leverage=leverage)
        logger.info("Leverage set to %sx for %s", leverage, symbol)

    @retry_transient
    async def set_margin_type(self, symbol: str, margin_type: str) -> None:
        try:
            await self._call(self._client.futures_change_margin_type, symbol=symbol, marginType=margin_type)
        except ExchangeRejection as e:
            if e.code != _NO_NEED_TO_CHANGE_MARGIN:
                raise
        logger.info("Margin type %s for %s", margin_type, symbol)

    @retry_transient
    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        if symbol in self._filters:
            return self._filters[symbol]
        info = await self._call(self._client.futures_exchange_info)
        for s in _require(info, "symbols", list):
            if s.get("symbol") == symbol:
                try:
                    filters = parse_symbol_filters(s)
                except (KeyError, TypeError, ValueError) as e:
                    raise GatewayResponseError(f"bad filters for {symbol}: {e}") from e
                self._filters[symbol] = filters
                return filters
        raise ExchangeRejection(f"unknown futures symbol {symbol}")

    @retry_transient
    async def get_balance(self, asset: str = "USDT") -> float:
        balances = await self._call(self._client.futures_account_balance)
        if not isinstance(balances, list):
            raise GatewayResponseError("account balance: expected list")
        for b in balances:
            if _require(b, "asset", str) == asset:
                return _require(b, "balance")
        raise GatewayResponseError(f"no {asset} balance in futures account")

    # --- orders / positions

    async def place_order(self, spec: OrderSpec) -> OrderAck:
        """
        Submit with a fixed client order id so a retry after an ambiguous
        failure cannot open a second order.
        """
        client_id = f"fb-{uuid.uuid4().hex[:24]}"
        params: Dict[str, Any] = {
            "symbol": spec.symbol,
            "side": spec.side,
            "type": spec.type,
            "quantity": _fmt(spec.quantity),
            "newClientOrderId": client_id,
        }
        if spec.type == "MARKET":
            params["newOrderRespType"] = "RESULT"
        if spec.stop_price is not None:
            params["stopPrice"] = _fmt(spec.stop_price)
            params["workingType"] = "MARK_PRICE"
        if spec.position_side:
            # hedge mode: positionSide implies reduce-only, reduceOnly is rejected
            params["positionSide"] = spec.position_side
        elif spec.reduce_only:
            params["reduceOnly"] = "true"

        async def submit() -> OrderAck:
            try:
                raw = await self._call(self._client.futures_create_order, **params)
            except ExchangeRejection as e:
                if e.code != _DUPLICATE_CLIENT_ORDER_ID:
                    raise
                raw = await self._call(self._client.futures_get_order, symbol=spec.symbol, origClientOrderId=client_id)
            return parse_order(raw)

        ack = await call_with_retry(
            submit,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            what=f"place_order {spec.type}",
        )
        logger.info("Order %s %s %s qty=%s stop=%s -> %s (%s)", spec.symbol, spec.side, spec.type,
                    params["quantity"], params.get("stopPrice"), ack.order_id, ack.status)
        return ack

    @retry_transient
    async def get_order(self, symbol: str, order_id: str) -> OrderAck:
        raw = await self._call(self._client.futures_get_order, symbol=symbol, orderId=int(order_id))
        return parse_order(raw)

    @retry_transient
    async def cancel_order(self, symbol: str, order_id: str) -> None:
        await self._call(self._client.futures_cancel_order, symbol=symbol, orderId=int(order_id))
        logger.info("Cancelled order %s on %s", order_id, symbol)

    @retry_transient
    async def cancel_all_orders(self, symbol: str) -> None:
        await self._call(self._client.futures_cancel_all_open_orders, symbol=symbol)
        logger.info("Cancelled all open orders on %s", symbol)

    @retry_transient
    async def get_positions(self, symbol: str) -> List[ExchangePosition]:
        raw = await self._call(self._client.futures_position_information, symbol=symbol)
        return parse_positions(symbol, raw)
