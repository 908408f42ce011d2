"""
Position lifecycle: entry, TP/SL bracket, supervision, close and halt.

Per side: FLAT -> ENTERING -> OPEN -> CLOSING -> FLAT, with HALTED reachable
from anywhere. Every exchange-mutating sequence runs under the symbol's
execution lock. Entry and bracket legs are placed one after another, never
concurrently.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from futures_bot.core.config import Settings
from futures_bot.core.errors import (
    EngineError,
    ExchangeRejection,
    PartialBracketFailure,
    TransientNetworkError,
)
from futures_bot.core.events import EngineEvent, EventKind, EventSink
from futures_bot.core.types import ClosedTrade, Position, PositionState, Side, Signal
from futures_bot.execution.base import ExchangeGateway, ExchangePosition, OrderAck, OrderSpec
from futures_bot.risk.governor import RiskGovernor
from futures_bot.utils.exchange_filters import SymbolFilters, round_price, round_quantity
from futures_bot.utils.retry import backoff_delay

logger = logging.getLogger("futures_bot.execution.positions")

TP, SL = "take_profit", "stop_loss"


def entry_quantity(qty_usdt: float, leverage: int, price: float, filters: SymbolFilters) -> float:
    """(margin * leverage) / price floored to the lot step. Raises ExchangeRejection if untradeable."""
    if price <= 0:
        raise ExchangeRejection(f"invalid reference price {price}")
    qty = round_quantity(qty_usdt * leverage / price, filters.min_qty, filters.step_size)
    if qty <= 0:
        raise ExchangeRejection(f"quantity rounds below min qty {filters.min_qty} at price {price}")
    if qty * price < filters.min_notional:
        raise ExchangeRejection(f"notional {qty * price:.2f} below minimum {filters.min_notional}")
    return qty


def bracket_prices(side: Side, entry: float, settings: Settings, tick_size: float) -> Tuple[float, float]:
    """(tp, sl) around entry, rounded to tick. ROI mode divides the TP distance by leverage."""
    tp_pct = settings.take_profit_percent
    if settings.roi_based_tp:
        tp_pct = tp_pct / settings.leverage
    sl_pct = settings.stop_loss_percent
    tp = entry * (1 + side.sign * tp_pct / 100.0)
    sl = entry * (1 - side.sign * sl_pct / 100.0)
    return round_price(tp, tick_size), round_price(sl, tick_size)


@dataclass
class BracketRepair:
    """Legs placed while the bracket is incomplete, plus the retry task."""
    tp_order_id: Optional[str] = None
    sl_order_id: Optional[str] = None
    task: Optional[asyncio.Task] = None
    attempts: int = 0

    def leg(self, leg: str) -> Optional[str]:
        return self.tp_order_id if leg == TP else self.sl_order_id

    def set_leg(self, leg: str, order_id: Optional[str]) -> None:
        if leg == TP:
            self.tp_order_id = order_id
        else:
            self.sl_order_id = order_id

    def missing(self) -> List[str]:
        return [leg for leg in (TP, SL) if self.leg(leg) is None]

    def placed_ids(self) -> List[str]:
        return [oid for oid in (self.tp_order_id, self.sl_order_id) if oid is not None]


class PositionManager:
    """Sole writer of Position records for one symbol; at most one position per side."""

    def __init__(
        self,
        symbol: str,
        gateway: ExchangeGateway,
        governor: RiskGovernor,
        filters: SymbolFilters,
        lock: Optional[asyncio.Lock] = None,
        hedge_mode: bool = True,
        emit: Optional[EventSink] = None,
        price_source: Optional[Callable[[], Optional[float]]] = None,
        clock: Callable[[], datetime] = None,
    ):
        self.symbol = symbol
        self.gateway = gateway
        self.governor = governor
        self.filters = filters
        self.lock = lock or asyncio.Lock()
        self.hedge_mode = hedge_mode
        self._emit_sink = emit
        self._price_source = price_source or (lambda: None)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._states: Dict[Side, PositionState] = {Side.LONG: PositionState.FLAT, Side.SHORT: PositionState.FLAT}
        self._positions: Dict[Side, Position] = {}
        self._repairs: Dict[Side, BracketRepair] = {}
        self._repair_delays = (1.0, 60.0)
        self._halted = False
        self.halt_reason = ""

    # --- read side

    @property
    def halted(self) -> bool:
        return self._halted

    def state(self, side: Side) -> PositionState:
        return PositionState.HALTED if self._halted else self._states[side]

    def states(self) -> Dict[str, str]:
        return {side.value: self.state(side).value for side in Side}

    def positions(self) -> Tuple[Position, ...]:
        return tuple(self._positions.values())

    def position(self, side: Side) -> Optional[Position]:
        return self._positions.get(side)

    def unprotected_sides(self) -> List[Side]:
        return [side for side, position in self._positions.items() if not position.protected]

    # --- entry

    async def open(self, side: Side, signal: Signal, price: float, settings: Settings) -> Optional[Position]:
        """
        Enter `side` at market and attach the bracket. Returns the Position, or
        None if the entry was skipped or rejected. Raises PartialBracketFailure
        when the entry filled but the bracket is incomplete; the missing leg
        is then retried in the background until placed.
        """
        if self._halted:
            logger.info("%s halted, ignoring %s signal", self.symbol, side.value)
            return None
        if side in self._positions or self._states[side] is not PositionState.FLAT:
            logger.info("%s %s already %s, ignoring signal", self.symbol, side.value, self._states[side].value)
            return None

        async with self.lock:
            if self._halted or side in self._positions or self._states[side] is not PositionState.FLAT:
                logger.info("%s %s no longer FLAT, ignoring signal", self.symbol, side.value)
                return None
            try:
                qty = entry_quantity(settings.qty_usdt, settings.leverage, price, self.filters)
            except ExchangeRejection as e:
                self._entry_failed(side, e)
                return None

            self._states[side] = PositionState.ENTERING
            logger.info("%s %s ENTERING qty=%s ref=%s (%s, conf=%.2f)",
                        self.symbol, side.value, qty, price, signal.reason, signal.confidence)
            try:
                ack = await self.gateway.place_order(OrderSpec(
                    symbol=self.symbol,
                    side=side.entry_order_side,
                    type="MARKET",
                    quantity=qty,
                    position_side=side.value if self.hedge_mode else None,
                ))
                ack = await self._confirm_fill(ack, settings)
            except EngineError as e:
                self._states[side] = PositionState.FLAT
                self._entry_failed(side, e)
                return None
            if ack.executed_qty <= 0:
                self._states[side] = PositionState.FLAT
                self._entry_failed(side, ExchangeRejection(f"entry order {ack.order_id} not filled ({ack.status})"))
                return None

            entry = ack.avg_price if ack.avg_price > 0 else price
            tp, sl = bracket_prices(side, entry, settings, self.filters.tick_size)
            position = Position(
                symbol=self.symbol,
                side=side,
                entry_price=entry,
                quantity=ack.executed_qty,
                tp_price=tp,
                sl_price=sl,
                opened_at=self._clock(),
            )
            self._positions[side] = position
            self._states[side] = PositionState.OPEN
            self._emit(
                EventKind.ENTRY,
                f"{side.value} ENTRY {self.symbol}\nPrice: {entry}\nQuantity: {position.quantity}\n"
                f"Leverage: {settings.leverage}x\nTP: {tp}  SL: {sl}\nReason: {signal.reason}\n"
                f"Confidence: {signal.confidence * 100:.1f}%",
                side=side.value, entry=entry, quantity=position.quantity, order_id=ack.order_id,
            )
            failure = await self._place_bracket(side, BracketRepair())
        if failure is not None:
            self._start_repair(side, settings)
            raise failure
        return self._positions.get(side)

    def _entry_failed(self, side: Side, error: EngineError) -> None:
        if isinstance(error, TransientNetworkError):
            logger.error("%s %s entry failed after retries, state FLAT: %s", self.symbol, side.value, error)
            self._emit(EventKind.ERROR, f"Entry {side.value} {self.symbol} failed (network): {error}",
                       side=side.value)
        else:
            logger.warning("%s %s entry rejected, state FLAT: %s", self.symbol, side.value, error)
            self._emit(EventKind.ENTRY_REJECTED, f"Entry {side.value} {self.symbol} rejected: {error}",
                       side=side.value)

    async def _confirm_fill(self, ack: OrderAck, settings: Settings) -> OrderAck:
        """Poll a pending market order; cancel it if it never fills."""
        attempts = 0
        while not ack.filled and ack.status in ("NEW", "PARTIALLY_FILLED") and attempts < settings.fill_confirm_attempts:
            await asyncio.sleep(settings.fill_confirm_delay)
            ack = await self.gateway.get_order(self.symbol, ack.order_id)
            attempts += 1
        if not ack.filled and ack.status in ("NEW", "PARTIALLY_FILLED"):
            logger.warning("%s entry %s still %s, cancelling", self.symbol, ack.order_id, ack.status)
            try:
                await self.gateway.cancel_order(self.symbol, ack.order_id)
            except ExchangeRejection as e:
                logger.info("%s cancel of %s refused (%s), re-reading", self.symbol, ack.order_id, e)
            ack = await self.gateway.get_order(self.symbol, ack.order_id)
        return ack

    # --- bracket

    def _leg_spec(self, position: Position, leg: str) -> OrderSpec:
        return OrderSpec(
            symbol=self.symbol,
            side=position.side.exit_order_side,
            type="TAKE_PROFIT_MARKET" if leg == TP else "STOP_MARKET",
            quantity=position.quantity,
            stop_price=position.tp_price if leg == TP else position.sl_price,
            reduce_only=not self.hedge_mode,
            position_side=position.side.value if self.hedge_mode else None,
        )

    async def _place_bracket(self, side: Side, repair: BracketRepair) -> Optional[PartialBracketFailure]:
        """
        Place the legs `repair` is missing, TP first then SL. On success the
        Position gets both ids; otherwise the placed ids stay on the repair
        record. Caller holds the lock.
        """
        position = self._positions[side]
        error: Optional[EngineError] = None
        for leg in repair.missing():
            try:
                ack = await self.gateway.place_order(self._leg_spec(position, leg))
            except EngineError as e:
                logger.error("%s %s state=%s %s leg failed: %s", self.symbol, side.value,
                             self._states[side].value, leg, e)
                error = e
                continue
            repair.set_leg(leg, ack.order_id)
        missing = repair.missing()
        if not missing:
            self._positions[side] = replace(position, tp_order_id=repair.tp_order_id, sl_order_id=repair.sl_order_id)
            self._repairs.pop(side, None)
            self._emit(
                EventKind.BRACKET_PLACED,
                f"{side.value} {self.symbol} protected: TP {position.tp_price} / SL {position.sl_price}",
                side=side.value, tp_order_id=repair.tp_order_id, sl_order_id=repair.sl_order_id,
            )
            return None
        self._repairs[side] = repair
        failure = PartialBracketFailure(self.symbol, side.value, missing, error)
        self._emit(EventKind.BRACKET_FAILURE, str(failure), side=side.value, missing=missing)
        return failure

    def _start_repair(self, side: Side, settings: Optional[Settings] = None) -> None:
        if settings is not None:
            self._repair_delays = (settings.bracket_retry_base_delay, settings.bracket_retry_max_delay)
        repair = self._repairs.get(side)
        if repair is None or (repair.task is not None and not repair.task.done()):
            return
        repair.task = asyncio.create_task(
            self._repair_loop(side, *self._repair_delays),
            name=f"bracket-repair-{self.symbol}-{side.value}",
        )

    async def _repair_loop(self, side: Side, base_delay: float, max_delay: float) -> None:
        """Retry missing bracket legs with backoff until placed or the position is gone."""
        while True:
            repair = self._repairs.get(side)
            if repair is None:
                return
            await asyncio.sleep(backoff_delay(repair.attempts, base_delay, max_delay))
            repair.attempts += 1
            async with self.lock:
                if self._halted or side not in self._positions or self._repairs.get(side) is not repair:
                    return
                if self._states[side] is not PositionState.OPEN:
                    continue
                failure = await self._place_bracket(side, repair)
            if failure is None:
                logger.info("%s %s bracket restored after %d retries", self.symbol, side.value, repair.attempts)
                return

    def _cancel_repair(self, side: Side) -> Optional[BracketRepair]:
        repair = self._repairs.pop(side, None)
        if repair is not None and repair.task is not None and repair.task is not asyncio.current_task():
            repair.task.cancel()
        return repair

    async def _cancel_quietly(self, order_id: str) -> bool:
        """Cancel an order; False if the exchange no longer knows it (filled or gone)."""
        try:
            await self.gateway.cancel_order(self.symbol, order_id)
            return True
        except ExchangeRejection as e:
            logger.info("%s cancel %s refused: %s", self.symbol, order_id, e)
            return False

    # --- supervision

    async def sync(self, settings: Settings) -> List[ClosedTrade]:
        """
        Poll exchange positions. A tracked OPEN side that is flat on the
        exchange was closed by a bracket leg; an exchange position the engine
        does not track is adopted and protected. While halted, any leftover
        exchange position is flattened again.
        """
        closed: List[ClosedTrade] = []
        async with self.lock:
            # read under the lock: a close finishing meanwhile would leave a stale view
            by_side = {p.side: p for p in await self.gateway.get_positions(self.symbol)}
            for side, position in list(self._positions.items()):
                if self._states[side] is PositionState.OPEN and side not in by_side:
                    trade = await self._finalize_from_bracket(position)
                    if trade is not None:
                        closed.append(trade)
            if self._halted:
                closed.extend(await self._flatten(by_side))
                return closed
            untracked = [p for s, p in by_side.items()
                         if s not in self._positions and self._states[s] is PositionState.FLAT]
            if untracked:
                await self._adopt(untracked, settings)
        for side in list(self._repairs):
            self._start_repair(side, settings)
        return closed

    async def _finalize_from_bracket(self, position: Position) -> Optional[ClosedTrade]:
        """Find which leg filled, cancel the other, account the close."""
        side = position.side
        repair = self._repairs.get(side)
        legs = {
            TP: position.tp_order_id or (repair.tp_order_id if repair else None),
            SL: position.sl_order_id or (repair.sl_order_id if repair else None),
        }
        exit_price: Optional[float] = None
        reason = "external"
        filled_id = None
        for leg, order_id in legs.items():
            if order_id is None:
                continue
            try:
                ack = await self.gateway.get_order(self.symbol, order_id)
            except EngineError as e:
                logger.error("%s %s state=OPEN could not read %s order %s: %s",
                             self.symbol, side.value, leg, order_id, e)
                continue
            if ack.filled:
                if exit_price is None:
                    exit_price, reason, filled_id = ack.avg_price, leg, order_id
                else:
                    logger.warning("%s %s both bracket legs report FILLED; counting %s only",
                                   self.symbol, side.value, reason)
        for order_id in legs.values():
            if order_id is not None and order_id != filled_id:
                try:
                    await self._cancel_quietly(order_id)
                except TransientNetworkError as e:
                    logger.error("%s could not cancel leftover bracket order %s: %s", self.symbol, order_id, e)
        if exit_price is None or exit_price <= 0:
            exit_price = self._price_source() or position.entry_price
            logger.warning("%s %s closed outside the bracket; using last price %s as exit",
                           self.symbol, side.value, exit_price)
        return self._record_close(side, exit_price, reason)

    def _record_close(self, side: Side, exit_price: float, reason: str) -> Optional[ClosedTrade]:
        """Remove the position and account its PnL. A second close of the same position is a no-op."""
        position = self._positions.pop(side, None)
        if position is None:
            logger.info("%s %s already closed, ignoring duplicate close (%s)", self.symbol, side.value, reason)
            return None
        self._cancel_repair(side)
        self._states[side] = PositionState.FLAT
        pnl = position.realized_pnl(exit_price)
        stats = self.governor.record_close(pnl)
        trade = ClosedTrade(
            symbol=self.symbol,
            side=side,
            quantity=position.quantity,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl=pnl,
            exit_reason=reason,
            opened_at=position.opened_at,
            closed_at=self._clock(),
        )
        self._emit(
            EventKind.POSITION_CLOSED,
            f"{side.value} CLOSED {self.symbol}\nReason: {reason}\nEntry: {position.entry_price}  Exit: {exit_price}\n"
            f"PnL: ${pnl:.2f}\nDaily PnL: ${stats.pnl:.2f}",
            side=side.value, pnl=pnl, exit_price=exit_price, reason=reason,
        )
        return trade

    async def _adopt(self, untracked: List[ExchangePosition], settings: Settings) -> None:
        """Track exchange positions opened outside this run and protect them. Caller holds the lock."""
        if not self._positions:
            # brackets of a previous run are unknown to us
            try:
                await self.gateway.cancel_all_orders(self.symbol)
            except EngineError as e:
                logger.error("%s could not clear stale orders before adopting: %s", self.symbol, e)
                return
        for ep in untracked:
            tp, sl = bracket_prices(ep.side, ep.entry_price, settings, self.filters.tick_size)
            self._positions[ep.side] = Position(
                symbol=self.symbol,
                side=ep.side,
                entry_price=ep.entry_price,
                quantity=ep.quantity,
                tp_price=tp,
                sl_price=sl,
                opened_at=self._clock(),
            )
            self._states[ep.side] = PositionState.OPEN
            logger.warning("%s adopted untracked %s position qty=%s entry=%s",
                           self.symbol, ep.side.value, ep.quantity, ep.entry_price)
            await self._place_bracket(ep.side, BracketRepair())

    # --- close / halt

    async def close(self, side: Side, reason: str = "manual") -> Optional[ClosedTrade]:
        """Manual close: cancel the bracket, then reduce-only market. No-op if not OPEN."""
        async with self.lock:
            return await self._close_locked(side, reason)

    async def close_all(self, reason: str = "manual") -> List[ClosedTrade]:
        closed = []
        for side in list(self._positions):
            trade = await self.close(side, reason)
            if trade is not None:
                closed.append(trade)
        return closed

    async def _close_locked(self, side: Side, reason: str) -> Optional[ClosedTrade]:
        position = self._positions.get(side)
        if position is None or self._states[side] is not PositionState.OPEN:
            logger.info("%s %s not OPEN (%s), close is a no-op", self.symbol, side.value, self._states[side].value)
            return None
        self._states[side] = PositionState.CLOSING
        repair = self._cancel_repair(side)
        bracket = BracketRepair(
            position.tp_order_id or (repair.tp_order_id if repair else None),
            position.sl_order_id or (repair.sl_order_id if repair else None),
        )
        # legs not yet confirmed cancelled or gone
        resting = replace(bracket)
        try:
            for leg in (TP, SL):
                order_id = bracket.leg(leg)
                if order_id is not None:
                    await self._cancel_quietly(order_id)
                    resting.set_leg(leg, None)
            ack = await self.gateway.place_order(self._market_close_spec(position))
            if ack.executed_qty <= 0:
                raise ExchangeRejection(f"close order {ack.order_id} not filled ({ack.status})")
        except EngineError as e:
            return await self._close_failed(position, reason, e, bracket, resting)
        return self._record_close(side, ack.avg_price if ack.avg_price > 0 else position.entry_price, reason)

    def _market_close_spec(self, position: Position) -> OrderSpec:
        return OrderSpec(
            symbol=self.symbol,
            side=position.side.exit_order_side,
            type="MARKET",
            quantity=position.quantity,
            reduce_only=not self.hedge_mode,
            position_side=position.side.value if self.hedge_mode else None,
        )

    async def _close_failed(
        self,
        position: Position,
        reason: str,
        error: EngineError,
        bracket: BracketRepair,
        resting: BracketRepair,
    ) -> Optional[ClosedTrade]:
        """
        Close aborted. If the exchange shows the side flat a bracket leg got
        there first; otherwise revert to OPEN and re-protect the position.
        `resting` holds the legs that may still be live on the exchange; they
        stay tracked and only the cancelled ones are placed again.
        """
        side = position.side
        logger.error("%s %s state=CLOSING close (%s) failed: %s", self.symbol, side.value, reason, error)
        try:
            still_open = any(p.side is side for p in await self.gateway.get_positions(self.symbol))
        except EngineError as e:
            logger.error("%s could not verify position after failed close: %s", self.symbol, e)
            still_open = True
        self._states[side] = PositionState.OPEN
        self._positions[side] = replace(position, tp_order_id=None, sl_order_id=None)
        if not still_open:
            self._repairs[side] = bracket
            return await self._finalize_from_bracket(self._positions[side])
        self._repairs[side] = resting
        kept = resting.placed_ids()
        self._emit(EventKind.ERROR, f"Close {side.value} {self.symbol} failed: {error}. Position kept OPEN, "
                                    f"re-placing TP/SL.", side=side.value, kept_order_ids=kept)
        if await self._place_bracket(side, resting) is not None:
            self._start_repair(side)
        return None

    async def halt(self, reason: str) -> List[ClosedTrade]:
        """
        Stop accepting entries at once, then (after any in-progress close
        finishes) cancel every open order and flatten. Idempotent.
        """
        if self._halted:
            return []
        self._halted = True
        self.halt_reason = reason
        logger.warning("%s HALT: %s", self.symbol, reason)
        async with self.lock:
            for side in list(self._repairs):
                self._cancel_repair(side)
            try:
                await self.gateway.cancel_all_orders(self.symbol)
            except EngineError as e:
                logger.error("%s state=HALTED cancel all orders failed: %s", self.symbol, e)
                self._emit(EventKind.ERROR, f"Halt on {self.symbol}: cancelling open orders failed: {e}")
            try:
                by_side = {p.side: p for p in await self.gateway.get_positions(self.symbol)}
            except EngineError as e:
                logger.error("%s state=HALTED could not read positions, flattening tracked ones: %s", self.symbol, e)
                by_side = {s: ExchangePosition(self.symbol, s, p.quantity, p.entry_price)
                           for s, p in self._positions.items()}
            for side, position in list(self._positions.items()):
                if side not in by_side:
                    await self._finalize_from_bracket(position)
            closed = await self._flatten(by_side)
        self._emit(EventKind.HALTED, f"Trading halted on {self.symbol}: {reason}", reason=reason)
        return closed

    async def _flatten(self, by_side: Dict[Side, ExchangePosition]) -> List[ClosedTrade]:
        """Reduce-only market close of every exchange position. Caller holds the lock."""
        closed: List[ClosedTrade] = []
        for side, ep in by_side.items():
            tracked = self._positions.get(side)
            position = tracked or Position(self.symbol, side, ep.entry_price, ep.quantity, 0.0, 0.0, self._clock())
            self._states[side] = PositionState.CLOSING
            try:
                ack = await self.gateway.place_order(self._market_close_spec(replace(position, quantity=ep.quantity)))
            except EngineError as e:
                self._states[side] = PositionState.OPEN if tracked else PositionState.FLAT
                logger.error("%s %s state=HALTED flatten failed, will retry on next poll: %s",
                             self.symbol, side.value, e)
                self._emit(EventKind.ERROR, f"Flatten {side.value} {self.symbol} failed: {e}", side=side.value)
                continue
            if tracked is None:
                self._states[side] = PositionState.FLAT
                logger.warning("%s flattened untracked %s position qty=%s", self.symbol, side.value, ep.quantity)
                continue
            trade = self._record_close(side, ack.avg_price if ack.avg_price > 0 else ep.entry_price, "halt")
            if trade is not None:
                closed.append(trade)
        return closed

    def cancel_background(self) -> None:
        for repair in self._repairs.values():
            if repair.task is not None:
                repair.task.cancel()

    def _emit(self, kind: EventKind, message: str, **data) -> None:
        if self._emit_sink is not None:
            self._emit_sink(EngineEvent(kind, message, dict(symbol=self.symbol, **data)))
