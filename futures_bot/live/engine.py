"""
Live trading engine: wires the market data cache, indicator engine,
strategy, filter chain, position manager and risk governor to the exchange
gateway, and exposes the operator surface (start/stop, settings, emergency
close, read-only snapshots).
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from futures_bot.analytics.metrics import summarize_day
from futures_bot.core.config import Settings
from futures_bot.core.errors import ConfigurationError, EngineError, PartialBracketFailure, RiskLimitBreach
from futures_bot.core.events import EngineEvent, EventKind, EventSink
from futures_bot.core.types import (
    Candle,
    ClosedTrade,
    DailyStats,
    IndicatorSnapshot,
    Position,
    SignalAction,
    Ticker,
)
from futures_bot.execution.base import ExchangeGateway
from futures_bot.execution.positions import PositionManager
from futures_bot.live.scheduler import Scheduler
from futures_bot.market.cache import MarketDataCache
from futures_bot.market.indicators import IndicatorEngine
from futures_bot.risk.governor import RiskGovernor
from futures_bot.strategies.filters import FilterChain
from futures_bot.strategies.rsi_candle import RsiCandleStrategy

logger = logging.getLogger("futures_bot.live.engine")

# Changing these requires stop() and start()
RESTART_ONLY_SETTINGS = frozenset({"symbol", "interval", "hedge_mode", "history_limit"})

_INDICATOR_SETTINGS = frozenset({
    "rsi_period", "ema_fast", "ema_slow", "sma_fast", "sma_slow", "macd_fast", "macd_slow", "macd_signal",
    "bb_period", "bb_std", "stoch_k", "stoch_d", "volume_ma_len", "atr_len",
})


@dataclass(frozen=True)
class EngineStatus:
    running: bool
    symbol: str
    interval: str
    halted: bool
    halt_reason: str
    states: Mapping[str, str]
    price: Optional[float]
    indicators: Optional[IndicatorSnapshot]
    open_positions: int
    daily_pnl: float
    daily_trades: int
    settings_version: int
    cycles: int
    skipped_ticks: int
    market_data_ok: bool


class TradingEngine:
    """Single-symbol signal-driven engine. All methods run on one event loop."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = None,
    ):
        self.gateway = gateway
        self._settings = (settings or Settings()).validate()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.cache = MarketDataCache(self._settings.history_limit)
        self.indicators = IndicatorEngine.from_settings(self.cache, self._settings)
        self.governor = RiskGovernor(
            self._settings.daily_target_percent,
            self._settings.daily_max_loss_percent,
            clock=self._clock,
        )
        self.positions: Optional[PositionManager] = None
        self.scheduler = Scheduler(lambda: self._settings.check_interval_seconds, self._cycle)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._subscribers: List[EventSink] = []
        self._stream_tasks: List[asyncio.Task] = []
        self._rules: Optional[Tuple[int, RsiCandleStrategy, FilterChain]] = None
        self._running = False
        self._streams_down: Set[str] = set()

    # --- observers

    def subscribe(self, callback: EventSink) -> Callable[[], None]:
        """Register an event callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: EngineEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event.kind.value)

    def _notify(self, kind: EventKind, message: str, **data) -> None:
        self._emit(EngineEvent(kind, message, dict(symbol=self._settings.symbol, **data)))

    # --- operator surface

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def running(self) -> bool:
        return self._running

    def lock_for(self, symbol: str) -> asyncio.Lock:
        """Execution lock shared by indicator recompute and order sequences of a symbol."""
        if symbol not in self._locks:
            self._locks[symbol] = asyncio.Lock()
        return self._locks[symbol]

    async def start(self) -> None:
        """
        Configure the account, seed history, reconcile positions, then start
        the streams and the scheduler. Clears a previous halt.
        """
        if self._running:
            logger.info("Engine already running")
            return
        settings = self._settings.validate()
        symbol = settings.symbol
        logger.info("Starting engine %s %s leverage=%dx margin=%s hedge=%s (settings v%d)",
                    symbol, settings.interval, settings.leverage, settings.margin_type,
                    settings.hedge_mode, settings.version)
        await self.gateway.set_leverage(symbol, settings.leverage)
        await self.gateway.set_margin_type(symbol, settings.margin_type)
        filters = await self.gateway.get_symbol_filters(symbol)

        self.governor.configure(settings.daily_target_percent, settings.daily_max_loss_percent)
        self.governor.clear_breach()
        self.governor.reset(await self.gateway.get_balance())

        self.cache = MarketDataCache(settings.history_limit)
        self.cache.seed(symbol, await self.gateway.get_kline_history(symbol, settings.interval, settings.history_limit))
        self.indicators = IndicatorEngine.from_settings(self.cache, settings)
        self.indicators.update(symbol)

        if self.positions is not None:
            self.positions.cancel_background()
        self.positions = PositionManager(
            symbol,
            self.gateway,
            self.governor,
            filters,
            lock=self.lock_for(symbol),
            hedge_mode=settings.hedge_mode,
            emit=self._emit,
            price_source=lambda: self.cache.last_price(symbol),
            clock=self._clock,
        )
        await self.positions.sync(settings)

        self._streams_down.clear()
        self._stream_tasks = [
            asyncio.create_task(self.gateway.stream_klines(symbol, settings.interval, self._on_candle),
                                name=f"klines-{symbol}"),
            asyncio.create_task(self.gateway.stream_tickers([symbol], self._on_ticker), name=f"ticker-{symbol}"),
        ]
        for task in self._stream_tasks:
            task.add_done_callback(self._stream_done)
        self._running = True
        self.scheduler.start()
        stats = self.governor.stats
        self._notify(
            EventKind.STARTED,
            f"Engine started | {symbol} {settings.interval} | leverage {settings.leverage}x | "
            f"balance {stats.start_balance:.2f} | target {stats.target_profit:.2f} | max loss {stats.max_loss_budget:.2f}",
        )

    async def stop(self) -> None:
        """Stop scheduling and streams, then flatten open positions."""
        if not self._running:
            return
        self._running = False
        await self.scheduler.stop()
        for task in self._stream_tasks:
            task.cancel()
        await asyncio.gather(*self._stream_tasks, return_exceptions=True)
        self._stream_tasks = []
        closed: List[ClosedTrade] = []
        if self.positions is not None:
            closed = await self.positions.close_all("stop")
            self.positions.cancel_background()
        stats = self.governor.stats
        pnl = stats.pnl if stats else 0.0
        self._notify(EventKind.STOPPED, f"Engine stopped | closed {len(closed)} position(s) | daily pnl {pnl:.2f}")

    async def update_settings(self, partial: Mapping[str, object]) -> Settings:
        """
        Validate and atomically swap in a new Settings snapshot. On any
        ConfigurationError the previous settings stay active.
        """
        current = self._settings
        candidate = current.updated(partial)
        changed = {k for k in partial if getattr(candidate, k) != getattr(current, k)}
        if self._running:
            frozen = changed & RESTART_ONLY_SETTINGS
            if frozen:
                raise ConfigurationError(f"{', '.join(sorted(frozen))} can only change while stopped")
            leverage_pushed = False
            try:
                if "leverage" in changed:
                    await self.gateway.set_leverage(candidate.symbol, candidate.leverage)
                    leverage_pushed = True
                if "margin_type" in changed:
                    await self.gateway.set_margin_type(candidate.symbol, candidate.margin_type)
            except EngineError as e:
                if leverage_pushed:
                    await self._restore_leverage(current)
                raise ConfigurationError(f"exchange refused new settings: {e}") from e
        if changed & _INDICATOR_SETTINGS:
            self.indicators = IndicatorEngine.from_settings(self.cache, candidate)
            self.indicators.update(candidate.symbol)
        self.governor.configure(candidate.daily_target_percent, candidate.daily_max_loss_percent)
        self._settings = candidate
        logger.info("Settings v%d -> v%d: %s", current.version, candidate.version,
                    ", ".join(f"{k}={getattr(candidate, k)!r}" for k in sorted(changed)) or "no changes")
        self._notify(EventKind.SETTINGS_UPDATED, f"Settings updated to v{candidate.version}",
                     version=candidate.version, changed=sorted(changed))
        return candidate

    async def _restore_leverage(self, previous: Settings) -> None:
        try:
            await self.gateway.set_leverage(previous.symbol, previous.leverage)
        except EngineError as e:
            logger.error("Could not restore leverage %dx: %s", previous.leverage, e)
            self._notify(EventKind.ERROR, f"Leverage left at new value, restoring {previous.leverage}x failed: {e}")

    async def emergency_close_all(self) -> List[ClosedTrade]:
        """Close every open position now. Does not halt; new signals may still enter."""
        if self.positions is None:
            return []
        logger.warning("Emergency close requested")
        return await self.positions.close_all("emergency")

    def get_status(self) -> EngineStatus:
        s = self._settings
        stats = self.governor.stats
        pm = self.positions
        return EngineStatus(
            running=self._running,
            symbol=s.symbol,
            interval=s.interval,
            halted=pm.halted if pm else False,
            halt_reason=pm.halt_reason if pm else "",
            states=MappingProxyType(pm.states() if pm else {}),
            price=self.cache.last_price(s.symbol),
            indicators=self.indicators.get(s.symbol),
            open_positions=len(pm.positions()) if pm else 0,
            daily_pnl=stats.pnl if stats else 0.0,
            daily_trades=stats.trades if stats else 0,
            settings_version=s.version,
            cycles=self.scheduler.cycles,
            skipped_ticks=self.scheduler.skipped,
            market_data_ok=not self._streams_down,
        )

    def get_daily_stats(self) -> Optional[DailyStats]:
        return self.governor.stats

    def get_active_positions(self) -> Tuple[Position, ...]:
        return self.positions.positions() if self.positions else ()

    # --- market data

    async def _on_candle(self, candle: Candle) -> None:
        symbol = self._settings.symbol
        async with self.lock_for(symbol):
            if self.cache.apply_candle(symbol, candle):
                self.indicators.update(symbol)

    async def _on_ticker(self, ticker: Ticker) -> None:
        self.cache.update_ticker(ticker)

    def _stream_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Stream %s stopped: %r", task.get_name(), exc)
            self._streams_down.add(task.get_name())
            self._notify(EventKind.ERROR, f"Market data stream {task.get_name()} stopped: {exc}")

    # --- signal cycle

    def _rules_for(self, settings: Settings) -> Tuple[RsiCandleStrategy, FilterChain]:
        if self._rules is None or self._rules[0] != settings.version:
            self._rules = (
                settings.version,
                RsiCandleStrategy.from_settings(settings),
                FilterChain.from_settings(settings, clock=self._clock),
            )
        return self._rules[1], self._rules[2]

    async def _roll_day(self) -> bool:
        """Reset daily stats from the current balance. False if the balance is unavailable."""
        try:
            balance = await self.gateway.get_balance()
            previous = self.governor.reset(balance)
        except EngineError as e:
            logger.error("Daily reset postponed, balance unavailable: %s", e)
            self._notify(EventKind.ERROR, f"Daily reset postponed, balance unavailable: {e}")
            return False
        if previous is not None and previous.trades:
            summary = summarize_day(previous.closed_pnls, previous.start_balance)
            self._notify(EventKind.DAILY_SUMMARY,
                         f"Daily summary {previous.date.isoformat()}\n{summary.format(previous.start_balance)}",
                         date=previous.date.isoformat(), pnl=previous.pnl, trades=previous.trades)
        return True

    async def _cycle(self, cycle_id: int) -> None:
        settings = self._settings
        symbol = settings.symbol
        pm = self.positions
        if pm is None:
            return
        if self.governor.needs_reset() and not await self._roll_day():
            return

        try:
            await pm.sync(settings)
        except EngineError as e:
            logger.error("%s position poll failed, skipping cycle: %s", symbol, e)
            self._notify(EventKind.ERROR, f"Position poll failed, cycle skipped: {e}")
            return

        check = self.governor.check_limits()
        if check.halt:
            kind = EventKind.TARGET_REACHED if check.breach is RiskLimitBreach.TARGET_REACHED else EventKind.LOSS_LIMIT
            stats = self.governor.stats
            self._notify(kind, f"{check.reason}\nClosing all positions and halting.",
                         pnl=stats.pnl, trades=stats.trades)
            await pm.halt(check.reason)
            return
        if not check.proceed or pm.halted:
            logger.debug("Cycle %d: no new entries (%s)", cycle_id, check.reason or pm.halt_reason)
            return
        if self._streams_down:
            logger.warning("Cycle %d: no new entries while %s down", cycle_id, ", ".join(sorted(self._streams_down)))
            return

        strategy, filters = self._rules_for(settings)
        snapshot = self.indicators.get(symbol)
        last_candle = self.cache.series(symbol).last_final()
        signal = strategy.evaluate(snapshot, last_candle)
        if signal.action is SignalAction.WAIT:
            logger.debug("Cycle %d: WAIT (%s)", cycle_id, signal.reason)
            return
        verdict = filters.evaluate(signal, snapshot, self.cache.series(symbol).recent(5))
        if not verdict.admitted:
            return
        price = self.cache.last_price(symbol)
        if price is None:
            logger.warning("Cycle %d: %s admitted but no price available", cycle_id, signal.action.value)
            return
        logger.info("Cycle %d: %s admitted (%s, confidence %.2f)", cycle_id, signal.action.value,
                    signal.reason, signal.confidence)
        try:
            await pm.open(signal.action.side, signal, price, settings)
        except PartialBracketFailure as e:
            logger.critical("%s", e)
