"""Unit tests for execution.positions."""

import asyncio
import dataclasses

import pytest
from conftest import QUIET_HOUR, FakeGateway

from futures_bot.core.errors import ExchangeRejection, PartialBracketFailure, TransientNetworkError
from futures_bot.core.events import EventKind
from futures_bot.core.types import PositionState, Side, Signal, SignalAction
from futures_bot.execution.base import ExchangePosition
from futures_bot.execution.positions import PositionManager, bracket_prices, entry_quantity
from futures_bot.risk.governor import RiskGovernor
from futures_bot.utils.exchange_filters import SymbolFilters

LONG_SIGNAL = Signal(SignalAction.LONG, "RSI oversold + green candle", 0.5)
SHORT_SIGNAL = Signal(SignalAction.SHORT, "RSI overbought + red candle", 0.5)


def make_manager(gateway, events, hedge_mode=True):
    governor = RiskGovernor(5.0, 3.0, clock=lambda: QUIET_HOUR)
    governor.reset(1000.0)
    pm = PositionManager(
        "BTCUSDT",
        gateway,
        governor,
        gateway.filters,
        hedge_mode=hedge_mode,
        emit=events.append,
        price_source=lambda: gateway.price,
        clock=lambda: QUIET_HOUR,
    )
    return pm, governor


def kinds(events):
    return [e.kind for e in events]


def test_entry_quantity_floors_to_step():
    filters = SymbolFilters(min_qty=0.001, step_size=0.001, tick_size=0.1, min_notional=5.0)
    # 20 * 10 / 30000 = 0.006666..
    assert entry_quantity(20.0, 10, 30000.0, filters) == 0.006


def test_entry_quantity_below_minimum_rejected():
    filters = SymbolFilters(min_qty=0.01, step_size=0.01, tick_size=0.1, min_notional=5.0)
    with pytest.raises(ExchangeRejection):
        entry_quantity(1.0, 1, 30000.0, filters)
    with pytest.raises(ExchangeRejection):
        # 0.01 * 100 = 1 USDT notional, under the 5 USDT minimum
        entry_quantity(1.0, 1, 100.0, SymbolFilters(min_qty=0.01, step_size=0.01, min_notional=5.0))


def test_bracket_prices_per_side(settings):
    assert bracket_prices(Side.LONG, 100.0, settings, 0.01) == (102.0, 99.0)
    assert bracket_prices(Side.SHORT, 100.0, settings, 0.01) == (98.0, 101.0)


def test_bracket_prices_roi_mode(settings):
    roi = dataclasses.replace(settings, roi_based_tp=True)
    tp, sl = bracket_prices(Side.LONG, 100.0, roi, 0.01)
    assert tp == pytest.approx(100.2)
    assert sl == 99.0


def test_open_places_entry_then_bracket(settings):
    async def scenario():
        gw = FakeGateway()
        events = []
        pm, _ = make_manager(gw, events)
        pos = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        return gw, pm, pos, events

    gw, pm, pos, events = asyncio.run(scenario())
    assert [s.type for s in gw.placed] == ["MARKET", "TAKE_PROFIT_MARKET", "STOP_MARKET"]
    entry, tp, sl = gw.placed
    assert entry.side == "BUY" and entry.position_side == "LONG" and entry.quantity == 1.0
    assert tp.side == "SELL" and tp.stop_price == 102.0
    assert sl.side == "SELL" and sl.stop_price == 99.0
    assert pos.entry_price == 100.0 and pos.quantity == 1.0
    assert pos.tp_order_id is not None and pos.sl_order_id is not None
    assert pm.state(Side.LONG) is PositionState.OPEN
    assert pm.state(Side.SHORT) is PositionState.FLAT
    assert kinds(events) == [EventKind.ENTRY, EventKind.BRACKET_PLACED]


def test_take_profit_fill_realizes_pnl(settings):
    async def scenario():
        gw = FakeGateway()
        events = []
        pm, governor = make_manager(gw, events)
        pos = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        gw.fill_resting(pos.tp_order_id, 102.0)
        closed = await pm.sync(settings)
        return gw, pm, governor, pos, closed

    gw, pm, governor, pos, closed = asyncio.run(scenario())
    assert len(closed) == 1
    assert closed[0].pnl == pytest.approx(2.0)
    assert closed[0].exit_reason == "take_profit"
    assert governor.stats.pnl == pytest.approx(2.0)
    assert governor.stats.trades == 1
    assert pos.sl_order_id in gw.cancelled
    assert pm.state(Side.LONG) is PositionState.FLAT
    assert pm.positions() == ()


def test_short_stop_loss_fill(settings):
    async def scenario():
        gw = FakeGateway()
        pm, governor = make_manager(gw, [])
        pos = await pm.open(Side.SHORT, SHORT_SIGNAL, 100.0, settings)
        gw.fill_resting(pos.sl_order_id, 101.0)
        closed = await pm.sync(settings)
        return governor, closed

    governor, closed = asyncio.run(scenario())
    assert closed[0].exit_reason == "stop_loss"
    assert closed[0].pnl == pytest.approx(-1.0)
    assert governor.stats.pnl == pytest.approx(-1.0)


def test_both_legs_filled_counted_once(settings):
    async def scenario():
        gw = FakeGateway()
        pm, governor = make_manager(gw, [])
        pos = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        gw.fill_resting(pos.tp_order_id, 102.0)
        gw.fill_resting(pos.sl_order_id, 99.0)
        first = await pm.sync(settings)
        second = await pm.sync(settings)
        return governor, first, second

    governor, first, second = asyncio.run(scenario())
    assert len(first) == 1 and second == []
    assert governor.stats.trades == 1
    assert governor.stats.pnl == pytest.approx(2.0)


def test_concurrent_signals_open_one_position(settings):
    async def scenario():
        gw = FakeGateway()
        gw.order_delay = 0.01
        pm, _ = make_manager(gw, [])
        results = await asyncio.gather(*(pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings) for _ in range(3)))
        return gw, pm, results

    gw, pm, results = asyncio.run(scenario())
    assert len(gw.market_orders()) == 1
    assert sum(r is not None for r in results) == 1
    assert len(pm.positions()) == 1


def test_signal_for_held_side_is_ignored(settings):
    async def scenario():
        gw = FakeGateway()
        pm, _ = make_manager(gw, [])
        await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        again = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        other = await pm.open(Side.SHORT, SHORT_SIGNAL, 100.0, settings)
        return gw, again, other

    gw, again, other = asyncio.run(scenario())
    assert again is None
    assert other is not None
    assert len(gw.market_orders()) == 2


def test_entry_rejection_reverts_to_flat(settings):
    async def scenario():
        gw = FakeGateway()
        gw.failures["MARKET"] = [ExchangeRejection("Margin is insufficient.", -2019)]
        events = []
        pm, _ = make_manager(gw, events)
        pos = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        return gw, pm, pos, events

    gw, pm, pos, events = asyncio.run(scenario())
    assert pos is None
    assert pm.state(Side.LONG) is PositionState.FLAT
    assert pm.positions() == ()
    assert kinds(events) == [EventKind.ENTRY_REJECTED]
    assert [s.type for s in gw.placed] == ["MARKET"]


def test_unfilled_entry_is_cancelled(settings):
    async def scenario():
        gw = FakeGateway()
        gw.market_status = "NEW"
        pm, _ = make_manager(gw, [])
        pos = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        return gw, pm, pos

    gw, pm, pos = asyncio.run(scenario())
    assert pos is None
    assert gw.cancelled == ["1"]
    assert pm.state(Side.LONG) is PositionState.FLAT


def test_partial_bracket_keeps_position_and_retries(settings):
    async def scenario():
        gw = FakeGateway()
        gw.failures["STOP_MARKET"] = [ExchangeRejection("Order would immediately trigger.", -2021)]
        events = []
        pm, _ = make_manager(gw, events)
        with pytest.raises(PartialBracketFailure) as info:
            await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        during = pm.position(Side.LONG)
        unprotected = pm.unprotected_sides()
        await asyncio.sleep(0.1)
        return gw, pm, info.value, during, unprotected, events

    gw, pm, failure, during, unprotected, events = asyncio.run(scenario())
    assert failure.missing == ("stop_loss",)
    # ids are attached together, never one at a time
    assert during.tp_order_id is None and during.sl_order_id is None
    assert unprotected == [Side.LONG]
    assert pm.state(Side.LONG) is PositionState.OPEN
    after = pm.position(Side.LONG)
    assert after.tp_order_id is not None and after.sl_order_id is not None
    assert pm.unprotected_sides() == []
    assert [s.type for s in gw.placed].count("TAKE_PROFIT_MARKET") == 1
    assert kinds(events) == [EventKind.ENTRY, EventKind.BRACKET_FAILURE, EventKind.BRACKET_PLACED]


def test_close_cancels_bracket_then_market_reduces(settings):
    async def scenario():
        gw = FakeGateway()
        pm, governor = make_manager(gw, [], hedge_mode=False)
        pos = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        gw.price = 101.0
        first = await pm.close(Side.LONG)
        second = await pm.close(Side.LONG)
        return gw, pm, governor, pos, first, second

    gw, pm, governor, pos, first, second = asyncio.run(scenario())
    assert set(gw.cancelled) == {pos.tp_order_id, pos.sl_order_id}
    close = gw.placed[-1]
    assert close.type == "MARKET" and close.side == "SELL" and close.reduce_only is True
    assert first.pnl == pytest.approx(1.0) and first.exit_reason == "manual"
    assert second is None
    assert governor.stats.trades == 1
    assert len(gw.market_orders()) == 2


def test_halt_flattens_and_blocks_entries(settings):
    async def scenario():
        gw = FakeGateway()
        events = []
        pm, governor = make_manager(gw, events)
        await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        gw.price = 97.0
        closed = await pm.halt("daily loss limit hit")
        again = await pm.halt("daily loss limit hit")
        blocked = await pm.open(Side.SHORT, SHORT_SIGNAL, 97.0, settings)
        return gw, pm, governor, closed, again, blocked, events

    gw, pm, governor, closed, again, blocked, events = asyncio.run(scenario())
    assert gw.cancel_all_calls == 1
    assert gw.positions == {}
    assert len(closed) == 1 and closed[0].exit_reason == "halt"
    assert closed[0].pnl == pytest.approx(-3.0)
    assert again == [] and blocked is None
    assert pm.state(Side.LONG) is PositionState.HALTED
    assert kinds(events).count(EventKind.HALTED) == 1


def test_sync_adopts_untracked_exchange_position(settings):
    async def scenario():
        gw = FakeGateway()
        gw.positions[Side.SHORT] = ExchangePosition("BTCUSDT", Side.SHORT, 0.5, 100.0)
        pm, _ = make_manager(gw, [])
        await pm.sync(settings)
        return gw, pm

    gw, pm = asyncio.run(scenario())
    pos = pm.position(Side.SHORT)
    assert pos is not None and pos.quantity == 0.5
    assert pos.tp_price == 98.0 and pos.sl_price == 101.0
    assert pos.tp_order_id is not None and pos.sl_order_id is not None
    assert gw.cancel_all_calls == 1
    assert pm.state(Side.SHORT) is PositionState.OPEN


def test_transient_entry_failure_reverts_to_flat(settings):
    async def scenario():
        gw = FakeGateway()
        gw.failures["MARKET"] = [TransientNetworkError("read timeout")]
        events = []
        pm, _ = make_manager(gw, events)
        pos = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        return pm, pos, events

    pm, pos, events = asyncio.run(scenario())
    assert pos is None
    assert pm.state(Side.LONG) is PositionState.FLAT
    assert kinds(events) == [EventKind.ERROR]


def test_close_during_poll_is_not_adopted_again(settings):
    async def scenario():
        gw = FakeGateway()
        pm, governor = make_manager(gw, [])
        await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        gw.poll_delay = 0.01
        gw.price = 101.0
        poll = asyncio.create_task(pm.sync(settings))
        await asyncio.sleep(0)
        closed = await pm.close(Side.LONG)
        await poll
        gw.poll_delay = 0.0
        gw.price = 90.0
        later = await pm.sync(settings)
        return gw, pm, governor, closed, later

    gw, pm, governor, closed, later = asyncio.run(scenario())
    assert closed.pnl == pytest.approx(1.0)
    assert later == []
    assert pm.positions() == ()
    assert governor.stats.trades == 1
    assert governor.stats.pnl == pytest.approx(1.0)
    assert gw.resting("TAKE_PROFIT_MARKET") == [] and gw.resting("STOP_MARKET") == []
    assert len(gw.market_orders()) == 2


def test_rejected_close_reverts_to_open_and_rebrackets(settings):
    async def scenario():
        gw = FakeGateway()
        events = []
        pm, governor = make_manager(gw, events)
        first = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        gw.failures["MARKET"] = [ExchangeRejection("ReduceOnly Order is rejected.", -2022)]
        result = await pm.close(Side.LONG)
        return gw, pm, governor, first, result, events

    gw, pm, governor, first, result, events = asyncio.run(scenario())
    assert result is None
    assert pm.state(Side.LONG) is PositionState.OPEN
    pos = pm.position(Side.LONG)
    assert {first.tp_order_id, first.sl_order_id} <= set(gw.cancelled)
    assert gw.resting("TAKE_PROFIT_MARKET") == [pos.tp_order_id]
    assert gw.resting("STOP_MARKET") == [pos.sl_order_id]
    assert pos.tp_order_id != first.tp_order_id
    assert governor.stats.trades == 0
    assert kinds(events)[-2:] == [EventKind.ERROR, EventKind.BRACKET_PLACED]


def test_close_with_uncancelled_leg_keeps_it_tracked(settings):
    async def scenario():
        gw = FakeGateway()
        pm, governor = make_manager(gw, [])
        first = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        # TP cancel goes through, SL cancel times out
        gw.cancel_failures = [None, TransientNetworkError("timeout")]
        result = await pm.close(Side.LONG)
        return gw, pm, governor, first, result

    gw, pm, governor, first, result = asyncio.run(scenario())
    assert result is None
    pos = pm.position(Side.LONG)
    assert pos.sl_order_id == first.sl_order_id
    assert pos.tp_order_id != first.tp_order_id
    # every live bracket order belongs to the tracked position
    assert gw.resting("TAKE_PROFIT_MARKET") == [pos.tp_order_id]
    assert gw.resting("STOP_MARKET") == [pos.sl_order_id]
    assert len(gw.market_orders()) == 1
    assert governor.stats.trades == 0


def test_close_with_failed_cancel_keeps_original_bracket(settings):
    async def scenario():
        gw = FakeGateway()
        pm, _ = make_manager(gw, [])
        first = await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        gw.cancel_failures = [TransientNetworkError("timeout")]
        await pm.close(Side.LONG)
        return gw, pm, first

    gw, pm, first = asyncio.run(scenario())
    pos = pm.position(Side.LONG)
    assert (pos.tp_order_id, pos.sl_order_id) == (first.tp_order_id, first.sl_order_id)
    assert gw.resting("TAKE_PROFIT_MARKET") == [first.tp_order_id]
    assert gw.resting("STOP_MARKET") == [first.sl_order_id]
    assert pm.state(Side.LONG) is PositionState.OPEN


def test_halt_waits_for_close_in_progress(settings):
    async def scenario():
        gw = FakeGateway()
        events = []
        pm, governor = make_manager(gw, events)
        await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        gw.order_delay = 0.01
        gw.price = 101.0
        closing = asyncio.create_task(pm.close(Side.LONG))
        await asyncio.sleep(0)
        flattened = await pm.halt("daily loss limit hit")
        manual = await closing
        return gw, pm, governor, manual, flattened, events

    gw, pm, governor, manual, flattened, events = asyncio.run(scenario())
    assert manual.exit_reason == "manual"
    assert manual.pnl == pytest.approx(1.0)
    assert flattened == []
    assert governor.stats.trades == 1
    assert len(gw.market_orders()) == 2
    assert pm.state(Side.LONG) is PositionState.HALTED
    assert kinds(events)[-2:] == [EventKind.POSITION_CLOSED, EventKind.HALTED]


def test_halt_reports_failed_order_cancel(settings):
    async def scenario():
        gw = FakeGateway()
        events = []
        pm, _ = make_manager(gw, events)
        await pm.open(Side.LONG, LONG_SIGNAL, 100.0, settings)
        gw.cancel_all_failures = [TransientNetworkError("timeout")]
        closed = await pm.halt("daily loss limit hit")
        return gw, closed, events

    gw, closed, events = asyncio.run(scenario())
    assert EventKind.ERROR in kinds(events)
    assert len(closed) == 1
    assert gw.positions == {}
    assert kinds(events)[-1] is EventKind.HALTED
