"""Unit tests for risk.governor."""

from datetime import date

import pytest

from futures_bot.core.errors import ConfigurationError, RiskLimitBreach
from futures_bot.risk.governor import RiskGovernor

DAY = date(2024, 3, 1)


def make_governor(balance=1000.0):
    g = RiskGovernor(daily_target_percent=5.0, daily_max_loss_percent=3.0)
    g.reset(balance, DAY)
    return g


def test_reset_derives_limits():
    g = make_governor()
    s = g.stats
    assert (s.start_balance, s.target_profit, s.max_loss_budget) == (1000.0, 50.0, 30.0)
    assert (s.pnl, s.trades, s.date) == (0.0, 0, DAY)


def test_pnl_sums_exactly():
    g = make_governor()
    for pnl in (2.0, -1.5, 0.25):
        g.record_close(pnl)
    assert g.stats.pnl == pytest.approx(0.75)
    assert g.stats.trades == 3
    assert g.stats.closed_pnls == (2.0, -1.5, 0.25)


def test_loss_limit_halts_once():
    g = make_governor()
    g.record_close(-20.0)
    assert g.check_limits().proceed
    g.record_close(-10.0)
    first = g.check_limits()
    assert first.halt and not first.proceed
    assert first.breach is RiskLimitBreach.LOSS_LIMIT
    second = g.check_limits()
    assert not second.halt and not second.proceed


def test_target_reached():
    g = make_governor()
    g.record_close(50.0)
    check = g.check_limits()
    assert check.halt and check.breach is RiskLimitBreach.TARGET_REACHED


def test_breach_survives_day_reset_until_cleared():
    g = make_governor()
    g.record_close(-30.0)
    g.check_limits()
    g.reset(970.0, date(2024, 3, 2))
    assert not g.check_limits().proceed
    g.clear_breach()
    assert g.check_limits().proceed


def test_reset_once_per_day():
    g = make_governor()
    assert not g.needs_reset(DAY)
    assert g.needs_reset(date(2024, 3, 2))
    previous = g.reset(1010.0, date(2024, 3, 2))
    assert previous.date == DAY


def test_invalid_balance_and_order_of_calls():
    with pytest.raises(ConfigurationError):
        RiskGovernor(5.0, 3.0).reset(0.0, DAY)
    with pytest.raises(RuntimeError):
        RiskGovernor(5.0, 3.0).record_close(1.0)
    assert not RiskGovernor(5.0, 3.0).check_limits().proceed
