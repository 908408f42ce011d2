"""Unit tests for utils.timeframes."""

import pytest
from futures_bot.utils.timeframes import timeframe_minutes, timeframe_seconds


def test_timeframe_minutes():
    assert timeframe_minutes("5m") == 5
    assert timeframe_minutes("1h") == 60
    assert timeframe_minutes("1d") == 1440


def test_timeframe_seconds():
    assert timeframe_seconds("1m") == 60
    assert timeframe_seconds("4h") == 14400
    assert timeframe_seconds("1w") == 604800


@pytest.mark.parametrize("tf", ["1x", "", "m", "0m", "-5m"])
def test_timeframe_invalid(tf):
    with pytest.raises(ValueError):
        timeframe_seconds(tf)
