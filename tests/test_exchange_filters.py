"""Unit tests for utils.exchange_filters."""

import pytest
from futures_bot.utils.exchange_filters import (
    SymbolFilters,
    parse_symbol_filters,
    round_price,
    round_quantity,
)

BTC_INFO = {
    "symbol": "BTCUSDT",
    "filters": [
        {"filterType": "PRICE_FILTER", "tickSize": "0.10", "minPrice": "556.80"},
        {"filterType": "LOT_SIZE", "minQty": "0.001", "stepSize": "0.001", "maxQty": "1000"},
        {"filterType": "MIN_NOTIONAL", "notional": "100"},
    ],
}


def test_parse_symbol_filters():
    f = parse_symbol_filters(BTC_INFO)
    assert f == SymbolFilters(min_qty=0.001, step_size=0.001, tick_size=0.1, min_notional=100.0)


def test_parse_symbol_filters_defaults():
    assert parse_symbol_filters(None) == SymbolFilters()


def test_round_quantity_floors():
    assert round_quantity(0.0129, 0.001, 0.001) == 0.012
    # 0.3 / 0.1 is 2.9999999999999996 in binary floating point
    assert round_quantity(0.3, 0.1, 0.1) == 0.3
    assert round_quantity(0.0004, 0.001, 0.001) == 0.0
    assert round_quantity(-1.0, 0.001, 0.001) == 0.0


def test_round_price():
    assert round_price(30123.456, 0.1) == pytest.approx(30123.5)
    assert round_price(1.23456, 0.0001) == pytest.approx(1.2346)
