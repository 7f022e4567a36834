import math

import pytest

from pip_calculator import get_pip_size, calculate_pips, normalize_side, format_pips


@pytest.mark.parametrize('symbol, expected', [
    ('EURUSD', 0.0001),
    ('USDCAD', 0.0001),
    ('AUDUSD', 0.0001),
    ('USDJPY', 0.01),
    ('EURJPY', 0.01),
    ('XAUUSD', 0.01),
    ('XAGUSD', 0.01),
    ('US30', 1.0),
    ('NAS100', 1.0),
    ('GER40', 1.0),
    ('BTCUSD', 1.0),
    ('BTCJPY', 1.0),
    ('ethusd', 1.0),
])
def test_pip_size_by_symbol_class(symbol, expected):
    assert get_pip_size(symbol) == expected


def test_buy_gains_when_price_rises():
    assert calculate_pips('EURUSD', 'BUY', 1.1000, 1.1050) == 50.0


def test_sell_gains_when_price_falls():
    assert calculate_pips('EURUSD', 'SELL', 1.1000, 1.1050) == -50.0
    assert calculate_pips('USDJPY', 'SELL', 150.00, 149.50) == 50.0


def test_broker_side_strings_are_accepted():
    assert calculate_pips('EURUSD', 'POSITION_TYPE_SELL', 1.1050, 1.1000) == 50.0
    assert normalize_side('ORDER_TYPE_BUY') == 'BUY'
    assert normalize_side('sell') == 'SELL'
    assert normalize_side('hedge') is None


def test_unknown_side_is_priced_as_sell():
    assert calculate_pips('EURUSD', None, 1.1000, 1.1010) == -10.0
    assert calculate_pips('EURUSD', 'hedge', 1.1000, 1.0990) == 10.0
    assert calculate_pips('EURUSD', 'POSITION_TYPE_BUY', 1.1000, 1.1010) == 10.0


@pytest.mark.parametrize('open_price, close_price', [
    (None, 1.1),
    (1.1, None),
    (0, 1.1),
    (1.1, float('nan')),
])
def test_missing_prices_yield_zero(open_price, close_price):
    assert calculate_pips('EURUSD', 'BUY', open_price, close_price) == 0.0


def test_missing_symbol_yields_zero():
    assert calculate_pips('', 'BUY', 1.1, 1.2) == 0.0


def test_no_negative_zero():
    result = calculate_pips('EURUSD', 'SELL', 1.1, 1.1)
    assert result == 0.0
    assert math.copysign(1, result) == 1


def test_index_and_crypto_pips_are_points():
    assert calculate_pips('US30', 'BUY', 39000.0, 39125.5) == 125.5
    assert calculate_pips('BTCUSD', 'SELL', 65000.0, 64000.0) == 1000.0


def test_format_pips():
    assert format_pips(12.5) == '+12.5'
    assert format_pips(-3) == '-3.0'
    assert format_pips(0) == '0'
    assert format_pips(None) == '0'
