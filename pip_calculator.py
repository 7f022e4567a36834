"""
Pip Calculator
Pip size classification and signed pip movement for closed and open positions
"""

import logging
import math
import re
from typing import Optional, Union

logger = logging.getLogger(__name__)

PIP_SIZE_FX = 0.0001
PIP_SIZE_JPY = 0.01
PIP_SIZE_METAL = 0.01
PIP_SIZE_INDEX = 1.0
PIP_SIZE_CRYPTO = 1.0

CRYPTO_PREFIXES = ('BTC', 'ETH', 'XRP', 'LTC', 'BCH', 'SOL', 'ADA', 'DOGE', 'DOT', 'BNB')
CRYPTO_MARKERS = ('CRYPTO', 'CRYPT')

# Common CFD index tickers (US30, NAS100, GER40, JP225, ...) and index suffixes.
# Anchored so FX pairs such as USDCAD or AUDUSD never match.
INDEX_PATTERN = re.compile(
    r'^(US30|US100|US500|US2000|USTEC|NAS100|NDX|SPX|SP500|DJ30|DJI|DOW|WS30'
    r'|GER30|GER40|DE30|DE40|DAX|UK100|FTSE|FRA40|CAC|EU50|ESTX50|STOXX'
    r'|JP225|JPN225|NK225|NIKKEI|HK50|HSI|AUS200|ASX|SG30|CHINA50|CN50)'
)
INDEX_MARKERS = ('INDEX', '.IDX', '_IDX', 'CASH')

METAL_MARKERS = ('XAU', 'XAG', 'GOLD', 'SILVER')

SIDE_BUY = 'BUY'
SIDE_SELL = 'SELL'

Number = Union[int, float, None]


def normalize_side(side: Optional[str]) -> Optional[str]:
    """
    Normalize broker side strings ('POSITION_TYPE_BUY', 'buy', 'ORDER_TYPE_SELL')

    Returns:
        'BUY', 'SELL' or None when the side is unknown
    """
    if not side:
        return None
    side_upper = str(side).upper()
    if 'BUY' in side_upper and 'SELL' not in side_upper:
        return SIDE_BUY
    if 'SELL' in side_upper:
        return SIDE_SELL
    return None


def get_pip_size(symbol: str) -> float:
    """
    Get pip size for a symbol

    Args:
        symbol: Trading symbol (e.g., 'EURUSD', 'USDJPY', 'US30', 'BTCUSD', 'XAUUSD')

    Returns:
        Pip size (0.0001 default FX, 0.01 JPY/metals, 1.0 indices/crypto)
    """
    symbol_upper = (symbol or '').upper()

    # Crypto first, BTCJPY is crypto not a JPY pair
    if symbol_upper.startswith(CRYPTO_PREFIXES) or any(m in symbol_upper for m in CRYPTO_MARKERS):
        return PIP_SIZE_CRYPTO

    if 'JPY' in symbol_upper:
        return PIP_SIZE_JPY

    if INDEX_PATTERN.match(symbol_upper) or any(m in symbol_upper for m in INDEX_MARKERS):
        return PIP_SIZE_INDEX

    if any(m in symbol_upper for m in METAL_MARKERS):
        return PIP_SIZE_METAL

    return PIP_SIZE_FX


def _is_usable_price(value: Number) -> bool:
    if value is None:
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return not math.isnan(number) and number != 0


def calculate_pips(symbol: str, side: Optional[str], open_price: Number, close_price: Number) -> float:
    """
    Calculate signed pip movement of a position

    Positive pips are a move in the position's favour. SELL positions gain
    when the price falls.

    Args:
        symbol: Trading symbol
        side: 'BUY'/'SELL' (broker variants accepted); anything that is not
            recognisably BUY is priced as SELL
        open_price: Entry price
        close_price: Close price, or current price for open positions

    Returns:
        Pips rounded to one decimal, 0.0 when any input is missing
    """
    if not symbol:
        logger.warning("Pip calculation skipped: missing symbol")
        return 0.0

    if not _is_usable_price(open_price) or not _is_usable_price(close_price):
        logger.warning(
            f"Pip calculation skipped for {symbol}: open={open_price}, close={close_price}"
        )
        return 0.0

    normalized_side = normalize_side(side)
    if normalized_side is None:
        logger.warning(f"Pip calculation for {symbol}: unknown side '{side}', pricing as SELL")
        normalized_side = SIDE_SELL

    pip_size = get_pip_size(symbol)
    direction = 1 if normalized_side == SIDE_BUY else -1
    pips = (float(close_price) - float(open_price)) / pip_size * direction

    result = round(pips, 1)
    logger.debug(
        f"Pips {symbol} {normalized_side}: {open_price} -> {close_price} "
        f"(pip size {pip_size}) = {result}"
    )
    return result + 0.0  # normalizes -0.0


def format_pips(pips: Number) -> str:
    """Format pips for display: '+12.5', '-3.0', '0'"""
    if pips is None or not isinstance(pips, (int, float)) or math.isnan(pips) or pips == 0:
        return '0'
    sign = '+' if pips > 0 else ''
    return f"{sign}{pips:.1f}"
