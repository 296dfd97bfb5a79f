"""
TokenExchange - Amount Conversion

Bitcoin amounts are kept in satoshi and token amounts in currency units
(whole tokens * 10^decimals). The exchange rate is the price of one whole
token in BTC.

    tokens = btc / exchange_rate
    btc    = tokens * exchange_rate

Conversions round DOWN so the exchange never gives out more than it took in.
"""

from decimal import Decimal, ROUND_DOWN, InvalidOperation
from typing import Union

SATOSHI_PER_BTC = 100_000_000
BTC_DECIMALS = 8

Number = Union[int, str, Decimal]


def btc_to_satoshi(btc: Number) -> int:
    """
    Convert a BTC amount to satoshi.

    Raises:
        ValueError: If the amount is not a number or has more than 8 decimals

    Examples:
        >>> btc_to_satoshi("1.5")
        150000000
    """
    try:
        value = Decimal(str(btc))
    except InvalidOperation:
        raise ValueError(f"Invalid BTC amount: {btc!r}")
    sats = value * SATOSHI_PER_BTC
    if sats != sats.to_integral_value():
        raise ValueError(f"BTC amount has more than {BTC_DECIMALS} decimals: {btc}")
    return int(sats)


def satoshi_to_btc(sats: int) -> Decimal:
    return Decimal(sats).scaleb(-BTC_DECIMALS)


def satoshi_to_units(sats: int, exchange_rate: Decimal, decimals: int) -> int:
    """
    Token units bought by a bitcoin deposit.

    Examples:
        >>> satoshi_to_units(150000000, Decimal("1"), 4)
        15000
        >>> satoshi_to_units(100000000, Decimal("0.5"), 2)
        200
    """
    tokens = satoshi_to_btc(sats) / exchange_rate
    return int((tokens.scaleb(decimals)).to_integral_value(rounding=ROUND_DOWN))


def units_to_satoshi(units: int, exchange_rate: Decimal, decimals: int) -> int:
    """
    Satoshi paid out for redeemed token units.

    Examples:
        >>> units_to_satoshi(15000, Decimal("1"), 4)
        150000000
    """
    btc = Decimal(units).scaleb(-decimals) * exchange_rate
    return int(btc.scaleb(BTC_DECIMALS).to_integral_value(rounding=ROUND_DOWN))


def format_units(units: int, decimals: int) -> str:
    """Plain decimal string, e.g. format_units(15000, 4) == "1.5000"."""
    return f"{Decimal(units).scaleb(-decimals):.{decimals}f}"


def format_btc(sats: int) -> str:
    """Plain decimal string with 8 places, e.g. "1.50000000"."""
    return f"{satoshi_to_btc(sats):.{BTC_DECIMALS}f}"
