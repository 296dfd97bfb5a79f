"""Amount conversion between satoshi and token units."""

from decimal import Decimal

import pytest

from tokenexchange.amounts import (
    btc_to_satoshi, format_btc, format_units, satoshi_to_btc, satoshi_to_units, units_to_satoshi,
)


def test_btc_to_satoshi():
    assert btc_to_satoshi("1.5") == 150000000
    assert btc_to_satoshi(Decimal("0.00000001")) == 1
    assert btc_to_satoshi(2) == 200000000


def test_btc_to_satoshi_rejects_sub_satoshi_precision():
    with pytest.raises(ValueError):
        btc_to_satoshi("0.000000001")


def test_btc_to_satoshi_rejects_garbage():
    with pytest.raises(ValueError):
        btc_to_satoshi("one bitcoin")


def test_satoshi_to_btc():
    assert satoshi_to_btc(150000000) == Decimal("1.5")


def test_deposit_at_par_rate():
    # 1.5 BTC at 1 BTC per token, 4 decimals
    assert satoshi_to_units(150000000, Decimal("1"), 4) == 15000


def test_deposit_at_half_rate_doubles_tokens():
    assert satoshi_to_units(100000000, Decimal("0.5"), 2) == 200


def test_conversion_rounds_down():
    # 0.00012345 BTC buys 1.2345 tokens, only 1.23 fit in 2 decimals
    assert satoshi_to_units(12345, Decimal("0.0001"), 2) == 123
    assert satoshi_to_units(99, Decimal("1"), 4) == 0


def test_redemption_payout():
    assert units_to_satoshi(15000, Decimal("1"), 4) == 150000000
    assert units_to_satoshi(1, Decimal("0.00000001"), 4) == 0


def test_formatting():
    assert format_units(15000, 4) == "1.5000"
    assert format_units(7, 0) == "7"
    assert format_btc(150000000) == "1.50000000"
    assert format_btc(1) == "0.00000001"
