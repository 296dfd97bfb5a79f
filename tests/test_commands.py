"""Request parameter parsing and API error codes."""

import pytest

from tokenexchange.commands import (
    BlockReceived, CommandError, DeleteToken, GetAddress, GetStatus, GetTokens, GetTransactions,
    MalformedParameter, MissingParameter, TransactionReceived, UnknownFunction, parse_command,
)

TXID = "AB" * 32


def error_code(params):
    with pytest.raises(CommandError) as info:
        parse_command(params)
    return info.value.error_code


def test_missing_function():
    with pytest.raises(MissingParameter) as info:
        parse_command({})
    assert info.value.to_dict() == {"errorCode": 3, "errorDescription": '"function" not specified'}


def test_unknown_function():
    with pytest.raises(UnknownFunction) as info:
        parse_command({"function": "mintForFree"})
    assert info.value.to_dict() == {"errorCode": 5, "errorDescription": "Unknown mintForFree"}


def test_simple_functions():
    assert parse_command({"function": "getStatus"}) == GetStatus()
    assert parse_command({"function": "blockReceived"}) == BlockReceived("")
    assert parse_command({"function": "blockReceived", "id": "00ff"}) == BlockReceived("00ff")


def test_get_tokens():
    assert parse_command({"function": "getTokens"}) == GetTokens(0, False)
    assert parse_command({"function": "getTokens", "height": "120", "includeExchanged": "TRUE"}) \
        == GetTokens(120, True)
    assert error_code({"function": "getTokens", "height": "tall"}) == 4


def test_delete_token_needs_id():
    assert error_code({"function": "deleteToken"}) == 3
    assert error_code({"function": "deleteToken", "id": "  "}) == 3
    assert parse_command({"function": "deleteToken", "id": "T9"}) == DeleteToken("T9")


def test_get_address():
    key = "0f" * 32
    assert parse_command({"function": "getAddress", "account": "1001"}) == GetAddress(1001)
    assert parse_command({"function": "getAddress", "account": "18446744073709551615", "publicKey": key}) \
        == GetAddress(2 ** 64 - 1, bytes.fromhex(key))


@pytest.mark.parametrize("params, code", [
    ({"function": "getAddress"}, 3),
    ({"function": "getAddress", "account": "alice"}, 4),
    ({"function": "getAddress", "account": "0"}, 4),
    ({"function": "getAddress", "account": "18446744073709551616"}, 4),
    ({"function": "getAddress", "account": "1001", "publicKey": "zz"}, 4),
    ({"function": "getAddress", "account": "1001", "publicKey": "0f" * 31}, 4),
])
def test_get_address_errors(params, code):
    assert error_code(params) == code


def test_short_public_key_message():
    with pytest.raises(MalformedParameter) as info:
        parse_command({"function": "getAddress", "account": "1001", "publicKey": "0f" * 16})
    assert info.value.description == 'Incorrect "publicKey": public key is not 32 bytes'


def test_get_transactions():
    assert parse_command({"function": "getTransactions"}) == GetTransactions(None)
    assert parse_command({"function": "getTransactions", "account": "7"}) == GetTransactions(7)


def test_transaction_received():
    assert parse_command({"function": "transactionReceived", "id": TXID}) \
        == TransactionReceived(TXID.lower())
    assert error_code({"function": "transactionReceived"}) == 3
    assert error_code({"function": "transactionReceived", "id": "abc123"}) == 4
