"""HTTP API: function dispatch, error payloads and the worker lifecycle."""

from typing import get_args

import pytest
from fastapi.testclient import TestClient

from tokenexchange.commands import PARSERS, Command
from tokenexchange.server import HANDLERS, Services, create_app
from tokenexchange.worker import ReconcilerWorker

TXID = "ab" * 32


@pytest.fixture
def services(config, db, registry, reconciler):
    return Services(config, db, registry, reconciler, ReconcilerWorker(reconciler))


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def call(client, **params):
    response = client.post("/tokenexchange", data=params)
    assert response.status_code == 200
    return response.json()


def test_health(client):
    body = client.get("/health").json()
    assert body == {"status": "ok", "suspended": False, "worker": True, "sweep": "idle"}


def test_get_status(client):
    status = call(client, function="getStatus")
    assert status["currencyCode"] == "BTCX"
    assert status["currencyId"] == "7"
    assert status["decimals"] == 4
    assert status["confirmations"] == 6
    assert status["redemptionAccount"] == "9999"
    assert status["suspended"] is False


def test_function_in_query_string(client):
    response = client.post("/tokenexchange", params={"function": "getStatus"})
    assert response.json()["currencyCode"] == "BTCX"


def test_error_payloads(client):
    assert call(client) == {"errorCode": 3, "errorDescription": '"function" not specified'}
    assert call(client, function="getAddress")["errorCode"] == 3
    assert call(client, function="getAddress", account="bob")["errorCode"] == 4
    assert call(client, function="bogus") == {"errorCode": 5, "errorDescription": "Unknown bogus"}


def test_json_body(client):
    response = client.post("/tokenexchange", json={"function": "getAddress", "account": 1001})
    assert response.json() == {"address": "bcrt1qdeposit0001", "account": "1001"}


def test_non_object_json_body(client):
    response = client.post("/tokenexchange", json=["getStatus"])
    assert response.json()["errorCode"] == 4


def test_get_address_is_stable(client):
    first = call(client, function="getAddress", account="1001")
    second = call(client, function="getAddress", account="1001")
    assert first == second
    accounts = call(client, function="getAccounts")["accounts"]
    assert accounts == [{"account": "1001", "address": "bcrt1qdeposit0001"}]


def test_get_address_gateway_failure(client, bitcoin):
    bitcoin.fail_addresses = True
    assert call(client, function="getAddress", account="1001") == {
        "errorCode": 4,
        "errorDescription": "Unable to get new Bitcoin address from server",
    }


def test_suspend_and_resume(client, config):
    assert call(client, function="suspendSend") == {"suspended": True}
    assert config.is_suspended()
    assert call(client, function="getStatus")["suspended"] is True
    assert call(client, function="resumeSend") == {"suspended": False}


def test_deposit_through_the_api(client, bitcoin):
    address = call(client, function="getAddress", account="1001")["address"]
    bitcoin.deposit(TXID, address, "1.5")

    assert call(client, function="transactionReceived", id=TXID.upper()) == {"processed": True}
    assert call(client, function="transactionReceived", id=TXID) == {"processed": True}

    transactions = call(client, function="getTransactions", account="1001")["transactions"]
    assert len(transactions) == 1
    assert transactions[0]["amount"] == "1.50000000"

    tokens = call(client, function="getTokens")["tokens"]
    assert len(tokens) == 1
    assert tokens[0]["id"] == TXID
    assert tokens[0]["kind"] == "mint"
    assert tokens[0]["tokenAmount"] == "1.5000"
    assert tokens[0]["exchanged"] is False


def test_block_received_settles_on_the_worker(services, bitcoin, db):
    account = services.registry.get_or_create(1001)
    bitcoin.deposit(TXID, account.bitcoin_address, "1.5", confirmations=6)

    with TestClient(create_app(services)) as client:
        assert call(client, function="transactionReceived", id=TXID) == {"processed": True}
        assert call(client, function="blockReceived", id="00" * 32) == {"processed": True}
    # leaving the client stops the worker after queued work is done

    assert db.get_token(TXID).exchanged is True
    tokens = db.get_tokens(0, include_exchanged=True)
    assert tokens[0].native_txid is not None


def test_delete_token(client, bitcoin):
    address = call(client, function="getAddress", account="1001")["address"]
    bitcoin.deposit(TXID, address, "1")
    call(client, function="transactionReceived", id=TXID)

    assert call(client, function="deleteToken", id=TXID) == {"deleted": True}
    assert call(client, function="deleteToken", id=TXID) == {"deleted": False}
    assert call(client, function="getTokens", includeExchanged="true") == {"tokens": []}


def test_admin_password(client, config):
    config.admin_password = "s3cret"
    assert call(client, function="getStatus")["errorCode"] == 4
    assert call(client, function="getStatus", adminPassword="wrong")["errorCode"] == 4
    assert call(client, function="getStatus", adminPassword="s3cret")["currencyCode"] == "BTCX"


def test_every_command_has_a_handler():
    assert set(HANDLERS) == set(get_args(Command))
    assert {type(parser({"id": "ab" * 32, "account": "1"})) for parser in PARSERS.values()} \
        <= set(HANDLERS)
