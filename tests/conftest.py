"""
Shared fixtures for the TokenExchange test suite.

Gateways are replaced by in-memory fakes that behave like bitcoind and the
native ledger node from the reconciler's point of view:
  - FakeBitcoin: wallet transactions, address allocation, payments keyed
    by idempotency key
  - FakeLedger: chain height, redemption transfers, issuances keyed by
    idempotency key

Both record every call so tests can assert "submitted at most once".
"""

import itertools
import threading
import time
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from tokenexchange.account_manager import AccountRegistry
from tokenexchange.amounts import btc_to_satoshi
from tokenexchange.config import ExchangeConfig
from tokenexchange.exchange_types import Redemption, TransactionDetail, WalletTransaction
from tokenexchange.reconciler import Reconciler
from tokenexchange.rpc_client import GatewayUnavailable
from tokenexchange.token_db import TokenDb

REDEMPTION_ACCOUNT = 9999
NATIVE_HEIGHT = 100


class FakeBitcoin:
    """bitcoind stand-in."""

    def __init__(self):
        self.transactions: Dict[str, WalletTransaction] = {}
        self.payments: Dict[str, str] = {}
        self.payment_calls: List[tuple] = []
        self.address_calls = 0
        self.fail_addresses = False
        self.fail_payments = False
        self.lookup_delay = 0.0
        self.payment_started = threading.Event()
        self.payment_release: Optional[threading.Event] = None
        self._addresses = itertools.count(1)
        self._sends = itertools.count(1)
        self._lock = threading.Lock()

    def deposit(self, txid: str, address: str, btc: str, confirmations: int = 0) -> WalletTransaction:
        tx = WalletTransaction(
            txid=txid,
            confirmations=confirmations,
            details=[TransactionDetail(address, "receive", btc_to_satoshi(btc))]
        )
        self.transactions[txid] = tx
        return tx

    def confirm(self, txid: str, confirmations: int):
        self.transactions[txid].confirmations = confirmations

    def get_new_address(self, label: str) -> str:
        with self._lock:
            self.address_calls += 1
            if self.fail_addresses:
                raise GatewayUnavailable("Unable to get new Bitcoin address from server")
            return f"bcrt1qdeposit{next(self._addresses):04d}"

    def get_transaction(self, txid: str) -> Optional[WalletTransaction]:
        if self.lookup_delay:
            time.sleep(self.lookup_delay)
        return self.transactions.get(txid)

    def list_since_block(self, blockhash=None):
        txids = [txid for txid, tx in self.transactions.items() if tx.received()]
        return txids, f"block-{len(txids)}"

    def submit_payment(self, address: str, amount: int, idempotency_key: str) -> str:
        self.payment_calls.append((address, amount, idempotency_key))
        self.payment_started.set()
        if self.payment_release is not None:
            self.payment_release.wait(5)
        if self.fail_payments:
            raise GatewayUnavailable(f"Unable to send bitcoins to {address}")
        with self._lock:
            if idempotency_key not in self.payments:
                self.payments[idempotency_key] = f"{next(self._sends):064x}"
            return self.payments[idempotency_key]

    def test_connection(self) -> bool:
        return True


class FakeLedger:
    """Native ledger node stand-in."""

    def __init__(self, height: int = NATIVE_HEIGHT):
        self.height = height
        self.redemptions: List[Redemption] = []
        self.issuances: Dict[str, str] = {}
        self.issue_calls: List[tuple] = []
        self.fail_issue = False
        self.fail_height = False
        self._ids = itertools.count(1)

    def get_height(self) -> int:
        if self.fail_height:
            raise GatewayUnavailable("Native ledger connection failed")
        return self.height

    def redeem(self, txid: str, sender: int, units: int, address: str, height: Optional[int] = None):
        self.redemptions.append(Redemption(
            transaction_id=txid,
            sender=sender,
            height=self.height if height is None else height,
            units=units,
            bitcoin_address=address
        ))

    def get_redemptions(self, redemption_account: int, from_height: int, currency_id=None):
        return sorted((r for r in self.redemptions if r.height > from_height), key=lambda r: r.height)

    def issue_tokens(self, recipient: int, units: int, idempotency_key: str, recipient_public_key=None) -> str:
        self.issue_calls.append((recipient, units, idempotency_key, recipient_public_key))
        if self.fail_issue:
            raise GatewayUnavailable(f"Token transfer to {recipient} was not accepted")
        if idempotency_key not in self.issuances:
            self.issuances[idempotency_key] = str(next(self._ids) + 1000000)
        return self.issuances[idempotency_key]


@pytest.fixture
def config():
    return ExchangeConfig(
        currency_code="BTCX",
        currency_id=7,
        decimals=4,
        exchange_rate=Decimal("1"),
        confirmations=6,
        redemption_account=REDEMPTION_ACCOUNT,
        database_url="sqlite://",
    )


@pytest.fixture
def db(tmp_path):
    database = TokenDb(f"sqlite:///{tmp_path / 'tokens.db'}")
    yield database
    database.close()


@pytest.fixture
def bitcoin():
    return FakeBitcoin()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def registry(db, bitcoin):
    return AccountRegistry(db, bitcoin)


@pytest.fixture
def reconciler(config, db, registry, bitcoin, ledger):
    return Reconciler(config, db, registry, bitcoin, ledger)
