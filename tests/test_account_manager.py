"""Account registry: lazy, stable address allocation."""

import threading

import pytest

from tokenexchange.account_manager import AccountRegistry
from tokenexchange.exchange_types import BitcoinAccount
from tokenexchange.rpc_client import GatewayUnavailable


def test_first_request_allocates_address(registry, bitcoin):
    account = registry.get_or_create(1001)
    assert account.account_id == 1001
    assert account.bitcoin_address == "bcrt1qdeposit0001"
    assert bitcoin.address_calls == 1


def test_address_never_changes(registry, bitcoin):
    first = registry.get_or_create(1001)
    second = registry.get_or_create(1001, public_key=b"\x01" * 32)
    assert second.bitcoin_address == first.bitcoin_address
    assert second.public_key is None
    assert bitcoin.address_calls == 1


def test_public_key_kept_on_creation(registry, db):
    key = bytes.fromhex("ab" * 32)
    registry.get_or_create(1001, public_key=key)
    assert db.get_account(1001).public_key == key


def test_concurrent_first_requests_allocate_one_address(registry, bitcoin):
    results = []
    barrier = threading.Barrier(8)

    def request():
        barrier.wait()
        results.append(registry.get_or_create(1001).bitcoin_address)

    threads = [threading.Thread(target=request) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 1
    assert bitcoin.address_calls == 1


def test_gateway_failure_creates_nothing(registry, bitcoin, db):
    bitcoin.fail_addresses = True
    with pytest.raises(GatewayUnavailable):
        registry.get_or_create(1001)
    assert db.get_account(1001) is None

    bitcoin.fail_addresses = False
    assert registry.get_or_create(1001).bitcoin_address == "bcrt1qdeposit0002"


def test_lost_insert_returns_stored_record(db, bitcoin):
    class RacingDb:
        """Another writer stores the account between the re-read and the insert."""

        def __init__(self, inner):
            self.inner = inner
            self.reads = 0

        def get_account(self, account_id):
            self.reads += 1
            if self.reads == 3:
                return self.inner.get_account(account_id)
            return None

        def store_account(self, account):
            self.inner.store_account(BitcoinAccount(account.account_id, "bcrt1qwinner"))
            return False

    registry = AccountRegistry(RacingDb(db), bitcoin)
    assert registry.get_or_create(1001).bitcoin_address == "bcrt1qwinner"


def test_find_by_address(registry):
    account = registry.get_or_create(1001)
    assert registry.find_by_address(account.bitcoin_address).account_id == 1001
    assert registry.find_by_address("bcrt1qunknown") is None
    registry.get_or_create(7)
    assert [a.account_id for a in registry.list_accounts()] == [7, 1001]


def test_account_locks_are_released(registry, bitcoin):
    for account_id in range(1, 6):
        registry.get_or_create(account_id)
    assert registry._locks == {}

    bitcoin.fail_addresses = True
    with pytest.raises(GatewayUnavailable):
        registry.get_or_create(99)
    assert registry._locks == {}
