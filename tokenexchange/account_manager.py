"""
TokenExchange - Account Registry

Maps native ledger accounts to bitcoin receiving addresses.

An address is allocated lazily the first time an account asks for one and
never changes afterwards. Concurrent first requests for the same account
are serialized so bitcoind is asked for exactly one address.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .exchange_types import BitcoinAccount
from .rpc_client import BitcoinRPC
from .token_db import TokenDb

log = logging.getLogger(__name__)


class AccountRegistry:
    """
    Bitcoin account registry.

    Usage:
        registry = AccountRegistry(db, bitcoin)
        account = registry.get_or_create(1001)
        account.bitcoin_address   # same value on every later call
    """

    def __init__(self, db: TokenDb, bitcoin: BitcoinRPC):
        """
        Initialize the registry.

        Args:
            db: Token database holding the account records
            bitcoin: Gateway used to allocate new addresses
        """
        self.db = db
        self.bitcoin = bitcoin
        # account id -> [lock, number of callers holding or waiting for it]
        self._locks: Dict[int, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _account_lock(self, account_id: int) -> Iterator[None]:
        """Per-account lock, dropped once no caller needs it."""
        with self._locks_guard:
            entry = self._locks.get(account_id)
            if entry is None:
                entry = self._locks[account_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[account_id]

    def get_or_create(self, account_id: int, public_key: Optional[bytes] = None) -> BitcoinAccount:
        """
        Get the account's bitcoin address, allocating one on first use.

        Args:
            account_id: Native ledger account
            public_key: 32-byte account public key, only kept on creation

        Returns:
            The account record

        Raises:
            GatewayUnavailable: If bitcoind could not allocate an address
        """
        account = self.db.get_account(account_id)
        if account is not None:
            return account

        with self._account_lock(account_id):
            account = self.db.get_account(account_id)
            if account is not None:
                return account

            address = self.bitcoin.get_new_address(str(account_id))
            account = BitcoinAccount(account_id, address, public_key)
            if not self.db.store_account(account):
                # Another writer got there first, its record wins
                stored = self.db.get_account(account_id)
                if stored is None:
                    raise RuntimeError(f"Unable to create Bitcoin account for {account_id}")
                log.warning(f"Account {account_id} created concurrently, discarding address {address}")
                return stored

            log.info(f"Bitcoin account created: {account_id} -> {address}")
            return account

    def find_by_address(self, address: str) -> Optional[BitcoinAccount]:
        """Account owning a receiving address, if the address is managed."""
        return self.db.get_account_by_address(address)

    def list_accounts(self) -> List[BitcoinAccount]:
        return self.db.get_accounts()
