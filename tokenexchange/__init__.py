"""
TokenExchange

Bitcoin <-> token exchange between bitcoind and an account-based native
ledger.

Architecture:
  - Bitcoin deposits to per-account addresses are recorded once per txid
    and mint tokens after enough confirmations
  - Token transfers to the redemption account are paid out in bitcoin
    after enough confirmations
  - One reconciler serializes all settlement work; duplicate or
    concurrent notifications never settle a leg twice

Usage:
    from tokenexchange import ExchangeConfig, TokenDb, BitcoinRPC, LedgerClient
    from tokenexchange import AccountRegistry, Reconciler

    config = ExchangeConfig.from_env()
    db = TokenDb(config.database_url)
    bitcoin = BitcoinRPC(config.bitcoind_url, config.bitcoind_user, config.bitcoind_password)
    ledger = LedgerClient(config.ledger_url, config.ledger_secret_phrase, config.currency_id)
    reconciler = Reconciler(config, db, AccountRegistry(db, bitcoin), bitcoin, ledger)

    reconciler.transaction_received(txid)
    reconciler.block_received(block_hash)
"""

from .config import ExchangeConfig
from .exchange_types import (
    BitcoinAccount, BitcoinTransaction, InboundResult, Redemption, SweepState, Token, TokenKind,
)
from .rpc_client import BitcoinRPC, GatewayUnavailable, RPCError
from .ledger_client import LedgerClient
from .token_db import TokenDb
from .account_manager import AccountRegistry
from .reconciler import Reconciler
from .worker import ReconcilerWorker

__version__ = "1.0.0"
__all__ = [
    # Types
    "BitcoinAccount", "BitcoinTransaction", "InboundResult", "Redemption",
    "SweepState", "Token", "TokenKind",
    # Core
    "ExchangeConfig", "TokenDb", "AccountRegistry", "Reconciler", "ReconcilerWorker",
    # Gateways
    "BitcoinRPC", "LedgerClient", "RPCError", "GatewayUnavailable",
]
