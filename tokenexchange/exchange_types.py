"""
TokenExchange - Data Types

Records shared by the store, the gateways and the reconciler.

Amounts are integers: bitcoin in satoshi, tokens in currency units
(whole tokens * 10^decimals). Conversion lives in amounts.py.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
import time


class TokenKind(Enum):
    """Exchange leg: MINT = bitcoin deposit -> tokens, REDEEM = tokens -> bitcoin"""
    MINT = "mint"
    REDEEM = "redeem"


class InboundResult(Enum):
    """Outcome of a transaction-received notification (all are successes)"""
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    NOT_MANAGED = "not_managed"


class SweepState(Enum):
    """Outbound sweep guard"""
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class BitcoinAccount:
    """Native ledger account and its bitcoin receiving address."""
    account_id: int
    bitcoin_address: str
    public_key: Optional[bytes] = None


@dataclass
class BitcoinTransaction:
    """
    A deposit observed on the bitcoin chain.

    Stored once per txid and never updated. Confirmations are not kept
    here; they are always re-queried from bitcoind.
    """
    txid: str
    account_id: int
    bitcoin_address: str
    amount: int             # satoshi
    created_ts: int = field(default_factory=lambda: int(time.time()))


@dataclass
class Token:
    """
    One exchange leg, pending until the counter-leg is settled.

    MINT:   id = deposit txid, bitcoin_txid = deposit txid,
            native_txid filled when tokens are issued.
    REDEEM: id = native redemption transaction id,
            bitcoin_txid filled when bitcoin is paid out.
    """
    id: str
    kind: TokenKind
    sender: int             # native account
    height: int             # native ledger height at creation
    token_amount: int       # currency units
    bitcoin_amount: int     # satoshi
    bitcoin_address: str
    bitcoin_txid: Optional[str] = None
    native_txid: Optional[str] = None
    exchanged: bool = False


@dataclass
class TransactionDetail:
    """One output line of a bitcoind wallet transaction."""
    address: str
    category: str           # "receive", "send", ...
    amount: int             # satoshi, always positive


@dataclass
class WalletTransaction:
    """bitcoind gettransaction result, reduced to what the reconciler needs."""
    txid: str
    confirmations: int
    details: List[TransactionDetail] = field(default_factory=list)
    blockhash: Optional[str] = None

    def received(self) -> List[TransactionDetail]:
        return [d for d in self.details if d.category == "receive"]


@dataclass
class Redemption:
    """Currency transfer to the redemption account on the native ledger."""
    transaction_id: str
    sender: int
    height: int
    units: int
    bitcoin_address: str
