# Copyright (c) 2026 The TokenExchange developers
# Distributed under the MIT software license

"""
Reconciler - Exactly-once settlement between bitcoind and the native ledger

Two flows, serialized through one gate:

  Inbound (transaction received):
    1. txid already stored            -> DUPLICATE (no-op)
    2. bitcoind does not know it, or
       no output pays a managed address -> NOT_MANAGED (dropped)
    3. store transaction + MINT token atomically
       insert lost to a duplicate     -> DUPLICATE
       inserted                       -> RECORDED

  Outbound sweep (block received):
    1. sweep already RUNNING          -> trigger dropped, not queued
    2. catch up: wallet deposits missed by notifications,
       redemption transfers on the native ledger (REDEEM tokens)
    3. for each pending token:
         suspended                    -> leave pending
         counter-leg not deep enough  -> leave pending
         MINT   -> issue tokens      (idempotency key = token id)
         REDEEM -> pay bitcoin       (idempotency key = token id)
         success -> exchanged, failure -> retried next sweep
    4. guard released on every exit path

Delivery is at-least-once, so "already done" and "just done" are both
successful outcomes.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from .account_manager import AccountRegistry
from .amounts import format_btc, format_units, satoshi_to_units, units_to_satoshi
from .config import ExchangeConfig
from .exchange_types import (
    BitcoinAccount, BitcoinTransaction, InboundResult, Redemption, SweepState, Token,
    TokenKind, WalletTransaction,
)
from .ledger_client import LedgerClient
from .rpc_client import BitcoinRPC, GatewayUnavailable, RPCError, is_valid_bitcoin_address
from .token_db import TokenDb

log = logging.getLogger(__name__)

# Gateway failures that mean "not yet": the work stays pending
GATEWAY_ERRORS = (RPCError, GatewayUnavailable)


@dataclass
class SweepReport:
    """Counters for one sweep"""
    block_id: str
    deposits: int = 0
    redemptions: int = 0
    pending: int = 0
    settled: int = 0
    suspended: int = 0
    failed: int = 0


class Reconciler:
    """
    Reconciliation engine.

    Usage:
        reconciler = Reconciler(config, db, registry, bitcoin, ledger)
        reconciler.transaction_received(txid)   # from the chain observer
        reconciler.block_received(block_hash)   # from the chain observer
    """

    def __init__(self, config: ExchangeConfig, db: TokenDb, registry: AccountRegistry,
                 bitcoin: BitcoinRPC, ledger: LedgerClient):
        self.config = config
        self.db = db
        self.registry = registry
        self.bitcoin = bitcoin
        self.ledger = ledger

        self._gate = threading.Lock()
        self._state_lock = threading.Lock()
        self._sweep_state = SweepState.IDLE

        # Pending tokens are scanned above this height
        self.last_processed_height = config.start_height
        # listsinceblock cursor (None = whole wallet history)
        self._last_block_hash: Optional[str] = None
        # Redemption transfers are scanned above this height. After a restart the
        # highest stored height is rescanned, it may have been only partly recorded.
        stored_height = db.max_token_height(TokenKind.REDEEM)
        self._redemption_height = config.start_height
        if stored_height is not None:
            self._redemption_height = max(config.start_height, stored_height - 1)
        self.last_report: Optional[SweepReport] = None

    @property
    def sweep_state(self) -> SweepState:
        return self._sweep_state

    # =========================================================================
    # INBOUND
    # =========================================================================

    def transaction_received(self, txid: str) -> InboundResult:
        """
        Handle a transaction-observed notification.

        Raises:
            RPCError / GatewayUnavailable: Nothing was recorded, a later
            notification or sweep retries
        """
        log.debug(f"Transaction {txid} received")
        with self._gate:
            return self._process_transaction(txid)

    def _process_transaction(self, txid: str) -> InboundResult:
        if self.db.get_transaction(txid) is not None:
            log.debug(f"Bitcoin transaction {txid} is already in the database")
            return InboundResult.DUPLICATE

        wallet_tx = self.bitcoin.get_transaction(txid)
        if wallet_tx is None:
            log.debug(f"Bitcoin transaction {txid} is not a wallet transaction")
            return InboundResult.NOT_MANAGED

        account, amount = self._resolve_deposit(wallet_tx)
        if account is None:
            log.debug(f"Bitcoin transaction {txid} does not pay a registered account")
            return InboundResult.NOT_MANAGED

        tx = BitcoinTransaction(
            txid=txid,
            account_id=account.account_id,
            bitcoin_address=account.bitcoin_address,
            amount=amount
        )
        units = satoshi_to_units(amount, self.config.exchange_rate, self.config.decimals)
        token = None
        if units > 0:
            token = Token(
                id=txid,
                kind=TokenKind.MINT,
                sender=account.account_id,
                # Pending tokens are scanned strictly above start_height
                height=max(self.ledger.get_height(), self.config.start_height + 1),
                token_amount=units,
                bitcoin_amount=amount,
                bitcoin_address=account.bitcoin_address,
                bitcoin_txid=txid
            )
        else:
            log.warning(f"Bitcoin transaction {txid} amount {format_btc(amount)} is below one token unit")

        if not self.db.store_transaction(tx, token):
            log.error(f"Bitcoin transaction {txid} was not processed")
            return InboundResult.DUPLICATE

        log.info(f"Bitcoin transaction {txid} added to database: {format_btc(amount)} BTC "
                 f"for account {account.account_id}")
        return InboundResult.RECORDED

    def _resolve_deposit(self, wallet_tx: WalletTransaction) -> Tuple[Optional[BitcoinAccount], int]:
        """First managed receive address and the total it was paid."""
        account = None
        for detail in wallet_tx.received():
            account = self.registry.find_by_address(detail.address)
            if account is not None:
                break
        if account is None:
            return None, 0

        amount = 0
        for detail in wallet_tx.received():
            if detail.address == account.bitcoin_address:
                amount += detail.amount
            elif self.registry.find_by_address(detail.address) is not None:
                log.warning(f"Bitcoin transaction {wallet_tx.txid} also pays {detail.address}, "
                            f"only {account.bitcoin_address} is credited")
        return account, amount

    # =========================================================================
    # OUTBOUND SWEEP
    # =========================================================================

    def block_received(self, block_id: str) -> bool:
        """
        Handle a new-block notification.

        Returns:
            True if a sweep ran, False if one was already running
        """
        with self._state_lock:
            if self._sweep_state is SweepState.RUNNING:
                log.debug(f"Block {block_id} received while sweep running, skipped")
                return False
            self._sweep_state = SweepState.RUNNING

        try:
            log.debug(f"Block {block_id} received")
            with self._gate:
                self.last_report = self._sweep(block_id)
        finally:
            with self._state_lock:
                self._sweep_state = SweepState.IDLE
        return True

    def _sweep(self, block_id: str) -> SweepReport:
        report = SweepReport(block_id=block_id)
        self._catch_up_deposits(report)
        self._catch_up_redemptions(report)
        self._settle_tokens(report)
        if report.deposits or report.redemptions or report.settled or report.failed:
            log.info(f"Sweep for block {block_id}: {report.deposits} deposit(s), "
                     f"{report.redemptions} redemption(s), {report.settled} settled, "
                     f"{report.failed} failed, {report.pending} pending")
        return report

    def _catch_up_deposits(self, report: SweepReport):
        """Record wallet deposits whose notification was lost."""
        try:
            txids, last_block = self.bitcoin.list_since_block(self._last_block_hash)
        except GATEWAY_ERRORS as e:
            log.warning(f"Unable to list wallet transactions: {e}")
            return

        complete = True
        for txid in txids:
            try:
                if self._process_transaction(txid) is InboundResult.RECORDED:
                    report.deposits += 1
            except GATEWAY_ERRORS as e:
                log.warning(f"Bitcoin transaction {txid} not processed: {e}")
                complete = False
        if complete and last_block:
            self._last_block_hash = last_block

    def _catch_up_redemptions(self, report: SweepReport):
        """Create REDEEM tokens for new transfers to the redemption account."""
        if not self.config.redemption_account:
            return
        try:
            redemptions = self.ledger.get_redemptions(self.config.redemption_account,
                                                      self._redemption_height)
        except GatewayUnavailable as e:
            log.warning(f"Unable to scan redemptions: {e}")
            return

        for redemption in redemptions:
            if self._record_redemption(redemption):
                report.redemptions += 1
        # Advanced only once the whole batch is stored
        if redemptions:
            self._redemption_height = max(self._redemption_height,
                                          max(r.height for r in redemptions))

    def _record_redemption(self, redemption: Redemption) -> bool:
        if not is_valid_bitcoin_address(redemption.bitcoin_address):
            log.error(f"Redemption {redemption.transaction_id} from {redemption.sender} "
                      f"has no valid bitcoin address ({redemption.bitcoin_address!r}), skipped")
            return False
        sats = units_to_satoshi(redemption.units, self.config.exchange_rate, self.config.decimals)
        if sats <= 0:
            log.error(f"Redemption {redemption.transaction_id} is worth less than one satoshi, skipped")
            return False

        token = Token(
            id=redemption.transaction_id,
            kind=TokenKind.REDEEM,
            sender=redemption.sender,
            height=redemption.height,
            token_amount=redemption.units,
            bitcoin_amount=sats,
            bitcoin_address=redemption.bitcoin_address
        )
        if not self.db.store_token(token):
            return False
        log.info(f"Redemption {token.id} recorded: "
                 f"{format_units(token.token_amount, self.config.decimals)} {self.config.currency_code} "
                 f"-> {format_btc(sats)} BTC to {token.bitcoin_address}")
        return True

    def _settle_tokens(self, report: SweepReport):
        try:
            native_height: Optional[int] = self.ledger.get_height()
        except GatewayUnavailable as e:
            log.warning(f"Unable to get native ledger height: {e}")
            native_height = None

        for candidate in self.db.get_tokens(self.last_processed_height, include_exchanged=False):
            if self.config.is_suspended():
                report.suspended += 1
                report.pending += 1
                continue

            # Decide on the stored record, not the scan snapshot
            token = self.db.get_token(candidate.id)
            if token is None or token.exchanged:
                continue

            try:
                if token.kind is TokenKind.MINT:
                    settled = self._settle_mint(token)
                else:
                    settled = self._settle_redemption(token, native_height)
            except GATEWAY_ERRORS as e:
                log.error(f"Unable to settle token {token.id}: {e}")
                report.failed += 1
                report.pending += 1
                continue

            if settled:
                report.settled += 1
            else:
                report.pending += 1

        if report.suspended:
            log.info(f"Sending suspended, {report.suspended} token(s) left pending")

    def _settle_mint(self, token: Token) -> bool:
        wallet_tx = self.bitcoin.get_transaction(token.bitcoin_txid)
        if wallet_tx is None:
            log.warning(f"Bitcoin transaction {token.bitcoin_txid} for token {token.id} not found")
            return False
        if wallet_tx.confirmations < self.config.confirmations:
            return False

        account = self.db.get_account(token.sender)
        public_key = account.public_key if account else None
        native_txid = self.ledger.issue_tokens(token.sender, token.token_amount, token.id, public_key)
        self.db.mark_exchanged(token.id, native_txid=native_txid)
        log.info(f"Issued {format_units(token.token_amount, self.config.decimals)} "
                 f"{self.config.currency_code} to {token.sender} for bitcoin transaction "
                 f"{token.bitcoin_txid}: {native_txid}")
        return True

    def _settle_redemption(self, token: Token, native_height: Optional[int]) -> bool:
        if native_height is None or native_height - token.height < self.config.confirmations:
            return False

        bitcoin_txid = self.bitcoin.submit_payment(token.bitcoin_address, token.bitcoin_amount, token.id)
        self.db.mark_exchanged(token.id, bitcoin_txid=bitcoin_txid)
        log.info(f"Sent {format_btc(token.bitcoin_amount)} BTC to {token.bitcoin_address} "
                 f"for redemption {token.id}: {bitcoin_txid}")
        return True
