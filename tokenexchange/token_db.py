"""
TokenExchange - Token Database

Durable storage for bitcoin accounts, observed bitcoin transactions and
exchange tokens.

Uniqueness is enforced by the database:
  - one BitcoinTransaction per txid (deposit deduplication)
  - one account per native account id, one account per bitcoin address
  - one token per id
Duplicate inserts are reported as False, never overwritten.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import (
    BigInteger, Boolean, Integer, LargeBinary, String, create_engine, delete, event, func, select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .exchange_types import BitcoinAccount, BitcoinTransaction, Token, TokenKind

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# TABLES
# ============================================================================

class AccountRow(Base):
    __tablename__ = "bitcoin_account"

    # Native account ids are unsigned 64-bit, stored as decimal strings
    account_id: Mapped[str] = mapped_column(String(20), primary_key=True)
    bitcoin_address: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    public_key: Mapped[Optional[bytes]] = mapped_column(LargeBinary(32), nullable=True)

    def to_record(self) -> BitcoinAccount:
        return BitcoinAccount(int(self.account_id), self.bitcoin_address, self.public_key)


class TransactionRow(Base):
    __tablename__ = "bitcoin_transaction"

    txid: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    bitcoin_address: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_ts: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def to_record(self) -> BitcoinTransaction:
        return BitcoinTransaction(
            txid=self.txid,
            account_id=int(self.account_id),
            bitcoin_address=self.bitcoin_address,
            amount=self.amount,
            created_ts=self.created_ts
        )


class TokenRow(Base):
    __tablename__ = "token"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    sender: Mapped[str] = mapped_column(String(20), nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    token_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bitcoin_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bitcoin_address: Mapped[str] = mapped_column(String(100), nullable=False)
    bitcoin_txid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    native_txid: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    exchanged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_ts: Mapped[int] = mapped_column(BigInteger, nullable=False)

    @classmethod
    def from_record(cls, token: Token) -> "TokenRow":
        return cls(
            id=token.id,
            kind=token.kind.value,
            sender=str(token.sender),
            height=token.height,
            token_amount=token.token_amount,
            bitcoin_amount=token.bitcoin_amount,
            bitcoin_address=token.bitcoin_address,
            bitcoin_txid=token.bitcoin_txid,
            native_txid=token.native_txid,
            exchanged=token.exchanged,
            created_ts=int(time.time())
        )

    def to_record(self) -> Token:
        return Token(
            id=self.id,
            kind=TokenKind(self.kind),
            sender=int(self.sender),
            height=self.height,
            token_amount=self.token_amount,
            bitcoin_amount=self.bitcoin_amount,
            bitcoin_address=self.bitcoin_address,
            bitcoin_txid=self.bitcoin_txid,
            native_txid=self.native_txid,
            exchanged=self.exchanged
        )


# ============================================================================
# DATABASE
# ============================================================================

class TokenDb:
    """
    Token database.

    Usage:
        db = TokenDb("sqlite:///tokenexchange.db")
        if db.store_transaction(tx, mint_token):
            ...  # first time this txid was seen
        pending = db.get_tokens(0, include_exchanged=False)
    """

    def __init__(self, database_url: str = "sqlite:///tokenexchange.db", echo: bool = False):
        engine_args = {}
        if database_url.startswith("sqlite"):
            engine_args["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every session sees an empty database
                engine_args["poolclass"] = StaticPool
        self.engine = create_engine(database_url, echo=echo, **engine_args)
        if database_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_pragmas)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._lock = threading.RLock()
        Base.metadata.create_all(self.engine)
        log.info(f"Token database ready: {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Locked session, committed on success and rolled back on error."""
        with self._lock:
            session = self._sessions()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def close(self):
        self.engine.dispose()

    # ------------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------------

    def get_account(self, account_id: int) -> Optional[BitcoinAccount]:
        with self.session() as s:
            row = s.get(AccountRow, str(account_id))
            return row.to_record() if row else None

    def get_account_by_address(self, address: str) -> Optional[BitcoinAccount]:
        with self.session() as s:
            row = s.scalars(select(AccountRow).where(AccountRow.bitcoin_address == address)).first()
            return row.to_record() if row else None

    def get_accounts(self) -> List[BitcoinAccount]:
        with self.session() as s:
            rows = s.scalars(select(AccountRow).order_by(AccountRow.account_id)).all()
            return sorted((row.to_record() for row in rows), key=lambda a: a.account_id)

    def store_account(self, account: BitcoinAccount) -> bool:
        """Insert an account. False if the account or address already exists."""
        try:
            with self.session() as s:
                s.add(AccountRow(
                    account_id=str(account.account_id),
                    bitcoin_address=account.bitcoin_address,
                    public_key=account.public_key
                ))
        except IntegrityError:
            log.debug(f"Account {account.account_id} or address {account.bitcoin_address} already stored")
            return False
        return True

    # ------------------------------------------------------------------------
    # Bitcoin transactions
    # ------------------------------------------------------------------------

    def get_transaction(self, txid: str) -> Optional[BitcoinTransaction]:
        with self.session() as s:
            row = s.get(TransactionRow, txid)
            return row.to_record() if row else None

    def get_transactions(self, account_id: Optional[int] = None) -> List[BitcoinTransaction]:
        with self.session() as s:
            query = select(TransactionRow).order_by(TransactionRow.created_ts, TransactionRow.txid)
            if account_id is not None:
                query = query.where(TransactionRow.account_id == str(account_id))
            return [row.to_record() for row in s.scalars(query).all()]

    def store_transaction(self, tx: BitcoinTransaction, token: Optional[Token] = None) -> bool:
        """
        Insert a bitcoin transaction, and its mint token, atomically.

        Returns:
            True if newly inserted, False if the txid (or token id) was
            already stored. Nothing is written in the False case.
        """
        try:
            with self.session() as s:
                s.add(TransactionRow(
                    txid=tx.txid,
                    account_id=str(tx.account_id),
                    bitcoin_address=tx.bitcoin_address,
                    amount=tx.amount,
                    created_ts=tx.created_ts
                ))
                if token is not None:
                    s.add(TokenRow.from_record(token))
        except IntegrityError:
            return False
        return True

    # ------------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------------

    def get_token(self, token_id: str) -> Optional[Token]:
        with self.session() as s:
            row = s.get(TokenRow, token_id)
            return row.to_record() if row else None

    def get_tokens(self, min_height: int = 0, include_exchanged: bool = False) -> List[Token]:
        """Tokens above min_height, ascending by height."""
        with self.session() as s:
            query = select(TokenRow).where(TokenRow.height > min_height)
            if not include_exchanged:
                query = query.where(TokenRow.exchanged.is_(False))
            query = query.order_by(TokenRow.height, TokenRow.created_ts, TokenRow.id)
            return [row.to_record() for row in s.scalars(query).all()]

    def max_token_height(self, kind: TokenKind) -> Optional[int]:
        """Highest height of any stored token of this kind."""
        with self.session() as s:
            return s.scalar(select(func.max(TokenRow.height)).where(TokenRow.kind == kind.value))

    def store_token(self, token: Token) -> bool:
        """Insert a token. False if the id already exists."""
        try:
            with self.session() as s:
                s.add(TokenRow.from_record(token))
        except IntegrityError:
            return False
        return True

    def mark_exchanged(self, token_id: str, bitcoin_txid: Optional[str] = None,
                       native_txid: Optional[str] = None) -> bool:
        """
        Record the settled counter-leg. Exchanged never reverts.

        Returns:
            True if the token moved to exchanged, False if it was missing
            or already exchanged
        """
        with self.session() as s:
            row = s.get(TokenRow, token_id)
            if row is None or row.exchanged:
                return False
            row.exchanged = True
            if bitcoin_txid is not None:
                row.bitcoin_txid = bitcoin_txid
            if native_txid is not None:
                row.native_txid = native_txid
            return True

    def delete_token(self, token_id: str) -> bool:
        """Delete a token. False if there was nothing to delete."""
        with self.session() as s:
            result = s.execute(delete(TokenRow).where(TokenRow.id == token_id))
            deleted = result.rowcount > 0
        if deleted:
            log.warning(f"Token {token_id} deleted by operator")
        return deleted


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
