"""
TokenExchange Server - HTTP API for operators and the chain observer

Endpoints:
  POST /tokenexchange   - function=<name> plus flat key-value parameters
                          (form-encoded, query string or JSON object)
  GET  /health          - liveness and worker state

Functions:
  getStatus                              - configuration and suspend state
  getTokens [height] [includeExchanged]  - token list above a height
  deleteToken id                         - remove a token (operator)
  suspendSend / resumeSend               - outbound settlement switch
  getAddress account [publicKey]         - bitcoin deposit address
  getAccounts                            - all registered accounts
  getTransactions [account]              - recorded bitcoin deposits
  blockReceived [id]                     - new bitcoin block notification
  transactionReceived id                 - new wallet transaction notification

Run:
  tokenexchange-daemon --config .env
"""

import hmac
import logging
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .account_manager import AccountRegistry
from .amounts import format_btc, format_units
from .commands import (
    BlockReceived, Command, CommandError, DeleteToken, GetAccounts, GetAddress, GetStatus,
    GetTokens, GetTransactions, MalformedParameter, OperationFailed, ResumeSend, SuspendSend,
    TransactionReceived, parse_command,
)
from .config import ExchangeConfig
from .reconciler import GATEWAY_ERRORS, Reconciler
from .token_db import TokenDb
from .worker import ReconcilerWorker

log = logging.getLogger(__name__)

# How long a transactionReceived request waits for the worker
TRANSACTION_TIMEOUT_S = 60


@dataclass
class Services:
    config: ExchangeConfig
    db: TokenDb
    registry: AccountRegistry
    reconciler: Reconciler
    worker: ReconcilerWorker


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class StatusResult(BaseModel):
    currencyCode: str
    currencyId: str
    decimals: int
    exchangeRate: str
    redemptionAccount: str
    confirmations: int
    bitcoindAddress: str
    bitcoindTxFee: str
    suspended: bool


class TokenEntry(BaseModel):
    id: str
    kind: str
    sender: str
    height: int
    exchanged: bool
    tokenAmount: str
    bitcoinAmount: str
    bitcoinAddress: str
    bitcoinTxId: Optional[str] = None
    nativeTxId: Optional[str] = None


class TokensResult(BaseModel):
    tokens: List[TokenEntry]


class DeletedResult(BaseModel):
    deleted: bool


class SuspendedResult(BaseModel):
    suspended: bool


class AddressResult(BaseModel):
    address: str
    account: str


class AccountEntry(BaseModel):
    account: str
    address: str
    publicKey: Optional[str] = None


class AccountsResult(BaseModel):
    accounts: List[AccountEntry]


class TransactionEntry(BaseModel):
    txid: str
    account: str
    address: str
    amount: str
    timestamp: int


class TransactionsResult(BaseModel):
    transactions: List[TransactionEntry]


class ProcessedResult(BaseModel):
    processed: bool


# =============================================================================
# HANDLERS
# =============================================================================

def _get_status(services: Services, command: GetStatus) -> StatusResult:
    config = services.config
    return StatusResult(
        currencyCode=config.currency_code,
        currencyId=str(config.currency_id),
        decimals=config.decimals,
        exchangeRate=str(config.exchange_rate),
        redemptionAccount=str(config.redemption_account),
        confirmations=config.confirmations,
        bitcoindAddress=config.bitcoind_address,
        bitcoindTxFee=str(config.bitcoind_tx_fee),
        suspended=config.is_suspended()
    )


def _get_tokens(services: Services, command: GetTokens) -> TokensResult:
    decimals = services.config.decimals
    tokens = services.db.get_tokens(command.height, command.include_exchanged)
    return TokensResult(tokens=[
        TokenEntry(
            id=token.id,
            kind=token.kind.value,
            sender=str(token.sender),
            height=token.height,
            exchanged=token.exchanged,
            tokenAmount=format_units(token.token_amount, decimals),
            bitcoinAmount=format_btc(token.bitcoin_amount),
            bitcoinAddress=token.bitcoin_address,
            bitcoinTxId=token.bitcoin_txid,
            nativeTxId=token.native_txid
        )
        for token in tokens
    ])


def _delete_token(services: Services, command: DeleteToken) -> DeletedResult:
    return DeletedResult(deleted=services.db.delete_token(command.id))


def _suspend_send(services: Services, command: SuspendSend) -> SuspendedResult:
    return SuspendedResult(suspended=services.config.suspend())


def _resume_send(services: Services, command: ResumeSend) -> SuspendedResult:
    return SuspendedResult(suspended=services.config.resume())


def _get_address(services: Services, command: GetAddress) -> AddressResult:
    try:
        account = services.registry.get_or_create(command.account, command.public_key)
    except GATEWAY_ERRORS as e:
        log.error(f"Address request for {command.account} failed: {e}")
        raise OperationFailed("Unable to get new Bitcoin address from server")
    except RuntimeError as e:
        log.error(str(e))
        raise OperationFailed("Unable to create Bitcoin account")
    return AddressResult(address=account.bitcoin_address, account=str(command.account))


def _get_accounts(services: Services, command: GetAccounts) -> AccountsResult:
    return AccountsResult(accounts=[
        AccountEntry(
            account=str(account.account_id),
            address=account.bitcoin_address,
            publicKey=account.public_key.hex() if account.public_key else None
        )
        for account in services.registry.list_accounts()
    ])


def _get_transactions(services: Services, command: GetTransactions) -> TransactionsResult:
    return TransactionsResult(transactions=[
        TransactionEntry(
            txid=tx.txid,
            account=str(tx.account_id),
            address=tx.bitcoin_address,
            amount=format_btc(tx.amount),
            timestamp=tx.created_ts
        )
        for tx in services.db.get_transactions(command.account)
    ])


def _block_received(services: Services, command: BlockReceived) -> ProcessedResult:
    services.worker.post_block(command.id)
    return ProcessedResult(processed=True)


def _transaction_received(services: Services, command: TransactionReceived) -> ProcessedResult:
    future = services.worker.post_transaction(command.id)
    try:
        future.result(timeout=TRANSACTION_TIMEOUT_S)
    except FutureTimeout:
        raise OperationFailed(f"Transaction {command.id} is still being processed")
    except GATEWAY_ERRORS as e:
        raise OperationFailed(f"Unable to process transaction {command.id}: {e}")
    return ProcessedResult(processed=True)


HANDLERS: Dict[type, Callable[[Services, Command], BaseModel]] = {
    GetStatus: _get_status,
    GetTokens: _get_tokens,
    DeleteToken: _delete_token,
    SuspendSend: _suspend_send,
    ResumeSend: _resume_send,
    GetAddress: _get_address,
    GetAccounts: _get_accounts,
    GetTransactions: _get_transactions,
    BlockReceived: _block_received,
    TransactionReceived: _transaction_received,
}


def dispatch(services: Services, command: Command) -> BaseModel:
    return HANDLERS[type(command)](services, command)


# =============================================================================
# FASTAPI APP
# =============================================================================

async def _read_params(request: Request) -> Dict[str, str]:
    params = dict(request.query_params)
    body = await request.body()
    if not body:
        return params
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise MalformedParameter("body", "not a JSON object")
        if not isinstance(data, dict):
            raise MalformedParameter("body", "not a JSON object")
        params.update({k: str(v).lower() if isinstance(v, bool) else str(v)
                       for k, v in data.items() if v is not None})
    else:
        params.update(parse_qsl(body.decode("utf-8", errors="replace")))
    return params


def create_app(services: Services) -> FastAPI:
    """Build the API app; the worker runs for the lifetime of the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.worker.start()
        log.info("TokenExchange API started")
        yield
        services.worker.stop()

    app = FastAPI(title="TokenExchange", version="1.0.0", lifespan=lifespan)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "suspended": services.config.is_suspended(),
            "worker": services.worker.running,
            "sweep": services.worker.state.value,
        }

    @app.post("/tokenexchange")
    async def token_exchange(request: Request):
        try:
            params = await _read_params(request)
            password = services.config.admin_password
            supplied = params.get("adminPassword", "").encode()
            if password and not hmac.compare_digest(supplied, password.encode()):
                raise MalformedParameter("adminPassword")
            command = parse_command(params)
            result = await run_in_threadpool(dispatch, services, command)
        except CommandError as e:
            log.debug(f"Request failed: {e.description}")
            return JSONResponse(e.to_dict())
        return JSONResponse(result.model_dump(exclude_none=True))

    return app
