"""
TokenExchange - Native Ledger Client

HTTP client for the account-based native ledger node (requestType API).

Used for:
  - current chain height (redemption confirmation depth)
  - discovering currency transfers to the redemption account
  - issuing tokens for confirmed bitcoin deposits
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from .exchange_types import Redemption
from .rpc_client import GatewayUnavailable

log = logging.getLogger(__name__)

# Monetary system transaction type / currency transfer subtype
TYPE_MONETARY_SYSTEM = 5
SUBTYPE_CURRENCY_TRANSFER = 3


class LedgerClient:
    """
    Client for the native ledger node.

    Usage:
        ledger = LedgerClient("http://localhost:7876/nxt", secret_phrase="...",
                              currency_id=123)
        height = ledger.get_height()
        txid = ledger.issue_tokens(recipient, 15000, idempotency_key=token.id)
    """

    # Transactions searched when looking for an earlier issuance
    ISSUANCE_HISTORY_DEPTH = 1000
    # Records per paged request, the node default for maxAPIRecords
    PAGE_SIZE = 100

    def __init__(self, url: str = "http://localhost:7876/nxt",
                 secret_phrase: str = "", currency_id: int = 0,
                 fee: int = 100000000, deadline: int = 60, timeout: int = 30):
        self.url = url
        self.secret_phrase = secret_phrase
        self.currency_id = currency_id
        self.fee = fee
        self.deadline = deadline
        self.timeout = timeout
        self._issuer: Optional[int] = None
        self._session = requests.Session()

    def _call(self, request_type: str, **params: Any) -> Dict:
        """POST a request and return the decoded response."""
        data = {"requestType": request_type}
        data.update({k: str(v) for k, v in params.items() if v is not None})
        try:
            response = self._session.post(self.url, data=data, timeout=self.timeout)
            response.raise_for_status()
            result = response.json()
        except requests.exceptions.RequestException as e:
            raise GatewayUnavailable(f"Native ledger connection failed: {e}")
        except ValueError as e:
            raise GatewayUnavailable(f"Native ledger returned invalid JSON: {e}")

        if "errorCode" in result:
            raise GatewayUnavailable(
                f"{request_type} failed ({result['errorCode']}): {result.get('errorDescription', '')}")
        return result

    # =========================================================================
    # CHAIN STATE
    # =========================================================================

    def get_height(self) -> int:
        """Height of the last block."""
        status = self._call("getBlockchainStatus")
        return int(status["numberOfBlocks"]) - 1

    def issuer_account(self) -> int:
        """Account id of the issuing (secret phrase) account."""
        if self._issuer is None:
            result = self._call("getAccountId", secretPhrase=self.secret_phrase)
            self._issuer = int(result["account"])
        return self._issuer

    # =========================================================================
    # REDEMPTIONS
    # =========================================================================

    def get_redemptions(self, redemption_account: int, from_height: int,
                        currency_id: Optional[int] = None) -> List[Redemption]:
        """
        Currency transfers to the redemption account above a height.

        The bitcoin address to pay is taken from the transaction message.
        Transfers without a message get an empty address.
        """
        currency = self.currency_id if currency_id is None else currency_id

        redemptions = []
        seen = set()
        for transfer in self._transfers_since(currency, redemption_account, from_height):
            if int(transfer.get("recipient", 0)) != redemption_account:
                continue
            height = int(transfer.get("height", 0))
            txid = str(transfer["transfer"])
            # A transfer arriving mid-scan shifts the pages by one
            if height <= from_height or txid in seen:
                continue
            seen.add(txid)
            tx = self._call("getTransaction", transaction=txid)
            attachment = tx.get("attachment") or {}
            message = attachment.get("message", "") if attachment.get("messageIsText", True) else ""
            redemptions.append(Redemption(
                transaction_id=txid,
                sender=int(transfer["sender"]),
                height=height,
                units=int(transfer["units"]),
                bitcoin_address=message.strip()
            ))
        redemptions.sort(key=lambda r: r.height)
        return redemptions

    def _transfers_since(self, currency: int, account: int, from_height: int) -> List[Dict]:
        """
        Page through currency transfers, newest first, until a page is short
        or reaches back to from_height.
        """
        transfers: List[Dict] = []
        first = 0
        while True:
            page = self._call(
                "getCurrencyTransfers",
                currency=currency,
                account=account,
                firstIndex=first,
                lastIndex=first + self.PAGE_SIZE - 1,
            ).get("transfers", [])
            transfers.extend(page)
            if len(page) < self.PAGE_SIZE:
                return transfers
            if any(int(t.get("height", 0)) <= from_height for t in page):
                return transfers
            first += self.PAGE_SIZE

    # =========================================================================
    # ISSUANCE
    # =========================================================================

    def find_issuance(self, idempotency_key: str) -> Optional[str]:
        """Transaction id of an earlier transfer carrying this key, if any."""
        account = self.issuer_account()
        candidates = []
        unconfirmed = self._call("getUnconfirmedTransactions", account=account)
        candidates.extend(unconfirmed.get("unconfirmedTransactions", []))
        confirmed = self._call(
            "getBlockchainTransactions",
            account=account,
            type=TYPE_MONETARY_SYSTEM,
            subtype=SUBTYPE_CURRENCY_TRANSFER,
            lastIndex=self.ISSUANCE_HISTORY_DEPTH - 1,
        )
        candidates.extend(confirmed.get("transactions", []))
        for tx in candidates:
            attachment = tx.get("attachment") or {}
            if attachment.get("message") == idempotency_key:
                return str(tx["transaction"])
        return None

    def issue_tokens(self, recipient: int, units: int, idempotency_key: str,
                     recipient_public_key: Optional[bytes] = None) -> str:
        """
        Transfer token units to a recipient, at most once per key.

        Args:
            recipient: Native account id
            units: Currency units
            idempotency_key: Token id, sent as the transaction message
            recipient_public_key: Announced for accounts new to the ledger

        Returns:
            Native transaction id

        Raises:
            GatewayUnavailable: If the transfer could not be submitted
        """
        existing = self.find_issuance(idempotency_key)
        if existing:
            log.warning(f"Tokens for {idempotency_key} already issued in {existing}")
            return existing

        result = self._call(
            "transferCurrency",
            recipient=recipient,
            currency=self.currency_id,
            units=units,
            secretPhrase=self.secret_phrase,
            feeNQT=self.fee,
            deadline=self.deadline,
            message=idempotency_key,
            messageIsText="true",
            recipientPublicKey=recipient_public_key.hex() if recipient_public_key else None,
        )
        txid = result.get("transaction")
        if not txid:
            raise GatewayUnavailable(f"Token transfer to {recipient} was not accepted")
        return str(txid)
