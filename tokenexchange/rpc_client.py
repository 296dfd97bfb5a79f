"""
TokenExchange - Bitcoin RPC Client

JSON-RPC client for communicating with bitcoind, plus the gateway
operations the reconciler needs: address allocation, transaction lookup
and idempotent payment submission.
"""

import json
import logging
import re
from decimal import Decimal
from typing import Any, List, Optional, Tuple

import requests

from .amounts import btc_to_satoshi, satoshi_to_btc
from .exchange_types import TransactionDetail, WalletTransaction

log = logging.getLogger(__name__)

# bitcoind error codes
RPC_INVALID_ADDRESS_OR_KEY = -5   # also "Invalid or non-wallet transaction id"
RPC_CONNECTION_FAILED = -1

# Legacy base58 (P2PKH/P2SH, main and test networks) and bech32 addresses
_BASE58_ADDRESS = re.compile(r"^[123mn][1-9A-HJ-NP-Za-km-z]{25,34}$")
_BECH32_ADDRESS = re.compile(r"^(bc|tb|bcrt)1[02-9ac-hj-np-z]{8,87}$")


def is_valid_bitcoin_address(address: str) -> bool:
    """Shape check only; bitcoind performs the real validation on send."""
    if not address or len(address) > 90:
        return False
    return bool(_BASE58_ADDRESS.match(address) or _BECH32_ADDRESS.match(address.lower()))


class RPCError(Exception):
    """RPC call failed."""
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}")


class GatewayUnavailable(Exception):
    """An external node could not perform the requested operation."""


class BitcoinRPC:
    """
    JSON-RPC client for bitcoind.

    Usage:
        rpc = BitcoinRPC("http://localhost:8332", "user", "pass")
        address = rpc.get_new_address("1234567890")
        tx = rpc.get_transaction(txid)
        txid = rpc.submit_payment(address, 150000000, idempotency_key="token-id")
    """

    # How far back the wallet history is searched for an earlier payment
    PAYMENT_HISTORY_DEPTH = 1000

    def __init__(self, url: str = "http://localhost:8332",
                 user: str = "", password: str = "",
                 timeout: int = 30, tx_fee: Optional[Decimal] = None):
        self.url = url
        self.auth = (user, password) if user else None
        self.timeout = timeout
        self.tx_fee = tx_fee
        self._fee_set = False
        self._id = 0
        self._session = requests.Session()

    def _call(self, method: str, params: list = None) -> Any:
        """Make RPC call."""
        self._id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._id,
            "method": method,
            "params": params or []
        }

        try:
            response = self._session.post(
                self.url,
                data=json.dumps(payload, default=float),
                headers={"Content-Type": "application/json"},
                auth=self.auth,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise RPCError(RPC_CONNECTION_FAILED, f"Connection failed: {e}")

        # bitcoind reports RPC errors with HTTP 500 and a JSON body
        try:
            result = response.json(parse_float=Decimal)
        except ValueError:
            raise RPCError(RPC_CONNECTION_FAILED,
                           f"HTTP {response.status_code}: {response.text[:200]}")

        if result.get("error"):
            raise RPCError(result["error"]["code"], result["error"]["message"])

        return result.get("result")

    # ═══════════════════════════════════════════════════════════════════════
    # COMMON RPC METHODS
    # ═══════════════════════════════════════════════════════════════════════

    def getblockcount(self) -> int:
        """Get current block height."""
        return self._call("getblockcount")

    def getnewaddress(self, label: str = "") -> str:
        """Get new address from wallet."""
        return self._call("getnewaddress", [label] if label else [])

    def gettransaction(self, txid: str) -> dict:
        return self._call("gettransaction", [txid])

    def listsinceblock(self, blockhash: str = "") -> dict:
        return self._call("listsinceblock", [blockhash] if blockhash else [])

    def listtransactions(self, count: int = 10) -> List[dict]:
        return self._call("listtransactions", ["*", count])

    def sendtoaddress(self, address: str, amount: Decimal, comment: str = "") -> str:
        return self._call("sendtoaddress", [address, amount, comment])

    def settxfee(self, fee: Decimal) -> bool:
        return self._call("settxfee", [fee])

    def test_connection(self) -> bool:
        """Test if RPC connection works."""
        try:
            self.get_block_count()
            return True
        except GatewayUnavailable:
            return False

    # ═══════════════════════════════════════════════════════════════════════
    # GATEWAY OPERATIONS
    # ═══════════════════════════════════════════════════════════════════════

    def get_block_count(self) -> int:
        """
        Current bitcoin chain height.

        Raises:
            GatewayUnavailable: If bitcoind could not be reached
        """
        try:
            return int(self.getblockcount())
        except RPCError as e:
            raise GatewayUnavailable(f"Unable to get block count: {e}")

    def get_new_address(self, label: str) -> str:
        """
        Allocate a new receiving address.

        Raises:
            GatewayUnavailable: If bitcoind did not return an address
        """
        try:
            address = self.getnewaddress(label)
        except RPCError as e:
            raise GatewayUnavailable(f"Unable to get new Bitcoin address from server: {e}")
        if not address:
            raise GatewayUnavailable("Unable to get new Bitcoin address from server")
        log.info(f"New bitcoin address {address} allocated for {label}")
        return address

    def get_transaction(self, txid: str) -> Optional[WalletTransaction]:
        """
        Look up a wallet transaction.

        Returns:
            The transaction, or None if bitcoind does not know it

        Raises:
            RPCError: For any failure other than "not found"
        """
        try:
            data = self.gettransaction(txid)
        except RPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                return None
            raise

        details = []
        for d in data.get("details", []):
            if "address" not in d:
                continue
            details.append(TransactionDetail(
                address=d["address"],
                category=d.get("category", ""),
                amount=btc_to_satoshi(abs(Decimal(str(d.get("amount", 0)))))
            ))
        return WalletTransaction(
            txid=data.get("txid", txid),
            confirmations=int(data.get("confirmations", 0)),
            details=details,
            blockhash=data.get("blockhash")
        )

    def list_since_block(self, blockhash: Optional[str] = None) -> Tuple[List[str], Optional[str]]:
        """
        Wallet receive txids since a block (all when blockhash is None).

        Returns:
            (txids, lastblock) - pass lastblock to the next call
        """
        data = self.listsinceblock(blockhash or "")
        txids = []
        for entry in data.get("transactions", []):
            if entry.get("category") == "receive" and entry.get("txid") not in txids:
                txids.append(entry["txid"])
        return txids, data.get("lastblock")

    def find_payment(self, idempotency_key: str) -> Optional[str]:
        """Txid of an earlier send carrying this idempotency key, if any."""
        for entry in self.listtransactions(self.PAYMENT_HISTORY_DEPTH):
            if entry.get("category") == "send" and entry.get("comment") == idempotency_key:
                return entry.get("txid")
        return None

    def submit_payment(self, address: str, amount: int, idempotency_key: str) -> str:
        """
        Pay bitcoin to an address, at most once per idempotency key.

        Args:
            address: Destination address
            amount: Satoshi to send
            idempotency_key: Token id, stored as the wallet comment

        Returns:
            Bitcoin txid (the earlier one if the key was already paid)

        Raises:
            GatewayUnavailable: If the payment could not be submitted
        """
        try:
            existing = self.find_payment(idempotency_key)
            if existing:
                log.warning(f"Payment for {idempotency_key} already sent in {existing}")
                return existing

            if self.tx_fee is not None and not self._fee_set:
                self.settxfee(self.tx_fee)
                self._fee_set = True

            txid = self.sendtoaddress(address, satoshi_to_btc(amount), idempotency_key)
        except RPCError as e:
            raise GatewayUnavailable(f"Unable to send bitcoins to {address}: {e}")
        if not txid:
            raise GatewayUnavailable(f"Unable to send bitcoins to {address}")
        return txid
