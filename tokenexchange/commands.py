"""
TokenExchange - API Commands

Flat key-value request parameters are parsed exactly once, here, into a
typed command. Everything behind the boundary works with the command
dataclasses only.

Error codes:
  3 - required parameter missing
  4 - parameter malformed, or the operation failed
  5 - unknown function
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Union

MAX_ACCOUNT_ID = 2 ** 64 - 1
_TXID = re.compile(r"^[0-9a-fA-F]{64}$")


# =============================================================================
# ERRORS
# =============================================================================

class CommandError(Exception):
    """Request could not be executed; carries the API error code."""
    error_code = 4

    def __init__(self, description: str):
        self.description = description
        super().__init__(description)

    def to_dict(self) -> dict:
        return {"errorCode": self.error_code, "errorDescription": self.description}


class MissingParameter(CommandError):
    error_code = 3

    def __init__(self, *names: str):
        if len(names) == 1:
            description = f'"{names[0]}" not specified'
        else:
            description = f"At least one of {list(names)} must be specified"
        super().__init__(description)


class MalformedParameter(CommandError):
    error_code = 4

    def __init__(self, name: str, details: Optional[str] = None):
        description = f'Incorrect "{name}"' + (f": {details}" if details else "")
        super().__init__(description)


class OperationFailed(CommandError):
    error_code = 4


class UnknownFunction(CommandError):
    error_code = 5

    def __init__(self, function: str):
        super().__init__(f"Unknown {function}")


# =============================================================================
# COMMANDS
# =============================================================================

@dataclass(frozen=True)
class GetStatus:
    pass


@dataclass(frozen=True)
class GetTokens:
    height: int = 0
    include_exchanged: bool = False


@dataclass(frozen=True)
class DeleteToken:
    id: str


@dataclass(frozen=True)
class SuspendSend:
    pass


@dataclass(frozen=True)
class ResumeSend:
    pass


@dataclass(frozen=True)
class GetAddress:
    account: int
    public_key: Optional[bytes] = None


@dataclass(frozen=True)
class GetAccounts:
    pass


@dataclass(frozen=True)
class GetTransactions:
    account: Optional[int] = None


@dataclass(frozen=True)
class BlockReceived:
    id: str = ""


@dataclass(frozen=True)
class TransactionReceived:
    id: str


Command = Union[
    GetStatus, GetTokens, DeleteToken, SuspendSend, ResumeSend, GetAddress,
    GetAccounts, GetTransactions, BlockReceived, TransactionReceived,
]


# =============================================================================
# PARAMETER PARSING
# =============================================================================

def _param(params: Mapping[str, str], name: str) -> Optional[str]:
    """Parameter value, with empty strings treated as absent."""
    value = params.get(name)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _required(params: Mapping[str, str], name: str) -> str:
    value = _param(params, name)
    if value is None:
        raise MissingParameter(name)
    return value


def parse_account_id(value: str, name: str = "account") -> int:
    """Unsigned 64-bit native account id."""
    try:
        account_id = int(value)
    except ValueError:
        raise MalformedParameter(name, f"{value} is not a numeric account id")
    if not 0 < account_id <= MAX_ACCOUNT_ID:
        raise MalformedParameter(name, f"{value} is out of range")
    return account_id


def parse_bool(value: Optional[str]) -> bool:
    return value is not None and value.lower() == "true"


def _get_tokens(params: Mapping[str, str]) -> GetTokens:
    height_string = _param(params, "height")
    height = 0
    if height_string is not None:
        try:
            height = int(height_string)
        except ValueError:
            raise MalformedParameter("height", f"For input string: \"{height_string}\"")
    return GetTokens(height, parse_bool(_param(params, "includeExchanged")))


def _get_address(params: Mapping[str, str]) -> GetAddress:
    account = parse_account_id(_required(params, "account"))
    public_key = None
    public_key_string = _param(params, "publicKey")
    if public_key_string is not None:
        try:
            public_key = bytes.fromhex(public_key_string)
        except ValueError:
            raise MalformedParameter("publicKey", "public key is not a hex string")
        if len(public_key) != 32:
            raise MalformedParameter("publicKey", "public key is not 32 bytes")
    return GetAddress(account, public_key)


def _get_transactions(params: Mapping[str, str]) -> GetTransactions:
    account_string = _param(params, "account")
    if account_string is None:
        return GetTransactions()
    return GetTransactions(parse_account_id(account_string))


def _transaction_received(params: Mapping[str, str]) -> TransactionReceived:
    txid = _required(params, "id")
    if not _TXID.match(txid):
        raise MalformedParameter("id", "transaction id is not a 32-byte hex string")
    return TransactionReceived(txid.lower())


PARSERS: Dict[str, Callable[[Mapping[str, str]], Command]] = {
    "getStatus": lambda params: GetStatus(),
    "getTokens": _get_tokens,
    "deleteToken": lambda params: DeleteToken(_required(params, "id")),
    "suspendSend": lambda params: SuspendSend(),
    "resumeSend": lambda params: ResumeSend(),
    "getAddress": _get_address,
    "getAccounts": lambda params: GetAccounts(),
    "getTransactions": _get_transactions,
    "blockReceived": lambda params: BlockReceived(_param(params, "id") or ""),
    "transactionReceived": _transaction_received,
}


def parse_command(params: Mapping[str, str]) -> Command:
    """
    Parse request parameters into a command.

    Raises:
        MissingParameter: "function" or a required parameter is absent
        MalformedParameter: A parameter has an invalid value
        UnknownFunction: "function" names no command
    """
    function = _param(params, "function")
    if function is None:
        raise MissingParameter("function")
    parser = PARSERS.get(function)
    if parser is None:
        raise UnknownFunction(function)
    return parser(params)
