"""
TokenExchange - Configuration

Process-wide exchange settings, loaded once at startup.

Sources, lowest priority first:
  1. Dataclass defaults
  2. .env file (KEY=VALUE lines, existing environment wins)
  3. TOKENEXCHANGE_* environment variables
  4. Command-line flags (applied by the daemon)

Everything is read-only after startup except the suspend flag, which the
operator toggles with suspend()/resume().
"""

import logging
import os
import threading
from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

log = logging.getLogger(__name__)

ENV_PREFIX = "TOKENEXCHANGE_"


def mask_secret(secret: str, visible_prefix: int = 4, visible_suffix: int = 2) -> str:
    """Mask a secret for safe logging. NEVER log full passwords/phrases."""
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"


def mask_database_url(url: str) -> str:
    """Database URL with its password hidden."""
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return mask_secret(url)


def load_env_file(path: str) -> int:
    """
    Load KEY=VALUE lines from a .env file into os.environ.

    Existing environment variables are never overwritten.

    Returns:
        Number of variables set
    """
    if not os.path.exists(path):
        return 0
    count = 0
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                key = key.strip()
                if key not in os.environ:
                    os.environ[key] = value.strip().strip('"').strip("'")
                    count += 1
    return count


@dataclass
class ExchangeConfig:
    # Token currency on the native ledger
    currency_code: str = "BTCX"
    currency_id: int = 0
    decimals: int = 8
    exchange_rate: Decimal = Decimal("1")  # BTC per whole token

    # Settlement policy
    confirmations: int = 6
    bitcoind_tx_fee: Decimal = Decimal("0.0001")  # BTC per kB
    redemption_account: int = 0
    start_height: int = 0

    # bitcoind JSON-RPC
    bitcoind_address: str = "localhost:8332"
    bitcoind_user: str = ""
    bitcoind_password: str = ""

    # Native ledger node
    ledger_url: str = "http://localhost:7876/nxt"
    ledger_secret_phrase: str = ""
    ledger_fee: int = 100000000

    # Storage and API
    database_url: str = "sqlite:///tokenexchange.db"
    api_host: str = "127.0.0.1"
    api_port: int = 7880
    admin_password: str = ""

    # Operator switch (mutable)
    suspended: bool = False

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Fail fast on settings the reconciler cannot work with."""
        if not 0 <= self.decimals <= 8:
            raise ValueError(f"decimals must be between 0 and 8, got {self.decimals}")
        if self.exchange_rate <= 0:
            raise ValueError(f"exchange_rate must be positive, got {self.exchange_rate}")
        if self.confirmations < 0:
            raise ValueError(f"confirmations must not be negative, got {self.confirmations}")
        if self.bitcoind_tx_fee < 0:
            raise ValueError(f"bitcoind_tx_fee must not be negative, got {self.bitcoind_tx_fee}")

    # =========================================================================
    # SUSPEND SWITCH
    # =========================================================================

    def suspend(self) -> bool:
        """Withhold new outbound settlements. Idempotent."""
        with self._lock:
            if not self.suspended:
                log.warning("Sending suspended by operator")
            self.suspended = True
            return self.suspended

    def resume(self) -> bool:
        """Allow outbound settlements again. Idempotent."""
        with self._lock:
            if self.suspended:
                log.info("Sending resumed by operator")
            self.suspended = False
            return self.suspended

    def is_suspended(self) -> bool:
        return self.suspended

    @property
    def bitcoind_url(self) -> str:
        address = self.bitcoind_address
        if not address.startswith(("http://", "https://")):
            address = f"http://{address}"
        return address

    # =========================================================================
    # LOADING
    # =========================================================================

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "ExchangeConfig":
        """
        Build a config from TOKENEXCHANGE_* variables.

        Args:
            environ: Mapping to read (defaults to os.environ)
            overrides: Explicit values that win over the environment

        Raises:
            ValueError: If a variable cannot be converted
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name.startswith("_") or f.name == "suspended":
                continue
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _convert(f.name, raw, f.type)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def describe(self) -> Dict[str, Any]:
        """Settings for the startup banner, secrets masked."""
        return {
            "currency": f"{self.currency_code} ({self.currency_id})",
            "decimals": self.decimals,
            "exchange_rate": str(self.exchange_rate),
            "confirmations": self.confirmations,
            "redemption_account": self.redemption_account,
            "bitcoind": f"{self.bitcoind_url} user={self.bitcoind_user or '-'} "
                        f"password={mask_secret(self.bitcoind_password)}",
            "ledger": f"{self.ledger_url} secret={mask_secret(self.ledger_secret_phrase)}",
            "database": mask_database_url(self.database_url),
            "api": f"{self.api_host}:{self.api_port}",
        }


def _convert(name: str, raw: str, type_: Any) -> Any:
    type_name = type_ if isinstance(type_, str) else getattr(type_, "__name__", str(type_))
    try:
        if type_name == "int":
            return int(raw)
        if type_name == "Decimal":
            return Decimal(raw)
        if type_name == "bool":
            return raw.strip().lower() in ("1", "true", "yes", "on")
    except (ValueError, InvalidOperation):
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}")
    return raw
