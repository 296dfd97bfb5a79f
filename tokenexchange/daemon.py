#!/usr/bin/env python3
# Copyright (c) 2026 The TokenExchange developers
# Distributed under the MIT software license

"""
TokenExchange Daemon - bitcoin <-> token exchange service

Wires configuration, database, bitcoind, the native ledger node and the
reconciler together and serves the HTTP API.

Chain notifications normally arrive from bitcoind:
  walletnotify=curl -s -d "function=transactionReceived&id=%s" http://127.0.0.1:7880/tokenexchange
  blocknotify=curl -s -d "function=blockReceived&id=%s" http://127.0.0.1:7880/tokenexchange

--poll-interval adds a periodic sweep for setups without blocknotify.
"""

import argparse
import logging
import os
import sys
import threading
from decimal import Decimal
from typing import Optional

import uvicorn

from .account_manager import AccountRegistry
from .config import ExchangeConfig, load_env_file
from .ledger_client import LedgerClient
from .reconciler import Reconciler
from .rpc_client import BitcoinRPC
from .server import Services, create_app
from .token_db import TokenDb
from .worker import ReconcilerWorker

log = logging.getLogger("tokenexchange")


def build_services(config: ExchangeConfig) -> Services:
    db = TokenDb(config.database_url)
    bitcoin = BitcoinRPC(
        config.bitcoind_url,
        config.bitcoind_user,
        config.bitcoind_password,
        tx_fee=config.bitcoind_tx_fee
    )
    ledger = LedgerClient(
        config.ledger_url,
        secret_phrase=config.ledger_secret_phrase,
        currency_id=config.currency_id,
        fee=config.ledger_fee
    )
    registry = AccountRegistry(db, bitcoin)
    reconciler = Reconciler(config, db, registry, bitcoin, ledger)
    worker = ReconcilerWorker(reconciler)
    return Services(config, db, registry, reconciler, worker)


class SweepTimer:
    """Posts a block trigger every interval (dropped if a sweep is pending)."""

    def __init__(self, worker: ReconcilerWorker, interval: int):
        self.worker = worker
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._thread = threading.Thread(target=self._run, name="sweep-timer", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()

    def _run(self):
        while not self._stop.wait(self.interval):
            self.worker.post_block("timer")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TokenExchange bitcoin <-> token exchange daemon")
    parser.add_argument("--config", default=".env", help="Path to .env file (default: .env)")
    parser.add_argument("--database", help="SQLAlchemy database URL")
    parser.add_argument("--bitcoind", help="bitcoind RPC address (host:port)")
    parser.add_argument("--ledger-url", help="Native ledger API URL")
    parser.add_argument("--confirmations", type=int, help="Required confirmations")
    parser.add_argument("--exchange-rate", type=Decimal, help="BTC per whole token")
    parser.add_argument("--host", help="API listen address")
    parser.add_argument("--port", type=int, help="API listen port")
    parser.add_argument("--poll-interval", type=int, default=0,
                        help="Sweep every N seconds in addition to block notifications (0 = off)")
    parser.add_argument("--suspended", action="store_true", help="Start with sending suspended")
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if load_env_file(args.config):
        log.info(f"Loaded config from {os.path.abspath(args.config)}")

    try:
        config = ExchangeConfig.from_env(
            database_url=args.database,
            bitcoind_address=args.bitcoind,
            ledger_url=args.ledger_url,
            confirmations=args.confirmations,
            exchange_rate=args.exchange_rate,
            api_host=args.host,
            api_port=args.port
        )
    except ValueError as e:
        log.error(f"Invalid configuration: {e}")
        return 2
    if args.suspended:
        config.suspend()

    log.info("=" * 60)
    log.info("TokenExchange starting...")
    for key, value in config.describe().items():
        log.info(f"  {key}: {value}")
    log.info("=" * 60)

    services = build_services(config)

    if not services.reconciler.bitcoin.test_connection():
        log.warning(f"bitcoind not reachable at {config.bitcoind_url}, deposits will be retried")

    if args.once:
        services.reconciler.block_received("once")
        report = services.reconciler.last_report
        log.info(f"Sweep done: {report.settled} settled, {report.pending} pending")
        services.db.close()
        return 0

    timer = None
    if args.poll_interval > 0:
        timer = SweepTimer(services.worker, args.poll_interval)
        timer.start()
        log.info(f"Periodic sweep every {args.poll_interval}s")

    try:
        uvicorn.run(create_app(services), host=config.api_host, port=config.api_port,
                    log_level=logging.getLevelName(logging.getLogger().level).lower())
    finally:
        if timer:
            timer.stop()
        services.db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
