# Copyright (c) 2026 The TokenExchange developers
# Distributed under the MIT software license

"""
Reconciler Worker - single-threaded delivery of chain notifications

Notifications are posted as messages and executed one at a time by a
single worker thread, which owns all reconciler work:

  transaction -> always queued, result delivered through a Future
  block       -> dropped while a sweep is queued or running
                 (latest wins, no backlog: the next sweep picks up
                 everything the skipped one would have done)
"""

import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Optional, Union

from .exchange_types import SweepState
from .reconciler import Reconciler

log = logging.getLogger(__name__)


@dataclass
class TransactionMessage:
    txid: str
    future: Future = field(default_factory=Future)


@dataclass
class BlockMessage:
    block_id: str
    future: Future = field(default_factory=Future)


Message = Union[TransactionMessage, BlockMessage]

_STOP = object()


class ReconcilerWorker:
    """
    Worker thread feeding the reconciler.

    Usage:
        worker = ReconcilerWorker(reconciler)
        worker.start()
        result = worker.post_transaction(txid).result(timeout=30)
        worker.post_block(block_hash)     # None if dropped
        worker.stop()
    """

    def __init__(self, reconciler: Reconciler):
        self.reconciler = reconciler
        self._inbox: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._block_queued = False
        self._thread: Optional[threading.Thread] = None
        self.dropped_blocks = 0

    @property
    def state(self) -> SweepState:
        """RUNNING while a sweep is queued or executing."""
        with self._lock:
            return SweepState.RUNNING if self._block_queued else SweepState.IDLE

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._thread = threading.Thread(target=self._run, name="reconciler-worker", daemon=True)
        self._thread.start()
        log.info("Reconciler worker started")

    def stop(self, timeout: float = 30.0):
        """Finish queued work, then stop the thread."""
        if not self.running:
            return
        self._inbox.put(_STOP)
        self._thread.join(timeout)
        log.info("Reconciler worker stopped")

    # =========================================================================
    # POSTING
    # =========================================================================

    def post_transaction(self, txid: str) -> Future:
        message = TransactionMessage(txid)
        self._inbox.put(message)
        return message.future

    def post_block(self, block_id: str) -> Optional[Future]:
        """
        Queue a sweep unless one is already queued or running.

        Returns:
            Future resolving to True once the sweep ran, or None if dropped
        """
        with self._lock:
            if self._block_queued:
                self.dropped_blocks += 1
                log.debug(f"Block {block_id} dropped, sweep already pending")
                return None
            self._block_queued = True
        message = BlockMessage(block_id)
        self._inbox.put(message)
        return message.future

    # =========================================================================
    # WORKER LOOP
    # =========================================================================

    def _run(self):
        while True:
            message = self._inbox.get()
            if message is _STOP:
                break
            self._handle(message)

    def _handle(self, message: Message):
        if not message.future.set_running_or_notify_cancel():
            if isinstance(message, BlockMessage):
                self._release_block()
            return
        try:
            if isinstance(message, TransactionMessage):
                message.future.set_result(self.reconciler.transaction_received(message.txid))
            else:
                try:
                    swept = self.reconciler.block_received(message.block_id)
                finally:
                    self._release_block()
                message.future.set_result(swept)
        except Exception as e:
            log.error(f"Worker error handling {type(message).__name__}: {e}")
            message.future.set_exception(e)

    def _release_block(self):
        with self._lock:
            self._block_queued = False

    def drain(self):
        """Run queued messages on the calling thread (worker not started)."""
        while True:
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                return
            if message is not _STOP:
                self._handle(message)
