# -*- encoding: utf-8 -*-
"""
EVM Confirmations
evm_confirmations.watcher module

Confirmation watcher: validates a receipt, picks a strategy, and returns a
handle for the resulting watch operation.

Each watch operation owns its ConfirmationState. Block sources and
subscription managers are shared across operations.

State per operation:
    VALIDATING -> FAILED                      (precondition error, raised)
    VALIDATING -> SUBSCRIBING -> SUBSCRIBED -> DONE
                                           -> POLLING (fallback, at most once)
    VALIDATING -> POLLING -> DONE             (threshold met)
    any        -> DONE                        (cancel)
"""

import logging
import threading

from evm_confirmations.config import WatchConfig
from evm_confirmations.errors import (
    MissingReceiptOrBlockHashError,
    ReceiptMissingBlockNumberError,
)
from evm_confirmations.models import ConfirmationState, receipt_field, to_hex
from evm_confirmations.polling import PollingStrategy
from evm_confirmations.subscribing import SubscriptionStrategy

logger = logging.getLogger(__name__)


def validate_receipt(receipt, tx_hash):
    """Raise if the receipt does not prove the transaction was mined."""
    block_hash = receipt_field(receipt, "blockHash")
    if receipt is None or block_hash is None:
        raise MissingReceiptOrBlockHashError(
            receipt=receipt, block_hash=block_hash, tx_hash=tx_hash
        )
    if receipt_field(receipt, "blockNumber") is None:
        raise ReceiptMissingBlockNumberError(receipt=receipt, tx_hash=tx_hash)


class WatchHandle:
    """A running watch operation.

    Only one strategy is active at a time: the subscription first when
    available, then polling if the subscription fails. Polling is never
    replaced by a subscription.
    """

    def __init__(self, state, block_source, subscription_manager, polling_interval):
        self.state = state
        self.block_source = block_source
        self.subscription_manager = subscription_manager
        self.polling_interval = polling_interval
        self.subscription = None
        self.polling = None
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._cancelled = False
        self._subscribe_thread = None

    def _start(self, use_subscription):
        if not use_subscription:
            self._start_polling()
            return

        self.subscription = SubscriptionStrategy(
            self.state,
            self.subscription_manager,
            on_fallback=self._start_polling,
            on_complete=self._finish,
        )
        # Subscribe off the caller's thread so watch() returns the handle
        # before any event can fire.
        self._subscribe_thread = threading.Thread(
            target=self.subscription.start,
            name=f"subscribe-{to_hex(self.state.tx_hash)}",
            daemon=True,
        )
        self._subscribe_thread.start()

    def _start_polling(self):
        with self._lock:
            if self.polling is not None or self._done.is_set():
                return
            self.polling = PollingStrategy(
                self.state,
                self.block_source,
                self.polling_interval,
                on_complete=self._finish,
            )
            polling = self.polling
        polling.start()

    def _finish(self):
        self._done.set()

    def cancel(self):
        """Stop the watch operation. Idempotent.

        Stops the polling timer and unsubscribes synchronously. No events
        are emitted after this returns.
        """
        with self._lock:
            if self._cancelled or self._done.is_set():
                return
            self._cancelled = True
            self._done.set()
            subscription, polling = self.subscription, self.polling

        self.state.close()
        if subscription is not None:
            subscription.stop()
        if polling is not None:
            polling.stop()
        logger.info("Stopped watching %s for confirmations", to_hex(self.state.tx_hash))

    def wait(self, timeout=None):
        """Block until the threshold is met or the handle is cancelled.

        Returns:
            True if the operation finished, False on timeout.
        """
        return self._done.wait(timeout)

    @property
    def done(self):
        return self._done.is_set()

    @property
    def cancelled(self):
        with self._lock:
            return self._cancelled

    @property
    def confirmation_count(self):
        return self.state.confirmation_count

    @property
    def active_strategy(self):
        """Name of the running strategy, or None once finished."""
        with self._lock:
            if self._done.is_set():
                return None
            if self.polling is not None:
                return "polling"
        if self.subscription is not None:
            return "subscription"
        return None


class ConfirmationWatcher:
    """Watches mined transactions until enough blocks are built on top.

    Usage:
        watcher = ConfirmationWatcher(block_source, subscription_manager,
                                      WatchConfig(confirmation_threshold=12))
        handle = watcher.watch(receipt, tx_hash, events.append)
        handle.wait()
    """

    def __init__(self, block_source, subscription_manager=None, config=None):
        self.block_source = block_source
        self.subscription_manager = subscription_manager
        self.config = config if config is not None else WatchConfig()

    def watch(self, receipt, tx_hash, sink, config=None):
        """Start watching a mined transaction for confirmations.

        Args:
            receipt: Transaction receipt with blockHash and blockNumber.
            tx_hash: Transaction hash, used for diagnostics.
            sink: Callable receiving each ConfirmationEvent.
            config: Optional WatchConfig overriding the watcher default.

        Returns:
            A WatchHandle. Returned before any event is emitted.

        Raises:
            MissingReceiptOrBlockHashError: receipt or blockHash missing.
            ReceiptMissingBlockNumberError: blockNumber missing.
        """
        validate_receipt(receipt, tx_hash)

        config = config if config is not None else self.config
        state = ConfirmationState(
            receipt, tx_hash, config.confirmation_threshold, sink
        )
        handle = WatchHandle(
            state,
            self.block_source,
            self.subscription_manager,
            config.polling_interval,
        )

        use_subscription = (
            self.subscription_manager is not None
            and self.block_source.supports_push_subscriptions()
        )
        logger.info(
            "Watching %s (block %d) for %d confirmations via %s",
            to_hex(tx_hash), state.block_number, config.confirmation_threshold,
            "subscription" if use_subscription else "polling",
        )
        handle._start(use_subscription)
        return handle
