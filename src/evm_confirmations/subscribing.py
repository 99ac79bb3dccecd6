# -*- encoding: utf-8 -*-
"""
EVM Confirmations
evm_confirmations.subscribing module

Subscription strategy: confirm blocks from pushed newHeads headers.

Any subscription failure (rejected subscribe call, error event, or a gap
in the header sequence) releases the subscription and hands the watch
operation over to polling exactly once.
"""

import logging
import threading

from evm_confirmations.models import receipt_field, to_hex, to_int

logger = logging.getLogger(__name__)

SUBSCRIPTION_NAME = "newHeads"


class SubscriptionStrategy:
    """Confirms blocks as their headers are pushed by the node."""

    def __init__(self, state, subscription_manager, on_fallback, on_complete=None):
        """Initialize the SubscriptionStrategy.

        Args:
            state: ConfirmationState shared with the watch operation.
            subscription_manager: Object providing subscribe("newHeads").
            on_fallback: Callable that starts polling. Invoked at most once.
            on_complete: Optional callable invoked once the threshold is met.
        """
        self.state = state
        self.subscription_manager = subscription_manager
        self.on_fallback = on_fallback
        self.on_complete = on_complete
        self._lock = threading.Lock()
        self._subscription = None
        self._stopped = False
        self._fell_back = False

    def start(self):
        """Subscribe to new headers, falling back to polling on failure."""
        with self._lock:
            if self._stopped:
                return
        try:
            subscription = self.subscription_manager.subscribe(SUBSCRIPTION_NAME)
        except Exception as exc:
            logger.warning(
                "Subscribing to %s for %s failed, falling back to polling: %s",
                SUBSCRIPTION_NAME, to_hex(self.state.tx_hash), exc,
            )
            self._fall_back()
            return

        with self._lock:
            stopped = self._stopped
            if not stopped:
                self._subscription = subscription
        if stopped:
            # Cancelled while the subscribe call was outstanding
            self._unsubscribe(subscription)
            return

        # Headers pushed before this point are replayed on registration
        subscription.on("data", self._on_data)
        subscription.on("error", self._on_error)
        logger.info(
            "Watching %s for confirmations via %s subscription",
            to_hex(self.state.tx_hash), SUBSCRIPTION_NAME,
        )

    def stop(self):
        """Release the subscription. Idempotent."""
        self._release()

    def _release(self):
        """Stop and unsubscribe; True only for the call that stopped it."""
        with self._lock:
            if self._stopped:
                return False
            self._stopped = True
            subscription, self._subscription = self._subscription, None
        if subscription is not None:
            self._unsubscribe(subscription)
        return True

    @property
    def stopped(self):
        with self._lock:
            return self._stopped

    @property
    def fell_back(self):
        with self._lock:
            return self._fell_back

    def _on_data(self, header):
        if self.stopped:
            return
        number = receipt_field(header, "number")
        if number is None:
            return
        number = to_int(number)
        expected = self.state.next_block_number

        if number == expected:
            self.state.confirm(number, receipt_field(header, "parentHash"))
            if self.state.threshold_met:
                self._complete()
        elif number > expected:
            logger.info(
                "Header %d skipped past expected block %d for %s, switching to polling",
                number, expected, to_hex(self.state.tx_hash),
            )
            self._fall_back()

    def _on_error(self, error):
        logger.warning(
            "%s subscription for %s failed, falling back to polling: %s",
            SUBSCRIPTION_NAME, to_hex(self.state.tx_hash), error,
        )
        self._fall_back()

    def _fall_back(self):
        with self._lock:
            if self._fell_back or self._stopped:
                return
            self._fell_back = True
            self._stopped = True
            subscription, self._subscription = self._subscription, None
        if subscription is not None:
            self._unsubscribe(subscription)
        self.on_fallback()

    def _complete(self):
        if not self._release():
            return
        logger.info(
            "Transaction %s reached %d confirmations via subscription",
            to_hex(self.state.tx_hash), self.state.target_count,
        )
        if self.on_complete is not None:
            self.on_complete()

    def _unsubscribe(self, subscription):
        try:
            subscription.unsubscribe()
        except Exception:
            logger.warning(
                "Unsubscribing %s subscription for %s failed",
                SUBSCRIPTION_NAME, to_hex(self.state.tx_hash),
                exc_info=True,
            )
