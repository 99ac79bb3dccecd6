# -*- encoding: utf-8 -*-
"""
EVM Confirmations
evm_confirmations.polling module

Polling strategy: fetch the block directly above the last confirmed one
at a fixed interval and confirm it once it exists.

A single worker thread owns the fetch-then-update sequence, and tick()
additionally refuses to start while another fetch is in flight, so a slow
node combined with a short interval can never double count.
"""

import logging
import threading

from evm_confirmations.models import receipt_field, to_hex

logger = logging.getLogger(__name__)

PERSISTENT_FAILURE_TICKS = 10  # consecutive failed fetches before logging an error


class PollingStrategy:
    """Confirms blocks by polling the block source.

    The first fetch happens one interval after start(). Fetch failures are
    treated as "not yet confirmed" and retried on the next tick.
    """

    def __init__(self, state, block_source, interval, on_complete=None):
        """Initialize the PollingStrategy.

        Args:
            state: ConfirmationState shared with the watch operation.
            block_source: Object providing get_block_by_number().
            interval: Seconds between ticks.
            on_complete: Optional callable invoked once the threshold is met.
        """
        self.state = state
        self.block_source = block_source
        self.interval = interval
        self.on_complete = on_complete
        self._stop_event = threading.Event()
        self._in_flight = threading.Lock()
        self._thread = None
        self._consecutive_failures = 0

    def start(self):
        """Start the polling thread."""
        self._thread = threading.Thread(
            target=self._run,
            name=f"poll-{to_hex(self.state.tx_hash)}",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Polling for confirmations of %s every %.3fs from block %d",
            to_hex(self.state.tx_hash), self.interval,
            self.state.next_block_number,
        )

    def stop(self):
        """Stop scheduling ticks. Idempotent and never blocks."""
        self._stop_event.set()

    def join(self, timeout=None):
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def stopped(self):
        return self._stop_event.is_set()

    def _run(self):
        while not self._stop_event.wait(self.interval):
            self.tick()

    def tick(self):
        """Run one poll cycle.

        Returns:
            True if a confirmation was emitted, False otherwise (including
            when another tick's fetch is still outstanding).
        """
        if not self._in_flight.acquire(blocking=False):
            logger.debug("Previous fetch still in flight, skipping tick")
            return False
        try:
            return self._poll_once()
        finally:
            self._in_flight.release()

    def _poll_once(self):
        if self._stop_event.is_set():
            return False
        if self.state.threshold_met:
            self._complete()
            return False

        number = self.state.next_block_number
        try:
            block = self.block_source.get_block_by_number(number, full_transactions=False)
        except Exception as exc:
            self._record_failure(number, exc)
            return False
        self._consecutive_failures = 0

        block_hash = receipt_field(block, "hash")
        if block is None or block_hash is None:
            return False

        if self._stop_event.is_set():
            return False
        event = self.state.confirm(number, block_hash)
        if self.state.threshold_met:
            self._complete()
        return event is not None

    def _record_failure(self, number, exc):
        self._consecutive_failures += 1
        if self._consecutive_failures == PERSISTENT_FAILURE_TICKS:
            logger.error(
                "Fetching block %d for %s failed %d times in a row: %s",
                number, to_hex(self.state.tx_hash),
                self._consecutive_failures, exc,
            )
        else:
            logger.warning(
                "Failed to fetch block %d for %s, retrying next tick: %s",
                number, to_hex(self.state.tx_hash), exc,
            )

    def _complete(self):
        if self._stop_event.is_set():
            return
        self.stop()
        logger.info(
            "Transaction %s reached %d confirmations by polling",
            to_hex(self.state.tx_hash), self.state.target_count,
        )
        if self.on_complete is not None:
            self.on_complete()
