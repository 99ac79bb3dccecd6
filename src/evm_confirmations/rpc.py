# -*- encoding: utf-8 -*-
"""
EVM Confirmations
evm_confirmations.rpc module

Block source over one or more Web3 HTTP endpoints.

Fetches blocks and receipts by number/hash. If the active endpoint fails,
it is put into exponential backoff and the source rotates to the next one,
so polling keeps working while any endpoint is reachable.
"""

import logging
import threading
import time

from web3 import Web3
from web3.exceptions import BlockNotFound, TransactionNotFound

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0     # seconds
DEFAULT_BACKOFF_FACTOR = 2.0


class BlockSource:
    """Block fetching with automatic endpoint failover.

    Push subscriptions are supported only when a WebSocket URL is
    configured; HTTP endpoints are request/response only.

    Usage:
        source = BlockSource(["http://rpc1:8545", "http://rpc2:8545"],
                             ws_url="ws://rpc1:8546")
        block = source.get_block_by_number(123)
    """

    def __init__(
        self,
        urls,
        ws_url=None,
        initial_backoff=DEFAULT_INITIAL_BACKOFF,
        max_backoff=DEFAULT_MAX_BACKOFF,
        backoff_factor=DEFAULT_BACKOFF_FACTOR,
    ):
        if not urls:
            raise ValueError("At least one RPC URL is required")

        self._urls = list(urls)
        self._ws_url = ws_url or None
        self._instances = [
            Web3(Web3.HTTPProvider(url)) for url in self._urls
        ]
        self._current_index = 0
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._backoff_factor = backoff_factor
        # Per-endpoint backoff state: maps index -> next backoff duration
        self._backoffs = {i: initial_backoff for i in range(len(self._urls))}
        self._blocked_until = {i: 0.0 for i in range(len(self._urls))}
        self._lock = threading.Lock()

    def supports_push_subscriptions(self):
        """Whether newHeads subscriptions can be opened for this source."""
        return self._ws_url is not None

    def get_block_by_number(self, number, full_transactions=False):
        """Fetch the block at the given height.

        Args:
            number: Block number as int or hex string.
            full_transactions: Include full transaction objects.

        Returns:
            The block AttributeDict, or None if it has not been mined yet.

        Raises:
            Any transport error from the endpoint used, after rotating.
        """
        if isinstance(number, str):
            number = Web3.to_int(hexstr=number)
        idx, w3 = self._checkout()
        try:
            block = w3.eth.get_block(number, full_transactions=full_transactions)
        except BlockNotFound:
            self.report_success(idx)
            return None
        except Exception:
            self.report_failure(idx)
            raise
        self.report_success(idx)
        return block

    def get_transaction_receipt(self, tx_hash):
        """Fetch a transaction receipt, or None if it is not mined yet."""
        idx, w3 = self._checkout()
        try:
            receipt = w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            self.report_success(idx)
            return None
        except Exception:
            self.report_failure(idx)
            raise
        self.report_success(idx)
        return receipt

    def get_web3(self):
        """Return the Web3 instance for the current endpoint."""
        return self._checkout()[1]

    def _checkout(self):
        # The index travels with the call so that a failure is charged to the
        # endpoint that served it, even if another thread rotated meanwhile.
        with self._lock:
            idx = self._current_index
            return idx, self._instances[idx]

    def report_failure(self, idx=None):
        """Report that an endpoint has failed.

        Applies exponential backoff to the endpoint and, if it is still the
        active one, rotates to the next available endpoint.

        Args:
            idx: Index of the failed endpoint. Defaults to the active one.

        Returns:
            The active Web3 instance after the report.
        """
        with self._lock:
            if idx is None:
                idx = self._current_index
            backoff = self._backoffs[idx]
            self._blocked_until[idx] = time.monotonic() + backoff
            self._backoffs[idx] = min(backoff * self._backoff_factor, self._max_backoff)

            logger.warning(
                "RPC endpoint %s failed, backing off for %.1fs",
                self._urls[idx],
                backoff,
            )

            if idx != self._current_index:
                return self._instances[self._current_index]
            return self._rotate()

    def report_success(self, idx=None):
        """Report that an endpoint succeeded. Resets its backoff."""
        with self._lock:
            if idx is None:
                idx = self._current_index
            self._backoffs[idx] = self._initial_backoff
            self._blocked_until[idx] = 0.0

    def _rotate(self):
        """Rotate to the next available endpoint. Caller holds the lock.

        If every endpoint is in backoff, settles on the one that unblocks
        soonest without waiting; callers retry on their own schedule.
        """
        now = time.monotonic()
        n = len(self._urls)

        for offset in range(1, n + 1):
            candidate = (self._current_index + offset) % n
            if self._blocked_until[candidate] <= now:
                self._current_index = candidate
                if n > 1:
                    logger.info("Switched to RPC endpoint %s", self._urls[candidate])
                return self._instances[candidate]

        soonest_idx = min(self._blocked_until, key=self._blocked_until.get)
        logger.warning(
            "All RPC endpoints in backoff, next available is %s in %.1fs",
            self._urls[soonest_idx],
            self._blocked_until[soonest_idx] - now,
        )
        self._current_index = soonest_idx
        return self._instances[soonest_idx]

    @property
    def current_url(self):
        """The URL of the currently active endpoint."""
        with self._lock:
            return self._urls[self._current_index]

    @property
    def ws_url(self):
        return self._ws_url

    @property
    def endpoint_count(self):
        """Number of configured RPC endpoints."""
        return len(self._urls)
