# -*- encoding: utf-8 -*-
"""
EVM Confirmations
evm_confirmations.models module

Receipt access helpers, the emitted ConfirmationEvent, and the per-operation
ConfirmationState shared by whichever strategy is active.
"""

import json
import logging
import threading
from collections.abc import Mapping

from web3 import Web3

logger = logging.getLogger(__name__)


def receipt_field(record, name):
    """Read a field from a receipt, block or header.

    web3.py returns AttributeDicts, which support both item and attribute
    access; plain dicts and simple objects are accepted as well.

    Returns:
        The field value, or None if the record is None or lacks the field.
    """
    if record is None:
        return None
    try:
        return record[name]
    except (KeyError, TypeError):
        return getattr(record, name, None)


def to_int(value):
    """Convert a block number given as int or hex/decimal string to int."""
    if isinstance(value, str):
        if value.startswith(("0x", "0X")):
            return Web3.to_int(hexstr=value)
        return int(value)
    return int(value)


def to_hex(value):
    """Render a digest as a 0x-prefixed hex string (None passes through)."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return str(value)


def receipt_payload(receipt):
    """JSON-ready copy of a receipt using web3.py's JSON encoding."""
    if not isinstance(receipt, Mapping):
        receipt = vars(receipt)
    return json.loads(Web3.to_json(receipt))


class ConfirmationEvent:
    """One accepted confirming block."""

    __slots__ = ("confirmation_number", "receipt", "latest_block_hash")

    def __init__(self, confirmation_number, receipt, latest_block_hash):
        self.confirmation_number = confirmation_number
        self.receipt = receipt
        self.latest_block_hash = latest_block_hash

    def as_dict(self):
        """Caller-facing payload: confirmationNumber, receipt, latestBlockHash.

        The receipt is rendered JSON-ready, with every digest hex-formatted.
        """
        return {
            "confirmationNumber": self.confirmation_number,
            "receipt": receipt_payload(self.receipt),
            "latestBlockHash": to_hex(self.latest_block_hash),
        }

    def __repr__(self):
        return (
            f"ConfirmationEvent(confirmation_number={self.confirmation_number}, "
            f"latest_block_hash={to_hex(self.latest_block_hash)})"
        )


class ConfirmationState:
    """Confirmation counter owned by a single watch operation.

    Having a receipt means the transaction is already included in one
    block, so confirmation_count starts at 1. The threshold counts blocks
    mined on top of the inclusion block: a target of N is met once
    confirmation_count reaches N + 1.

    Every mutation and every emission happens under one lock, so events
    leave in strictly increasing confirmation_number order even when timer
    and subscription callbacks run on different threads.
    """

    def __init__(self, receipt, tx_hash, target_count, sink):
        self.receipt = receipt
        self.tx_hash = tx_hash
        self.target_count = target_count
        self.sink = sink
        self.block_number = to_int(receipt_field(receipt, "blockNumber"))
        self._confirmation_count = 1
        self._closed = False
        self._lock = threading.RLock()

    @property
    def confirmation_count(self):
        with self._lock:
            return self._confirmation_count

    @property
    def next_block_number(self):
        """Height of the block that would provide the next confirmation."""
        with self._lock:
            return self.block_number + self._confirmation_count

    @property
    def last_checked_block_number(self):
        """Height currently being checked; equals next_block_number."""
        return self.next_block_number

    @property
    def threshold_met(self):
        with self._lock:
            return self._confirmation_count - 1 >= self.target_count

    @property
    def closed(self):
        with self._lock:
            return self._closed

    def close(self):
        """Reject all further confirmations. Idempotent."""
        with self._lock:
            self._closed = True

    def confirm(self, block_number, latest_block_hash):
        """Accept the block at block_number as the next confirmation.

        Only the block directly above the last confirmed one is accepted,
        which rules out double counting when two strategies or two ticks
        observe the same height.

        Returns:
            The emitted ConfirmationEvent, or None if the block was not the
            expected one, the threshold was already met, or the state is
            closed.
        """
        with self._lock:
            if self._closed or self.threshold_met:
                return None
            if block_number != self.block_number + self._confirmation_count:
                return None

            self._confirmation_count += 1
            event = ConfirmationEvent(
                confirmation_number=self._confirmation_count,
                receipt=self.receipt,
                latest_block_hash=latest_block_hash,
            )
            logger.debug(
                "Transaction %s: confirmation %d/%d at block %d",
                to_hex(self.tx_hash), self._confirmation_count - 1,
                self.target_count, block_number,
            )
            try:
                self.sink(event)
            except Exception:
                logger.exception(
                    "Confirmation sink raised for transaction %s",
                    to_hex(self.tx_hash),
                )
            return event
