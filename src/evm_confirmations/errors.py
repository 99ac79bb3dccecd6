# -*- encoding: utf-8 -*-
"""
EVM Confirmations
evm_confirmations.errors module

Precondition errors raised synchronously by ConfirmationWatcher.watch().

Both signal a caller error: the transaction was never actually mined, so
there is nothing to count confirmations on top of.
"""

from evm_confirmations.models import to_hex


class ConfirmationError(Exception):
    """Base class for confirmation watcher errors."""


class MissingReceiptOrBlockHashError(ConfirmationError):
    """The receipt is absent or has no blockHash."""

    def __init__(self, receipt=None, block_hash=None, tx_hash=None):
        self.receipt = receipt
        self.block_hash = block_hash
        self.tx_hash = tx_hash
        super().__init__(
            f"Receipt missing or blockHash null for transaction {to_hex(tx_hash)} "
            f"(blockHash: {to_hex(block_hash)})"
        )


class ReceiptMissingBlockNumberError(ConfirmationError):
    """The receipt has a blockHash but no blockNumber."""

    def __init__(self, receipt=None, tx_hash=None):
        self.receipt = receipt
        self.tx_hash = tx_hash
        super().__init__(
            f"Receipt for transaction {to_hex(tx_hash)} does not have a block number"
        )
