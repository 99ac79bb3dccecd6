# -*- encoding: utf-8 -*-
"""
EVM Confirmations
evm_confirmations.config module

Configuration loaded from environment variables with sensible defaults,
plus the read-only WatchConfig consumed by the confirmation watcher.
"""

import os

# Default configuration values
DEFAULTS = {
    "ETH_RPC_URL": "http://127.0.0.1:8545",
    "ETH_WS_URL": "",
    "CONFIRMATION_BLOCKS": "24",
    "POLLING_INTERVAL_MS": "1000",
    "RECEIPT_POLLING_INTERVAL_MS": "",
    "SUBSCRIBE_TIMEOUT": "10",
}


def load_config():
    """Load service configuration from environment variables.

    Returns:
        dict with all configuration values. RECEIPT_POLLING_INTERVAL_MS is
        None when unset.
    """
    config = {}
    for key, default in DEFAULTS.items():
        config[key] = os.environ.get(key, default)
    # Parse numeric values
    config["CONFIRMATION_BLOCKS"] = int(config["CONFIRMATION_BLOCKS"])
    config["POLLING_INTERVAL_MS"] = int(config["POLLING_INTERVAL_MS"])
    receipt_interval = config["RECEIPT_POLLING_INTERVAL_MS"].strip()
    config["RECEIPT_POLLING_INTERVAL_MS"] = int(receipt_interval) if receipt_interval else None
    config["SUBSCRIBE_TIMEOUT"] = float(config["SUBSCRIBE_TIMEOUT"])
    return config


class WatchConfig:
    """Threshold and polling cadence for one confirmation watcher."""

    __slots__ = (
        "confirmation_threshold",
        "polling_interval_ms",
        "receipt_polling_interval_ms",
    )

    def __init__(
        self,
        confirmation_threshold=24,
        polling_interval_ms=1000,
        receipt_polling_interval_ms=None,
    ):
        if int(confirmation_threshold) < 1:
            raise ValueError(
                f"confirmation_threshold must be >= 1, got {confirmation_threshold}"
            )
        if int(polling_interval_ms) <= 0:
            raise ValueError(
                f"polling_interval_ms must be > 0, got {polling_interval_ms}"
            )
        if receipt_polling_interval_ms is not None and int(receipt_polling_interval_ms) <= 0:
            raise ValueError(
                f"receipt_polling_interval_ms must be > 0, got {receipt_polling_interval_ms}"
            )
        self.confirmation_threshold = int(confirmation_threshold)
        self.polling_interval_ms = int(polling_interval_ms)
        self.receipt_polling_interval_ms = (
            None if receipt_polling_interval_ms is None
            else int(receipt_polling_interval_ms)
        )

    @classmethod
    def from_config(cls, config):
        """Build a WatchConfig from a load_config() dict."""
        return cls(
            confirmation_threshold=config["CONFIRMATION_BLOCKS"],
            polling_interval_ms=config["POLLING_INTERVAL_MS"],
            receipt_polling_interval_ms=config.get("RECEIPT_POLLING_INTERVAL_MS"),
        )

    @property
    def polling_interval(self):
        """Effective polling interval in seconds.

        The receipt-specific interval wins over the default cadence when set.
        """
        interval_ms = self.receipt_polling_interval_ms
        if interval_ms is None:
            interval_ms = self.polling_interval_ms
        return interval_ms / 1000.0

    def __repr__(self):
        return (
            f"WatchConfig(confirmation_threshold={self.confirmation_threshold}, "
            f"polling_interval_ms={self.polling_interval_ms}, "
            f"receipt_polling_interval_ms={self.receipt_polling_interval_ms})"
        )
