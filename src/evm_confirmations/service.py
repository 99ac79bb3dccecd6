# -*- encoding: utf-8 -*-
"""
EVM Confirmations
evm_confirmations.service module

Wires together the watcher components:
  - Block source (HTTP endpoints with failover)
  - Subscription manager (WebSocket newHeads, when ETH_WS_URL is set)
  - Confirmation watcher

Configuration is loaded from environment variables with sensible defaults.
"""

import logging

from evm_confirmations.config import WatchConfig, load_config
from evm_confirmations.rpc import BlockSource
from evm_confirmations.subscriptions import SubscriptionManager
from evm_confirmations.watcher import ConfirmationWatcher

logger = logging.getLogger("evm_confirmations")


def setup_block_source(config):
    """Create a BlockSource for the configured RPC endpoint(s).

    Supports comma-separated URLs for failover.

    Args:
        config: dict from load_config().

    Returns:
        A BlockSource.
    """
    urls = [u.strip() for u in config["ETH_RPC_URL"].split(",") if u.strip()]
    return BlockSource(urls, ws_url=config["ETH_WS_URL"].strip() or None)


def setup_subscription_manager(config):
    """Create a SubscriptionManager, or None when no WebSocket URL is set."""
    ws_url = config["ETH_WS_URL"].strip()
    if not ws_url:
        return None
    return SubscriptionManager(ws_url, subscribe_timeout=config["SUBSCRIBE_TIMEOUT"])


def build_service(config=None):
    """Wire together all watcher components.

    Args:
        config: dict from load_config(). Loaded from env if None.

    Returns:
        dict with keys: config, block_source, subscription_manager, watcher
    """
    if config is None:
        config = load_config()

    block_source = setup_block_source(config)
    subscription_manager = setup_subscription_manager(config)
    watcher = ConfirmationWatcher(
        block_source,
        subscription_manager=subscription_manager,
        config=WatchConfig.from_config(config),
    )
    logger.debug(
        "Service built (rpc: %s, ws: %s)",
        block_source.current_url, config["ETH_WS_URL"] or "-",
    )

    return {
        "config": config,
        "block_source": block_source,
        "subscription_manager": subscription_manager,
        "watcher": watcher,
    }
