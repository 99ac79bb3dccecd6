# -*- encoding: utf-8 -*-
"""
EVM Confirmations Test Configuration

Shared pytest fixtures for the confirmation watcher test suite.

Block sources and subscription managers are in-process stubs that record
every call, so tests can assert exactly which blocks were fetched and how
often a subscription was released. Receipts, blocks and headers are real
web3.py AttributeDicts with HexBytes digests.
"""

import threading

import pytest
from web3 import Web3
from web3.datastructures import AttributeDict

from evm_confirmations.config import WatchConfig

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RECEIPT_BLOCK = 100
TX_HASH = Web3.keccak(text="tx-under-watch")
FAST_INTERVAL_MS = 10
WAIT_TIMEOUT = 5  # seconds; generous upper bound for threaded tests


def block_hash(number):
    """Deterministic 32-byte hash for the block at a given height."""
    return Web3.keccak(text=f"block-{number}")


def make_block(number, with_hash=True):
    return AttributeDict({
        "number": number,
        "hash": block_hash(number) if with_hash else None,
        "parentHash": block_hash(number - 1),
    })


def make_header(number):
    return AttributeDict({
        "number": number,
        "hash": block_hash(number),
        "parentHash": block_hash(number - 1),
    })


# ---------------------------------------------------------------------------
# Stub collaborators
# ---------------------------------------------------------------------------

class StubBlockSource:
    """Block source serving a fixed set of blocks.

    failures: number of upcoming fetches that raise ConnectionError.
    gate: when set to an Event, every fetch blocks until it is set.
    """

    def __init__(self, blocks=None, push=False):
        self.blocks = {b["number"]: b for b in (blocks or [])}
        self.push = push
        self.requested = []
        self.supports_calls = 0
        self.failures = 0
        self.gate = None
        self.entered = threading.Event()
        self._lock = threading.Lock()

    def supports_push_subscriptions(self):
        self.supports_calls += 1
        return self.push

    def get_block_by_number(self, number, full_transactions=False):
        with self._lock:
            self.requested.append(number)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(WAIT_TIMEOUT)
        with self._lock:
            if self.failures:
                self.failures -= 1
                raise ConnectionError("node unreachable")
            return self.blocks.get(number)


class StubSubscription:
    """newHeads subscription driven by the test via emit()."""

    def __init__(self):
        self.handlers = {"data": [], "error": []}
        self.unsubscribe_calls = 0
        self.registered = threading.Event()

    def on(self, event, callback):
        self.handlers[event].append(callback)
        if self.handlers["data"] and self.handlers["error"]:
            self.registered.set()

    def emit(self, event, payload):
        for callback in list(self.handlers[event]):
            callback(payload)

    def unsubscribe(self):
        self.unsubscribe_calls += 1


class StubSubscriptionManager:
    """Subscription manager handing out StubSubscriptions.

    fail: subscribe() raises instead of returning a subscription.
    gate: when set to an Event, subscribe() blocks until it is set.
    """

    def __init__(self, fail=False):
        self.fail = fail
        self.gate = None
        self.names = []
        self.subscriptions = []
        self.called = threading.Event()
        self.entered = threading.Event()

    @property
    def subscribe_calls(self):
        return len(self.names)

    def subscribe(self, name):
        self.names.append(name)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(WAIT_TIMEOUT)
        if self.fail:
            self.called.set()
            raise ConnectionError("subscribe rejected")
        subscription = StubSubscription()
        self.subscriptions.append(subscription)
        self.called.set()
        return subscription

    def wait_for_subscription(self, timeout=WAIT_TIMEOUT):
        """Return the first subscription once its handlers are registered."""
        assert self.called.wait(timeout), "subscribe() was never called"
        subscription = self.subscriptions[0]
        assert subscription.registered.wait(timeout), "handlers never registered"
        return subscription


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def receipt():
    """Receipt of a transaction mined in RECEIPT_BLOCK."""
    return AttributeDict({
        "transactionHash": TX_HASH,
        "blockHash": block_hash(RECEIPT_BLOCK),
        "blockNumber": RECEIPT_BLOCK,
        "status": 1,
    })


@pytest.fixture
def tx_hash():
    return TX_HASH


@pytest.fixture
def events():
    """A list used as the confirmation sink (pass events.append)."""
    return []


@pytest.fixture
def blocks():
    """Three confirming blocks directly above the receipt's block."""
    return [make_block(RECEIPT_BLOCK + i) for i in (1, 2, 3)]


@pytest.fixture
def polling_source(blocks):
    """Block source without push subscription support."""
    return StubBlockSource(blocks, push=False)


@pytest.fixture
def push_source(blocks):
    """Block source advertising push subscription support."""
    return StubBlockSource(blocks, push=True)


@pytest.fixture
def subscription_manager():
    return StubSubscriptionManager()


@pytest.fixture
def fast_config():
    """Threshold of 3 confirming blocks, polling every 10ms."""
    return WatchConfig(confirmation_threshold=3, polling_interval_ms=FAST_INTERVAL_MS)
