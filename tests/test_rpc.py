# -*- encoding: utf-8 -*-
"""
Tests for the BlockSource failover module.

Verifies:
  - Construction and push-subscription capability
  - Block and receipt fetches map "not found" to None
  - Failover rotates to the next endpoint and re-raises
  - Exponential backoff applies to failed endpoints
  - Success resets backoff for the current endpoint
  - Failures from concurrent callers are charged to the endpoint they used

Endpoints are real Web3 instances (never connected) or small in-process
web3 stand-ins swapped into the source.
"""

import threading
import time

import pytest
from web3 import Web3
from web3.exceptions import BlockNotFound, TransactionNotFound

from evm_confirmations.rpc import BlockSource
from tests.conftest import RECEIPT_BLOCK, make_block


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _FakeEth:
    def __init__(self, blocks=None, receipts=None, down=False):
        self.blocks = {b["number"]: b for b in (blocks or [])}
        self.receipts = receipts or {}
        self.down = down
        self.calls = []

    def get_block(self, number, full_transactions=False):
        self.calls.append((number, full_transactions))
        if self.down:
            raise ConnectionError("connection refused")
        if number not in self.blocks:
            raise BlockNotFound(f"Block with id: {number} not found.")
        return self.blocks[number]

    def get_transaction_receipt(self, tx_hash):
        if self.down:
            raise ConnectionError("connection refused")
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash} not found.")
        return self.receipts[tx_hash]


class _FakeW3:
    def __init__(self, **kwargs):
        self.eth = _FakeEth(**kwargs)


def _source_with(*fakes, **kwargs):
    urls = [f"http://rpc{i}:8545" for i in range(1, len(fakes) + 1)]
    source = BlockSource(urls, initial_backoff=0.01, **kwargs)
    source._instances = list(fakes)
    return source


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

class TestBlockSourceInit:
    """Test BlockSource initialization."""

    def test_requires_at_least_one_url(self):
        """Must raise ValueError when no URLs are provided."""
        with pytest.raises(ValueError, match="At least one RPC URL"):
            BlockSource([])

    def test_single_url(self):
        source = BlockSource(["http://localhost:8545"])
        assert source.endpoint_count == 1
        assert source.current_url == "http://localhost:8545"
        assert isinstance(source.get_web3(), Web3)

    def test_multiple_urls(self):
        urls = ["http://rpc1:8545", "http://rpc2:8545", "http://rpc3:8545"]
        source = BlockSource(urls)
        assert source.endpoint_count == 3
        assert source.current_url == urls[0]

    def test_push_support_requires_ws_url(self):
        assert not BlockSource(["http://localhost:8545"]).supports_push_subscriptions()
        assert not BlockSource(["http://localhost:8545"], ws_url="").supports_push_subscriptions()
        source = BlockSource(["http://localhost:8545"], ws_url="ws://localhost:8546")
        assert source.supports_push_subscriptions()
        assert source.ws_url == "ws://localhost:8546"


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------

class TestFetch:
    """Fetches return data, or None when the chain has nothing yet."""

    def test_existing_block(self):
        fake = _FakeW3(blocks=[make_block(RECEIPT_BLOCK + 1)])
        source = _source_with(fake)

        block = source.get_block_by_number(RECEIPT_BLOCK + 1)
        assert block["number"] == RECEIPT_BLOCK + 1
        assert fake.eth.calls == [(RECEIPT_BLOCK + 1, False)]

    def test_hex_block_number(self):
        fake = _FakeW3(blocks=[make_block(RECEIPT_BLOCK + 1)])
        source = _source_with(fake)

        assert source.get_block_by_number(hex(RECEIPT_BLOCK + 1)) is not None
        assert fake.eth.calls == [(RECEIPT_BLOCK + 1, False)]

    def test_unmined_block_is_none(self):
        source = _source_with(_FakeW3())
        assert source.get_block_by_number(RECEIPT_BLOCK + 1) is None

    def test_receipt(self, receipt, tx_hash):
        source = _source_with(_FakeW3(receipts={tx_hash: receipt}))
        assert source.get_transaction_receipt(tx_hash) is receipt
        assert source.get_transaction_receipt(b"\x00" * 32) is None


# ---------------------------------------------------------------------------
# Failover
# ---------------------------------------------------------------------------

class TestFailover:
    """Transport errors rotate endpoints and propagate to the caller."""

    def test_failure_rotates_and_raises(self):
        down = _FakeW3(down=True)
        up = _FakeW3(blocks=[make_block(RECEIPT_BLOCK + 1)])
        source = _source_with(down, up)

        with pytest.raises(ConnectionError):
            source.get_block_by_number(RECEIPT_BLOCK + 1)
        assert source.current_url == "http://rpc2:8545"

        assert source.get_block_by_number(RECEIPT_BLOCK + 1) is not None

    def test_failure_wraps_around(self):
        urls = ["http://rpc1:8545", "http://rpc2:8545"]
        source = BlockSource(urls, initial_backoff=0.01)

        source.report_failure()
        assert source.current_url == urls[1]

        source.report_failure()  # rpc1 backoff expired for tiny values
        assert source.current_url == urls[0]

    def test_success_resets_backoff(self):
        urls = ["http://rpc1:8545", "http://rpc2:8545"]
        source = BlockSource(urls, initial_backoff=0.01)

        source.report_failure()
        source.report_failure()
        assert source.current_url == urls[0]

        source.report_success()
        assert source._backoffs[0] == source._initial_backoff

    def test_backoff_grows_on_repeated_failure(self):
        urls = ["http://rpc1:8545", "http://rpc2:8545"]
        source = BlockSource(urls, initial_backoff=0.01, backoff_factor=2.0)

        source.report_failure()
        assert source._backoffs[0] == pytest.approx(0.02)

    def test_all_endpoints_in_backoff_does_not_block(self):
        """With every endpoint backed off the caller is not put to sleep."""
        source = _source_with(_FakeW3(down=True), _FakeW3(down=True))
        source._initial_backoff = 30.0
        source._backoffs = {0: 30.0, 1: 30.0}

        started = time.monotonic()
        for _ in range(3):
            with pytest.raises(ConnectionError):
                source.get_block_by_number(RECEIPT_BLOCK + 1)
        assert time.monotonic() - started < 1.0


# ---------------------------------------------------------------------------
# Shared by concurrent watches
# ---------------------------------------------------------------------------

class _SlowDownEth(_FakeEth):
    """Unreachable endpoint whose failure only surfaces once the gate opens."""

    def __init__(self, gate):
        super().__init__(down=True)
        self.gate = gate
        self.entered = threading.Event()

    def get_block(self, number, full_transactions=False):
        self.entered.set()
        self.gate.wait(5)
        return super().get_block(number, full_transactions)


class TestConcurrentCallers:
    """One BlockSource polled from several watch threads at once."""

    def test_failure_charged_to_endpoint_that_served_the_call(self):
        gate = threading.Event()
        down = _FakeW3()
        down.eth = _SlowDownEth(gate)
        up = _FakeW3(blocks=[make_block(RECEIPT_BLOCK + 1)])
        urls = ["http://rpc1:8545", "http://rpc2:8545"]
        source = BlockSource(urls, initial_backoff=30.0)
        source._instances = [down, up]

        errors = []

        def _fetch():
            try:
                source.get_block_by_number(RECEIPT_BLOCK + 1)
            except ConnectionError as exc:
                errors.append(exc)

        slow = threading.Thread(target=_fetch)
        slow.start()
        assert down.eth.entered.wait(5)

        # Another watch already saw rpc1 fail and moved to rpc2
        source.report_failure(0)
        assert source.current_url == urls[1]

        gate.set()
        slow.join(5)
        assert not slow.is_alive()
        assert len(errors) == 1

        assert source.current_url == urls[1]
        assert source._blocked_until[1] == 0.0
        assert source._backoffs[1] == 30.0
        assert source._blocked_until[0] > time.monotonic()
        assert source.get_block_by_number(RECEIPT_BLOCK + 1) is not None

    def test_success_resets_endpoint_that_served_the_call(self):
        urls = ["http://rpc1:8545", "http://rpc2:8545"]
        source = BlockSource(urls, initial_backoff=0.01)

        source.report_failure(1)
        assert source.current_url == urls[0]
        assert source._backoffs[1] == pytest.approx(0.02)

        source.report_success(1)
        assert source._backoffs[1] == 0.01
        assert source._blocked_until[1] == 0.0
