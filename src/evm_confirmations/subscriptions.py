# -*- encoding: utf-8 -*-
"""
EVM Confirmations
evm_confirmations.subscriptions module

newHeads subscriptions over a web3.py WebSocket connection.

web3.py only offers subscriptions on AsyncWeb3 with a persistent
WebSocketProvider, so each subscription runs its own event loop on a
background thread and hands headers to plain callbacks registered with
on("data", ...) / on("error", ...).
"""

import asyncio
import logging
import threading

from web3 import AsyncWeb3, WebSocketProvider

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBE_TIMEOUT = 10.0  # seconds
SUBSCRIPTION_EVENTS = ("data", "error")


class NewHeadsSubscription:
    """A live eth_subscribe subscription on its own thread.

    open() blocks until the node has acknowledged the subscription (or
    failed to). After that, each pushed header is dispatched to the "data"
    handlers and a transport failure to the "error" handlers, both on the
    subscription thread.

    Handlers may be registered before or after open(). Payloads that arrive
    while an event has no handler yet are held and handed to the first
    handler registered for it, in arrival order.
    """

    def __init__(self, ws_url, name="newHeads"):
        self._ws_url = ws_url
        self._name = name
        self._handlers = {event: [] for event in SUBSCRIPTION_EVENTS}
        self._backlog = {event: [] for event in SUBSCRIPTION_EVENTS}
        self._lock = threading.Lock()
        # Serialises handler calls so backlog replay and live pushes never interleave
        self._dispatch_lock = threading.RLock()
        self._ready = threading.Event()
        self._closed = False
        self._open_error = None
        self._loop = None
        self._task = None
        self._thread = None
        self.subscription_id = None

    def on(self, event, callback):
        """Register a callback for "data" or "error"."""
        if event not in self._handlers:
            raise ValueError(f"Unknown subscription event {event!r}")
        with self._dispatch_lock:
            with self._lock:
                self._handlers[event].append(callback)
                backlog, self._backlog[event] = self._backlog[event], []
                if self._closed:
                    return
            for payload in backlog:
                self._deliver(event, [callback], payload)

    def open(self, timeout=DEFAULT_SUBSCRIBE_TIMEOUT):
        """Start the subscription thread and wait for the node to accept it.

        Raises:
            TimeoutError: The node did not acknowledge in time.
            ConnectionError: The connection or eth_subscribe call failed.
        """
        self._thread = threading.Thread(
            target=self._run, name=f"{self._name}-subscription", daemon=True
        )
        self._thread.start()

        if not self._ready.wait(timeout):
            self.unsubscribe()
            raise TimeoutError(
                f"Subscription to {self._name} on {self._ws_url} "
                f"not acknowledged within {timeout}s"
            )
        if self._open_error is not None:
            raise ConnectionError(
                f"Cannot subscribe to {self._name} on {self._ws_url}"
            ) from self._open_error
        return self

    def unsubscribe(self):
        """Stop the subscription. Safe to call repeatedly and from handlers."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            loop, task = self._loop, self._task
        if loop is not None and task is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(task.cancel)
            except RuntimeError:
                # Loop already shut down between the check and the call
                pass

    @property
    def closed(self):
        with self._lock:
            return self._closed

    def join(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout)

    def _dispatch(self, event, payload):
        with self._dispatch_lock:
            with self._lock:
                if self._closed:
                    return
                handlers = list(self._handlers[event])
                if not handlers:
                    self._backlog[event].append(payload)
                    return
            self._deliver(event, handlers, payload)

    def _deliver(self, event, handlers, payload):
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("Subscription %s handler raised", event)

    def _run(self):
        asyncio.run(self._listen())

    async def _listen(self):
        with self._lock:
            self._loop = asyncio.get_running_loop()
            self._task = asyncio.current_task()
            closed = self._closed
        if closed:
            self._ready.set()
            return

        try:
            async with AsyncWeb3(WebSocketProvider(self._ws_url)) as w3:
                self.subscription_id = await w3.eth.subscribe(self._name)
                self._ready.set()
                logger.info(
                    "Subscribed to %s on %s (id %s)",
                    self._name, self._ws_url, self.subscription_id,
                )
                try:
                    async for message in w3.socket.process_subscriptions():
                        self._dispatch("data", message["result"])
                except asyncio.CancelledError:
                    await w3.eth.unsubscribe(self.subscription_id)
                    logger.info("Unsubscribed from %s (id %s)", self._name, self.subscription_id)
                    return
                # The message stream only ends when the socket does
                raise ConnectionError(f"Subscription stream on {self._ws_url} ended")
        except asyncio.CancelledError:
            self._ready.set()
        except Exception as exc:
            if not self._ready.is_set():
                self._open_error = exc
                self._ready.set()
            else:
                logger.warning("Subscription to %s failed: %s", self._name, exc)
                self._dispatch("error", exc)


class SubscriptionManager:
    """Opens newHeads subscriptions against a WebSocket endpoint.

    One manager is shared by all watch operations; every subscribe() call
    creates an independent NewHeadsSubscription.
    """

    def __init__(self, ws_url, subscribe_timeout=DEFAULT_SUBSCRIBE_TIMEOUT):
        if not ws_url:
            raise ValueError("A WebSocket URL is required for subscriptions")
        self._ws_url = ws_url
        self._subscribe_timeout = subscribe_timeout

    def subscribe(self, name):
        """Open a subscription and return it once acknowledged.

        Raises:
            ValueError: For subscription types other than newHeads.
            TimeoutError / ConnectionError: If the subscription cannot open.
        """
        if name != "newHeads":
            raise ValueError(f"Unsupported subscription {name!r}")
        subscription = NewHeadsSubscription(self._ws_url, name=name)
        return subscription.open(timeout=self._subscribe_timeout)

    @property
    def ws_url(self):
        return self._ws_url
