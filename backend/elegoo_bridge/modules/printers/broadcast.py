"""
State broadcast hub — fans the canonical state out to N consumers.

Deliveries happen on the hub's own thread:
  - on every state change (notify(), wired to printer.state_changed)
  - on a fixed interval tick, even if nothing changed
  - never closer together than min_spacing

Each consumer owns a latest-value slot. A slow consumer only ever sees the
newest snapshot; older undelivered ones are replaced, and the hub never
blocks on it. Subscribers are held weakly: dropping the Subscription is
enough to leave the hub.
"""

import time
import queue
import asyncio
import logging
import threading
import weakref
from typing import Callable, Iterator, Optional

from elegoo_bridge.modules.printers.state_store import PrinterState

log = logging.getLogger(__name__)

BROADCAST_INTERVAL = 1.0
MIN_SPACING = 0.1

_CLOSED = object()


class SubscriptionClosed(Exception):
    pass


class Subscription:
    """Blocking consumer handle. Iterate it, or call get()."""

    def __init__(self):
        self._slot: queue.Queue = queue.Queue(maxsize=1)
        self._lock = threading.Lock()
        self.closed = False
        self.last_delivered: Optional[PrinterState] = None

    def deliver(self, state: PrinterState):
        with self._lock:
            if self.closed:
                raise SubscriptionClosed()
            self._replace(state)
            self.last_delivered = state

    def _replace(self, item):
        try:
            self._slot.get_nowait()
        except queue.Empty:
            pass
        self._slot.put_nowait(item)

    def get(self, timeout: Optional[float] = None) -> PrinterState:
        """Next snapshot. Raises queue.Empty on timeout, SubscriptionClosed once closed."""
        item = self._slot.get(timeout=timeout)
        if item is _CLOSED:
            raise SubscriptionClosed()
        return item

    def close(self):
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._replace(_CLOSED)

    def __iter__(self) -> Iterator[PrinterState]:
        while True:
            try:
                yield self.get()
            except SubscriptionClosed:
                return


class AsyncSubscription(Subscription):
    """Consumer handle for asyncio code (the /ws route). Deliveries hop onto the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    def deliver(self, state: PrinterState):
        if self.closed:
            raise SubscriptionClosed()
        # Raises RuntimeError once the loop is closed; the hub drops us then
        self._loop.call_soon_threadsafe(self._put, state)
        self.last_delivered = state

    def _put(self, item):
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    async def get(self) -> PrinterState:
        item = await self._queue.get()
        if item is _CLOSED:
            raise SubscriptionClosed()
        return item

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self._loop.call_soon_threadsafe(self._put, _CLOSED)
        except RuntimeError:
            pass

    def __iter__(self):
        raise TypeError("AsyncSubscription is consumed with 'await get()'")

    async def __aiter__(self):
        while True:
            try:
                yield await self.get()
            except SubscriptionClosed:
                return


class StateBroadcastHub:
    """Pushes snapshots to weakly-held subscribers at a bounded cadence."""

    def __init__(self, snapshot: Callable[[], PrinterState],
                 interval: float = BROADCAST_INTERVAL,
                 min_spacing: float = MIN_SPACING,
                 clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.min_spacing = min_spacing
        self._snapshot = snapshot
        self._clock = clock
        self._subscribers: "weakref.WeakSet[Subscription]" = weakref.WeakSet()
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __len__(self):
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, subscription: Optional[Subscription] = None) -> Subscription:
        """Register a subscriber and hand it the current snapshot right away."""
        subscription = subscription or Subscription()
        with self._lock:
            self._subscribers.add(subscription)
        self._deliver(subscription, self._snapshot())
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            self._subscribers.discard(subscription)
        subscription.close()

    def notify(self, *args, **kwargs):
        """Wake the broadcast thread. Accepts and ignores event-bus arguments."""
        self._wake.set()

    def broadcast(self, force: bool = False) -> int:
        """
        Deliver the current snapshot to every subscriber.

        Without force, subscribers that already hold this exact snapshot are
        skipped. Returns the number of deliveries made.
        """
        state = self._snapshot()
        with self._lock:
            targets = list(self._subscribers)
        delivered = 0
        for sub in targets:
            if not force and sub.last_delivered is state:
                continue
            if self._deliver(sub, state):
                delivered += 1
        return delivered

    def _deliver(self, sub: Subscription, state: PrinterState) -> bool:
        try:
            sub.deliver(state)
            return True
        except SubscriptionClosed:
            log.debug("Dropping closed subscriber")
        except Exception as e:
            log.warning(f"Subscriber delivery failed, removing it: {e}")
        with self._lock:
            self._subscribers.discard(sub)
        return False

    # ------------------------------------------------------------------
    # Thread
    # ------------------------------------------------------------------

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="state-broadcast", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        self._wake.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        with self._lock:
            subs = list(self._subscribers)
            self._subscribers = weakref.WeakSet()
        for sub in subs:
            sub.close()

    def _run(self):
        next_tick = self._clock() + self.interval
        last_delivery = None
        while not self._stop.is_set():
            self._wake.wait(max(0.0, next_tick - self._clock()))
            if self._stop.is_set():
                break
            self._wake.clear()

            if last_delivery is not None:
                gap = self._clock() - last_delivery
                if gap < self.min_spacing and self._stop.wait(self.min_spacing - gap):
                    break

            now = self._clock()
            tick = now >= next_tick
            if tick:
                next_tick = now + self.interval
            try:
                self.broadcast(force=tick)
            except Exception as e:
                log.error(f"Broadcast failed: {e}", exc_info=True)
            last_delivery = self._clock()
