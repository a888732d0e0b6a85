"""
Test doubles for the device link.

FakeWebSocketApp mimics websocket.WebSocketApp closely enough for the
supervisor: run_forever() fires on_open, blocks until close() or drop(), and
then fires on_close. Frames the engine sends are decoded into `sent`.
"""

import json
import time
import threading

import websocket


def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is truthy. Returns the final result."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class FakeWebSocketApp:
    def __init__(self, url, on_open=None, on_message=None, on_error=None, on_close=None, refuse=False):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.refuse = refuse
        self.sent = []
        self.closed = False
        self.run_kwargs = None
        self._done = threading.Event()

    def run_forever(self, **kwargs):
        self.run_kwargs = kwargs
        if self.refuse:
            self.on_error(self, ConnectionRefusedError(111, "Connection refused"))
            self.on_close(self, None, None)
            return
        self.on_open(self)
        self._done.wait()
        self.on_close(self, 1006, "")

    def send(self, data):
        if self.closed:
            raise websocket.WebSocketConnectionClosedException("Connection is already closed.")
        self.sent.append(json.loads(data))

    def close(self):
        self.closed = True
        self._done.set()

    # Test controls ------------------------------------------------------

    def receive(self, message):
        """Deliver one inbound frame as the printer would."""
        raw = message if isinstance(message, str) else json.dumps(message)
        self.on_message(self, raw)

    def drop(self):
        """Simulate the printer going away."""
        self.closed = True
        self._done.set()

    @property
    def commands(self):
        return [frame["Data"]["Cmd"] for frame in self.sent]


class FakeSocketFactory:
    """Stands in for websocket.WebSocketApp; remembers every socket it built."""

    def __init__(self):
        self.sockets = []
        self.refuse = False

    def __call__(self, url, **callbacks):
        ws = FakeWebSocketApp(url, refuse=self.refuse, **callbacks)
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeWebSocketApp:
        return self.sockets[-1]


class FakeTimer:
    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fn()


class FakeTimerFactory:
    """Stands in for threading.Timer; timers only run when a test fires them."""

    def __init__(self):
        self.timers = []

    def __call__(self, delay, fn):
        timer = FakeTimer(delay, fn)
        self.timers.append(timer)
        return timer

    @property
    def latest(self) -> FakeTimer:
        return self.timers[-1]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds
