"""
Elegoo SDCP connection supervisor — owns the WebSocket link to one printer.

Protocol: SDCP v3.0.0 over WebSocket
Transport: ws://printer_ip:3030/websocket (no auth)

Architecture:
  - websocket-client WebSocketApp.run_forever on a daemon thread (receive loop)
  - every received text frame is handed to one dispatcher callback
  - unexpected closure -> Reconnecting, retried forever with capped
    exponential backoff on a threading.Timer
  - the only component that writes to the device socket

Every socket gets a generation number. Callbacks from a socket whose
generation is no longer current (closed by disconnect(), replaced by a new
connect(), or abandoned after a connect timeout) are ignored.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import websocket

from elegoo_bridge.core.errors import DeviceUnavailable, PrinterConnectionError
from elegoo_bridge.modules.printers.adapters.elegoo import encode_frame

log = logging.getLogger(__name__)

SDCP_PORT = 3030
CONNECT_TIMEOUT = 5.0
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
PING_INTERVAL = 30
PING_TIMEOUT = 10


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def backoff_delay(attempt: int, base: float = RECONNECT_BASE_DELAY,
                  maximum: float = RECONNECT_MAX_DELAY) -> float:
    """Delay before reconnect attempt `attempt` (1-based): base * 2^(attempt-1), capped."""
    attempt = max(1, attempt)
    # Cap the exponent so very long outages don't build huge ints
    return min(base * (2 ** min(attempt - 1, 32)), maximum)


class ConnectionSupervisor:
    """Lifecycle of the device link: connect, receive, disconnect, reconnect."""

    def __init__(self, on_frame: Callable[[str], None],
                 on_connected: Optional[Callable[[], None]] = None,
                 on_link_lost: Optional[Callable[[str], None]] = None,
                 on_state_change: Optional[Callable[[ConnectionState, ConnectionState], None]] = None,
                 port: int = SDCP_PORT,
                 connect_timeout: float = CONNECT_TIMEOUT,
                 base_delay: float = RECONNECT_BASE_DELAY,
                 max_delay: float = RECONNECT_MAX_DELAY,
                 ws_factory: Optional[Callable[..., Any]] = None,
                 timer_factory: Callable[..., Any] = threading.Timer):
        self.port = port
        self.connect_timeout = connect_timeout
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.address: Optional[str] = None
        self.attempts = 0

        self._on_frame = on_frame
        self._on_connected = on_connected
        self._on_link_lost = on_link_lost
        self._on_state_change = on_state_change
        self._ws_factory = ws_factory or websocket.WebSocketApp
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._ws = None
        self._thread: Optional[threading.Thread] = None
        self._timer = None
        self._handshake = threading.Event()
        self._handshake_ok = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def url(self) -> str:
        return f"ws://{self.address}:{self.port}/websocket"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def connect(self, address: Optional[str] = None):
        """
        Open the link and wait for the handshake.

        Raises PrinterConnectionError if the socket fails or the handshake
        does not complete within connect_timeout. Connecting to the address
        already connected is a no-op.
        """
        with self._lock:
            if address and address != self.address:
                self.address = address
            elif self._state == ConnectionState.CONNECTED:
                return
            if not self.address:
                raise PrinterConnectionError("No printer address configured")

            self._cancel_timer()
            old_ws, old_thread = self._detach()
            was_connected = self._state == ConnectionState.CONNECTED
            self.attempts = 0
            self._handshake = threading.Event()
            self._handshake_ok = False
            changed = self._set_state(ConnectionState.CONNECTING)
            gen = self._open()
            receiver = self._thread
            handshake = self._handshake

        self._emit(changed)
        self._close_socket(old_ws, old_thread)
        if was_connected:
            self._link_lost("Switching printer connection")

        log.info(f"[{self.address}] Connecting to {self.url}...")
        receiver.start()
        opened = handshake.wait(self.connect_timeout)

        with self._lock:
            if self._handshake_ok:
                return
            ws, thread = self._detach() if gen == self._generation else (None, None)
            changed = None
            if self._state == ConnectionState.CONNECTING:
                changed = self._set_state(ConnectionState.DISCONNECTED)
        self._emit(changed)
        self._close_socket(ws, thread)

        reason = "timed out" if not opened else "connection refused or closed"
        log.warning(f"[{self.address}] SDCP connect failed: {reason}")
        raise PrinterConnectionError(f"Could not connect to {self.url} ({reason})")

    def disconnect(self):
        """Close the link. Idempotent; cancels any pending reconnect."""
        with self._lock:
            self._cancel_timer()
            ws, thread = self._detach()
            was = self._state
            changed = self._set_state(ConnectionState.DISCONNECTED)
        self._emit(changed)
        self._close_socket(ws, thread)
        if was != ConnectionState.DISCONNECTED:
            log.info(f"[{self.address}] SDCP disconnected")
        if was == ConnectionState.CONNECTED:
            self._link_lost("Printer disconnected")

    def send_frame(self, frame: Dict[str, Any]):
        """Write one request frame. Raises DeviceUnavailable when the link is down."""
        with self._lock:
            ws = self._ws if self._state == ConnectionState.CONNECTED else None
        if ws is None:
            raise DeviceUnavailable("Printer is not connected")
        try:
            ws.send(encode_frame(frame))
        except (websocket.WebSocketException, OSError) as e:
            raise DeviceUnavailable(f"Send to printer failed: {e}") from e

    # ------------------------------------------------------------------
    # Socket lifecycle (lock held unless noted)
    # ------------------------------------------------------------------

    def _open(self) -> int:
        """Build the next socket and its (unstarted) receive thread."""
        self._generation += 1
        gen = self._generation
        ws = self._ws_factory(
            self.url,
            on_open=lambda ws: self._handle_open(gen, ws),
            on_message=lambda ws, message: self._handle_message(gen, message),
            on_error=lambda ws, error: self._handle_error(gen, error),
            on_close=lambda ws, code, msg: self._handle_closed(gen, code, msg),
        )
        self._ws = ws
        self._thread = threading.Thread(
            target=self._run,
            args=(gen, ws),
            name=f"sdcp-recv-{gen}",
            daemon=True,
        )
        return gen

    def _run(self, gen: int, ws):
        try:
            ws.run_forever(ping_interval=PING_INTERVAL, ping_timeout=PING_TIMEOUT)
        except Exception as e:
            log.warning(f"[{self.address}] SDCP receive loop crashed: {e}")
        # Not every failure path reaches on_close
        self._handle_closed(gen, None, None)

    def _detach(self) -> Tuple[Any, Optional[threading.Thread]]:
        """Invalidate the current socket and hand it back for closing."""
        self._generation += 1
        ws, thread = self._ws, self._thread
        self._ws = None
        self._thread = None
        return ws, thread

    def _close_socket(self, ws, thread):
        """Close a detached socket and join its thread. Called without the lock."""
        if ws is not None:
            try:
                ws.close()
            except (websocket.WebSocketException, OSError) as e:
                log.debug(f"[{self.address}] Error closing SDCP socket: {e}")
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.connect_timeout)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set_state(self, new: ConnectionState):
        old = self._state
        self._state = new
        return (old, new) if old != new else None

    # ------------------------------------------------------------------
    # Socket callbacks (receive thread)
    # ------------------------------------------------------------------

    def _handle_open(self, gen: int, ws):
        with self._lock:
            stale = gen != self._generation
            if not stale:
                self.attempts = 0
                self._handshake_ok = True
                changed = self._set_state(ConnectionState.CONNECTED)
                self._handshake.set()
        if stale:
            ws.close()
            return
        log.info(f"[{self.address}] SDCP connected")
        self._emit(changed)
        if self._on_connected is not None:
            try:
                self._on_connected()
            except Exception as e:
                log.error(f"[{self.address}] on_connected handler failed: {e}", exc_info=True)

    def _handle_message(self, gen: int, message):
        if gen != self._generation:
            return
        try:
            self._on_frame(message)
        except Exception as e:
            log.error(f"[{self.address}] Frame dispatch failed: {e}", exc_info=True)

    def _handle_error(self, gen: int, error):
        if gen == self._generation:
            log.warning(f"[{self.address}] SDCP error: {error}")

    def _handle_closed(self, gen: int, code, msg):
        with self._lock:
            if gen != self._generation:
                return
            self._generation += 1
            self._ws = None
            self._thread = None
            was = self._state

            if was == ConnectionState.CONNECTING:
                # connect() is waiting and reports the failure itself
                self._handshake.set()
                return

            self.attempts += 1
            delay = backoff_delay(self.attempts, self.base_delay, self.max_delay)
            changed = self._set_state(ConnectionState.RECONNECTING)
            self._timer = self._timer_factory(delay, self._reconnect)
            self._timer.daemon = True
            self._timer.start()

        if was == ConnectionState.CONNECTED:
            log.warning(f"[{self.address}] SDCP connection lost (code {code}), reconnecting in {delay:.1f}s")
        else:
            log.info(f"[{self.address}] Reconnect attempt {self.attempts - 1} failed, retrying in {delay:.1f}s")
        self._emit(changed)
        if was == ConnectionState.CONNECTED:
            self._link_lost("Printer connection lost")

    def _reconnect(self):
        """Timer callback: one reconnect attempt. Failure re-arms via _handle_closed."""
        with self._lock:
            if self._state != ConnectionState.RECONNECTING:
                return
            self._timer = None
            log.info(f"[{self.address}] Reconnect attempt {self.attempts} to {self.url}")
            self._open()
            self._thread.start()

    # ------------------------------------------------------------------
    # Notifications (called without the lock)
    # ------------------------------------------------------------------

    def _emit(self, changed):
        if changed is None or self._on_state_change is None:
            return
        try:
            self._on_state_change(*changed)
        except Exception as e:
            log.error(f"[{self.address}] State change handler failed: {e}", exc_info=True)

    def _link_lost(self, reason: str):
        if self._on_link_lost is None:
            return
        try:
            self._on_link_lost(reason)
        except Exception as e:
            log.error(f"[{self.address}] Link loss handler failed: {e}", exc_info=True)
