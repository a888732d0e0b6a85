"""
Status stream client — consumes the bridge's /ws push channel.

Unlike the device link, this reconnect policy is bounded: after
max_attempts consecutive failed connection attempts the stream raises
ReconnectExhausted and stops for good. The counter resets on every
successful connect.

    client = StatusStreamClient("ws://localhost:3000/ws")
    for status in client:
        print(status["printer_data"]["status"])
"""

import sys
import json
import time
import logging
from typing import Any, Callable, Dict, Iterator, Optional

import websocket

from elegoo_bridge.core.config import Settings, settings as default_settings
from elegoo_bridge.core.errors import ReconnectExhausted
from elegoo_bridge.modules.printers.monitors.elegoo_monitor import (
    backoff_delay, RECONNECT_BASE_DELAY, RECONNECT_MAX_DELAY,
)

log = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
RECV_TIMEOUT = 35  # server pings every 30s when idle


class StatusStreamClient:
    """Iterates status payloads pushed by the bridge, reconnecting on loss."""

    def __init__(self, url: str, max_attempts: Optional[int] = MAX_ATTEMPTS,
                 base_delay: float = RECONNECT_BASE_DELAY,
                 max_delay: float = RECONNECT_MAX_DELAY,
                 timeout: float = RECV_TIMEOUT,
                 connector: Callable[..., Any] = websocket.create_connection,
                 sleep: Callable[[float], None] = time.sleep):
        self.url = url
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.failures = 0
        self._connector = connector
        self._sleep = sleep
        self._ws = None
        self._closed = False

    @classmethod
    def from_settings(cls, url: str, settings: Optional[Settings] = None, **kwargs) -> "StatusStreamClient":
        """Build a client whose attempt budget and backoff come from Settings (STREAM_MAX_ATTEMPTS, ...)."""
        settings = settings or default_settings
        kwargs.setdefault("max_attempts", settings.stream_max_attempts)
        kwargs.setdefault("base_delay", settings.reconnect_base_delay)
        kwargs.setdefault("max_delay", settings.reconnect_max_delay)
        return cls(url, **kwargs)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return self.stream()

    def stream(self) -> Iterator[Dict[str, Any]]:
        """Yield the data of every status message. Raises ReconnectExhausted."""
        self.failures = 0
        while not self._closed:
            try:
                ws = self._connector(self.url, timeout=self.timeout)
            except (websocket.WebSocketException, OSError) as e:
                self.failures += 1
                if self.max_attempts is not None and self.failures >= self.max_attempts:
                    log.error(f"[{self.url}] Giving up after {self.failures} failed attempts: {e}")
                    raise ReconnectExhausted(self.failures) from e
                delay = backoff_delay(self.failures, self.base_delay, self.max_delay)
                log.warning(f"[{self.url}] Connect failed ({e}), retrying in {delay:.1f}s")
                self._sleep(delay)
                continue

            self.failures = 0
            self._ws = ws
            log.info(f"[{self.url}] Status stream connected")
            try:
                yield from self._read(ws)
            except (websocket.WebSocketException, OSError) as e:
                if not self._closed:
                    log.warning(f"[{self.url}] Status stream lost: {e}")
            finally:
                self._ws = None
                ws.close()

            if not self._closed:
                self._sleep(backoff_delay(1, self.base_delay, self.max_delay))

    def _read(self, ws) -> Iterator[Dict[str, Any]]:
        while not self._closed:
            raw = ws.recv()
            if not raw or raw == "pong":
                continue
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                log.debug(f"[{self.url}] Ignoring non-JSON message: {raw[:100]!r}")
                continue
            if isinstance(message, dict) and message.get("type") == "status":
                yield message.get("data") or {}
            elif isinstance(message, dict) and message.get("type") == "error":
                log.warning(f"[{self.url}] Bridge error: {message.get('message')}")

    def close(self):
        self._closed = True
        ws = self._ws
        if ws is not None:
            ws.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(message)s")
    url = sys.argv[1] if len(sys.argv) > 1 else "ws://localhost:3000/ws"
    try:
        for payload in StatusStreamClient.from_settings(url):
            data = payload.get("printer_data", {})
            print(f"{payload.get('connection_state', '?'):>12}  {data.get('status', '?'):<14}"
                  f"{data.get('progress', 0):6.1f}%  UV {'on' if data.get('uv_light_on') else 'off'}")
    except ReconnectExhausted as e:
        print(e)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
