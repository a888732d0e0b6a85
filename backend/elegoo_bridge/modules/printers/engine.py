"""
Printer State Synchronization Engine.

One explicitly constructed PrinterEngine owns every piece of mutable state
for one printer: the connection supervisor, the canonical state store, the
command correlator, the broadcast hub, and the event bus wiring them
together. Nothing here is process-global; the FastAPI app receives its
engine through create_app().

Inbound path (receive thread):
    raw text -> parse_frame() -> dispatch() -> store.merge / correlator.on_result

Outbound path (caller thread):
    pause()/resume()/stop()/start_print() -> correlator.send() -> supervisor.send_frame()
"""

import logging
import threading
from concurrent.futures import Future
from typing import Any, Dict, Optional

from elegoo_bridge.core import events
from elegoo_bridge.core.config import Settings, settings as default_settings
from elegoo_bridge.core.errors import DeviceUnavailable, PrinterConnectionError
from elegoo_bridge.core.event_bus import InMemoryEventBus
from elegoo_bridge.core.interfaces.event_bus import Event, EventBus
from elegoo_bridge.core.interfaces.printer_state import PrinterStateProvider
from elegoo_bridge.core.settings_store import SettingsStore
from elegoo_bridge.modules.printers.adapters.elegoo import (
    SDCPCommand, Frame, StatusFrame, ResultFrame, AttributesFrame, NoticeFrame, MalformedFrame,
    parse_frame,
)
from elegoo_bridge.modules.printers.broadcast import StateBroadcastHub, Subscription
from elegoo_bridge.modules.printers.commands import CommandCorrelator
from elegoo_bridge.modules.printers.monitors.elegoo_monitor import ConnectionSupervisor, ConnectionState
from elegoo_bridge.modules.printers.state_store import CanonicalStateStore, PrinterState

log = logging.getLogger(__name__)


class PrinterEngine(PrinterStateProvider):
    """Owns the device link and the canonical state for a single printer."""

    def __init__(self, settings: Optional[Settings] = None, bus: Optional[EventBus] = None,
                 ws_factory=None, timer_factory=threading.Timer,
                 settings_store: Optional[SettingsStore] = None):
        self.settings = settings or default_settings
        self.bus = bus or InMemoryEventBus()
        self.mainboard_id = self.settings.mainboard_id
        self._settings_store = settings_store

        self.store = CanonicalStateStore(
            uv_temp_threshold=self.settings.uv_temp_threshold,
            on_change=self._on_state_change,
        )
        self.supervisor = ConnectionSupervisor(
            on_frame=self.handle_raw,
            on_connected=self._on_connected,
            on_link_lost=self._on_link_lost,
            on_state_change=self._on_connection_state,
            port=self.settings.printer_port,
            connect_timeout=self.settings.connect_timeout,
            base_delay=self.settings.reconnect_base_delay,
            max_delay=self.settings.reconnect_max_delay,
            ws_factory=ws_factory,
            timer_factory=timer_factory,
        )
        self.correlator = CommandCorrelator(
            self.store,
            send_frame=self.supervisor.send_frame,
            mainboard_id=lambda: self.mainboard_id,
            timeout=self.settings.command_timeout,
            resync_delay=self.settings.resync_delay,
            bus=self.bus,
        )
        self.hub = StateBroadcastHub(
            self.store.snapshot,
            interval=self.settings.broadcast_interval,
            min_spacing=self.settings.broadcast_min_spacing,
        )
        self.bus.subscribe(events.PRINTER_STATE_CHANGED, self.hub.notify)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start background threads and, if configured, connect to the printer."""
        self.correlator.start()
        self.hub.start()
        if self.settings.auto_connect and self.settings.printer_ip:
            try:
                self.connect(self.settings.printer_ip)
            except PrinterConnectionError as e:
                log.warning(f"Auto-connect to {self.settings.printer_ip} failed: {e}")

    def connect(self, address: Optional[str] = None):
        """Connect to `address` (or the configured printer_ip). Raises PrinterConnectionError."""
        self.supervisor.connect(address or self.supervisor.address or self.settings.printer_ip)

    def disconnect(self):
        self.supervisor.disconnect()

    def shutdown(self):
        """Tear everything down synchronously."""
        log.info("Shutting down printer engine")
        self.supervisor.disconnect()
        self.correlator.fail_all("Engine shutting down")
        self.correlator.stop()
        self.hub.stop()

    # ------------------------------------------------------------------
    # PrinterStateProvider
    # ------------------------------------------------------------------

    def get_snapshot(self) -> PrinterState:
        return self.store.snapshot()

    def subscribe(self, subscription: Optional[Subscription] = None) -> Subscription:
        return self.hub.subscribe(subscription)

    def unsubscribe(self, subscription: Subscription):
        self.hub.unsubscribe(subscription)

    def is_connected(self) -> bool:
        return self.supervisor.connected

    @property
    def connection_state(self) -> ConnectionState:
        return self.supervisor.state

    @property
    def printer_ip(self) -> str:
        return self.supervisor.address or self.settings.printer_ip

    def status_payload(self, state: Optional[PrinterState] = None) -> Dict[str, Any]:
        """Shape shared by GET /api/status and the /ws push channel."""
        state = state or self.get_snapshot()
        return {
            "connected": self.is_connected(),
            "printer_ip": self.printer_ip,
            "connection_state": self.connection_state.value,
            "printer_data": state.to_dict(),
        }

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def send_command(self, cmd: int, payload: Optional[Dict[str, Any]] = None) -> Future:
        if not self.is_connected():
            future: Future = Future()
            future.set_exception(DeviceUnavailable("Printer is not connected"))
            return future
        return self.correlator.send(cmd, payload)

    def pause(self) -> Future:
        return self.send_command(SDCPCommand.PAUSE_PRINT)

    def resume(self) -> Future:
        return self.send_command(SDCPCommand.RESUME_PRINT)

    def stop(self) -> Future:
        return self.send_command(SDCPCommand.STOP_PRINT)

    def start_print(self, filename: str, start_layer: int = 0) -> Future:
        return self.send_command(SDCPCommand.START_PRINT, {"Filename": filename, "StartLayer": start_layer})

    def refresh(self) -> bool:
        return self.correlator.request_status()

    # ------------------------------------------------------------------
    # Settings blob
    # ------------------------------------------------------------------

    @property
    def settings_store(self) -> SettingsStore:
        if self._settings_store is None:
            self._settings_store = SettingsStore(self.settings.database_path)
        return self._settings_store

    def load_settings(self) -> Dict[str, Any]:
        return self.settings_store.load()

    def save_settings(self, value: Dict[str, Any]) -> Dict[str, Any]:
        self.settings_store.save(value)
        return value

    # ------------------------------------------------------------------
    # Inbound dispatch (receive thread)
    # ------------------------------------------------------------------

    def handle_raw(self, message):
        self.dispatch(parse_frame(message))

    def dispatch(self, frame: Frame):
        """Route one tagged frame. The only place inbound frames branch by kind."""
        if isinstance(frame, MalformedFrame):
            log.warning(f"Dropping malformed frame: {frame.reason}")
            self._publish(events.FRAME_MALFORMED, {"reason": frame.reason})
        elif isinstance(frame, StatusFrame):
            self._learn_mainboard_id(frame.mainboard_id)
            self.store.merge(frame.status)
        elif isinstance(frame, ResultFrame):
            self._learn_mainboard_id(frame.mainboard_id)
            self.correlator.on_result(frame)
        elif isinstance(frame, AttributesFrame):
            attrs = frame.attributes
            self._learn_mainboard_id(frame.mainboard_id)
            self.store.update_identity(
                firmware_version=attrs.get("FirmwareVersion"),
                model=attrs.get("MachineName") or attrs.get("Name"),
            )
        elif isinstance(frame, NoticeFrame):
            log.debug(f"SDCP notice on {frame.topic}: {frame.data}")

    def _learn_mainboard_id(self, mainboard_id: Optional[str]):
        if not mainboard_id:
            return
        if not self.mainboard_id:
            log.info(f"Learned printer MainboardID {mainboard_id}")
            self.mainboard_id = mainboard_id
        self.store.update_identity(mainboard_id=mainboard_id)

    # ------------------------------------------------------------------
    # Callbacks from collaborators
    # ------------------------------------------------------------------

    def _on_state_change(self, state: PrinterState):
        self._publish(events.PRINTER_STATE_CHANGED, {"status": state.status, "revision": self.store.revision})

    def _on_connected(self):
        self._publish(events.PRINTER_CONNECTED, {"address": self.supervisor.address})
        self.correlator.request_status()

    def _on_link_lost(self, reason: str):
        self.correlator.fail_all(reason)
        self._publish(events.PRINTER_DISCONNECTED, {"address": self.supervisor.address, "reason": reason})

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState):
        log.debug(f"Connection state {old.value} -> {new.value}")
        if new == ConnectionState.RECONNECTING:
            self._publish(events.PRINTER_RECONNECTING, {
                "address": self.supervisor.address, "attempt": self.supervisor.attempts,
            })
        self.hub.notify()

    def _publish(self, event_type: str, data: dict):
        self.bus.publish(Event(event_type=event_type, source_module="engine", data=data))
