"""
Command correlator — pairs outbound SDCP commands with their asynchronous results.

Lifecycle of a command:
  send()       -> PendingCommand registered, optimistic transition applied,
                  frame handed to the supervisor, resync follow-up scheduled
  on_result()  -> success: transition confirmed, future resolved
                  failure: transition rolled back, CommandRejected, immediate resync
  sweep()      -> expired commands fail with CommandTimeout, due follow-ups run
  fail_all()   -> link lost: every pending command fails with DeviceUnavailable

Exactly one outcome is delivered per command: whichever path pops the
PendingCommand out of the table under the lock settles its future.
"""

import time
import logging
import threading
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from elegoo_bridge.core import events
from elegoo_bridge.core.errors import CommandRejected, CommandTimeout, DeviceUnavailable
from elegoo_bridge.core.interfaces.event_bus import Event, EventBus
from elegoo_bridge.modules.printers.adapters.elegoo import (
    SDCPCommand, ResultFrame, RequestIdGenerator, build_request,
)
from elegoo_bridge.modules.printers.state_store import CanonicalStateStore, Transition
from elegoo_bridge.modules.printers.status import PrinterStatusName

log = logging.getLogger(__name__)

COMMAND_TIMEOUT = 5.0
RESYNC_DELAY = 0.3
SWEEP_INTERVAL = 0.1

# cmd -> (optimistic status, reset progress)
OPTIMISTIC_TRANSITIONS: Dict[int, Tuple[str, bool]] = {
    SDCPCommand.PAUSE_PRINT: (PrinterStatusName.PAUSED, False),
    SDCPCommand.RESUME_PRINT: (PrinterStatusName.PRINTING, False),
    SDCPCommand.STOP_PRINT: (PrinterStatusName.IDLE, True),
}


@dataclass
class PendingCommand:
    request_id: str
    cmd: int
    sent_at: float
    expires_at: float
    future: Future
    transition: Optional[Transition] = None


@dataclass(order=True)
class FollowUp:
    """A scheduled correlator action. Only status resyncs exist today."""
    due_at: float
    action: str = field(default="refresh", compare=False)
    reason: str = field(default="", compare=False)


def _settle(future: Future, result: Any = None, exc: Optional[BaseException] = None):
    if future.cancelled():
        return
    try:
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)
    except InvalidStateError:
        # Cancelled by the caller after the check above
        log.debug("Command future was cancelled before its outcome arrived")


class CommandCorrelator:
    """Tracks in-flight commands and the follow-up resyncs they schedule."""

    def __init__(self, store: CanonicalStateStore,
                 send_frame: Callable[[Dict[str, Any]], None],
                 mainboard_id: Callable[[], str] = lambda: "",
                 timeout: float = COMMAND_TIMEOUT,
                 resync_delay: float = RESYNC_DELAY,
                 bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.monotonic,
                 id_generator: Optional[RequestIdGenerator] = None):
        self.store = store
        self.timeout = timeout
        self.resync_delay = resync_delay
        self._send_frame = send_frame
        self._mainboard_id = mainboard_id
        self._bus = bus
        self._clock = clock
        self._ids = id_generator or RequestIdGenerator()
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingCommand] = {}
        self._followups: List[FollowUp] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def pending(self) -> List[PendingCommand]:
        with self._lock:
            return list(self._pending.values())

    @property
    def followups(self) -> List[FollowUp]:
        with self._lock:
            return list(self._followups)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(self, cmd: int, payload: Optional[Dict[str, Any]] = None) -> Future:
        """
        Send a command and return a Future for its outcome.

        The future resolves to the ResultFrame on success, or fails with
        CommandRejected, CommandTimeout or DeviceUnavailable.
        """
        cmd = int(cmd)
        request_id = self._ids.next_id()
        frame = build_request(cmd, payload, request_id=request_id, mainboard_id=self._mainboard_id())
        now = self._clock()
        pending = PendingCommand(
            request_id=request_id,
            cmd=cmd,
            sent_at=now,
            expires_at=now + self.timeout,
            future=Future(),
        )

        # Registered before the frame leaves so a fast result can always match
        with self._lock:
            self._pending[request_id] = pending
        if cmd in OPTIMISTIC_TRANSITIONS:
            status, reset = OPTIMISTIC_TRANSITIONS[cmd]
            _, pending.transition = self.store.apply_transition(status, reset_progress=reset)

        try:
            self._send_frame(frame)
        except DeviceUnavailable as e:
            with self._lock:
                dropped = self._pending.pop(request_id, None)
            if dropped is not None:
                self._discard_transition(dropped)
                _settle(dropped.future, exc=e)
            log.warning(f"Command {cmd} not sent: {e}")
            return pending.future

        log.info(f"Sent command {cmd} (RequestID: {request_id})")
        self.schedule_refresh(self.resync_delay, reason=f"after command {cmd}")
        self._publish(events.COMMAND_SENT, {"cmd": cmd, "request_id": request_id})
        return pending.future

    def request_status(self) -> bool:
        """Fire-and-forget status refresh. The answer arrives as a status frame."""
        frame = build_request(SDCPCommand.STATUS_REQUEST, request_id=self._ids.next_id(),
                              mainboard_id=self._mainboard_id())
        try:
            self._send_frame(frame)
        except DeviceUnavailable as e:
            log.debug(f"Status refresh skipped: {e}")
            return False
        log.debug("Requested status refresh")
        return True

    def schedule_refresh(self, delay: float = 0.0, reason: str = ""):
        """Record a status resync follow-up, unless one is already due by then."""
        due_at = self._clock() + delay
        with self._lock:
            if any(f.action == "refresh" and f.due_at <= due_at for f in self._followups):
                return
            self._followups.append(FollowUp(due_at=due_at, action="refresh", reason=reason))
            self._followups.sort()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def on_result(self, result: ResultFrame) -> bool:
        """Resolve the pending command a result belongs to. Returns False if none matched."""
        with self._lock:
            pending = self._match(result)
        if pending is None:
            log.debug(f"No pending command for result Cmd {result.cmd} (RequestID: {result.request_id})")
            return False

        if result.success:
            if pending.cmd in OPTIMISTIC_TRANSITIONS:
                status, reset = OPTIMISTIC_TRANSITIONS[pending.cmd]
                self.store.apply_transition(status, reset_progress=reset)
            log.info(f"Command {pending.cmd} confirmed by printer")
            _settle(pending.future, result=result)
            outcome = "success"
        else:
            self._discard_transition(pending)
            self.schedule_refresh(0.0, reason=f"command {pending.cmd} rejected")
            log.warning(f"Command {pending.cmd} rejected by printer (error code {result.error_code})")
            _settle(pending.future, exc=CommandRejected(pending.cmd, result.error_code))
            outcome = "rejected"

        self._publish(events.COMMAND_RESOLVED, {
            "cmd": pending.cmd, "request_id": pending.request_id,
            "outcome": outcome, "error_code": result.error_code,
        })
        return True

    def _match(self, result: ResultFrame) -> Optional[PendingCommand]:
        if result.request_id and result.request_id in self._pending:
            return self._pending.pop(result.request_id)
        # Firmware that does not echo RequestID: oldest pending command with the same code
        candidates = [p for p in self._pending.values() if p.cmd == result.cmd]
        if not candidates:
            return None
        oldest = min(candidates, key=lambda p: p.sent_at)
        return self._pending.pop(oldest.request_id)

    # ------------------------------------------------------------------
    # Expiry / link loss
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[float] = None) -> int:
        """Expire overdue commands and run due follow-ups. Returns the number expired."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [p for p in self._pending.values() if p.expires_at <= now]
            for p in expired:
                del self._pending[p.request_id]
            due = [f for f in self._followups if f.due_at <= now]
            self._followups = [f for f in self._followups if f.due_at > now]

        for p in expired:
            self._discard_transition(p)
            log.warning(f"Command {p.cmd} ({p.request_id}) timed out after {self.timeout:.1f}s")
            _settle(p.future, exc=CommandTimeout(p.cmd, p.request_id, self.timeout))
            self._publish(events.COMMAND_RESOLVED, {
                "cmd": p.cmd, "request_id": p.request_id, "outcome": "timeout", "error_code": None,
            })
        if expired:
            self.schedule_refresh(0.0, reason="command timeout")

        for f in due:
            if f.action == "refresh":
                log.debug(f"Running follow-up refresh ({f.reason})")
                self.request_status()
        return len(expired)

    def fail_all(self, reason: str = "Printer connection lost") -> int:
        """Fail every pending command with DeviceUnavailable and drop follow-ups."""
        with self._lock:
            dropped = list(self._pending.values())
            self._pending.clear()
            self._followups.clear()
        for p in dropped:
            self._discard_transition(p)
            _settle(p.future, exc=DeviceUnavailable(reason))
            self._publish(events.COMMAND_RESOLVED, {
                "cmd": p.cmd, "request_id": p.request_id, "outcome": "unavailable", "error_code": None,
            })
        if dropped:
            log.warning(f"Failed {len(dropped)} pending command(s): {reason}")
        return len(dropped)

    def _discard_transition(self, pending: PendingCommand):
        if pending.transition is not None:
            self.store.rollback(pending.transition)

    # ------------------------------------------------------------------
    # Sweep thread
    # ------------------------------------------------------------------

    def start(self, interval: float = SWEEP_INTERVAL):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, args=(interval,),
                                        name="sdcp-command-sweep", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None

    def _run(self, interval: float):
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception as e:
                log.error(f"Command sweep failed: {e}", exc_info=True)

    def _publish(self, event_type: str, data: dict):
        if self._bus is not None:
            self._bus.publish(Event(event_type=event_type, source_module="correlator", data=data))
