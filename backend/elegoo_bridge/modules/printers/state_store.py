"""
Canonical printer state — the single reconciled record every consumer reads.

The store is copy-on-write: each mutation builds a new frozen PrinterState
under the lock and swaps it in, so snapshot() can hand out the current object
without copying and readers never observe a half-merged record.

Merge rules:
  - a known field present in the incoming Status object overwrites
  - a known field absent (or null) keeps its previous value
  - derived signals (status, progress, time_remaining, uv_light_on) are
    recomputed after every merge
  - last_update never moves backwards
"""

import time
import logging
import threading
from dataclasses import dataclass, asdict, replace
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from elegoo_bridge.modules.printers.status import (
    PrinterStatusName, UV_TEMP_THRESHOLD,
    resolve_status, calculate_progress, calculate_time_remaining, infer_uv_light,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrinterState:
    """Immutable snapshot of the printer. None = never reported."""

    # Status codes
    machine_status: Optional[int] = None
    previous_machine_status: Optional[int] = None
    print_status: Optional[int] = None

    # Print job
    filename: Optional[str] = None
    task_id: Optional[str] = None
    current_layer: Optional[int] = None
    total_layers: Optional[int] = None
    current_ticks: Optional[int] = None   # elapsed
    total_ticks: Optional[int] = None     # estimated total
    error_number: Optional[int] = None

    # Temperatures / system counters
    temp_of_uvled: Optional[float] = None
    temp_of_box: Optional[float] = None
    temp_target_box: Optional[float] = None
    release_film: Optional[int] = None    # release film cycle count
    print_screen: Optional[int] = None    # exposure screen usage (s)
    time_lapse_status: Optional[int] = None

    # Explicit UV flags (only some firmware reports them)
    uv_on: Optional[bool] = None
    uv_led_status: Optional[int] = None

    # Derived
    status: str = PrinterStatusName.UNKNOWN
    progress: float = 0.0
    time_remaining: int = 0
    uv_light_on: bool = False

    # Identity
    mainboard_id: Optional[str] = None
    firmware_version: Optional[str] = None
    model: Optional[str] = None

    last_update: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Status object key -> PrinterState field
_STATUS_FIELDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("temp_of_uvled", ("TempOfUVLED",)),
    ("temp_of_box", ("TempOfBox",)),
    ("temp_target_box", ("TempTargetBox",)),
    ("release_film", ("ReleaseFilm",)),
    ("print_screen", ("PrintScreen",)),
    ("time_lapse_status", ("TimeLapseStatus",)),
    ("uv_on", ("UVOn",)),
    ("uv_led_status", ("UVLEDStatus",)),
)

# PrintInfo key(s) -> PrinterState field; first key present wins
_PRINT_INFO_FIELDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("print_status", ("Status",)),
    ("current_layer", ("CurrentLayer", "CurLayer")),
    ("total_layers", ("TotalLayer",)),
    ("current_ticks", ("CurrentTicks",)),
    ("total_ticks", ("TotalTicks",)),
    ("filename", ("Filename", "FileName")),
    ("error_number", ("ErrorNumber",)),
    ("task_id", ("TaskId",)),
)


def _pick(source: Dict[str, Any], keys: Tuple[str, ...]):
    for key in keys:
        value = source.get(key)
        if value is not None:
            return value
    return None


def extract_changes(raw_status: Dict[str, Any]) -> Dict[str, Any]:
    """Map a raw SDCP Status object to the PrinterState fields it carries."""
    changes: Dict[str, Any] = {}

    cs = raw_status.get("CurrentStatus")
    if isinstance(cs, list):
        cs = cs[0] if cs else None
    if cs is not None:
        changes["machine_status"] = cs

    for name, keys in _STATUS_FIELDS:
        value = _pick(raw_status, keys)
        if value is not None:
            changes[name] = value

    pi = raw_status.get("PrintInfo")
    if isinstance(pi, dict):
        for name, keys in _PRINT_INFO_FIELDS:
            value = _pick(pi, keys)
            if value is not None:
                changes[name] = value

    return changes


# Recomputed by _derive() on every merge
DERIVED_FIELDS = ("status", "progress", "time_remaining", "uv_light_on")


@dataclass(frozen=True)
class Transition:
    """Rollback token for an optimistic transition."""
    revision: int
    previous: Dict[str, Any]


class CanonicalStateStore:
    """Lock-guarded, copy-on-write owner of the canonical PrinterState."""

    def __init__(self, uv_temp_threshold: float = UV_TEMP_THRESHOLD,
                 clock: Callable[[], float] = time.time,
                 on_change: Optional[Callable[[PrinterState], None]] = None):
        self.uv_temp_threshold = uv_temp_threshold
        self._clock = clock
        self._on_change = on_change
        self._lock = threading.Lock()
        self._state = PrinterState()
        self._revision = 0
        self._last_merge = 0
        # field -> revision of the last commit that wrote it
        self._written: Dict[str, int] = {}

    @property
    def revision(self) -> int:
        return self._revision

    def snapshot(self) -> PrinterState:
        with self._lock:
            return self._state

    def merge(self, raw_status: Dict[str, Any]) -> PrinterState:
        """Merge one raw Status object. Absent fields keep their previous values."""
        changes = extract_changes(raw_status)
        with self._lock:
            prev = self._state
            if "machine_status" in changes and changes["machine_status"] != prev.machine_status:
                changes["previous_machine_status"] = prev.machine_status
            state = self._derive(replace(prev, **changes))
            state = replace(state, last_update=self._next_timestamp(prev))
            self._commit(state, list(changes) + list(DERIVED_FIELDS))
            self._last_merge = self._revision
        log.debug(
            f"Merged status: {state.status} layer {state.current_layer}/{state.total_layers} "
            f"uv={state.uv_light_on} file={state.filename}"
        )
        self._notify(state)
        return state

    def update_identity(self, mainboard_id: Optional[str] = None,
                        firmware_version: Optional[str] = None,
                        model: Optional[str] = None) -> PrinterState:
        changes = {k: v for k, v in (("mainboard_id", mainboard_id),
                                     ("firmware_version", firmware_version),
                                     ("model", model)) if v}
        with self._lock:
            prev = self._state
            if all(getattr(prev, k) == v for k, v in changes.items()):
                return prev
            state = replace(prev, last_update=self._next_timestamp(prev), **changes)
            self._commit(state, changes)
        self._notify(state)
        return state

    def reset_progress(self) -> PrinterState:
        """Zero progress-related fields after a stop. Temperatures and counters are untouched."""
        return self.apply_transition(None, reset_progress=True)[0]

    def apply_transition(self, status: Optional[str],
                         reset_progress: bool = False) -> Tuple[PrinterState, Transition]:
        """Apply a local status transition ahead of device confirmation."""
        changes: Dict[str, Any] = {}
        if status is not None:
            changes["status"] = status
        if reset_progress:
            changes.update(current_layer=0, progress=0.0, time_remaining=0)
        with self._lock:
            prev = self._state
            previous = {k: getattr(prev, k) for k in changes}
            state = replace(prev, last_update=self._next_timestamp(prev), **changes)
            self._commit(state, changes)
            token = Transition(revision=self._revision, previous=previous)
        self._notify(state)
        return state, token

    def rollback(self, token: Transition) -> bool:
        """
        Undo an optimistic transition field by field.

        A field is restored only if nothing has written it since the
        transition. When a merge landed in between, derived signals are
        recomputed from the restored device fields, so the device's ground
        truth always wins. Returns False if the state did not change.
        """
        with self._lock:
            prev = self._state
            restore = {k: v for k, v in token.previous.items()
                       if self._written.get(k) == token.revision}
            state = replace(prev, **restore)
            if self._last_merge > token.revision:
                # Keep derived values a later transition set on top of that merge
                kept = {k: getattr(state, k) for k in DERIVED_FIELDS
                        if self._written.get(k, 0) > self._last_merge}
                state = replace(self._derive(state), **kept)
            if state == prev:
                return False
            changed = [k for k in token.previous if getattr(state, k) != getattr(prev, k)]
            changed += [k for k in DERIVED_FIELDS if getattr(state, k) != getattr(prev, k)]
            state = replace(state, last_update=self._next_timestamp(prev))
            self._commit(state, changed)
        log.debug(f"Rolled back optimistic transition: {sorted(set(changed))}")
        self._notify(state)
        return True

    # ------------------------------------------------------------------
    # Internals (called with the lock held)
    # ------------------------------------------------------------------

    def _derive(self, state: PrinterState) -> PrinterState:
        status = resolve_status(state.machine_status, state.print_status, state.error_number)
        return replace(
            state,
            status=status,
            progress=calculate_progress(state.current_layer, state.total_layers),
            time_remaining=calculate_time_remaining(state.current_ticks, state.total_ticks),
            uv_light_on=infer_uv_light(
                uv_on=state.uv_on,
                uv_led_status=state.uv_led_status,
                status=status,
                machine_status=state.machine_status,
                temp_of_uvled=state.temp_of_uvled,
                threshold=self.uv_temp_threshold,
            ),
        )

    def _next_timestamp(self, prev: PrinterState) -> float:
        now = self._clock()
        return now if prev.last_update is None else max(prev.last_update, now)

    def _commit(self, state: PrinterState, fields: Iterable[str] = ()):
        self._state = state
        self._revision += 1
        for name in fields:
            self._written[name] = self._revision

    def _notify(self, state: PrinterState):
        if self._on_change is None:
            return
        try:
            self._on_change(state)
        except Exception as e:
            log.error(f"State change listener failed: {e}", exc_info=True)
