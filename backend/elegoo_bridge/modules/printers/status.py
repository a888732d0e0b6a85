"""
Status mapping and derived signals.

Pure functions only — no state, no I/O. The state store calls these after
every merge to fill in the fields the printer never reports directly.
"""

from typing import Optional

from elegoo_bridge.modules.printers.adapters.elegoo import SDCPMachineStatus, SDCPPrintStatus


class PrinterStatusName:
    """Canonical semantic status names."""
    IDLE = "idle"
    PRINTING = "printing"
    HOMING = "homing"
    EXPOSING = "exposing"
    DROPPING = "dropping"
    LIFTING = "lifting"
    PAUSING = "pausing"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETE = "complete"
    FILE_CHECKING = "file_checking"
    ERROR = "error"
    UNKNOWN = "unknown"


PRINT_STATUS_MAP = {
    SDCPPrintStatus.IDLE: PrinterStatusName.IDLE,
    SDCPPrintStatus.HOMING: PrinterStatusName.HOMING,
    SDCPPrintStatus.DROPPING: PrinterStatusName.DROPPING,
    SDCPPrintStatus.EXPOSING: PrinterStatusName.EXPOSING,
    SDCPPrintStatus.LIFTING: PrinterStatusName.LIFTING,
    SDCPPrintStatus.PAUSING: PrinterStatusName.PAUSING,
    SDCPPrintStatus.PAUSED: PrinterStatusName.PAUSED,
    SDCPPrintStatus.STOPPING: PrinterStatusName.STOPPING,
    SDCPPrintStatus.STOPPED: PrinterStatusName.STOPPED,
    SDCPPrintStatus.COMPLETE: PrinterStatusName.COMPLETE,
    SDCPPrintStatus.FILE_CHECKING: PrinterStatusName.FILE_CHECKING,
}

MACHINE_STATUS_MAP = {
    SDCPMachineStatus.IDLE: PrinterStatusName.IDLE,
    SDCPMachineStatus.PRINTING: PrinterStatusName.PRINTING,
    SDCPMachineStatus.FILE_TRANSFERRING: PrinterStatusName.FILE_CHECKING,
    SDCPMachineStatus.EXPOSURE_TESTING: PrinterStatusName.EXPOSING,
    SDCPMachineStatus.DEVICE_TESTING: PrinterStatusName.HOMING,
}

# Statuses during which the UV source is expected to be lit
EXPOSURE_LIKE_STATES = frozenset({PrinterStatusName.EXPOSING})

UV_TEMP_THRESHOLD = 30.0


def map_print_status(code) -> str:
    """PrintInfo.Status code → canonical name. Unknown or garbage codes → 'unknown'."""
    try:
        return PRINT_STATUS_MAP.get(int(code), PrinterStatusName.UNKNOWN)
    except (TypeError, ValueError):
        return PrinterStatusName.UNKNOWN


def map_machine_status(code) -> str:
    """CurrentStatus code → canonical name. Unknown or garbage codes → 'unknown'."""
    try:
        return MACHINE_STATUS_MAP.get(int(code), PrinterStatusName.UNKNOWN)
    except (TypeError, ValueError):
        return PrinterStatusName.UNKNOWN


def resolve_status(machine_status: Optional[int], print_status: Optional[int],
                   error_number: Optional[int] = None) -> str:
    """
    Combine machine status and print sub-status into one canonical status.

    While the machine is printing the sub-status is the more specific signal;
    otherwise the machine status wins. A non-zero print error number overrides both.
    """
    if error_number:
        return PrinterStatusName.ERROR
    if machine_status is None:
        return PrinterStatusName.UNKNOWN if print_status is None else map_print_status(print_status)
    if machine_status == SDCPMachineStatus.PRINTING and print_status is not None:
        return map_print_status(print_status)
    return map_machine_status(machine_status)


def calculate_progress(current_layer: Optional[int], total_layers: Optional[int]) -> float:
    """Layer progress in percent; 0 when the layer count is unknown or zero."""
    if not total_layers or total_layers <= 0:
        return 0.0
    return (current_layer or 0) / total_layers * 100


def calculate_time_remaining(current_ticks: Optional[int], total_ticks: Optional[int]) -> int:
    return max(0, (total_ticks or 0) - (current_ticks or 0))


def _flag(value) -> bool:
    return value is True or value == 1


def infer_uv_light(uv_on=None, uv_led_status=None, status: Optional[str] = None,
                   machine_status: Optional[int] = None, temp_of_uvled: Optional[float] = None,
                   threshold: float = UV_TEMP_THRESHOLD) -> bool:
    """
    Infer whether the UV source is lit. First available signal wins:

    1. explicit UVOn flag
    2. explicit UVLEDStatus flag
    3. canonical status is exposure-like
    4. machine is printing and the UV LED is warmer than `threshold`
    """
    if uv_on is not None:
        return _flag(uv_on)
    if uv_led_status is not None:
        return _flag(uv_led_status)
    if status in EXPOSURE_LIKE_STATES:
        return True
    return (
        machine_status == SDCPMachineStatus.PRINTING
        and temp_of_uvled is not None
        and temp_of_uvled > threshold
    )
