"""
Elegoo SDCP frame codec — builds request frames and classifies inbound frames.

Supports: Saturn / Mars series (MSLA resin)
Protocol: SDCP v3.0.0 (Smart Device Control Protocol)
Transport: WebSocket (ws://printer_ip:3030/websocket)
Auth: None required

Architecture note:
  This is the codec only (no I/O). The connection supervisor is
  monitors/elegoo_monitor.py, which hands every received text frame to
  parse_frame() and routes the tagged result through one dispatcher.

SDCP Status Frame (from WebSocket):
{
    "Status": {
        "CurrentStatus": [1],
        "PrintScreen": 3721,
        "ReleaseFilm": 812,
        "TempOfUVLED": 45.2,
        "TimeLapseStatus": 0,
        "TempOfBox": 26.4,
        "TempTargetBox": 30,
        "PrintInfo": {
            "Status": 3,
            "CurrentLayer": 25,
            "TotalLayer": 100,
            "CurrentTicks": 500,
            "TotalTicks": 2000,
            "Filename": "model.ctb",
            "ErrorNumber": 0,
            "TaskId": "..."
        }
    },
    "MainboardID": "...",
    "TimeStamp": 1752339395,
    "Topic": "sdcp/status/{MainboardID}"
}

SDCP Command Result Frame:
{
    "Id": "...",
    "Data": {"Cmd": 5, "Result": 0, "ErrorCode": 0, "RequestID": "...", "MainboardID": "..."},
    "Topic": "sdcp/response/{MainboardID}"
}
"""

import json
import time
import uuid
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Union
from enum import IntEnum

from elegoo_bridge.core.errors import MalformedMessage

log = logging.getLogger(__name__)

STATUS_TOPIC = "sdcp/status/"
RESPONSE_TOPIC = "sdcp/response/"
ATTRIBUTES_TOPIC = "sdcp/attributes/"
REQUEST_TOPIC = "sdcp/request/"

RESULT_SUCCESS = 0


class SDCPMachineStatus(IntEnum):
    """SDCP CurrentStatus values (resin)."""
    IDLE = 0
    PRINTING = 1
    FILE_TRANSFERRING = 2
    EXPOSURE_TESTING = 3
    DEVICE_TESTING = 4


class SDCPPrintStatus(IntEnum):
    """SDCP PrintInfo.Status values (resin)."""
    IDLE = 0
    HOMING = 1
    DROPPING = 2
    EXPOSING = 3
    LIFTING = 4
    PAUSING = 5
    PAUSED = 6
    STOPPING = 7
    STOPPED = 8
    COMPLETE = 9
    FILE_CHECKING = 10


class SDCPCommand(IntEnum):
    """Command codes understood by the printer firmware."""
    STATUS_REQUEST = 0
    STOP_PRINT = 4
    PAUSE_PRINT = 5
    RESUME_PRINT = 6
    START_PRINT = 128


# ------------------------------------------------------------------
# Tagged inbound frames
# ------------------------------------------------------------------

@dataclass(frozen=True)
class StatusFrame:
    """sdcp/status — raw telemetry to merge into canonical state."""
    status: Dict[str, Any]
    mainboard_id: Optional[str] = None
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class ResultFrame:
    """sdcp/response — outcome of a previously sent command."""
    cmd: int
    result: int
    error_code: Optional[int] = None
    request_id: Optional[str] = None
    mainboard_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.result == RESULT_SUCCESS


@dataclass(frozen=True)
class AttributesFrame:
    """sdcp/attributes — identity of the device (model, firmware)."""
    attributes: Dict[str, Any]
    mainboard_id: Optional[str] = None


@dataclass(frozen=True)
class NoticeFrame:
    """Any other well-formed frame (sdcp/notice, sdcp/error, ...)."""
    topic: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MalformedFrame:
    reason: str
    raw: str = ""


Frame = Union[StatusFrame, ResultFrame, AttributesFrame, NoticeFrame, MalformedFrame]


# ------------------------------------------------------------------
# Outbound
# ------------------------------------------------------------------

class RequestIdGenerator:
    """
    Time-ordered correlation ids.

    Each id is the current epoch time in milliseconds, bumped past the last
    issued value when two requests land in the same millisecond, rendered as a
    16-digit zero-padded decimal string.
    """

    WIDTH = 16

    def __init__(self, clock=time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            now_ms = int(self._clock() * 1000)
            self._last = max(now_ms, self._last + 1)
            return str(self._last).zfill(self.WIDTH)


def build_request(cmd: int, data: Optional[Dict] = None, *, request_id: str,
                  mainboard_id: str = "", timestamp: Optional[int] = None) -> Dict[str, Any]:
    """Build an SDCP request frame."""
    return {
        "Id": uuid.uuid4().hex,
        "Data": {
            "Cmd": int(cmd),
            "Data": data or {},
            "RequestID": request_id,
            "MainboardID": mainboard_id,
            "TimeStamp": int(time.time()) if timestamp is None else timestamp,
            "From": 0,
        },
        "Topic": f"{REQUEST_TOPIC}{mainboard_id}",
    }


def encode_frame(frame: Dict[str, Any]) -> str:
    return json.dumps(frame)


# ------------------------------------------------------------------
# Inbound
# ------------------------------------------------------------------

def decode_frame(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Deserialize one frame. Raises MalformedMessage."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"Frame is not UTF-8: {e}") from e
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedMessage(f"Frame is not JSON: {e}") from e
    if not isinstance(message, dict):
        raise MalformedMessage(f"Frame is a JSON {type(message).__name__}, expected an object")
    return message


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedMessage(f"{name} must be a number, got {value!r}")
    return int(value)


def classify(message: Dict[str, Any]) -> Frame:
    """Tag a decoded frame. Raises MalformedMessage for frames missing required fields."""
    topic = message.get("Topic") or ""
    if not isinstance(topic, str):
        raise MalformedMessage(f"Topic must be a string, got {topic!r}")
    data = message.get("Data")
    mainboard_id = message.get("MainboardID")

    # Status update
    if STATUS_TOPIC in topic or isinstance(message.get("Status"), dict):
        s = message.get("Status")
        if s is None and isinstance(data, dict):
            # Some firmware nests under Data.Status
            s = data.get("Status")
        if not isinstance(s, dict):
            raise MalformedMessage("Status frame without a Status object")
        if mainboard_id is None and isinstance(data, dict):
            mainboard_id = data.get("MainboardID")
        return StatusFrame(status=s, mainboard_id=mainboard_id, timestamp=message.get("TimeStamp"))

    # Command result
    if RESPONSE_TOPIC in topic or (not topic and isinstance(data, dict) and "Cmd" in data):
        if not isinstance(data, dict):
            raise MalformedMessage("Response frame without a Data object")
        if "Cmd" not in data:
            raise MalformedMessage("Response frame without Data.Cmd")
        cmd = _as_int(data["Cmd"], "Data.Cmd")

        result = data.get("Result")
        if result is None and isinstance(data.get("Data"), dict):
            # SDCP v3 acknowledges with Data.Data.Ack
            result = data["Data"].get("Ack")
        if result is None:
            raise MalformedMessage(f"Response frame for Cmd {cmd} without Result")
        result = _as_int(result, "Data.Result")

        error_code = data.get("ErrorCode")
        if error_code is not None:
            error_code = _as_int(error_code, "Data.ErrorCode")
        request_id = data.get("RequestID")
        return ResultFrame(
            cmd=cmd,
            result=result,
            error_code=error_code,
            request_id=str(request_id) if request_id else None,
            mainboard_id=data.get("MainboardID", mainboard_id),
        )

    # Device attributes
    if ATTRIBUTES_TOPIC in topic:
        attrs = message.get("Attributes")
        if attrs is None and isinstance(data, dict):
            attrs = data.get("Attributes", data)
        if not isinstance(attrs, dict):
            raise MalformedMessage("Attributes frame without an Attributes object")
        return AttributesFrame(attributes=attrs, mainboard_id=mainboard_id or attrs.get("MainboardID"))

    if not topic:
        raise MalformedMessage("Frame has no Topic and no recognizable payload")
    return NoticeFrame(topic=topic, data=data if isinstance(data, dict) else {})


def parse_frame(raw: Union[str, bytes]) -> Frame:
    """Decode and classify one frame. Never raises; failures become MalformedFrame."""
    try:
        return classify(decode_frame(raw))
    except MalformedMessage as e:
        text = raw if isinstance(raw, str) else repr(raw)
        return MalformedFrame(reason=str(e), raw=text[:500])
