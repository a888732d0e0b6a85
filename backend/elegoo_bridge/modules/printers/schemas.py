"""
modules/printers/schemas.py — Pydantic schemas for the printer API.
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class ConnectRequest(BaseModel):
    # Falls back to the configured PRINTER_IP when omitted
    printer_ip: Optional[str] = None


class StartPrintRequest(BaseModel):
    filename: str = Field(..., min_length=1)
    start_layer: int = Field(0, ge=0)


class CommandResponse(BaseModel):
    success: bool = True
    message: str


class StatusResponse(BaseModel):
    connected: bool
    printer_ip: str
    connection_state: str
    printer_data: Dict[str, Any]
