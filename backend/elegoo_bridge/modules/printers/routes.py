"""Printer routes — connection, status, print controls (start / pause / resume / stop), settings blob."""

import asyncio
import logging
from concurrent.futures import Future
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from starlette.concurrency import run_in_threadpool

from elegoo_bridge.core.dependencies import get_engine
from elegoo_bridge.core.errors import (
    CommandRejected, CommandTimeout, DeviceUnavailable, PrinterConnectionError,
)
from elegoo_bridge.modules.printers.schemas import (
    ConnectRequest, StartPrintRequest, CommandResponse, StatusResponse,
)

log = logging.getLogger(__name__)
router = APIRouter()


async def _await_command(future: Future, message: str) -> Dict[str, Any]:
    """Wait for a command future and translate its failure into an HTTP status."""
    try:
        await asyncio.wrap_future(future)
    except CommandRejected as e:
        raise HTTPException(status_code=409, detail=str(e))
    except CommandTimeout as e:
        raise HTTPException(status_code=504, detail=str(e))
    except DeviceUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"success": True, "message": message}


# ====================================================================
# Connection
# ====================================================================

@router.post("/connect", tags=["Printer"], response_model=CommandResponse)
async def connect_printer(body: Optional[ConnectRequest] = None, engine=Depends(get_engine)):
    """Connect to the printer at printer_ip (or the configured address)."""
    address = (body.printer_ip if body else None) or engine.printer_ip
    if not address:
        raise HTTPException(status_code=400, detail="printer_ip is required")
    try:
        await run_in_threadpool(engine.connect, address)
    except PrinterConnectionError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"success": True, "message": f"Connected to {address}"}


@router.post("/disconnect", tags=["Printer"], response_model=CommandResponse)
async def disconnect_printer(engine=Depends(get_engine)):
    await run_in_threadpool(engine.disconnect)
    return {"success": True, "message": "Disconnected"}


@router.get("/status", tags=["Printer"], response_model=StatusResponse)
async def printer_status(engine=Depends(get_engine)):
    """Current canonical state plus link status."""
    return engine.status_payload()


# ====================================================================
# Print Commands (Start / Pause / Resume / Stop)
# ====================================================================

@router.post("/print/start", tags=["Printer"], response_model=CommandResponse)
async def start_print(body: StartPrintRequest, engine=Depends(get_engine)):
    """Start printing a file already stored on the printer."""
    return await _await_command(engine.start_print(body.filename, body.start_layer),
                                f"Print started: {body.filename}")


@router.post("/print/pause", tags=["Printer"], response_model=CommandResponse)
async def pause_print(engine=Depends(get_engine)):
    return await _await_command(engine.pause(), "Print paused")


@router.post("/print/resume", tags=["Printer"], response_model=CommandResponse)
async def resume_print(engine=Depends(get_engine)):
    return await _await_command(engine.resume(), "Print resumed")


@router.post("/print/stop", tags=["Printer"], response_model=CommandResponse)
async def stop_print(engine=Depends(get_engine)):
    """Stop the current print. Progress is reset."""
    return await _await_command(engine.stop(), "Print stopped")


# ====================================================================
# Settings blob
# ====================================================================

@router.get("/settings", tags=["Settings"])
async def get_settings(engine=Depends(get_engine)):
    return engine.load_settings()


@router.put("/settings", tags=["Settings"])
async def put_settings(body: Dict[str, Any] = Body(...), engine=Depends(get_engine)):
    """Replace the stored settings blob. Contents are not interpreted."""
    return engine.save_settings(body)
