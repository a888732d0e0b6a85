# core/app.py — App factory
#
# Creates and configures the FastAPI application around one PrinterEngine.
# The engine is started in the lifespan and shut down with the app.
#
# main.py becomes: from elegoo_bridge.core.app import create_app; app = create_app()

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from elegoo_bridge import __version__
from elegoo_bridge.core.config import Settings, settings as default_settings
from elegoo_bridge.core.errors import PrinterConnectionError

log = logging.getLogger(__name__)

WS_RECEIVE_TIMEOUT = 30


async def _push_states(ws: WebSocket, subscription, engine):
    """Forward every snapshot the hub delivers to one WebSocket client."""
    try:
        async for state in subscription:
            await ws.send_json({"type": "status", "data": engine.status_payload(state)})
    except (WebSocketDisconnect, RuntimeError) as e:
        # Client went away between deliveries; the receive loop cleans up
        log.debug(f"WebSocket push stopped: {e}")


async def _handle_client_message(ws: WebSocket, data: str, engine):
    if data == "ping":
        await ws.send_text("pong")
        return
    try:
        message = json.loads(data)
    except json.JSONDecodeError:
        log.debug(f"Ignoring non-JSON WebSocket message: {data[:100]!r}")
        return
    if not isinstance(message, dict):
        return

    if message.get("type") == "connect":
        address = message.get("printer_ip") or engine.printer_ip
        try:
            await run_in_threadpool(engine.connect, address)
        except PrinterConnectionError as e:
            await ws.send_json({"type": "error", "message": str(e)})


def create_app(engine=None, settings: Optional[Settings] = None) -> FastAPI:
    """Create the elegoo-bridge FastAPI application.

    1. Build (or adopt) the PrinterEngine and put it on app.state.
    2. Lifespan starts the engine's threads (and auto-connect), and shuts it down on exit.
    3. Attach CORS, module routes, /, /health and the /ws push channel.
    """
    settings = settings or default_settings
    if engine is None:
        from elegoo_bridge.modules.printers.engine import PrinterEngine
        engine = PrinterEngine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(engine.start)
        log.info("Printer engine started")
        yield
        await run_in_threadpool(engine.shutdown)

    app = FastAPI(
        title="elegoo-bridge",
        description="Real-time monitoring and control bridge for Elegoo SDCP resin printers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=bool(origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Service descriptor / health
    # -----------------------------------------------------------------------
    @app.get("/", tags=["System"])
    async def root():
        return {
            "service": "elegoo-bridge",
            "version": __version__,
            "endpoints": {
                "status": "GET /api/status",
                "connect": "POST /api/connect",
                "disconnect": "POST /api/disconnect",
                "print": "POST /api/print/{start,pause,resume,stop}",
                "settings": "GET|PUT /api/settings",
                "websocket": "/ws",
            },
        }

    @app.get("/health", tags=["System"], include_in_schema=False)
    async def health():
        return {
            "status": "ok",
            "connected": engine.is_connected(),
            "connection_state": engine.connection_state.value,
        }

    # -----------------------------------------------------------------------
    # WebSocket endpoint
    # -----------------------------------------------------------------------
    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        """
        Push channel for canonical printer state.

        Sends {"type": "status", "data": {...}} on every state change and on
        the broadcast interval. Accepts "ping" (answered with "pong") and
        {"type": "connect", "printer_ip": "..."}.
        """
        from elegoo_bridge.modules.printers.broadcast import AsyncSubscription

        await ws.accept()
        subscription = engine.subscribe(AsyncSubscription(asyncio.get_running_loop()))
        pusher = asyncio.create_task(_push_states(ws, subscription, engine))
        try:
            while True:
                try:
                    data = await asyncio.wait_for(ws.receive_text(), timeout=WS_RECEIVE_TIMEOUT)
                except asyncio.TimeoutError:
                    await ws.send_json({"type": "ping"})
                    continue
                await _handle_client_message(ws, data, engine)
        except WebSocketDisconnect:
            pass
        finally:
            pusher.cancel()
            with suppress(asyncio.CancelledError):
                await pusher
            engine.unsubscribe(subscription)

    from elegoo_bridge.modules import printers
    printers.register(app)

    return app
