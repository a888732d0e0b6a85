"""
Printers module — SDCP device link, canonical state and control commands.
"""

MODULE_ID = "printers"
MODULE_DESCRIPTION = "Elegoo SDCP link, canonical printer state, print controls"

PUBLISHES = [
    "printer.connected",
    "printer.disconnected",
    "printer.reconnecting",
    "printer.state_changed",
    "command.sent",
    "command.resolved",
    "frame.malformed",
]

IMPLEMENTS = ["PrinterStateProvider"]


def register(app) -> None:
    """Register the printers module routes."""
    from elegoo_bridge.modules.printers import routes

    app.include_router(routes.router, prefix="/api")
