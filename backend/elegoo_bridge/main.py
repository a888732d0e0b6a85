"""
elegoo-bridge entry point.

    python -m elegoo_bridge.main
    uvicorn elegoo_bridge.main:app --host 0.0.0.0 --port 3000
"""

import logging

import uvicorn

from elegoo_bridge.core.config import settings
from elegoo_bridge.core.app import create_app

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(message)s",
)
log = logging.getLogger("elegoo_bridge")

app = create_app(settings=settings)


def main():
    log.info(f"Starting elegoo-bridge on {settings.host}:{settings.port}")
    if settings.printer_ip:
        log.info(f"Printer: {settings.printer_ip}:{settings.printer_port} (auto-connect: {settings.auto_connect})")
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
