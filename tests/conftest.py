"""
elegoo-bridge test suite — shared fixtures.

Everything runs in-process: the printer socket is replaced by
FakeWebSocketApp (see helpers.py) and reconnect timers by FakeTimer, so no
printer or network is needed.

    pip install -e ".[test]"
    pytest tests -v
"""

import sys
from pathlib import Path

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1] / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from helpers import FakeSocketFactory, FakeTimerFactory  # noqa: E402
from elegoo_bridge.core.config import Settings  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return Settings(
        printer_ip="10.0.0.5",
        mainboard_id="",
        auto_connect=False,
        connect_timeout=2.0,
        command_timeout=5.0,
        resync_delay=0.3,
        database_path=str(tmp_path / "bridge.db"),
    )


@pytest.fixture
def sockets():
    return FakeSocketFactory()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def engine(settings, sockets, timers):
    from elegoo_bridge.modules.printers.engine import PrinterEngine

    eng = PrinterEngine(settings, ws_factory=sockets, timer_factory=timers)
    yield eng
    eng.shutdown()
