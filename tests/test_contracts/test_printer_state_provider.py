"""
Contract tests — PrinterStateProvider interface.

Verifies:
1. The PrinterStateProvider ABC defines the correct abstract methods.
2. A concrete implementation must implement all three methods.
3. PrinterEngine satisfies the contract and its snapshots have the documented shape.

These tests run without a printer: pytest tests/test_contracts/test_printer_state_provider.py -v
"""

import sys
import dataclasses
from pathlib import Path

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[2] / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from elegoo_bridge.core.interfaces.printer_state import PrinterStateProvider  # noqa: E402
from elegoo_bridge.modules.printers.state_store import PrinterState  # noqa: E402
from elegoo_bridge.modules.printers.broadcast import Subscription  # noqa: E402


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _ConcreteProvider(PrinterStateProvider):
    """Minimal concrete implementation used to verify the interface contract."""

    def __init__(self):
        self.state = PrinterState()

    def get_snapshot(self) -> PrinterState:
        return self.state

    def subscribe(self) -> Subscription:
        sub = Subscription()
        sub.deliver(self.state)
        return sub

    def is_connected(self) -> bool:
        return False


# ---------------------------------------------------------------------------
# Interface contract
# ---------------------------------------------------------------------------

class TestPrinterStateProviderABC:
    """The ABC defines exactly the methods consumers depend on."""

    def test_provider_abc_is_abstract(self):
        """Instantiating the ABC directly must raise TypeError."""
        with pytest.raises(TypeError):
            PrinterStateProvider()  # type: ignore[abstract]

    def test_all_abstract_methods_defined(self):
        expected = {"get_snapshot", "subscribe", "is_connected"}
        actual = set(PrinterStateProvider.__abstractmethods__)
        assert actual == expected, (
            f"PrinterStateProvider abstract methods changed.\n"
            f"  Expected: {sorted(expected)}\n"
            f"  Got:      {sorted(actual)}"
        )

    def test_incomplete_implementation_raises(self):
        """A class that does not implement all methods cannot be instantiated."""
        class _Partial(PrinterStateProvider):
            def get_snapshot(self):
                return PrinterState()
            # Missing: subscribe, is_connected

        with pytest.raises(TypeError):
            _Partial()  # type: ignore[abstract]

    def test_complete_implementation_instantiates(self):
        provider = _ConcreteProvider()
        assert isinstance(provider, PrinterStateProvider)


# ---------------------------------------------------------------------------
# Snapshot shape
# ---------------------------------------------------------------------------

class TestSnapshotShape:
    """Snapshots are immutable and serialize to the documented keys."""

    REQUIRED_KEYS = {
        "status", "progress", "current_layer", "total_layers", "time_remaining",
        "temp_of_uvled", "temp_of_box", "uv_light_on", "mainboard_id", "last_update",
    }

    def test_snapshot_is_frozen(self):
        state = _ConcreteProvider().get_snapshot()
        with pytest.raises(dataclasses.FrozenInstanceError):
            state.status = "printing"  # type: ignore[misc]

    def test_to_dict_has_required_keys(self):
        data = _ConcreteProvider().get_snapshot().to_dict()
        missing = self.REQUIRED_KEYS - set(data.keys())
        assert not missing, f"PrinterState.to_dict() missing keys: {missing}"

    def test_initial_status_is_unknown(self):
        state = _ConcreteProvider().get_snapshot()
        assert state.status == "unknown"
        assert state.uv_light_on is False

    def test_subscription_starts_with_current_snapshot(self):
        provider = _ConcreteProvider()
        assert provider.subscribe().get(timeout=0) is provider.get_snapshot()


# ---------------------------------------------------------------------------
# Engine integration
# ---------------------------------------------------------------------------

class TestEngineIntegration:
    """The printers module declares and provides PrinterStateProvider."""

    def test_printers_module_declares_implements_provider(self):
        import elegoo_bridge.modules.printers as printers_mod
        assert "PrinterStateProvider" in printers_mod.IMPLEMENTS, (
            "modules.printers.IMPLEMENTS must contain 'PrinterStateProvider'"
        )

    def test_engine_is_provider(self, engine):
        assert isinstance(engine, PrinterStateProvider)
        assert isinstance(engine.get_snapshot(), PrinterState)
        assert engine.is_connected() is False

    def test_engine_subscription_delivers_snapshot(self, engine):
        sub = engine.subscribe()
        assert sub.get(timeout=1) is engine.get_snapshot()
