"""
Command correlator — matching results, timeouts, rollback, follow-ups, link loss.
"""

import pytest

from elegoo_bridge.core import events
from elegoo_bridge.core.errors import CommandRejected, CommandTimeout, DeviceUnavailable
from elegoo_bridge.core.event_bus import InMemoryEventBus
from elegoo_bridge.modules.printers.adapters.elegoo import SDCPCommand, ResultFrame, RequestIdGenerator
from elegoo_bridge.modules.printers.commands import CommandCorrelator
from elegoo_bridge.modules.printers.state_store import CanonicalStateStore

from helpers import FakeClock


PRINTING = {
    "CurrentStatus": [1],
    "PrintInfo": {"Status": 3, "CurrentLayer": 40, "TotalLayer": 80, "CurrentTicks": 100, "TotalTicks": 300},
}


class _Link:
    """Records frames; can be switched off to simulate a dead socket."""

    def __init__(self):
        self.frames = []
        self.up = True

    def __call__(self, frame):
        if not self.up:
            raise DeviceUnavailable("Printer is not connected")
        self.frames.append(frame)

    @property
    def commands(self):
        return [f["Data"]["Cmd"] for f in self.frames]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def link():
    return _Link()


@pytest.fixture
def store():
    s = CanonicalStateStore()
    s.merge(PRINTING)
    return s


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def correlator(store, link, clock, bus):
    return CommandCorrelator(
        store, send_frame=link, mainboard_id=lambda: "MB1",
        timeout=5.0, resync_delay=0.3, bus=bus, clock=clock,
        id_generator=RequestIdGenerator(clock=lambda: 1752339395.0),
    )


def _result(cmd, result=0, request_id=None, error_code=None):
    return ResultFrame(cmd=cmd, result=result, request_id=request_id, error_code=error_code)


# ---------------------------------------------------------------------------
# Send
# ---------------------------------------------------------------------------

class TestSend:
    def test_frame_handed_to_link(self, correlator, link):
        correlator.send(SDCPCommand.PAUSE_PRINT)
        frame = link.frames[0]
        assert frame["Data"]["Cmd"] == 5
        assert frame["Data"]["MainboardID"] == "MB1"
        assert frame["Topic"] == "sdcp/request/MB1"
        assert len(frame["Data"]["RequestID"]) == 16

    def test_pending_recorded_with_expiry(self, correlator, clock):
        correlator.send(SDCPCommand.PAUSE_PRINT)
        [pending] = correlator.pending
        assert pending.cmd == 5
        assert pending.expires_at == clock.now + 5.0

    @pytest.mark.parametrize("cmd,status", [
        (SDCPCommand.PAUSE_PRINT, "paused"),
        (SDCPCommand.RESUME_PRINT, "printing"),
        (SDCPCommand.STOP_PRINT, "idle"),
    ])
    def test_optimistic_transition(self, correlator, store, cmd, status):
        correlator.send(cmd)
        assert store.snapshot().status == status

    def test_stop_resets_progress_optimistically(self, correlator, store):
        correlator.send(SDCPCommand.STOP_PRINT)
        state = store.snapshot()
        assert (state.current_layer, state.progress, state.time_remaining) == (0, 0.0, 0)

    def test_start_print_has_no_optimistic_transition(self, correlator, store):
        before = store.snapshot().status
        correlator.send(SDCPCommand.START_PRINT, {"Filename": "a.ctb", "StartLayer": 0})
        assert store.snapshot().status == before

    def test_resync_follow_up_scheduled(self, correlator, clock):
        correlator.send(SDCPCommand.PAUSE_PRINT)
        [follow_up] = correlator.followups
        assert follow_up.action == "refresh"
        assert follow_up.due_at == pytest.approx(clock.now + 0.3)

    def test_dead_link_fails_future_and_rolls_back(self, correlator, store, link):
        link.up = False
        future = correlator.send(SDCPCommand.PAUSE_PRINT)
        assert isinstance(future.exception(timeout=0), DeviceUnavailable)
        assert correlator.pending == []
        assert store.snapshot().status == "exposing"

    def test_sent_event_published(self, correlator, bus):
        seen = []
        bus.subscribe(events.COMMAND_SENT, seen.append)
        correlator.send(SDCPCommand.PAUSE_PRINT)
        assert seen[0].data["cmd"] == 5


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class TestResults:
    def test_matching_success_resolves_and_clears(self, correlator):
        future = correlator.send(SDCPCommand.PAUSE_PRINT)
        request_id = correlator.pending[0].request_id
        assert correlator.on_result(_result(5, request_id=request_id)) is True
        assert future.result(timeout=0).success
        assert correlator.pending == []

    def test_success_confirms_transition(self, correlator, store):
        correlator.send(SDCPCommand.STOP_PRINT)
        correlator.on_result(_result(4))
        state = store.snapshot()
        assert state.status == "idle"
        assert state.progress == 0

    def test_match_without_request_id_takes_oldest_same_cmd(self, correlator, clock):
        first = correlator.send(SDCPCommand.PAUSE_PRINT)
        clock.advance(1)
        second = correlator.send(SDCPCommand.PAUSE_PRINT)
        correlator.on_result(_result(5))
        assert first.done()
        assert not second.done()

    def test_result_for_other_cmd_does_not_match(self, correlator):
        future = correlator.send(SDCPCommand.PAUSE_PRINT)
        assert correlator.on_result(_result(6)) is False
        assert not future.done()

    def test_unknown_request_id_falls_back_to_cmd(self, correlator):
        future = correlator.send(SDCPCommand.PAUSE_PRINT)
        correlator.on_result(_result(5, request_id="9999999999999999"))
        assert future.done()

    def test_rejection_rolls_back_and_fails(self, correlator, store, clock):
        future = correlator.send(SDCPCommand.PAUSE_PRINT)
        assert store.snapshot().status == "paused"
        correlator.on_result(_result(5, result=1, error_code=3))

        exc = future.exception(timeout=0)
        assert isinstance(exc, CommandRejected)
        assert exc.cmd == 5
        assert exc.error_code == 3
        assert store.snapshot().status == "exposing"

    def test_rejected_stop_after_partial_merge_keeps_progress(self, correlator, store):
        correlator.send(SDCPCommand.STOP_PRINT)
        store.merge({"TempOfUVLED": 41})
        correlator.on_result(_result(4, result=1))

        state = store.snapshot()
        assert state.current_layer == 40
        assert state.progress == 50.0
        assert state.time_remaining == 200
        assert state.status == "exposing"

    def test_rejection_schedules_immediate_refresh(self, correlator, link, clock):
        correlator.send(SDCPCommand.PAUSE_PRINT)
        correlator.on_result(_result(5, result=1))
        assert any(f.due_at <= clock.now for f in correlator.followups)
        correlator.sweep()
        assert link.commands[-1] == SDCPCommand.STATUS_REQUEST

    def test_exactly_one_outcome(self, correlator, clock):
        future = correlator.send(SDCPCommand.PAUSE_PRINT)
        correlator.on_result(_result(5))
        clock.advance(10)
        assert correlator.sweep() == 0
        assert correlator.on_result(_result(5, result=1)) is False
        assert future.result(timeout=0).success

    def test_resolved_event_published(self, correlator, bus):
        seen = []
        bus.subscribe(events.COMMAND_RESOLVED, seen.append)
        correlator.send(SDCPCommand.PAUSE_PRINT)
        correlator.on_result(_result(5, result=1))
        assert seen[0].data["outcome"] == "rejected"

    def test_cancelled_future_is_tolerated(self, correlator):
        future = correlator.send(SDCPCommand.PAUSE_PRINT)
        future.cancel()
        assert correlator.on_result(_result(5)) is True

    def test_cancel_racing_the_result_is_tolerated(self, correlator):
        future = correlator.send(SDCPCommand.PAUSE_PRINT)
        future.cancel()
        # cancelled between the check and set_result
        future.cancelled = lambda: False
        assert correlator.on_result(_result(5)) is True
        assert correlator.pending == []

    def test_cancel_racing_a_timeout_is_tolerated(self, correlator, clock):
        future = correlator.send(SDCPCommand.PAUSE_PRINT)
        future.cancel()
        future.cancelled = lambda: False
        clock.advance(10)
        assert correlator.sweep() == 1


# ---------------------------------------------------------------------------
# Sweep: timeouts and follow-ups
# ---------------------------------------------------------------------------

class TestSweep:
    def test_timeout_after_deadline(self, correlator, clock, store):
        future = correlator.send(SDCPCommand.PAUSE_PRINT)
        clock.advance(4.9)
        assert correlator.sweep() == 0
        clock.advance(0.2)
        assert correlator.sweep() == 1

        exc = future.exception(timeout=0)
        assert isinstance(exc, CommandTimeout)
        assert exc.cmd == 5
        assert correlator.pending == []
        assert store.snapshot().status == "exposing"

    def test_timed_out_stop_after_partial_merge_keeps_progress(self, correlator, clock, store):
        correlator.send(SDCPCommand.STOP_PRINT)
        store.merge({"TempOfBox": 29})
        clock.advance(5.1)
        assert correlator.sweep() == 1
        assert store.snapshot().current_layer == 40
        assert store.snapshot().progress == 50.0

    def test_resync_runs_after_delay(self, correlator, link, clock):
        correlator.send(SDCPCommand.RESUME_PRINT)
        correlator.sweep()
        assert link.commands == [6]
        clock.advance(0.3)
        correlator.sweep()
        assert link.commands == [6, 0]
        assert correlator.followups == []

    def test_follow_ups_are_deduplicated(self, correlator):
        correlator.schedule_refresh(0.0)
        correlator.schedule_refresh(0.3)
        assert len(correlator.followups) == 1

    def test_refresh_is_not_tracked(self, correlator, link):
        assert correlator.request_status() is True
        assert link.commands == [0]
        assert correlator.pending == []

    def test_refresh_on_dead_link(self, correlator, link):
        link.up = False
        assert correlator.request_status() is False


# ---------------------------------------------------------------------------
# Link loss
# ---------------------------------------------------------------------------

class TestFailAll:
    def test_two_pending_fail_unavailable(self, correlator):
        pause = correlator.send(SDCPCommand.PAUSE_PRINT)
        stop = correlator.send(SDCPCommand.STOP_PRINT)
        assert correlator.fail_all() == 2
        assert isinstance(pause.exception(timeout=0), DeviceUnavailable)
        assert isinstance(stop.exception(timeout=0), DeviceUnavailable)
        assert correlator.pending == []
        assert correlator.followups == []

    def test_nothing_pending(self, correlator):
        assert correlator.fail_all() == 0


class TestSweepThread:
    def test_start_stop(self, correlator):
        correlator.start(interval=0.01)
        correlator.start(interval=0.01)
        correlator.stop()
        correlator.stop()
