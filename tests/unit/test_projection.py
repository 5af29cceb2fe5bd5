"""Unit tests for the live projection — step states, chain views, debounced recompute."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from roundtable.core.chains import ChainRun, Phase, Step
from roundtable.core.events import EventKind, make_event
from roundtable.core.projection import (
    LiveProjection,
    NodeState,
    format_duration,
    project_chain,
    step_state,
)
from roundtable.core.scheduler import CoalescingScheduler

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _run(*steps: Step, phase: Phase = Phase.RUNNING, current: str = "") -> ChainRun:
    return ChainRun(name="nightly", namespace="roundtable", phase=phase, current_step=current,
                    steps=list(steps))


# ---------------------------------------------------------------------------
# step_state
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("phase,expected", [
    (Phase.PENDING, NodeState.PENDING),
    (Phase.RUNNING, NodeState.RUNNING),
    (Phase.STEP_RUNNING, NodeState.RUNNING),
    (Phase.COMPLETED, NodeState.COMPLETED),
    (Phase.FAILED, NodeState.FAILED),
    (Phase.SKIPPED, NodeState.SKIPPED),
])
def test_step_state_from_phase(phase, expected):
    assert step_state(Step(name="s", phase=phase)) is expected


def test_current_step_counts_as_running():
    assert step_state(Step(name="s"), current_step="s") is NodeState.RUNNING


def test_terminal_phase_wins_over_current_step():
    assert step_state(Step(name="s", phase=Phase.COMPLETED), current_step="s") is NodeState.COMPLETED
    assert step_state(Step(name="s", phase=Phase.FAILED), current_step="s") is NodeState.FAILED


# ---------------------------------------------------------------------------
# format_duration
# ---------------------------------------------------------------------------

def test_format_duration():
    assert format_duration(None, None) == "—"
    assert format_duration("2026-03-01T11:59:15+00:00", None, NOW) == "45s"
    assert format_duration("2026-03-01T11:50:00+00:00", "2026-03-01T11:52:05+00:00") == "2m 5s"
    assert format_duration("2026-03-01T09:30:00+00:00", None, NOW) == "2h 30m"


# ---------------------------------------------------------------------------
# project_chain
# ---------------------------------------------------------------------------

def test_project_chain_nodes():
    run = _run(
        Step(name="fetch", knight="kay", phase=Phase.COMPLETED),
        Step(name="scan", knight="galahad", depends_on=["fetch"], retry_count=2),
        current="scan",
    )
    view = project_chain(run, NOW)
    assert view.error is None
    fetch, scan = view.nodes
    assert (fetch.column, fetch.row, fetch.state) == (0, 0, NodeState.COMPLETED)
    assert (scan.column, scan.state) == (1, NodeState.RUNNING)
    assert scan.is_current
    assert scan.retried
    assert scan.label == "Pending (retry 2)"
    assert scan.to_dict()["emoji"] == "🛡️"


def test_project_chain_cycle_sets_error():
    run = _run(Step(name="A", depends_on=["B"]), Step(name="B", depends_on=["A"]))
    view = project_chain(run, NOW)
    assert view.nodes == []
    assert view.layout is None
    assert "Cyclic dependency" in view.error
    assert view.to_dict()["error"] == view.error


# ---------------------------------------------------------------------------
# Coalescing scheduler
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_scheduler_coalesces_bursts():
    calls = []
    scheduler = CoalescingScheduler()
    for _ in range(10):
        scheduler.schedule(lambda: calls.append(1), 0.02)
    assert scheduler.pending
    await asyncio.sleep(0.08)
    assert calls == [1]
    assert not scheduler.pending


@pytest.mark.asyncio
async def test_scheduler_close_cancels_pending():
    calls = []
    scheduler = CoalescingScheduler()
    scheduler.schedule(lambda: calls.append(1), 0.02)
    scheduler.close()
    scheduler.schedule(lambda: calls.append(2), 0.01)
    await asyncio.sleep(0.05)
    assert calls == []


# ---------------------------------------------------------------------------
# LiveProjection
# ---------------------------------------------------------------------------

class FakeSource:
    def __init__(self):
        self.events = ()
        self.connected = True
        self.listeners = []

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def emit(self, event):
        self.events = (event,) + self.events
        for listener in list(self.listeners):
            listener((event,))


def _task(i: int):
    return make_event(EventKind.TASK, f"fleet-a.tasks.security.t{i}", {"task_id": f"t{i}"},
                      NOW - timedelta(seconds=i))


@pytest.mark.asyncio
async def test_burst_of_events_recomputes_once():
    source = FakeSource()
    projection = LiveProjection(source, debounce_ms=20, clock=lambda: NOW)
    states = []
    projection.subscribe(states.append)
    for i in range(25):
        source.emit(_task(i))
    assert projection.recomputes == 0
    await asyncio.sleep(0.08)
    assert projection.recomputes == 1
    assert states[-1].total_events == 25
    assert states[-1].connected is True
    assert states[-1].activity["galahad"].recent_tasks == 25
    projection.close()
    assert source.listeners == []


@pytest.mark.asyncio
async def test_update_chains_recomputes_immediately():
    projection = LiveProjection(debounce_ms=50, clock=lambda: NOW)
    projection.set_events([_task(1)])
    projection.update_chains([
        _run(Step(name="a")),
        _run(Step(name="x", depends_on=["x"]), phase=Phase.FAILED),
    ])
    assert projection.recomputes == 1
    assert not projection.pending
    ok, broken = projection.state.chains
    assert ok.error is None
    assert broken.error
    assert [c.run.name for c in projection.state.running_chains] == ["nightly"]
    assert projection.state.to_dict()["totalEvents"] == 1
    projection.close()


@pytest.mark.asyncio
async def test_close_drops_pending_recompute():
    projection = LiveProjection(debounce_ms=20, clock=lambda: NOW)
    projection.set_events([_task(1)])
    projection.close()
    await asyncio.sleep(0.05)
    assert projection.recomputes == 0


@pytest.mark.asyncio
async def test_update_chains_after_close_is_ignored():
    projection = LiveProjection(debounce_ms=20, clock=lambda: NOW)
    projection.close()
    projection.update_chains([_run(Step(name="a"))])
    projection.update_statuses({"kay": "online"})
    await asyncio.sleep(0.05)
    assert projection.recomputes == 0
    assert projection.state.chains == []
