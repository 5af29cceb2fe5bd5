"""Unit tests for the bounded newest-first event buffer."""
from datetime import datetime, timedelta, timezone

import pytest

from roundtable.core.events import EventKind, make_event
from roundtable.stream.buffer import MAX_EVENTS, EventBuffer

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _event(i: int):
    return make_event(EventKind.TASK, f"fleet-a.tasks.security.t{i}", {"task_id": f"t{i}"},
                      T0 + timedelta(seconds=i))


def test_default_capacity():
    assert EventBuffer().capacity == MAX_EVENTS == 200


def test_push_is_newest_first():
    buf = EventBuffer(3)
    for i in range(3):
        buf.push(_event(i))
    assert [e.task_id for e in buf.snapshot()] == ["t2", "t1", "t0"]


def test_push_never_exceeds_capacity_and_evicts_oldest():
    buf = EventBuffer(5)
    for i in range(12):
        buf.push(_event(i))
        assert len(buf) <= 5
    assert [e.task_id for e in buf.snapshot()] == ["t11", "t10", "t9", "t8", "t7"]


def test_capacity_200_after_many_pushes():
    buf = EventBuffer()
    for i in range(450):
        buf.push(_event(i))
    snap = buf.snapshot()
    assert len(snap) == 200
    assert snap[0].task_id == "t449"
    assert snap[-1].task_id == "t250"


def test_seed_appends_behind_live_events():
    buf = EventBuffer(4)
    buf.push(_event(100))
    added = buf.seed([_event(3), _event(2), _event(1), _event(0)])
    assert added == 3
    assert [e.task_id for e in buf.snapshot()] == ["t100", "t3", "t2", "t1"]


def test_seed_into_full_buffer_adds_nothing():
    buf = EventBuffer(2)
    buf.push(_event(1))
    buf.push(_event(2))
    assert buf.seed([_event(0)]) == 0
    assert len(buf) == 2


def test_snapshot_is_immutable_copy():
    buf = EventBuffer(3)
    buf.push(_event(1))
    snap = buf.snapshot()
    buf.push(_event(2))
    assert len(snap) == 1
    assert isinstance(snap, tuple)


def test_clear():
    buf = EventBuffer(3)
    buf.push(_event(1))
    buf.clear()
    assert len(buf) == 0


def test_rejects_non_positive_capacity():
    with pytest.raises(ValueError):
        EventBuffer(0)
