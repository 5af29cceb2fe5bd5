"""Fleet activity aggregation over the event buffer.

All functions take the buffer as a newest-first sequence (the stream client's
snapshot) and never mutate it. Events are replayed oldest-first so a Result
only clears a Task that was observed before it.
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

from roundtable.core.events import Event, EventKind, ResultPayload
from roundtable.core.knights import HUB, HUB_SENDERS, KNIGHT_NAMES, knight_for_domain

ACTIVITY_WINDOW = timedelta(minutes=30)
BUSY_WINDOW = timedelta(seconds=60)
SPARKLINE_BUCKETS = 5
HEAT_SATURATION_TASKS = 10    # this many recent tasks = fully hot
BUSY_HEAT_FLOOR = 0.5         # busy implies at least warm
FLOW_EVENT_LIMIT = 50         # flows look at the newest N events only
FLOW_SATURATION = 5
TOP_KNIGHTS = 5


@dataclass
class ActivityState:
    knight: str
    status: str = "offline"
    recent_tasks: int = 0
    recent_results: int = 0
    last_active: datetime | None = None
    sparkline: list[float] = field(default_factory=lambda: [0.0] * SPARKLINE_BUCKETS)
    busy: bool = False
    heat: float = 0.0
    pending: dict[str, datetime] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict:
        return {
            "knight": self.knight,
            "status": self.status,
            "recentTasks": self.recent_tasks,
            "recentResults": self.recent_results,
            "lastActive": self.last_active.isoformat() if self.last_active else None,
            "sparkline": list(self.sparkline),
            "busy": self.busy,
            "heat": self.heat,
        }


@dataclass(frozen=True)
class MessageFlow:
    source: str
    target: str
    count: int
    intensity: float


@dataclass
class FleetStats:
    total_tasks: int = 0
    total_results: int = 0
    failures: int = 0
    total_cost: float = 0.0
    knight_costs: dict[str, float] = field(default_factory=dict)

    @property
    def top_knights(self) -> list[tuple[str, float]]:
        return sorted(self.knight_costs.items(), key=lambda kv: kv[1], reverse=True)[:TOP_KNIGHTS]


def knight_for_event(event: Event) -> str | None:
    knight = knight_for_domain(event.domain)
    if knight is None and isinstance(event.payload, ResultPayload):
        knight = knight_for_domain(event.payload.knight)
    return knight


def _sender_node(sender: str) -> str:
    if not sender or sender.lower() in HUB_SENDERS:
        return HUB
    return knight_for_domain(sender) or HUB


def compute_activity(
    events: Sequence[Event],
    now: datetime | None = None,
    statuses: dict[str, str] | None = None,
    knights: Iterable[str] = KNIGHT_NAMES,
    window: timedelta = ACTIVITY_WINDOW,
    busy_window: timedelta = BUSY_WINDOW,
) -> dict[str, ActivityState]:
    """Per-knight rolling counters for the trailing ``window``.

    busy: some Task (by task_id) has no later Result and was observed within
    ``busy_window`` of ``now``.
    """
    now = now or datetime.now(timezone.utc)
    statuses = statuses or {}
    act = {name: ActivityState(knight=name, status=statuses.get(name, "offline")) for name in knights}
    window_start = now - window
    bucket_span = window / SPARKLINE_BUCKETS
    buckets = {name: [0] * SPARKLINE_BUCKETS for name in act}

    for event in reversed(events):
        if event.observed_at < window_start:
            continue
        knight = knight_for_event(event)
        state = act.get(knight) if knight else None
        if state is None:
            continue

        if state.last_active is None or event.observed_at > state.last_active:
            state.last_active = event.observed_at
        idx = int((event.observed_at - window_start) / bucket_span)
        buckets[knight][min(max(idx, 0), SPARKLINE_BUCKETS - 1)] += 1

        task_id = event.payload.task_id
        if event.kind is EventKind.TASK:
            state.recent_tasks += 1
            if task_id:
                state.pending[task_id] = event.observed_at
        else:
            state.recent_results += 1
            if task_id:
                state.pending.pop(task_id, None)

    busy_since = now - busy_window
    for name, state in act.items():
        peak = max(buckets[name])
        if peak:
            state.sparkline = [round(c / peak, 3) for c in buckets[name]]
        state.busy = any(ts >= busy_since for ts in state.pending.values())
        state.heat = min(state.recent_tasks / HEAT_SATURATION_TASKS, 1.0)
        if state.busy:
            state.heat = max(state.heat, BUSY_HEAT_FLOOR)
    return act


def compute_flows(events: Sequence[Event], limit: int = FLOW_EVENT_LIMIT) -> list[MessageFlow]:
    """Message counts per (source, target) pair over the newest ``limit`` events."""
    counts: Counter[tuple[str, str]] = Counter()
    for event in events[:limit]:
        knight = knight_for_domain(event.domain)
        if not knight:
            continue
        peer = _sender_node(event.payload.sender)
        if event.kind is EventKind.TASK:
            counts[(peer, knight)] += 1
        else:
            counts[(knight, peer)] += 1
    return [
        MessageFlow(source=src, target=dst, count=n, intensity=min(n / FLOW_SATURATION, 1.0))
        for (src, dst), n in counts.items()
    ]


def compute_stats(events: Sequence[Event], session_costs: dict[str, float] | None = None) -> FleetStats:
    """Totals over the buffer; ``session_costs`` (cumulative per knight) are added on top."""
    stats = FleetStats(knight_costs=dict(session_costs or {}))
    stats.total_cost = sum(stats.knight_costs.values())
    for event in events:
        if event.kind is EventKind.TASK:
            stats.total_tasks += 1
            continue
        stats.total_results += 1
        payload = event.payload
        if payload.success is False:
            stats.failures += 1
        cost = payload.cost or 0.0
        stats.total_cost += cost
        knight = knight_for_domain(event.domain)
        if knight:
            stats.knight_costs[knight] = stats.knight_costs.get(knight, 0.0) + cost
    return stats
