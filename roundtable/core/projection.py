"""Live render projection — event buffer + chain runs → render-ready view state.

LiveProjection listens to an EventStreamClient and recomputes its state through
a CoalescingScheduler (300ms trailing debounce), so a burst of events costs one
recomputation. Chain updates come from the Chain Provider poll and are laid out
immediately; a chain whose graph cannot be laid out carries an ``error`` and
does not affect the others.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Sequence

import structlog

from roundtable.core.activity import (
    ACTIVITY_WINDOW,
    BUSY_WINDOW,
    ActivityState,
    FleetStats,
    MessageFlow,
    compute_activity,
    compute_flows,
    compute_stats,
)
from roundtable.core.chains import ChainRun, Phase, Step
from roundtable.core.events import Event
from roundtable.core.knights import get_knight_config
from roundtable.core.layout import ChainLayout, LayoutError, layout_steps
from roundtable.core.scheduler import CoalescingScheduler

log = structlog.get_logger()

DEBOUNCE_MS = 300


class NodeState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


NODE_COLORS = {
    NodeState.PENDING: "#4b5563",
    NodeState.RUNNING: "#3b82f6",
    NodeState.COMPLETED: "#22c55e",
    NodeState.FAILED: "#ef4444",
    NodeState.SKIPPED: "#6b7280",
}


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def format_duration(start: str | None, end: str | None, now: datetime | None = None) -> str:
    started = _parse_time(start)
    if started is None:
        return "—"
    finished = _parse_time(end) or now or datetime.now(timezone.utc)
    sec = round((finished - started).total_seconds())
    if sec < 60:
        return f"{sec}s"
    if sec < 3600:
        return f"{sec // 60}m {sec % 60}s"
    return f"{sec // 3600}h {(sec % 3600) // 60}m"


def step_state(step: Step, current_step: str = "") -> NodeState:
    """Visual state of one step node.

    The run's ``current_step`` counts as running even before the step's own
    phase transitions; Completed and Failed win over it.
    """
    if step.phase is Phase.COMPLETED:
        return NodeState.COMPLETED
    if step.phase is Phase.FAILED:
        return NodeState.FAILED
    if step.phase.active or (current_step and step.name == current_step):
        return NodeState.RUNNING
    if step.phase is Phase.SKIPPED:
        return NodeState.SKIPPED
    return NodeState.PENDING


@dataclass(frozen=True)
class StepNode:
    name: str
    knight: str
    domain: str
    phase: Phase
    state: NodeState
    column: int
    row: int
    retry_count: int = 0
    is_current: bool = False
    duration: str = "—"

    @property
    def retried(self) -> bool:
        return self.retry_count > 0

    @property
    def color(self) -> str:
        return NODE_COLORS[self.state]

    @property
    def label(self) -> str:
        suffix = f" (retry {self.retry_count})" if self.retried else ""
        return f"{self.phase.value}{suffix}"

    def to_dict(self) -> dict:
        cfg = get_knight_config(self.knight)
        return {
            "name": self.name,
            "knight": self.knight,
            "domain": self.domain,
            "emoji": cfg.emoji,
            "title": cfg.title,
            "phase": self.phase.value,
            "state": self.state.value,
            "col": self.column,
            "row": self.row,
            "retryCount": self.retry_count,
            "retried": self.retried,
            "current": self.is_current,
            "color": self.color,
            "label": self.label,
            "duration": self.duration,
        }


@dataclass
class ChainView:
    run: ChainRun
    layout: ChainLayout | None = None
    nodes: list[StepNode] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "chain": self.run.to_dict(),
            "layout": self.layout.to_dict() if self.layout else None,
            "nodes": [n.to_dict() for n in self.nodes],
            "error": self.error,
        }


def project_chain(run: ChainRun, now: datetime | None = None) -> ChainView:
    try:
        layout = layout_steps(run.steps)
    except LayoutError as exc:
        log.warning("projection.layout_failed", chain=run.name, error=str(exc))
        return ChainView(run=run, error=str(exc))

    nodes = []
    for step in run.steps:
        pos = layout.positions[step.name]
        nodes.append(StepNode(
            name=step.name,
            knight=step.knight,
            domain=step.domain,
            phase=step.phase,
            state=step_state(step, run.current_step),
            column=pos.column,
            row=pos.row,
            retry_count=step.retry_count,
            is_current=bool(run.current_step) and step.name == run.current_step,
            duration=format_duration(step.start_time, step.completion_time, now),
        ))
    return ChainView(run=run, layout=layout, nodes=nodes)


@dataclass
class ProjectionState:
    activity: dict[str, ActivityState] = field(default_factory=dict)
    flows: list[MessageFlow] = field(default_factory=list)
    stats: FleetStats = field(default_factory=FleetStats)
    chains: list[ChainView] = field(default_factory=list)
    connected: bool = False
    total_events: int = 0
    computed_at: datetime | None = None

    @property
    def running_chains(self) -> list[ChainView]:
        return [c for c in self.chains if c.run.running]

    def to_dict(self) -> dict:
        return {
            "activity": {k: v.to_dict() for k, v in self.activity.items()},
            "flows": [
                {"source": f.source, "target": f.target, "count": f.count, "intensity": f.intensity}
                for f in self.flows
            ],
            "stats": {
                "totalTasks": self.stats.total_tasks,
                "totalResults": self.stats.total_results,
                "failures": self.stats.failures,
                "totalCost": self.stats.total_cost,
                "topKnights": [[k, c] for k, c in self.stats.top_knights],
            },
            "chains": [c.to_dict() for c in self.chains],
            "connected": self.connected,
            "totalEvents": self.total_events,
            "computedAt": self.computed_at.isoformat() if self.computed_at else None,
        }


class LiveProjection:
    """Owns the debounced recomputation of ProjectionState.

    ``source`` is usually an EventStreamClient; without one, events are fed
    through set_events(). Call close() on teardown so no timer outlives it.
    """

    def __init__(
        self,
        source=None,
        *,
        debounce_ms: int = DEBOUNCE_MS,
        window=ACTIVITY_WINDOW,
        busy_window=BUSY_WINDOW,
        clock: Callable[[], datetime] | None = None,
    ):
        self._source = source
        self.debounce = debounce_ms / 1000
        self.window = window
        self.busy_window = busy_window
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._scheduler = CoalescingScheduler()
        self._events: tuple[Event, ...] = ()
        self._chain_views: list[ChainView] = []
        self._statuses: dict[str, str] = {}
        self._session_costs: dict[str, float] = {}
        self._listeners: list[Callable[[ProjectionState], None]] = []
        self._unsubscribe = source.subscribe(self._on_events) if source is not None else None
        self.recomputes = 0
        self.state = ProjectionState()

    @classmethod
    def from_settings(cls, source=None, settings=None, **kwargs) -> "LiveProjection":
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()
        return cls(
            source,
            debounce_ms=settings.debounce_ms,
            window=timedelta(seconds=settings.activity_window_sec),
            busy_window=timedelta(seconds=settings.busy_window_sec),
            **kwargs,
        )

    @property
    def pending(self) -> bool:
        return self._scheduler.pending

    def subscribe(self, listener: Callable[[ProjectionState], None]) -> None:
        self._listeners.append(listener)

    def _on_events(self, added: tuple[Event, ...]) -> None:
        self.notify()

    def notify(self) -> None:
        """Request a recomputation; bursts inside the debounce window coalesce."""
        self._scheduler.schedule(self.recompute, self.debounce)

    def set_events(self, events: Sequence[Event]) -> None:
        self._events = tuple(events)
        self.notify()

    def update_statuses(self, statuses: dict[str, str]) -> None:
        self._statuses = dict(statuses)
        self.notify()

    def update_session_costs(self, costs: dict[str, float]) -> None:
        self._session_costs = dict(costs)
        self.notify()

    def update_chains(self, chains: Iterable[ChainRun]) -> None:
        if self._scheduler.closed:
            return
        now = self._clock()
        self._chain_views = [project_chain(run, now) for run in chains]
        self._scheduler.flush(self.recompute)

    def recompute(self) -> ProjectionState:
        events = self._source.events if self._source is not None else self._events
        now = self._clock()
        self.state = ProjectionState(
            activity=compute_activity(
                events, now=now, statuses=self._statuses,
                window=self.window, busy_window=self.busy_window,
            ),
            flows=compute_flows(events),
            stats=compute_stats(events, self._session_costs),
            chains=list(self._chain_views),
            connected=bool(getattr(self._source, "connected", False)),
            total_events=len(events),
            computed_at=now,
        )
        self.recomputes += 1
        for listener in list(self._listeners):
            listener(self.state)
        return self.state

    def close(self) -> None:
        self._scheduler.close()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()
