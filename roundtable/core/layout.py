"""DAG layout for chain step graphs.

Each step gets a (column, row) grid position:

    column(step) = 0                                  if it has no dependencies
                 = 1 + max(column(dep) for dep in deps) otherwise

Columns are computed with Kahn's algorithm over an adjacency map keyed by step
name, so every dependency edge points from a lower column to a higher one and
a cycle is detected (steps left with in-degree > 0) instead of recursing
forever. Rows follow input order inside each column.

For DAG: fetch -> scan -> report, fetch -> enrich -> report
    fetch=(0, 0)  scan=(1, 0)  enrich=(1, 1)  report=(2, 0)
"""
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Iterable, Protocol, Sequence

import structlog

log = structlog.get_logger()


class LayoutError(Exception):
    """Base exception for step-graph layout errors."""


class CyclicDependencyError(LayoutError):
    """Raised when the dependency relation contains a cycle."""

    def __init__(self, step: str, cycle: list[str]):
        self.step = step
        self.cycle = cycle
        super().__init__(f"Cyclic dependency at step '{step}': {' -> '.join(cycle)}")


class MissingDependencyError(LayoutError):
    """Raised in strict mode when a step depends on an unknown step."""

    def __init__(self, step: str, missing: list[str]):
        self.step = step
        self.missing = missing
        super().__init__(f"Step '{step}' depends on missing step(s): {missing}")


class DuplicateStepError(LayoutError):
    """Raised when two steps share a name."""


class StepLike(Protocol):
    name: str
    depends_on: Sequence[str]


@dataclass(frozen=True)
class Position:
    column: int
    row: int


@dataclass
class ChainLayout:
    positions: dict[str, Position] = field(default_factory=dict)
    edges: list[tuple[str, str]] = field(default_factory=list)  # (dependency, dependent)
    dangling: list[tuple[str, str]] = field(default_factory=list)  # (step, missing dep)

    @property
    def columns(self) -> int:
        return max((p.column for p in self.positions.values()), default=-1) + 1

    @property
    def rows(self) -> int:
        return max((p.row for p in self.positions.values()), default=-1) + 1

    def column_groups(self) -> list[list[str]]:
        groups: list[list[str]] = [[] for _ in range(self.columns)]
        for name, pos in sorted(self.positions.items(), key=lambda kv: (kv[1].column, kv[1].row)):
            groups[pos.column].append(name)
        return groups

    def to_dict(self) -> dict:
        return {
            "positions": {n: {"col": p.column, "row": p.row} for n, p in self.positions.items()},
            "edges": [{"source": s, "target": t} for s, t in self.edges],
            "dangling": [{"step": s, "missing": d} for s, d in self.dangling],
            "columns": self.columns,
            "rows": self.rows,
        }


def _find_cycle(remaining: dict[str, set[str]]) -> list[str]:
    """Walk dependencies inside the unresolved set until a name repeats.

    Every unresolved step has at least one unresolved dependency, so the walk
    always closes a loop.
    """
    start = next(iter(remaining))
    path: list[str] = []
    seen: dict[str, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = sorted(remaining[node])[0]
    return path[seen[node]:] + [node]


def layout_steps(steps: Iterable[StepLike], strict: bool = False) -> ChainLayout:
    """Assign each step a deterministic (column, row) position.

    Args:
        steps: objects with ``name`` and ``depends_on``; input order decides rows.
        strict: raise MissingDependencyError on unknown dependency names
            instead of ignoring them and reporting them in ``dangling``.

    Raises:
        CyclicDependencyError: the dependency relation is not acyclic.
        DuplicateStepError: two steps share a name.
    """
    order: list[str] = []
    deps: dict[str, set[str]] = {}
    layout = ChainLayout()

    for step in steps:
        if step.name in deps:
            raise DuplicateStepError(f"Duplicate step name '{step.name}'")
        order.append(step.name)
        deps[step.name] = set(step.depends_on or ())

    dependents: defaultdict[str, list[str]] = defaultdict(list)
    in_degree: dict[str, int] = {}
    for name in order:
        known = [d for d in sorted(deps[name]) if d in deps]
        missing = [d for d in sorted(deps[name]) if d not in deps]
        if missing:
            if strict:
                raise MissingDependencyError(name, missing)
            log.warning("layout.dangling_dependency", step=name, missing=missing)
            layout.dangling.extend((name, d) for d in missing)
        deps[name] = set(known)
        in_degree[name] = len(known)
        for d in known:
            dependents[d].append(name)

    column = dict.fromkeys(order, 0)
    ready = deque(n for n in order if in_degree[n] == 0)
    resolved = 0
    while ready:
        node = ready.popleft()
        resolved += 1
        for dependent in dependents[node]:
            column[dependent] = max(column[dependent], column[node] + 1)
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                ready.append(dependent)

    if resolved < len(order):
        stuck = {n for n in order if in_degree[n] > 0}
        cycle = _find_cycle({n: deps[n] & stuck for n in order if n in stuck})
        raise CyclicDependencyError(cycle[0], cycle)

    next_row: defaultdict[int, int] = defaultdict(int)
    for name in order:
        col = column[name]
        layout.positions[name] = Position(col, next_row[col])
        next_row[col] += 1

    for name in order:
        for d in sorted(deps[name]):
            layout.edges.append((d, name))

    return layout
