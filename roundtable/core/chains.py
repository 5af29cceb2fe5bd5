"""Chain snapshot model — ChainRun / Step and the Chain custom-resource parser.

A Chain is a declarative multi-step pipeline (chains.ai.roundtable.io). The
provider reports it as an unstructured object; parse_chain_resource() turns
that into a ChainRun, merging the static spec (knight, domain, dependsOn) with
the live status (phase, timing, result, retries).
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

RESULT_TRUNCATE_CHARS = 500


class Phase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    STEP_RUNNING = "StepRunning"
    COMPLETED = "Completed"
    FAILED = "Failed"
    SKIPPED = "Skipped"  # steps only

    @classmethod
    def parse(cls, value: Any) -> "Phase":
        try:
            return cls(value)
        except ValueError:
            return cls.PENDING

    @property
    def terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.FAILED, Phase.SKIPPED)

    @property
    def active(self) -> bool:
        return self in (Phase.RUNNING, Phase.STEP_RUNNING)


@dataclass
class Step:
    name: str
    knight: str = ""
    domain: str = ""
    phase: Phase = Phase.PENDING
    start_time: str | None = None
    completion_time: str | None = None
    result: str | None = None
    depends_on: list[str] = field(default_factory=list)
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "knight": self.knight,
            "domain": self.domain,
            "phase": self.phase.value,
            "startTime": self.start_time,
            "completionTime": self.completion_time,
            "result": self.result,
            "dependsOn": list(self.depends_on),
            "retryCount": self.retry_count,
        }


@dataclass
class ChainRun:
    name: str
    namespace: str = ""
    phase: Phase = Phase.PENDING
    current_step: str = ""
    start_time: str | None = None
    completion_time: str | None = None
    schedule: str | None = None
    steps: list[Step] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.phase.active

    def step(self, name: str) -> Step | None:
        return next((s for s in self.steps if s.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "phase": self.phase.value,
            "currentStep": self.current_step,
            "startTime": self.start_time,
            "completionTime": self.completion_time,
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.schedule:
            out["schedule"] = self.schedule
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChainRun":
        """Inverse of to_dict(), for API responses read back by clients."""
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            phase=Phase.parse(data.get("phase")),
            current_step=data.get("currentStep") or "",
            start_time=data.get("startTime"),
            completion_time=data.get("completionTime"),
            schedule=data.get("schedule") or None,
            steps=[
                Step(
                    name=s.get("name", ""),
                    knight=s.get("knight", ""),
                    domain=s.get("domain", ""),
                    phase=Phase.parse(s.get("phase")),
                    start_time=s.get("startTime"),
                    completion_time=s.get("completionTime"),
                    result=s.get("result"),
                    depends_on=list(s.get("dependsOn") or []),
                    retry_count=int(s.get("retryCount") or 0),
                )
                for s in (data.get("steps") or [])
            ],
        )


# ---------------------------------------------------------------------------
# Unstructured custom-resource helpers
# ---------------------------------------------------------------------------

def _map(obj: Any, key: str) -> dict[str, Any]:
    value = obj.get(key) if isinstance(obj, dict) else None
    return value if isinstance(value, dict) else {}


def _str(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    return value if isinstance(value, str) else ""


def _int(obj: dict[str, Any], key: str) -> int:
    value = obj.get(key)
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(int(value), 0)
    return 0


def _list(obj: dict[str, Any], key: str) -> list[Any]:
    value = obj.get(key)
    return value if isinstance(value, list) else []


def _deps(obj: dict[str, Any]) -> list[str]:
    return [d for d in _list(obj, "dependsOn") if isinstance(d, str)]


def _truncate(text: str) -> str:
    if len(text) > RESULT_TRUNCATE_CHARS:
        return text[:RESULT_TRUNCATE_CHARS] + "..."
    return text


def parse_chain_resource(obj: dict[str, Any]) -> ChainRun:
    spec = _map(obj, "spec")
    status = _map(obj, "status")
    metadata = _map(obj, "metadata")

    chain = ChainRun(
        name=_str(metadata, "name"),
        namespace=_str(metadata, "namespace"),
        phase=Phase.parse(_str(status, "phase")),
        current_step=_str(status, "currentStep"),
        start_time=_str(status, "startTime") or None,
        completion_time=_str(status, "completionTime") or None,
        schedule=_str(_map(spec, "schedule"), "cron") or None,
    )

    spec_steps = [s for s in _list(spec, "steps") if isinstance(s, dict)]
    by_name = {_str(s, "name"): s for s in spec_steps}

    for raw in _list(status, "steps"):
        if not isinstance(raw, dict):
            continue
        name = _str(raw, "name")
        result = _str(raw, "result")
        declared = by_name.get(name, {})
        chain.steps.append(Step(
            name=name,
            knight=_str(declared, "knight"),
            domain=_str(declared, "domain"),
            phase=Phase.parse(_str(raw, "phase")),
            start_time=_str(raw, "startTime") or None,
            completion_time=_str(raw, "completionTime") or None,
            result=_truncate(result) if result else None,
            depends_on=_deps(declared),
            retry_count=_int(raw, "retryCount"),
        ))

    # No detailed status yet: derive Pending steps from the static spec
    if not chain.steps:
        for declared in spec_steps:
            chain.steps.append(Step(
                name=_str(declared, "name"),
                knight=_str(declared, "knight"),
                domain=_str(declared, "domain"),
                phase=Phase.PENDING,
                depends_on=_deps(declared),
            ))

    return chain
