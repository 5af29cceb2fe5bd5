"""Bus events — subject parsing and the single decode step for inbound messages.

Every message observed on the bus is decoded exactly once, at ingestion, into
an Event whose payload is either a TaskPayload or a ResultPayload. Consumers
(projection, activity aggregation, notifications) work with the typed fields
and never re-parse the raw data.

Wire shape (backend → stream client):
    {"type": "task" | "result", "subject": "<fleet>.<kind>.<domain>.<id>",
     "data": <opaque>, "timestamp": "<ISO-8601>"}
"""
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class EventKind(str, Enum):
    TASK = "task"
    RESULT = "result"


class EventDecodeError(ValueError):
    """Raised when an inbound message is not a well-formed bus event."""


@dataclass(frozen=True)
class Subject:
    fleet: str
    kind: str       # "tasks" | "results" | anything else the bus carries
    domain: str
    id: str

    @classmethod
    def parse(cls, subject: str) -> "Subject":
        parts = subject.split(".")
        parts += [""] * (4 - len(parts))
        return cls(fleet=parts[0], kind=parts[1], domain=parts[2], id=parts[3])


@dataclass(frozen=True)
class TaskPayload:
    task_id: str = ""
    sender: str = ""
    domain: str = ""
    task: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResultPayload:
    task_id: str = ""
    sender: str = ""
    knight: str = ""
    domain: str = ""
    success: bool | None = None
    error: str = ""
    cost: float | None = None
    duration_seconds: float | None = None
    result: str = ""

    @property
    def failed(self) -> bool:
        return self.success is False or bool(self.error)


Payload = Union[TaskPayload, ResultPayload]


@dataclass(frozen=True)
class Event:
    kind: EventKind
    subject: str
    payload: Payload
    observed_at: datetime
    data: Any = None  # raw data, kept for display only

    @property
    def parsed_subject(self) -> Subject:
        return Subject.parse(self.subject)

    @property
    def domain(self) -> str:
        return self.parsed_subject.domain

    @property
    def task_id(self) -> str:
        return self.payload.task_id or self.parsed_subject.id

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "subject": self.subject,
            "data": self.data,
            "timestamp": self.observed_at.isoformat(),
        }


# Go-style durations as emitted by the knights ("1m30s", "850ms", "2.5s")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0,
}


def _float(value: Any) -> float | None:
    try:
        return float(value)
    except (OverflowError, TypeError, ValueError):
        return None


def parse_duration(value: Any) -> float | None:
    """Duration in seconds from a number or a Go-style duration string."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return _float(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    pos, total = 0, 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return total if pos == len(text) and pos > 0 else None


def _as_mapping(data: Any) -> dict[str, Any]:
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except (ValueError, RecursionError):
            return {}
    return data if isinstance(data, dict) else {}


def _str(d: dict, key: str) -> str:
    value = d.get(key)
    return value if isinstance(value, str) else ""


def decode_payload(kind: EventKind, data: Any) -> Payload:
    """Typed payload for ``data``; fields that do not fit their type are left unset.

    Raises:
        EventDecodeError: the data cannot be decoded at all (e.g. nesting
            too deep to parse or re-serialise).
    """
    try:
        return _decode_payload(kind, data)
    except (OverflowError, RecursionError, TypeError) as exc:
        raise EventDecodeError(f"undecodable payload: {type(exc).__name__}") from exc


def _decode_payload(kind: EventKind, data: Any) -> Payload:
    d = _as_mapping(data)
    if kind is EventKind.TASK:
        metadata = d.get("metadata")
        return TaskPayload(
            task_id=_str(d, "task_id"),
            sender=_str(d, "from"),
            domain=_str(d, "domain"),
            task=_str(d, "task"),
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    success = d.get("success")
    cost = d.get("cost")
    result = d.get("result")
    return ResultPayload(
        task_id=_str(d, "task_id"),
        sender=_str(d, "from"),
        knight=_str(d, "knight"),
        domain=_str(d, "domain"),
        success=success if isinstance(success, bool) else None,
        error=_str(d, "error"),
        cost=_float(cost) if isinstance(cost, (int, float)) and not isinstance(cost, bool) else None,
        duration_seconds=parse_duration(d.get("duration")),
        result=result if isinstance(result, str) else ("" if result is None else json.dumps(result)),
    )


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def decode_event(raw: Any, now: datetime | None = None) -> Event:
    """Decode one inbound message (JSON text, bytes or an already-parsed dict).

    Raises:
        EventDecodeError: the message is not JSON, not an object, or has an
            unknown type / missing subject.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (ValueError, RecursionError) as exc:
            raise EventDecodeError(f"not JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise EventDecodeError(f"expected an object, got {type(raw).__name__}")

    try:
        kind = EventKind(raw.get("type"))
    except ValueError as exc:
        raise EventDecodeError(f"unknown event type {raw.get('type')!r}") from exc

    subject = raw.get("subject")
    if not isinstance(subject, str) or not subject:
        raise EventDecodeError("missing subject")

    data = raw.get("data")
    observed_at = _parse_timestamp(raw.get("timestamp")) or now or datetime.now(timezone.utc)
    return Event(
        kind=kind,
        subject=subject,
        payload=decode_payload(kind, data),
        observed_at=observed_at,
        data=data,
    )


def make_event(kind: EventKind, subject: str, data: Any, observed_at: datetime | None = None) -> Event:
    """Build an Event on the receiving side (backend fan-out, history reads)."""
    return Event(
        kind=kind,
        subject=subject,
        payload=decode_payload(kind, data),
        observed_at=observed_at or datetime.now(timezone.utc),
        data=data,
    )
