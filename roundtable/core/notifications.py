"""Task-result notifications — one toast-style message per newly observed Result.

TaskNotifier is a stream-client listener: it receives each batch of newly
buffered events and turns Results into Notifications. Results observed before
the notifier was created (history seeds) and task ids already announced are
skipped.
"""
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import structlog

from roundtable.core.events import Event, EventKind, ResultPayload
from roundtable.core.knights import get_knight_config, knight_for_domain

log = structlog.get_logger()

RECENT_NOTIFICATIONS = 20
SEEN_TASK_IDS = 500


@dataclass(frozen=True)
class Notification:
    task_id: str
    knight: str
    domain: str
    level: str      # success | error
    message: str
    cost: float | None = None


def notification_for(event: Event) -> Notification | None:
    """Build the notification for a Result event; Tasks yield None."""
    if event.kind is not EventKind.RESULT or not isinstance(event.payload, ResultPayload):
        return None
    payload = event.payload
    domain = payload.domain or event.domain or "unknown"
    knight = knight_for_domain(domain)
    cfg = get_knight_config(knight or domain)
    display = knight.capitalize() if knight else domain

    if payload.failed:
        return Notification(
            task_id=event.task_id,
            knight=knight or "",
            domain=domain,
            level="error",
            message=f"❌ {display} failed: {payload.error or 'unknown error'}",
            cost=payload.cost,
        )
    cost = f" (${payload.cost:.4f})" if payload.cost else ""
    return Notification(
        task_id=event.task_id,
        knight=knight or "",
        domain=domain,
        level="success",
        message=f"{cfg.emoji} {display} completed {domain} task{cost}",
        cost=payload.cost,
    )


class TaskNotifier:
    def __init__(
        self,
        sink: Callable[[Notification], None] | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self._sink = sink
        self.since = (clock or (lambda: datetime.now(timezone.utc)))()
        self.recent: deque[Notification] = deque(maxlen=RECENT_NOTIFICATIONS)
        self._seen: deque[str] = deque(maxlen=SEEN_TASK_IDS)

    def __call__(self, added: tuple[Event, ...]) -> None:
        # Batches are newest-first; announce in arrival order
        for event in reversed(added):
            if event.observed_at < self.since:
                continue
            note = notification_for(event)
            if note is None:
                continue
            if note.task_id:
                if note.task_id in self._seen:
                    continue
                self._seen.append(note.task_id)
            self.recent.appendleft(note)
            log.info("notify.task_result", task_id=note.task_id, level=note.level)
            if self._sink is not None:
                self._sink(note)
