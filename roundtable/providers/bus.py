"""EventBus — Redis pub/sub transport for fleet task and result messages.

Subjects keep the dotted fleet layout used by the knights:

    fleet-a.tasks.<domain>.<task_id>      task published to a knight
    fleet-a.results.<domain>.<task_id>    result published by a knight
    fleet-a.introspect.<Knight>           request/reply session introspection

Results are also appended to a capped Redis stream so the dashboard can serve
recent history (GET /api/tasks) to clients that just connected.
"""
import asyncio
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
import structlog

from roundtable.core.events import Event, EventDecodeError, EventKind, Subject, make_event
from roundtable.core.validation import DispatchRequest

log = structlog.get_logger()

EventHandler = Callable[[Event], Awaitable[None]]


class BusTimeout(Exception):
    """Raised when a request/reply gets no answer in time."""


def _decode_data(raw: Any) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        return raw


def capitalize_knight(name: str) -> str:
    return name[:1].upper() + name[1:]


class Subscription:
    """Handle for one pattern subscription; unsubscribe() is idempotent."""

    def __init__(self, pubsub: Any, task: asyncio.Task):
        self._pubsub = pubsub
        self._task = task
        self.active = True

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        try:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
        except (aioredis.RedisError, OSError) as exc:
            log.debug("bus.unsubscribe_error", error=str(exc))


class EventBus:
    def __init__(
        self,
        url: str = "redis://localhost:6379",
        *,
        fleet_prefix: str = "fleet-a",
        results_stream: str = "fleet_a_results",
        results_maxlen: int = 1000,
        redis: aioredis.Redis | None = None,
    ):
        self.url = url
        self.fleet_prefix = fleet_prefix
        self.results_stream = results_stream
        self.results_maxlen = results_maxlen
        self._redis = redis

    @classmethod
    def from_settings(cls, settings=None, **kwargs) -> "EventBus":
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()
        return cls(
            settings.bus_url,
            fleet_prefix=settings.fleet_prefix,
            results_stream=settings.results_stream,
            results_maxlen=settings.results_stream_maxlen,
            **kwargs,
        )

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self.url, decode_responses=True, max_connections=20)
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> bool:
        try:
            r = await self._get_redis()
            return bool(await r.ping())
        except (aioredis.RedisError, OSError) as exc:
            log.warning("bus.unavailable", error=str(exc))
            return False

    # ==================== Subjects ====================

    def task_subject(self, domain: str, task_id: str) -> str:
        return f"{self.fleet_prefix}.tasks.{domain}.{task_id}"

    def result_subject(self, domain: str, task_id: str) -> str:
        return f"{self.fleet_prefix}.results.{domain}.{task_id}"

    @property
    def task_pattern(self) -> str:
        return f"{self.fleet_prefix}.tasks.*"

    @property
    def result_pattern(self) -> str:
        return f"{self.fleet_prefix}.results.*"

    def kind_of(self, subject: str) -> EventKind | None:
        kind = Subject.parse(subject).kind
        if kind == "tasks":
            return EventKind.TASK
        if kind == "results":
            return EventKind.RESULT
        return None

    # ==================== Publish ====================

    async def publish(self, subject: str, payload: dict[str, Any]) -> None:
        r = await self._get_redis()
        body = json.dumps(payload)
        await r.publish(subject, body)
        if self.kind_of(subject) is EventKind.RESULT:
            await r.xadd(
                self.results_stream,
                {
                    "subject": subject,
                    "data": body,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
                maxlen=self.results_maxlen,
                approximate=True,
            )
        log.debug("bus.published", subject=subject)

    async def dispatch(self, request: DispatchRequest, origin: str = "ui") -> dict[str, str]:
        """Publish a validated task. ``origin`` is "ui" (HTTP) or "ws" (WebSocket)."""
        task_id = f"{request.knight}-{origin}-{int(time.time() * 1000)}"
        subject = self.task_subject(request.domain, task_id)
        payload: dict[str, Any] = {
            "from": "ui" if origin == "ui" else "dashboard-ws",
            "task_id": task_id,
            "domain": request.domain,
            "task": request.task,
        }
        if origin == "ui":
            payload["metadata"] = {
                "type": "manual",
                "source": "dashboard",
                "timeout_ms": request.timeout_ms,
            }
        await self.publish(subject, payload)
        log.info("bus.task_dispatched", task_id=task_id, subject=subject, origin=origin)
        return {"task_id": task_id, "subject": subject, "status": "dispatched"}

    # ==================== Subscribe ====================

    async def subscribe_events(self, handler: EventHandler) -> Subscription:
        """Pattern-subscribe to all task and result subjects.

        Each message is stamped with the receive time and handed to
        ``handler`` as an Event, in the order Redis delivers them.
        """
        r = await self._get_redis()
        pubsub = r.pubsub()
        await pubsub.psubscribe(self.task_pattern, self.result_pattern)

        async def reader() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "pmessage":
                        continue
                    subject = message["channel"]
                    kind = self.kind_of(subject)
                    if kind is None:
                        continue
                    try:
                        event = make_event(kind, subject, _decode_data(message["data"]))
                    except EventDecodeError as exc:
                        log.debug("bus.malformed_message", subject=subject, error=str(exc))
                        continue
                    try:
                        await handler(event)
                    except Exception as exc:
                        log.error("bus.handler_failed", subject=subject, error=str(exc))
            except (aioredis.RedisError, OSError) as exc:
                log.warning("bus.subscription_lost", error=str(exc))

        task = asyncio.create_task(reader())
        return Subscription(pubsub, task)

    # ==================== History ====================

    async def history(self, limit: int = 50) -> tuple[list[Event], int]:
        """Last ``limit`` results, oldest first, plus the total retained count."""
        r = await self._get_redis()
        entries = await r.xrevrange(self.results_stream, count=limit)
        total = await r.xlen(self.results_stream)
        events = []
        for entry_id, fields in reversed(entries):
            observed = None
            try:
                observed = datetime.fromisoformat(fields.get("timestamp", ""))
            except ValueError:
                pass
            try:
                events.append(make_event(
                    EventKind.RESULT,
                    fields.get("subject", ""),
                    _decode_data(fields.get("data")),
                    observed,
                ))
            except EventDecodeError as exc:
                log.debug("bus.malformed_history_entry", entry=entry_id, error=str(exc))
        return events, total

    # ==================== Request / reply ====================

    async def request(self, subject: str, payload: dict[str, Any], timeout: float = 5.0) -> str:
        """Publish with a private reply channel and wait for the first answer.

        Raises:
            BusTimeout: nothing answered within ``timeout`` seconds.
        """
        r = await self._get_redis()
        inbox = f"_INBOX.{uuid.uuid4().hex}"
        pubsub = r.pubsub()
        await pubsub.subscribe(inbox)

        async def first_reply() -> str:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    data = message["data"]
                    return data.decode() if isinstance(data, bytes) else data
            raise BusTimeout(f"reply channel closed for {subject}")

        try:
            await r.publish(subject, json.dumps({**payload, "reply_to": inbox}))
            return await asyncio.wait_for(first_reply(), timeout)
        except asyncio.TimeoutError as exc:
            raise BusTimeout(f"no reply on {subject} within {timeout}s") from exc
        finally:
            await pubsub.unsubscribe(inbox)
            await pubsub.aclose()

    async def introspect(self, knight: str, kind: str = "stats", timeout: float = 5.0) -> str:
        subject = f"{self.fleet_prefix}.introspect.{capitalize_knight(knight)}"
        return await self.request(subject, {"type": kind}, timeout)
