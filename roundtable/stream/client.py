"""EventStreamClient — owned, disposable live connection to the dashboard event feed.

Lifecycle: create → connect() → ... → close(). The client owns its buffer;
consumers get tuple snapshots via ``events`` and new-event callbacks via
subscribe().

State machine:
    DISCONNECTED → CONNECTING → CONNECTED → DISCONNECTED → ...
    CLOSED only after close(); no timers or tasks survive it.

Reconnect policy: exponential backoff from 3s doubling to a 30s cap, reset to
the floor on every successful connect.
"""
import asyncio
import json
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

import httpx
import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from roundtable.core.events import Event, EventDecodeError, decode_event
from roundtable.stream.buffer import MAX_EVENTS, EventBuffer

log = structlog.get_logger()

RECONNECT_DELAY_MS = 3000
MAX_RECONNECT_DELAY_MS = 30000

Listener = Callable[[tuple[Event, ...]], None]
Connector = Callable[[str], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class Backoff:
    """Doubling reconnect delay between ``floor_ms`` and ``cap_ms``."""

    def __init__(self, floor_ms: int = RECONNECT_DELAY_MS, cap_ms: int = MAX_RECONNECT_DELAY_MS,
                 jitter: bool = False):
        if floor_ms <= 0 or cap_ms < floor_ms:
            raise ValueError("backoff requires 0 < floor_ms <= cap_ms")
        self.floor_ms = floor_ms
        self.cap_ms = cap_ms
        self.jitter = jitter
        self.current_ms = floor_ms

    def reset(self) -> None:
        self.current_ms = self.floor_ms

    def next_delay(self) -> float:
        """Delay in seconds for this attempt; doubles the delay for the next one."""
        delay = self.current_ms
        self.current_ms = min(self.current_ms * 2, self.cap_ms)
        if self.jitter:
            delay = min(delay + random.uniform(0, delay * 0.1), self.cap_ms)
        return delay / 1000


class EventStreamClient:
    def __init__(
        self,
        url: str,
        *,
        capacity: int = MAX_EVENTS,
        reconnect_delay_ms: int = RECONNECT_DELAY_MS,
        max_reconnect_delay_ms: int = MAX_RECONNECT_DELAY_MS,
        jitter: bool = False,
        http_url: str | None = None,
        connector: Connector | None = None,
    ):
        self.url = url
        self.http_url = http_url
        self.buffer = EventBuffer(capacity)
        self.backoff = Backoff(reconnect_delay_ms, max_reconnect_delay_ms, jitter)
        self.state = ConnectionState.DISCONNECTED
        self.error: str | None = None
        self._connector = connector or ws_connect
        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._listeners: list[Listener] = []

    @classmethod
    def from_settings(cls, settings=None, **kwargs) -> "EventStreamClient":
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()
        return cls(
            settings.dashboard_ws_url,
            capacity=settings.max_events,
            reconnect_delay_ms=settings.reconnect_delay_ms,
            max_reconnect_delay_ms=settings.max_reconnect_delay_ms,
            jitter=settings.reconnect_jitter,
            http_url=settings.dashboard_http_url,
            **kwargs,
        )

    async def __aenter__(self) -> "EventStreamClient":
        self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ==================== Read side ====================

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    @property
    def events(self) -> tuple[Event, ...]:
        return self.buffer.snapshot()

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a callback for newly buffered events; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def clear(self) -> None:
        self.buffer.clear()

    # ==================== Connection lifecycle ====================

    def connect(self) -> asyncio.Task | None:
        """Start a connection attempt in the background."""
        if self.closed:
            return None
        if self._reader is not None and not self._reader.done():
            return self._reader
        self._cancel_reconnect()
        self.state = ConnectionState.CONNECTING
        self._reader = asyncio.get_running_loop().create_task(self._run())
        return self._reader

    async def _run(self) -> None:
        try:
            ws = await self._connector(self.url)
        except (OSError, WebSocketException) as exc:
            self.error = str(exc) or type(exc).__name__
            log.warning("stream.connect_failed", url=self.url, error=self.error)
            self._schedule_reconnect()
            return

        if self.closed:
            await ws.close()
            return

        self._ws = ws
        self.state = ConnectionState.CONNECTED
        self.error = None
        self.backoff.reset()
        log.info("stream.connected", url=self.url)

        try:
            async for raw in ws:
                self._on_message(raw)
        except (ConnectionClosed, WebSocketException, OSError) as exc:
            self.error = str(exc) or type(exc).__name__
            log.warning("stream.connection_lost", url=self.url, error=self.error)
        except Exception as exc:
            # Drop the connection so the state leaves CONNECTED and a reconnect is scheduled
            self.error = str(exc) or type(exc).__name__
            log.error("stream.reader_failed", url=self.url, error=self.error)
            try:
                await ws.close()
            except (ConnectionClosed, WebSocketException, OSError):
                pass
        finally:
            self._ws = None

        if not self.closed:
            log.info("stream.disconnected", url=self.url)
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.closed:
            return
        self.state = ConnectionState.DISCONNECTED
        delay = self.backoff.next_delay()
        log.debug("stream.reconnect_scheduled", delay_sec=delay)
        self._reconnect_handle = asyncio.get_running_loop().call_later(delay, self._reconnect_now)

    def _reconnect_now(self) -> None:
        self._reconnect_handle = None
        self._reader = None
        self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def close(self) -> None:
        """Dispose: stop reconnecting and close the active connection."""
        if self.closed:
            return
        self.state = ConnectionState.CLOSED
        self._cancel_reconnect()

        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except (asyncio.CancelledError, ConnectionClosed, WebSocketException, OSError):
                pass
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, WebSocketException, OSError) as exc:
                log.debug("stream.close_error", error=str(exc))
        self._listeners.clear()
        log.info("stream.closed", url=self.url)

    # ==================== Inbound ====================

    def _on_message(self, raw: Any) -> None:
        try:
            event = decode_event(raw)
        except EventDecodeError as exc:
            log.debug("stream.malformed_event", error=str(exc))
            return
        self.buffer.push(event)
        self._notify((event,))

    def _notify(self, added: tuple[Event, ...]) -> None:
        if not added:
            return
        for listener in list(self._listeners):
            try:
                listener(added)
            except Exception as exc:
                log.error("stream.listener_failed", error=str(exc))

    def seed_history(self, history: Iterable[Event]) -> int:
        """Merge a newest-first history batch behind the live events."""
        history = tuple(history)
        added = self.buffer.seed(history)
        self._notify(history[:added])
        return added

    async def load_history(self, base_url: str | None = None,
                           transport: httpx.AsyncBaseTransport | None = None) -> int:
        """Seed from GET /api/tasks so the first render is never empty.

        The endpoint returns results oldest-first; failures are logged and
        ignored since the live stream still works without history.
        """
        base_url = base_url or self.http_url
        if not base_url:
            log.debug("stream.history_skipped", reason="no dashboard http url")
            return 0
        try:
            async with httpx.AsyncClient(base_url=base_url, timeout=10, transport=transport) as client:
                resp = await client.get("/api/tasks")
                resp.raise_for_status()
                rows = resp.json().get("results") or []
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("stream.history_unavailable", error=str(exc))
            return 0

        history = []
        for row in rows:
            if isinstance(row, dict):
                row = {"type": "result", **{k: v for k, v in row.items() if v}}
            try:
                history.append(decode_event(row))
            except EventDecodeError:
                continue
        history.reverse()
        return self.seed_history(history)

    # ==================== Outbound ====================

    async def dispatch(self, knight: str, domain: str, task: str) -> bool:
        """Fire-and-forget task publish over the live connection.

        Returns False (request dropped) when not connected. Use the HTTP
        dispatch endpoint when delivery must be confirmed.
        """
        ws = self._ws
        if not self.connected or ws is None:
            log.debug("stream.dispatch_dropped", knight=knight, domain=domain)
            return False
        message = json.dumps({"action": "dispatch", "knight": knight, "domain": domain, "task": task})
        try:
            await ws.send(message)
        except (ConnectionClosed, WebSocketException, OSError) as exc:
            log.warning("stream.dispatch_failed", knight=knight, error=str(exc))
            return False
        return True
