"""Unit tests for EventStreamClient — backoff, reconnect, ingestion, history, dispatch, close."""
import asyncio
import json

import httpx
import pytest

from roundtable.core.events import decode_event
from roundtable.stream.client import Backoff, ConnectionState, EventStreamClient


class FakeWebSocket:
    """Async-iterable stand-in for a websockets client connection."""

    def __init__(self, messages=()):
        self.queue: asyncio.Queue = asyncio.Queue()
        for m in messages:
            self.queue.put_nowait(m)
        self.sent: list[str] = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self.queue.get()
        if msg is None:
            raise StopAsyncIteration
        return msg

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(None)


def _wire(task_id: str, kind: str = "task", domain: str = "security") -> str:
    return json.dumps({
        "type": kind,
        "subject": f"fleet-a.{kind}s.{domain}.{task_id}",
        "data": {"task_id": task_id},
        "timestamp": "2026-03-01T12:00:00+00:00",
    })


async def _until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

def test_backoff_doubles_to_cap():
    backoff = Backoff(3000, 30000)
    assert [backoff.next_delay() for _ in range(6)] == [3.0, 6.0, 12.0, 24.0, 30.0, 30.0]


def test_backoff_reset_returns_to_floor():
    backoff = Backoff(3000, 30000)
    for _ in range(4):
        backoff.next_delay()
    backoff.reset()
    assert backoff.next_delay() == 3.0


def test_backoff_jitter_stays_within_cap():
    backoff = Backoff(3000, 30000, jitter=True)
    delays = [backoff.next_delay() for _ in range(10)]
    assert all(3.0 <= d <= 30.0 for d in delays)


def test_backoff_rejects_bad_bounds():
    with pytest.raises(ValueError):
        Backoff(5000, 1000)


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_failure_schedules_reconnect():
    attempts = []

    async def connector(url):
        attempts.append(url)
        raise OSError("connection refused")

    client = EventStreamClient("ws://test/api/ws", reconnect_delay_ms=10, max_reconnect_delay_ms=40,
                               connector=connector)
    client.connect()
    await _until(lambda: len(attempts) >= 3)
    assert client.state is ConnectionState.DISCONNECTED
    assert client.error == "connection refused"
    await client.close()
    assert not client.reconnect_pending
    count = len(attempts)
    await asyncio.sleep(0.1)
    assert len(attempts) == count


@pytest.mark.asyncio
async def test_successful_connect_resets_backoff():
    ws = FakeWebSocket()
    calls = 0

    async def connector(url):
        nonlocal calls
        calls += 1
        if calls < 3:
            raise OSError("down")
        return ws

    client = EventStreamClient("ws://test", reconnect_delay_ms=10, max_reconnect_delay_ms=1000,
                               connector=connector)
    client.connect()
    await _until(lambda: client.connected)
    assert client.backoff.current_ms == 10
    await client.close()
    assert ws.closed
    assert client.closed


@pytest.mark.asyncio
async def test_server_close_triggers_reconnect():
    sockets = []

    async def connector(url):
        ws = FakeWebSocket()
        sockets.append(ws)
        return ws

    client = EventStreamClient("ws://test", reconnect_delay_ms=10, max_reconnect_delay_ms=40,
                               connector=connector)
    client.connect()
    await _until(lambda: client.connected)
    sockets[0].queue.put_nowait(None)
    await _until(lambda: len(sockets) == 2 and client.connected)
    await client.close()


@pytest.mark.asyncio
async def test_async_context_manager_closes():
    ws = FakeWebSocket()

    async def connector(url):
        return ws

    async with EventStreamClient("ws://test", connector=connector) as client:
        await _until(lambda: client.connected)
    assert client.closed
    assert ws.closed


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_messages_are_buffered_newest_first_and_malformed_dropped():
    ws = FakeWebSocket([_wire("t1"), "{not json", json.dumps({"type": "x"}), _wire("t2")])

    async def connector(url):
        return ws

    client = EventStreamClient("ws://test", connector=connector)
    seen = []
    client.subscribe(seen.append)
    client.connect()
    await _until(lambda: len(client.events) == 2)
    assert [e.task_id for e in client.events] == ["t2", "t1"]
    assert len(seen) == 2
    assert all(isinstance(batch, tuple) for batch in seen)
    await client.close()


@pytest.mark.asyncio
async def test_unsubscribe_stops_notifications():
    ws = FakeWebSocket()

    async def connector(url):
        return ws

    client = EventStreamClient("ws://test", connector=connector)
    seen = []
    unsubscribe = client.subscribe(seen.append)
    client.connect()
    await _until(lambda: client.connected)
    unsubscribe()
    ws.queue.put_nowait(_wire("t1"))
    await _until(lambda: len(client.events) == 1)
    assert seen == []
    await client.close()


@pytest.mark.asyncio
async def test_buffer_capacity_is_respected():
    ws = FakeWebSocket([_wire(f"t{i}") for i in range(30)])

    async def connector(url):
        return ws

    client = EventStreamClient("ws://test", capacity=10, connector=connector)
    client.connect()
    await _until(lambda: client.events and client.events[0].task_id == "t29")
    assert len(client.events) == 10
    await client.close()


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_load_history_seeds_newest_first():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tasks"
        return httpx.Response(200, json={
            "results": [
                {"type": "result", "subject": "fleet-a.results.security.old", "data": {"task_id": "old"},
                 "timestamp": "2026-03-01T10:00:00+00:00"},
                {"type": "result", "subject": "fleet-a.results.security.new", "data": {"task_id": "new"},
                 "timestamp": "2026-03-01T11:00:00+00:00"},
            ],
            "messages": 2,
        })

    client = EventStreamClient("ws://test")
    added = await client.load_history("http://dashboard", transport=httpx.MockTransport(handler))
    assert added == 2
    assert [e.task_id for e in client.events] == ["new", "old"]


@pytest.mark.asyncio
async def test_load_history_failure_is_ignored():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    client = EventStreamClient("ws://test")
    assert await client.load_history("http://dashboard", transport=httpx.MockTransport(handler)) == 0
    assert client.events == ()


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_dispatch_dropped_when_disconnected():
    client = EventStreamClient("ws://test")
    assert await client.dispatch("galahad", "security", "scan") is False


@pytest.mark.asyncio
async def test_dispatch_sends_command_when_connected():
    ws = FakeWebSocket()

    async def connector(url):
        return ws

    client = EventStreamClient("ws://test", connector=connector)
    client.connect()
    await _until(lambda: client.connected)
    assert await client.dispatch("galahad", "security", "scan ports") is True
    assert json.loads(ws.sent[0]) == {
        "action": "dispatch", "knight": "galahad", "domain": "security", "task": "scan ports",
    }
    await client.close()


@pytest.mark.asyncio
async def test_live_events_land_ahead_of_seeded_history():
    ws = FakeWebSocket()

    async def connector(url):
        return ws

    client = EventStreamClient("ws://test", connector=connector)
    client.seed_history([decode_event(_wire("h1", kind="result")), decode_event(_wire("h2", kind="result"))])
    client.connect()
    await _until(lambda: client.connected)
    ws.queue.put_nowait(_wire("e1"))
    await _until(lambda: len(client.events) == 3)
    assert [e.task_id for e in client.events] == ["e1", "h1", "h2"]
    await client.close()


@pytest.mark.asyncio
async def test_undecodable_messages_do_not_stop_the_reader():
    overflow = json.dumps({
        "type": "result",
        "subject": "fleet-a.results.security.big",
        "data": {"task_id": "big", "cost": 10**400, "duration": 10**400},
    })
    ws = FakeWebSocket([overflow, "[" * 100000, _wire("t1")])

    async def connector(url):
        return ws

    client = EventStreamClient("ws://test", connector=connector)
    client.connect()
    await _until(lambda: any(e.task_id == "t1" for e in client.events))
    assert [e.task_id for e in client.events] == ["t1", "big"]
    assert client.events[1].payload.cost is None
    assert client.connected
    assert client.error is None
    await client.close()
