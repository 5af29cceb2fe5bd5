"""Integration tests for per-connection WebSocket fan-out against a fakeredis bus."""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

import fakeredis.aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from roundtable.api.fanout import EventFanout
from roundtable.providers.bus import EventBus


class FakeWebSocket:
    """Minimal starlette WebSocket stand-in driven by an inbound queue."""

    def __init__(self, send_delay: float = 0.0):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.send_delay = send_delay
        self.close_code: int | None = None

    async def send_text(self, text: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        self.sent.append(text)

    async def receive(self) -> dict:
        return await self.inbound.get()

    def push_text(self, text: str) -> None:
        self.inbound.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self) -> None:
        self.inbound.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def close(self, code: int = 1000) -> None:
        self.close_code = code


@pytest.fixture
def bus():
    return EventBus(redis=fakeredis.aioredis.FakeRedis(decode_responses=True))


@pytest.mark.asyncio
async def test_bus_events_are_forwarded_to_the_socket(bus):
    ws = FakeWebSocket()
    fanout = EventFanout(ws, bus, write_timeout=1)
    runner = asyncio.create_task(fanout.run())
    await asyncio.sleep(0.05)

    await bus.publish(bus.result_subject("security", "t1"), {"task_id": "t1", "success": True})
    for _ in range(100):
        if ws.sent:
            break
        await asyncio.sleep(0.01)
    ws.disconnect()
    await asyncio.wait_for(runner, 2)

    wire = json.loads(ws.sent[0])
    assert wire["type"] == "result"
    assert wire["subject"] == "fleet-a.results.security.t1"
    assert wire["data"] == {"task_id": "t1", "success": True}


@pytest.mark.asyncio
async def test_ws_command_publishes_task(bus):
    ws = FakeWebSocket()
    fanout = EventFanout(ws, bus, write_timeout=1)
    runner = asyncio.create_task(fanout.run())
    await asyncio.sleep(0.05)

    ws.push_text(json.dumps({"action": "dispatch", "knight": "kay", "domain": "research", "task": "dig"}))
    for _ in range(100):
        if ws.sent:
            break
        await asyncio.sleep(0.01)
    ws.disconnect()
    await asyncio.wait_for(runner, 2)

    wire = json.loads(ws.sent[0])
    assert wire["type"] == "task"
    assert wire["subject"].startswith("fleet-a.tasks.research.kay-ws-")


@pytest.mark.asyncio
async def test_invalid_commands_are_dropped():
    bus = MagicMock()
    bus.dispatch = AsyncMock()
    fanout = EventFanout(FakeWebSocket(), bus)
    assert await fanout.handle_command("garbage") is None
    assert await fanout.handle_command(json.dumps({"action": "other"})) is None
    assert await fanout.handle_command(json.dumps(
        {"action": "dispatch", "knight": "kay", "domain": "research", "task": "x" * 10001}
    )) is None
    bus.dispatch.assert_not_awaited()


@pytest.mark.asyncio
async def test_stalled_client_is_disconnected():
    subscription = MagicMock()
    subscription.unsubscribe = AsyncMock()
    bus = MagicMock()
    bus.subscribe_events = AsyncMock(return_value=subscription)

    ws = FakeWebSocket(send_delay=10)
    fanout = EventFanout(ws, bus, write_timeout=0.05)
    runner = asyncio.create_task(fanout.run())
    await asyncio.sleep(0)

    assert await fanout.send("{}") is False
    await asyncio.wait_for(runner, 1)
    subscription.unsubscribe.assert_awaited_once()
    assert await fanout.send("{}") is False


@pytest.mark.asyncio
async def test_bus_unavailable_closes_socket_with_try_again_later():
    bus = MagicMock()
    bus.subscribe_events = AsyncMock(side_effect=RedisConnectionError("redis down"))

    ws = FakeWebSocket()
    fanout = EventFanout(ws, bus)
    await asyncio.wait_for(fanout.run(), 1)

    assert ws.close_code == 1013
    assert ws.sent == []
