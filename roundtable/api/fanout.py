"""Per-connection event fan-out for the /api/ws endpoint.

One bus subscription per WebSocket forwards every task/result event to the
client. All writes go through one lock with a write deadline, so a stalled
peer cannot block the bus reader indefinitely. The client may send dispatch
commands on the same socket; invalid ones are dropped.
"""
import asyncio
import json

import structlog
from redis.exceptions import RedisError
from starlette import status
from starlette.websockets import WebSocket, WebSocketDisconnect

from roundtable.core.events import Event
from roundtable.core.validation import DispatchValidationError, validate_dispatch
from roundtable.providers.bus import EventBus

log = structlog.get_logger()


class EventFanout:
    def __init__(self, websocket: WebSocket, bus: EventBus, write_timeout: float = 10.0):
        self.websocket = websocket
        self.bus = bus
        self.write_timeout = write_timeout
        self._write_lock = asyncio.Lock()
        self._done = asyncio.Event()

    async def send(self, text: str) -> bool:
        if self._done.is_set():
            return False
        async with self._write_lock:
            try:
                await asyncio.wait_for(self.websocket.send_text(text), self.write_timeout)
            except asyncio.TimeoutError:
                log.warning("ws.write_timeout", timeout=self.write_timeout)
                self._done.set()
                return False
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                log.debug("ws.write_failed", error=str(exc))
                self._done.set()
                return False
        return True

    async def forward(self, event: Event) -> None:
        await self.send(json.dumps(event.to_wire()))

    async def handle_command(self, text: str) -> dict | None:
        try:
            cmd = json.loads(text)
        except ValueError:
            return None
        if not isinstance(cmd, dict) or cmd.get("action") != "dispatch":
            return None
        try:
            request = validate_dispatch(
                cmd.get("knight", ""), cmd.get("domain", ""), cmd.get("task", "")
            )
        except DispatchValidationError as exc:
            log.info("ws.dispatch_rejected", reason=str(exc))
            return None
        try:
            return await self.bus.dispatch(request, origin="ws")
        except (RedisError, OSError) as exc:
            log.warning("ws.dispatch_failed", knight=request.knight, error=str(exc))
            return None

    async def _receive_loop(self) -> None:
        while not self._done.is_set():
            message = await self.websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            text = message.get("text")
            if text is None and message.get("bytes") is not None:
                text = message["bytes"].decode("utf-8", errors="replace")
            if text:
                await self.handle_command(text)

    async def run(self) -> None:
        try:
            subscription = await self.bus.subscribe_events(self.forward)
        except (RedisError, OSError) as exc:
            log.warning("ws.bus_unavailable", error=str(exc))
            await self.websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
            return
        log.info("ws.client_connected")
        receiver = asyncio.create_task(self._receive_loop())
        stalled = asyncio.create_task(self._done.wait())
        try:
            await asyncio.wait({receiver, stalled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._done.set()
            for task in (receiver, stalled):
                task.cancel()
            await asyncio.gather(receiver, stalled, return_exceptions=True)
            await subscription.unsubscribe()
            log.info("ws.client_disconnected")
