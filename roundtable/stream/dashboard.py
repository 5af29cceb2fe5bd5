"""Live dashboard wiring — stream client + REST poller → LiveProjection.

DashboardPoller pulls the slow-moving state over HTTP:

    GET /api/chains                        → projection.update_chains()
    GET /api/fleet                         → projection.update_statuses()
    GET /api/fleet/<knight>/session?type=stats
                                           → projection.update_session_costs()

Each source is polled independently; a failing endpoint is logged and skipped
so the others keep updating. LiveDashboard owns the client, projection,
notifier and poller and tears all of them down in close().
"""
import asyncio
from typing import Any

import httpx
import structlog

from roundtable.core.chains import ChainRun
from roundtable.core.notifications import TaskNotifier
from roundtable.core.projection import LiveProjection
from roundtable.stream.client import EventStreamClient

log = structlog.get_logger()

POLL_INTERVAL_SEC = 10.0


class DashboardPoller:
    def __init__(
        self,
        base_url: str,
        projection: LiveProjection,
        *,
        interval: float = POLL_INTERVAL_SEC,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.projection = projection
        self.interval = interval
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, projection: LiveProjection, settings=None, **kwargs) -> "DashboardPoller":
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()
        return cls(settings.dashboard_http_url, projection, interval=settings.poll_interval_sec, **kwargs)

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def poll_chains(self) -> list[ChainRun]:
        rows = await self._get_json("/api/chains")
        runs = [ChainRun.from_dict(r) for r in rows or [] if isinstance(r, dict)]
        self.projection.update_chains(runs)
        return runs

    async def poll_fleet(self) -> dict[str, str]:
        rows = await self._get_json("/api/fleet")
        statuses = {
            r["name"]: r.get("status", "offline")
            for r in rows or []
            if isinstance(r, dict) and r.get("name")
        }
        self.projection.update_statuses(statuses)
        return statuses

    async def _session_cost(self, knight: str) -> float | None:
        try:
            body = await self._get_json(f"/api/fleet/{knight}/session", {"type": "stats"})
        except (httpx.HTTPError, ValueError) as exc:
            log.debug("poller.session_unavailable", knight=knight, error=str(exc))
            return None
        session = body.get("session") if isinstance(body, dict) else None
        cost = session.get("cost") if isinstance(session, dict) else None
        if isinstance(cost, (int, float)) and not isinstance(cost, bool) and cost > 0:
            return float(cost)
        return None

    async def poll_session_costs(self, knights: list[str]) -> dict[str, float]:
        results = await asyncio.gather(*(self._session_cost(k) for k in knights))
        costs = {k: c for k, c in zip(knights, results) if c is not None}
        self.projection.update_session_costs(costs)
        return costs

    async def poll_once(self) -> None:
        try:
            await self.poll_chains()
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("poller.chains_failed", error=str(exc))
        try:
            statuses = await self.poll_fleet()
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("poller.fleet_failed", error=str(exc))
            return
        await self.poll_session_costs(list(statuses))

    async def _loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop())
        return self._task

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._client.aclose()


class LiveDashboard:
    """Client-side composition: event stream, projection, notifications, REST poll."""

    def __init__(
        self,
        client: EventStreamClient,
        projection: LiveProjection,
        poller: DashboardPoller,
        notifier: TaskNotifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client = client
        self.projection = projection
        self.poller = poller
        self.notifier = notifier or TaskNotifier()
        self._transport = transport
        self._unsubscribe = client.subscribe(self.notifier)

    @classmethod
    def from_settings(cls, settings=None, *, connector=None, transport=None, notifier=None) -> "LiveDashboard":
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()
        client = EventStreamClient.from_settings(settings, connector=connector)
        projection = LiveProjection.from_settings(client, settings)
        poller = DashboardPoller.from_settings(projection, settings, transport=transport)
        return cls(client, projection, poller, notifier, transport)

    async def start(self) -> None:
        await self.client.load_history(transport=self._transport)
        self.client.connect()
        self.poller.start()
        log.info("dashboard.started", url=self.client.url)

    async def close(self) -> None:
        self._unsubscribe()
        await self.poller.close()
        self.projection.close()
        await self.client.close()
        log.info("dashboard.closed")

    async def __aenter__(self) -> "LiveDashboard":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
