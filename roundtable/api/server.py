"""FastAPI server — REST + WebSocket interface for the Round Table dashboard.

Each panel talks to its own provider; when one backing system is down only its
endpoints answer 503 and the rest of the dashboard keeps working.
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, PlainTextResponse, Response
from httpx import HTTPError
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from config.settings import Settings, get_settings
from roundtable.api.fanout import EventFanout
from roundtable.core.projection import project_chain
from roundtable.core.validation import DispatchValidationError, is_identifier, validate_dispatch
from roundtable.providers.briefings import BriefingStore, InvalidKey
from roundtable.providers.bus import BusTimeout, EventBus
from roundtable.providers.chains import ChainProvider
from roundtable.providers.errors import NotFound, ProviderUnavailable
from roundtable.providers.fleet import FleetProvider
from roundtable.providers.kube import KubeClient

log = structlog.get_logger()


def configure_logging(debug: bool = False) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if debug else logging.INFO),
    )


class DispatchBody(BaseModel):
    knight: str = ""
    domain: str = ""
    task: str = ""
    timeout_ms: int = Field(default=0, ge=0)


def _unavailable(exc: Exception, endpoint: str) -> HTTPException:
    log.warning("api.provider_unavailable", endpoint=endpoint, error=str(exc))
    return HTTPException(status_code=503, detail=str(exc) or "Service unavailable")


def _upstream_failed(exc: Exception, endpoint: str, detail: str) -> HTTPException:
    log.error("api.upstream_error", endpoint=endpoint, error=str(exc))
    return HTTPException(status_code=500, detail=detail)


def create_app(
    settings: Settings | None = None,
    *,
    bus: EventBus | None = None,
    kube: KubeClient | None = None,
    use_kube: bool = True,
) -> FastAPI:
    """Build the app. Tests inject ``bus`` / ``kube``; production builds both from settings."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.debug)
        owns_bus = bus is None
        app.state.bus = bus or EventBus.from_settings(settings)
        app.state.kube = kube if kube is not None or not use_kube else KubeClient.from_settings(settings)
        app.state.fleet = FleetProvider(app.state.kube, settings.namespace)
        app.state.chains = ChainProvider(app.state.kube, settings.namespace)
        app.state.briefings = BriefingStore(settings.vault_path)
        if not await app.state.bus.ping():
            log.warning("api.bus_unreachable", url=settings.bus_url)
        log.info(
            "roundtable.api_startup",
            app=settings.app_name,
            namespace=settings.namespace,
            port=settings.api_port,
        )
        yield
        if owns_bus:
            await app.state.bus.close()
        if app.state.kube is not None and kube is None:
            await app.state.kube.aclose()
        log.info("roundtable.api_shutdown")

    app = FastAPI(
        title="Round Table Dashboard API",
        description="Fleet status, task dispatch, message flow and chain execution",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
        allow_credentials=False,
    )

    # ==================== Health ====================

    @app.get("/api/health")
    async def health() -> dict:
        return {"status": "ok"}

    # ==================== Fleet ====================

    @app.get("/api/fleet")
    async def fleet(request: Request) -> list[dict]:
        try:
            knights = await request.app.state.fleet.list_knights()
        except ProviderUnavailable as exc:
            raise _unavailable(exc, "fleet")
        except HTTPError as exc:
            raise _upstream_failed(exc, "fleet", "Failed to list fleet")
        return [k.to_dict() for k in knights]

    @app.get("/api/fleet/{knight}")
    async def knight_detail(knight: str, request: Request) -> dict:
        if not is_identifier(knight):
            raise HTTPException(status_code=400, detail="Invalid knight name")
        try:
            return await request.app.state.fleet.get_pod(knight)
        except ProviderUnavailable as exc:
            raise _unavailable(exc, "fleet.knight")
        except (NotFound, HTTPError):
            raise HTTPException(status_code=404, detail="Knight not found")

    @app.get("/api/fleet/{knight}/logs", response_class=PlainTextResponse)
    async def knight_logs(knight: str, request: Request) -> PlainTextResponse:
        if not is_identifier(knight):
            raise HTTPException(status_code=400, detail="Invalid knight name")
        try:
            text = await request.app.state.fleet.logs(
                knight, tail_lines=settings.log_tail_lines, timeout=settings.log_timeout_sec
            )
        except ProviderUnavailable as exc:
            raise _unavailable(exc, "fleet.logs")
        except NotFound:
            raise HTTPException(status_code=404, detail="Knight not found")
        except HTTPError as exc:
            raise _upstream_failed(exc, "fleet.logs", "Failed to read logs")
        return PlainTextResponse(text)

    @app.get("/api/fleet/{knight}/session")
    async def knight_session(knight: str, request: Request, type: str = "stats") -> Response:
        if not is_identifier(knight):
            raise HTTPException(status_code=400, detail="Invalid knight name")
        if not is_identifier(type):
            raise HTTPException(status_code=400, detail="Invalid introspection type")
        try:
            body = await request.app.state.bus.introspect(
                knight, type, timeout=settings.introspect_timeout_sec
            )
        except BusTimeout as exc:
            log.warning("api.introspect_timeout", knight=knight, error=str(exc))
            raise HTTPException(status_code=504, detail="Knight introspection timeout")
        except (RedisError, OSError) as exc:
            raise _unavailable(exc, "fleet.session")
        return Response(content=body, media_type="application/json")

    # ==================== Tasks ====================

    @app.get("/api/tasks")
    async def task_history(request: Request) -> dict:
        try:
            events, total = await request.app.state.bus.history(settings.history_limit)
        except (RedisError, OSError) as exc:
            log.error("api.history_unavailable", error=str(exc))
            raise HTTPException(status_code=500, detail="Task history unavailable")
        return {"results": [e.to_wire() for e in events], "messages": total}

    @app.post("/api/tasks/dispatch")
    async def task_dispatch(body: DispatchBody, request: Request) -> dict:
        try:
            dispatch = validate_dispatch(body.knight, body.domain, body.task, body.timeout_ms)
        except DispatchValidationError as exc:
            log.info("api.dispatch_rejected", knight=body.knight[:64], reason=str(exc))
            raise HTTPException(status_code=400, detail=str(exc))
        try:
            return await request.app.state.bus.dispatch(dispatch, origin="ui")
        except (RedisError, OSError) as exc:
            log.error("api.dispatch_failed", knight=dispatch.knight, error=str(exc))
            raise HTTPException(status_code=500, detail="Failed to dispatch task")

    # ==================== Chains ====================

    async def _get_chain(name: str, request: Request):
        if not is_identifier(name):
            raise HTTPException(status_code=400, detail="Invalid chain name")
        try:
            return await request.app.state.chains.get_chain(name)
        except ProviderUnavailable as exc:
            raise _unavailable(exc, "chains.detail")
        except (NotFound, HTTPError):
            raise HTTPException(status_code=404, detail="Chain not found")

    @app.get("/api/chains")
    async def chains(request: Request) -> list[dict]:
        try:
            runs = await request.app.state.chains.list_chains()
        except ProviderUnavailable as exc:
            raise _unavailable(exc, "chains")
        except (NotFound, HTTPError) as exc:
            raise _upstream_failed(exc, "chains", "Failed to list chains")
        return [run.to_dict() for run in runs]

    @app.get("/api/chains/{name}")
    async def chain_detail(name: str, request: Request) -> dict:
        return (await _get_chain(name, request)).to_dict()

    @app.get("/api/chains/{name}/layout")
    async def chain_layout(name: str, request: Request) -> dict:
        view = project_chain(await _get_chain(name, request))
        if view.error:
            raise HTTPException(status_code=422, detail=view.error)
        return view.to_dict()

    # ==================== Briefings ====================

    @app.get("/api/briefings")
    async def briefings(request: Request) -> list[str]:
        try:
            return request.app.state.briefings.list()
        except NotFound:
            raise HTTPException(status_code=404, detail="Briefings directory not found")

    @app.get("/api/briefings/{date}")
    async def briefing(date: str, request: Request) -> Response:
        try:
            text = request.app.state.briefings.get(date)
        except InvalidKey as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except NotFound:
            raise HTTPException(status_code=404, detail="Briefing not found")
        return Response(content=text, media_type="text/markdown")

    # ==================== WebSocket ====================

    @app.websocket("/api/ws")
    async def events_ws(websocket: WebSocket) -> None:
        origin = websocket.headers.get("origin")
        allowed = settings.origins
        if origin and allowed and origin not in allowed:
            log.warning("ws.origin_rejected", origin=origin)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await websocket.accept()
        fanout = EventFanout(websocket, websocket.app.state.bus, settings.ws_write_timeout_sec)
        await fanout.run()

    # ==================== SPA ====================

    static_root = Path(settings.static_dir).resolve()

    @app.get("/{path:path}", include_in_schema=False)
    async def spa(path: str) -> FileResponse:
        if path.startswith("api/"):
            raise HTTPException(status_code=404, detail="Not found")
        if "." in Path(path).name:
            target = (static_root / path).resolve()
            if not target.is_relative_to(static_root) or not target.is_file():
                raise HTTPException(status_code=404, detail="Not found")
            return FileResponse(target)
        index = static_root / "index.html"
        if not index.is_file():
            raise HTTPException(status_code=404, detail="UI not built")
        return FileResponse(index)

    return app


app = create_app()


def main() -> None:
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
