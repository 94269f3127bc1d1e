# ==============================================================================
# FILE: web/api.py
# PURPOSE: FastAPI server exposing the console views and a websocket feed.
# ==============================================================================
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Union

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config import Settings
from ..core.data_models import ViewMode
from ..core.errors import ActionError
from ..core.grouping import destination_label, domain_source_badge, group_close_ids
from ..core.telemetry import ConnectionTelemetry, TelemetryService
from ..core.view import ASC, DESC, highlight

log = logging.getLogger("connscope.web")


class CloseRequest(BaseModel):
    ids: List[Union[int, str]] = []


class ViewRequest(BaseModel):
    page: Optional[str] = None
    mode: Optional[ViewMode] = None
    expand: Optional[str] = None
    sort: Optional[str] = None
    sort_dir: Optional[str] = None
    search: Optional[str] = None
    hidden: Optional[bool] = None


class SourceRequest(BaseModel):
    api_base: Optional[str] = None
    access_key: Optional[str] = None
    refresh_interval: Optional[int] = None


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: str):
        for connection in self.active_connections[:]:
            try:
                await connection.send_text(message)
            except Exception:
                self.disconnect(connection)


async def broadcast_data(manager: ConnectionManager, rendered: asyncio.Event, telemetry: ConnectionTelemetry):
    """Sends the console state to every client after each rendered frame."""
    while True:
        await rendered.wait()
        rendered.clear()
        if not manager.active_connections:
            continue
        await manager.broadcast(json.dumps(telemetry.state()))


def create_app(service: TelemetryService, start_stream: bool = True) -> FastAPI:
    manager = ConnectionManager()
    rendered = asyncio.Event()
    telemetry = service.telemetry

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        def on_render(_):
            rendered.set()

        service.add_listener(on_render)
        task = asyncio.create_task(broadcast_data(manager, rendered, telemetry))
        if start_stream:
            service.start()
        yield
        service.remove_listener(on_render)
        task.cancel()
        await service.aclose()

    app = FastAPI(lifespan=lifespan)
    app.state.service = service
    app.state.manager = manager

    @app.get("/api/status", response_class=JSONResponse)
    async def api_status():
        state = telemetry.state()
        return {
            "status": state["status"],
            "paused": state["paused"],
            "apiBase": service.settings.api_base,
            "refreshInterval": service.settings.refresh_interval,
            "uploadTotal": state["uploadTotal"],
            "downloadTotal": state["downloadTotal"],
            "totalSessions": state["totalSessions"],
            "totalConnections": state["totalConnections"],
        }

    @app.get("/api/connections", response_class=JSONResponse)
    async def api_connections(sort: Optional[str] = None, dir: Optional[str] = None, q: Optional[str] = None):
        if dir is not None and dir not in (ASC, DESC):
            raise HTTPException(422, "dir must be 'asc' or 'desc'.")
        groups = telemetry.visible_groups(sort_key=sort, sort_dir=dir, query=q)
        query = telemetry.search_query if q is None else q
        return {
            "viewMode": telemetry.view_mode.value,
            "connections": [g.to_dict() for g in groups],
            "domainSources": {g.id: domain_source_badge(g) for g in groups},
            # destination cell split into (text, is_match) runs for the search highlight
            "highlights": {g.id: highlight(destination_label(g.metadata), query) for g in groups} if query else {},
            "connRates": {k: v.to_dict() for k, v in telemetry.group_rates.rates.items()},
            "detailRates": {k: v.to_dict() for k, v in telemetry.detail_rates.rates.items()},
        }

    @app.get("/api/closed", response_class=JSONResponse)
    async def api_closed(q: Optional[str] = None):
        return {"closed": [r.to_dict() for r in telemetry.closed_view(q)]}

    @app.get("/api/traffic", response_class=JSONResponse)
    async def api_traffic():
        return {"traffic": telemetry.sampler.to_list()}

    @app.post("/api/view", response_class=JSONResponse)
    async def api_view(req: ViewRequest):
        if req.page is not None:
            service.set_page(req.page)
        if req.mode is not None:
            telemetry.set_view_mode(req.mode)
        if req.expand:
            telemetry.toggle_expanded(req.expand)
        if req.sort and req.sort_dir in (ASC, DESC):
            telemetry.set_sort(req.sort, req.sort_dir)
        elif req.sort:
            telemetry.toggle_sort(req.sort)
        if req.search is not None:
            telemetry.set_search(req.search)
        if req.hidden is not None:
            service.set_hidden(req.hidden)
        return telemetry.state()

    @app.post("/api/connections/close", response_class=JSONResponse)
    async def api_close_connections(req: CloseRequest):
        try:
            closed = await service.close_connections(req.ids)
        except ActionError as e:
            raise HTTPException(502, f"Close failed: {e}")
        if not closed:
            raise HTTPException(400, "No valid connection ids.")
        return {"status": "success", "closed": closed}

    @app.post("/api/connections/{group_id}/close", response_class=JSONResponse)
    async def api_close_group(group_id: str):
        group = telemetry.find_group(group_id)
        if group is None:
            raise HTTPException(404, f"Unknown connection '{group_id}'.")
        try:
            closed = await service.close_connections(group_close_ids(group))
        except ActionError as e:
            raise HTTPException(502, f"Close failed: {e}")
        if not closed:
            raise HTTPException(400, "Connection has no closable sessions.")
        return {"status": "success", "closed": closed}

    @app.post("/api/stream/pause", response_class=JSONResponse)
    async def api_pause():
        service.set_paused(True)
        return {"status": telemetry.status.value, "paused": True}

    @app.post("/api/stream/resume", response_class=JSONResponse)
    async def api_resume():
        service.set_paused(False)
        return {"status": telemetry.status.value, "paused": False}

    @app.post("/api/stream/source", response_class=JSONResponse)
    async def api_source(req: SourceRequest):
        changed = await service.reconfigure(req.api_base, req.access_key, req.refresh_interval)
        return {
            "changed": changed,
            "apiBase": service.settings.api_base,
            "refreshInterval": service.settings.refresh_interval,
            "status": telemetry.status.value,
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await manager.connect(websocket)
        log.info("dashboard client connected (%d open)", len(manager.active_connections))
        try:
            await websocket.send_text(json.dumps(telemetry.state()))
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(websocket)
            log.info("dashboard client disconnected")

    return app


app = create_app(TelemetryService(Settings()))
