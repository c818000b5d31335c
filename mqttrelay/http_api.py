from __future__ import annotations
import logging

from fastapi import FastAPI, WebSocket

from .connection import ConnectionManager
from .relay import Relay

log = logging.getLogger(__name__)

def make_app(relay: Relay, manager: ConnectionManager) -> FastAPI:
    app = FastAPI(title="mqttrelay")

    @app.get("/healthz")
    async def healthz():
        return {"ok": relay.state.phase not in {"SHUTTING_DOWN", "TERMINATED"}, "phase": relay.state.phase}

    @app.get("/api/state")
    async def get_state():
        return relay.snapshot()

    @app.websocket("/")
    async def relay_root(ws: WebSocket):
        await manager.on_accept(ws)

    @app.websocket("/ws")
    async def relay_ws(ws: WebSocket):
        await manager.on_accept(ws)

    return app
