"""Downstream WebSocket server: uvicorn running the relay app in-process."""

from __future__ import annotations

import logging
from typing import Optional

import uvicorn

from .connection import ConnectionManager
from .http_api import make_app
from .relay import Relay

log = logging.getLogger(__name__)


class Server:
    def __init__(
        self,
        relay: Relay,
        manager: ConnectionManager,
        *,
        host: str = "0.0.0.0",
        port: int = 3000,
        log_level: str = "info",
    ) -> None:
        self.app = make_app(relay, manager)
        self.host = host
        self.port = port
        config = uvicorn.Config(
            app=self.app,
            host=host,
            port=port,
            log_level=log_level.lower(),
            loop="asyncio",
            timeout_graceful_shutdown=5,
        )
        self._server: Optional[uvicorn.Server] = uvicorn.Server(config)

    async def serve(self) -> None:
        """Accept connections until stop(); each connection runs in its own task."""
        log.info("listening on %s:%d", self.host, self.port)
        await self._server.serve()

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
