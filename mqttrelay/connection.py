"""Per-connection delivery: one hub subscriber per downstream WebSocket."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Literal, Optional

from fastapi import WebSocket, status
from starlette.websockets import WebSocketState

from .errors import DownstreamWriteError, SubscriberOverflowError
from .hub import FanoutHub, SubscriberHandle

log = logging.getLogger(__name__)

ConnState = Literal["OPEN", "CLOSING", "CLOSED"]


class DownstreamConnection:
    def __init__(self, websocket: WebSocket, handle: SubscriberHandle) -> None:
        self.websocket = websocket
        self.handle = handle
        client = websocket.client
        self.peer = f"{client.host}:{client.port}" if client else "unknown"
        self.state: ConnState = "OPEN"
        self.sent = 0

    def __repr__(self) -> str:
        return f"<DownstreamConnection {self.peer} sub={self.handle.id} state={self.state} sent={self.sent}>"


class ConnectionManager:
    """
    Accepts a WebSocket, registers it with the hub and runs its delivery loop
    next to a receive watcher. Whichever ends first ends the connection; the
    subscriber is always deregistered and the socket released.
    """

    close_timeout = 5.0

    def __init__(self, hub: FanoutHub, *, debug_messages: bool = False) -> None:
        self.hub = hub
        self._debug_messages = debug_messages

    async def on_accept(self, websocket: WebSocket) -> None:
        await websocket.accept()
        handle = await self.hub.register()
        conn = DownstreamConnection(websocket, handle)
        log.info("client %s connected (subscriber %d)", conn.peer, handle.id)

        deliver = asyncio.create_task(self._deliver(conn), name=f"deliver-{handle.id}")
        watch = asyncio.create_task(self._watch(conn), name=f"watch-{handle.id}")
        # a stalled write never reads the handle again, so watch for the drop too
        dropped = asyncio.create_task(handle.wait_closed(), name=f"dropped-{handle.id}")
        tasks = (deliver, watch, dropped)
        close_code: Optional[int] = status.WS_1000_NORMAL_CLOSURE
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            if watch.done():
                # client went away; nothing left to close
                close_code = None
            else:
                close_code = self._close_code(conn, deliver)
        finally:
            conn.state = "CLOSING"
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.hub.deregister(handle)
            if close_code is not None:
                await self._close(conn, close_code)
            conn.state = "CLOSED"
            log.info("client %s closed (subscriber %d, %d sent)", conn.peer, handle.id, conn.sent)

    # ── Internals ───────────────────────────────────────────────────────────

    def _close_code(self, conn: DownstreamConnection, deliver: asyncio.Task) -> Optional[int]:
        if isinstance(conn.handle.error, SubscriberOverflowError):
            log.warning("client %s dropped: %s", conn.peer, conn.handle.error)
            return status.WS_1013_TRY_AGAIN_LATER
        if conn.handle.closed or not deliver.done():
            # hub closed on shutdown
            return status.WS_1001_GOING_AWAY
        exc = deliver.exception()
        if exc is None:
            return status.WS_1001_GOING_AWAY
        if isinstance(exc, DownstreamWriteError):
            log.warning("%s", exc)
            return status.WS_1011_INTERNAL_ERROR
        log.error("delivery to %s failed: %r", conn.peer, exc)
        return status.WS_1011_INTERNAL_ERROR

    async def _deliver(self, conn: DownstreamConnection) -> None:
        ws = conn.websocket
        async for message in conn.handle:
            payload = message.payload
            try:
                if isinstance(payload, str):
                    await ws.send_text(payload)
                else:
                    await ws.send_bytes(payload)
            except Exception as exc:
                raise DownstreamWriteError(conn.peer, exc) from exc
            conn.sent += 1
            if self._debug_messages:
                log.debug("sent #%d to %s", message.seq, conn.peer)

    async def _watch(self, conn: DownstreamConnection) -> None:
        """Drain (and ignore) client frames until the transport reports a close."""
        while True:
            msg = await conn.websocket.receive()
            if msg["type"] == "websocket.disconnect":
                return

    async def _close(self, conn: DownstreamConnection, code: int) -> None:
        ws = conn.websocket
        if ws.application_state != WebSocketState.CONNECTED or ws.client_state != WebSocketState.CONNECTED:
            return
        with contextlib.suppress(Exception):
            await asyncio.wait_for(ws.close(code=code), timeout=self.close_timeout)
