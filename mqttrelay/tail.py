"""Tail a running relay: print every WebSocket frame, reconnect on loss."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import random
import sys
from typing import Awaitable, Callable, Optional, Union

import aiohttp

log = logging.getLogger(__name__)

OnMessage = Union[Callable[[Union[str, bytes]], Awaitable[None]], Callable[[Union[str, bytes]], None]]


class RelayTail:
    def __init__(self, *, url: str, on_message: OnMessage) -> None:
        self._url = url
        self._on_message = on_message
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._stopping = asyncio.Event()

    # ── Public API ───────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Run until stop() is called. Reconnect with exponential backoff + jitter."""
        delay = 1.0
        try:
            while not self._stopping.is_set():
                try:
                    await self.connect_once()
                    delay = 1.0
                    continue
                except asyncio.CancelledError:
                    raise
                except (aiohttp.ClientError, OSError) as exc:
                    if not self._stopping.is_set():
                        log.warning("relay connection error: %r", exc)
                jitter = random.uniform(0.75, 1.25)
                timeout = min(60.0, delay) * jitter
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=timeout)
                    break
                except asyncio.TimeoutError:
                    delay = min(delay * 2.0, 60.0)
        finally:
            await self._close_ws()
            await self._close_session()

    async def stop(self) -> None:
        self._stopping.set()
        await self._close_ws()

    async def connect_once(self) -> None:
        """One lifecycle: connect → receive until closed → close."""
        session = await self._ensure_session()
        ws = await session.ws_connect(self._url, heartbeat=30, autoping=True)
        self._ws = ws
        log.info("connected to %s", self._url)
        try:
            while not self._stopping.is_set():
                msg = await ws.receive()
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    res = self._on_message(msg.data)
                    if asyncio.iscoroutine(res):
                        await res
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                                  aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        finally:
            log.info("disconnected from %s", self._url)
            await self._close_ws()

    # ── Internals ───────────────────────────────────────────────────────────

    async def _close_ws(self) -> None:
        ws, self._ws = self._ws, None
        if ws:
            with contextlib.suppress(Exception):
                await ws.close()

    async def _close_session(self) -> None:
        sess, self._session = self._session, None
        if sess:
            with contextlib.suppress(Exception):
                await sess.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        session = self._session
        if session is None or session.closed:
            self._session = session = aiohttp.ClientSession()
        return session


def _print_frame(data: Union[str, bytes]) -> None:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    print(data, flush=True)


async def _run(url: str) -> None:
    tail = RelayTail(url=url, on_message=_print_frame)
    try:
        await tail.start()
    finally:
        await tail.stop()


def run(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(prog="mqttrelay-tail", description=__doc__)
    parser.add_argument("url", nargs="?", default="ws://127.0.0.1:3000/")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, stream=sys.stderr)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_run(args.url))


if __name__ == "__main__":
    run()
