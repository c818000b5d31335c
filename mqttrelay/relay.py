"""Process-level orchestrator: upstream lifecycle, reconnect policy, pump into the hub."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, AsyncIterator, Dict, Optional

from .errors import ConnectError, SubscribeError, UpstreamDisconnect
from .hub import FanoutHub
from .state import RelayState
from .upstream import BrokerEndpoint, Credentials, Message, UpstreamSession, UpstreamSource

log = logging.getLogger(__name__)


class Relay:
    """
    Owns the UpstreamSource and drives the process state machine:
    INIT → CONNECTING_UPSTREAM → SUBSCRIBED → SERVING → SHUTTING_DOWN → TERMINATED.
    A broker disconnect while SERVING goes back to CONNECTING_UPSTREAM; the hub and
    its subscribers are left alone, so open clients resume after resubscription.
    """

    def __init__(
        self,
        source: UpstreamSource,
        hub: FanoutHub,
        *,
        endpoint: BrokerEndpoint,
        topic: str,
        credentials: Credentials = Credentials(),
        connect_attempts: int = 3,
        debug_messages: bool = False,
        backoff_initial: float = 1.0,
        backoff_max: float = 60.0,
    ) -> None:
        self.source = source
        self.hub = hub
        self.endpoint = endpoint
        self.topic = topic
        self._credentials = credentials
        self._connect_attempts = max(1, connect_attempts)
        self._debug_messages = debug_messages
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max

        self.state = RelayState()
        self.state.upstream.broker = str(endpoint)
        self.state.upstream.topic = topic

        self._session: Optional[UpstreamSession] = None
        self._stream: Optional[AsyncIterator[Message]] = None
        self._stopping = asyncio.Event()

    # ── Public API ───────────────────────────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        self.state.subscribers = self.hub.subscriber_count
        self.state.published = self.hub.published
        self.state.dropped = self.hub.dropped
        return self.state.to_dict()

    async def start(self) -> None:
        """Connect and subscribe, retrying ConnectError up to connect_attempts times."""
        self.state.phase = "CONNECTING_UPSTREAM"
        delay = self._backoff_initial
        for attempt in range(1, self._connect_attempts + 1):
            try:
                await self._open_session()
                return
            except ConnectError as exc:
                if attempt >= self._connect_attempts:
                    log.error("giving up on broker after %d attempts: %s", attempt, exc)
                    raise
                log.warning("connect attempt %d/%d failed: %s", attempt, self._connect_attempts, exc)
            if await self._sleep(delay):
                raise ConnectError("stopped before the broker connection was established")
            delay = min(delay * 2.0, self._backoff_max)

    async def run(self) -> None:
        """Pump upstream messages into the hub until stop(); reconnect on disconnect."""
        if self._stream is None:
            await self.start()
        try:
            while not self._stopping.is_set():
                self.state.phase = "SERVING"
                try:
                    await self._pump()
                    raise UpstreamDisconnect("message stream ended")
                except UpstreamDisconnect as exc:
                    if self._stopping.is_set():
                        break
                    log.warning("%s; reconnecting", exc)
                    self.state.upstream.state = "DISCONNECTED"
                    self.state.upstream.last_error = str(exc)
                await self._close_session()
                self.state.phase = "CONNECTING_UPSTREAM"
                if not await self._reconnect():
                    break
        finally:
            await self._close_session()

    async def stop(self) -> None:
        """Signal the pump to stop; the caller cancels the run() task."""
        self._stopping.set()
        if self.state.phase != "TERMINATED":
            self.state.phase = "SHUTTING_DOWN"

    async def shutdown(self) -> None:
        """Release the upstream session and end every subscriber. Call once run() has returned."""
        await self.stop()
        await self._close_session()
        await self.hub.close()
        self.state.phase = "TERMINATED"

    # ── Internals ───────────────────────────────────────────────────────────

    async def _open_session(self) -> None:
        self.state.upstream.state = "CONNECTING"
        try:
            session = await self.source.connect(self.endpoint, self._credentials)
        except ConnectError as exc:
            self.state.upstream.state = "FAILED"
            self.state.upstream.last_error = str(exc)
            raise
        try:
            stream = await self.source.subscribe(session, self.topic)
        except SubscribeError as exc:
            self.state.upstream.state = "FAILED"
            self.state.upstream.last_error = str(exc)
            await session.close()
            raise
        except UpstreamDisconnect as exc:
            # transient: retried by the same policy as a failed connect
            self.state.upstream.state = "FAILED"
            self.state.upstream.last_error = str(exc)
            await session.close()
            raise ConnectError(exc.reason) from exc
        self._session, self._stream = session, stream
        self.state.upstream.state = "SUBSCRIBED"
        self.state.phase = "SUBSCRIBED"

    async def _pump(self) -> None:
        assert self._stream is not None
        async for message in self._stream:
            if self._debug_messages:
                log.debug("message #%d on %s (%d subscribers)", message.seq, message.topic, self.hub.subscriber_count)
            await self.hub.publish(message)

    async def _reconnect(self) -> bool:
        """Exponential backoff + jitter until subscribed again. False if stopped."""
        delay = self._backoff_initial
        while not self._stopping.is_set():
            self.state.upstream.reconnects += 1
            try:
                await self._open_session()
                log.info("resubscribed to %s", self.topic)
                return True
            except ConnectError as exc:
                log.warning("reconnect failed: %s", exc)
            jitter = random.uniform(0.75, 1.25)
            if await self._sleep(min(self._backoff_max, delay) * jitter):
                return False
            delay = min(delay * 2.0, self._backoff_max)
        return False

    async def _sleep(self, timeout: float) -> bool:
        """Sleep unless stopped first; True means stop was requested."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _close_session(self) -> None:
        stream, self._stream = self._stream, None
        session, self._session = self._session, None
        if stream is not None:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        if session is not None:
            await session.close()
            if self.state.upstream.state != "FAILED":
                self.state.upstream.state = "DISCONNECTED"
