"""MQTT upstream: one broker session, one topic subscription, one message stream."""

from __future__ import annotations

import contextlib
import itertools
import logging
import ssl
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Iterable, Optional, Union
from urllib.parse import unquote, urlsplit

import aiomqtt

from .errors import ConnectError, SubscribeError, UpstreamDisconnect

log = logging.getLogger(__name__)

Payload = Union[bytes, str]

# connection states of an UpstreamSession
DISCONNECTED = "DISCONNECTED"
CONNECTING = "CONNECTING"
SUBSCRIBED = "SUBSCRIBED"
FAILED = "FAILED"

_DEFAULT_PORTS = {"mqtt": 1883, "mqtts": 8883, "ws": 80, "wss": 443}


@dataclass(frozen=True)
class Message:
    payload: Payload
    topic: str
    seq: int
    received_at: float


@dataclass(frozen=True)
class Credentials:
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass(frozen=True)
class BrokerEndpoint:
    scheme: str
    host: str
    port: int
    path: Optional[str] = None
    credentials: Credentials = Credentials()

    @property
    def secure(self) -> bool:
        return self.scheme in {"mqtts", "wss"}

    @property
    def transport(self) -> str:
        return "websockets" if self.scheme in {"ws", "wss"} else "tcp"

    @staticmethod
    def parse(uri: str) -> "BrokerEndpoint":
        """Parse ``mqtts://[user:pass@]host[:port]``; a bare host means mqtts."""
        raw = (uri or "").strip()
        if not raw:
            raise ValueError("empty broker URI")
        if "://" not in raw:
            raw = "mqtts://" + raw
        parts = urlsplit(raw)
        scheme = parts.scheme.lower()
        if scheme not in _DEFAULT_PORTS:
            raise ValueError(f"unsupported broker scheme: {scheme!r}")
        if not parts.hostname:
            raise ValueError(f"broker URI has no host: {uri!r}")
        try:
            port = parts.port or _DEFAULT_PORTS[scheme]
        except ValueError as exc:
            raise ValueError(f"invalid port in broker URI {uri!r}") from exc
        creds = Credentials(
            username=unquote(parts.username) if parts.username else None,
            password=unquote(parts.password) if parts.password else None,
        )
        return BrokerEndpoint(
            scheme=scheme,
            host=parts.hostname,
            port=port,
            path=parts.path or None,
            credentials=creds,
        )

    def __str__(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}{self.path or ''}"


class UpstreamSession:
    """One live broker connection. Owned by the UpstreamSource that made it."""

    def __init__(self, client: Any, endpoint: BrokerEndpoint, stack: contextlib.AsyncExitStack) -> None:
        self.client = client
        self.endpoint = endpoint
        self.state = CONNECTING
        self.topic: Optional[str] = None
        self._stack = stack

    async def close(self) -> None:
        stack, self._stack = self._stack, None
        if stack is None:
            return
        if self.state != FAILED:
            self.state = DISCONNECTED
        try:
            await stack.aclose()
        except aiomqtt.MqttError as exc:
            # the broker link is already gone; nothing left to release
            log.debug("session close: %s", exc)

    def __repr__(self) -> str:
        return f"<UpstreamSession {self.endpoint} state={self.state} topic={self.topic!r}>"


def _failed_codes(granted: Iterable[Any]) -> list:
    failed = []
    for code in granted:
        is_failure = getattr(code, "is_failure", None)
        if is_failure is None:
            is_failure = int(code) >= 0x80
        if is_failure:
            failed.append(code)
    return failed


class UpstreamSource:
    """
    Owns broker sessions and turns the subscribed topic into a MessageStream.
    - connect(endpoint, credentials): one attempt, ConnectError on failure
    - subscribe(session, topic): once per session, SubscribeError on rejection,
      UpstreamDisconnect if the link fails before the broker answers
    Retry policy belongs to the caller.
    """

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        payload_mode: str = "text",
        client_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._client_id = client_id
        self._payload_mode = payload_mode
        self._client_factory = client_factory or aiomqtt.Client
        self._seq = itertools.count(1)

    def _client_kwargs(self, endpoint: BrokerEndpoint, credentials: Credentials) -> dict:
        kwargs: dict = {
            "hostname": endpoint.host,
            "port": endpoint.port,
            "username": credentials.username or endpoint.credentials.username,
            "password": credentials.password or endpoint.credentials.password,
            "identifier": self._client_id,
            "transport": endpoint.transport,
        }
        if endpoint.transport == "websockets" and endpoint.path:
            kwargs["websocket_path"] = endpoint.path
        if endpoint.secure:
            kwargs["tls_context"] = ssl.create_default_context()
        return kwargs

    async def connect(self, endpoint: BrokerEndpoint, credentials: Credentials = Credentials()) -> UpstreamSession:
        stack = contextlib.AsyncExitStack()
        try:
            client = self._client_factory(**self._client_kwargs(endpoint, credentials))
            session = UpstreamSession(client, endpoint, stack)
            await stack.enter_async_context(client)
        except aiomqtt.MqttError as exc:
            await stack.aclose()
            raise ConnectError(str(exc)) from exc
        except OSError as exc:
            await stack.aclose()
            raise ConnectError(f"{endpoint}: {exc}") from exc
        log.info("Connected to broker at %s", endpoint)
        return session

    async def subscribe(self, session: UpstreamSession, topic: str) -> AsyncIterator[Message]:
        if session.topic is not None:
            raise SubscribeError(topic, f"session already subscribed to {session.topic!r}")
        try:
            granted = await session.client.subscribe(topic)
        except aiomqtt.MqttError as exc:
            # link dropped or SUBACK never came; only a SUBACK failure code is a rejection
            session.state = FAILED
            raise UpstreamDisconnect(f"subscribe to {topic!r} interrupted: {exc}") from exc
        failed = _failed_codes(granted or ())
        if failed:
            session.state = FAILED
            raise SubscribeError(topic, f"rejected by broker: {failed}")
        session.topic = topic
        session.state = SUBSCRIBED
        log.info("Subscribed to %s", topic)
        return self._stream(session)

    def _decode(self, payload: Any) -> Payload:
        if payload is None:
            payload = b""
        elif isinstance(payload, (int, float)):
            payload = str(payload).encode()
        elif isinstance(payload, bytearray):
            payload = bytes(payload)
        if self._payload_mode == "text":
            if isinstance(payload, bytes):
                return payload.decode("utf-8", errors="replace")
            return payload
        if isinstance(payload, str):
            return payload.encode("utf-8")
        return payload

    async def _stream(self, session: UpstreamSession) -> AsyncIterator[Message]:
        """Yield every inbound message; end with UpstreamDisconnect on session loss."""
        try:
            async for raw in session.client.messages:
                yield Message(
                    payload=self._decode(raw.payload),
                    topic=str(raw.topic),
                    seq=next(self._seq),
                    received_at=time.time(),
                )
        except aiomqtt.MqttError as exc:
            session.state = FAILED
            raise UpstreamDisconnect(str(exc)) from exc
        session.state = FAILED
        raise UpstreamDisconnect("message stream ended")
