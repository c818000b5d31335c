"""Error taxonomy for the relay."""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    pass


class ConfigError(RelayError):
    pass


class ConnectError(RelayError):
    """Broker unreachable or refused the connection."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"connect failed: {reason}")
        self.reason = reason


class SubscribeError(RelayError):
    """Broker rejected the topic subscription."""

    def __init__(self, topic: str, cause: object) -> None:
        super().__init__(f"subscribe to {topic!r} failed: {cause}")
        self.topic = topic
        self.cause = cause


class UpstreamDisconnect(RelayError):
    """Terminal signal of a message stream: the broker session is gone."""

    def __init__(self, reason: str = "session lost") -> None:
        super().__init__(f"upstream disconnected: {reason}")
        self.reason = reason


class SubscriptionClosed(RelayError):
    pass


class SubscriberOverflowError(RelayError):
    def __init__(self, subscriber_id: int, backlog: int) -> None:
        super().__init__(f"subscriber {subscriber_id} exceeded backlog of {backlog}")
        self.subscriber_id = subscriber_id
        self.backlog = backlog


class DownstreamWriteError(RelayError):
    def __init__(self, peer: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"write to {peer} failed: {cause!r}")
        self.peer = peer
        self.cause = cause
