from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import Literal, Optional, Dict, Any

Phase = Literal[
    "INIT", "CONNECTING_UPSTREAM", "SUBSCRIBED", "SERVING", "SHUTTING_DOWN", "TERMINATED"
]

@dataclass
class UpstreamState:
    state: Literal["DISCONNECTED", "CONNECTING", "SUBSCRIBED", "FAILED"] = "DISCONNECTED"
    broker: Optional[str] = None
    topic: Optional[str] = None
    reconnects: int = 0
    last_error: Optional[str] = None

@dataclass
class RelayState:
    phase: Phase = "INIT"
    upstream: UpstreamState = field(default_factory=UpstreamState)
    subscribers: int = 0
    published: int = 0
    dropped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "upstream": asdict(self.upstream),
            "subscribers": self.subscribers,
            "published": self.published,
            "dropped": self.dropped,
        }
