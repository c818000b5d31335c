"""mqttrelay entry: subscribe upstream, then serve the fan-out over WebSocket."""
from __future__ import annotations
import asyncio, logging, sys
import contextlib
import signal
from typing import Optional

from .config import Config
from .connection import ConnectionManager
from .errors import ConfigError, ConnectError, SubscribeError
from .hub import FanoutHub
from .relay import Relay
from .server import Server
from .upstream import BrokerEndpoint, Credentials, UpstreamSource

log = logging.getLogger(__name__)

def build(cfg: Config, source: Optional[UpstreamSource] = None) -> tuple[Relay, Server]:
    """Wire hub, upstream, relay and server from a loaded Config."""
    endpoint = BrokerEndpoint.parse(cfg.broker_uri)
    credentials = Credentials(username=cfg.username, password=cfg.load_password())
    hub = FanoutHub(backlog=cfg.subscriber_backlog)
    if source is None:
        source = UpstreamSource(client_id=cfg.client_id, payload_mode=cfg.payload_mode)
    relay = Relay(
        source,
        hub,
        endpoint=endpoint,
        topic=cfg.topic,
        credentials=credentials,
        connect_attempts=cfg.connect_attempts,
        debug_messages=cfg.debug_messages,
    )
    manager = ConnectionManager(hub, debug_messages=cfg.debug_messages)
    server = Server(
        relay,
        manager,
        host=cfg.listen_host,
        port=cfg.listen_port,
        log_level=cfg.log_level,
    )
    return relay, server

async def main() -> int:
    try:
        cfg = Config.load()
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO)
        log.error("configuration error: %s", exc)
        return 2
    logging.basicConfig(level=cfg.log_level)

    try:
        relay, server = build(cfg)
    except (ConfigError, ValueError) as exc:
        log.error("configuration error: %s", exc)
        return 2

    try:
        await relay.start()
    except (ConnectError, SubscribeError) as exc:
        log.error("startup failed: %s", exc)
        await relay.shutdown()
        return 1

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            asyncio.get_running_loop().add_signal_handler(sig, stop.set)

    t_relay = asyncio.create_task(relay.run(), name="relay")
    t_server = asyncio.create_task(server.serve(), name="server")
    t_stop = asyncio.create_task(stop.wait(), name="stop")
    exit_code = 0
    try:
        await asyncio.wait({t_relay, t_server, t_stop}, return_when=asyncio.FIRST_COMPLETED)
        if t_relay.done() and not t_relay.cancelled() and t_relay.exception() is not None:
            log.error("relay stopped: %s", t_relay.exception())
            exit_code = 1
    finally:
        await relay.stop()
        t_relay.cancel()
        t_stop.cancel()
        await asyncio.gather(t_relay, t_stop, return_exceptions=True)
        # ends every delivery loop before uvicorn drains connections
        await relay.shutdown()
        server.stop()
        await asyncio.gather(t_server, return_exceptions=True)
        log.info("terminated")
    return exit_code

def run() -> None:
    sys.exit(asyncio.run(main()))

if __name__ == "__main__":
    run()
