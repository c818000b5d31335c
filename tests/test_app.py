# tests/test_app.py
#
# The process entry point: exit codes and ordered release of every resource.
# - no broker (FakeSource stands in for UpstreamSource)
# - no listening socket (FakeServer stands in for the uvicorn Server)

from __future__ import annotations

import asyncio
import os
import signal
from types import SimpleNamespace

import pytest

import mqttrelay.app as app_mod
from fakes import DISCONNECT, FakeSource


class FakeServer:
    on_serve = None

    def __init__(self, relay, manager, *, host, port, log_level) -> None:
        self.relay = relay
        self.manager = manager
        self.port = port
        self.log_level = log_level
        self.handle = None
        self.stop_called = False
        self._stop = asyncio.Event()

    async def serve(self) -> None:
        self.handle = await self.manager.hub.register()
        if FakeServer.on_serve is not None:
            FakeServer.on_serve(self)
        await self._stop.wait()

    def stop(self) -> None:
        self.stop_called = True
        self._stop.set()


@pytest.fixture()
def wired(relay_env):
    relay_env.setenv("BROKER_URI", "mqtt://broker")
    relay_env.setenv("TOPIC", "sensors/#")
    relay_env.setenv("CONNECT_ATTEMPTS", "1")
    relay_env.setenv("LISTEN_PORT", "3123")
    source = FakeSource()
    servers = []

    def make_server(*args, **kwargs):
        server = FakeServer(*args, **kwargs)
        servers.append(server)
        return server

    relay_env.setattr(app_mod, "UpstreamSource", lambda **kwargs: source)
    relay_env.setattr(app_mod, "Server", make_server)
    FakeServer.on_serve = None
    yield SimpleNamespace(env=relay_env, source=source, servers=servers)
    FakeServer.on_serve = None


def test_missing_config_exits_2(relay_env):
    assert asyncio.run(app_mod.main()) == 2


def test_invalid_log_level_exits_2(wired):
    wired.env.setenv("LOG_LEVEL", "chatty")
    assert asyncio.run(app_mod.main()) == 2
    assert wired.servers == []


def test_unusable_broker_uri_exits_2(wired):
    wired.env.setenv("BROKER_URI", "http://broker")
    assert asyncio.run(app_mod.main()) == 2


def test_unreachable_broker_exits_1(wired):
    wired.source.connect_failures = 1
    assert asyncio.run(app_mod.main()) == 1
    relay = wired.servers[0].relay
    assert relay.state.phase == "TERMINATED"
    assert relay.state.upstream.state == "FAILED"


def test_rejected_topic_exits_1_and_closes_session(wired):
    wired.source.reject_topic = True
    assert asyncio.run(app_mod.main()) == 1
    assert wired.source.sessions[0].closed
    assert wired.servers[0].relay.state.phase == "TERMINATED"


def test_sigterm_shuts_everything_down(wired):
    FakeServer.on_serve = lambda server: os.kill(os.getpid(), signal.SIGTERM)
    assert asyncio.run(app_mod.main()) == 0
    server = wired.servers[0]
    assert server.port == 3123
    assert server.log_level == "INFO"
    assert server.stop_called
    assert server.handle.closed
    assert server.relay.state.phase == "TERMINATED"
    assert wired.source.sessions[0].closed


def test_fatal_error_while_serving_exits_1(wired):
    def break_upstream(server):
        wired.source.reject_topic = True
        wired.source.feeds[0].put_nowait(DISCONNECT)

    FakeServer.on_serve = break_upstream
    assert asyncio.run(app_mod.main()) == 1
    server = wired.servers[0]
    assert server.stop_called
    assert server.handle.closed
    assert server.relay.state.phase == "TERMINATED"
    assert all(s.closed for s in wired.source.sessions)
    assert len(wired.source.sessions) == 2
