import logging

import pytest

from fakes import FakeMqttClient


@pytest.fixture(autouse=True)
def _debug_logs(caplog):
    caplog.set_level(logging.DEBUG, logger="mqttrelay")


@pytest.fixture
def mqtt_clients():
    FakeMqttClient.instances.clear()
    yield FakeMqttClient.instances
    FakeMqttClient.instances.clear()


@pytest.fixture
def relay_env(monkeypatch):
    """Clear every variable Config.load() reads so tests start from defaults."""
    for name in (
        "CONFIG_FILE", "BROKER_URI", "TOPIC", "BROKER_USERNAME", "BROKER_PASSWORD",
        "BROKER_PASSWORD_FILE", "MQTT_CLIENT_ID", "LISTEN_HOST", "LISTEN_PORT",
        "SUBSCRIBER_BACKLOG", "CONNECT_ATTEMPTS", "PAYLOAD_MODE", "DEBUG_MESSAGES", "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
