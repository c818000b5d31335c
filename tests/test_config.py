# tests/test_config.py

from __future__ import annotations

import json

import pytest

from mqttrelay.config import Config
from mqttrelay.errors import ConfigError


def test_env_only_with_defaults(relay_env):
    relay_env.setenv("BROKER_URI", "mqtts://broker.example.com")
    relay_env.setenv("TOPIC", "sensors/#")
    cfg = Config.load()
    assert cfg.broker_uri == "mqtts://broker.example.com"
    assert cfg.topic == "sensors/#"
    assert cfg.listen_host == "0.0.0.0"
    assert cfg.listen_port == 3000
    assert cfg.subscriber_backlog == 256
    assert cfg.connect_attempts == 3
    assert cfg.payload_mode == "text"
    assert cfg.debug_messages is False
    assert cfg.load_password() is None


def test_legacy_config_file(relay_env, tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "uri": "broker.example.com",
        "topic": "plant/line1",
        "username": "relay",
        "password": "from-file",
        "port": 3100,
    }))
    relay_env.setenv("CONFIG_FILE", str(path))
    cfg = Config.load()
    assert (cfg.broker_uri, cfg.topic, cfg.username, cfg.listen_port) == (
        "broker.example.com", "plant/line1", "relay", 3100,
    )
    assert cfg.load_password() == "from-file"


def test_env_wins_over_config_file(relay_env, tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"uri": "file-broker", "topic": "file/topic", "password": "p1"}))
    relay_env.setenv("CONFIG_FILE", str(path))
    relay_env.setenv("TOPIC", "env/topic")
    relay_env.setenv("LISTEN_PORT", "8080")
    relay_env.setenv("BROKER_PASSWORD", "p2")
    cfg = Config.load()
    assert cfg.broker_uri == "file-broker"
    assert cfg.topic == "env/topic"
    assert cfg.listen_port == 8080
    assert cfg.load_password() == "p2"


def test_password_file(relay_env, tmp_path):
    secret = tmp_path / "pw"
    secret.write_text("s3cret\n")
    relay_env.setenv("BROKER_URI", "broker")
    relay_env.setenv("TOPIC", "t")
    relay_env.setenv("BROKER_PASSWORD_FILE", str(secret))
    assert Config.load().load_password() == "s3cret"


@pytest.mark.parametrize("content", [None, ""])
def test_bad_password_file(relay_env, tmp_path, content):
    secret = tmp_path / "pw"
    if content is not None:
        secret.write_text(content)
    relay_env.setenv("BROKER_URI", "broker")
    relay_env.setenv("TOPIC", "t")
    relay_env.setenv("BROKER_PASSWORD_FILE", str(secret))
    with pytest.raises(ConfigError):
        Config.load().load_password()


@pytest.mark.parametrize("env", [
    {},
    {"BROKER_URI": "broker"},
    {"TOPIC": "t"},
    {"BROKER_URI": "broker", "TOPIC": "t", "LISTEN_PORT": "http"},
    {"BROKER_URI": "broker", "TOPIC": "t", "SUBSCRIBER_BACKLOG": "0"},
    {"BROKER_URI": "broker", "TOPIC": "t", "PAYLOAD_MODE": "json"},
    {"BROKER_URI": "broker", "TOPIC": "t", "LOG_LEVEL": "LOUD"},
])
def test_invalid_environment(relay_env, env):
    for k, v in env.items():
        relay_env.setenv(k, v)
    with pytest.raises(ConfigError):
        Config.load()


def test_missing_or_malformed_config_file(relay_env, tmp_path):
    relay_env.setenv("CONFIG_FILE", str(tmp_path / "absent.json"))
    with pytest.raises(ConfigError):
        Config.load()
    bad = tmp_path / "bad.json"
    bad.write_text('{"port": "not-a-port"}')
    relay_env.setenv("CONFIG_FILE", str(bad))
    with pytest.raises(ConfigError):
        Config.load()


def test_debug_and_binary_toggles(relay_env):
    relay_env.setenv("BROKER_URI", "broker")
    relay_env.setenv("TOPIC", "t")
    relay_env.setenv("DEBUG_MESSAGES", "yes")
    relay_env.setenv("PAYLOAD_MODE", "BINARY")
    cfg = Config.load()
    assert cfg.debug_messages is True
    assert cfg.payload_mode == "binary"


def test_log_level_is_normalised(relay_env):
    relay_env.setenv("BROKER_URI", "broker")
    relay_env.setenv("TOPIC", "t")
    assert Config.load().log_level == "INFO"
    relay_env.setenv("LOG_LEVEL", " debug ")
    assert Config.load().log_level == "DEBUG"
