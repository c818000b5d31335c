"""Configuration helpers for environment-driven settings."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ValidationError

from .errors import ConfigError

PAYLOAD_MODES = {"text", "binary"}
LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _getenv_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "on"}


def _getenv_int(name: str, default: int, minimum: int = 0) -> int:
    v = (os.getenv(name) or "").strip()
    if not v:
        return default
    try:
        n = int(v)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {v!r}") from exc
    if n < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {n}")
    return n


def _getenv_str(name: str) -> Optional[str]:
    return (os.getenv(name) or "").strip() or None


class FileConfig(BaseModel):
    """Shape of the legacy ``config.json`` file."""

    uri: Optional[str] = None
    topic: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    port: Optional[int] = None


def read_config_file(path: str) -> FileConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"failed to read config file {path}: {exc}") from exc
    try:
        return FileConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"invalid config file {path}: {exc}") from exc


@dataclass(frozen=True)
class Config:
    broker_uri: str
    topic: str
    username: Optional[str]
    password_file: Optional[str]
    client_id: Optional[str]

    listen_host: str
    listen_port: int

    subscriber_backlog: int
    connect_attempts: int
    payload_mode: str

    # debug toggles
    debug_messages: bool

    # inline password from config.json; env/file lookups win in load_password()
    file_password: Optional[str] = None

    log_level: str = "INFO"

    @staticmethod
    def load() -> "Config":
        """Build a Config from environment, falling back to CONFIG_FILE values."""
        file_cfg = FileConfig()
        config_file = _getenv_str("CONFIG_FILE")
        if config_file:
            file_cfg = read_config_file(config_file)

        broker_uri = _getenv_str("BROKER_URI") or file_cfg.uri
        topic      = _getenv_str("TOPIC") or file_cfg.topic
        if not broker_uri:
            raise ConfigError("broker URI unavailable: set BROKER_URI or 'uri' in CONFIG_FILE")
        if not topic:
            raise ConfigError("topic unavailable: set TOPIC or 'topic' in CONFIG_FILE")

        username      = _getenv_str("BROKER_USERNAME") or file_cfg.username
        password_file = _getenv_str("BROKER_PASSWORD_FILE")
        client_id     = _getenv_str("MQTT_CLIENT_ID")

        listen_host = os.getenv("LISTEN_HOST", "0.0.0.0")
        listen_port = _getenv_int("LISTEN_PORT", file_cfg.port or 3000, minimum=1)

        subscriber_backlog = _getenv_int("SUBSCRIBER_BACKLOG", 256, minimum=1)
        connect_attempts   = _getenv_int("CONNECT_ATTEMPTS", 3, minimum=1)

        payload_mode = (os.getenv("PAYLOAD_MODE") or "text").strip().lower()
        if payload_mode not in PAYLOAD_MODES:
            raise ConfigError(f"PAYLOAD_MODE must be one of {sorted(PAYLOAD_MODES)}, got {payload_mode!r}")

        debug_messages = _getenv_bool("DEBUG_MESSAGES", False)

        log_level = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
        if log_level not in LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {sorted(LOG_LEVELS)}, got {log_level!r}")

        return Config(
            broker_uri=broker_uri,
            topic=topic,
            username=username,
            password_file=password_file,
            client_id=client_id,
            listen_host=listen_host,
            listen_port=listen_port,
            subscriber_backlog=subscriber_backlog,
            connect_attempts=connect_attempts,
            payload_mode=payload_mode,
            debug_messages=debug_messages,
            file_password=file_cfg.password,
            log_level=log_level,
        )

    def load_password(self) -> Optional[str]:
        """Return the broker password from environment, secret file or config file."""
        # 1) explicit env wins
        env_pw = _getenv_str("BROKER_PASSWORD")
        if env_pw:
            return env_pw

        # 2) secret file
        path = (self.password_file or "").strip()
        if path:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    password = f.read().strip()
            except FileNotFoundError as exc:
                raise ConfigError(f"broker password file not found: {path}") from exc
            except OSError as exc:
                raise ConfigError(f"failed to read broker password file {path}: {exc}") from exc
            if not password:
                raise ConfigError(f"broker password file {path} is empty")
            return password

        # 3) config.json, may be None for anonymous brokers
        return self.file_password
