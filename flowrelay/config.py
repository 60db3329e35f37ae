from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Where engine events are published."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class ReviewSettings(BaseModel):
    """AI review gate settings."""

    enabled: bool = True
    model: str = "openai:gpt-4o-mini"
    timeout_seconds: float = 30.0


class RetrySettings(BaseModel):
    attempts: int = 3


class FlowRelayConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    review: ReviewSettings = ReviewSettings()
    sub_flow_timeout_seconds: float = 10.0
    retry: RetrySettings = RetrySettings()


def load_config(path: Optional[str] = None) -> FlowRelayConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWRELAY_CONFIG env
            variable or 'flowrelay.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWRELAY_CONFIG", "flowrelay.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowRelayConfig(**data)
    else:
        config = FlowRelayConfig()

    env_db_url = os.getenv("FLOWRELAY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("FLOWRELAY_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    return config
