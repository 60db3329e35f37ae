"""Event transports and the factory that picks one from configuration."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowRelayConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport
from .redis import RedisTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[FlowRelayConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``FLOWRELAY_TRANSPORT`` or the config."""

    config = config or load_config()
    name = (backend or os.getenv("FLOWRELAY_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        settings = config.transport.redis
        return RedisTransport(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
        )
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "RedisTransport", "get_transport"]
