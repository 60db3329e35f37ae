"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..events import EngineEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Events queued on Redis lists, one list per topic, oldest first."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "flowrelay",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{self.check_topic(topic)}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if self._redis is None:
            await self.connect()
        return self._redis

    async def publish(self, topic: str, event: EngineEvent) -> None:
        client = await self._client()
        await client.lpush(self.queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, EngineEvent]]:
        client = await self._client()
        queue = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            popped = await client.brpop(queue, timeout=1)
            if not popped:
                continue
            _, payload = popped
            try:
                event = EngineEvent.model_validate_json(payload)
            except PydanticValidationError as exc:
                logger.warning(f"Dropping malformed event on {queue}: {exc}")
                continue
            yield payload, event

    async def ack(self, raw_message: str) -> None:
        """BRPOP already removed the message; nothing to confirm."""
