"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..events import EngineEvent
from .base import BaseTransport

# (serialized form, event); the JSON mirrors what Redis would carry
RawEvent = Tuple[str, EngineEvent]


class InMemoryTransport(BaseTransport[RawEvent]):
    """Per-topic FIFO queues living in this process."""

    poll_interval = 0.05

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawEvent]] = defaultdict(deque)

    async def publish(self, topic: str, event: EngineEvent) -> None:
        self._queues[self.check_topic(topic)].append((event.to_json(), event))

    def pending(self, topic: str) -> List[EngineEvent]:
        """Events queued on ``topic`` that nobody consumed yet."""
        return [event for _, event in self._queues[topic]]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, EngineEvent]]:
        queue = self._queues[self.check_topic(topic)]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            if queue:
                raw = queue.popleft()
                yield raw, raw[1]
            else:
                await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawEvent) -> None:
        """Popping already consumed the message."""
