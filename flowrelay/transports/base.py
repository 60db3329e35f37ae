"""Transport interface carrying engine events to out-of-process consumers."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, List, Optional, Tuple, TypeVar

from ..events import TOPICS, EngineEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """One queue per event topic.

    The engine only publishes. Consumers such as a reminder scheduler or a
    token issuer subscribe to the topics they handle and ack each message.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @staticmethod
    def check_topic(topic: str) -> str:
        if topic not in TOPICS:
            raise ValueError(f"Unknown event topic: {topic}")
        return topic

    @abc.abstractmethod
    async def publish(self, topic: str, event: EngineEvent) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, EngineEvent]]:
        """Yield ``(raw message, event)`` pairs until ``lifespan`` seconds pass."""
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        raise NotImplementedError

    async def drain(self, topic: str, lifespan: float = 0.5) -> List[EngineEvent]:
        """Consume and ack whatever arrives on ``topic`` within ``lifespan``."""
        events: List[EngineEvent] = []
        async for raw, event in self.subscribe(topic, lifespan=lifespan):
            events.append(event)
            await self.ack(raw)
        return events
