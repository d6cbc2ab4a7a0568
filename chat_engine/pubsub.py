"""
Topic-addressed publish/subscribe transport.

Topics are plain strings built by the helpers below. The in-process EventBus
delivers events to asyncio queues that the SSE routes in main.py drain.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence


def chat_topic(channel_id: str) -> str:
    return f"chat:{channel_id}"


def private_topic(user_id: str) -> str:
    return f"private:{user_id}"


class Broker(Protocol):
    """Publish primitive consumed by the fanout layer."""

    async def publish(self, topics: Sequence[str], event: str, data: dict[str, Any]) -> None:
        ...


class EventBus:
    def __init__(self, *, max_sub_queue: int = 200):
        self._subs: dict[str, set[asyncio.Queue[dict[str, Any]]]] = defaultdict(set)
        self._sequence: dict[str, int] = defaultdict(int)
        self._max_sub_queue = max_sub_queue
        self._lock = asyncio.Lock()
        self._dropped: set[asyncio.Queue[dict[str, Any]]] = set()

    async def subscribe(self, topic: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._max_sub_queue)
        async with self._lock:
            self._subs[topic].add(queue)
        return queue

    async def unsubscribe(self, topic: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        async with self._lock:
            self._subs[topic].discard(queue)
            self._dropped.discard(queue)
            if not self._subs[topic]:
                self._subs.pop(topic, None)

    async def publish(self, topics: Sequence[str], event: str, data: dict[str, Any]) -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        async with self._lock:
            for topic in topics:
                self._sequence[topic] += 1
                envelope = {
                    "topic": topic,
                    "event": event,
                    "data": data,
                    "timestamp": timestamp,
                    "sequence": self._sequence[topic],
                }

                # Slow subscribers are dropped rather than blocking the publisher
                dead: list[asyncio.Queue[dict[str, Any]]] = []
                for queue in self._subs.get(topic, set()):
                    try:
                        queue.put_nowait(envelope)
                    except asyncio.QueueFull:
                        dead.append(queue)
                for queue in dead:
                    self._subs[topic].discard(queue)
                    self._dropped.add(queue)

    def is_dropped(self, queue: asyncio.Queue[dict[str, Any]]) -> bool:
        """True once the queue overflowed and stopped receiving events."""
        return queue in self._dropped

    async def subscriber_count(self, topic: str) -> int:
        async with self._lock:
            return len(self._subs.get(topic, set()))


_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        from chat_engine.config import settings

        _event_bus = EventBus(max_sub_queue=settings.EVENT_QUEUE_SIZE)
    return _event_bus


def reset_event_bus() -> None:
    global _event_bus
    _event_bus = None
