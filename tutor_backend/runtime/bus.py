from __future__ import annotations

import asyncio
from typing import Any, Dict, List

MAX_PENDING_PACKETS = 256


class EventBus:
    """Per-user fan-out of event packets to attached observers (websocket clients).

    A packet is a JSON-able dict; an ``audio`` entry, when present, carries raw
    PCM bytes that the websocket sends as a separate binary frame. Packets
    published while nobody is subscribed are dropped, and a subscriber that
    falls behind loses its oldest packets first.
    """

    def __init__(self, maxsize: int = MAX_PENDING_PACKETS) -> None:
        self.maxsize = maxsize
        self._subscribers: Dict[str, List[asyncio.Queue[Dict[str, Any]]]] = {}

    def subscribe(self, user: str) -> asyncio.Queue[Dict[str, Any]]:
        queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.setdefault(user, []).append(queue)
        return queue

    def unsubscribe(self, user: str, queue: asyncio.Queue[Dict[str, Any]]) -> None:
        queues = self._subscribers.get(user, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(user, None)

    def has_subscribers(self, user: str) -> bool:
        return bool(self._subscribers.get(user))

    def publish(self, user: str, packet: Dict[str, Any]) -> None:
        for queue in self._subscribers.get(user, []):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(packet)

    def delete(self, user: str) -> None:
        self._subscribers.pop(user, None)
