from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Protocol, Set

from starlette.websockets import WebSocket, WebSocketState

from pallet_routing.schemas.realtime import DomainEvent, WsEnvelope

logger = logging.getLogger(__name__)

SUPERVISOR_TOPIC = "routing:supervisor"
PACKAGING_TOPIC = "routing:packaging"


# PUBLIC_INTERFACE
def machine_topic(machine_id: int) -> str:
    """Topic for a station's open work list."""
    return f"routing:machine:{machine_id}"


# PUBLIC_INTERFACE
def cell_topic(cell_id: int) -> str:
    """Topic for a buffer cell's occupancy."""
    return f"routing:cell:{cell_id}"


# PUBLIC_INTERFACE
def part_topic(part_id: int) -> str:
    """Topic for a part's pallets and aggregate progress."""
    return f"routing:part:{part_id}"


class NotificationBus(Protocol):
    """Fire-and-forget sink for routing domain events."""

    async def publish(self, event: DomainEvent) -> None:
        ...


class BroadcastManager:
    """
    Simple in-process pub-sub manager for WebSocket topics.

    Topics:
      - routing:supervisor (every event)
      - routing:machine:{machine_id}
      - routing:cell:{cell_id}
      - routing:part:{part_id}
      - routing:packaging

    A topic exists only while it has subscribers; events for topics nobody watches are dropped.
    """

    def __init__(self) -> None:
        self._topics: Dict[str, Set[WebSocket]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._global_lock = asyncio.Lock()

    def _prune(self, topic: str) -> None:
        # Caller holds the global lock.
        if not self._topics.get(topic):
            self._topics.pop(topic, None)
            self._locks.pop(topic, None)

    # PUBLIC_INTERFACE
    async def connect(self, topic: str, websocket: WebSocket) -> None:
        """
        Add an accepted websocket to topic subscribers.
        """
        async with self._global_lock:
            subscribers = self._topics.setdefault(topic, set())
            self._locks.setdefault(topic, asyncio.Lock())
            subscribers.add(websocket)
            logger.info("WebSocket connected to topic=%s; subscribers=%d", topic, len(subscribers))

    # PUBLIC_INTERFACE
    async def disconnect(self, topic: str, websocket: WebSocket) -> None:
        """Remove websocket from topic subscribers, dropping the topic once nobody is left."""
        async with self._global_lock:
            subscribers = self._topics.get(topic)
            if subscribers is None:
                return
            subscribers.discard(websocket)
            logger.info("WebSocket disconnected from topic=%s; subscribers=%d", topic, len(subscribers))
            self._prune(topic)

    # PUBLIC_INTERFACE
    async def broadcast(self, topic: str, message: dict, exclude: Optional[WebSocket] = None) -> None:
        """
        Broadcast a dict message to all subscribers in the topic.
        """
        async with self._global_lock:
            subscribers = list(self._topics.get(topic, ()))
            lock = self._locks.get(topic)
        if not subscribers or lock is None:
            return
        to_drop: list[WebSocket] = []
        async with lock:
            for ws in subscribers:
                if exclude is not None and ws is exclude:
                    continue
                try:
                    if ws.application_state == WebSocketState.DISCONNECTED or ws.client_state == WebSocketState.DISCONNECTED:
                        to_drop.append(ws)
                        continue
                    await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to send message to websocket; scheduling drop")
                    to_drop.append(ws)
        if to_drop:
            async with self._global_lock:
                for ws in to_drop:
                    self._topics.get(topic, set()).discard(ws)
                self._prune(topic)

    # PUBLIC_INTERFACE
    async def publish(self, event: DomainEvent) -> None:
        """Deliver a domain event to each of its watched topics and to the supervisor topic."""
        payload = event.model_dump(mode="json")
        for topic in dict.fromkeys([*event.topics, SUPERVISOR_TOPIC]):
            if topic not in self._topics:
                continue
            env = WsEnvelope(type=event.event, payload=payload["payload"], at=event.at, channel=topic)
            await self.broadcast(topic, env.model_dump(mode="json"))


# Singleton instance
broadcast_manager = BroadcastManager()
