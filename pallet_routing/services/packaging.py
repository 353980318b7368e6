from __future__ import annotations

import logging
from typing import Protocol

from pallet_routing.schemas.realtime import DomainEvent
from pallet_routing.services.realtime import NotificationBus, PACKAGING_TOPIC, part_topic

logger = logging.getLogger(__name__)


class PackagingQueue(Protocol):
    """One-way handoff to the packaging task queue."""

    async def signal_part_ready(self, part_id: int) -> None:
        ...


class BusPackagingQueue:
    """Signals packaging readiness as a ``part.ready_for_packaging`` event on the bus."""

    def __init__(self, bus: NotificationBus) -> None:
        self.bus = bus

    async def signal_part_ready(self, part_id: int) -> None:
        logger.info("Part %s completed routing; signalling packaging", part_id)
        await self.bus.publish(
            DomainEvent(
                event="part.ready_for_packaging",
                topics=[PACKAGING_TOPIC, part_topic(part_id)],
                payload={"part_id": part_id},
            )
        )
