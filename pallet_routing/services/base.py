from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, List, Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from pallet_routing.core.errors import LockContention
from pallet_routing.schemas.realtime import DomainEvent
from pallet_routing.services.realtime import NotificationBus, broadcast_manager

logger = logging.getLogger(__name__)

# lock_not_available, deadlock_detected, serialization_failure
LOCK_CONTENTION_SQLSTATES = frozenset({"55P03", "40P01", "40001"})


def sqlstate_of(exc: DBAPIError) -> Optional[str]:
    """SQLSTATE reported by the driver, if any."""
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


class BaseService:
    """
    Base class for services. Holds a session for use across multiple repositories.

    Services should keep business logic and orchestration, delegating data access
    to repositories. Mutating operations run inside ``unit_of_work()`` so that every
    ledger touched by one operation commits or rolls back together.
    """

    def __init__(self, session: AsyncSession, bus: Optional[NotificationBus] = None) -> None:
        self.session = session
        self.bus: NotificationBus = bus if bus is not None else broadcast_manager

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[List[DomainEvent]]:
        """
        Run a block atomically and publish the events it collected once committed.

        Any exception rolls the whole transaction back and propagates; events of a
        failed block are discarded. Lock timeouts and deadlocks reported by the
        database surface as ``LockContention``.
        """
        events: List[DomainEvent] = []
        try:
            yield events
            await self.session.commit()
        except DBAPIError as exc:
            await self.session.rollback()
            state = sqlstate_of(exc)
            if state in LOCK_CONTENTION_SQLSTATES:
                logger.warning("Operation aborted on lock contention (sqlstate %s)", state)
                raise LockContention(
                    "The pallet is being changed by another operation; retry",
                    details={"sqlstate": state},
                ) from exc
            raise
        except Exception:
            await self.session.rollback()
            raise
        await self.publish(events)

    async def publish(self, events: Iterable[DomainEvent]) -> None:
        """Best-effort delivery: a failing bus never undoes committed work."""
        for evt in events:
            try:
                await self.bus.publish(evt)
            except Exception:
                logger.exception("Failed to publish %s event", evt.event)
