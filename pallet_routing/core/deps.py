from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pallet_routing.core.settings import AppSettings, get_app_settings
from pallet_routing.db.models.enums import StationMode
from pallet_routing.db.session import get_async_session
from pallet_routing.services.coordinator import RoutingCoordinator
from pallet_routing.services.read_models import RoutingReadService

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an AsyncSession for the request.

    Coordinator operations commit or roll back on their own; this dependency only scopes the
    session to the request.
    """
    async for session in get_async_session():
        yield session


# PUBLIC_INTERFACE
def get_settings_dep() -> AppSettings:
    """Application settings for the request."""
    return get_app_settings()


# PUBLIC_INTERFACE
def get_shift_coordinator(
    session: AsyncSession = Depends(get_db_session),
    settings: AppSettings = Depends(get_settings_dep),
) -> RoutingCoordinator:
    """Coordinator for supervisor-assigned (shift) stations."""
    return RoutingCoordinator(session, StationMode.SHIFT_ASSIGNED, settings=settings)


# PUBLIC_INTERFACE
def get_self_service_coordinator(
    session: AsyncSession = Depends(get_db_session),
    settings: AppSettings = Depends(get_settings_dep),
) -> RoutingCoordinator:
    """Coordinator for self-service stations."""
    return RoutingCoordinator(session, StationMode.SELF_SERVICE, settings=settings)


# PUBLIC_INTERFACE
def get_read_service(session: AsyncSession = Depends(get_db_session)) -> RoutingReadService:
    """Read-model service for the request."""
    return RoutingReadService(session)
