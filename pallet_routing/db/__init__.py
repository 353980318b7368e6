"""
Database package initializer exposing key public interfaces for configuration
and engine/session management.
"""

from .base import Base
from .config import RoutingStoreSettings, get_store_settings
from .session import (
    get_engine,
    get_async_session,
    get_session_maker,
)

# Import models to ensure they are registered with SQLAlchemy metadata
# when the db package is imported.
from . import models as models  # noqa: F401

__all__ = [
    "Base",
    "RoutingStoreSettings",
    "get_store_settings",
    "get_engine",
    "get_async_session",
    "get_session_maker",
    "models",
]
