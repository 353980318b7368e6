from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RoutingStoreSettings(BaseSettings):
    """
    Connection and pooling settings for the routing store.

    Every station operation runs in one transaction holding row locks on pallets, the part
    and buffer cells, so besides the connection URL this carries the pool limits and the
    lock wait bound that decide how concurrent stations queue behind each other.

    The URL is taken from POSTGRES_URL, or assembled from the standard postgres container
    variables POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_DB, POSTGRES_HOST and POSTGRES_PORT.
    """

    POSTGRES_URL: Optional[str] = Field(default=None, description="Full PostgreSQL connection URL")
    POSTGRES_USER: Optional[str] = Field(default=None)
    POSTGRES_PASSWORD: Optional[str] = Field(default=None)
    POSTGRES_DB: Optional[str] = Field(default=None)
    POSTGRES_HOST: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432)

    SQL_ECHO: bool = Field(default=False, description="Log every SQL statement")

    DB_POOL_SIZE: int = Field(default=10, ge=1, description="Connections kept open per process")
    DB_MAX_OVERFLOW: int = Field(default=10, ge=0, description="Extra connections under burst load")
    DB_POOL_TIMEOUT: float = Field(default=30.0, gt=0, description="Seconds to wait for a free connection")
    DB_LOCK_TIMEOUT_MS: int = Field(
        default=5000,
        ge=0,
        description="Longest wait for a pallet/part/cell row lock before the operation is rejected; 0 waits forever",
    )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def database_url(self) -> str:
        """POSTGRES_URL when set, otherwise built from the POSTGRES_* parts."""
        if self.POSTGRES_URL:
            return self.POSTGRES_URL
        if not all([self.POSTGRES_USER, self.POSTGRES_PASSWORD, self.POSTGRES_DB]):
            raise ValueError(
                "Routing store is not configured: set POSTGRES_URL or "
                "POSTGRES_USER, POSTGRES_PASSWORD and POSTGRES_DB."
            )
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def async_database_url(self) -> str:
        """The URL with the asyncpg driver, as the engine needs it."""
        return re.sub(r"^postgres(ql)?(\+\w+)?://", "postgresql+asyncpg://", self.database_url)

    @property
    def sync_database_url(self) -> str:
        """Driverless URL for Alembic's offline mode."""
        return re.sub(r"^postgres(ql)?(\+\w+)?://", "postgresql://", self.database_url)

    def engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``create_async_engine``."""
        options: Dict[str, Any] = {
            "echo": self.SQL_ECHO,
            "pool_pre_ping": True,
            "pool_size": self.DB_POOL_SIZE,
            "max_overflow": self.DB_MAX_OVERFLOW,
            "pool_timeout": self.DB_POOL_TIMEOUT,
        }
        if self.DB_LOCK_TIMEOUT_MS:
            options["connect_args"] = {"server_settings": {"lock_timeout": str(self.DB_LOCK_TIMEOUT_MS)}}
        return options


# PUBLIC_INTERFACE
@lru_cache(maxsize=1)
def get_store_settings() -> RoutingStoreSettings:
    """Process-wide routing store settings, read from the environment once."""
    return RoutingStoreSettings()
