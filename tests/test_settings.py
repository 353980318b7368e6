"""Routing store settings and the programmatic Alembic configuration."""

from pathlib import Path

import pytest

from pallet_routing.db.config import RoutingStoreSettings
from pallet_routing.db.run_migrations import alembic_config, main

STORE_ENV = (
    "POSTGRES_URL",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "POSTGRES_DB",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "DB_LOCK_TIMEOUT_MS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in STORE_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _settings(**values):
    return RoutingStoreSettings(_env_file=None, **values)


class TestRoutingStoreSettings:
    def test_url_from_parts(self, clean_env):
        clean_env.setenv("POSTGRES_USER", "router")
        clean_env.setenv("POSTGRES_PASSWORD", "secret")
        clean_env.setenv("POSTGRES_DB", "routing")
        clean_env.setenv("POSTGRES_HOST", "db")

        settings = _settings()

        assert settings.database_url == "postgresql://router:secret@db:5432/routing"
        assert settings.async_database_url == "postgresql+asyncpg://router:secret@db:5432/routing"

    @pytest.mark.parametrize(
        "url",
        [
            "postgres://u:p@h/d",
            "postgresql://u:p@h/d",
            "postgresql+psycopg://u:p@h/d",
            "postgresql+asyncpg://u:p@h/d",
        ],
    )
    def test_driver_is_normalized(self, clean_env, url):
        settings = _settings(POSTGRES_URL=url)

        assert settings.async_database_url == "postgresql+asyncpg://u:p@h/d"
        assert settings.sync_database_url == "postgresql://u:p@h/d"

    def test_missing_configuration(self, clean_env):
        with pytest.raises(ValueError, match="POSTGRES_URL"):
            _settings().database_url

    def test_engine_options_carry_pool_and_lock_timeout(self, clean_env):
        clean_env.setenv("DB_LOCK_TIMEOUT_MS", "1500")

        options = _settings(DB_POOL_SIZE=3).engine_options()

        assert options["pool_size"] == 3
        assert options["pool_pre_ping"] is True
        assert options["connect_args"] == {"server_settings": {"lock_timeout": "1500"}}

    def test_lock_timeout_can_be_disabled(self, clean_env):
        options = _settings(DB_LOCK_TIMEOUT_MS=0).engine_options()

        assert "connect_args" not in options


class TestAlembicConfig:
    def test_points_at_packaged_migrations(self, clean_env):
        cfg = alembic_config(_settings(POSTGRES_URL="postgresql+asyncpg://u:p@h/d"))

        location = Path(cfg.get_main_option("script_location"))
        assert location.name == "migrations"
        assert (location / "env.py").is_file()
        assert any((location / "versions").glob("*_routing_schema.py"))
        assert cfg.get_main_option("sqlalchemy.url") == "postgresql://u:p@h/d"

    @pytest.mark.parametrize("argv, code", [([], 1), (["stamp", "head"], 2)])
    def test_cli_rejects_unknown_usage(self, argv, code):
        assert main(argv) == code
