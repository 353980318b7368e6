"""
Alembic runner for the routing schema, configured in code instead of an alembic.ini.

    python -m pallet_routing.db.run_migrations upgrade head
    python -m pallet_routing.db.run_migrations downgrade -1
    python -m pallet_routing.db.run_migrations current
"""

import logging
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

from alembic import command
from alembic.config import Config

from pallet_routing.db.config import RoutingStoreSettings, get_store_settings

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

# Default argument for commands that take a revision.
_COMMANDS: Dict[str, tuple[Callable[..., object], Optional[str]]] = {
    "upgrade": (command.upgrade, "head"),
    "downgrade": (command.downgrade, "-1"),
    "current": (command.current, None),
    "history": (command.history, None),
    "heads": (command.heads, None),
    "show": (command.show, "head"),
}


# PUBLIC_INTERFACE
def alembic_config(settings: Optional[RoutingStoreSettings] = None) -> Config:
    """Alembic config pointing at the packaged migrations and the routing store."""
    settings = settings or get_store_settings()
    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    cfg.set_main_option("sqlalchemy.url", settings.sync_database_url)
    return cfg


# PUBLIC_INTERFACE
def upgrade_head() -> None:
    """Bring the routing schema to the latest revision. Blocking; run it off the event loop."""
    logger.info("Upgrading routing schema to head")
    command.upgrade(alembic_config(), "head")


# PUBLIC_INTERFACE
def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point; returns the process exit code."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        logger.error("No Alembic command given; supported: %s", ", ".join(sorted(_COMMANDS)))
        return 1
    name, rest = args[0], args[1:]
    if name not in _COMMANDS:
        logger.error("Unsupported Alembic command: %s", name)
        return 2
    func, default = _COMMANDS[name]
    if not rest and default is not None:
        rest = [default]
    func(alembic_config(), *rest)
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    sys.exit(main())
