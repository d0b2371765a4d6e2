"""
Shared bootstrap for the maintenance scripts.

Every script goes through the engine; none of them computes a status or a
total on its own.
"""

import os
import sys
from pathlib import Path

# Ensure project root is in path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


async def init_dependencies(**config_overrides):
    """Load config, build logging and the database, return (db, logger_manager, engine)."""
    from Config.config_manager import load_engine_config
    from Shared_Utils.logging_manager import LoggerManager
    from database_manager.database_session_manager import DatabaseSessionManager
    from reconciliation_engine import AllocationReconciliationEngine

    config = load_engine_config()
    overrides = {k: v for k, v in config_overrides.items() if v is not None}
    if overrides:
        config = config.with_overrides(**overrides)

    logger_manager = LoggerManager.from_engine_config(config)
    shared_logger = logger_manager.get_logger("shared_logger")

    database_session_manager = DatabaseSessionManager.from_engine_config(config, logger=shared_logger)
    await database_session_manager.initialize()

    engine = AllocationReconciliationEngine(database_session_manager, logger_manager, config)
    return database_session_manager, logger_manager, engine


def banner(title: str) -> None:
    print("=" * 80)
    print(title)
    print("=" * 80)


def database_label() -> str:
    """Database name for the banner, without credentials."""
    url = os.getenv("DATABASE_URL", "")
    return url.rsplit("/", 1)[-1] if url else os.getenv("DB_NAME", "?")
