"""
Engine configuration.

EngineConfig is an immutable value handed to the engine's constructor. There is
no process-wide configuration object: two engines in one process may run with
different batch sizes or due-date rules.

Usage:
    from Config.config_manager import load_engine_config
    config = load_engine_config()
    engine = AllocationReconciliationEngine(db, logger_manager, config)

    # Tests / one-off tooling
    config = EngineConfig(database_url="sqlite+aiosqlite:///recon.db", sweep_batch_size=10)
"""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from Config.constants_core import (
    DEFAULT_CALL_DUE_MONTHS,
    DEFAULT_SWEEP_BATCH_SIZE,
    MAX_CALL_PERCENTAGE,
    MAX_SWEEP_BATCH_SIZE,
    MONEY_DECIMAL_PLACES,
)
from Config.environment import Environment, env as default_env
from Config.exceptions import ConfigMissingError, ConfigRangeError, ConfigTypeError
from Shared_Utils.url_helper import build_database_url_from_env


@dataclass(frozen=True)
class EngineConfig:
    database_url: Optional[str] = None
    sweep_batch_size: int = DEFAULT_SWEEP_BATCH_SIZE
    call_due_months: int = DEFAULT_CALL_DUE_MONTHS
    money_decimal_places: int = MONEY_DECIMAL_PLACES
    max_call_percentage: Decimal = MAX_CALL_PERCENTAGE
    enforce_unique_allocations: bool = False
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    def __post_init__(self):
        _check_range("RECON_SWEEP_BATCH_SIZE", self.sweep_batch_size, 1, MAX_SWEEP_BATCH_SIZE)
        _check_range("CAPITAL_CALL_DUE_MONTHS", self.call_due_months, 0, 120)
        _check_range("MONEY_DECIMAL_PLACES", self.money_decimal_places, 0, 8)
        _check_range("MAX_CALL_PERCENTAGE", self.max_call_percentage, 0, 100)

    def with_overrides(self, **changes) -> "EngineConfig":
        """Copy with selected fields replaced (CLI flags, tests)."""
        return replace(self, **changes)


def _check_range(env_var: str, value, min_val, max_val) -> None:
    if value < min_val or value > max_val:
        raise ConfigRangeError(env_var, value, min_val, max_val)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigTypeError(name, raw, int) from None


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation:
        raise ConfigTypeError(name, raw, Decimal) from None


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_engine_config(environment: Optional[Environment] = None, require_database: bool = True) -> EngineConfig:
    """
    Build an EngineConfig from environment variables (after loading .env).

    Args:
        environment: Environment to load from (defaults to the detected one)
        require_database: Raise ConfigMissingError when no database URL can be built

    Returns:
        Validated EngineConfig
    """
    environment = environment or default_env
    environment.load()

    database_url = build_database_url_from_env()
    if require_database and not database_url:
        raise ConfigMissingError("DATABASE_URL", f"environment or {environment.env_file or '.env'}")

    log_dir = os.getenv("LOG_DIR")

    return EngineConfig(
        database_url=database_url,
        sweep_batch_size=_env_int("RECON_SWEEP_BATCH_SIZE", DEFAULT_SWEEP_BATCH_SIZE),
        call_due_months=_env_int("CAPITAL_CALL_DUE_MONTHS", DEFAULT_CALL_DUE_MONTHS),
        money_decimal_places=_env_int("MONEY_DECIMAL_PLACES", MONEY_DECIMAL_PLACES),
        max_call_percentage=_env_decimal("MAX_CALL_PERCENTAGE", MAX_CALL_PERCENTAGE),
        enforce_unique_allocations=_env_flag("ENFORCE_UNIQUE_ALLOCATIONS"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_dir=Path(log_dir) if log_dir else environment.log_dir,
    )
