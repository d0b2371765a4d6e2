import os
import asyncio

from sqlalchemy import text
from typing import Optional, Any
from contextlib import asynccontextmanager
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from Shared_Utils.url_helper import normalize_driver, is_sqlite_url


class _NoopLogger:
    def debug(self, *a, **k): pass
    info = debug; warning = debug; error = debug; exception = debug


class DatabaseSessionManager:
    """Creates the async engine, yields sessions, runs a one-time schema bootstrap.

    Every engine operation opens its own session and wraps its work in
    `async with session.begin():`, so a raised exception rolls the whole
    operation back.
    """

    def __init__(
            self,
            dsn: str,
            logger: Optional[Any] = None,
            create_schema: bool = True,
            enforce_unique_allocations: bool = False,
            **engine_kw,
    ):
        # Logger is duck-typed (must have .debug/.info/.warning/.error/.exception)
        self.logger = logger or _NoopLogger()
        self.create_schema = create_schema
        self.enforce_unique_allocations = enforce_unique_allocations

        dsn = normalize_driver(dsn)
        self.dsn = dsn

        # Pool/timeouts only apply to the PostgreSQL driver; aiosqlite takes none of them
        if is_sqlite_url(dsn):
            defaults = dict(echo=False)
        else:
            defaults = dict(
                echo=False,
                pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
                max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "5")),
                pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "10")),
                pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "300")),  # 5m
                pool_pre_ping=True,
                connect_args={
                    "timeout": float(os.getenv("DB_CONNECT_TIMEOUT", "5")),
                    "command_timeout": float(os.getenv("DB_COMMAND_TIMEOUT", "30")),
                    "server_settings": {
                        "application_name": os.getenv("DB_APP_NAME", "fund_reconciliation"),
                        "statement_timeout": os.getenv("DB_STATEMENT_TIMEOUT_MS", "60000"),
                        # Row locks taken by recompute must not wait forever behind a stuck sweep batch
                        "lock_timeout": os.getenv("DB_LOCK_TIMEOUT_MS", "10000"),
                    },
                },
            )
        for k, v in defaults.items():
            engine_kw.setdefault(k, v)

        self.engine = create_async_engine(dsn, **engine_kw)
        self._async_session_factory = async_sessionmaker(
            bind=self.engine, expire_on_commit=False, class_=AsyncSession
        )

        # One-time bootstrap guards
        self._schema_lock = asyncio.Lock()
        self._schema_ready = False

    @classmethod
    def from_engine_config(cls, engine_config, logger: Optional[Any] = None, **engine_kw) -> "DatabaseSessionManager":
        return cls(
            engine_config.database_url,
            logger=logger,
            enforce_unique_allocations=engine_config.enforce_unique_allocations,
            **engine_kw,
        )

    # ---------- bootstrap / session ----------

    async def _ensure_schema_once(self):
        if self._schema_ready or not self.create_schema:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            from .bootstrap_schema import ensure_reconciliation_schema

            await ensure_reconciliation_schema(
                self.engine,
                enforce_unique_allocations=self.enforce_unique_allocations,
                logger=self.logger,
            )
            self._schema_ready = True

    @asynccontextmanager
    async def async_session(self):
        await self._ensure_schema_once()
        async with self._async_session_factory() as session:
            yield session

    # ---------- light engine warm-up ----------

    async def initialize(self) -> None:
        """Warm the pool and verify connectivity (single retry)."""
        last_exc = None
        for attempt in (1, 2):
            try:
                async with self.async_session() as s:
                    await s.execute(text("SELECT 1"))
                return
            except (OSError, ConnectionError, OperationalError, DBAPIError) as e:
                last_exc = e
                self.logger.warning(f"⚠️ Database warm-up attempt {attempt} failed: {e}")
                await self.engine.dispose()
                if attempt == 1:
                    await asyncio.sleep(0.75)
        raise last_exc  # surface the original error

    async def disconnect(self):
        """Close the SQLAlchemy database engine (optional for graceful shutdown)."""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("✅ SQLAlchemy engine disposed successfully.")
