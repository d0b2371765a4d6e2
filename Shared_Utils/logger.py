"""
Structured Logger

Provides:
- Context injection (allocation_id, fund_id, capital_call_id, component)
- Performance tracking decorator
- Task-safe context management (contextvars, so concurrent asyncio tasks don't mix contexts)

Usage:
    logger = get_logger('reconciliation_logger', context={'component': 'synchronizer'})
    logger.info('Recomputing allocation')

    with log_context(allocation_id=12, fund_id=3):
        logger.info('Status changed')  # carries allocation_id and fund_id

    @log_performance('reconciliation_logger')
    async def reconcile(...):
        ...
"""

import asyncio
import functools
import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional

from Config.logging_config import LoggingConfig


_log_context: ContextVar[Dict[str, Any]] = ContextVar('log_context', default={})


class StructuredLogger(logging.LoggerAdapter):
    """
    Logger adapter that merges, in order of increasing precedence:
    1. the current log_context()
    2. the logger's default context
    3. the per-call `extra`
    into a single `context` attribute on the record.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        context = {}
        context.update(_log_context.get())

        if self.extra:
            context.update(self.extra)

        if 'extra' in kwargs:
            context.update(kwargs.pop('extra'))

        if context:
            kwargs['extra'] = {'context': context}

        return msg, kwargs


# ============================================================================
# Logger Factory
# ============================================================================

_loggers: Dict[str, StructuredLogger] = {}


def get_logger(
    name: str,
    context: Optional[Dict[str, Any]] = None,
    config: Optional[LoggingConfig] = None,
) -> StructuredLogger:
    """
    Get or create a structured logger.

    Handlers are attached only when a LoggingConfig is supplied; without one the
    adapter wraps whatever `logging.getLogger(name)` already has (pytest's
    caplog, an application's own setup).

    Args:
        name: Logger name (e.g., 'reconciliation_logger', 'shared_logger')
        context: Optional default context
        config: Optional logging config that attaches handlers

    Returns:
        StructuredLogger instance
    """
    cache_key = f"{name}:{sorted((context or {}).items())}"

    if config is not None:
        base_logger = config.configure_logger(logger_name=name, log_file=f"{name}.log")
        _loggers[cache_key] = StructuredLogger(base_logger, extra=context)
    elif cache_key not in _loggers:
        _loggers[cache_key] = StructuredLogger(logging.getLogger(name), extra=context)

    return _loggers[cache_key]


# ============================================================================
# Context Management
# ============================================================================

def get_context() -> Dict[str, Any]:
    return _log_context.get().copy()


@contextmanager
def log_context(**context):
    """
    Temporarily add fields to every log record emitted inside the block.

        >>> with log_context(allocation_id=12):
        ...     logger.info('Recomputed')  # includes allocation_id
    """
    token = _log_context.set({**_log_context.get(), **context})
    try:
        yield
    finally:
        _log_context.reset(token)


# ============================================================================
# Performance Tracking
# ============================================================================

def log_performance(logger_name: str, level: str = 'INFO') -> Callable:
    """
    Decorator to log function execution time.

    The logger is resolved on each call, so decorating at import time does not
    configure handlers or create log directories.
    """
    def decorator(func: Callable) -> Callable:
        log_level = getattr(logging, level.upper(), logging.INFO)

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger = get_logger(logger_name)
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                elapsed = time.perf_counter() - start_time
                logger.error(
                    f"{func.__name__} failed",
                    exc_info=True,
                    extra={'duration_ms': round(elapsed * 1000, 2)}
                )
                raise
            elapsed = time.perf_counter() - start_time
            logger.log(
                log_level,
                f"{func.__name__} completed",
                extra={'duration_ms': round(elapsed * 1000, 2)}
            )
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            logger = get_logger(logger_name)
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception:
                elapsed = time.perf_counter() - start_time
                logger.error(
                    f"{func.__name__} failed",
                    exc_info=True,
                    extra={'duration_ms': round(elapsed * 1000, 2)}
                )
                raise
            elapsed = time.perf_counter() - start_time
            logger.log(
                log_level,
                f"{func.__name__} completed",
                extra={'duration_ms': round(elapsed * 1000, 2)}
            )
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


__all__ = [
    'StructuredLogger',
    'get_logger',
    'get_context',
    'log_context',
    'log_performance',
]
