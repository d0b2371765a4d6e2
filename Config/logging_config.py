"""
Structured Logging Configuration

This module provides centralized logging configuration with:
- JSON formatting for production (Docker) environments
- Colored console output for development
- Size-based log rotation (50MB max) when a log directory is configured
- Context injection (allocation_id, fund_id, component)
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from Config.environment import env


# Attributes every LogRecord carries; anything else came in through `extra`
_STANDARD_RECORD_FIELDS = frozenset({
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'context', 'taskName',
})


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production.

    Outputs log records as JSON with consistent structure:
    {
        "timestamp": "2026-10-17T10:30:45.123+00:00",
        "level": "INFO",
        "logger": "reconciliation_logger",
        "message": "Allocation 12 recomputed",
        "context": {"allocation_id": 12, "fund_id": 3, "component": "synchronizer"},
        "extra": {...},
        "exc_info": "..."
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if hasattr(record, 'context'):
            log_data['context'] = record.context

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_FIELDS
        }
        if extra_fields:
            log_data['extra'] = extra_fields

        if record.exc_info:
            log_data['exc_info'] = self.formatException(record.exc_info)

        # Decimal amounts and dates are rendered with str()
        return json.dumps(log_data, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """
    Colored console formatter for development environments.
    Uses ANSI color codes for better readability.
    """

    COLORS = {
        'DEBUG': '\x1b[38;21m',      # Grey
        'INFO': '\x1b[38;21m',       # Grey
        'WARNING': '\x1b[38;5;214m', # Orange
        'ERROR': '\x1b[31;21m',      # Red
        'CRITICAL': '\x1b[31;1m',    # Bold Red
    }
    RESET = '\x1b[0m'

    def __init__(self, include_context: bool = True):
        self.include_context = include_context
        fmt = '%(asctime)s - %(name)s - %(levelname)s - %(message)s (%(filename)s:%(lineno)d)'
        super().__init__(fmt, datefmt='%Y-%m-%d %H:%M:%S')

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with color codes."""
        levelname = record.levelname
        color = self.COLORS.get(levelname)
        if color:
            record.levelname = f"{color}{levelname}{self.RESET}"

        formatted = super().format(record)
        record.levelname = levelname

        if self.include_context and getattr(record, 'context', None):
            context_str = ' | '.join(f"{k}={v}" for k, v in record.context.items())
            formatted += f" [{context_str}]"

        return formatted


class LoggingConfig:
    """
    Central logging configuration manager.

    Provides factory methods for creating configured loggers with:
    - Environment-aware formatting (JSON for production, colored for dev)
    - Size-based rotation (50MB default)
    - Consistent log levels and handlers
    """

    DEFAULT_MAX_BYTES = 50 * 1024 * 1024  # 50MB
    DEFAULT_BACKUP_COUNT = 5

    def __init__(
        self,
        log_dir: Optional[str] = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        console_level: str = 'INFO',
        file_level: str = 'DEBUG',
        use_json: Optional[bool] = None,
    ):
        """
        Initialize logging configuration.

        Args:
            log_dir: Directory for log files (None: console only)
            max_bytes: Max size per log file before rotation (default: 50MB)
            backup_count: Number of backup files to keep (default: 5)
            console_level: Console log level
            file_level: File log level (default: DEBUG)
            use_json: Force JSON formatting (default: auto-detect from environment)
        """
        self.log_dir = Path(log_dir) if log_dir else None
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.console_level = console_level.upper()
        self.file_level = file_level.upper()
        self.use_json = env.wants_json_logs if use_json is None else use_json

        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)

    def get_console_formatter(self) -> logging.Formatter:
        """Get appropriate console formatter based on environment."""
        if self.use_json:
            return JSONFormatter()
        return ColoredConsoleFormatter(include_context=True)

    def create_console_handler(self) -> logging.StreamHandler:
        handler = logging.StreamHandler()
        handler.setLevel(getattr(logging, self.console_level, logging.INFO))
        handler.setFormatter(self.get_console_formatter())
        return handler

    def create_file_handler(self, log_file: str) -> RotatingFileHandler:
        """File handlers always write JSON so logs can be grepped and parsed."""
        handler = RotatingFileHandler(
            self.log_dir / log_file,
            maxBytes=self.max_bytes,
            backupCount=self.backup_count,
        )
        handler.setLevel(getattr(logging, self.file_level, logging.DEBUG))
        handler.setFormatter(JSONFormatter())
        return handler

    def configure_logger(self, logger_name: str, log_file: Optional[str] = None) -> logging.Logger:
        """
        Configure a logger with console and (optionally) file handlers.

        Args:
            logger_name: Name of the logger
            log_file: Log file name; ignored when no log_dir is configured

        Returns:
            Configured logger instance
        """
        logger = logging.getLogger(logger_name)
        logger.setLevel(logging.DEBUG)  # Capture all levels, handlers filter

        if logger.hasHandlers():
            logger.handlers.clear()

        logger.addHandler(self.create_console_handler())

        if log_file and self.log_dir is not None:
            logger.addHandler(self.create_file_handler(log_file))

        logger.propagate = False
        return logger

    def setup_sqlalchemy_logging(self, level: str = 'WARNING') -> None:
        """Keep SQLAlchemy engine chatter out of the console unless asked for."""
        sqlalchemy_logger = logging.getLogger('sqlalchemy.engine')
        sqlalchemy_logger.setLevel(getattr(logging, level.upper()))

        if sqlalchemy_logger.hasHandlers():
            sqlalchemy_logger.handlers.clear()

        handler = logging.StreamHandler()
        handler.setLevel(getattr(logging, level.upper()))
        handler.setFormatter(self.get_console_formatter())
        sqlalchemy_logger.addHandler(handler)
