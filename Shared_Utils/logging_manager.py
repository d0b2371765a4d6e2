from typing import Optional

from Config.logging_config import LoggingConfig
from Shared_Utils.logger import StructuredLogger, get_logger


class LoggerManager:
    """
    Builds the named loggers the engine components ask for.

    One instance per application (or per test); nothing is cached on the class,
    so a test can build a console-only manager next to a production one.

        logger_manager = LoggerManager({'log_level': 'DEBUG'}, log_dir='logs')
        logger = logger_manager.get_logger('reconciliation_logger')
    """

    LOGGER_NAMES = {
        'reconciliation_logger': 'reconciliation',
        'shared_logger': 'shared',
    }

    def __init__(self, config: Optional[dict] = None, log_dir: Optional[str] = None):
        config = config or {}
        self._log_level = str(config.get('log_level', 'INFO')).upper()
        self.log_dir = log_dir
        self.logging_config = LoggingConfig(
            log_dir=log_dir,
            console_level=self._log_level,
            use_json=config.get('use_json'),
        )
        self.loggers = {}
        self.setup_logging()

    @property
    def log_level(self):
        return self._log_level

    def setup_logging(self):
        for logger_name, component in self.LOGGER_NAMES.items():
            self.setup_logger(logger_name, component)
        self.logging_config.setup_sqlalchemy_logging('WARNING')

    def setup_logger(self, logger_name: str, component: str) -> StructuredLogger:
        logger = get_logger(logger_name, context={'component': component}, config=self.logging_config)
        self.loggers[logger_name] = logger
        return logger

    def get_logger(self, logger_name: str) -> StructuredLogger:
        """Return a configured logger; unknown names get a bare adapter instead of None."""
        logger = self.loggers.get(logger_name)
        if logger is None:
            logger = get_logger(logger_name)
            self.loggers[logger_name] = logger
        return logger

    @classmethod
    def from_engine_config(cls, engine_config) -> 'LoggerManager':
        log_dir = str(engine_config.log_dir) if engine_config.log_dir else None
        return cls({'log_level': engine_config.log_level}, log_dir=log_dir)
