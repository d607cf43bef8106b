"""
Logging utilities for the crawler.

Records emitted by the scheduler and its subscribers carry two extra
attributes: ``source`` (the emitting class) and ``crawl_uri`` (string form of
the CrawlUri the message is about).
"""

import logging
import logging.handlers
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Any, Optional
from datetime import datetime, timezone

if TYPE_CHECKING:
    from .config import LoggingConfig
    from ..crawler.uri import CrawlUri


EXTRA_FIELDS = ('source', 'crawl_uri', 'job_id')


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        for name in EXTRA_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """Logger adapter that adds crawler-specific context."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """Add extra context to log messages."""
        if 'extra' not in kwargs:
            kwargs['extra'] = {}

        kwargs['extra'].update(self.extra)

        return msg, kwargs

    def log_with_crawl_uri(self, crawl_uri: 'CrawlUri', level: int, message: str):
        self.log(level, message, extra={'crawl_uri': str(crawl_uri)})


class SubscriberLogger(CrawlerLogAdapter):
    """Wraps the crawl logger and stamps the subscriber's class as source."""

    def __init__(self, logger: logging.Logger, subscriber_class: str):
        super().__init__(logger, {'source': subscriber_class})
        self.subscriber_class = subscriber_class


class NoisyLoggerFilter(logging.Filter):
    """Filter to suppress chatter of third-party libraries."""

    def __init__(self, suppress_modules: Optional[list] = None):
        super().__init__()
        self.suppress_modules = suppress_modules or [
            'aiohttp.access',
            'aiosqlite',
        ]

    def filter(self, record: logging.LogRecord) -> bool:
        return not any(record.name.startswith(module) for module in self.suppress_modules)


def setup_logging(config: 'LoggingConfig',
                  enable_noise_filtering: bool = True) -> logging.Logger:
    """
    Setup logging for the crawler.

    Args:
        config: Logging configuration
        enable_noise_filtering: Drop records of noisy third-party loggers

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level.upper()))

    # Clear existing handlers
    root_logger.handlers.clear()

    if config.json:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(config.format)

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if config.file:
        log_file = Path(config.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        # File handler with rotation
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_file.parent / 'errors.log',
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        handlers.append(error_handler)

    for handler in handlers:
        if enable_noise_filtering:
            handler.addFilter(NoisyLoggerFilter())
        root_logger.addHandler(handler)

    # Configure third-party loggers
    for logger_name in ('aiohttp', 'aiosqlite', 'redis', 'asyncio'):
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    root_logger.debug(f"Logging initialized (level {config.level}, file {config.file}, json {config.json})")

    return root_logger


def get_crawler_logger(name: str, **extra_context) -> CrawlerLogAdapter:
    """
    Get a crawler-specific logger with additional context.

    Args:
        name: Logger name
        **extra_context: Additional context fields to include in all log messages

    Returns:
        CrawlerLogAdapter instance
    """
    logger = logging.getLogger(name)
    return CrawlerLogAdapter(logger, extra_context)
