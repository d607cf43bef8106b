"""
Configuration management for the crawler.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Type, TypeVar
from dataclasses import dataclass, field, fields

from .. import __version__


DEFAULT_USER_AGENT = f"escargot/{__version__}"

QUEUE_TYPES = ('memory', 'sqlite', 'redis', 'lazy')
LAZY_SECONDARY_TYPES = ('sqlite', 'redis')

T = TypeVar('T')


@dataclass(frozen=True)
class CrawlerConfig:
    """
    Budgets and politeness settings of a crawl.

    Zero means unlimited for max_requests, max_duration (seconds) and
    max_depth. request_delay is the pause in seconds before every request.
    """
    concurrency: int = 10
    max_requests: int = 0
    max_duration: float = 0.0
    request_delay: float = 0.0
    max_depth: int = 0
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout: float = 30.0


@dataclass
class QueueConfig:
    """Configuration of the queue backend."""
    type: str = 'memory'
    sqlite_path: Optional[str] = None
    table_name: str = 'escargot'
    redis_url: Optional[str] = None
    key_prefix: str = 'escargot'
    # backend behind the in-memory primary when type is 'lazy'
    secondary: str = 'sqlite'


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = 'INFO'
    file: Optional[str] = None
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    json: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _build_section(cls: Type[T], data: Optional[Dict[str, Any]], section: str) -> T:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Configuration section '{section}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown option(s) in section '{section}': {', '.join(unknown)}")

    return cls(**data)


def parse_config(config_data: Optional[Dict[str, Any]]) -> Config:
    """Build and validate a Config from already parsed data."""
    config_data = config_data or {}
    config = Config(
        crawler=_build_section(CrawlerConfig, config_data.get('crawler'), 'crawler'),
        queue=_build_section(QueueConfig, config_data.get('queue'), 'queue'),
        logging=_build_section(LoggingConfig, config_data.get('logging'), 'logging'),
    )
    validate_config(config)
    return config


def validate_config(config: Config):
    """Validate configuration values."""
    crawler = config.crawler

    if crawler.concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    if crawler.max_requests < 0:
        raise ValueError("max_requests must be non-negative")

    if crawler.max_duration < 0:
        raise ValueError("max_duration must be non-negative")

    if crawler.request_delay < 0:
        raise ValueError("request_delay must be non-negative")

    if crawler.max_depth < 0:
        raise ValueError("max_depth must be non-negative")

    if crawler.request_timeout <= 0:
        raise ValueError("request_timeout must be positive")

    queue = config.queue
    if queue.type not in QUEUE_TYPES:
        raise ValueError(f"Queue type must be one of: {', '.join(QUEUE_TYPES)}")

    backend = queue.type
    if backend == 'lazy':
        if queue.secondary not in LAZY_SECONDARY_TYPES:
            raise ValueError(f"Lazy queue secondary must be one of: {', '.join(LAZY_SECONDARY_TYPES)}")
        backend = queue.secondary

    if backend == 'sqlite' and not queue.sqlite_path:
        raise ValueError("sqlite_path is required for the sqlite queue")

    if backend == 'redis' and not queue.redis_url:
        raise ValueError("redis_url is required for the redis queue")

    if not hasattr(logging, config.logging.level.upper()):
        raise ValueError(f"Unknown log level: {config.logging.level}")

    logging.getLogger(__name__).debug("Configuration validation passed")


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file)

        self._config = parse_config(config_data)
        return self._config

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()
