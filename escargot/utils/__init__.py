"""
Utility modules for the crawler.
"""

from .config import (
    Config, ConfigManager, CrawlerConfig, QueueConfig, LoggingConfig,
    load_config, get_config, parse_config
)
from .logger import CrawlerLogAdapter, SubscriberLogger, JSONFormatter, setup_logging, get_crawler_logger
from .clock import Clock, SystemClock, MockClock

__all__ = [
    'Config', 'ConfigManager', 'CrawlerConfig', 'QueueConfig', 'LoggingConfig',
    'load_config', 'get_config', 'parse_config',
    'CrawlerLogAdapter', 'SubscriberLogger', 'JSONFormatter', 'setup_logging', 'get_crawler_logger',
    'Clock', 'SystemClock', 'MockClock'
]
