"""
Escargot

An asynchronous web crawler library. A scheduler pulls URIs off a pluggable
work queue, lets subscribers vote on what gets requested and downloaded, and
hands the responses back to them.
"""

__version__ = "1.0.0"

from .crawler import (
    BaseUriCollection,
    CrawlUri,
    Decision,
    Escargot,
    HtmlCrawlerSubscriber,
    RobotsSubscriber,
    Subscriber,
)
from .storage import InMemoryQueue, LazyQueue, RedisQueue, SqliteQueue, open_queue
from .utils import Config, load_config

__all__ = [
    'BaseUriCollection', 'CrawlUri', 'Decision', 'Escargot',
    'HtmlCrawlerSubscriber', 'RobotsSubscriber', 'Subscriber',
    'InMemoryQueue', 'LazyQueue', 'RedisQueue', 'SqliteQueue', 'open_queue',
    'Config', 'load_config',
]
