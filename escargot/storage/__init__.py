"""
Work queue backends.
"""

from .queue import QueueInterface, InMemoryQueue, QueueError
from .database import SqliteQueue
from .redis_queue import RedisQueue
from .lazy_queue import LazyQueue
from .factory import open_queue

__all__ = [
    'QueueInterface', 'InMemoryQueue', 'QueueError',
    'SqliteQueue', 'RedisQueue', 'LazyQueue', 'open_queue'
]
