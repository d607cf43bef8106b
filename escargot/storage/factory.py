"""
Builds the queue backend selected in the configuration.
"""

import logging

from ..utils.config import QueueConfig
from .database import SqliteQueue
from .lazy_queue import LazyQueue
from .queue import InMemoryQueue, QueueError, QueueInterface
from .redis_queue import RedisQueue


logger = logging.getLogger(__name__)


async def _open_backend(backend_type: str, config: QueueConfig) -> QueueInterface:
    if backend_type == 'memory':
        return InMemoryQueue()

    if backend_type == 'sqlite':
        queue = SqliteQueue(config.sqlite_path, table_name=config.table_name)
        await queue.initialize()
        return queue

    if backend_type == 'redis':
        return RedisQueue.from_url(config.redis_url, key_prefix=config.key_prefix)

    raise QueueError(f"Unknown queue type: {backend_type}")


async def open_queue(config: QueueConfig) -> QueueInterface:
    """Create and initialize the queue described by ``config``."""
    backend_type = config.type.lower()

    if backend_type == 'lazy':
        queue: QueueInterface = LazyQueue(InMemoryQueue(), await _open_backend(config.secondary.lower(), config))
    else:
        queue = await _open_backend(backend_type, config)

    logger.info(f"Queue initialized with {backend_type} backend")
    return queue
