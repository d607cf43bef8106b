"""
Work queue contract and the in-memory backend.

A queue stores one CrawlUri per normalized URI and job. Adding is an
idempotent upsert: the first insertion fixes level and found_on, later calls
only update the processed flag and the tags.
"""

import hashlib
import secrets
from typing import AsyncIterator, Dict, Optional

from ..crawler.uri import BaseUriCollection, CrawlUri, normalize_uri


class QueueError(Exception):
    """Raised when a queue backend fails to read or write its storage."""
    pass


def get_uri_hash(uri: str) -> str:
    """SHA-1 hex digest of the normalized URI, used as storage key."""
    return hashlib.sha1(normalize_uri(uri).encode('utf-8')).hexdigest()


class QueueInterface:
    """Abstract base class for queue backends."""

    async def create_job_id(self, base_uris: BaseUriCollection) -> str:
        """Create a unique job ID and enqueue every base URI at level 0, unprocessed."""
        raise NotImplementedError

    async def is_job_id_valid(self, job_id: str) -> bool:
        raise NotImplementedError

    async def delete_job_id(self, job_id: str) -> None:
        raise NotImplementedError

    async def get_base_uris(self, job_id: str) -> BaseUriCollection:
        """Return the base URIs the job was created with."""
        raise NotImplementedError

    async def get(self, job_id: str, uri: str) -> Optional[CrawlUri]:
        raise NotImplementedError

    async def add(self, job_id: str, crawl_uri: CrawlUri) -> None:
        raise NotImplementedError

    async def get_next(self, job_id: str, skip: int = 0) -> Optional[CrawlUri]:
        """
        Return the first unprocessed CrawlUri after skipping ``skip`` of them.

        This never changes the state of the queue.
        """
        raise NotImplementedError

    async def count_all(self, job_id: str) -> int:
        raise NotImplementedError

    async def count_pending(self, job_id: str) -> int:
        raise NotImplementedError

    def get_all(self, job_id: str) -> AsyncIterator[CrawlUri]:
        """Iterate over every CrawlUri of a job in insertion order."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InMemoryQueue(QueueInterface):
    """Queue kept in process memory, lost on exit."""

    def __init__(self):
        self._base_uris: Dict[str, BaseUriCollection] = {}
        # dicts keep insertion order
        self._queue: Dict[str, Dict[str, CrawlUri]] = {}

    async def create_job_id(self, base_uris: BaseUriCollection) -> str:
        job_id = secrets.token_hex(32)

        self._queue[job_id] = {}
        self._base_uris[job_id] = BaseUriCollection(base_uris)

        for base_uri in base_uris:
            await self.add(job_id, CrawlUri(base_uri, 0))

        return job_id

    async def is_job_id_valid(self, job_id: str) -> bool:
        return job_id in self._base_uris

    async def delete_job_id(self, job_id: str) -> None:
        self._base_uris.pop(job_id, None)
        self._queue.pop(job_id, None)

    async def get_base_uris(self, job_id: str) -> BaseUriCollection:
        return BaseUriCollection(self._base_uris.get(job_id, ()))

    async def get(self, job_id: str, uri: str) -> Optional[CrawlUri]:
        return self._queue.get(job_id, {}).get(normalize_uri(uri))

    async def add(self, job_id: str, crawl_uri: CrawlUri) -> None:
        entries = self._queue.setdefault(job_id, {})
        existing = entries.get(crawl_uri.uri)

        if existing is None or existing is crawl_uri:
            entries[crawl_uri.uri] = crawl_uri
            return

        updated = CrawlUri(existing.uri, existing.level, crawl_uri.processed, existing.found_on)
        for tag in crawl_uri.tags:
            updated.add_tag(tag)
        entries[crawl_uri.uri] = updated

    async def get_next(self, job_id: str, skip: int = 0) -> Optional[CrawlUri]:
        i = 0
        for crawl_uri in self._queue.get(job_id, {}).values():
            if crawl_uri.processed:
                continue

            if i < skip:
                i += 1
                continue

            return crawl_uri

        return None

    async def count_all(self, job_id: str) -> int:
        return len(self._queue.get(job_id, {}))

    async def count_pending(self, job_id: str) -> int:
        return sum(1 for crawl_uri in self._queue.get(job_id, {}).values() if not crawl_uri.processed)

    async def get_all(self, job_id: str) -> AsyncIterator[CrawlUri]:
        for crawl_uri in list(self._queue.get(job_id, {}).values()):
            yield crawl_uri
