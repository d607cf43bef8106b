"""
Two-tier queue: a fast primary queue in front of a slower, durable secondary.

Writes go to the primary only and are mirrored to the secondary on commit().
Reads that miss the primary fall through to the secondary and back-fill the
primary so later calls are answered from memory.
"""

import logging
from typing import AsyncIterator, Dict, Optional

from ..crawler.uri import BaseUriCollection, CrawlUri
from .queue import QueueInterface


class LazyQueue(QueueInterface):

    def __init__(self, primary: QueueInterface, secondary: QueueInterface):
        self.primary = primary
        self.secondary = secondary
        self.logger = logging.getLogger(__name__)

        self._job_id_mapper: Dict[str, str] = {}
        # leading pending secondary entries already known to the primary
        self._to_skip: Dict[str, int] = {}

    async def create_job_id(self, base_uris: BaseUriCollection) -> str:
        return await self.secondary.create_job_id(base_uris)

    async def is_job_id_valid(self, job_id: str) -> bool:
        return await self.secondary.is_job_id_valid(job_id)

    async def delete_job_id(self, job_id: str) -> None:
        await self.secondary.delete_job_id(job_id)

        primary_job_id = self._job_id_mapper.pop(job_id, None)
        if primary_job_id is not None:
            await self.primary.delete_job_id(primary_job_id)
        self._to_skip.pop(job_id, None)

    async def get_base_uris(self, job_id: str) -> BaseUriCollection:
        return await self.secondary.get_base_uris(job_id)

    async def get(self, job_id: str, uri: str) -> Optional[CrawlUri]:
        primary_job_id = await self._get_primary_job_id(job_id)

        crawl_uri = await self.primary.get(primary_job_id, uri)
        if crawl_uri is not None:
            return crawl_uri

        crawl_uri = await self.secondary.get(job_id, uri)
        if crawl_uri is not None:
            await self.primary.add(primary_job_id, crawl_uri)

        return crawl_uri

    async def add(self, job_id: str, crawl_uri: CrawlUri) -> None:
        await self.primary.add(await self._get_primary_job_id(job_id), crawl_uri)

    async def get_next(self, job_id: str, skip: int = 0) -> Optional[CrawlUri]:
        """
        Pending entries of the primary come first, followed by the pending
        entries of the secondary the primary does not know yet.

        Secondary entries known to the primary are either processed in this
        run or already counted among the pending entries of the primary, so
        they are never handed out twice.
        """
        primary_job_id = await self._get_primary_job_id(job_id)

        crawl_uri = await self.primary.get_next(primary_job_id, skip)
        if crawl_uri is not None:
            return crawl_uri

        remaining = max(0, skip - await self.primary.count_pending(primary_job_id))
        offset = self._to_skip.get(job_id, 0)
        leading = True

        while True:
            candidate = await self.secondary.get_next(job_id, offset)
            if candidate is None:
                return None

            offset += 1

            if await self.primary.get(primary_job_id, candidate.uri) is not None:
                if leading:
                    self._to_skip[job_id] = offset
                continue

            leading = False

            if remaining > 0:
                remaining -= 1
                continue

            await self.primary.add(primary_job_id, candidate)
            return candidate

    async def count_all(self, job_id: str) -> int:
        await self.commit(job_id)
        return await self.secondary.count_all(job_id)

    async def count_pending(self, job_id: str) -> int:
        await self.commit(job_id)
        return await self.secondary.count_pending(job_id)

    async def get_all(self, job_id: str) -> AsyncIterator[CrawlUri]:
        await self.commit(job_id)
        async for crawl_uri in self.secondary.get_all(job_id):
            yield crawl_uri

    async def commit(self, job_id: str) -> None:
        """Mirror every entry of the primary to the secondary."""
        primary_job_id = await self._get_primary_job_id(job_id)

        count = 0
        async for crawl_uri in self.primary.get_all(primary_job_id):
            await self.secondary.add(job_id, crawl_uri)
            count += 1

        # the pending list of the secondary changed
        self._to_skip[job_id] = 0
        self.logger.debug(f"Committed {count} queue entries of job {job_id}")

    async def close(self):
        await self.primary.close()
        await self.secondary.close()

    async def _get_primary_job_id(self, job_id: str) -> str:
        if job_id in self._job_id_mapper:
            return self._job_id_mapper[job_id]

        base_uris = await self.secondary.get_base_uris(job_id)
        primary_job_id = await self.primary.create_job_id(base_uris)

        # mirror the state of the base URIs, they may have been processed already
        for base_uri in base_uris:
            crawl_uri = await self.secondary.get(job_id, base_uri)
            if crawl_uri is not None:
                await self.primary.add(primary_job_id, crawl_uri)

        self._job_id_mapper[job_id] = primary_job_id
        return primary_job_id
