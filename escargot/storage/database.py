"""
Relational queue backend on SQLite.

One table holds the entries of every job; insertion order is the
autoincrement id, so get_next() and get_all() are stable across processes.
"""

import logging
import re
import uuid
from typing import Any, AsyncIterator, Callable, Iterable, Optional

import aiosqlite

from ..crawler.uri import BaseUriCollection, CrawlUri, create_http_uri
from .queue import QueueError, QueueInterface, get_uri_hash


_TABLE_NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class SqliteQueue(QueueInterface):
    """Persistent queue stored in a SQLite database through aiosqlite."""

    def __init__(self, database_path: str = ':memory:', table_name: str = 'escargot',
                 job_id_generator: Optional[Callable[[], str]] = None,
                 connection: Optional[aiosqlite.Connection] = None):
        if not _TABLE_NAME_PATTERN.match(table_name):
            raise ValueError(f'Invalid table name "{table_name}".')

        self.database_path = database_path
        self.table_name = table_name
        self.job_id_generator = job_id_generator or (lambda: str(uuid.uuid4()))
        self.logger = logging.getLogger(__name__)

        self._connection = connection
        self._owns_connection = connection is None

    async def initialize(self):
        """Open the connection and make sure the table exists."""
        await self._get_connection()
        await self.create_schema()
        self.logger.info(f"SQLite queue initialized at {self.database_path} (table {self.table_name})")

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            try:
                self._connection = await aiosqlite.connect(self.database_path)
            except aiosqlite.Error as e:
                raise QueueError(f"Failed to connect to {self.database_path}: {e}") from e
            self._connection.row_factory = aiosqlite.Row
        return self._connection

    async def _execute(self, sql: str, parameters: Iterable[Any] = (), commit: bool = False):
        db = await self._get_connection()
        try:
            cursor = await db.execute(sql, tuple(parameters))
            if commit:
                await db.commit()
            return cursor
        except aiosqlite.Error as e:
            raise QueueError(f"Query on {self.table_name} failed: {e}") from e

    async def _fetchone(self, sql: str, parameters: Iterable[Any] = ()):
        cursor = await self._execute(sql, parameters)
        try:
            return await cursor.fetchone()
        finally:
            await cursor.close()

    async def _fetchall(self, sql: str, parameters: Iterable[Any] = ()):
        cursor = await self._execute(sql, parameters)
        try:
            return await cursor.fetchall()
        finally:
            await cursor.close()

    async def create_schema(self) -> None:
        db = await self._get_connection()
        try:
            await db.executescript(f"""
                CREATE TABLE IF NOT EXISTS {self.table_name} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    uri_hash CHAR(40) NOT NULL,
                    uri TEXT NOT NULL,
                    found_on TEXT,
                    level INTEGER NOT NULL,
                    processed BOOLEAN NOT NULL,
                    tags TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_{self.table_name}_job_uri
                    ON {self.table_name}(job_id, uri_hash);
                CREATE INDEX IF NOT EXISTS idx_{self.table_name}_job_processed
                    ON {self.table_name}(job_id, processed);
            """)
            await db.commit()
        except aiosqlite.Error as e:
            raise QueueError(f"Failed to create table {self.table_name}: {e}") from e

    async def create_job_id(self, base_uris: BaseUriCollection) -> str:
        job_id = self.job_id_generator()

        for base_uri in base_uris:
            await self.add(job_id, CrawlUri(base_uri, 0))

        return job_id

    async def is_job_id_valid(self, job_id: str) -> bool:
        row = await self._fetchone(
            f"SELECT 1 FROM {self.table_name} WHERE job_id = ? LIMIT 1", (job_id,)
        )
        return row is not None

    async def delete_job_id(self, job_id: str) -> None:
        await self._execute(f"DELETE FROM {self.table_name} WHERE job_id = ?", (job_id,), commit=True)

    async def get_base_uris(self, job_id: str) -> BaseUriCollection:
        rows = await self._fetchall(
            f"SELECT uri FROM {self.table_name} WHERE job_id = ? AND level = 0 ORDER BY id ASC",
            (job_id,)
        )
        return BaseUriCollection(create_http_uri(row['uri']) for row in rows)

    async def get(self, job_id: str, uri: str) -> Optional[CrawlUri]:
        row = await self._fetchone(
            f"SELECT uri, level, processed, found_on, tags FROM {self.table_name} "
            f"WHERE job_id = ? AND uri_hash = ? LIMIT 1",
            (job_id, get_uri_hash(uri))
        )
        if row is None:
            return None
        return self._create_crawl_uri_from_row(row)

    async def add(self, job_id: str, crawl_uri: CrawlUri) -> None:
        uri_hash = get_uri_hash(crawl_uri.uri)
        tags = ','.join(crawl_uri.tags)

        existing = await self._fetchone(
            f"SELECT id FROM {self.table_name} WHERE job_id = ? AND uri_hash = ? LIMIT 1",
            (job_id, uri_hash)
        )

        if existing is None:
            await self._execute(
                f"INSERT INTO {self.table_name} "
                f"(job_id, uri_hash, uri, found_on, level, processed, tags) "
                f"VALUES (?, ?, ?, ?, ?, ?, ?)",
                (job_id, uri_hash, crawl_uri.uri, crawl_uri.found_on, crawl_uri.level,
                 crawl_uri.processed, tags),
                commit=True
            )
        else:
            await self._execute(
                f"UPDATE {self.table_name} SET processed = ?, tags = ? WHERE id = ?",
                (crawl_uri.processed, tags, existing['id']),
                commit=True
            )

    async def get_next(self, job_id: str, skip: int = 0) -> Optional[CrawlUri]:
        row = await self._fetchone(
            f"SELECT uri, level, processed, found_on, tags FROM {self.table_name} "
            f"WHERE job_id = ? AND processed = 0 ORDER BY id ASC LIMIT 1 OFFSET ?",
            (job_id, max(0, skip))
        )
        if row is None:
            return None
        return self._create_crawl_uri_from_row(row)

    async def count_all(self, job_id: str) -> int:
        row = await self._fetchone(
            f"SELECT COUNT(*) AS count FROM {self.table_name} WHERE job_id = ?", (job_id,)
        )
        return int(row['count'])

    async def count_pending(self, job_id: str) -> int:
        row = await self._fetchone(
            f"SELECT COUNT(*) AS count FROM {self.table_name} WHERE job_id = ? AND processed = 0",
            (job_id,)
        )
        return int(row['count'])

    async def get_all(self, job_id: str) -> AsyncIterator[CrawlUri]:
        rows = await self._fetchall(
            f"SELECT uri, level, processed, found_on, tags FROM {self.table_name} "
            f"WHERE job_id = ? ORDER BY id ASC",
            (job_id,)
        )
        for row in rows:
            yield self._create_crawl_uri_from_row(row)

    async def close(self):
        if self._connection is not None and self._owns_connection:
            await self._connection.close()
            self.logger.info("SQLite queue connection closed")
        self._connection = None

    @staticmethod
    def _create_crawl_uri_from_row(row) -> CrawlUri:
        found_on = create_http_uri(row['found_on']) if row['found_on'] else None
        crawl_uri = CrawlUri(create_http_uri(row['uri']), int(row['level']), bool(row['processed']), found_on)

        if row['tags']:
            for tag in row['tags'].split(','):
                crawl_uri.add_tag(tag)

        return crawl_uri
