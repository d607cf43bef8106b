"""
URI model of the crawl graph: normalization, CrawlUri nodes and base URI sets.
"""

import re
from typing import Dict, Iterable, Iterator, List, Optional
from urllib.parse import urlsplit, urlunsplit


_HTTP_URI_PATTERN = re.compile(r'^https?://', re.IGNORECASE)


def normalize_uri(uri: str) -> str:
    """
    Normalize a URI so it can be used as a dedup key.

    An empty scheme becomes ``http``, an empty path becomes ``/`` and the
    fragment is always stripped.
    """
    parts = urlsplit(uri)
    scheme = parts.scheme or 'http'
    path = parts.path or '/'
    return urlunsplit((scheme, parts.netloc, path, parts.query, ''))


def create_http_uri(uri: str) -> str:
    """Validate that ``uri`` is an absolute http(s) URI and return it."""
    if not _HTTP_URI_PATTERN.match(uri):
        raise ValueError('Invalid HTTP URI.')
    return uri


def get_host(uri: str) -> str:
    """Extract the host (without port or credentials) from a URI."""
    return urlsplit(uri).hostname or ''


class CrawlUri:
    """
    A node in the crawl graph.

    The URI, level and found-on reference are fixed at construction; only
    the processed flag and the tags change over the lifetime of an instance.
    """

    def __init__(self, uri: str, level: int, processed: bool = False,
                 found_on: Optional[str] = None):
        self._uri = normalize_uri(uri)
        self._level = level
        self._processed = processed
        self._was_marked_processed = False
        self._found_on = normalize_uri(found_on) if found_on is not None else None
        # dict keys keep the insertion order of the tags
        self._tags: Dict[str, None] = {}

    def __str__(self) -> str:
        return 'URI: {} (Level: {}, Processed: {}, Found on: {}, Tags: {})'.format(
            self._uri,
            self._level,
            'yes' if self._processed else 'no',
            self._found_on or 'root',
            ', '.join(self._tags) if self._tags else 'none',
        )

    def __repr__(self) -> str:
        return f'<CrawlUri {self._uri!r} level={self._level} processed={self._processed}>'

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def level(self) -> int:
        return self._level

    @property
    def found_on(self) -> Optional[str]:
        return self._found_on

    @property
    def processed(self) -> bool:
        return self._processed

    @property
    def was_marked_processed(self) -> bool:
        """True only if mark_processed() was called on this very instance."""
        return self._was_marked_processed

    @property
    def tags(self) -> List[str]:
        return list(self._tags)

    def mark_processed(self) -> 'CrawlUri':
        self._processed = True
        self._was_marked_processed = True
        return self

    def add_tag(self, tag: str) -> 'CrawlUri':
        if ',' in tag:
            raise ValueError('Cannot use commas in tags.')
        self._tags[tag] = None
        return self

    def has_tag(self, tag: str) -> bool:
        return tag in self._tags

    def remove_tag(self, tag: str) -> 'CrawlUri':
        self._tags.pop(tag, None)
        return self


class BaseUriCollection:
    """Deduplicated, order-preserving collection of normalized seed URIs."""

    def __init__(self, base_uris: Iterable[str] = ()):
        self._base_uris: Dict[str, None] = {}
        for base_uri in base_uris:
            self.add(base_uri)

    def add(self, base_uri: str) -> 'BaseUriCollection':
        self._base_uris[normalize_uri(base_uri)] = None
        return self

    def contains(self, base_uri: str) -> bool:
        return normalize_uri(base_uri) in self._base_uris

    def contains_host(self, host: str) -> bool:
        return any(get_host(base_uri) == host for base_uri in self._base_uris)

    def merge_with(self, collection: 'BaseUriCollection') -> 'BaseUriCollection':
        """Return a new collection holding the URIs of both collections."""
        merged = BaseUriCollection(self)
        for base_uri in collection:
            merged.add(base_uri)
        return merged

    def all(self) -> List[str]:
        return list(self._base_uris)

    def __contains__(self, base_uri: object) -> bool:
        return isinstance(base_uri, str) and self.contains(base_uri)

    def __iter__(self) -> Iterator[str]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._base_uris)

    def __repr__(self) -> str:
        return f'BaseUriCollection({self.all()!r})'
