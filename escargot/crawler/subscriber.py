"""
Decision protocol shared by the scheduler and its subscribers.

Subscribers vote on every CrawlUri at two points of its lifecycle: before the
request is sent (should_request) and when the first chunk of the response
arrives (needs_content). Optional capabilities are expressed as mixin classes
and detected once when the subscriber is registered.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Optional

from .uri import CrawlUri

if TYPE_CHECKING:
    from ..utils.logger import SubscriberLogger
    from .fetcher import Chunk, HttpStatusError, Response, TransportError
    from .scheduler import Escargot


class Decision(Enum):
    """Three-valued vote of a subscriber."""
    POSITIVE = 'positive'
    ABSTAIN = 'abstain'
    NEGATIVE = 'negative'

    @classmethod
    def reduce(cls, decisions: Iterable['Decision']) -> 'Decision':
        """
        OR-reduce a set of votes.

        A single positive vote wins over any number of negative ones; abstain
        never changes the outcome.
        """
        aggregate = cls.ABSTAIN
        for decision in decisions:
            if decision is cls.POSITIVE:
                return cls.POSITIVE
            if decision is cls.NEGATIVE:
                aggregate = cls.NEGATIVE
        return aggregate


class Subscriber:
    """
    Base class for every subscriber.

    should_request():
        POSITIVE forces the request no matter what the others vote and makes
        sure needs_content() is called on this subscriber. ABSTAIN does not
        cause a request but needs_content() is still called if somebody else
        voted positive. NEGATIVE skips needs_content() and the exception
        callbacks for this subscriber.

    needs_content():
        Same semantics for downloading the body and calling on_last_chunk().
    """

    async def should_request(self, crawl_uri: CrawlUri) -> Decision:
        raise NotImplementedError

    async def needs_content(self, crawl_uri: CrawlUri, response: 'Response',
                            chunk: 'Chunk') -> Decision:
        raise NotImplementedError

    async def on_last_chunk(self, crawl_uri: CrawlUri, response: 'Response',
                            chunk: 'Chunk') -> None:
        raise NotImplementedError


class ExceptionSubscriber:
    """Capability: get notified about failed exchanges."""

    async def on_transport_exception(self, crawl_uri: CrawlUri,
                                     exception: 'TransportError',
                                     response: Optional['Response']) -> None:
        raise NotImplementedError

    async def on_http_exception(self, crawl_uri: CrawlUri,
                                exception: 'HttpStatusError',
                                response: 'Response',
                                chunk: Optional['Chunk']) -> None:
        raise NotImplementedError


class FinishedCrawlingSubscriber:
    """
    Capability: get notified once the crawl loop ended.

    This also happens when a budget (max requests, max duration) stopped the
    crawl. Compare count_pending() and count_all() on the queue to find out
    whether the job is done completely.
    """

    async def finished_crawling(self) -> None:
        raise NotImplementedError


class TagValueResolvingSubscriber:
    """Capability: expose named values to other subscribers."""

    def resolve_tag_value(self, tag: str) -> Any:
        """Return the value for ``tag`` or None if this subscriber does not know it."""
        raise NotImplementedError


class EscargotAware:
    """Capability: receive a reference to the scheduler."""

    escargot: 'Escargot'

    def set_escargot(self, escargot: 'Escargot') -> None:
        self.escargot = escargot


class LoggerAware:
    """Capability: receive a logger that stamps the subscriber as log source."""

    logger: Optional['SubscriberLogger'] = None

    def set_logger(self, logger: 'SubscriberLogger') -> None:
        self.logger = logger

    def log_with_crawl_uri(self, crawl_uri: CrawlUri, level: int, message: str) -> None:
        if self.logger is None:
            return
        self.logger.log_with_crawl_uri(crawl_uri, level, message)


def is_of_content_type(response: 'Response', content_type: str) -> bool:
    """Check whether the first Content-Type header of a response contains ``content_type``."""
    values = response.get_headers(throw=False).get('content-type')
    if not values:
        return False
    return content_type in values[0]

