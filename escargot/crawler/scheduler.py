"""
Crawl scheduler.

Escargot pulls CrawlUris off a queue, asks its subscribers whether each of
them should be requested, keeps up to ``concurrency`` requests in flight and
dispatches the resulting response chunks back to the subscribers.
"""

import copy
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from ..storage.queue import QueueInterface
from ..utils.clock import Clock, SystemClock
from ..utils.config import CrawlerConfig
from ..utils.logger import CrawlerLogAdapter, SubscriberLogger
from .fetcher import AiohttpClient, Chunk, HttpClient, HttpClientError, HttpStatusError, Response, TransportError
from .subscriber import (
    Decision,
    EscargotAware,
    ExceptionSubscriber,
    FinishedCrawlingSubscriber,
    LoggerAware,
    Subscriber,
    TagValueResolvingSubscriber,
)
from .uri import BaseUriCollection, CrawlUri, normalize_uri


SHOULD_REQUEST = 'should_request'
NEEDS_CONTENT = 'needs_content'


class InvalidJobIdError(ValueError):
    """Raised when a job cannot be created or resumed."""
    pass


class ClientAlreadyCustomizedError(RuntimeError):
    """Raised when the user agent is changed after a custom HTTP client was set."""
    pass


class MaxDepthReachedError(RuntimeError):
    """Raised when a URI is added below the configured max depth."""
    pass


@dataclass
class CrawlStats:
    """Statistics for crawl operations."""
    requests_sent: int = 0
    completed: int = 0
    canceled: int = 0
    skipped: int = 0
    transport_errors: int = 0
    http_errors: int = 0
    elapsed_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _Registration:
    """A subscriber and the capabilities detected when it was added."""
    subscriber: Subscriber
    index: int
    handles_exceptions: bool
    finishes_crawling: bool
    resolves_tags: bool


@dataclass
class _Exchange:
    """One CrawlUri in flight and the votes cast on it."""
    crawl_uri: CrawlUri
    response: Optional[Response] = None
    decisions: Dict[Tuple[str, int], Decision] = field(default_factory=dict)

    def store(self, phase: str, registration: _Registration, decision: Decision):
        self.decisions[(phase, registration.index)] = decision

    def get(self, phase: str, registration: _Registration) -> Decision:
        return self.decisions.get((phase, registration.index), Decision.ABSTAIN)

    def opted_out(self, registration: _Registration) -> bool:
        return Decision.NEGATIVE in (self.get(SHOULD_REQUEST, registration),
                                     self.get(NEEDS_CONTENT, registration))


class Escargot:
    """
    Crawl a job held in a queue.

    Instances are created with the create() / create_from_job_id() coroutines
    and configured with the with_*() methods, each of which returns a new
    instance.
    """

    def __init__(self, queue: QueueInterface, job_id: str, base_uris: BaseUriCollection):
        self._queue = queue
        self._job_id = job_id
        self._base_uris = base_uris

        self._config = CrawlerConfig()
        self._client: Optional[HttpClient] = None
        self._client_customized = False
        self._clock: Clock = SystemClock()
        self._logger = logging.getLogger(__name__)
        self._log = CrawlerLogAdapter(self._logger, {'source': self.__class__.__name__, 'job_id': job_id})

        self._subscribers: List[_Registration] = []
        self._reset_runtime()

    def _reset_runtime(self):
        self._requests_sent = 0
        self._running_requests: Dict[str, _Exchange] = {}
        self._stats = CrawlStats()
        self._started_at: Optional[float] = None
        self._budget_logged = False

    @classmethod
    async def create(cls, base_uris: BaseUriCollection, queue: QueueInterface) -> 'Escargot':
        if len(base_uris) == 0:
            raise InvalidJobIdError('Cannot create an Escargot instance with an empty BaseUriCollection!')

        job_id = await queue.create_job_id(base_uris)
        return cls(queue, job_id, BaseUriCollection(base_uris))

    @classmethod
    async def create_from_job_id(cls, job_id: str, queue: QueueInterface) -> 'Escargot':
        if not await queue.is_job_id_valid(job_id):
            raise InvalidJobIdError(f'Job ID "{job_id}" is invalid!')

        return cls(queue, job_id, await queue.get_base_uris(job_id))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Builders

    def _copy(self) -> 'Escargot':
        new = copy.copy(self)
        new._subscribers = list(self._subscribers)
        if not self._client_customized:
            # an auto-created client belongs to the instance that created it
            new._client = None
        new._reset_runtime()

        for registration in new._subscribers:
            if isinstance(registration.subscriber, EscargotAware):
                registration.subscriber.set_escargot(new)

        return new

    def with_config(self, config: CrawlerConfig) -> 'Escargot':
        if self._client_customized and config.user_agent != self._config.user_agent:
            raise ClientAlreadyCustomizedError('Cannot override user agent, as you have already customized the client.')

        new = self._copy()
        new._config = config
        return new

    def with_concurrency(self, concurrency: int) -> 'Escargot':
        if concurrency < 1:
            raise ValueError('Concurrency must be at least 1.')
        return self.with_config(replace(self._config, concurrency=concurrency))

    def with_max_requests(self, max_requests: int) -> 'Escargot':
        return self.with_config(replace(self._config, max_requests=max_requests))

    def with_max_duration(self, max_duration: float) -> 'Escargot':
        return self.with_config(replace(self._config, max_duration=max_duration))

    def with_request_delay(self, request_delay: float) -> 'Escargot':
        return self.with_config(replace(self._config, request_delay=request_delay))

    def with_max_depth(self, max_depth: int) -> 'Escargot':
        return self.with_config(replace(self._config, max_depth=max_depth))

    def with_user_agent(self, user_agent: str) -> 'Escargot':
        if self._client_customized:
            raise ClientAlreadyCustomizedError('Cannot override user agent, as you have already customized the client.')
        return self.with_config(replace(self._config, user_agent=user_agent))

    def with_http_client(self, client: HttpClient) -> 'Escargot':
        new = self._copy()
        new._client = client
        new._client_customized = True
        return new

    def with_clock(self, clock: Clock) -> 'Escargot':
        new = self._copy()
        new._clock = clock
        return new

    def with_logger(self, logger: logging.Logger) -> 'Escargot':
        new = self._copy()
        new._logger = logger
        new._log = CrawlerLogAdapter(logger, {'source': self.__class__.__name__, 'job_id': self._job_id})

        for registration in new._subscribers:
            new._set_logger_to_subscriber(registration.subscriber)

        return new

    def add_subscriber(self, subscriber: Subscriber) -> 'Escargot':
        if isinstance(subscriber, EscargotAware):
            subscriber.set_escargot(self)

        self._set_logger_to_subscriber(subscriber)

        self._subscribers.append(_Registration(
            subscriber=subscriber,
            index=len(self._subscribers),
            handles_exceptions=isinstance(subscriber, ExceptionSubscriber),
            finishes_crawling=isinstance(subscriber, FinishedCrawlingSubscriber),
            resolves_tags=isinstance(subscriber, TagValueResolvingSubscriber),
        ))

        return self

    def _set_logger_to_subscriber(self, subscriber: Subscriber):
        if isinstance(subscriber, LoggerAware):
            subscriber.set_logger(SubscriberLogger(self._logger, subscriber.__class__.__name__))

    # Accessors

    @property
    def queue(self) -> QueueInterface:
        return self._queue

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def base_uris(self) -> BaseUriCollection:
        return self._base_uris

    @property
    def config(self) -> CrawlerConfig:
        return self._config

    @property
    def user_agent(self) -> str:
        return self._config.user_agent

    @property
    def requests_sent(self) -> int:
        return self._requests_sent

    @property
    def stats(self) -> CrawlStats:
        return self._stats

    @property
    def subscribers(self) -> List[Subscriber]:
        return [registration.subscriber for registration in self._subscribers]

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def get_client(self) -> HttpClient:
        if self._client is None:
            self._client = AiohttpClient(
                user_agent=self._config.user_agent,
                request_timeout=self._config.request_timeout,
                max_concurrent_requests=self._config.concurrency,
            )
        return self._client

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self._client is not None and not self._client_customized:
            await self._client.close()
            self._client = None

    # Crawling

    async def crawl(self) -> CrawlStats:
        """Run until the queue is drained or a budget is exhausted."""
        self._started_at = self._clock.now()

        while True:
            responses = await self._prepare_responses()

            if not self._running_requests and not responses:
                break

            await self._process_responses(responses)

        self._stats.requests_sent = self._requests_sent
        self._stats.elapsed_time = self._clock.now() - self._started_at

        self._log.debug(f'Finished crawling! Sent {self._requests_sent} request(s).')
        self._log_final_stats()

        for registration in self._subscribers:
            if registration.finishes_crawling:
                await registration.subscriber.finished_crawling()

        return self._stats

    async def add_uri_to_queue(self, uri: str, found_on: CrawlUri, processed: bool = False) -> CrawlUri:
        """
        Add a URI found on ``found_on`` unless it is queued already.

        Callers check is_max_depth_reached() first, adding below max depth
        raises MaxDepthReachedError.
        """
        if self.is_max_depth_reached(found_on):
            raise MaxDepthReachedError('Max depth configured is reached, you cannot add this URI.')

        crawl_uri = await self.get_crawl_uri(uri)
        if crawl_uri is None:
            crawl_uri = CrawlUri(uri, found_on.level + 1, processed, found_on.uri)
            await self._queue.add(self._job_id, crawl_uri)

        return crawl_uri

    def is_max_depth_reached(self, found_on: CrawlUri) -> bool:
        if self._config.max_depth == 0:
            return False
        return found_on.level >= self._config.max_depth

    async def get_crawl_uri(self, uri: str) -> Optional[CrawlUri]:
        return await self._queue.get(self._job_id, uri)

    def resolve_tag_value(self, tag: str) -> Any:
        for registration in self._subscribers:
            if registration.resolves_tags:
                value = registration.subscriber.resolve_tag_value(tag)
                if value is not None:
                    return value
        return None

    def _log_with_crawl_uri(self, crawl_uri: CrawlUri, level: int, message: str):
        self._log.log_with_crawl_uri(crawl_uri, level, message)

    def _is_max_concurrency_reached(self) -> bool:
        return len(self._running_requests) >= self._config.concurrency

    def _is_max_requests_reached(self) -> bool:
        return self._config.max_requests != 0 and self._requests_sent >= self._config.max_requests

    def _is_max_duration_reached(self) -> bool:
        if self._config.max_duration == 0 or self._started_at is None:
            return False
        return self._clock.now() - self._started_at >= self._config.max_duration

    def _is_budget_exhausted(self) -> bool:
        if self._is_max_requests_reached():
            reason = f'Max requests ({self._config.max_requests}) reached.'
        elif self._is_max_duration_reached():
            reason = f'Max duration ({self._config.max_duration}s) reached.'
        else:
            return False

        if not self._budget_logged:
            self._log.debug(reason)
            self._budget_logged = True
        return True

    async def _prepare_responses(self) -> List[Response]:
        responses: List[Response] = []
        skip = 0
        # exhaustion is logged once per drain
        self._budget_logged = False

        while not self._is_max_concurrency_reached() and not self._is_budget_exhausted():
            crawl_uri = await self._queue.get_next(self._job_id, skip)
            if crawl_uri is None:
                break

            # Already processed, ignore
            if crawl_uri.processed:
                skip += 1
                continue

            crawl_uri.mark_processed()
            await self._queue.add(self._job_id, crawl_uri)

            if urlsplit(crawl_uri.uri).scheme not in ('http', 'https'):
                self._log_with_crawl_uri(crawl_uri, logging.DEBUG, "Skipped because it's not a valid http(s) URI.")
                self._stats.skipped += 1
                continue

            exchange = _Exchange(crawl_uri)
            votes = []
            for registration in self._subscribers:
                decision = await registration.subscriber.should_request(crawl_uri)
                exchange.store(SHOULD_REQUEST, registration, decision)
                votes.append(decision)

            if Decision.reduce(votes) is not Decision.POSITIVE:
                # keep tags added while voting
                await self._write_back(crawl_uri)
                self._stats.skipped += 1
                continue

            if self._config.request_delay > 0:
                await self._clock.sleep(self._config.request_delay)

            try:
                response = self.get_client().request('GET', crawl_uri.uri, user_data=crawl_uri)
            except TransportError as exception:
                await self._handle_exception(exception, exchange, None)
                continue

            exchange.response = response
            responses.append(response)
            self._start_request(exchange)

        return responses

    def _start_request(self, exchange: _Exchange):
        uri = exchange.crawl_uri.uri
        if uri not in self._running_requests:
            self._requests_sent += 1
            self._stats.requests_sent = self._requests_sent
        self._running_requests[uri] = exchange

    async def _finish_request(self, exchange: _Exchange):
        self._release(exchange)
        await self._write_back(exchange.crawl_uri)

    async def _write_back(self, crawl_uri: CrawlUri):
        """
        Persist the processed flag and the tags added during an exchange.

        Other subscribers may have tagged the stored entry meanwhile, their
        tags are merged in before writing.
        """
        stored = await self._queue.get(self._job_id, crawl_uri.uri)
        if stored is not None and stored is not crawl_uri:
            for tag in stored.tags:
                crawl_uri.add_tag(tag)
        await self._queue.add(self._job_id, crawl_uri)

    def _release(self, exchange: _Exchange):
        if self._running_requests.get(exchange.crawl_uri.uri) is exchange:
            del self._running_requests[exchange.crawl_uri.uri]

    async def _process_responses(self, responses: List[Response]):
        async for response, chunk in self.get_client().stream(responses):
            await self._process_response_chunk(response, chunk)

        # responses the stream gave up on must not block the concurrency slots
        for response in responses:
            exchange = self._running_requests.get(response.user_data.uri)
            if exchange is not None and exchange.response is response:
                await self._finish_request(exchange)

    async def _process_response_chunk(self, response: Response, chunk: Chunk):
        crawl_uri: CrawlUri = response.user_data
        exchange = self._running_requests.get(crawl_uri.uri)
        if exchange is None or exchange.response is not response:
            return

        try:
            if chunk.is_first:
                # If the response was a redirect to a URI we already know, we can
                # abort early as it has been or will be processed anyway.
                if (response.redirect_count > 0
                        and await self._queue.get(self._job_id, normalize_uri(response.url)) is not None):
                    self._log_with_crawl_uri(
                        crawl_uri,
                        logging.DEBUG,
                        "Skipped further response processing because crawler got redirected to an URI that's already been crawled."
                    )
                    response.cancel()
                    self._stats.canceled += 1
                    await self._finish_request(exchange)
                    return

                # Raises for error statuses no matter what the subscribers do
                response.get_headers()

                votes = []
                for registration in self._subscribers:
                    if exchange.get(SHOULD_REQUEST, registration) is Decision.NEGATIVE:
                        continue

                    decision = await registration.subscriber.needs_content(crawl_uri, response, chunk)
                    exchange.store(NEEDS_CONTENT, registration, decision)
                    votes.append(decision)

                if Decision.reduce(votes) is not Decision.POSITIVE:
                    response.cancel()
                    self._stats.canceled += 1
                    await self._finish_request(exchange)
                    return

            if chunk.is_last:
                for registration in self._subscribers:
                    # never asked counts as abstain
                    if exchange.get(NEEDS_CONTENT, registration) is Decision.NEGATIVE:
                        continue
                    await registration.subscriber.on_last_chunk(crawl_uri, response, chunk)

                self._stats.completed += 1
                await self._finish_request(exchange)

        except HttpClientError as exception:
            await self._handle_exception(exception, exchange, response, chunk)

    async def _handle_exception(self, exception: HttpClientError, exchange: _Exchange,
                                response: Optional[Response], chunk: Optional[Chunk] = None):
        crawl_uri = exchange.crawl_uri

        self._log_with_crawl_uri(
            crawl_uri,
            logging.DEBUG,
            f'Exception of type "{exception.__class__.__name__}" occurred: {exception}'
        )

        if isinstance(exception, TransportError):
            self._stats.transport_errors += 1
        elif isinstance(exception, HttpStatusError):
            self._stats.http_errors += 1

        self._release(exchange)

        for registration in self._subscribers:
            if not registration.handles_exceptions:
                continue

            # subscribers that did not want the request don't get its exceptions either
            if exchange.opted_out(registration):
                continue

            if isinstance(exception, TransportError):
                await registration.subscriber.on_transport_exception(crawl_uri, exception, response)
            elif isinstance(exception, HttpStatusError):
                await registration.subscriber.on_http_exception(crawl_uri, exception, response, chunk)
            else:
                raise RuntimeError('Unknown exception type!')

        await self._write_back(crawl_uri)

        # cancel only now, subscribers must see the original exception
        if response is not None:
            response.cancel()

    def _log_final_stats(self):
        self._log.info(
            "Crawl finished: %d request(s) sent, %d completed, %d canceled, %d skipped, "
            "%d transport error(s), %d HTTP error(s) in %.2f seconds",
            self._stats.requests_sent,
            self._stats.completed,
            self._stats.canceled,
            self._stats.skipped,
            self._stats.transport_errors,
            self._stats.http_errors,
            self._stats.elapsed_time,
        )
