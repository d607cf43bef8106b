"""
HTTP transport used by the crawl scheduler.

Requests are started without blocking. Their responses are consumed as a
stream of chunks multiplexed across every running response, so a single
control loop can keep many requests in flight.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout

from .uri import create_http_uri


class HttpClientError(Exception):
    """Base class for errors raised by the HTTP transport."""
    pass


class TransportError(HttpClientError):
    """Network level failure (DNS, connection, timeout, invalid URL, cancellation)."""
    pass


class HttpStatusError(HttpClientError):
    """Raised when the headers of a response with an error status are accessed."""

    def __init__(self, response: 'Response'):
        self.response = response
        self.status = response.status
        super().__init__(f'HTTP {response.status} returned for "{response.url}".')


@dataclass
class Chunk:
    """
    A piece of a response.

    Reading any property of an error chunk raises the transport error it
    carries.
    """
    data: bytes = b''
    first: bool = False
    last: bool = False
    error: Optional[TransportError] = None

    def _raise_error(self):
        if self.error is not None:
            raise self.error

    @property
    def is_first(self) -> bool:
        self._raise_error()
        return self.first

    @property
    def is_last(self) -> bool:
        self._raise_error()
        return self.last

    @property
    def content(self) -> bytes:
        self._raise_error()
        return self.data


class Response:
    """
    State of one HTTP exchange, fed by a transport and read by the consumers
    of HttpClient.stream().
    """

    def __init__(self, method: str, url: str, user_data: Any = None):
        self.method = method
        self.requested_url = url
        self.url = url
        self.user_data = user_data
        self.status = 0
        self.redirect_count = 0
        self.canceled = False

        self._headers: Dict[str, List[str]] = {}
        self._body = bytearray()
        self._error: Optional[TransportError] = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._done = asyncio.Event()

    def __repr__(self) -> str:
        return f'<Response {self.method} {self.url} status={self.status}>'

    # Feeding side

    def _feed_headers(self, status: int, headers: Iterable[Tuple[str, str]],
                      url: Optional[str] = None, redirect_count: int = 0):
        self.status = status
        self.redirect_count = redirect_count
        if url is not None:
            self.url = url
        for name, value in headers:
            self._headers.setdefault(name.lower(), []).append(value)
        self._events.put_nowait(Chunk(first=True))

    def _feed_data(self, data: bytes):
        self._body.extend(data)
        self._events.put_nowait(Chunk(data=data))

    def _finish(self):
        self._events.put_nowait(Chunk(last=True))
        self._done.set()

    def _fail(self, error: TransportError):
        self._error = error
        self._events.put_nowait(Chunk(error=error))
        self._done.set()

    def _abort(self):
        """Stop producing chunks. Transports with background work override this."""
        pass

    # Consuming side

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def next_chunk(self) -> Chunk:
        return await self._events.get()

    def get_headers(self, throw: bool = True) -> Dict[str, List[str]]:
        """
        Return the response headers, lower-cased names mapped to their values.

        With throw=True a transport failure or an error status is raised
        instead.
        """
        if throw:
            self._check_status()
        return dict(self._headers)

    def get_content(self, throw: bool = True) -> bytes:
        if throw:
            self._check_status()
        return bytes(self._body)

    @property
    def content(self) -> bytes:
        return self.get_content()

    @property
    def charset(self) -> Optional[str]:
        for value in self._headers.get('content-type', [])[:1]:
            for param in value.split(';')[1:]:
                key, _, charset = param.strip().partition('=')
                if key.lower() == 'charset' and charset:
                    return charset.strip('"\'')
        return None

    @property
    def text(self) -> str:
        """Decode the body with the announced charset, falling back to utf-8 and latin-1."""
        content = self.get_content()
        encoding = self.charset or 'utf-8'
        try:
            return content.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            pass
        try:
            return content.decode('utf-8')
        except UnicodeDecodeError:
            return content.decode('latin-1')

    async def read(self, throw: bool = True) -> bytes:
        """Wait until the response is complete and return its body."""
        await self._done.wait()
        return self.get_content(throw)

    def cancel(self):
        """
        Abort the exchange. No further chunks are streamed; the body of an
        already completed response stays readable.
        """
        if self.canceled:
            return
        self.canceled = True
        if self._done.is_set():
            return
        self._abort()
        self._error = TransportError('Response has been canceled.')
        # wake up a consumer waiting on this response
        self._events.put_nowait(Chunk(last=True))
        self._done.set()

    def _check_status(self):
        if self._error is not None:
            raise self._error
        if self.status >= 400:
            raise HttpStatusError(self)


class HttpClient:
    """Base class for transports: start requests, then stream their chunks."""

    def request(self, method: str, url: str, *, user_data: Any = None) -> Response:
        raise NotImplementedError

    async def stream(self, responses: Iterable[Response]) -> AsyncIterator[Tuple[Response, Chunk]]:
        """
        Yield (response, chunk) pairs in arrival order until every response
        delivered its last chunk, failed or got canceled.
        """
        waiting: Dict[asyncio.Future, Response] = {}
        for response in responses:
            if not response.canceled:
                waiting[asyncio.ensure_future(response.next_chunk())] = response

        try:
            while waiting:
                done, _ = await asyncio.wait(list(waiting), return_when=asyncio.FIRST_COMPLETED)
                # keep the order responses were started in
                for future in [f for f in waiting if f in done]:
                    response = waiting.pop(future)
                    chunk = future.result()
                    if response.canceled:
                        continue

                    yield response, chunk

                    if not response.canceled and not chunk.last and chunk.error is None:
                        waiting[asyncio.ensure_future(response.next_chunk())] = response
        finally:
            for future in waiting:
                future.cancel()

    async def close(self):
        pass


class AiohttpResponse(Response):
    """Response fed by an aiohttp request running as a background task."""

    def __init__(self, method: str, url: str, user_data: Any = None):
        super().__init__(method, url, user_data)
        self._task: Optional[asyncio.Task] = None

    def _start(self, client: 'AiohttpClient'):
        self._task = asyncio.ensure_future(self._run(client))

    def _abort(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self, client: 'AiohttpClient'):
        try:
            async with client.get_session().request(
                self.method,
                self.requested_url,
                max_redirects=client.max_redirects,
            ) as response:
                content_length = response.headers.get('content-length')
                if content_length and content_length.isdigit() and int(content_length) > client.max_content_size:
                    raise TransportError(f'Content too large ({content_length} bytes): {response.url}')

                self._feed_headers(
                    response.status,
                    response.headers.items(),
                    url=str(response.url),
                    redirect_count=len(response.history),
                )

                async for data in response.content.iter_chunked(client.chunk_size):
                    if len(self._body) + len(data) > client.max_content_size:
                        raise TransportError(f'Content exceeded size limit during reading: {response.url}')
                    self._feed_data(data)
                    client.stats['total_bytes_downloaded'] += len(data)

                client.stats['successful_requests'] += 1
                self._finish()

        except TransportError as e:
            client.stats['failed_requests'] += 1
            client.logger.debug(f'Transport error for {self.requested_url}: {e}')
            self._fail(e)

        except asyncio.TimeoutError:
            client.stats['failed_requests'] += 1
            client.logger.debug(f'Timeout fetching {self.requested_url}')
            self._fail(TransportError(f'Request timeout for "{self.requested_url}".'))

        except ClientError as e:
            client.stats['failed_requests'] += 1
            client.logger.debug(f'Client error fetching {self.requested_url}: {e}')
            self._fail(TransportError(f'Client error: {e}'))

        except Exception as e:
            # e.g. hosts the idna codec rejects; the stream must still end
            client.stats['failed_requests'] += 1
            client.logger.warning(f'Unexpected error fetching {self.requested_url}: {e}')
            if not self.done:
                error = TransportError(f'Unexpected error: {e}')
                error.__cause__ = e
                self._fail(error)


class AiohttpClient(HttpClient):
    """
    Transport backed by an aiohttp ClientSession.

    Every request runs in its own task and pushes chunks as they arrive;
    redirects are followed by aiohttp and exposed via redirect_count.
    """

    def __init__(self, user_agent: str, request_timeout: float = 30,
                 max_concurrent_requests: int = 10, chunk_size: int = 8192,
                 max_redirects: int = 10, max_content_size: int = 10 * 1024 * 1024):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.chunk_size = chunk_size
        self.max_redirects = max_redirects
        self.max_content_size = max_content_size

        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None

        # Statistics
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def get_session(self) -> ClientSession:
        """Create the session on first use, inside the running event loop."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.request_timeout),
                headers={'User-Agent': self.user_agent},
                connector=aiohttp.TCPConnector(
                    limit=self.max_concurrent_requests * 2,
                    limit_per_host=10,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.debug("AiohttpClient session started")
        return self.session

    def request(self, method: str, url: str, *, user_data: Any = None) -> Response:
        try:
            create_http_uri(url)
        except ValueError:
            raise TransportError(f'Unsupported URL "{url}".')

        self.stats['total_requests'] += 1
        response = AiohttpResponse(method, url, user_data)
        response._start(self)
        return response

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.debug("AiohttpClient session closed")

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()
