"""
In-process transport that replays canned responses.

Used by the test-suite and for dry runs of subscriber setups without touching
the network.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .fetcher import HttpClient, Response, TransportError


@dataclass
class MockResponse:
    """Description of a response to replay. ``body`` may be a list of chunks."""
    body: Union[bytes, str, List[bytes]] = b''
    status: int = 200
    headers: Dict[str, Union[str, List[str]]] = field(default_factory=dict)
    url: Optional[str] = None
    redirect_count: int = 0
    error: Optional[str] = None

    def _chunks(self) -> List[bytes]:
        if isinstance(self.body, str):
            return [self.body.encode('utf-8')] if self.body else []
        if isinstance(self.body, bytes):
            return [self.body] if self.body else []
        return [part.encode('utf-8') if isinstance(part, str) else part for part in self.body]

    def _header_items(self) -> List[Tuple[str, str]]:
        items = []
        for name, values in self.headers.items():
            if isinstance(values, str):
                values = [values]
            items.extend((name, value) for value in values)
        return items

    def play(self, method: str, url: str, user_data: Any = None) -> Response:
        """Build a Response with all of its chunks already queued."""
        response = Response(method, url, user_data)
        if self.error is not None:
            response._fail(TransportError(self.error))
            return response

        response._feed_headers(
            self.status,
            self._header_items(),
            url=self.url or url,
            redirect_count=self.redirect_count,
        )
        for data in self._chunks():
            response._feed_data(data)
        response._finish()
        return response


ResponseFactory = Callable[[str, str, Dict[str, Any]], MockResponse]


class MockHttpClient(HttpClient):
    """
    Replays MockResponse objects.

    ``responses`` is either a callable receiving (method, url, options), a
    mapping of URL to MockResponse (unknown URLs answer with an empty 404) or
    an iterable consumed one response per request.
    """

    def __init__(self, responses: Union[ResponseFactory, Mapping[str, MockResponse],
                                        Iterable[MockResponse], None] = None):
        self.requests: List[Tuple[str, str]] = []
        self.closed = False

        if responses is None:
            self._factory: ResponseFactory = lambda method, url, options: MockResponse()
        elif callable(responses):
            self._factory = responses
        elif isinstance(responses, Mapping):
            mapping = dict(responses)
            self._factory = lambda method, url, options: mapping.get(url, MockResponse(status=404))
        else:
            iterator = iter(responses)

            def next_response(method, url, options):
                try:
                    return next(iterator)
                except StopIteration:
                    raise TransportError(f'No more mock responses available for "{url}".')

            self._factory = next_response

    @property
    def request_count(self) -> int:
        return len(self.requests)

    def requested_urls(self) -> List[str]:
        return [url for _, url in self.requests]

    def request(self, method: str, url: str, *, user_data: Any = None) -> Response:
        self.requests.append((method, url))
        mock = self._factory(method, url, {'user_data': user_data})
        return mock.play(method, url, user_data)

    async def close(self):
        self.closed = True
