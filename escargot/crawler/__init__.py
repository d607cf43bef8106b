"""
Crawler core components.
"""

from .uri import BaseUriCollection, CrawlUri, create_http_uri, get_host, normalize_uri
from .subscriber import (
    Decision, Subscriber, ExceptionSubscriber, FinishedCrawlingSubscriber,
    TagValueResolvingSubscriber, EscargotAware, LoggerAware, is_of_content_type
)
from .fetcher import (
    HttpClientError, TransportError, HttpStatusError,
    Chunk, Response, HttpClient, AiohttpClient
)
from .mock import MockHttpClient, MockResponse
from .scheduler import (
    Escargot, CrawlStats, InvalidJobIdError, ClientAlreadyCustomizedError, MaxDepthReachedError
)
from .html_crawler import HtmlCrawlerSubscriber
from .robots import RobotsSubscriber

__all__ = [
    'BaseUriCollection', 'CrawlUri', 'create_http_uri', 'get_host', 'normalize_uri',
    'Decision', 'Subscriber', 'ExceptionSubscriber', 'FinishedCrawlingSubscriber',
    'TagValueResolvingSubscriber', 'EscargotAware', 'LoggerAware', 'is_of_content_type',
    'HttpClientError', 'TransportError', 'HttpStatusError',
    'Chunk', 'Response', 'HttpClient', 'AiohttpClient',
    'MockHttpClient', 'MockResponse',
    'Escargot', 'CrawlStats', 'InvalidJobIdError', 'ClientAlreadyCustomizedError', 'MaxDepthReachedError',
    'HtmlCrawlerSubscriber', 'RobotsSubscriber',
]
