"""
Subscriber applying robots.txt, X-Robots-Tag, <meta name="robots"> and sitemaps.
"""

import logging
from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit
from urllib.robotparser import RobotFileParser

from bs4 import BeautifulSoup

from .fetcher import Chunk, HttpStatusError, Response, TransportError
from .subscriber import Decision, EscargotAware, LoggerAware, Subscriber, is_of_content_type
from .uri import CrawlUri, create_http_uri, normalize_uri


class RobotsSubscriber(Subscriber, EscargotAware, LoggerAware):
    """
    Tags CrawlUris according to the robots directives of their site and
    queues the sitemaps announced in robots.txt.

    Register it before the subscribers that act on its tags: they are added
    while voting on should_request and needs_content.
    """

    TAG_NOINDEX = 'noindex'
    TAG_NOFOLLOW = 'nofollow'
    TAG_DISALLOWED_ROBOTS_TXT = 'disallowed-robots-txt'
    TAG_IS_SITEMAP = 'is-sitemap'

    def __init__(self):
        self.robots_cache: Dict[str, Optional[RobotFileParser]] = {}

    async def should_request(self, crawl_uri: CrawlUri) -> Decision:
        # Sitemaps found earlier are always requested
        if crawl_uri.has_tag(self.TAG_IS_SITEMAP):
            return Decision.POSITIVE

        await self._handle_disallowed_by_robots_txt_tag(crawl_uri)

        return Decision.ABSTAIN

    async def needs_content(self, crawl_uri: CrawlUri, response: Response, chunk: Chunk) -> Decision:
        if crawl_uri.has_tag(self.TAG_IS_SITEMAP):
            return Decision.POSITIVE

        values = response.get_headers(throw=False).get('x-robots-tag')
        if values:
            self._handle_noindex_nofollow_tags(
                crawl_uri,
                values[0],
                'Added the "{tag}" tag because the X-Robots-Tag header contained "{value}".'
            )

        return Decision.ABSTAIN

    async def on_last_chunk(self, crawl_uri: CrawlUri, response: Response, chunk: Chunk) -> None:
        if crawl_uri.has_tag(self.TAG_IS_SITEMAP):
            await self._extract_uris_from_sitemap(crawl_uri, response.content)
            return

        if not is_of_content_type(response, 'text/html'):
            return

        soup = BeautifulSoup(response.text, 'lxml')
        scope = soup.head or soup
        meta = scope.find(
            'meta',
            attrs={'name': lambda name: name is not None and name.lower() == 'robots', 'content': True}
        )

        self._handle_noindex_nofollow_tags(
            crawl_uri,
            meta['content'] if meta is not None else '',
            'Added the "{tag}" tag because the <meta name="robots"> tag contained "{value}".'
        )

    def _handle_noindex_nofollow_tags(self, crawl_uri: CrawlUri, value: str, message: str):
        tags = []

        if 'noindex' in value:
            tags.append(self.TAG_NOINDEX)

        if 'nofollow' in value:
            tags.append(self.TAG_NOFOLLOW)

        for tag in tags:
            crawl_uri.add_tag(tag)
            self.log_with_crawl_uri(crawl_uri, logging.DEBUG, message.format(tag=tag, value=value))

    async def _handle_disallowed_by_robots_txt_tag(self, crawl_uri: CrawlUri):
        robots_txt = await self._get_robots_txt(crawl_uri)
        if robots_txt is None:
            return

        # robots.txt of a base URI may announce sitemaps
        if crawl_uri.level == 0:
            await self._handle_sitemaps(crawl_uri, robots_txt)

        if not robots_txt.can_fetch(self.escargot.user_agent, crawl_uri.uri):
            crawl_uri.add_tag(self.TAG_DISALLOWED_ROBOTS_TXT)
            self.log_with_crawl_uri(
                crawl_uri,
                logging.DEBUG,
                f'Added the "{self.TAG_DISALLOWED_ROBOTS_TXT}" tag because of the robots.txt content.'
            )

    @staticmethod
    def get_robots_txt_uri(crawl_uri: CrawlUri) -> str:
        parts = urlsplit(crawl_uri.uri)
        return urlunsplit((parts.scheme, parts.netloc, '/robots.txt', '', ''))

    async def _get_robots_txt(self, crawl_uri: CrawlUri) -> Optional[RobotFileParser]:
        robots_txt_uri = self.get_robots_txt_uri(crawl_uri)

        if robots_txt_uri in self.robots_cache:
            return self.robots_cache[robots_txt_uri]

        try:
            response = self.escargot.get_client().request('GET', robots_txt_uri)
            await response.read()
            content = response.text
        except (HttpStatusError, TransportError) as e:
            self.log_with_crawl_uri(
                crawl_uri,
                logging.DEBUG,
                f'Could not load {robots_txt_uri}, assuming there is none: {e}'
            )
            self.robots_cache[robots_txt_uri] = None
            return None

        parser = RobotFileParser(robots_txt_uri)
        parser.parse(content.splitlines())
        self.robots_cache[robots_txt_uri] = parser
        return parser

    async def _handle_sitemaps(self, crawl_uri: CrawlUri, robots_txt: RobotFileParser):
        # Nothing can be added anymore (cannot happen on level 0 unless max depth is 0)
        if self.escargot.is_max_depth_reached(crawl_uri):
            return

        # robots.txt is always level 1
        found_on_robots_txt = CrawlUri(self.get_robots_txt_uri(crawl_uri), 1, True)
        if self.escargot.is_max_depth_reached(found_on_robots_txt):
            return

        for sitemap in robots_txt.site_maps() or []:
            try:
                sitemap_uri = normalize_uri(create_http_uri(sitemap.strip()))
            except ValueError:
                self.log_with_crawl_uri(
                    crawl_uri,
                    logging.DEBUG,
                    f'Could not add sitemap URI "{sitemap}" to the queue because the URI is invalid.'
                )
                continue

            new_crawl_uri = await self.escargot.add_uri_to_queue(sitemap_uri, found_on_robots_txt)
            if not new_crawl_uri.has_tag(self.TAG_IS_SITEMAP):
                new_crawl_uri.add_tag(self.TAG_IS_SITEMAP)
                await self.escargot.queue.add(self.escargot.job_id, new_crawl_uri)

    async def _extract_uris_from_sitemap(self, sitemap_uri: CrawlUri, content: bytes):
        if self.escargot.is_max_depth_reached(sitemap_uri):
            return

        soup = BeautifulSoup(content, 'xml')
        root = soup.find(['urlset', 'sitemapindex'])
        if root is None:
            self.log_with_crawl_uri(sitemap_uri, logging.DEBUG, 'Ignored sitemap without urlset or sitemapindex.')
            return

        is_sitemap_index = root.name == 'sitemapindex'

        for entry in root.find_all(['url', 'sitemap'], recursive=False):
            loc = entry.find('loc')
            value = loc.get_text(strip=True) if loc is not None else ''

            try:
                uri = normalize_uri(create_http_uri(value))
            except ValueError:
                self.log_with_crawl_uri(
                    sitemap_uri,
                    logging.DEBUG,
                    f'Could not add URI "{value}" found in the sitemap to the queue because the URI is invalid.'
                )
                continue

            new_crawl_uri = await self.escargot.add_uri_to_queue(uri, sitemap_uri)
            if is_sitemap_index and not new_crawl_uri.has_tag(self.TAG_IS_SITEMAP):
                new_crawl_uri.add_tag(self.TAG_IS_SITEMAP)
                await self.escargot.queue.add(self.escargot.job_id, new_crawl_uri)
