"""
Subscriber that discovers new URIs by following the links of HTML pages.
"""

import logging
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .fetcher import Chunk, Response
from .subscriber import Decision, EscargotAware, LoggerAware, Subscriber, is_of_content_type
from .uri import CrawlUri, create_http_uri, normalize_uri


class HtmlCrawlerSubscriber(Subscriber, EscargotAware, LoggerAware):
    """
    Adds every http(s) ``<a href>`` of an HTML page to the queue.

    It never forces a request itself; if another subscriber does, links of
    the downloaded page are followed until max depth is reached.
    """

    TAG_REL_NOFOLLOW = 'rel-nofollow'
    TAG_NO_TEXT_HTML_TYPE = 'no-txt-html-type'

    async def should_request(self, crawl_uri: CrawlUri) -> Decision:
        return Decision.ABSTAIN

    async def needs_content(self, crawl_uri: CrawlUri, response: Response, chunk: Chunk) -> Decision:
        # Nothing to extract from anything else
        if not is_of_content_type(response, 'text/html'):
            return Decision.NEGATIVE

        return Decision.ABSTAIN

    async def on_last_chunk(self, crawl_uri: CrawlUri, response: Response, chunk: Chunk) -> None:
        # Nothing we found could be added anyway
        if self.escargot.is_max_depth_reached(crawl_uri):
            return

        soup = BeautifulSoup(response.text, 'lxml')
        base_uri = self._get_base_uri(soup, response.url)

        for link in soup.find_all('a', href=True):
            href = link['href'].strip()
            if not href or href.startswith('#'):
                continue

            try:
                uri = create_http_uri(urljoin(base_uri, href))
            except ValueError:
                # mailto:, javascript:, tel: and friends
                continue

            new_crawl_uri = await self.escargot.add_uri_to_queue(normalize_uri(uri), crawl_uri)

            tagged = False

            rel = link.get('rel')
            if isinstance(rel, list):
                rel = ' '.join(rel)
            if rel is not None and 'nofollow' in rel:
                new_crawl_uri.add_tag(self.TAG_REL_NOFOLLOW)
                tagged = True

            link_type = link.get('type')
            if link_type is not None and link_type != 'text/html':
                new_crawl_uri.add_tag(self.TAG_NO_TEXT_HTML_TYPE)
                tagged = True

            if tagged:
                await self.escargot.queue.add(self.escargot.job_id, new_crawl_uri)
                self.log_with_crawl_uri(
                    new_crawl_uri,
                    logging.DEBUG,
                    f'Tagged link found on {crawl_uri.uri}.'
                )

    @staticmethod
    def _get_base_uri(soup: BeautifulSoup, page_uri: str) -> str:
        base = soup.find('base', href=True)
        if base is not None:
            return urljoin(page_uri, base['href'].strip())
        return page_uri
