# File: tests/test_subscribers.py
import pytest_asyncio

from conftest import CollectingSubscriber
from escargot.crawler import (
    BaseUriCollection,
    Chunk,
    CrawlUri,
    Decision,
    Escargot,
    HtmlCrawlerSubscriber,
    MockHttpClient,
    MockResponse,
    RobotsSubscriber,
)
from escargot.storage import InMemoryQueue

BASE = 'https://example.com/'

ROBOTS_TXT = """User-agent: *
Disallow: /private

Sitemap: https://example.com/sitemap.xml
"""

SITEMAP = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/from-sitemap</loc></url>
  <url><loc>not a uri</loc></url>
</urlset>
"""

SITEMAP_INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://example.com/sitemap-pages.xml</loc></sitemap>
  <sitemap><loc>https://example.com/sitemap-news.xml</loc></sitemap>
</sitemapindex>
"""


def html_response(body: str, head: str = '', **headers) -> MockResponse:
    headers = {'content-type': 'text/html; charset=utf-8', **headers}
    return MockResponse(f'<html><head>{head}</head><body>{body}</body></html>', headers=headers)


class RobotsGate(CollectingSubscriber):
    """Downloads everything robots.txt allows."""

    async def should_request(self, crawl_uri):
        self.requested.append(crawl_uri.uri)
        if crawl_uri.has_tag(RobotsSubscriber.TAG_DISALLOWED_ROBOTS_TXT):
            return Decision.NEGATIVE
        return Decision.POSITIVE


@pytest_asyncio.fixture
async def escargot():
    return await Escargot.create(BaseUriCollection([BASE]), InMemoryQueue())


async def deliver(subscriber, crawl_uri, mock: MockResponse, url=BASE):
    response = mock.play('GET', url, crawl_uri)
    await subscriber.on_last_chunk(crawl_uri, response, Chunk(last=True))


# --------------------------------------------------------------------------- #
#                               HTML crawler                                  #
# --------------------------------------------------------------------------- #


class TestHtmlCrawlerSubscriber:

    async def test_never_requests_on_its_own(self, escargot):
        subscriber = HtmlCrawlerSubscriber()
        escargot.add_subscriber(subscriber)

        assert await subscriber.should_request(CrawlUri(BASE, 0)) is Decision.ABSTAIN

    async def test_only_html_content_is_wanted(self, escargot):
        subscriber = HtmlCrawlerSubscriber()
        crawl_uri = CrawlUri(BASE, 0)

        html = html_response('').play('GET', BASE)
        pdf = MockResponse(b'%PDF', headers={'content-type': 'application/pdf'}).play('GET', BASE)
        missing = MockResponse(b'').play('GET', BASE)

        assert await subscriber.needs_content(crawl_uri, html, Chunk(first=True)) is Decision.ABSTAIN
        assert await subscriber.needs_content(crawl_uri, pdf, Chunk(first=True)) is Decision.NEGATIVE
        assert await subscriber.needs_content(crawl_uri, missing, Chunk(first=True)) is Decision.NEGATIVE

    async def test_adds_links_to_the_queue(self, escargot):
        subscriber = HtmlCrawlerSubscriber()
        escargot.add_subscriber(subscriber)
        base = await escargot.get_crawl_uri(BASE)

        await deliver(subscriber, base, html_response(
            '<a href="/foo">foo</a>'
            '<a href="bar#section">bar</a>'
            '<a href="https://github.com/">external</a>'
            '<a href="mailto:info@example.com">mail</a>'
            '<a href="javascript:void(0)">js</a>'
            '<a href="#top">top</a>'
            '<a href="">empty</a>'
            '<a>no href</a>'
        ))

        uris = [crawl_uri.uri async for crawl_uri in escargot.queue.get_all(escargot.job_id)]
        assert uris == [
            BASE,
            'https://example.com/foo',
            'https://example.com/bar',
            'https://github.com/',
        ]

        foo = await escargot.get_crawl_uri('https://example.com/foo')
        assert foo.level == 1
        assert foo.found_on == BASE
        assert not foo.processed

    async def test_links_are_resolved_against_base_href_and_final_url(self, escargot):
        subscriber = HtmlCrawlerSubscriber()
        escargot.add_subscriber(subscriber)
        base = await escargot.get_crawl_uri(BASE)

        redirected = MockResponse(
            '<html><body><a href="relative">r</a></body></html>',
            headers={'content-type': 'text/html'},
            url='https://example.com/landing/',
            redirect_count=1,
        )
        await deliver(subscriber, base, redirected)
        assert await escargot.get_crawl_uri('https://example.com/landing/relative') is not None

        with_base = html_response('<a href="page">p</a>', head='<base href="https://example.com/docs/">')
        await deliver(subscriber, base, with_base)
        assert await escargot.get_crawl_uri('https://example.com/docs/page') is not None

    async def test_tags_nofollow_and_non_html_links(self, escargot):
        subscriber = HtmlCrawlerSubscriber()
        escargot.add_subscriber(subscriber)
        base = await escargot.get_crawl_uri(BASE)

        await deliver(subscriber, base, html_response(
            '<a href="/sponsored" rel="sponsored nofollow">ad</a>'
            '<a href="/manual.pdf" type="application/pdf">manual</a>'
            '<a href="/page" type="text/html">page</a>'
        ))

        sponsored = await escargot.get_crawl_uri('https://example.com/sponsored')
        manual = await escargot.get_crawl_uri('https://example.com/manual.pdf')
        page = await escargot.get_crawl_uri('https://example.com/page')

        assert sponsored.tags == [HtmlCrawlerSubscriber.TAG_REL_NOFOLLOW]
        assert manual.tags == [HtmlCrawlerSubscriber.TAG_NO_TEXT_HTML_TYPE]
        assert page.tags == []

    async def test_does_not_add_links_at_max_depth(self, escargot):
        escargot = escargot.with_max_depth(1)
        subscriber = HtmlCrawlerSubscriber()
        escargot.add_subscriber(subscriber)

        child = CrawlUri('https://example.com/child', 1, True, BASE)
        await deliver(subscriber, child, html_response('<a href="/grandchild">g</a>'))

        assert await escargot.queue.count_all(escargot.job_id) == 1


# --------------------------------------------------------------------------- #
#                                   Robots                                    #
# --------------------------------------------------------------------------- #


class TestRobotsSubscriber:

    def test_robots_txt_uri(self):
        crawl_uri = CrawlUri('https://example.com:8443/some/page?x=1', 1)
        assert RobotsSubscriber.get_robots_txt_uri(crawl_uri) == 'https://example.com:8443/robots.txt'

    async def test_full_crawl(self, sqlite_queue):
        client = MockHttpClient({
            'https://example.com/robots.txt': MockResponse(ROBOTS_TXT, headers={'content-type': 'text/plain'}),
            BASE: html_response(
                '<a href="/public">public</a>'
                '<a href="/private/secret">secret</a>'
                '<a href="/partner" rel="nofollow">partner</a>'
                '<a href="mailto:info@example.com">mail</a>'
            ),
            'https://example.com/public': html_response('', head='<meta name="robots" content="noindex, nofollow">'),
            'https://example.com/partner': html_response('partner'),
            'https://example.com/sitemap.xml': MockResponse(SITEMAP, headers={'content-type': 'application/xml'}),
            'https://example.com/from-sitemap': html_response('', **{'x-robots-tag': 'noindex'}),
        })
        gate = RobotsGate()
        escargot = (await Escargot.create(BaseUriCollection([BASE]), sqlite_queue)).with_http_client(client)
        escargot.add_subscriber(RobotsSubscriber())
        escargot.add_subscriber(HtmlCrawlerSubscriber())
        escargot.add_subscriber(gate)

        await escargot.crawl()

        async def stored(path):
            return await sqlite_queue.get(escargot.job_id, f'https://example.com/{path}')

        requested = client.requested_urls()
        assert requested.count('https://example.com/robots.txt') == 1
        assert 'https://example.com/private/secret' not in requested
        assert sorted(gate.last_chunks) == [
            BASE,
            'https://example.com/from-sitemap',
            'https://example.com/partner',
            'https://example.com/public',
            'https://example.com/sitemap.xml',
        ]

        secret = await stored('private/secret')
        assert secret.processed
        assert secret.tags == [RobotsSubscriber.TAG_DISALLOWED_ROBOTS_TXT]

        public = await stored('public')
        assert public.has_tag(RobotsSubscriber.TAG_NOINDEX)
        assert public.has_tag(RobotsSubscriber.TAG_NOFOLLOW)

        assert (await stored('partner')).tags == [HtmlCrawlerSubscriber.TAG_REL_NOFOLLOW]

        sitemap = await stored('sitemap.xml')
        assert sitemap.tags == [RobotsSubscriber.TAG_IS_SITEMAP]
        assert sitemap.level == 2
        assert sitemap.found_on == 'https://example.com/robots.txt'

        from_sitemap = await stored('from-sitemap')
        assert from_sitemap.found_on == 'https://example.com/sitemap.xml'
        assert from_sitemap.tags == [RobotsSubscriber.TAG_NOINDEX]

        assert await sqlite_queue.count_all(escargot.job_id) == 6
        assert await sqlite_queue.count_pending(escargot.job_id) == 0

    async def test_missing_robots_txt_is_requested_once(self, escargot):
        client = MockHttpClient({})
        escargot = escargot.with_http_client(client)
        subscriber = RobotsSubscriber()
        escargot.add_subscriber(subscriber)

        for path in ('', 'a', 'b'):
            crawl_uri = CrawlUri(f'https://example.com/{path}', 1)
            assert await subscriber.should_request(crawl_uri) is Decision.ABSTAIN
            assert crawl_uri.tags == []

        assert client.requested_urls() == ['https://example.com/robots.txt']
        assert subscriber.robots_cache == {'https://example.com/robots.txt': None}

    async def test_unreachable_robots_txt_allows_everything(self, escargot):
        escargot = escargot.with_http_client(MockHttpClient({
            'https://example.com/robots.txt': MockResponse(error='Connection refused'),
        }))
        subscriber = RobotsSubscriber()
        escargot.add_subscriber(subscriber)

        crawl_uri = CrawlUri('https://example.com/private', 1)
        assert await subscriber.should_request(crawl_uri) is Decision.ABSTAIN
        assert crawl_uri.tags == []

    async def test_sitemaps_are_not_added_at_max_depth(self, escargot):
        escargot = escargot.with_max_depth(1).with_http_client(MockHttpClient({
            'https://example.com/robots.txt': MockResponse(ROBOTS_TXT),
        }))
        subscriber = RobotsSubscriber()
        escargot.add_subscriber(subscriber)

        await subscriber.should_request(await escargot.get_crawl_uri(BASE))

        assert await escargot.get_crawl_uri('https://example.com/sitemap.xml') is None

    async def test_x_robots_tag_header(self, escargot):
        subscriber = RobotsSubscriber()
        escargot.add_subscriber(subscriber)
        crawl_uri = CrawlUri(BASE, 0)

        response = MockResponse(b'', headers={'X-Robots-Tag': 'noindex, nofollow'}).play('GET', BASE)

        assert await subscriber.needs_content(crawl_uri, response, Chunk(first=True)) is Decision.ABSTAIN
        assert crawl_uri.tags == [RobotsSubscriber.TAG_NOINDEX, RobotsSubscriber.TAG_NOFOLLOW]

    async def test_meta_robots_tag_outside_head_is_ignored(self, escargot):
        subscriber = RobotsSubscriber()
        escargot.add_subscriber(subscriber)
        crawl_uri = CrawlUri(BASE, 0)

        await deliver(subscriber, crawl_uri, html_response(
            '<meta name="robots" content="noindex">', head='<title>Page</title>'
        ))

        assert crawl_uri.tags == []

    async def test_sitemap_index_entries_are_sitemaps_too(self, escargot):
        subscriber = RobotsSubscriber()
        escargot.add_subscriber(subscriber)
        sitemap = CrawlUri('https://example.com/sitemap.xml', 2, True, 'https://example.com/robots.txt')
        sitemap.add_tag(RobotsSubscriber.TAG_IS_SITEMAP)

        assert await subscriber.should_request(sitemap) is Decision.POSITIVE

        await deliver(subscriber, sitemap, MockResponse(SITEMAP_INDEX), url=sitemap.uri)

        for name in ('pages', 'news'):
            child = await escargot.get_crawl_uri(f'https://example.com/sitemap-{name}.xml')
            assert child.level == 3
            assert child.found_on == sitemap.uri
            assert child.has_tag(RobotsSubscriber.TAG_IS_SITEMAP)
