import pytest

import fetcher as fetcher_module
from config import config
from errors import ConfigurationError, FeedParseError, FetchFailedError, ParseErrorKind, RenderError, TransportError
from fetcher import FeedFetcher
from interfaces import MemoryFeedStore, RSSHubClient
from models import EmailSource, ParsedFeed, RawItem, UrlSource


GOOD_RSS = """<?xml version="1.0"?>
<rss version="2.0">
  <channel>
    <title>Good</title>
    <link>https://good.example/</link>
    <item><title>One</title><link>https://good.example/1</link><description>Body</description></item>
  </channel>
</rss>"""


class ScriptedParser:
    """Parser double: parse_string succeeds unless told otherwise, parse_url does what it is told."""

    def __init__(self, string_error=None, url_error=None):
        self.string_error = string_error
        self.url_error = url_error
        self.calls = []

    async def parse_string(self, text, url=None):
        self.calls.append(("string", text))
        if self.string_error is not None:
            error, self.string_error = self.string_error, None
            raise error
        return ParsedFeed(title="from string", items=[RawItem(title="s", link="https://x/s")])

    async def parse_url(self, url, *, timeout, proxy_url=None):
        self.calls.append(("url", url, timeout, proxy_url))
        if self.url_error is not None:
            raise self.url_error
        return ParsedFeed(title="from url", items=[RawItem(title="u", link="https://x/u")])


class FakeRenderer:
    def __init__(self, content=GOOD_RSS, error=None):
        self.content = content
        self.error = error
        self.calls = []

    async def render(self, url, *, timeout, settle_seconds):
        self.calls.append((url, timeout, settle_seconds))
        if self.error is not None:
            raise self.error
        return self.content


def transport_down(monkeypatch, seen=None):
    async def fake_fetch(url, *, timeout, proxy_url=None, headers=None):
        if seen is not None:
            seen.append((url, timeout, proxy_url, headers))
        raise TransportError(url, "ClientConnectorError connection refused")

    monkeypatch.setattr(fetcher_module, "fetch_bytes", fake_fetch)


def serve(monkeypatch, body, seen=None):
    async def fake_fetch(url, *, timeout, proxy_url=None, headers=None):
        if seen is not None:
            seen.append((url, timeout, proxy_url, headers))
        return body

    monkeypatch.setattr(fetcher_module, "fetch_bytes", fake_fetch)


@pytest.mark.asyncio
async def test_first_stage_uses_browser_headers_and_real_parser(monkeypatch):
    seen = []
    serve(monkeypatch, GOOD_RSS.encode(), seen)
    renderer = FakeRenderer()

    feed = await FeedFetcher(renderer=renderer).fetch(UrlSource(url="https://good.example/rss"))

    assert feed.title == "Good"
    assert [item.title for item in feed.items] == ["One"]
    url, timeout, proxy_url, headers = seen[0]
    assert timeout == config.HTTP_TIMEOUT
    assert headers["Accept"].startswith("application/rss+xml")
    assert "Accept-Encoding" not in headers
    assert renderer.calls == []


@pytest.mark.asyncio
async def test_priority_shortens_timeouts(monkeypatch):
    seen = []
    transport_down(monkeypatch, seen)
    parser = ScriptedParser(url_error=FeedParseError(ParseErrorKind.NOT_A_FEED, "Failed to detect feed type"))
    renderer = FakeRenderer()

    await FeedFetcher(parser=parser, renderer=renderer).fetch(UrlSource(url="https://spa.example/"), priority=True)

    assert seen[0][1] == config.PRIORITY_TIMEOUT
    assert parser.calls[0][2] == config.PRIORITY_TIMEOUT
    assert renderer.calls == [("https://spa.example/", config.PRIORITY_TIMEOUT, config.PRIORITY_RENDER_SETTLE_SECONDS)]


@pytest.mark.asyncio
async def test_standard_parse_is_second_stage(monkeypatch):
    transport_down(monkeypatch)
    parser = ScriptedParser()
    renderer = FakeRenderer()

    feed = await FeedFetcher(parser=parser, renderer=renderer).fetch(UrlSource(url="https://x.example/rss"))

    assert feed.title == "from url"
    assert [call[0] for call in parser.calls] == ["url"]
    assert renderer.calls == []


@pytest.mark.asyncio
async def test_sanitized_parse_failure_falls_back(monkeypatch):
    serve(monkeypatch, b"<rss><broken")
    parser = ScriptedParser(string_error=FeedParseError(ParseErrorKind.MALFORMED_XML, "XML syntax error"))

    feed = await FeedFetcher(parser=parser, renderer=FakeRenderer()).fetch(UrlSource(url="https://x.example/rss"))

    assert feed.title == "from url"
    assert [call[0] for call in parser.calls] == ["string", "url"]


@pytest.mark.parametrize("kind", [ParseErrorKind.MALFORMED_XML, ParseErrorKind.NOT_A_FEED, ParseErrorKind.EMPTY_DOCUMENT])
@pytest.mark.asyncio
async def test_html_like_failures_trigger_rendering(monkeypatch, kind):
    transport_down(monkeypatch)
    parser = ScriptedParser(url_error=FeedParseError(kind, "looks like a web page"))
    renderer = FakeRenderer(content="<rss>rendered</rss>")

    feed = await FeedFetcher(parser=parser, renderer=renderer).fetch(UrlSource(url="https://spa.example/"))

    assert feed.title == "from string"
    assert renderer.calls == [("https://spa.example/", config.HTTP_TIMEOUT, config.RENDER_SETTLE_SECONDS)]
    assert parser.calls[-1] == ("string", "<rss>rendered</rss>")


@pytest.mark.parametrize("kind", [ParseErrorKind.NETWORK_FAILURE, ParseErrorKind.HTTP_STATUS])
@pytest.mark.asyncio
async def test_other_failures_skip_rendering(monkeypatch, kind):
    transport_down(monkeypatch)
    parser = ScriptedParser(url_error=FeedParseError(kind, "HTTP 500: Internal Server Error"))
    renderer = FakeRenderer()

    with pytest.raises(FetchFailedError) as excinfo:
        await FeedFetcher(parser=parser, renderer=renderer).fetch(UrlSource(url="https://down.example/"))

    assert renderer.calls == []
    assert [type(e) for e in excinfo.value.errors] == [TransportError, FeedParseError]


@pytest.mark.asyncio
async def test_every_stage_failing_wraps_errors(monkeypatch):
    transport_down(monkeypatch)
    parser = ScriptedParser(url_error=FeedParseError(ParseErrorKind.NOT_A_FEED, "Failed to detect feed type"))
    renderer = FakeRenderer(error=RenderError("https://spa.example/", "browser crashed"))

    with pytest.raises(FetchFailedError) as excinfo:
        await FeedFetcher(parser=parser, renderer=renderer).fetch(UrlSource(url="https://spa.example/"))

    assert "both standard parsing and JavaScript execution failed" in str(excinfo.value)
    assert len(excinfo.value.errors) == 3
    assert isinstance(excinfo.value.__cause__, RenderError)


@pytest.mark.asyncio
async def test_unparseable_rendered_page(monkeypatch):
    transport_down(monkeypatch)
    parser = ScriptedParser(url_error=FeedParseError(ParseErrorKind.NOT_A_FEED, "Failed to detect feed type"))
    renderer = FakeRenderer(content="<html><body>still html</body></html>")
    fetcher = FeedFetcher(parser=parser, renderer=renderer)
    parser.string_error = FeedParseError(ParseErrorKind.NOT_A_FEED, "Failed to detect feed type")

    with pytest.raises(FetchFailedError) as excinfo:
        await fetcher.fetch(UrlSource(url="https://spa.example/"))

    assert "failed to parse content after JavaScript execution" in str(excinfo.value)


@pytest.mark.asyncio
async def test_rsshub_url_requires_resolver():
    with pytest.raises(ConfigurationError):
        await FeedFetcher(renderer=FakeRenderer()).fetch(UrlSource(url="rsshub://weibo/user/1"))


@pytest.mark.asyncio
async def test_rsshub_url_is_transformed(monkeypatch):
    seen = []
    serve(monkeypatch, GOOD_RSS.encode(), seen)
    rsshub = RSSHubClient(endpoint="https://hub.example/", api_key="k3y")

    await FeedFetcher(renderer=FakeRenderer(), rsshub=rsshub).fetch(UrlSource(url="rsshub://weibo/user/1"))

    assert seen[0][0] == "https://hub.example/weibo/user/1?key=k3y"


class FakeEmailFetcher:
    def __init__(self, items, last_uid):
        self.items = items
        self.last_uid = last_uid
        self.sources = []
        self.timeouts = []

    async def fetch_new(self, source, *, timeout=None):
        self.sources.append(source)
        self.timeouts.append(timeout)
        return self.items, self.last_uid


@pytest.mark.asyncio
async def test_email_refresh_returns_and_persists_last_uid():
    store = MemoryFeedStore()
    items = [RawItem(title="Issue 11", link="email://11", guid="email-11", content="<p>hi</p>")]
    fetcher = FeedFetcher(store=store, renderer=FakeRenderer(), email_fetcher=FakeEmailFetcher(items, 13))
    source = EmailSource(imap_server="imap.example.com", username="u", password="p", last_seen_uid=10, id=7,
                         email_address="news@example.com")

    result = await fetcher.fetch_articles(source)

    assert result.last_seen_uid == 13
    assert [a.title for a in result.articles] == ["Issue 11"]
    assert result.articles[0].feed_id == 7
    assert store.email_last_uids == {7: 13}


@pytest.mark.asyncio
async def test_email_refresh_without_new_mail_does_not_write():
    store = MemoryFeedStore()
    fetcher = FeedFetcher(store=store, renderer=FakeRenderer(), email_fetcher=FakeEmailFetcher([], 10))
    source = EmailSource(imap_server="imap.example.com", username="u", password="p", last_seen_uid=10, id=7)

    result = await fetcher.fetch_articles(source)

    assert result.articles == []
    assert result.last_seen_uid == 10
    assert store.email_last_uids == {}


@pytest.mark.asyncio
async def test_fetch_many_isolates_failures(monkeypatch):
    async def fake_fetch(url, *, timeout, proxy_url=None, headers=None):
        if "bad" in url:
            raise TransportError(url, "HTTP 500: Internal Server Error", status=500)
        return GOOD_RSS.encode()

    monkeypatch.setattr(fetcher_module, "fetch_bytes", fake_fetch)
    parser_error = FeedParseError(ParseErrorKind.HTTP_STATUS, "HTTP 500: Internal Server Error")
    fetcher = FeedFetcher(renderer=FakeRenderer())

    async def failing_parse_url(url, *, timeout, proxy_url=None):
        raise parser_error

    monkeypatch.setattr(fetcher.parser, "parse_url", failing_parse_url)
    results = await fetcher.fetch_many([
        ("good", UrlSource(url="https://good.example/rss")),
        ("bad", UrlSource(url="https://bad.example/rss")),
    ], concurrency=2)

    assert [slug for slug, _, _ in results] == ["good", "bad"]
    assert results[0][1].articles[0].title == "One"
    assert results[0][2] is None
    assert results[1][1] is None
    assert isinstance(results[1][2], FetchFailedError)
    await fetcher.close()


@pytest.mark.asyncio
async def test_priority_shortens_email_timeout():
    email = FakeEmailFetcher([], 0)
    fetcher = FeedFetcher(renderer=FakeRenderer(), email_fetcher=email)
    source = EmailSource(imap_server="imap.example.com", username="u", password="p")

    await fetcher.fetch(source, priority=True)
    await fetcher.fetch(source)

    assert email.timeouts == [config.PRIORITY_TIMEOUT, config.IMAP_TIMEOUT]
