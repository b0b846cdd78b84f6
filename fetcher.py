#!/usr/bin/env python3
"""
Feed fetch orchestrator.

This is the only entry point other subsystems call. It picks the acquisition
strategy for a source (email, script, XPath or plain URL), applies the
priority/timeout policy, runs the URL fallback chain and hands the resulting
items to the normalizer.
"""

from asyncio import Semaphore, TimeoutError, create_task, gather, get_event_loop, wait_for
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional, Set, Tuple

from author_fix import fix_feed_authors
from config import config, get_logger
from email_fetcher import EmailFetcher
from errors import (
    ConfigurationError,
    FeedParseError,
    FetchFailedError,
    IngestError,
    RenderError,
    ScriptError,
    TransportError,
)
from feed_parser import FeedParserAdapter, FeedparserAdapter, decode_body
from http_client import browser_headers, build_proxy_url, fetch_bytes, summarize_proxy
from interfaces import FeedStore, RSSHubResolver
from models import (
    EmailSource,
    FeedRecord,
    FeedSource,
    ParsedFeed,
    ProxyConfig,
    RefreshResult,
    ScriptSource,
    UrlSource,
    XPathRules,
    XPathSource,
)
from normalizer import Translator, process_articles
from renderer import PlaywrightRenderer, Renderer
from sanitizer import sanitize_feed_xml
from script_executor import ScriptExecutor
from telemetry import init_telemetry, trace_span
from xpath_extractor import XPathExtractor, validate_rules

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("feed-ingest-fetcher")

RSSHUB_SCHEME = "rsshub://"
XPATH_DEFAULT_TITLE = "XPath Feed"


def is_rsshub_url(url: str) -> bool:
    return (url or "").startswith(RSSHUB_SCHEME)


def generate_title_from_route(route: str) -> str:
    """Friendly title for an RSSHub route: "weibo/user/123" -> "Weibo - user/123"."""
    parts = route.strip("/").split("/")
    name = parts[0].replace("-", " ").title()
    if len(parts) > 1:
        return f"{parts[0].title()} - {'/'.join(parts[1:])}"
    return name


class FeedFetcher:
    def __init__(
        self,
        store: Optional[FeedStore] = None,
        parser: Optional[FeedParserAdapter] = None,
        renderer: Optional[Renderer] = None,
        rsshub: Optional[RSSHubResolver] = None,
        translator: Optional[Translator] = None,
        target_language: Optional[str] = None,
        scripts_dir: Optional[str] = None,
        email_fetcher: Optional[EmailFetcher] = None,
        xpath_extractor: Optional[XPathExtractor] = None,
    ) -> None:
        self.executor = ThreadPoolExecutor()
        self.store = store
        self.parser = parser or FeedparserAdapter(self.executor)
        self.renderer = renderer or PlaywrightRenderer()
        self.rsshub = rsshub
        self.translator = translator
        self.target_language = target_language
        self.scripts = ScriptExecutor(scripts_dir, parser=self.parser)
        self.email = email_fetcher or EmailFetcher()
        self.xpath = xpath_extractor or XPathExtractor()
        self._proxy_warning_feeds: Set[str] = set()
        self._proxy_usage_logged: Set[str] = set()

    def _timeout(self, priority: bool) -> float:
        return config.PRIORITY_TIMEOUT if priority else config.HTTP_TIMEOUT

    def _settle_seconds(self, priority: bool) -> float:
        return config.PRIORITY_RENDER_SETTLE_SECONDS if priority else config.RENDER_SETTLE_SECONDS

    def _setting(self, key: str) -> str:
        if self.store is None:
            return ""
        try:
            return (self.store.get_setting(key) or "").strip()
        except (KeyError, OSError) as e:
            logger.warning(f"Could not read setting {key}: {e}")
            return ""

    def _store_proxy_url(self) -> Optional[str]:
        """Proxy configured in application settings, if it is switched on."""
        if self._setting("proxy_enabled").lower() != "true":
            return None
        return build_proxy_url(
            self._setting("proxy_type"),
            self._setting("proxy_host"),
            self._setting("proxy_port"),
            self._setting("proxy_username"),
            self._setting("proxy_password"),
        ) or None

    def _resolve_proxy_url(self, source: FeedSource) -> Optional[str]:
        """Determine the proxy URL to use for a feed, if any.

        A per-feed setting wins. Without one, the application proxy applies when
        enabled; the feeds.yaml proxy is only used by feeds that opt in.
        """
        feed_key = getattr(source, "url", "") or repr(source)
        proxy: Optional[ProxyConfig] = getattr(source, "proxy", None)

        if proxy is None:
            candidate = self._store_proxy_url()
        elif not proxy.enabled:
            return None
        elif proxy.url:
            candidate = proxy.url
        else:
            candidate = self._store_proxy_url() or getattr(config, "PROXY_URL", None)
            if not candidate and feed_key not in self._proxy_warning_feeds:
                logger.warning(f"Feed {feed_key} requested proxy routing but no proxy is configured")
                self._proxy_warning_feeds.add(feed_key)

        if candidate and feed_key not in self._proxy_usage_logged:
            logger.info(f"Proxy {summarize_proxy(candidate)} enabled for feed {feed_key}")
            self._proxy_usage_logged.add(feed_key)
        return candidate or None

    def _resolve_url(self, url: str) -> str:
        if not is_rsshub_url(url):
            return url
        if self.rsshub is None:
            raise ConfigurationError(f"RSSHub URL {url} requires an RSSHub resolver")
        actual_url = self.rsshub.build_url(url[len(RSSHUB_SCHEME):])
        logger.debug(f"Transformed RSSHub URL {url} to {actual_url}")
        return actual_url

    async def _parse_sanitized(self, content: str, url: str) -> ParsedFeed:
        cleaned = sanitize_feed_xml(content)
        feed = await self.parser.parse_string(cleaned, url)
        fix_feed_authors(feed, cleaned)
        return feed

    async def _fetch_sanitized(self, url: str, timeout: float, proxy_url: Optional[str]) -> ParsedFeed:
        body = await fetch_bytes(url, timeout=timeout, proxy_url=proxy_url, headers=browser_headers())
        return await self._parse_sanitized(decode_body(body), url)

    async def _fetch_rendered(self, url: str, priority: bool) -> ParsedFeed:
        page_content = await self.renderer.render(
            url, timeout=self._timeout(priority), settle_seconds=self._settle_seconds(priority)
        )
        try:
            return await self._parse_sanitized(page_content, url)
        except FeedParseError as e:
            raise RenderError(url, f"failed to parse content after JavaScript execution: {e.details}") from e

    @trace_span(
        "url_fallback_chain",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, **kw: {"feed.url": url, "fetch.priority": kw.get("priority", False)},
    )
    async def fetch_url(self, url: str, *, priority: bool = False, proxy_url: Optional[str] = None) -> ParsedFeed:
        """Run the URL fallback chain, stopping at the first stage that yields a feed."""
        timeout = self._timeout(priority)
        errors: List[BaseException] = []

        try:
            return await self._fetch_sanitized(url, timeout, proxy_url)
        except (TransportError, FeedParseError) as e:
            logger.debug(f"Sanitized fetch failed for {url}: {e}")
            errors.append(e)

        try:
            feed = await self.parser.parse_url(url, timeout=timeout, proxy_url=proxy_url)
            logger.debug(f"Standard parsing succeeded for {url}")
            return feed
        except FeedParseError as e:
            errors.append(e)
            if not e.kind.looks_like_html:
                logger.debug(f"Not attempting JavaScript execution for {url}: {e.kind.value}")
                raise FetchFailedError(url, errors, summary=str(e)) from e
            logger.info(f"Standard parsing of {url} failed ({e.kind.value}); trying headless rendering")

        try:
            return await self._fetch_rendered(url, priority)
        except RenderError as e:
            errors.append(e)
            raise FetchFailedError(
                url, errors, summary=f"both standard parsing and JavaScript execution failed: {e.details}"
            ) from e

    def _email_timeout(self, priority: bool) -> float:
        return config.PRIORITY_TIMEOUT if priority else config.IMAP_TIMEOUT

    async def _fetch_email(self, source: EmailSource, priority: bool) -> ParsedFeed:
        items, last_uid = await self.email.fetch_new(source, timeout=self._email_timeout(priority))
        return ParsedFeed(
            title=source.title or source.email_address,
            link=source.url,
            items=items,
            feed_type="email",
            last_seen_uid=last_uid,
        )

    async def _fetch_script(self, source: ScriptSource, priority: bool) -> ParsedFeed:
        if not priority:
            return await self.scripts.execute(source.script_path)
        try:
            return await wait_for(self.scripts.execute(source.script_path), timeout=self._timeout(priority))
        except TimeoutError:
            raise ScriptError(f"script execution timed out after {self._timeout(priority)}s") from None

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, source, priority=False: {
            "feed.kind": source.kind.value,
            "feed.url": source.url,
            "fetch.priority": priority,
        },
    )
    async def fetch(self, source: FeedSource, priority: bool = False) -> ParsedFeed:
        """Acquire the raw items of one source with the strategy its kind implies."""
        logger.debug(f"Fetching {source.kind.value} source {source.url} (priority={priority})")
        if isinstance(source, EmailSource):
            return await self._fetch_email(source, priority)
        if isinstance(source, ScriptSource):
            return await self._fetch_script(source, priority)
        if isinstance(source, XPathSource):
            return await self.xpath.extract(
                source, timeout=self._timeout(priority), proxy_url=self._resolve_proxy_url(source)
            )
        if isinstance(source, UrlSource):
            url = self._resolve_url(source.url)
            return await self.fetch_url(url, priority=priority, proxy_url=self._resolve_proxy_url(source))
        raise ConfigurationError(f"Unsupported feed source {type(source).__name__}")

    async def fetch_articles(self, source: FeedSource, priority: bool = False) -> RefreshResult:
        """Fetch a source and normalize its items.

        For email sources the returned `last_seen_uid` is the new high-water
        mark; it is also written to the store when one is configured. Callers
        must not refresh the same email feed concurrently.
        """
        feed = await self.fetch(source, priority=priority)
        articles = process_articles(source.id, feed.items, self.translator, self.target_language)
        if isinstance(source, EmailSource) and feed.last_seen_uid is not None:
            if self.store is not None and source.id is not None and feed.last_seen_uid > source.last_seen_uid:
                self.store.update_feed_email_last_uid(source.id, feed.last_seen_uid)
        logger.info(f"Fetched {len(articles)} articles from {source.url}")
        return RefreshResult(articles=articles, last_seen_uid=feed.last_seen_uid)

    async def fetch_many(
        self,
        sources: Iterable[Tuple[str, FeedSource]],
        priority: bool = False,
        concurrency: Optional[int] = None,
    ) -> List[Tuple[str, Optional[RefreshResult], Optional[BaseException]]]:
        """Fetch several (slug, source) pairs concurrently.

        Returns (slug, result, error) triples in input order; one failing feed
        never affects the others.
        """
        semaphore = Semaphore(concurrency or config.FETCH_CONCURRENCY)

        async def fetch_with_semaphore(slug: str, source: FeedSource):
            async with semaphore:
                try:
                    return slug, await self.fetch_articles(source, priority=priority), None
                except IngestError as e:
                    logger.error(f"Error fetching feed {slug}: {e}")
                    return slug, None, e
                except Exception as e:
                    logger.error(f"Unexpected error fetching feed {slug}: {e}", exc_info=True)
                    return slug, None, e

        tasks = [create_task(fetch_with_semaphore(slug, source)) for slug, source in sources]
        return list(await gather(*tasks))

    def _require_store(self) -> FeedStore:
        if self.store is None:
            raise ConfigurationError("No feed store configured")
        return self.store

    async def add_subscription(self, url: str, category: str = "", custom_title: str = "",
                               proxy: Optional[ProxyConfig] = None) -> int:
        """Validate a feed URL by fetching it and store the subscription."""
        store = self._require_store()
        source = UrlSource(url=url, category=category, title=custom_title, proxy=proxy)
        feed = await self.fetch(source)
        record = FeedRecord(
            title=custom_title or feed.title,
            url=url,
            source=source,
            link=feed.link,
            description=feed.description,
            category=category,
            image_url=feed.image_url,
        )
        return store.add_feed(record)

    async def add_script_subscription(self, script_path: str, category: str = "", custom_title: str = "") -> int:
        store = self._require_store()
        source = ScriptSource(script_path=script_path, category=category, title=custom_title)
        feed = await self.fetch(source)
        record = FeedRecord(
            title=custom_title or feed.title,
            url=source.url,
            source=source,
            link=feed.link,
            description=feed.description,
            category=category,
            image_url=feed.image_url,
        )
        return store.add_feed(record)

    async def add_xpath_subscription(
        self,
        url: str,
        feed_type: str,
        rules: XPathRules,
        category: str = "",
        custom_title: str = "",
    ) -> int:
        """Validate the expressions against the live page before storing the subscription."""
        store = self._require_store()
        kind = validate_rules(url, feed_type, rules)
        source = XPathSource(url=url, rules=rules, xpath_kind=kind, category=category,
                             title=custom_title or XPATH_DEFAULT_TITLE)
        await self.xpath.extract(source, timeout=config.HTTP_TIMEOUT, proxy_url=self._resolve_proxy_url(source))
        record = FeedRecord(title=source.title, url=url, source=source, category=category)
        return store.add_feed(record)

    async def add_email_subscription(
        self,
        email_address: str,
        imap_server: str,
        username: str,
        password: str,
        category: str = "",
        custom_title: str = "",
        folder: str = "",
        imap_port: int = 0,
    ) -> int:
        store = self._require_store()
        for value, label in ((email_address, "email address"), (imap_server, "IMAP server"),
                             (username, "username"), (password, "password")):
            if not value:
                raise ConfigurationError(f"{label} is required")

        source = EmailSource(
            imap_server=imap_server,
            username=username,
            password=password,
            imap_port=imap_port or config.IMAP_DEFAULT_PORT,
            folder=folder or config.IMAP_DEFAULT_FOLDER,
            email_address=email_address,
            category=category,
            title=custom_title or email_address,
        )
        record = FeedRecord(
            title=source.title,
            url=source.url,
            source=source,
            description=f"Newsletter subscription for {email_address}",
            category=category,
        )
        return store.add_feed(record)

    async def add_rsshub_subscription(self, route: str, category: str = "", custom_title: str = "") -> int:
        store = self._require_store()
        route = (route or "").strip()
        if not route:
            raise ConfigurationError("RSSHub route cannot be empty")
        if self.rsshub is None:
            raise ConfigurationError("RSSHub subscriptions require an RSSHub resolver")
        # The public instance has no key; skip validation there
        if self.rsshub.api_key:
            await self.rsshub.validate_route(route)

        source = UrlSource(url=RSSHUB_SCHEME + route, category=category,
                           title=custom_title or generate_title_from_route(route))
        record = FeedRecord(
            title=source.title,
            url=source.url,
            source=source,
            link=self.rsshub.build_url(route),
            description=f"RSSHub route: {route}",
            category=category,
        )
        return store.add_feed(record)

    async def close(self) -> None:
        """Shut down the parser thread pool."""
        logger.info("Shutting down thread pool executor...")
        try:
            await wait_for(
                get_event_loop().run_in_executor(None, lambda: self.executor.shutdown(wait=True)),
                timeout=30.0,
            )
        except TimeoutError:
            logger.warning("Thread pool executor shutdown timed out after 30 seconds")
            self.executor.shutdown(wait=False)
        logger.info("FeedFetcher closed")

