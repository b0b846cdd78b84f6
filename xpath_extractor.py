#!/usr/bin/env python3
"""
XPath extraction for sources that publish no feed.

A page (HTML) or document (XML) is fetched once, the configured `item`
expression selects one node per article, and each field expression is
evaluated relative to that node. Optional fields are extracted tolerantly:
a field that does not match simply stays empty.

Every failure is raised as XPathError carrying the stage and, where one is
involved, the offending expression.
"""

import re
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import lxml.html
from lxml import etree

from config import config, get_logger
from errors import ConfigurationError, TransportError, XPathError
from feed_parser import local_name
from http_client import fetch_bytes
from models import ParsedFeed, Person, RawItem, SourceKind, XPathRules, XPathSource, parse_kind
from telemetry import trace_span
from utils import resolve_url, short_hash

logger = get_logger("xpath")

NO_ITEMS_DETAILS = (
    "No items found. The Item XPath expression doesn't match any elements on the page. "
    "The page structure may have changed"
)

HREF_EXPRESSIONS = ("./@href", "@href", "href")

# Tried in order when no explicit time format is configured
FALLBACK_TIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%Y-%m",
)

# Go reference-time layout tokens, longest first so "2006" wins over "2"
_GO_LAYOUT_TOKENS = {
    "January": "%B", "Monday": "%A", "Z07:00": "%z", "-07:00": "%z", "-0700": "%z",
    ".000000": ".%f", ".000": ".%f", "2006": "%Y", "Jan": "%b", "Mon": "%a", "MST": "%Z",
    "15": "%H", "01": "%m", "02": "%d", "_2": "%d", "03": "%I", "04": "%M", "05": "%S",
    "06": "%y", "PM": "%p", "pm": "%p", "1": "%m", "2": "%d", "3": "%I", "4": "%M", "5": "%S",
}
_GO_LAYOUT_RE = re.compile("|".join(re.escape(t) for t in sorted(_GO_LAYOUT_TOKENS, key=len, reverse=True)))


def go_layout_to_strptime(layout: str) -> str:
    """Translate a Go reference layout ("2006-01-02 15:04") to a strptime pattern.

    Patterns that already use % directives are returned unchanged.
    """
    if "%" in layout:
        return layout
    return _GO_LAYOUT_RE.sub(lambda m: _GO_LAYOUT_TOKENS[m.group(0)], layout)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_with_formats(text: str, time_format: str = "") -> Optional[datetime]:
    if time_format:
        try:
            return _as_utc(datetime.strptime(text, go_layout_to_strptime(time_format)))
        except ValueError:
            return None

    try:
        return _as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    try:
        return _as_utc(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        pass
    for fmt in FALLBACK_TIME_FORMATS:
        try:
            return _as_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    return None


def strip_leading_token(text: str) -> str:
    """Drop icon labels such as "calendar_month 2025-12" by keeping the last date-like token."""
    if " " not in text:
        return text
    for part in reversed(text.split(" ")):
        part = part.strip()
        if part and ("-" in part or "/" in part or len(part) >= 4):
            return part
    return text


def parse_timestamp(text: str, time_format: str = "") -> Optional[datetime]:
    """Parse a scraped timestamp; None when nothing matches."""
    text = (text or "").strip()
    if not text:
        return None
    parsed = _parse_with_formats(text, time_format)
    if parsed is None:
        stripped = strip_leading_token(text)
        if stripped != text:
            parsed = _parse_with_formats(stripped, time_format)
    return parsed


def _collect_namespaces(root) -> Dict[str, str]:
    namespaces: Dict[str, str] = {}
    for element in root.iter():
        if not isinstance(element.tag, str):
            continue
        for prefix, uri in (element.nsmap or {}).items():
            if prefix and prefix not in namespaces:
                namespaces[prefix] = uri
    return namespaces


def _strip_default_namespace(root) -> None:
    """Let `//entry` match Atom-style documents that declare a default namespace."""
    for element in root.iter():
        if not isinstance(element.tag, str):
            continue
        qname = etree.QName(element.tag)
        if qname.namespace and element.prefix is None:
            element.tag = qname.localname
    etree.cleanup_namespaces(root)


class _Document:
    """A parsed page plus the settings needed to evaluate expressions on it."""

    def __init__(self, root, is_html: bool):
        self.root = root
        self.is_html = is_html
        self.namespaces = {} if is_html else _collect_namespaces(root)

    def select(self, node, expr: str) -> List[Any]:
        result = node.xpath(expr, namespaces=self.namespaces) if self.namespaces else node.xpath(expr)
        if isinstance(result, list):
            return result
        return [result]

    def find_one(self, node, expr: str) -> Any:
        if not expr:
            return None
        try:
            matches = self.select(node, expr)
        except (etree.XPathError, ValueError) as e:
            logger.debug(f"XPath '{expr}' failed on item: {e}")
            return None
        return matches[0] if matches else None

    def inner_text(self, match: Any) -> str:
        if match is None:
            return ""
        if isinstance(match, etree._Element):
            return "".join(match.itertext()).strip()
        if isinstance(match, bool):
            return ""
        return str(match).strip()

    def inner_markup(self, match: Any) -> str:
        if match is None:
            return ""
        if not isinstance(match, etree._Element):
            return self.inner_text(match)
        method = "html" if self.is_html else "xml"
        parts = [match.text or ""]
        for child in match:
            parts.append(etree.tostring(child, encoding="unicode", method=method, with_tail=True))
        return "".join(parts).strip()


def parse_document(content: bytes, url: str, is_html: bool) -> _Document:
    """Parse fetched bytes as HTML or XML, raising an XPathError 'parse' on failure."""
    try:
        if is_html:
            root = lxml.html.document_fromstring(content)
        else:
            parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)
            root = etree.fromstring(content, parser)
            _strip_default_namespace(root)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError) as e:
        if is_html:
            details = "Failed to parse HTML. The content may not be valid HTML"
        else:
            details = "Failed to parse XML. The content may not be valid XML"
        raise XPathError("parse", url=url, details=details, err=e) from e
    if root is None:
        raise XPathError("parse", url=url, details="Document is empty")
    return _Document(root, is_html)


def validate_rules(url: str, kind, rules: XPathRules) -> SourceKind:
    """Check an XPath source before any network access.

    Returns the normalized kind; raises XPathError('validate') otherwise.
    """
    if not (url or "").strip():
        raise XPathError("validate", url=url, details="URL is required")
    try:
        source_kind = parse_kind(kind)
    except ConfigurationError as e:
        raise XPathError("validate", url=url, details=str(e)) from e
    if source_kind not in (SourceKind.HTML_XPATH, SourceKind.XML_XPATH):
        raise XPathError("validate", url=url, details=f"Invalid XPath feed type '{kind}'")
    if not (rules.item or "").strip():
        raise XPathError("validate", url=url, details="Item XPath expression is required")

    for name in ("item", "title", "content", "uri", "author", "timestamp", "thumbnail", "categories", "uid"):
        expr = getattr(rules, name)
        if not expr:
            continue
        try:
            etree.XPath(expr)
        except etree.XPathSyntaxError as e:
            raise XPathError("validate", url=url, xpath_expr=expr, details=f"invalid {name} expression", err=e) from e
    return source_kind


class XPathExtractor:
    """Fetches a page once and turns the nodes matched by the item expression into RawItems."""

    async def fetch(self, url: str, *, timeout: float, proxy_url: Optional[str] = None) -> bytes:
        try:
            return await fetch_bytes(
                url,
                timeout=timeout,
                proxy_url=proxy_url,
                headers={'User-Agent': config.USER_AGENT},
            )
        except TransportError as e:
            if e.status:
                details = f"HTTP {e.status}: {e.details.split(': ', 1)[-1]}. " \
                          "The server may be unreachable or the page may have moved"
            else:
                details = e.details
            raise XPathError("fetch", url=url, details=details, err=e) from e

    @trace_span(
        "xpath_extract",
        tracer_name="xpath",
        attr_from_args=lambda self, source, **kw: {"feed.url": source.url, "feed.kind": source.kind.value},
    )
    async def extract(self, source: XPathSource, *, timeout: float, proxy_url: Optional[str] = None) -> ParsedFeed:
        validate_rules(source.url, source.kind, source.rules)
        content = await self.fetch(source.url, timeout=timeout, proxy_url=proxy_url)
        return self.extract_from_content(source, content)

    def extract_from_content(self, source: XPathSource, content: bytes) -> ParsedFeed:
        """Run the configured expressions against already-fetched content."""
        rules = source.rules
        document = parse_document(content, source.url, source.is_html)

        try:
            nodes = [n for n in document.select(document.root, rules.item) if isinstance(n, etree._Element)]
        except (etree.XPathError, ValueError) as e:
            raise XPathError("extract", url=source.url, xpath_expr=rules.item,
                             details="The Item XPath expression could not be evaluated", err=e) from e
        if not nodes:
            raise XPathError("extract", url=source.url, xpath_expr=rules.item, details=NO_ITEMS_DETAILS)

        items: List[RawItem] = []
        for node in nodes:
            try:
                items.append(self._extract_item(document, node, source))
            except (etree.LxmlError, ValueError) as e:
                logger.warning(f"Skipping XPath item on {source.url}: {e}")

        page_title = ""
        if document.is_html:
            page_title = document.inner_text(document.find_one(document.root, "//title"))
        logger.info(f"Extracted {len(items)} items from {source.url} using XPath '{rules.item}'")
        return ParsedFeed(
            title=source.title or page_title or "XPath Feed",
            link=source.url,
            feed_type=source.kind.value,
            items=items,
        )

    def _extract_uri(self, document: _Document, node, expr: str, feed_url: str) -> str:
        link = ""
        if expr in HREF_EXPRESSIONS:
            link = node.get("href", "") or ""
        elif expr:
            match = document.find_one(node, expr)
            if isinstance(match, etree._Element):
                if "@" in expr:
                    link = document.inner_text(match)
                else:
                    link = match.get("href", "") or document.inner_text(match)
            else:
                link = document.inner_text(match)
        if not link and local_name(node).lower() == "a":
            link = node.get("href", "") or ""
        return resolve_url(feed_url, link)

    def _extract_thumbnail(self, document: _Document, node, expr: str, feed_url: str) -> str:
        match = document.find_one(node, expr)
        if isinstance(match, etree._Element):
            if local_name(match).lower() == "img":
                value = match.get("src", "") or ""
            else:
                value = match.get("src", "") or match.get("href", "") or document.inner_text(match)
        else:
            value = document.inner_text(match)
        return resolve_url(feed_url, value)

    def _extract_item(self, document: _Document, node, source: XPathSource) -> RawItem:
        rules = source.rules
        item = RawItem()

        if rules.title:
            item.title = document.inner_text(document.find_one(node, rules.title))
        if rules.content:
            item.content = document.inner_markup(document.find_one(node, rules.content))

        item.link = self._extract_uri(document, node, rules.uri, source.url)

        if rules.author:
            author = document.inner_text(document.find_one(node, rules.author))
            if author:
                item.author = Person(name=author)

        timestamp_text = ""
        if rules.timestamp:
            timestamp_text = document.inner_text(document.find_one(node, rules.timestamp))
            item.published = parse_timestamp(timestamp_text, rules.time_format)
            if timestamp_text and item.published is None:
                logger.debug(f"Unparsed timestamp '{timestamp_text}' on {source.url}")

        if not item.link:
            if item.title or item.content or timestamp_text:
                digest = short_hash(item.title, item.content, timestamp_text)
            else:
                digest = f"article-{time.time_ns()}"
            item.link = f"{source.url}#xpath-{digest}"

        if rules.thumbnail:
            item.image_url = self._extract_thumbnail(document, node, rules.thumbnail, source.url)

        if rules.categories:
            try:
                matches = document.select(node, rules.categories)
            except (etree.XPathError, ValueError):
                matches = []
            item.categories = [t for t in (document.inner_text(m) for m in matches) if t]

        uid = document.inner_text(document.find_one(node, rules.uid)) if rules.uid else ""
        item.guid = uid or item.link or item.title
        return item
