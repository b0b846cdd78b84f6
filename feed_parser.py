#!/usr/bin/env python3
"""
Standard RSS/Atom parser adapter.

Wraps feedparser behind a small interface (`parse_string`, `parse_url`) so the
orchestrator can swap it out in tests. feedparser does most of the work; a
second pass over the raw document with lxml recovers the fields feedparser
folds together (content:encoded vs description) and the namespaced extension
elements (media:*, itunes:*, ...) the normalizer needs.

Failures are raised as FeedParseError with a ParseErrorKind so callers can
decide on fallbacks without matching message text.
"""

from asyncio import get_event_loop
from concurrent.futures import Executor
from datetime import datetime, timezone
from functools import partial
from typing import Dict, List, Optional, Protocol
from io import BytesIO
import re
import xml.sax

import feedparser
from lxml import etree

from config import get_logger
from errors import FeedParseError, ParseErrorKind, TransportError
from http_client import fetch_bytes
from models import Enclosure, Extension, Extensions, ParsedFeed, Person, RawItem

logger = get_logger("parser")

# Prefixes used when a document declares a well-known namespace without one
KNOWN_NAMESPACES = {
    "http://search.yahoo.com/mrss/": "media",
    "http://purl.org/rss/1.0/modules/content/": "content",
    "http://purl.org/dc/elements/1.1/": "dc",
    "http://www.itunes.com/dtds/podcast-1.0.dtd": "itunes",
    "http://www.w3.org/2005/Atom": "atom",
}
ATOM_NS = "http://www.w3.org/2005/Atom"
CONTENT_NS = "http://purl.org/rss/1.0/modules/content/"


def hardened_xml_parser() -> etree.XMLParser:
    """lxml parser that tolerates broken markup and never expands entities or hits the network."""
    return etree.XMLParser(
        recover=True, resolve_entities=False, no_network=True, huge_tree=False, encoding="utf-8",
    )


def parse_xml_root(raw: str):
    """Parse raw XML text with the hardened parser, returning the root element or None."""
    if not raw or not raw.strip():
        return None
    try:
        return etree.fromstring(raw.encode("utf-8"), hardened_xml_parser())
    except (etree.XMLSyntaxError, ValueError):
        return None


def local_name(element) -> str:
    tag = element.tag
    if not isinstance(tag, str):
        return ""
    return etree.QName(tag).localname


def inner_markup(element) -> str:
    """Text and serialized children of `element`, without the element itself."""
    parts = [element.text or ""]
    for child in element:
        parts.append(etree.tostring(child, encoding="unicode", with_tail=True))
    return "".join(parts).strip()


class FeedParserAdapter(Protocol):
    async def parse_string(self, text: str, url: Optional[str] = None) -> ParsedFeed:
        ...

    async def parse_url(self, url: str, *, timeout: float, proxy_url: Optional[str] = None) -> ParsedFeed:
        ...


def _struct_to_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime(*value[:6], tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


def _to_extension(element) -> Extension:
    children: Dict[str, List[Extension]] = {}
    for child in element:
        if not isinstance(child.tag, str):
            continue
        children.setdefault(local_name(child), []).append(_to_extension(child))
    return Extension(
        name=local_name(element),
        value=(element.text or "").strip(),
        attrs={etree.QName(k).localname: v for k, v in element.attrib.items()},
        children=children,
    )


def _prefix_for(element, default_ns: Optional[str]) -> Optional[str]:
    namespace = etree.QName(element.tag).namespace
    if not namespace or namespace == default_ns:
        return None
    return element.prefix or KNOWN_NAMESPACES.get(namespace) or namespace


class _RawItemFields:
    """Fields read straight from one raw <item>/<entry> element."""

    def __init__(self, element):
        default_ns = etree.QName(element.tag).namespace
        self.description = ""
        self.content = ""
        self.extensions: Extensions = {}
        for child in element:
            if not isinstance(child.tag, str):
                continue
            name = local_name(child)
            namespace = etree.QName(child.tag).namespace
            if namespace == CONTENT_NS and name == "encoded":
                self.content = inner_markup(child)
            elif namespace == default_ns and name in ("description", "summary") and not self.description:
                self.description = inner_markup(child)
            elif namespace == default_ns and name == "content" and default_ns == ATOM_NS:
                self.content = inner_markup(child)
            prefix = _prefix_for(child, default_ns)
            if prefix:
                self.extensions.setdefault(prefix, {}).setdefault(name, []).append(_to_extension(child))


def _raw_item_fields(raw: str) -> Optional[List[_RawItemFields]]:
    root = parse_xml_root(raw)
    if root is None:
        return None
    items = [
        el for el in root.iter()
        if isinstance(el.tag, str) and local_name(el) in ("item", "entry")
    ]
    return [_RawItemFields(el) for el in items]


def _entry_author(entry) -> Optional[Person]:
    detail = entry.get("author_detail") or {}
    name = (detail.get("name") or "").strip()
    email = (detail.get("email") or "").strip()
    if not name and not email:
        name = (entry.get("author") or "").strip()
    if not name and not email:
        return None
    return Person(name=name, email=email)


def _entry_enclosures(entry) -> List[Enclosure]:
    enclosures = []
    for enc in entry.get("enclosures") or []:
        href = enc.get("href") or enc.get("url")
        if href:
            enclosures.append(Enclosure(url=href, type=enc.get("type", ""), length=str(enc.get("length", "") or "")))
    return enclosures


def _entry_to_raw_item(entry, raw_fields: Optional[_RawItemFields]) -> RawItem:
    content = ""
    if entry.get("content"):
        content = entry.content[0].get("value", "") or ""
    description = entry.get("summary", "") or ""
    extensions: Extensions = {}
    if raw_fields is not None:
        # feedparser copies content into summary; prefer the raw split
        content = raw_fields.content
        description = raw_fields.description
        extensions = raw_fields.extensions

    image = entry.get("image")
    image_url = image.get("href", "") if isinstance(image, dict) else ""

    return RawItem(
        title=entry.get("title", "") or "",
        link=entry.get("link", "") or "",
        guid=entry.get("id", "") or "",
        author=_entry_author(entry),
        published=_struct_to_datetime(entry.get("published_parsed") or entry.get("updated_parsed")),
        content=content,
        description=description,
        image_url=image_url or "",
        enclosures=_entry_enclosures(entry),
        categories=[t.get("term") for t in entry.get("tags") or [] if t.get("term")],
        extensions=extensions,
    )


def build_parsed_feed(result, raw: str) -> ParsedFeed:
    """Convert a feedparser result (plus the raw text it came from) into a ParsedFeed."""
    raw_items = _raw_item_fields(raw)
    entries = result.entries
    if raw_items is not None and len(raw_items) != len(entries):
        logger.debug("Raw item count %d differs from parsed entries %d; using parser fields only",
                     len(raw_items), len(entries))
        raw_items = None

    items = [
        _entry_to_raw_item(entry, raw_items[index] if raw_items is not None else None)
        for index, entry in enumerate(entries)
    ]
    feed = result.get("feed", {})
    image = feed.get("image") or {}
    return ParsedFeed(
        title=feed.get("title", "") or "",
        link=feed.get("link", "") or "",
        description=feed.get("subtitle", "") or feed.get("description", "") or "",
        image_url=image.get("href", "") or image.get("url", "") if isinstance(image, dict) else "",
        feed_type=result.get("version", "") or "",
        items=items,
    )


def classify_result(result, raw: str, url: Optional[str] = None) -> None:
    """Raise FeedParseError when feedparser did not find a usable feed."""
    if not raw or not raw.strip():
        raise FeedParseError(ParseErrorKind.EMPTY_DOCUMENT, "document is empty", url)

    version = result.get("version", "")
    entries = result.get("entries") or []
    exc = result.get("bozo_exception") if result.get("bozo") else None

    if version or entries:
        if exc is not None:
            logger.warning(f"Feed parsing warning{' for ' + url if url else ''}: {exc}")
        return

    if isinstance(exc, xml.sax.SAXException):
        raise FeedParseError(ParseErrorKind.MALFORMED_XML, f"XML syntax error: {exc}", url)
    raise FeedParseError(ParseErrorKind.NOT_A_FEED, "Failed to detect feed type", url)


_XML_DECL_ENCODING_RE = re.compile(r"""(<\?xml[^>]*?encoding=)["'][^"']*["']""", re.IGNORECASE)


def force_utf8_declaration(text: str) -> str:
    """Point the XML declaration at UTF-8, since decoded text is re-encoded as UTF-8."""
    return _XML_DECL_ENCODING_RE.sub(r'\1"utf-8"', text, count=1)


class FeedparserAdapter:
    """feedparser-backed implementation of FeedParserAdapter."""

    def __init__(self, executor: Optional[Executor] = None):
        self.executor = executor

    def parse_sync(self, text: str, url: Optional[str] = None) -> ParsedFeed:
        # A file-like object, never str or bytes: feedparser opens either as a URL or local path
        result = feedparser.parse(
            BytesIO(force_utf8_declaration(text or "").encode("utf-8")),
            sanitize_html=True,
            resolve_relative_uris=True,
        )
        classify_result(result, text, url)
        parsed = build_parsed_feed(result, text)
        logger.debug(f"Parsed {len(parsed.items)} items as {parsed.feed_type or 'unknown'} format")
        return parsed

    async def parse_string(self, text: str, url: Optional[str] = None) -> ParsedFeed:
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(self.parse_sync, text, url))

    async def parse_url(self, url: str, *, timeout: float, proxy_url: Optional[str] = None) -> ParsedFeed:
        """Fetch with a plain request (no browser headers, no sanitizing) and parse."""
        try:
            body = await fetch_bytes(url, timeout=timeout, proxy_url=proxy_url)
        except TransportError as e:
            kind = ParseErrorKind.HTTP_STATUS if e.status else ParseErrorKind.NETWORK_FAILURE
            raise FeedParseError(kind, e.details, url) from e
        return await self.parse_string(decode_body(body), url)


def decode_body(body: bytes) -> str:
    """Decode a feed body using its XML declaration, then UTF-8, then latin-1."""
    if body.startswith(b"\xef\xbb\xbf"):
        body = body[3:]
    declared = re.match(rb"""\s*<\?xml[^>]*?encoding=["']([A-Za-z0-9._-]+)["']""", body[:200])
    candidates = [declared.group(1).decode("ascii")] if declared else []
    for encoding in candidates + ["utf-8"]:
        try:
            return body.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return body.decode("latin-1")
