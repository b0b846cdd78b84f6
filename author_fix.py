#!/usr/bin/env python3
"""
Author backfill from the raw feed document.

Some feeds write `<author>Plain Name</author>` where Atom expects
`<author><name>...</name></author>`, which leaves the parsed author empty.
This pass re-reads the raw XML, maps `link|title` to the author text and fills
in items whose author is missing. Populated authors are never overwritten and
an unreadable document leaves the feed untouched.
"""

from typing import Dict, Optional

from config import get_logger
from feed_parser import local_name, parse_xml_root
from models import ParsedFeed, Person

logger = get_logger("authors")


def _children(element, name: str):
    return [c for c in element if local_name(c) == name]


def _text(element) -> str:
    return (element.text or "").strip() if element is not None else ""


def _author_text(author) -> str:
    names = _children(author, "name")
    if names:
        return _text(names[0])
    return "".join(author.itertext()).strip()


def _atom_entry_link(entry) -> str:
    links = _children(entry, "link")
    for link in links:
        rel = link.get("rel", "")
        if rel in ("", "alternate") and link.get("href"):
            return link.get("href")
    return links[0].get("href", "") if links else ""


def _atom_authors(root) -> Dict[str, str]:
    authors: Dict[str, str] = {}
    for entry in _children(root, "entry"):
        author_elements = _children(entry, "author")
        if not author_elements:
            continue
        text = _author_text(author_elements[0])
        if not text:
            continue
        title_elements = _children(entry, "title")
        title = "".join(title_elements[0].itertext()).strip() if title_elements else ""
        authors[f"{_atom_entry_link(entry)}|{title}"] = text
    return authors


def _rss_authors(root) -> Dict[str, str]:
    authors: Dict[str, str] = {}
    for channel in _children(root, "channel"):
        for item in _children(channel, "item"):
            author_elements = _children(item, "author") or _children(item, "creator")
            if not author_elements:
                continue
            text = _author_text(author_elements[0])
            if not text:
                continue
            link = _text(next(iter(_children(item, "link")), None))
            title = _text(next(iter(_children(item, "title")), None))
            authors[f"{link}|{title}"] = text
    return authors


def _raw_author_map(raw_xml: str) -> Optional[Dict[str, str]]:
    root = parse_xml_root(raw_xml)
    if root is None:
        return None
    name = local_name(root)
    if name == "feed":
        return _atom_authors(root)
    if name == "rss":
        return _rss_authors(root)
    return None


def fix_feed_authors(feed: ParsedFeed, raw_xml: str) -> None:
    """Fill empty item authors in place from the raw `raw_xml` document."""
    if feed is None or not feed.items:
        return
    if all(item.author is not None and item.author.name for item in feed.items):
        return

    authors = _raw_author_map(raw_xml)
    if not authors:
        return

    fixed = 0
    for item in feed.items:
        if item.author is not None and item.author.name:
            continue
        text = authors.get(f"{item.link}|{item.title}")
        if not text:
            continue
        email = item.author.email if item.author else ""
        item.author = Person(name=text, email=email)
        fixed += 1
    if fixed:
        logger.debug(f"Backfilled {fixed} item authors from raw XML")
