#!/usr/bin/env python3
"""
Normalization of raw items into articles.

Field priorities:
  content   media:group/media:description or media:description > content:encoded > description
  title     media:title when longer > item title > excerpt of content > excerpt of description
  image     item image > media thumbnail > image/* enclosure > first <img> in content/description
  audio     first audio/* enclosure
"""

import re
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from bs4 import BeautifulSoup

from config import get_logger
from models import NormalizedArticle, RawItem
from utils import truncate_string

logger = get_logger("normalizer")

UNTITLED = "Untitled Article"
TITLE_MAX_LENGTH = 100
NO_EMAIL_CONTENT = "(No content available)"

_IMG_SRC_RE = re.compile(r'<img[^>]+src="([^">]+)"')


class Translator(Protocol):
    def translate(self, text: str, target_language: str) -> str:
        ...


def _media_group_child(item: RawItem, name: str):
    group = item.extension("media", "group")
    if group is not None:
        child = group.child(name)
        if child is not None:
            return child
    return item.extension("media", name)


def extract_media_description(item: RawItem) -> str:
    element = _media_group_child(item, "description")
    return element.value if element is not None else ""


def extract_media_title(item: RawItem) -> str:
    element = _media_group_child(item, "title")
    return element.value if element is not None else ""


def extract_media_thumbnail(item: RawItem) -> str:
    element = _media_group_child(item, "thumbnail")
    if element is None:
        return ""
    return element.attrs.get("url", "") or element.value


def extract_content(item: RawItem) -> str:
    """Pick the most complete body available for an item."""
    media_description = extract_media_description(item)
    if media_description:
        return media_description
    if item.content:
        return item.content
    if item.description:
        return item.description
    return ""


def strip_tags(html: str) -> str:
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text().strip()


def generate_title_from_content(content: str) -> str:
    """Plain-text excerpt used when an item has no title."""
    text = strip_tags(content)
    if not text:
        return UNTITLED
    return truncate_string(text, TITLE_MAX_LENGTH)


def extract_image_url(item: RawItem) -> str:
    if item.image_url:
        return item.image_url
    thumbnail = extract_media_thumbnail(item)
    if thumbnail:
        return thumbnail
    for enclosure in item.enclosures:
        if enclosure.type.startswith("image/") and enclosure.url:
            return enclosure.url
    for body in (item.content, item.description):
        match = _IMG_SRC_RE.search(body or "")
        if match:
            return match.group(1)
    return ""


def extract_audio_url(item: RawItem) -> str:
    for enclosure in item.enclosures:
        if enclosure.type.startswith("audio/") and enclosure.url:
            return enclosure.url
    return ""


def resolve_title(item: RawItem) -> str:
    title = (item.title or "").strip()
    media_title = extract_media_title(item).strip()
    if len(media_title) > len(title):
        title = media_title
    if not title:
        title = generate_title_from_content(item.content)
        if title == UNTITLED and item.description:
            title = generate_title_from_content(item.description)
    return title


def _translate_title(title: str, translator: Translator, target_language: str) -> str:
    try:
        return translator.translate(title, target_language) or ""
    except Exception as e:
        # Translation is best effort; the article is still stored untranslated
        logger.warning(f"Title translation failed: {e}")
        return ""


def process_articles(
    feed_id: Optional[int],
    items: List[RawItem],
    translator: Optional[Translator] = None,
    target_language: Optional[str] = None,
) -> List[NormalizedArticle]:
    """Turn raw items into articles; never yields an empty title."""
    now = datetime.now(timezone.utc)
    articles: List[NormalizedArticle] = []
    for item in items:
        title = resolve_title(item)
        translated = ""
        if translator is not None and target_language:
            translated = _translate_title(title, translator, target_language)
        articles.append(NormalizedArticle(
            feed_id=feed_id,
            title=title,
            url=item.link,
            content=extract_content(item),
            published_at=item.published or now,
            image_url=extract_image_url(item),
            audio_url=extract_audio_url(item),
            translated_title=translated,
        ))
    return articles


def clean_email_content(body: str) -> str:
    """Mark remote images and inline styles so the HTML viewer can neutralize them."""
    body = body.replace('<img src="https://', '<img data-tracking="true" src="https://')
    body = body.replace("<style>", '<style data-remove="true">')
    return body.strip()
