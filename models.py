#!/usr/bin/env python3
"""
Data model for feed sources, intermediate items and normalized articles.

Sources are a tagged union: one dataclass per acquisition strategy, each
holding only the fields that strategy needs. `source_from_dict` builds the
right variant from a feeds.yaml entry or a persisted subscription row.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from errors import ConfigurationError


class SourceKind(Enum):
    URL = "url"
    SCRIPT = "script"
    HTML_XPATH = "html-xpath"
    XML_XPATH = "xml-xpath"
    EMAIL = "email"


# Labels accepted from configuration, including the ones older subscription
# rows were stored with.
_KIND_ALIASES = {
    "": SourceKind.URL,
    "url": SourceKind.URL,
    "rss": SourceKind.URL,
    "atom": SourceKind.URL,
    "script": SourceKind.SCRIPT,
    "html-xpath": SourceKind.HTML_XPATH,
    "html+xpath": SourceKind.HTML_XPATH,
    "xml-xpath": SourceKind.XML_XPATH,
    "xml+xpath": SourceKind.XML_XPATH,
    "email": SourceKind.EMAIL,
}


def parse_kind(value: Optional[str]) -> SourceKind:
    """Map a configuration label to a SourceKind, raising on unknown labels."""
    if isinstance(value, SourceKind):
        return value
    key = (value or "").strip().lower()
    try:
        return _KIND_ALIASES[key]
    except KeyError:
        raise ConfigurationError(f"Unknown feed type '{value}'") from None


@dataclass
class ProxyConfig:
    """Per-feed proxy override. `url=None` with `enabled=True` means the global proxy."""
    enabled: bool = True
    url: Optional[str] = None

    @classmethod
    def from_setting(cls, setting: Any) -> Optional["ProxyConfig"]:
        if setting is None:
            return None
        if isinstance(setting, ProxyConfig):
            return setting
        if isinstance(setting, bool):
            return cls(enabled=setting)
        if isinstance(setting, str):
            url = setting.strip()
            return cls(enabled=bool(url), url=url or None)
        if isinstance(setting, dict):
            url = setting.get('url')
            url = url.strip() if isinstance(url, str) else None
            return cls(enabled=bool(setting.get('enabled', True)), url=url or None)
        raise ConfigurationError(f"Unsupported proxy configuration type {type(setting).__name__}")


@dataclass
class XPathRules:
    item: str
    title: str = ""
    content: str = ""
    uri: str = ""
    author: str = ""
    timestamp: str = ""
    time_format: str = ""
    thumbnail: str = ""
    categories: str = ""
    uid: str = ""


@dataclass
class UrlSource:
    url: str
    id: Optional[int] = None
    title: str = ""
    category: str = ""
    proxy: Optional[ProxyConfig] = None

    @property
    def kind(self) -> SourceKind:
        return SourceKind.URL


@dataclass
class ScriptSource:
    script_path: str
    id: Optional[int] = None
    title: str = ""
    category: str = ""

    @property
    def kind(self) -> SourceKind:
        return SourceKind.SCRIPT

    @property
    def url(self) -> str:
        return f"script://{self.script_path}"


@dataclass
class XPathSource:
    url: str
    rules: XPathRules
    xpath_kind: SourceKind = SourceKind.HTML_XPATH
    id: Optional[int] = None
    title: str = ""
    category: str = ""
    proxy: Optional[ProxyConfig] = None

    def __post_init__(self):
        if self.xpath_kind not in (SourceKind.HTML_XPATH, SourceKind.XML_XPATH):
            raise ConfigurationError(f"Invalid XPath feed type '{self.xpath_kind.value}'")

    @property
    def kind(self) -> SourceKind:
        return self.xpath_kind

    @property
    def is_html(self) -> bool:
        return self.xpath_kind is SourceKind.HTML_XPATH


@dataclass
class EmailSource:
    imap_server: str
    username: str
    password: str
    imap_port: int = 993
    folder: str = "INBOX"
    last_seen_uid: int = 0
    email_address: str = ""
    id: Optional[int] = None
    title: str = ""
    category: str = ""

    @property
    def kind(self) -> SourceKind:
        return SourceKind.EMAIL

    @property
    def url(self) -> str:
        return f"email://{self.email_address or self.username}"

    def __repr__(self) -> str:
        # Keep credentials out of logs and tracebacks
        return (
            f"EmailSource(id={self.id!r}, imap_server={self.imap_server!r}, "
            f"username={self.username!r}, folder={self.folder!r}, last_seen_uid={self.last_seen_uid})"
        )


FeedSource = Union[UrlSource, ScriptSource, XPathSource, EmailSource]


def _rules_from_dict(data: Dict[str, Any]) -> XPathRules:
    nested = data.get('xpath') if isinstance(data.get('xpath'), dict) else {}

    def pick(name: str) -> str:
        value = nested.get(name)
        if value is None:
            value = data.get(f"xpath_{name}")
        if value is None:
            value = data.get(f"xpath_item_{name}")
        return str(value).strip() if value is not None else ""

    return XPathRules(
        item=pick('item'),
        title=pick('title'),
        content=pick('content'),
        uri=pick('uri'),
        author=pick('author'),
        timestamp=pick('timestamp'),
        time_format=pick('time_format'),
        thumbnail=pick('thumbnail'),
        categories=pick('categories'),
        uid=pick('uid'),
    )


def source_from_dict(data: Dict[str, Any], feed_id: Optional[int] = None) -> FeedSource:
    """Build a typed source from a configuration mapping.

    Dispatch order matches the acquisition priority: email, then script,
    then XPath, then plain URL.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Feed configuration must be a mapping")

    kind = parse_kind(data.get('type') or data.get('kind'))
    common = {
        'id': feed_id if feed_id is not None else data.get('id'),
        'title': data.get('title') or "",
        'category': data.get('category') or "",
    }

    if kind is SourceKind.EMAIL:
        try:
            port = int(data.get('imap_port') or 993)
            last_uid = int(data.get('last_seen_uid') or data.get('email_last_uid') or 0)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid email feed settings: {e}") from e
        return EmailSource(
            imap_server=data.get('imap_server') or "",
            username=data.get('username') or data.get('imap_username') or "",
            password=data.get('password') or data.get('imap_password') or "",
            imap_port=port,
            folder=data.get('folder') or data.get('imap_folder') or "INBOX",
            last_seen_uid=last_uid,
            email_address=data.get('email_address') or "",
            **common,
        )

    script_path = data.get('script_path')
    if kind is SourceKind.SCRIPT or script_path:
        if not script_path:
            raise ConfigurationError("Script feed requires script_path")
        return ScriptSource(script_path=script_path, **common)

    proxy = ProxyConfig.from_setting(data.get('proxy'))
    url = (data.get('url') or "").strip()
    if kind in (SourceKind.HTML_XPATH, SourceKind.XML_XPATH):
        return XPathSource(url=url, rules=_rules_from_dict(data), xpath_kind=kind, proxy=proxy, **common)

    if not url:
        raise ConfigurationError("Feed requires a url")
    return UrlSource(url=url, proxy=proxy, **common)


@dataclass
class Person:
    name: str = ""
    email: str = ""


@dataclass
class Enclosure:
    url: str
    type: str = ""
    length: str = ""


@dataclass
class Extension:
    """One namespaced element of a raw item (e.g. media:thumbnail)."""
    name: str
    value: str = ""
    attrs: Dict[str, str] = field(default_factory=dict)
    children: Dict[str, List["Extension"]] = field(default_factory=dict)

    def child(self, name: str) -> Optional["Extension"]:
        matches = self.children.get(name)
        return matches[0] if matches else None


# prefix -> element name -> occurrences
Extensions = Dict[str, Dict[str, List[Extension]]]


@dataclass
class RawItem:
    """Strategy-agnostic item produced by every acquisition path."""
    title: str = ""
    link: str = ""
    guid: str = ""
    author: Optional[Person] = None
    published: Optional[datetime] = None
    content: str = ""
    description: str = ""
    image_url: str = ""
    enclosures: List[Enclosure] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    extensions: Extensions = field(default_factory=dict)

    def extension(self, prefix: str, name: str) -> Optional[Extension]:
        matches = self.extensions.get(prefix, {}).get(name)
        return matches[0] if matches else None


@dataclass
class ParsedFeed:
    title: str = ""
    link: str = ""
    description: str = ""
    image_url: str = ""
    feed_type: str = ""
    items: List[RawItem] = field(default_factory=list)
    last_seen_uid: Optional[int] = None


@dataclass
class NormalizedArticle:
    feed_id: Optional[int]
    title: str
    url: str
    content: str
    published_at: datetime
    image_url: str = ""
    audio_url: str = ""
    translated_title: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['published_at'] = self.published_at.isoformat()
        return data


@dataclass
class FeedRecord:
    """What the store receives when a subscription is added."""
    title: str
    url: str
    source: FeedSource
    link: str = ""
    description: str = ""
    category: str = ""
    image_url: str = ""


@dataclass
class RefreshResult:
    articles: List[NormalizedArticle]
    last_seen_uid: Optional[int] = None
