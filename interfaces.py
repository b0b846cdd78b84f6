#!/usr/bin/env python3
"""
Collaborators the engine depends on but does not implement.

Persistence, RSSHub route resolution and translation are provided by the
host application. `MemoryFeedStore` and `RSSHubClient` are small concrete
versions used by the command line and the tests.
"""

from itertools import count
from threading import Lock
from typing import Dict, List, Optional, Protocol
from urllib.parse import quote

from config import config, get_logger
from errors import ConfigurationError, TransportError
from http_client import fetch_bytes
from models import FeedRecord
from normalizer import Translator

logger = get_logger("interfaces")


class FeedStore(Protocol):
    def get_setting(self, key: str) -> str:
        ...

    def set_setting(self, key: str, value: str) -> None:
        ...

    def update_feed_email_last_uid(self, feed_id: int, uid: int) -> None:
        ...

    def add_feed(self, feed: FeedRecord) -> int:
        ...


class RSSHubResolver(Protocol):
    api_key: str

    def build_url(self, route: str) -> str:
        ...

    async def validate_route(self, route: str) -> None:
        ...


class MemoryFeedStore:
    """Thread-safe in-memory FeedStore."""

    def __init__(self, settings: Optional[Dict[str, str]] = None):
        self.settings: Dict[str, str] = dict(settings or {})
        self.feeds: Dict[int, FeedRecord] = {}
        self.email_last_uids: Dict[int, int] = {}
        self._ids = count(1)
        self._lock = Lock()

    def get_setting(self, key: str) -> str:
        with self._lock:
            return self.settings.get(key, "")

    def set_setting(self, key: str, value: str) -> None:
        with self._lock:
            self.settings[key] = value

    def update_feed_email_last_uid(self, feed_id: int, uid: int) -> None:
        with self._lock:
            self.email_last_uids[feed_id] = uid

    def add_feed(self, feed: FeedRecord) -> int:
        with self._lock:
            feed_id = next(self._ids)
            self.feeds[feed_id] = feed
        logger.info(f"Added feed {feed_id}: {feed.title} ({feed.url})")
        return feed_id

    def list_feeds(self) -> List[FeedRecord]:
        with self._lock:
            return list(self.feeds.values())


class RSSHubClient:
    """Builds RSSHub URLs from routes; validation is a plain fetch of the route."""

    def __init__(self, endpoint: Optional[str] = None, api_key: Optional[str] = None):
        self.endpoint = (endpoint or config.RSSHUB_ENDPOINT).rstrip("/")
        self.api_key = config.RSSHUB_API_KEY if api_key is None else api_key

    def build_url(self, route: str) -> str:
        url = f"{self.endpoint}/{route.lstrip('/')}"
        if self.api_key:
            separator = "&" if "?" in url else "?"
            url += f"{separator}key={quote(self.api_key, safe='')}"
        return url

    async def validate_route(self, route: str) -> None:
        try:
            await fetch_bytes(self.build_url(route), timeout=config.HTTP_TIMEOUT)
        except TransportError as e:
            raise ConfigurationError(f"RSSHub route validation failed: {e.details}") from e


__all__ = ["FeedStore", "RSSHubResolver", "Translator", "MemoryFeedStore", "RSSHubClient"]
