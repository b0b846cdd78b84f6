#!/usr/bin/env python3
"""
IMAP newsletter ingestion.

Polls one mailbox folder incrementally by UID. Each call returns the new
items together with the highest UID it processed; persisting that value is
the caller's job, and refreshes of the same feed must not overlap.

imaplib is blocking, so the whole session runs in a worker thread bounded by
IMAP_TIMEOUT.
"""

import asyncio
import calendar
import email
import email.policy
import imaplib
import re
import ssl
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from html import escape
from typing import Callable, List, Optional, Tuple

from config import config, get_logger
from errors import ConfigurationError, EmailFetchError
from models import EmailSource, Person, RawItem
from normalizer import NO_EMAIL_CONTENT, clean_email_content
from telemetry import trace_span

logger = get_logger("email")

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_UID_RE = re.compile(rb"UID (\d+)")


def imap_date(value: datetime) -> str:
    """IMAP SEARCH date (01-Jan-2024), independent of the process locale."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def one_month_ago(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def quote_mailbox(name: str) -> str:
    """imaplib sends mailbox names verbatim; names with spaces need quoting."""
    if " " in name and not name.startswith('"'):
        return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return name


def _first_address(header_value: str) -> Tuple[str, str]:
    addresses = getaddresses([header_value or ""])
    for name, addr in addresses:
        if name or addr:
            return name.strip(), addr.strip()
    return "", ""


def _text_to_html(text: str) -> str:
    return "<p>" + escape(text.strip()).replace("\n", "<br>\n") + "</p>"


def extract_body(message) -> str:
    """First non-empty text body, HTML preferred; plain text is escaped."""
    for preference in (("html",), ("plain",)):
        part = message.get_body(preferencelist=preference)
        if part is None:
            continue
        try:
            content = part.get_content()
        except (LookupError, UnicodeDecodeError):
            payload = part.get_payload(decode=True) or b""
            content = payload.decode("utf-8", "replace")
        if content and content.strip():
            return content if preference == ("html",) else _text_to_html(content)
    return ""


def message_to_item(uid: int, raw: bytes) -> RawItem:
    """Build a RawItem from one RFC 822 message."""
    message = email.message_from_bytes(raw, policy=email.policy.default)

    name, address = _first_address(str(message.get("From", "")))
    subject = str(message.get("Subject", "") or "").strip()
    if not subject and (name or address):
        subject = f"Email from {name or address}"

    published = None
    date_header = message.get("Date")
    if date_header:
        try:
            published = parsedate_to_datetime(str(date_header))
            if published.tzinfo is None:
                published = published.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            published = None

    body = extract_body(message) or NO_EMAIL_CONTENT
    return RawItem(
        title=subject,
        link=f"email://{uid}",
        guid=f"email-{uid}",
        author=Person(name=name, email=address) if (name or address) else None,
        published=published,
        content=clean_email_content(body),
    )


def parse_fetch_response(data) -> List[Tuple[int, bytes]]:
    """Pull (uid, raw message) pairs out of an imaplib FETCH response."""
    messages = []
    for entry in data or []:
        if not isinstance(entry, tuple) or len(entry) < 2:
            continue
        match = _UID_RE.search(entry[0])
        if match:
            messages.append((int(match.group(1)), entry[1]))
    return messages


class EmailFetcher:
    """Fetches messages newer than a source's last seen UID."""

    def __init__(
        self,
        ssl_client_factory: Optional[Callable] = None,
        plain_client_factory: Optional[Callable] = None,
        batch_size: Optional[int] = None,
    ):
        self.ssl_client_factory = ssl_client_factory or imaplib.IMAP4_SSL
        self.plain_client_factory = plain_client_factory or imaplib.IMAP4
        self.batch_size = batch_size or config.EMAIL_BATCH_SIZE

    def _connect(self, source: EmailSource):
        context = ssl.create_default_context()
        try:
            return self.ssl_client_factory(
                source.imap_server, source.imap_port, ssl_context=context, timeout=config.IMAP_TIMEOUT
            )
        except (OSError, imaplib.IMAP4.error) as tls_error:
            logger.warning(f"TLS connection to {source.imap_server}:{source.imap_port} failed ({tls_error}); "
                           "retrying without TLS")
            try:
                return self.plain_client_factory(source.imap_server, source.imap_port, timeout=config.IMAP_TIMEOUT)
            except (OSError, imaplib.IMAP4.error) as e:
                raise EmailFetchError(f"IMAP connection failed: {e}") from e

    def _search(self, client, source: EmailSource) -> List[int]:
        since = imap_date(one_month_ago())
        typ, data = client.uid("SEARCH", None, "UID", f"{source.last_seen_uid + 1}:*", "SINCE", since)
        if typ != "OK":
            raise EmailFetchError(f"IMAP search failed: {data}")
        raw = b" ".join(d for d in data if d)
        uids = sorted({int(u) for u in raw.split()})
        # "n:*" always matches the highest UID, even when it is below n
        return [uid for uid in uids if uid > source.last_seen_uid]

    def fetch_sync(self, source: EmailSource) -> Tuple[List[RawItem], int]:
        if not (source.imap_server and source.username and source.password):
            raise ConfigurationError("IMAP credentials not configured")

        client = self._connect(source)
        try:
            try:
                client.login(source.username, source.password)
            except imaplib.IMAP4.error as e:
                raise EmailFetchError(f"IMAP login failed: {e}") from e

            typ, data = client.select(quote_mailbox(source.folder or config.IMAP_DEFAULT_FOLDER), readonly=True)
            if typ != "OK":
                raise EmailFetchError(f"failed to select mailbox {source.folder}: {data}")

            uids = self._search(client, source)
            max_uid = source.last_seen_uid
            items: List[RawItem] = []
            if not uids:
                return items, max_uid

            logger.info(f"Fetching {len(uids)} new messages from {source.imap_server}/{source.folder}")
            for start in range(0, len(uids), self.batch_size):
                batch = uids[start:start + self.batch_size]
                typ, data = client.uid("FETCH", ",".join(str(u) for u in batch), "(UID BODY.PEEK[])")
                if typ != "OK":
                    # Later batches would move the cursor past these messages
                    raise EmailFetchError(f"IMAP fetch failed for batch starting at UID {batch[0]}: {data}")
                for uid, raw in parse_fetch_response(data):
                    max_uid = max(max_uid, uid)
                    try:
                        items.append(message_to_item(uid, raw))
                    except Exception as e:
                        # One malformed message must not abort the batch
                        logger.warning(f"Skipping unparseable message UID {uid}: {e}")
            return items, max_uid
        except (OSError, imaplib.IMAP4.error) as e:
            raise EmailFetchError(f"IMAP session failed: {e}") from e
        finally:
            try:
                client.logout()
            except (OSError, imaplib.IMAP4.error):
                pass

    @trace_span(
        "email_fetch",
        tracer_name="email",
        attr_from_args=lambda self, source, **kw: {"imap.server": source.imap_server, "imap.folder": source.folder},
    )
    async def fetch_new(self, source: EmailSource, *, timeout: Optional[float] = None) -> Tuple[List[RawItem], int]:
        """Return (items, new_last_uid) for messages newer than source.last_seen_uid."""
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self.fetch_sync, source),
                timeout=timeout or config.IMAP_TIMEOUT,
            )
        except asyncio.TimeoutError as e:
            raise EmailFetchError(f"IMAP fetch from {source.imap_server} timed out") from e
