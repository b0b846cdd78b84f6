from datetime import datetime, timezone
from email.message import EmailMessage

import pytest

import email_fetcher
from email_fetcher import (
    EmailFetcher,
    imap_date,
    message_to_item,
    one_month_ago,
    parse_fetch_response,
    quote_mailbox,
)
from errors import ConfigurationError, EmailFetchError
from models import EmailSource
from normalizer import NO_EMAIL_CONTENT, process_articles


def make_message(subject="", text="Hello\nWorld", html=None, sender="Alice Example <alice@example.com>"):
    message = EmailMessage()
    if sender:
        message["From"] = sender
    if subject:
        message["Subject"] = subject
    message["Date"] = "Mon, 06 Jan 2025 10:00:00 +0000"
    message.set_content(text)
    if html:
        message.add_alternative(html, subtype="html")
    return message.as_bytes()


class FakeIMAP:
    """Just enough of imaplib.IMAP4 for the fetcher."""

    instances = []

    def __init__(self, host, port, ssl_context=None, timeout=None, uids=(5, 11, 12, 13), messages=None,
                 failing_uids=()):
        self.host = host
        self.port = port
        self.ssl_context = ssl_context
        self.uids = uids
        self.messages = messages or {}
        self.failing_uids = set(failing_uids)
        self.searches = []
        self.fetches = []
        self.selected = None
        self.logged_out = False
        FakeIMAP.instances.append(self)

    def login(self, username, password):
        self.credentials = (username, password)
        return "OK", [b"Logged in"]

    def select(self, mailbox, readonly=False):
        self.selected = (mailbox, readonly)
        return "OK", [str(len(self.uids)).encode()]

    def uid(self, command, *args):
        if command == "SEARCH":
            self.searches.append(args)
            # Servers answer "n:*" with the highest UID even when it is below n
            return "OK", [" ".join(str(u) for u in self.uids).encode()]
        if command == "FETCH":
            requested = args[0]
            self.fetches.append(requested)
            if self.failing_uids.intersection(int(u) for u in requested.split(",")):
                return "NO", [b"FETCH failed"]
            data = []
            for seq, uid in enumerate(requested.split(","), start=1):
                raw = self.messages.get(int(uid), make_message(subject=f"Issue {uid}"))
                data.append((f"{seq} (UID {uid} BODY[] {{{len(raw)}}}".encode(), raw))
                data.append(b")")
            return "OK", data
        raise AssertionError(f"unexpected command {command}")

    def logout(self):
        self.logged_out = True
        return "BYE", [b"Logging out"]


@pytest.fixture(autouse=True)
def reset_instances():
    FakeIMAP.instances = []


def make_source(**overrides):
    values = dict(imap_server="imap.example.com", username="reader", password="secret",
                  last_seen_uid=10, folder="INBOX", email_address="news@example.com", id=3)
    values.update(overrides)
    return EmailSource(**values)


def test_only_new_uids_are_fetched():
    items, last_uid = EmailFetcher(ssl_client_factory=FakeIMAP).fetch_sync(make_source())
    client = FakeIMAP.instances[0]

    assert client.fetches == ["11,12,13"]
    assert [item.guid for item in items] == ["email-11", "email-12", "email-13"]
    assert [item.link for item in items] == ["email://11", "email://12", "email://13"]
    assert last_uid == 13
    assert client.selected == ("INBOX", True)
    assert client.logged_out


def test_search_asks_for_uids_after_last_seen():
    EmailFetcher(ssl_client_factory=FakeIMAP).fetch_sync(make_source())
    search = FakeIMAP.instances[0].searches[0]
    assert search[:3] == (None, "UID", "11:*")
    assert search[3] == "SINCE"


def test_no_new_messages_keeps_last_uid():
    def factory(host, port, **kwargs):
        return FakeIMAP(host, port, uids=(10,), **kwargs)

    items, last_uid = EmailFetcher(ssl_client_factory=factory).fetch_sync(make_source())
    assert items == []
    assert last_uid == 10
    assert FakeIMAP.instances[0].fetches == []


def test_batches_respect_batch_size():
    def factory(host, port, **kwargs):
        return FakeIMAP(host, port, uids=tuple(range(1, 8)), **kwargs)

    items, last_uid = EmailFetcher(ssl_client_factory=factory, batch_size=3).fetch_sync(make_source(last_seen_uid=0))
    assert FakeIMAP.instances[0].fetches == ["1,2,3", "4,5,6", "7"]
    assert len(items) == 7
    assert last_uid == 7


def test_failed_batch_aborts_without_advancing_cursor():
    clients = []

    def factory(host, port, **kwargs):
        client = FakeIMAP(host, port, uids=(11, 12, 13, 14), failing_uids=(11,), **kwargs)
        clients.append(client)
        return client

    with pytest.raises(EmailFetchError, match="batch starting at UID 11"):
        EmailFetcher(ssl_client_factory=factory, batch_size=2).fetch_sync(make_source())

    assert clients[0].fetches == ["11,12"]
    assert clients[0].logged_out


def test_bad_message_is_skipped(monkeypatch):
    real = email_fetcher.message_to_item

    def flaky(uid, raw):
        if uid == 12:
            raise ValueError("garbled MIME")
        return real(uid, raw)

    monkeypatch.setattr(email_fetcher, "message_to_item", flaky)
    items, last_uid = EmailFetcher(ssl_client_factory=FakeIMAP).fetch_sync(make_source())
    assert [item.guid for item in items] == ["email-11", "email-13"]
    assert last_uid == 13


def test_missing_credentials_is_configuration_error():
    with pytest.raises(ConfigurationError):
        EmailFetcher(ssl_client_factory=FakeIMAP).fetch_sync(make_source(password=""))
    assert FakeIMAP.instances == []


def test_plaintext_fallback_when_tls_fails():
    def broken_tls(*args, **kwargs):
        raise OSError("wrong version number")

    EmailFetcher(ssl_client_factory=broken_tls, plain_client_factory=FakeIMAP).fetch_sync(make_source())
    assert FakeIMAP.instances[0].ssl_context is None


def test_connection_failure_is_email_error():
    def refuse(*args, **kwargs):
        raise OSError("connection refused")

    with pytest.raises(EmailFetchError):
        EmailFetcher(ssl_client_factory=refuse, plain_client_factory=refuse).fetch_sync(make_source())


@pytest.mark.asyncio
async def test_fetch_new_runs_in_executor():
    items, last_uid = await EmailFetcher(ssl_client_factory=FakeIMAP).fetch_new(make_source())
    assert len(items) == 3
    assert last_uid == 13


def test_subject_fallback_uses_sender_name():
    item = message_to_item(42, make_message(subject=""))
    assert item.title == "Email from Alice Example"
    assert item.author.name == "Alice Example"
    assert item.author.email == "alice@example.com"
    assert item.published == datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)


def test_subject_fallback_uses_address_without_name():
    item = message_to_item(42, make_message(sender="bot@example.com"))
    assert item.title == "Email from bot@example.com"


def test_no_subject_and_no_sender_leaves_title_empty():
    item = message_to_item(43, make_message(sender=""))
    assert item.title == ""
    title = process_articles(1, [item])[0].title
    assert title.startswith("Hello")
    assert "World" in title


def test_html_part_preferred():
    item = message_to_item(1, make_message(subject="Weekly", text="plain", html="<p>rich</p>"))
    assert item.content == "<p>rich</p>"


def test_plain_text_is_escaped():
    item = message_to_item(1, make_message(subject="Weekly", text="a < b\nnext"))
    assert item.content == "<p>a &lt; b<br>\nnext</p>"


def test_empty_body_placeholder():
    item = message_to_item(1, make_message(subject="Empty", text="   "))
    assert item.content == NO_EMAIL_CONTENT


def test_parse_fetch_response_ignores_trailers():
    data = [(b"1 (UID 7 BODY[] {3}", b"abc"), b")", (b"2 (FLAGS () UID 9 BODY[] {1}", b"x"), b")"]
    assert parse_fetch_response(data) == [(7, b"abc"), (9, b"x")]


def test_imap_date_is_locale_independent():
    assert imap_date(datetime(2025, 3, 5)) == "05-Mar-2025"


def test_one_month_ago_clamps_day():
    assert one_month_ago(datetime(2025, 3, 31, tzinfo=timezone.utc)).date() == datetime(2025, 2, 28).date()
    assert one_month_ago(datetime(2025, 1, 15, tzinfo=timezone.utc)).date() == datetime(2024, 12, 15).date()


def test_quote_mailbox():
    assert quote_mailbox("INBOX") == "INBOX"
    assert quote_mailbox("My Newsletters") == '"My Newsletters"'


def test_source_repr_hides_password():
    assert "secret" not in repr(make_source())
