#!/usr/bin/env python3
"""Error types shared across the acquisition modules.

Every exception carries the structured context (stage, URL, expression) a
caller needs to render a precise diagnostic instead of a raw library message.
Kept dependency-free to avoid circular imports.
"""

from enum import Enum
from typing import List, Optional


class IngestError(Exception):
    """Base class for all acquisition failures."""


class ConfigurationError(IngestError):
    """A source is misconfigured (missing credentials, unknown kind, ...).

    Never retried and never triggers a fallback stage.
    """


class TransportError(IngestError):
    """DNS/TLS/HTTP failure or a non-200 response.

    Attributes:
        url: The requested URL.
        status: HTTP status code when the server answered.
        details: Human-readable cause.
    """

    def __init__(self, url: str, details: str, status: Optional[int] = None):
        self.url = url
        self.status = status
        self.details = details
        super().__init__(f"Failed to fetch {url}: {details}")


class ParseErrorKind(Enum):
    MALFORMED_XML = "malformed_xml"
    NOT_A_FEED = "not_a_feed"
    EMPTY_DOCUMENT = "empty_document"
    NETWORK_FAILURE = "network_failure"
    HTTP_STATUS = "http_status"

    @property
    def looks_like_html(self) -> bool:
        """True when the payload was fetched but was not XML we could use."""
        return self in (ParseErrorKind.MALFORMED_XML, ParseErrorKind.NOT_A_FEED, ParseErrorKind.EMPTY_DOCUMENT)


class FeedParseError(IngestError):
    """Raised by the parser adapter with a machine-readable failure kind."""

    def __init__(self, kind: ParseErrorKind, details: str, url: Optional[str] = None):
        self.kind = kind
        self.details = details
        self.url = url
        prefix = f"{url}: " if url else ""
        super().__init__(f"{prefix}{details} ({kind.value})")


class ScriptError(IngestError):
    """A sandboxed script failed, timed out or produced an unusable feed."""

    def __init__(self, message: str, stderr: Optional[str] = None, stdout: Optional[str] = None):
        self.stderr = stderr
        self.stdout = stdout
        if stderr:
            message = f"{message}, stderr: {stderr}"
        if stdout:
            message = f"{message}, stdout: {stdout}"
        super().__init__(message)


class ScriptSecurityError(ScriptError):
    """The requested script path escapes the scripts directory."""

    def __init__(self, script_path: str):
        self.script_path = script_path
        super().__init__("invalid script path: script must be within scripts directory")


class XPathError(IngestError):
    """Diagnostic for XPath-scraped sources.

    Attributes:
        operation: One of 'validate', 'fetch', 'parse', 'extract'.
        url: Source URL.
        xpath_expr: The offending expression, when one is involved.
        details: Human-readable explanation.
        err: The underlying exception, also chained as __cause__.
    """

    def __init__(
        self,
        operation: str,
        url: str = "",
        xpath_expr: str = "",
        details: str = "",
        err: Optional[BaseException] = None,
    ):
        self.operation = operation
        self.url = url
        self.xpath_expr = xpath_expr
        self.details = details
        self.err = err
        super().__init__(self._format())
        if err is not None:
            self.__cause__ = err

    def _format(self) -> str:
        if self.operation == "validate":
            message = f"XPath validation failed for '{self.xpath_expr}': {self.details}"
        elif self.operation == "fetch":
            message = f"Failed to fetch content from {self.url}: {self.details}"
        elif self.operation == "parse":
            if self.xpath_expr:
                message = f"Failed to parse {self.url} with XPath '{self.xpath_expr}': {self.details}"
            else:
                message = f"Failed to parse {self.url}: {self.details}"
        elif self.operation == "extract":
            message = f"Failed to extract data with XPath '{self.xpath_expr}': {self.details}"
        else:
            message = f"XPath error: {self.details}"
        if self.err is not None:
            message += f" ({self.err})"
        return message


class RenderError(IngestError):
    """Headless browser rendering failed or produced no parseable feed."""

    def __init__(self, url: str, details: str):
        self.url = url
        self.details = details
        super().__init__(f"Rendering {url} failed: {details}")


class EmailFetchError(IngestError):
    """IMAP connect, login, select or search failed."""


class FetchFailedError(IngestError):
    """Every stage of the URL fallback chain failed.

    Attributes:
        url: The feed URL.
        errors: Per-stage exceptions in the order they were attempted.
    """

    def __init__(self, url: str, errors: List[BaseException], summary: Optional[str] = None):
        self.url = url
        self.errors = list(errors)
        if summary is None:
            summary = "; ".join(str(e) for e in self.errors) or "no stage succeeded"
        super().__init__(f"Failed to fetch feed {url}: {summary}")
        if self.errors:
            self.__cause__ = self.errors[-1]


__all__ = [
    "IngestError",
    "ConfigurationError",
    "TransportError",
    "ParseErrorKind",
    "FeedParseError",
    "ScriptError",
    "ScriptSecurityError",
    "XPathError",
    "RenderError",
    "EmailFetchError",
    "FetchFailedError",
]
