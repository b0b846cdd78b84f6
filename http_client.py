#!/usr/bin/env python3
"""
Proxy-aware HTTP helpers used by the URL and XPath acquisition paths.

Plain feed fetches present themselves as a desktop browser; a number of
hosts return 403 or a challenge page to anything that looks like a bot.
Accept-Encoding is never set here so aiohttp keeps handling decompression.
"""

from asyncio import TimeoutError
from typing import Dict, List, Optional
from urllib.parse import quote, urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import TransportError

logger = get_logger("http")

HTTP_OK = 200


def browser_headers() -> Dict[str, str]:
    """Headers sent on the primary feed fetch."""
    return {
        'User-Agent': config.USER_AGENT,
        'Accept': 'application/rss+xml, application/xml, text/xml, application/atom+xml;q=0.9,*/*;q=0.8',
        'Accept-Language': config.ACCEPT_LANGUAGE,
        'DNT': '1',
        'Connection': 'keep-alive',
        'Upgrade-Insecure-Requests': '1',
    }


def build_proxy_url(proxy_type: Optional[str], host: Optional[str], port, username: Optional[str] = None,
                    password: Optional[str] = None) -> str:
    """Compose scheme://[user[:pass]@]host:port, or "" when host or port is missing."""
    host = (host or "").strip()
    port = str(port or "").strip()
    if not host or not port:
        return ""
    scheme = (proxy_type or "http").strip().lower() or "http"
    auth = ""
    if username:
        auth = quote(username, safe="")
        if password:
            auth += ":" + quote(password, safe="")
        auth += "@"
    return f"{scheme}://{auth}{host}:{port}"


def summarize_proxy(proxy_url: Optional[str]) -> Optional[str]:
    """Provide a redacted proxy identifier for logging."""
    if not proxy_url:
        return None
    try:
        parsed = urlparse(proxy_url)
        if parsed.scheme and parsed.hostname:
            host = parsed.hostname
            if parsed.port:
                host = f"{host}:{parsed.port}"
            return f"{parsed.scheme}://{host}"
    except ValueError:
        return "<invalid proxy url>"
    return proxy_url


def format_client_error(error: BaseException) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


def create_session(timeout: float) -> ClientSession:
    return ClientSession(timeout=ClientTimeout(total=timeout))


async def fetch_bytes(
    url: str,
    *,
    timeout: float,
    proxy_url: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> bytes:
    """GET `url` and return the body.

    Raises:
        TransportError: on network failure, timeout or any status other than 200.
    """
    request_kwargs = {'max_redirects': config.MAX_REDIRECTS}
    if headers:
        request_kwargs['headers'] = headers
    if proxy_url:
        request_kwargs['proxy'] = proxy_url
        logger.debug("Fetching %s via proxy %s", url, summarize_proxy(proxy_url))
    try:
        async with create_session(timeout) as session:
            async with session.get(url, **request_kwargs) as response:
                if response.status != HTTP_OK:
                    raise TransportError(url, f"HTTP {response.status}: {response.reason}", status=response.status)
                return await response.read()
    except TimeoutError as e:
        raise TransportError(url, f"timed out after {timeout}s") from e
    except ClientError as e:
        raise TransportError(url, format_client_error(e)) from e
    except ValueError as e:
        # aiohttp raises ValueError/InvalidURL for malformed URLs
        raise TransportError(url, f"invalid URL: {e}") from e
