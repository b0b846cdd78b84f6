#!/usr/bin/env python3
"""
Headless browser rendering for feeds that only appear after JavaScript runs.

Used as the last stage of the URL fallback chain. The renderer only returns
the final page markup; parsing it is the orchestrator's job.
"""

import asyncio
from typing import Optional, Protocol

from playwright.async_api import async_playwright

from config import config, get_logger
from errors import RenderError
from telemetry import trace_span

logger = get_logger("renderer")

XML_VIEWER_START = '<div id="webkit-xml-viewer-source-xml">'
XML_VIEWER_END = "</div>"


class Renderer(Protocol):
    async def render(self, url: str, *, timeout: float, settle_seconds: float) -> str:
        ...


def unwrap_xml_viewer(page_content: str) -> str:
    """Return the raw XML when Chromium wrapped a feed in its XML viewer."""
    start = page_content.find(XML_VIEWER_START)
    if start == -1:
        return page_content
    start += len(XML_VIEWER_START)
    end = page_content.find(XML_VIEWER_END, start)
    if end == -1:
        return page_content
    logger.debug("Detected browser XML viewer wrapper, extracting source document")
    return page_content[start:end]


class PlaywrightRenderer:
    """Chromium via Playwright; one browser per render call."""

    def __init__(self, headless: Optional[bool] = None, user_agent: Optional[str] = None):
        self.headless = config.RENDER_HEADLESS if headless is None else headless
        self.user_agent = user_agent or config.USER_AGENT

    async def _render(self, url: str, timeout: float, settle_seconds: float) -> str:
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=self.headless)
            try:
                context = await browser.new_context(user_agent=self.user_agent, java_script_enabled=True)
                page = await context.new_page()
                await page.goto(url, timeout=int(timeout * 1000), wait_until="domcontentloaded")
                await page.wait_for_selector("body", state="attached", timeout=int(timeout * 1000))
                # Scripts get a short window to build the document
                await asyncio.sleep(settle_seconds)
                return await page.content()
            finally:
                await browser.close()

    @trace_span(
        "render_page",
        tracer_name="renderer",
        attr_from_args=lambda self, url, **kw: {"feed.url": url},
    )
    async def render(self, url: str, *, timeout: float, settle_seconds: float) -> str:
        """Load `url` in a headless browser and return the settled markup."""
        logger.info(f"Rendering {url} in headless browser (timeout={timeout}s, settle={settle_seconds}s)")
        try:
            page_content = await asyncio.wait_for(self._render(url, timeout, settle_seconds), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RenderError(url, f"timed out after {timeout}s") from e
        except Exception as e:
            # Playwright raises its own Error hierarchy for navigation and browser failures
            raise RenderError(url, f"failed to execute JavaScript in browser: {e}") from e
        logger.debug(f"Rendered {url}: {len(page_content)} characters")
        return unwrap_xml_viewer(page_content)
