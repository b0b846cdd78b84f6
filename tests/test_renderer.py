import asyncio

import pytest

from errors import RenderError
from renderer import PlaywrightRenderer, unwrap_xml_viewer


def test_unwrap_xml_viewer():
    wrapped = '<html><body><div id="webkit-xml-viewer-source-xml"><rss><channel/></rss></div></body></html>'

    assert unwrap_xml_viewer(wrapped) == "<rss><channel/></rss>"
    assert unwrap_xml_viewer("<html><body>plain</body></html>") == "<html><body>plain</body></html>"


def test_unwrap_xml_viewer_without_closing_tag():
    truncated = '<div id="webkit-xml-viewer-source-xml"><rss>'

    assert unwrap_xml_viewer(truncated) == truncated


@pytest.mark.asyncio
async def test_render_wraps_browser_errors(monkeypatch):
    async def broken(self, url, timeout, settle_seconds):
        raise RuntimeError("net::ERR_NAME_NOT_RESOLVED")

    monkeypatch.setattr(PlaywrightRenderer, "_render", broken)

    with pytest.raises(RenderError, match="failed to execute JavaScript in browser"):
        await PlaywrightRenderer().render("https://spa.example/", timeout=1, settle_seconds=0)


@pytest.mark.asyncio
async def test_render_times_out(monkeypatch):
    async def slow(self, url, timeout, settle_seconds):
        await asyncio.sleep(5)

    monkeypatch.setattr(PlaywrightRenderer, "_render", slow)

    with pytest.raises(RenderError, match="timed out"):
        await PlaywrightRenderer().render("https://spa.example/", timeout=0.05, settle_seconds=0)


@pytest.mark.asyncio
async def test_render_returns_unwrapped_markup(monkeypatch):
    async def viewer(self, url, timeout, settle_seconds):
        return '<div id="webkit-xml-viewer-source-xml"><feed/></div>'

    monkeypatch.setattr(PlaywrightRenderer, "_render", viewer)

    assert await PlaywrightRenderer().render("https://x/", timeout=1, settle_seconds=0) == "<feed/>"


def test_renderer_accepts_overrides():
    renderer = PlaywrightRenderer(headless=False, user_agent="TestAgent/1.0")

    assert renderer.headless is False
    assert renderer.user_agent == "TestAgent/1.0"
