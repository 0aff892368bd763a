"""Playwright-backed render engine: one Chromium process, one context per session."""

from __future__ import annotations

import logging
from importlib import metadata
from typing import Any, Callable, List, Optional, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from sitesnap.settings import BrowserSettings

LOGGER = logging.getLogger(__name__)

# Tuned for containerised Chromium.
BROWSER_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--disable-crash-reporter",
    "--disable-breakpad",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-features=TranslateUI",
    "--disable-ipc-flooding-protection",
    "--disable-hang-monitor",
)


class RenderSession(Protocol):
    """One isolated page used for a single navigate+capture cycle."""

    async def set_viewport(self, width: int, height: int) -> None: ...

    async def emulate_reduced_motion(self) -> None: ...

    async def navigate(self, url: str, *, timeout_ms: int) -> None: ...

    async def inject_style(self, css: str) -> None: ...

    async def run_script(self, script: str, *args: Any) -> Any: ...

    async def wait(self, ms: int) -> None: ...

    async def snapshot(self, *, full_page: bool) -> bytes: ...

    async def close(self) -> None: ...


class RenderEngine(Protocol):
    """Capability the session pool drives; Playwright in production, fakes in tests."""

    async def launch(self) -> None: ...

    async def new_session(self) -> RenderSession: ...

    async def close(self) -> None: ...

    def is_connected(self) -> bool: ...

    def on_disconnect(self, callback: Callable[[], None]) -> None: ...


class PlaywrightSession:
    """RenderSession over a dedicated BrowserContext + Page."""

    def __init__(self, context: BrowserContext, page: Page) -> None:
        self._context = context
        self._page = page

    async def set_viewport(self, width: int, height: int) -> None:
        await self._page.set_viewport_size({"width": width, "height": height})

    async def emulate_reduced_motion(self) -> None:
        await self._page.emulate_media(reduced_motion="reduce")

    async def navigate(self, url: str, *, timeout_ms: int) -> None:
        await self._page.goto(url, wait_until="networkidle", timeout=timeout_ms)

    async def inject_style(self, css: str) -> None:
        await self._page.add_style_tag(content=css)

    async def run_script(self, script: str, *args: Any) -> Any:
        return await self._page.evaluate(script, *args)

    async def wait(self, ms: int) -> None:
        await self._page.wait_for_timeout(ms)

    async def snapshot(self, *, full_page: bool) -> bytes:
        return await self._page.screenshot(type="png", full_page=full_page)

    async def close(self) -> None:
        await self._context.close()


class PlaywrightEngine:
    """Launches Chromium lazily and reports unexpected disconnects."""

    def __init__(self, settings: BrowserSettings) -> None:
        self._settings = settings
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._callbacks: List[Callable[[], None]] = []
        self._closing = False

    async def launch(self) -> None:
        if self.is_connected():
            return
        self._closing = False
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        channel = _normalize_channel(self._settings.playwright_channel)
        LOGGER.info(
            "Launching chromium",
            extra={"channel": channel, "executable_path": self._settings.executable_path},
        )
        launch_kwargs: dict[str, Any] = {"headless": True, "args": list(BROWSER_ARGS)}
        if channel != "chromium":
            launch_kwargs["channel"] = channel
        if self._settings.executable_path:
            launch_kwargs["executable_path"] = self._settings.executable_path
        browser = await self._playwright.chromium.launch(**launch_kwargs)
        browser.on("disconnected", self._handle_disconnected)
        self._browser = browser
        LOGGER.info("Chromium launched (playwright %s)", playwright_version())

    async def new_session(self) -> PlaywrightSession:
        if self._browser is None:
            raise RuntimeError("Render engine is not running")
        context = await self._browser.new_context(
            user_agent=self._settings.user_agent,
            locale="en-US",
        )
        page = await context.new_page()
        return PlaywrightSession(context, page)

    async def close(self) -> None:
        self._closing = True
        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
                LOGGER.info("Chromium closed")
            except Exception as exc:  # pragma: no cover - driver dependent
                LOGGER.error("Error closing chromium: %s", exc)
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    def is_connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def _handle_disconnected(self, _browser: Browser) -> None:
        self._browser = None
        if self._closing:
            return
        LOGGER.warning("Chromium disconnected")
        for callback in list(self._callbacks):
            callback()


_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}


def _normalize_channel(channel: str) -> str:
    if not channel:
        return "chromium"
    lowered = channel.strip().lower()
    return _CHANNEL_ALIASES.get(lowered, lowered)


def playwright_version() -> str:
    try:
        return metadata.version("playwright")
    except metadata.PackageNotFoundError:  # pragma: no cover - dev fallback
        return "unknown"
