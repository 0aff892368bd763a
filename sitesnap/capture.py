"""Capture protocol: navigate, reveal animated content, scroll, snapshot."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple
from urllib.parse import urlparse

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from sitesnap import metrics
from sitesnap.browser import RenderSession
from sitesnap.errors import CaptureError, PoolShuttingDownError
from sitesnap.pool import RenderSessionPool
from sitesnap.settings import BrowserSettings, get_settings

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ViewportPreset:
    width: int
    height: int


VIEWPORTS: dict[str, ViewportPreset] = {
    "desktop": ViewportPreset(width=1440, height=900),
    "mobile": ViewportPreset(width=375, height=812),
}

# Libraries that fade content in on scroll leave it at opacity 0 until an
# observer fires; forcing the end state makes the snapshot deterministic.
REVEAL_CSS = """
*, *::before, *::after {
    opacity: 1 !important;
    visibility: visible !important;
    transform: none !important;
    animation: none !important;
    transition: none !important;
}
"""

SCROLL_SCRIPT = """
async ([distance, delay]) => {
    const scrollHeight = document.body.scrollHeight;
    let position = 0;
    while (position < scrollHeight) {
        window.scrollBy(0, distance);
        position += distance;
        await new Promise((resolve) => setTimeout(resolve, delay));
    }
    window.scrollTo(0, 0);
}
"""


@dataclass(frozen=True, slots=True)
class CaptureRequest:
    """Immutable description of one screenshot to take."""

    url: str
    viewport: str = "desktop"
    full_page: bool = True
    wait_time_ms: int = 2000
    site_job_id: Optional[str] = None
    client_name: Optional[str] = None
    project_name: Optional[str] = None
    tags: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class CapturePolicy:
    """Timing knobs for the scroll sweep and navigation timeout."""

    timeout_ms: int = 30_000
    scroll_step_px: int = 400
    scroll_delay_ms: int = 100
    settle_ms: int = 500

    @classmethod
    def from_settings(cls, settings: BrowserSettings) -> CapturePolicy:
        return cls(
            timeout_ms=settings.screenshot_timeout_ms,
            scroll_step_px=settings.scroll_step_px,
            scroll_delay_ms=settings.scroll_delay_ms,
            settle_ms=settings.settle_ms,
        )


def resolve_viewport(name: str) -> ViewportPreset:
    return VIEWPORTS.get(name, VIEWPORTS["desktop"])


def validate_capture_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise CaptureError(url, "URL must be an absolute http(s) URL")


class CaptureWorker:
    """Runs the capture protocol on sessions leased from a pool."""

    def __init__(self, pool: RenderSessionPool, policy: CapturePolicy | None = None) -> None:
        self._pool = pool
        self._policy = policy or CapturePolicy.from_settings(get_settings().browser)

    async def capture(
        self,
        url: str,
        viewport: str = "desktop",
        full_page: bool = True,
        wait_time_ms: int = 0,
    ) -> bytes:
        validate_capture_url(url)
        start = time.perf_counter()
        try:
            session = await self._pool.acquire()
        except PoolShuttingDownError:
            metrics.record_capture("rejected")
            raise
        except Exception as exc:
            metrics.record_capture("failed")
            raise CaptureError(url, f"render engine unavailable: {exc}") from exc

        try:
            image = await self._run_protocol(session, url, viewport, full_page, wait_time_ms)
        except PlaywrightTimeoutError as exc:
            metrics.record_capture("timeout", time.perf_counter() - start)
            raise CaptureError(url, f"navigation timed out after {self._policy.timeout_ms}ms") from exc
        except Exception as exc:
            metrics.record_capture("failed", time.perf_counter() - start)
            raise CaptureError(url, str(exc)) from exc
        finally:
            await self._pool.release(session)

        duration = time.perf_counter() - start
        metrics.record_capture("completed", duration)
        LOGGER.info("Screenshot captured", extra={"url": url, "size": len(image), "capture_s": round(duration, 3)})
        return image

    async def capture_request(self, request: CaptureRequest) -> bytes:
        return await self.capture(
            request.url,
            viewport=request.viewport,
            full_page=request.full_page,
            wait_time_ms=request.wait_time_ms,
        )

    async def _run_protocol(
        self,
        session: RenderSession,
        url: str,
        viewport: str,
        full_page: bool,
        wait_time_ms: int,
    ) -> bytes:
        policy = self._policy
        preset = resolve_viewport(viewport)
        LOGGER.info("Capturing screenshot", extra={"url": url, "viewport": viewport, "full_page": full_page})

        await session.set_viewport(preset.width, preset.height)
        await session.emulate_reduced_motion()
        await session.navigate(url, timeout_ms=policy.timeout_ms)
        await session.inject_style(REVEAL_CSS)

        if full_page:
            await session.run_script(SCROLL_SCRIPT, [policy.scroll_step_px, policy.scroll_delay_ms])
            await session.wait(policy.settle_ms)

        if wait_time_ms > 0:
            await session.wait(wait_time_ms)

        return await session.snapshot(full_page=full_page)
