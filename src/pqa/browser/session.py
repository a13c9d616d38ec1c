"""Browser lifecycle and the automation target.

``BrowserSession`` owns Playwright, the browser and its context; a
persistent profile directory can be used so an already logged-in chat
session is reused.  ``PageTarget`` wraps the chat page the controller runs
against: it validates the page (open, on an allowed host) and reports when
the page is closed, navigated away, or reloaded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, Frame, Page, Playwright, async_playwright

from pqa.browser.navigation import resilient_goto
from pqa.settings.config import BrowserSettings

logger = logging.getLogger(__name__)

InvalidationListener = Callable[[str], Awaitable[Any]]
ReloadListener = Callable[[], Awaitable[Any]]


def host_of(url: str) -> str:
    """Lower-cased host of ``url`` (empty for about:blank and the like)."""
    return (urlparse(url).hostname or "").lower()


def host_matches(host: str, allowed: str) -> bool:
    """True for an exact match or a subdomain of ``allowed``."""
    allowed = allowed.lower().lstrip(".")
    return host == allowed or host.endswith("." + allowed)


class PageTarget:
    """The chat page an automation run is bound to.

    Args:
        page: Playwright page.
        target_id: Identifier used for checkpoints and events.
        allowed_hosts: Hosts the page may be on; defaults to the page's host
            at construction time.
    """

    def __init__(self, page: Page, *, target_id: str, allowed_hosts: list[str] | None = None) -> None:
        self.page = page
        self.target_id = target_id
        self.allowed_hosts = [h for h in (allowed_hosts or []) if h] or [host_of(page.url)]
        self._invalidation_listeners: list[InvalidationListener] = []
        self._reload_listeners: list[ReloadListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._invalidated = False

        page.on("close", self._on_close)
        page.on("framenavigated", self._on_frame_navigated)
        page.on("load", self._on_load)

    def host_allowed(self, url: str) -> bool:
        host = host_of(url)
        return bool(host) and any(host_matches(host, allowed) for allowed in self.allowed_hosts if allowed)

    async def validate(self) -> bool:
        """True when the page is open and on an allowed chat host."""
        if self.page.is_closed():
            return False
        return self.host_allowed(self.page.url)

    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        self._invalidation_listeners.append(listener)

    def add_reload_listener(self, listener: ReloadListener) -> None:
        self._reload_listeners.append(listener)

    # ------------------------------------------------------------------
    # Page events
    # ------------------------------------------------------------------

    def _on_close(self, _page: Page) -> None:
        self._invalidate("Target tab was closed")

    def _on_frame_navigated(self, frame: Frame) -> None:
        if frame is not self.page.main_frame:
            return
        if not self.host_allowed(frame.url):
            self._invalidate(f"Target navigated away from the chat app ({host_of(frame.url) or frame.url})")
        else:
            self._invalidated = False

    def _on_load(self, _page: Page) -> None:
        if self._invalidated or not self.host_allowed(self.page.url):
            return
        for listener in list(self._reload_listeners):
            self._spawn(listener())

    def _invalidate(self, reason: str) -> None:
        if self._invalidated:
            return
        self._invalidated = True
        logger.warning("Target %s invalidated: %s", self.target_id, reason)
        for listener in list(self._invalidation_listeners):
            self._spawn(listener(reason))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Target listener failed: %s", task.exception())


class BrowserSession:
    """Start and stop a Playwright browser for one automation session.

    Args:
        settings: Browser settings; defaults come from ``get_settings().browser``.
    """

    def __init__(self, settings: BrowserSettings | None = None) -> None:
        if settings is None:
            from pqa.settings import get_settings

            settings = get_settings().browser
        self._settings = settings
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None

    @property
    def context(self) -> BrowserContext:
        if self._context is None:
            raise RuntimeError("BrowserSession not started")
        return self._context

    async def start(self) -> BrowserContext:
        """Launch the browser (or persistent profile) and return its context."""
        s = self._settings
        self._playwright = await async_playwright().start()
        context_kwargs: dict[str, Any] = {
            "viewport": {"width": s.viewport_width, "height": s.viewport_height},
        }
        if s.user_agent:
            context_kwargs["user_agent"] = s.user_agent
        launch_kwargs: dict[str, Any] = {"headless": s.headless}
        if s.channel:
            launch_kwargs["channel"] = s.channel

        if s.user_data_dir:
            logger.info("Launching persistent browser profile at %s", s.user_data_dir)
            self._context = await self._playwright.chromium.launch_persistent_context(
                s.user_data_dir, **launch_kwargs, **context_kwargs
            )
        else:
            self._browser = await self._playwright.chromium.launch(**launch_kwargs)
            self._context = await self._browser.new_context(**context_kwargs)
        self._context.set_default_timeout(s.timeout_ms)
        logger.info("Browser started (headless=%s)", s.headless)
        return self._context

    async def open_page(self, url: str) -> Page:
        """Open (or reuse) a tab and navigate it to ``url``."""
        context = self.context
        page = context.pages[0] if context.pages else await context.new_page()
        await resilient_goto(page, url, timeout_ms=self._settings.timeout_ms)
        logger.info("Opened %s", page.url)
        return page

    async def stop(self) -> None:
        """Close the context, browser and Playwright; errors are logged, not raised."""
        for name, closer in (
            ("context", self._context.close if self._context else None),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._playwright.stop if self._playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                logger.warning("Error closing %s: %s", name, exc)
        self._context = None
        self._browser = None
        self._playwright = None

    async def __aenter__(self) -> BrowserSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
