"""``PageDriver`` implementation on top of a Playwright async ``Page``."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from playwright.async_api import Error as PlaywrightError, Page, TimeoutError as PlaywrightTimeout

from pqa.browser import dom_scan
from pqa.browser.locators import ElementCandidate
from pqa.browser.page_agent import ResponseSample
from pqa.exceptions import PageAutomationError, TargetInvalidatedError

logger = logging.getLogger(__name__)

# Playwright error substrings meaning the page itself is gone.
_CLOSED_ERRORS: tuple[str, ...] = (
    "Target closed",
    "Target page, context or browser has been closed",
    "Browser has been closed",
)

# Substrings meaning the document was replaced mid-call (reload/navigation).
_CONTEXT_LOST_ERRORS: tuple[str, ...] = (
    "Execution context was destroyed",
    "Cannot find context with specified id",
)


class PlaywrightPageDriver:
    """Drive a live chat page through ``page.evaluate`` and locator clicks.

    Args:
        page: Playwright async page.
        click_timeout_ms: Actionability timeout for the native click.
    """

    def __init__(self, page: Page, *, click_timeout_ms: int = 5_000) -> None:
        self._page = page
        self._click_timeout_ms = click_timeout_ms
        self._listeners: list[Callable[[], None]] = []
        self._binding_installed = False

    @property
    def page(self) -> Page:
        return self._page

    # ------------------------------------------------------------------
    # Evaluation with error translation
    # ------------------------------------------------------------------

    async def _evaluate(self, script: str, arg: Any = None) -> Any:
        if self._page.is_closed():
            raise TargetInvalidatedError("target page was closed")
        try:
            if arg is None:
                return await self._page.evaluate(script)
            return await self._page.evaluate(script, arg)
        except PlaywrightError as exc:
            translated = self._translate(exc)
            if translated is exc:
                raise
            raise translated from exc

    def _translate(self, exc: PlaywrightError) -> Exception:
        message = str(exc)
        if self._page.is_closed() or any(p in message for p in _CLOSED_ERRORS):
            return TargetInvalidatedError("target page was closed")
        if any(p in message for p in _CONTEXT_LOST_ERRORS):
            return PageAutomationError("Page reloaded during prompt execution (temporary)")
        return exc

    @staticmethod
    def _ref_selector(ref: str) -> str:
        return f'[{dom_scan.REF_ATTR}="{ref}"]'

    # ------------------------------------------------------------------
    # PageDriver
    # ------------------------------------------------------------------

    async def query(self, selector: str) -> list[ElementCandidate]:
        raw = await self._evaluate(dom_scan.QUERY_JS, selector)
        if raw is None:
            logger.debug("Selector rejected by the page: %r", selector)
            return []
        return [ElementCandidate.from_scan(item) for item in raw]

    async def count_loading_indicators(self, selectors: tuple[str, ...]) -> int:
        return int(await self._evaluate(dom_scan.COUNT_LOADING_JS, list(selectors)) or 0)

    async def focus(self, ref: str) -> bool:
        return bool(await self._evaluate(dom_scan.FOCUS_JS, ref))

    async def insert_text(self, ref: str, text: str) -> bool:
        return bool(await self._evaluate(dom_scan.INSERT_TEXT_JS, [ref, text]))

    async def read_text(self, ref: str) -> str | None:
        return await self._evaluate(dom_scan.READ_TEXT_JS, ref)

    async def scroll_into_view(self, ref: str) -> None:
        await self._evaluate(dom_scan.SCROLL_INTO_VIEW_JS, ref)

    async def click(self, ref: str) -> bool:
        if self._page.is_closed():
            raise TargetInvalidatedError("target page was closed")
        try:
            await self._page.locator(self._ref_selector(ref)).click(timeout=self._click_timeout_ms)
        except PlaywrightTimeout:
            logger.info("Native click on %s timed out", ref)
            return False
        except PlaywrightError as exc:
            translated = self._translate(exc)
            if translated is exc:
                logger.info("Native click on %s failed: %s", ref, exc)
                return False
            raise translated from exc
        return True

    async def pointer_click(self, ref: str) -> bool:
        return bool(await self._evaluate(dom_scan.POINTER_CLICK_JS, ref))

    async def measure(self, ref: str) -> ResponseSample | None:
        raw = await self._evaluate(dom_scan.MEASURE_JS, ref)
        if raw is None:
            return None
        return ResponseSample(text_length=int(raw.get("text_length", 0)), busy=bool(raw.get("busy")))

    async def extract(self, ref: str) -> tuple[str, str] | None:
        raw = await self._evaluate(dom_scan.EXTRACT_JS, ref)
        if raw is None:
            return None
        return raw.get("html", ""), raw.get("text", "")

    async def subscribe_mutations(self, callback: Callable[[], None]) -> Callable[[], Awaitable[None]]:
        if not self._binding_installed:
            await self._page.expose_function(dom_scan.MUTATION_BINDING, self._notify)
            self._binding_installed = True
        self._listeners.append(callback)
        await self._evaluate(dom_scan.INSTALL_OBSERVER_JS)

        async def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)
            if self._listeners or self._page.is_closed():
                return
            try:
                await self._page.evaluate(dom_scan.REMOVE_OBSERVER_JS)
            except PlaywrightError as exc:
                logger.debug("Could not remove mutation observer: %s", exc)

        return unsubscribe

    def _notify(self, *_args: Any) -> None:
        for listener in list(self._listeners):
            listener()
