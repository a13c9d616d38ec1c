"""Page automation agent — executes one prompt end-to-end against the chat page.

The agent is single-flight: while an execution is in progress any further
``execute`` call is dropped.  Every failure is reported back as a failed
``OutcomeEnvelope``; nothing raised inside the page crosses to the
controller.

Steps per execution::

    settle → locate input → insert text → locate submit → snapshot responses
           → scroll + click → await stable response → outcome
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, runtime_checkable

from pqa.browser.completion import CompletionDetector, wait_until
from pqa.browser.locators import LOADING_SELECTORS, ElementCandidate, LocatorStrategySet, TargetKind
from pqa.exceptions import ElementNotFoundError, PageAutomationError, SubmissionFailedError
from pqa.models.messages import DispatchEnvelope, OutcomeEnvelope
from pqa.models.run import now_ms
from pqa.settings.config import AgentSettings

logger = logging.getLogger(__name__)

# Characters of the prompt used to check insertion and submission.
_PROBE_CHARS = 20


@dataclass
class ResponseSample:
    """One measurement of a tracked response container."""

    text_length: int
    busy: bool = False


@runtime_checkable
class PageDriver(Protocol):
    """Operations the agent needs from the page.

    ``PlaywrightPageDriver`` implements this against a live page; unit tests
    use an in-memory fake.  Element arguments are refs from ``query``.
    """

    async def query(self, selector: str) -> list[ElementCandidate]: ...

    async def count_loading_indicators(self, selectors: tuple[str, ...]) -> int: ...

    async def focus(self, ref: str) -> bool: ...

    async def insert_text(self, ref: str, text: str) -> bool: ...

    async def read_text(self, ref: str) -> str | None: ...

    async def scroll_into_view(self, ref: str) -> None: ...

    async def click(self, ref: str) -> bool: ...

    async def pointer_click(self, ref: str) -> bool: ...

    async def measure(self, ref: str) -> ResponseSample | None: ...

    async def extract(self, ref: str) -> tuple[str, str] | None: ...

    async def subscribe_mutations(self, callback: Callable[[], None]) -> Callable[[], Awaitable[None]]: ...


class PageAgent:
    """Runs dispatched prompts against one page.

    Args:
        driver: Page driver for the target page.
        locators: Locator strategy set (defaults to the built-in rules).
        detector: Completion detector (built from ``locators`` when omitted).
        settings: Agent timings; defaults come from ``get_settings().agent``.
    """

    def __init__(
        self,
        driver: PageDriver,
        locators: LocatorStrategySet | None = None,
        detector: CompletionDetector | None = None,
        settings: AgentSettings | None = None,
    ) -> None:
        if settings is None:
            from pqa.settings import get_settings

            settings = get_settings().agent
        self._driver = driver
        self._locators = locators or LocatorStrategySet.default()
        self._detector = detector or CompletionDetector(self._locators)
        self._settings = settings
        self._busy = False
        self._current: asyncio.Task[OutcomeEnvelope] | None = None

    @property
    def busy(self) -> bool:
        """True while an execution is in progress."""
        return self._busy

    async def execute(self, envelope: DispatchEnvelope) -> OutcomeEnvelope | None:
        """Execute one prompt and report the outcome.

        Returns:
            The outcome, or ``None`` when the call was dropped because another
            execution is in progress or the execution was aborted.
        """
        if self._busy:
            logger.warning(
                "Dropping execute-prompt for index %d: already executing a prompt", envelope.index
            )
            return None

        self._busy = True
        try:
            self._current = asyncio.ensure_future(self._execute(envelope))
            return await self._current
        except asyncio.CancelledError:
            caller = asyncio.current_task()
            if caller is not None and caller.cancelling():
                raise
            logger.info("Execution of prompt %d aborted", envelope.index)
            return None
        finally:
            self._current = None
            self._busy = False

    def abort(self) -> bool:
        """Cancel the in-flight execution, if any."""
        if self._current is None or self._current.done():
            return False
        self._current.cancel()
        return True

    async def _execute(self, envelope: DispatchEnvelope) -> OutcomeEnvelope:
        start_time = now_ms()
        logger.info("Executing prompt %d (%d chars)", envelope.index, len(envelope.prompt_text))
        try:
            response = await self._run_steps(envelope)
        except PageAutomationError as exc:
            logger.warning("Prompt %d failed: %s", envelope.index, exc)
            return OutcomeEnvelope.failed(
                envelope.index,
                str(exc),
                error_kind=exc.kind,
                start_time=start_time,
                automation_id=envelope.automation_id,
            )
        except Exception as exc:
            logger.exception("Unexpected error executing prompt %d", envelope.index)
            return OutcomeEnvelope.failed(
                envelope.index,
                str(exc) or type(exc).__name__,
                error_kind="unexpected",
                start_time=start_time,
                automation_id=envelope.automation_id,
            )
        return OutcomeEnvelope.completed(
            envelope.index,
            response,
            start_time=start_time,
            automation_id=envelope.automation_id,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run_steps(self, envelope: DispatchEnvelope) -> str:
        s = self._settings
        await self._settle()

        input_el = await self._locate(TargetKind.INPUT)
        await self._insert(input_el, envelope.prompt_text)
        await asyncio.sleep(s.submit_delay_ms / 1000)

        submit_el = await self._locate(TargetKind.SUBMIT)
        baseline = await self._detector.snapshot(self._driver)

        submitted_at = self._detector.now()
        await self._submit(submit_el, input_el, envelope.prompt_text)

        return await self._detector.wait_for_response(
            self._driver,
            baseline,
            submitted_at=submitted_at,
            timeout_s=envelope.per_attempt_timeout_ms / 1000,
        )

    async def _settle(self) -> None:
        """Wait for loading indicators to clear, then a fixed settle delay regardless."""
        s = self._settings
        for attempt in range(s.settle_max_attempts):
            count = await self._driver.count_loading_indicators(LOADING_SELECTORS)
            if count == 0:
                break
            logger.debug("Page still loading (%d indicators, attempt %d)", count, attempt + 1)
            await asyncio.sleep(s.settle_poll_ms / 1000)
        else:
            logger.info("Loading indicators still present after %d checks; continuing", s.settle_max_attempts)
        await asyncio.sleep(s.settle_delay_ms / 1000)

    async def _locate(self, kind: TargetKind) -> ElementCandidate:
        s = self._settings

        async def check() -> ElementCandidate | None:
            return await self._locators.locate(self._driver, kind)

        found = await wait_until(check, interval=s.locate_poll_ms / 1000, timeout=s.locate_timeout_ms / 1000)
        if found is None:
            raise ElementNotFoundError(kind.value)
        return found

    async def _insert(self, element: ElementCandidate, text: str) -> None:
        await self._driver.focus(element.ref)
        await asyncio.sleep(self._settings.focus_delay_ms / 1000)
        verified = await self._driver.insert_text(element.ref, text)
        if not verified:
            logger.warning("Could not verify prompt text in %s <%s>", element.ref, element.tag)

    async def _submit(self, submit_el: ElementCandidate, input_el: ElementCandidate, prompt: str) -> None:
        s = self._settings
        await self._driver.scroll_into_view(submit_el.ref)
        await asyncio.sleep(s.scroll_settle_ms / 1000)

        clicked = await self._driver.click(submit_el.ref)
        if clicked and not s.verify_submit:
            return
        if clicked:
            await asyncio.sleep(s.click_effect_ms / 1000)
            if not await self._prompt_still_pending(input_el, prompt):
                return
            logger.info("Click on %s had no effect; retrying with pointer events", submit_el.ref)

        await self._driver.pointer_click(submit_el.ref)
        if not s.verify_submit:
            return
        await asyncio.sleep(s.click_effect_ms / 1000)
        if await self._prompt_still_pending(input_el, prompt):
            raise SubmissionFailedError("Prompt was not submitted: submit control had no effect")

    async def _prompt_still_pending(self, input_el: ElementCandidate, prompt: str) -> bool:
        """True when the input still holds the prompt (the submit did nothing)."""
        current = await self._driver.read_text(input_el.ref)
        if current is None:
            return False
        probe = prompt.strip()[:_PROBE_CHARS]
        return bool(probe) and probe in current
