"""Completion detection for streamed chat responses.

A chat page never says "done": the reply grows in place until it stops.
The detector tracks the newest response container that appeared after
submission and samples its text length.  The newest container is looked up
again on every sample, since the echoed user prompt often renders before the
reply.  Completion is declared once the length has held for enough
consecutive samples *and* enough wall time has passed since submission,
both scaled up for long replies.

Samples are driven by one ``wait_until`` loop that wakes either on the poll
interval or on a DOM mutation notification, whichever comes first, and
returns exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from pqa.browser.locators import LocatorStrategySet
from pqa.browser.response_content import extract_response
from pqa.exceptions import ResponseTimeoutError
from pqa.settings.config import DetectorSettings

if TYPE_CHECKING:
    from pqa.browser.page_agent import PageDriver

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Mutation-driven samples closer together than this fraction of the poll
# interval do not count toward stability.
_MIN_SAMPLE_SPACING = 0.5


async def wait_until(
    check: Callable[[], Awaitable[T | None]],
    *,
    interval: float,
    timeout: float,
    trigger: asyncio.Event | None = None,
) -> T | None:
    """Re-run ``check`` until it returns a truthy value or ``timeout`` elapses.

    The check runs immediately, then again after every ``interval`` seconds
    or as soon as ``trigger`` is set, whichever happens first.

    Args:
        check: Async predicate returning a truthy result when satisfied.
        interval: Poll interval in seconds.
        timeout: Overall deadline in seconds.
        trigger: Optional event set by an external notifier (DOM mutations).

    Returns:
        The first truthy result, or ``None`` on timeout.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if trigger is not None:
            trigger.clear()
        result = await check()
        if result:
            return result
        remaining = deadline - loop.time()
        if remaining <= 0:
            return None
        wait = min(interval, remaining)
        if trigger is None:
            await asyncio.sleep(wait)
            continue
        try:
            await asyncio.wait_for(trigger.wait(), timeout=wait)
        except asyncio.TimeoutError:
            pass


@dataclass
class StabilityPolicy:
    """Thresholds deciding when a response has stopped growing."""

    stable_samples: int = 3
    long_response_chars: int = 1_000
    long_stable_samples: int = 5
    min_elapsed_s: float = 3.0
    long_min_elapsed_s: float = 8.0
    min_text_length: int = 10
    poll_interval_s: float = 1.0

    @classmethod
    def from_settings(cls, settings: DetectorSettings) -> StabilityPolicy:
        return cls(
            stable_samples=settings.stable_samples,
            long_response_chars=settings.long_response_chars,
            long_stable_samples=settings.long_stable_samples,
            min_elapsed_s=settings.min_elapsed_ms / 1000,
            long_min_elapsed_s=settings.long_min_elapsed_ms / 1000,
            min_text_length=settings.min_text_length,
            poll_interval_s=settings.poll_interval_ms / 1000,
        )

    def required_samples(self, length: int) -> int:
        """Consecutive unchanged samples needed for a response of ``length`` chars."""
        if length > self.long_response_chars:
            return max(self.stable_samples, self.long_stable_samples)
        return self.stable_samples

    def min_elapsed(self, length: int) -> float:
        """Seconds since submission before a response of ``length`` chars may complete."""
        if length > self.long_response_chars:
            return max(self.min_elapsed_s, self.long_min_elapsed_s)
        return self.min_elapsed_s


class StabilityTracker:
    """Counts consecutive unchanged length samples for one container."""

    def __init__(self, min_spacing_s: float = 0.0) -> None:
        self._min_spacing = min_spacing_s
        self.ref: str | None = None
        self.last_length: int | None = None
        self.stable_count = 0
        self._last_counted: float = 0.0

    def reset(self, ref: str | None = None) -> None:
        self.ref = ref
        self.last_length = None
        self.stable_count = 0
        self._last_counted = 0.0

    def observe(self, length: int, now: float) -> int:
        """Record a sample and return the current stable count."""
        if length != self.last_length:
            self.last_length = length
            self.stable_count = 0
            self._last_counted = now
        elif now - self._last_counted >= self._min_spacing:
            self.stable_count += 1
            self._last_counted = now
        return self.stable_count

    def interrupt(self) -> None:
        """Drop the streak without forgetting the container (spinner still inside)."""
        self.stable_count = 0


class CompletionDetector:
    """Waits for the newly appended response container to stop growing.

    Args:
        locators: Strategy set used to find response containers.
        policy: Stability thresholds; defaults come from settings.
        clock: Monotonic clock in seconds (overridable for tests).
    """

    def __init__(
        self,
        locators: LocatorStrategySet,
        policy: StabilityPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if policy is None:
            from pqa.settings import get_settings

            policy = StabilityPolicy.from_settings(get_settings().detector)
        self._locators = locators
        self._policy = policy
        self._clock = clock

    @property
    def policy(self) -> StabilityPolicy:
        return self._policy

    def now(self) -> float:
        """Current reading of the detector clock (use for ``submitted_at``)."""
        return self._clock()

    async def snapshot(self, driver: PageDriver) -> frozenset[str]:
        """Refs of all response containers present right now (take before submitting)."""
        refs = await self._locators.response_refs(driver)
        logger.debug("Response snapshot: %d existing containers", len(refs))
        return refs

    async def wait_for_response(
        self,
        driver: PageDriver,
        baseline: frozenset[str],
        *,
        submitted_at: float,
        timeout_s: float,
    ) -> str:
        """Block until the new response is stable and return its cleaned content.

        Args:
            driver: Page driver for the target page.
            baseline: Refs from :meth:`snapshot` taken before submission.
            submitted_at: ``clock()`` reading at submission time.
            timeout_s: Overall deadline measured from ``submitted_at``.

        Raises:
            ResponseTimeoutError: If no stable response appeared in time.
        """
        policy = self._policy
        tracker = StabilityTracker(min_spacing_s=policy.poll_interval_s * _MIN_SAMPLE_SPACING)
        trigger = asyncio.Event()

        async def check() -> bool:
            now = self._clock()
            newest = await self._locators.locate_new_response(driver, baseline)
            if newest is not None and newest.ref != tracker.ref:
                if tracker.ref is None:
                    logger.debug("Tracking response container %s", newest.ref)
                else:
                    logger.debug("Newer response container %s replaces %s", newest.ref, tracker.ref)
                tracker.reset(newest.ref)
            if tracker.ref is None:
                return False

            sample = await driver.measure(tracker.ref)
            if sample is None:
                # Container was replaced by a re-render; find it again next round.
                logger.debug("Response container %s detached", tracker.ref)
                tracker.reset()
                return False
            if sample.busy or sample.text_length < policy.min_text_length:
                tracker.interrupt()
                return False

            stable = tracker.observe(sample.text_length, now)
            elapsed = now - submitted_at
            return stable >= policy.required_samples(sample.text_length) and elapsed >= policy.min_elapsed(
                sample.text_length
            )

        remaining = max(0.0, timeout_s - (self._clock() - submitted_at))
        unsubscribe = await driver.subscribe_mutations(trigger.set)
        try:
            done = await wait_until(check, interval=policy.poll_interval_s, timeout=remaining, trigger=trigger)
        finally:
            await unsubscribe()

        if not done or tracker.ref is None:
            elapsed = self._clock() - submitted_at
            logger.warning("No stable response after %.1fs", elapsed)
            raise ResponseTimeoutError(elapsed)

        content = await driver.extract(tracker.ref)
        if content is None:
            raise ResponseTimeoutError(self._clock() - submitted_at)
        html, text = content
        logger.info("Response complete: %d chars after %.1fs", len(text), self._clock() - submitted_at)
        return extract_response(html, text)
