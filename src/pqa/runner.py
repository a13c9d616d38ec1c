"""Automation session — wires a browser page to a queue controller.

One ``AutomationSession`` owns everything needed to run prompt queues
against one chat page::

    BrowserSession → PageTarget ─┐
    PlaywrightPageDriver → PageAgent → AgentHost ⇄ AgentLink ⇄ QueueController → EventBus
                                                                    └→ CheckpointStore

Usage::

    async with AutomationSession(target_id="chat") as session:
        await session.open("https://chat.example.com/")
        report = await session.run(["first prompt", "second prompt"])
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from pqa.browser.agent_host import AgentHost
from pqa.browser.completion import CompletionDetector, StabilityPolicy
from pqa.browser.locators import LocatorStrategySet
from pqa.browser.page_agent import PageAgent
from pqa.browser.playwright_driver import PlaywrightPageDriver
from pqa.browser.session import BrowserSession, PageTarget
from pqa.controller.channel import AgentLink
from pqa.controller.queue_controller import QueueController
from pqa.models.run import PromptItem
from pqa.monitoring.event_bus import EventBus, LoggingSink
from pqa.settings.config import Settings
from pqa.store.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)


class AutomationSession:
    """Browser, agent and controller for one target.

    Args:
        target_id: Identifier for checkpoints, results and events.
        settings: Resolved settings; defaults to ``get_settings()``.
        store: Checkpoint store; defaults to ``build_checkpoint_store()``.
        bus: Event bus; a new one with a ``LoggingSink`` when omitted.
    """

    def __init__(
        self,
        target_id: str = "default",
        *,
        settings: Settings | None = None,
        store: CheckpointStore | None = None,
        bus: EventBus | None = None,
    ) -> None:
        if settings is None:
            from pqa.settings import get_settings

            settings = get_settings()
        if store is None:
            from pqa.store import build_checkpoint_store

            store = build_checkpoint_store()
        self.target_id = target_id
        self.settings = settings
        self.store = store
        if bus is None:
            bus = EventBus(target_id=target_id)
            bus.add_sink(LoggingSink())
        self.bus = bus

        self._browser: BrowserSession | None = None
        self._target: PageTarget | None = None
        self._link: AgentLink | None = None
        self._host: AgentHost | None = None
        self._controller: QueueController | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def is_open(self) -> bool:
        return self._controller is not None

    @property
    def controller(self) -> QueueController:
        if self._controller is None:
            raise RuntimeError("AutomationSession not opened")
        return self._controller

    async def open(self, url: str | None = None) -> None:
        """Launch the browser, load the chat page and start the agent host.

        Args:
            url: Chat page URL; defaults to ``target.url`` from settings.
        """
        if self.is_open:
            return
        url = url or self.settings.target.url
        if not url:
            raise ValueError("No target URL given and target.url is not configured")

        self._browser = BrowserSession(self.settings.browser)
        await self._browser.start()
        page = await self._browser.open_page(url)

        target = PageTarget(page, target_id=self.target_id, allowed_hosts=self.settings.target.allowed_hosts)
        locators = self._load_locators()
        detector = CompletionDetector(locators, StabilityPolicy.from_settings(self.settings.detector))
        driver = PlaywrightPageDriver(page, click_timeout_ms=self.settings.agent.click_timeout_ms)
        agent = PageAgent(driver, locators, detector, self.settings.agent)

        link = AgentLink()
        host = AgentHost(agent, link, target_id=self.target_id, ready_delay_s=self.settings.agent.ready_delay_ms / 1000)
        controller = QueueController(
            target,
            link,
            bus=self.bus,
            store=self.store,
            settings=self.settings.automation,
        )

        target.add_invalidation_listener(controller.on_target_invalidated)
        target.add_reload_listener(host.on_page_reload)

        self._target, self._link, self._host, self._controller = target, link, host, controller
        self._spawn(host.serve(), "pqa-agent-host")
        self._spawn(self._pump(), "pqa-controller-pump")
        self._spawn(host.announce_ready(), "pqa-ready")
        logger.info("Automation session %s open on %s", self.target_id, page.url)

    async def run(self, prompts: Sequence[PromptItem | str], *, timeout: float | None = None) -> dict[str, Any]:
        """Start a run and wait for it to complete or stop.

        Returns:
            The final report (``automation_id``, ``results``, ``summary``).
        """
        await self.controller.start(prompts)
        return await self.controller.wait_finished(timeout)

    async def resume(self, *, timeout: float | None = None) -> dict[str, Any] | None:
        """Continue the checkpointed run for this target, if there is one.

        A run that was paused when checkpointed is resumed as well.
        """
        run = await self.controller.restore()
        if run is None:
            return None
        if run.is_paused:
            await self.controller.resume()
        return await self.controller.wait_finished(timeout)

    async def close(self, *, stop_run: bool = True) -> None:
        """Release the browser.

        Args:
            stop_run: Stop an active run first (its checkpoint is cleared and
                final results stored).  With False the checkpoint is left in
                place for a later ``resume``.
        """
        if stop_run and self._controller is not None and self._controller.is_active:
            await self._controller.stop(reason="session closed")
        if self._link is not None:
            self._link.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._browser is not None:
            await self._browser.stop()
        self._browser = self._target = self._link = self._host = self._controller = None
        logger.info("Automation session %s closed", self.target_id)

    async def __aenter__(self) -> AutomationSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"AutomationSession({self.target_id!r}, {state})"

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_locators(self) -> LocatorStrategySet:
        path = self.settings.target.locator_file
        if path:
            return LocatorStrategySet.from_file(path)
        return LocatorStrategySet.default()

    async def _pump(self) -> None:
        """Feed agent messages to the controller until the link closes."""
        assert self._link is not None and self._controller is not None
        async for message in self._link.controller_messages():
            try:
                await self._controller.handle_message(message)
            except Exception:
                logger.exception("Controller failed handling %s", getattr(message, "type", message))

    def _spawn(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
