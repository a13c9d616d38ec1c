"""Agent host — connects a ``PageAgent`` to the controller through an ``AgentLink``.

The host announces readiness (``content-script-ready``), runs each
``execute-prompt`` as its own task so control messages are still read while
a prompt is executing, and aborts the in-flight execution on
``stop-automation`` or when the page reloads.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pqa.browser.page_agent import PageAgent
from pqa.controller.channel import AgentLink
from pqa.models.messages import ControlMessage, DispatchEnvelope, MessageType

logger = logging.getLogger(__name__)


class AgentHost:
    """Serve one page agent over a link.

    Args:
        agent: The page agent.
        link: Link shared with the controller.
        target_id: Target identifier included in readiness announcements.
        ready_delay_s: Pause before announcing readiness after a page load.
    """

    def __init__(self, agent: PageAgent, link: AgentLink, *, target_id: str, ready_delay_s: float = 2.0) -> None:
        self._agent = agent
        self._link = link
        self._target_id = target_id
        self._ready_delay_s = ready_delay_s
        self._tasks: set[asyncio.Task[Any]] = set()

    async def serve(self) -> None:
        """Process messages until the link closes."""
        try:
            async for message in self._link.agent_messages():
                if isinstance(message, DispatchEnvelope):
                    task = asyncio.create_task(self._execute(message), name=f"pqa-prompt-{message.index}")
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                elif isinstance(message, ControlMessage) and message.type == MessageType.STOP_AUTOMATION:
                    if self._agent.abort():
                        logger.info("Aborted in-flight prompt on stop-automation")
                else:
                    logger.debug("Agent host ignoring %s", message.type)
        finally:
            for task in list(self._tasks):
                task.cancel()

    async def announce_ready(self) -> None:
        """Tell the controller this page can take prompts."""
        await asyncio.sleep(self._ready_delay_s)
        await self._link.send_to_controller(
            ControlMessage(type=MessageType.CONTENT_SCRIPT_READY.value, target_id=self._target_id)
        )
        logger.info("Agent ready on target %s", self._target_id)

    async def on_page_reload(self) -> None:
        """A reload discards the page context: abort, then re-announce."""
        if self._agent.abort():
            logger.info("Page reloaded during execution; in-flight prompt abandoned")
        await self.announce_ready()

    async def _execute(self, envelope: DispatchEnvelope) -> None:
        outcome = await self._agent.execute(envelope)
        if outcome is not None:
            await self._link.send_to_controller(outcome)
