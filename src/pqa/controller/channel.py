"""Message link between the queue controller and the page agent host.

The two sides share nothing but this link.  Envelopes are serialised to JSON
on send and re-validated on receive, so neither side can hold on to the
other's objects.  Closing the link ends both receive loops; sending to the
agent afterwards raises ``AgentUnavailableError``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Union

from pydantic import BaseModel, ValidationError

from pqa.exceptions import AgentUnavailableError
from pqa.models.messages import ControlMessage, DispatchEnvelope, OutcomeEnvelope, StartMessage, parse_message

logger = logging.getLogger(__name__)

Envelope = Union[DispatchEnvelope, OutcomeEnvelope, ControlMessage, StartMessage]

_CLOSED = None


class AgentLink:
    """A pair of asyncio queues carrying JSON-encoded envelopes."""

    def __init__(self) -> None:
        self._to_agent: asyncio.Queue[str | None] = asyncio.Queue()
        self._to_controller: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_to_agent(self, message: BaseModel) -> None:
        """Deliver a message to the agent host.

        Raises:
            AgentUnavailableError: If the link has been closed.
        """
        if self._closed:
            raise AgentUnavailableError()
        await self._to_agent.put(message.model_dump_json())

    async def send_to_controller(self, message: BaseModel) -> None:
        """Deliver a message to the controller; dropped if the link is closed."""
        if self._closed:
            logger.debug("Dropping %s: link closed", getattr(message, "type", type(message).__name__))
            return
        await self._to_controller.put(message.model_dump_json())

    def agent_messages(self) -> AsyncIterator[Envelope]:
        """Messages addressed to the agent, until the link closes."""
        return self._drain(self._to_agent)

    def controller_messages(self) -> AsyncIterator[Envelope]:
        """Messages addressed to the controller, until the link closes."""
        return self._drain(self._to_controller)

    def close(self) -> None:
        """Close the link and wake both receivers."""
        if self._closed:
            return
        self._closed = True
        self._to_agent.put_nowait(_CLOSED)
        self._to_controller.put_nowait(_CLOSED)

    async def _drain(self, queue: asyncio.Queue[str | None]) -> AsyncIterator[Envelope]:
        while True:
            raw = await queue.get()
            if raw is _CLOSED:
                return
            try:
                yield parse_message(raw)
            except ValidationError as exc:
                logger.warning("Discarding malformed message: %s", exc)
