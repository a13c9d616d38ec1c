"""PQA test configuration — shared fixtures for unit tests."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import pytest
from pydantic import BaseModel

from pqa.exceptions import AgentUnavailableError
from pqa.models.messages import DispatchEnvelope


# ---------------------------------------------------------------------------
# Async backend
# ---------------------------------------------------------------------------


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Clear the settings LRU cache between tests."""
    from pqa.settings.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def automation_settings():
    """Automation policy with short delays and a small retry budget."""
    from pqa.settings.config import AutomationSettings

    return AutomationSettings(
        inter_prompt_delay_ms=100,
        retry_delay_ms=200,
        max_retries=2,
        enable_retries=True,
        pause_on_error=False,
        dispatch_timeout_ms=5_000,
        response_timeout_ms=4_000,
        honor_pause_after=True,
        ready_resume=True,
    )


# ---------------------------------------------------------------------------
# Controller collaborators
# ---------------------------------------------------------------------------


class FakeTarget:
    """Automation target whose validity is set by the test."""

    def __init__(self, target_id: str = "chat-1", valid: bool = True) -> None:
        self.target_id = target_id
        self.valid = valid

    async def validate(self) -> bool:
        return self.valid


class RecordingTransport:
    """Transport that records everything sent to the agent."""

    def __init__(self) -> None:
        self.sent: list[BaseModel] = []
        self.available = True

    async def send_to_agent(self, message: BaseModel) -> None:
        if not self.available:
            raise AgentUnavailableError()
        self.sent.append(message)

    @property
    def dispatches(self) -> list[DispatchEnvelope]:
        return [m for m in self.sent if isinstance(m, DispatchEnvelope)]


@pytest.fixture()
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def memory_store():
    from pqa.store.checkpoint_store import InMemoryCheckpointStore

    return InMemoryCheckpointStore()


@pytest.fixture()
def event_sink():
    from pqa.monitoring.event_bus import InMemorySink

    return InMemorySink()


@pytest.fixture()
def event_bus(event_sink):
    from pqa.monitoring.event_bus import EventBus

    bus = EventBus(target_id="chat-1")
    bus.add_sink(event_sink)
    return bus


@pytest.fixture()
def scheduler():
    from pqa.controller.scheduling import ManualScheduler

    return ManualScheduler()


@pytest.fixture()
def make_controller(target, transport, event_bus, memory_store, automation_settings, scheduler):
    """Factory for a ``QueueController`` wired to the fakes above.

    Keyword arguments override automation settings fields.
    """
    from pqa.controller.queue_controller import QueueController

    def _make(**overrides: Any) -> QueueController:
        settings = automation_settings.model_copy(update=overrides) if overrides else automation_settings
        return QueueController(
            target,
            transport,
            bus=event_bus,
            store=memory_store,
            settings=settings,
            scheduler=scheduler,
        )

    return _make


# ---------------------------------------------------------------------------
# Page driver
# ---------------------------------------------------------------------------


class FakePageDriver:
    """In-memory ``PageDriver``: elements are registered per selector.

    Clicking the submit control clears the input and runs ``on_submit``,
    which tests use to append the new response container.
    """

    def __init__(self) -> None:
        from pqa.browser.locators import ElementCandidate

        self._candidate_cls = ElementCandidate
        self.elements: dict[str, list[Any]] = {}
        self.loading_counts: list[int] = []
        self.loading_checks = 0
        self.gate: asyncio.Event | None = None
        self.input_value = ""
        self.insert_ok = True
        self.click_effective = True
        self.pointer_effective = True
        self.clicks: list[str] = []
        self.pointer_clicks: list[str] = []
        self.on_submit: Callable[[], None] | None = None
        self.samples: dict[str, list[Any]] = {}
        self.content: dict[str, tuple[str, str]] = {}
        self.subscribed = 0
        self.unsubscribed = 0
        self._next_ref = 0

    def add(self, selector: str, **fields: Any):
        """Register an element under ``selector`` and return it."""
        self._next_ref += 1
        fields.setdefault("ref", f"el-{self._next_ref}")
        fields.setdefault("dom_order", self._next_ref)
        candidate = self._candidate_cls(**fields)
        self.elements.setdefault(selector, []).append(candidate)
        return candidate

    def add_response(self, selector: str, text: str, *, html: str | None = None, lengths: list[int] | None = None, **fields: Any):
        """Register a response container with scripted length samples."""
        from pqa.browser.page_agent import ResponseSample

        candidate = self.add(selector, tag="div", text=text, text_length=len(text), **fields)
        self.samples[candidate.ref] = [ResponseSample(n) for n in (lengths or [len(text)])]
        self.content[candidate.ref] = (html if html is not None else text, text)
        return candidate

    async def query(self, selector: str) -> list[Any]:
        return list(self.elements.get(selector, []))

    async def count_loading_indicators(self, selectors: tuple[str, ...]) -> int:
        self.loading_checks += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.loading_counts.pop(0) if self.loading_counts else 0

    async def focus(self, ref: str) -> bool:
        return True

    async def insert_text(self, ref: str, text: str) -> bool:
        self.input_value = text
        return self.insert_ok

    async def read_text(self, ref: str) -> str | None:
        return self.input_value

    async def scroll_into_view(self, ref: str) -> None:
        return None

    async def click(self, ref: str) -> bool:
        self.clicks.append(ref)
        if self.click_effective:
            self._submitted()
        return True

    async def pointer_click(self, ref: str) -> bool:
        self.pointer_clicks.append(ref)
        if self.pointer_effective:
            self._submitted()
        return True

    def _submitted(self) -> None:
        self.input_value = ""
        if self.on_submit is not None:
            self.on_submit()

    async def measure(self, ref: str):
        seq = self.samples.get(ref)
        if not seq:
            return None
        return seq.pop(0) if len(seq) > 1 else seq[0]

    async def extract(self, ref: str) -> tuple[str, str] | None:
        return self.content.get(ref)

    async def subscribe_mutations(self, callback: Callable[[], None]) -> Callable[[], Awaitable[None]]:
        self.subscribed += 1

        async def unsubscribe() -> None:
            self.unsubscribed += 1

        return unsubscribe


@pytest.fixture()
def page_driver() -> FakePageDriver:
    return FakePageDriver()


@pytest.fixture()
def agent_settings():
    """Agent timings with every delay removed."""
    from pqa.settings.config import AgentSettings

    return AgentSettings(
        locate_timeout_ms=100,
        locate_poll_ms=10,
        settle_max_attempts=3,
        settle_poll_ms=1,
        settle_delay_ms=0,
        focus_delay_ms=0,
        submit_delay_ms=0,
        scroll_settle_ms=0,
        click_effect_ms=0,
        click_timeout_ms=100,
        verify_submit=True,
        ready_delay_ms=0,
    )


@pytest.fixture()
def fast_policy():
    """Stability policy that settles after two unchanged samples 10ms apart."""
    from pqa.browser.completion import StabilityPolicy

    return StabilityPolicy(
        stable_samples=2,
        long_response_chars=1_000,
        long_stable_samples=3,
        min_elapsed_s=0.0,
        long_min_elapsed_s=0.0,
        min_text_length=1,
        poll_interval_s=0.01,
    )


@pytest.fixture()
def chat_locators():
    """Locator set with one simple rule per kind."""
    from pqa.browser.locators import LocatorStrategySet

    return LocatorStrategySet.from_mapping(
        {
            "input": ["textarea"],
            "submit": ["button.send"],
            "response": [".reply"],
        }
    )
