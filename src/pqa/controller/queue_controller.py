"""Queue controller — owns an automation run and sequences prompts through the page agent.

One controller exists per target.  It is the only component that mutates
the ``AutomationRun`` and the only one that decides retry, skip, pause or
stop.  The agent is reached solely through an ``AgentTransport``; its
answers come back through :meth:`QueueController.handle_message`.

Cycle per queue position::

    DISPATCHING → AWAITING_OUTCOME → SUCCEEDED | RETRYING | SKIPPED | PAUSED
                → DISPATCHING (next) | COMPLETE

At most one timer is pending at any time (next-dispatch delay, retry delay,
or dispatch timeout), so pausing or stopping cancels exactly one callback.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol, Sequence

from pydantic import BaseModel

from pqa.controller.retry import DISPATCH_TIMEOUT_MESSAGE, is_retryable_error
from pqa.controller.scheduling import AsyncioScheduler, ScheduledTask, Scheduler
from pqa.exceptions import (
    AgentUnavailableError,
    AlreadyRunningError,
    EmptyQueueError,
    InvalidTargetError,
    NotPausedError,
    NotRunningError,
    TargetInvalidatedError,
)
from pqa.models.messages import ControlMessage, DispatchEnvelope, MessageType, OutcomeEnvelope
from pqa.models.results import PromptResult, RunSummary
from pqa.models.run import AutomationRun, PromptItem, now_ms
from pqa.models.states import QueueState, can_transition
from pqa.monitoring.event_bus import EventBus, EventType
from pqa.settings.config import AutomationSettings
from pqa.store.checkpoint_store import CheckpointStore, InMemoryCheckpointStore

logger = logging.getLogger(__name__)


class AutomationTarget(Protocol):
    """The page a run executes against."""

    target_id: str

    async def validate(self) -> bool:
        """True when the target is an automatable chat page right now."""
        ...


class AgentTransport(Protocol):
    """Outbound channel to the page agent."""

    async def send_to_agent(self, message: BaseModel) -> None:
        """Deliver a message; raises ``AgentUnavailableError`` when the agent is gone."""
        ...


class QueueController:
    """Run a prompt queue against one target.

    Args:
        target: The page the prompts are submitted to.
        transport: Channel used to reach the page agent.
        bus: Event bus for observer events (a private bus when omitted).
        store: Checkpoint store (in-memory when omitted).
        settings: Automation policy; defaults come from ``get_settings().automation``.
        scheduler: Timer implementation (``AsyncioScheduler`` when omitted).
    """

    def __init__(
        self,
        target: AutomationTarget,
        transport: AgentTransport,
        *,
        bus: EventBus | None = None,
        store: CheckpointStore | None = None,
        settings: AutomationSettings | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        if settings is None:
            from pqa.settings import get_settings

            settings = get_settings().automation
        self._target = target
        self._transport = transport
        self._bus = bus or EventBus(target_id=target.target_id)
        self._store = store or InMemoryCheckpointStore()
        self._policy = settings
        self._scheduler = scheduler or AsyncioScheduler()

        self._run: AutomationRun | None = None
        self._timer: ScheduledTask | None = None
        self._state = QueueState.IDLE
        self._start_lock = asyncio.Lock()
        self._finished = asyncio.Event()
        self._report: dict[str, Any] | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def target_id(self) -> str:
        return self._target.target_id

    @property
    def run(self) -> AutomationRun | None:
        """The current run, or the last one after it completed or stopped."""
        return self._run

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def is_active(self) -> bool:
        return self._run is not None and self._run.is_running

    @property
    def pending_timer(self) -> ScheduledTask | None:
        """The single outstanding timer, if any."""
        if self._timer is not None and self._timer.pending:
            return self._timer
        return None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self, prompts: Sequence[PromptItem | str]) -> AutomationRun:
        """Start a new run and dispatch its first prompt.

        Raises:
            AlreadyRunningError: A run is already active on this target.
            EmptyQueueError: ``prompts`` is empty.
            InvalidTargetError: The target failed validation.
        """
        async with self._start_lock:
            if self.is_active:
                raise AlreadyRunningError(self.target_id)
            items = [p if isinstance(p, PromptItem) else PromptItem(text=p) for p in prompts]
            if not items:
                raise EmptyQueueError()
            if not await self._target.validate():
                raise InvalidTargetError(self.target_id, "not an open page on an allowed chat host")

            run = AutomationRun(id=now_ms(), target_id=self.target_id, prompts=items)
            self._run = run
            self._report = None
            self._finished.clear()
            self._state = QueueState.IDLE
            logger.info("Starting automation %s on %s with %d prompts", run.id, self.target_id, run.total)

            self._save_checkpoint()
            await self._emit(EventType.STARTED, {"automation_id": run.id, "total": run.total})
            await self._dispatch()
            return run

    async def stop(self, reason: str = "stopped by user") -> list[PromptResult]:
        """Stop the run, keeping results gathered so far.

        Returns:
            The partial results (empty when nothing was running).
        """
        run = self._run
        if run is None or not run.is_running:
            logger.debug("stop() with no active run on %s", self.target_id)
            return []

        self._cancel_timer()
        run.is_running = False
        run.is_processing_prompt = False
        self._transition(QueueState.STOPPED)

        try:
            await self._transport.send_to_agent(
                ControlMessage(type=MessageType.STOP_AUTOMATION.value, target_id=self.target_id)
            )
        except AgentUnavailableError as exc:
            logger.info("Could not notify agent of stop: %s", exc)

        results = list(run.results)
        summary = self._summarize(run)
        self._persist_final(run, summary, status="stopped")
        logger.info("Automation %s stopped (%s) after %d/%d prompts", run.id, reason, len(results), run.total)

        report = {
            "automation_id": run.id,
            "reason": reason,
            "completed": len(results),
            "total": run.total,
            "results": [r.to_dict() for r in results],
            "summary": summary.to_dict(),
        }
        await self._finish(EventType.STOPPED, report)
        return results

    async def pause(self) -> None:
        """Pause after the in-flight prompt; no new prompt is dispatched until resumed.

        Pausing an already paused run does nothing.

        Raises:
            NotRunningError: No run is active.
        """
        run = self._run
        if run is None or not run.is_running:
            raise NotRunningError(self.target_id)
        if run.is_paused:
            logger.debug("Automation %s already paused", run.id)
            return

        run.is_paused = True
        self._cancel_timer()
        self._transition(QueueState.PAUSED)
        self._save_checkpoint()
        logger.info("Automation %s paused at prompt %d/%d", run.id, run.current_index + 1, run.total)
        await self._emit(
            EventType.PAUSED,
            {"automation_id": run.id, "current_index": run.current_index, "total": run.total},
        )

    async def resume(self) -> None:
        """Resume a paused run.

        Raises:
            NotPausedError: The run is not paused (or there is no run).
        """
        run = self._run
        if run is None or not run.is_running or not run.is_paused:
            raise NotPausedError(self.target_id)

        run.is_paused = False
        self._save_checkpoint()
        logger.info("Automation %s resumed at prompt %d/%d", run.id, run.current_index + 1, run.total)
        await self._emit(
            EventType.RESUMED,
            {"automation_id": run.id, "current_index": run.current_index, "total": run.total},
        )
        if run.is_processing_prompt:
            # The pause cancelled the dispatch timeout; re-arm it for the prompt still in flight.
            self._set_timer(self._policy.dispatch_timeout_ms, self._on_timeout_timer, "dispatch-timeout")
            self._transition(QueueState.AWAITING_OUTCOME)
        else:
            await self._dispatch()

    async def restore(self) -> AutomationRun | None:
        """Continue a run from the stored checkpoint for this target.

        Returns:
            The restored run, or ``None`` when there was nothing to restore.

        Raises:
            AlreadyRunningError: A run is already active on this target.
            InvalidTargetError: The target failed validation.
        """
        async with self._start_lock:
            if self.is_active:
                raise AlreadyRunningError(self.target_id)
            data = self._store.load_checkpoint(self.target_id)
            if not data:
                return None
            run = AutomationRun.from_dict(data)
            if not run.is_running or run.is_exhausted:
                logger.info("Discarding finished checkpoint %s for %s", run.id, self.target_id)
                self._store.clear_checkpoint(self.target_id)
                return None
            if not await self._target.validate():
                raise InvalidTargetError(self.target_id, "not an open page on an allowed chat host")

            self._run = run
            self._report = None
            self._finished.clear()
            self._state = QueueState.IDLE
            logger.info(
                "Restored automation %s on %s at prompt %d/%d", run.id, self.target_id, run.current_index + 1, run.total
            )
            await self._emit(
                EventType.STARTED,
                {"automation_id": run.id, "total": run.total, "current_index": run.current_index, "restored": True},
            )
            if run.is_paused:
                self._transition(QueueState.PAUSED)
                await self._emit(
                    EventType.PAUSED,
                    {"automation_id": run.id, "current_index": run.current_index, "total": run.total},
                )
            else:
                await self._dispatch()
            return run

    async def wait_finished(self, timeout: float | None = None) -> dict[str, Any]:
        """Wait until the run completes or stops and return its report."""
        if timeout is None:
            await self._finished.wait()
        else:
            await asyncio.wait_for(self._finished.wait(), timeout)
        return self._report or {}

    def status(self) -> dict[str, Any]:
        """Snapshot of the run for status queries."""
        run = self._run
        if run is None:
            return {"target_id": self.target_id, "state": self._state.value, "is_running": False}
        return {
            "target_id": self.target_id,
            "state": self._state.value,
            "automation_id": run.id,
            "is_running": run.is_running,
            "is_paused": run.is_paused,
            "is_processing_prompt": run.is_processing_prompt,
            "current_index": run.current_index,
            "total": run.total,
            "completed": len(run.completed_indices),
            "retry_attempts": {str(k): v for k, v in run.retry_attempts.items()},
        }

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def handle_message(self, message: BaseModel) -> None:
        """Route a message received from the agent."""
        if isinstance(message, OutcomeEnvelope):
            await self.on_outcome(message)
        elif isinstance(message, ControlMessage) and message.type == MessageType.CONTENT_SCRIPT_READY:
            await self.on_agent_ready()
        else:
            logger.debug("Controller ignoring %s", getattr(message, "type", type(message).__name__))

    async def on_agent_ready(self) -> None:
        """The agent (re)announced itself: dispatch if the run is idle between prompts."""
        run = self._run
        if run is None or not run.is_running:
            return
        if not self._policy.ready_resume:
            return
        if run.is_paused or run.is_processing_prompt:
            logger.debug("Agent ready on %s; run busy or paused, nothing to do", self.target_id)
            return
        logger.info("Agent ready on %s; dispatching prompt %d", self.target_id, run.current_index + 1)
        await self._dispatch()

    async def on_target_invalidated(self, reason: str) -> None:
        """The page closed or left the chat host: report the error and stop."""
        run = self._run
        if run is None or not run.is_running:
            return
        logger.warning("Target %s invalidated during automation %s: %s", self.target_id, run.id, reason)
        await self._emit(
            EventType.ERROR,
            {"automation_id": run.id, "error": reason, "prompt_index": run.current_index, "fatal": True},
        )
        await self.stop(reason=reason)

    async def on_dispatch_timeout(self) -> None:
        """Turn a dispatch that never got an answer into a failed outcome."""
        run = self._run
        if run is None or not run.is_running or not run.is_processing_prompt:
            return
        logger.warning(
            "Prompt %d of automation %s exceeded %dms", run.current_index, run.id, self._policy.dispatch_timeout_ms
        )
        await self.on_outcome(
            OutcomeEnvelope.failed(
                run.current_index,
                DISPATCH_TIMEOUT_MESSAGE,
                error_kind="dispatch_timeout",
                start_time=run.attempt_started_ms,
                automation_id=run.id,
            )
        )

    async def on_outcome(self, outcome: OutcomeEnvelope) -> None:
        """Apply an agent outcome to the run."""
        run = self._run
        if run is None or not run.is_running:
            logger.debug("Ignoring outcome for index %d: no active run", outcome.index)
            return
        if outcome.automation_id is not None and outcome.automation_id != run.id:
            logger.info("Ignoring outcome from automation %s (current %s)", outcome.automation_id, run.id)
            return
        if not 0 <= outcome.index < run.total:
            logger.warning("Ignoring outcome for out-of-range index %d", outcome.index)
            return
        if outcome.index in run.completed_indices:
            logger.info("Ignoring duplicate outcome for completed index %d", outcome.index)
            return

        if outcome.success:
            await self._handle_success(run, outcome)
        else:
            await self._handle_failure(run, outcome)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _handle_success(self, run: AutomationRun, outcome: OutcomeEnvelope) -> None:
        index = outcome.index
        self._record(run, outcome, success=True)
        run.retry_attempts.pop(index, None)
        if index != run.current_index:
            # The in-flight prompt and its timer are untouched; dispatch skips this index later.
            logger.info("Recorded out-of-order success for index %d (current %d)", index, run.current_index)
            self._save_checkpoint()
            return

        self._cancel_timer()
        run.current_index += 1
        run.is_processing_prompt = False
        self._transition(QueueState.SUCCEEDED)
        self._save_checkpoint()

        prompt = run.prompts[index]
        logger.info("Prompt %d/%d completed (%d chars)", index + 1, run.total, len(outcome.response_text))
        await self._emit(
            EventType.PROGRESS,
            {
                "automation_id": run.id,
                "current": index + 1,
                "total": run.total,
                "prompt": prompt.text,
                "status": "completed",
                "response_length": len(outcome.response_text),
            },
        )

        if prompt.pause_after and self._policy.honor_pause_after and not run.is_exhausted and not run.is_paused:
            logger.info("Prompt %d requests a pause", index + 1)
            await self.pause()
            return
        await self._schedule_next(self._policy.inter_prompt_delay_ms)

    async def _handle_failure(self, run: AutomationRun, outcome: OutcomeEnvelope) -> None:
        index = outcome.index
        if index != run.current_index:
            logger.info("Ignoring stale failure for index %d (current %d)", index, run.current_index)
            return

        self._cancel_timer()
        run.is_processing_prompt = False
        error = outcome.error_message or "Unknown error"
        prompt = run.prompts[index]

        if outcome.error_kind == TargetInvalidatedError.kind:
            await self.on_target_invalidated(error)
            return

        attempts = run.retry_attempts.get(index, 0)
        if self._policy.enable_retries and is_retryable_error(error) and attempts < self._policy.max_retries:
            run.retry_attempts[index] = attempts + 1
            self._transition(QueueState.RETRYING)
            self._save_checkpoint()
            logger.info(
                "Prompt %d failed (%s); retry %d/%d in %dms",
                index + 1,
                error,
                attempts + 1,
                self._policy.max_retries,
                self._policy.retry_delay_ms,
            )
            await self._emit(
                EventType.PROGRESS,
                {
                    "automation_id": run.id,
                    "current": index + 1,
                    "total": run.total,
                    "prompt": prompt.text,
                    "status": "retrying",
                    "retry_count": attempts + 1,
                    "max_retries": self._policy.max_retries,
                    "error": error,
                },
            )
            if not run.is_paused:
                self._set_timer(self._policy.retry_delay_ms, self._on_dispatch_timer, "retry")
            return

        if self._policy.pause_on_error:
            # Leave the index unconsumed so resume re-runs this prompt with a fresh retry budget.
            run.retry_attempts.pop(index, None)
            was_paused = run.is_paused
            run.is_paused = True
            self._transition(QueueState.PAUSED)
            self._save_checkpoint()
            logger.warning("Prompt %d failed (%s); pausing automation %s", index + 1, error, run.id)
            await self._emit(
                EventType.ERROR,
                {
                    "automation_id": run.id,
                    "error": error,
                    "prompt_index": index,
                    "retry_count": attempts,
                    "paused": True,
                },
            )
            if not was_paused:
                await self._emit(
                    EventType.PAUSED,
                    {"automation_id": run.id, "current_index": run.current_index, "total": run.total, "reason": "error"},
                )
            return

        self._record(run, outcome, success=False, error=error)
        run.current_index += 1
        run.retry_attempts.pop(index, None)
        self._transition(QueueState.SKIPPED)
        self._save_checkpoint()
        logger.warning("Prompt %d failed after %d retries: %s", index + 1, attempts, error)
        await self._emit(
            EventType.PROGRESS,
            {
                "automation_id": run.id,
                "current": index + 1,
                "total": run.total,
                "prompt": prompt.text,
                "status": "failed",
                "retry_count": attempts,
                "error": error,
            },
        )
        await self._schedule_next(self._policy.inter_prompt_delay_ms)

    async def _dispatch(self) -> None:
        """Send the prompt at ``current_index`` to the agent."""
        run = self._run
        if run is None or not run.is_running or run.is_paused:
            return
        if run.is_processing_prompt:
            logger.debug("Prompt %d already in flight; not dispatching", run.current_index)
            return
        while run.current_index in run.completed_indices:
            logger.info("Prompt %d already has a result; skipping", run.current_index + 1)
            run.current_index += 1
        if run.is_exhausted:
            await self._complete()
            return

        index = run.current_index
        prompt = run.prompts[index]
        run.is_processing_prompt = True
        run.attempt_started_ms = now_ms()
        self._transition(QueueState.DISPATCHING)
        self._set_timer(self._policy.dispatch_timeout_ms, self._on_timeout_timer, "dispatch-timeout")

        await self._emit(
            EventType.PROGRESS,
            {
                "automation_id": run.id,
                "current": index + 1,
                "total": run.total,
                "prompt": prompt.text,
                "status": "processing",
            },
        )
        envelope = DispatchEnvelope(
            prompt_text=prompt.text,
            index=index,
            per_attempt_timeout_ms=self._policy.response_timeout_ms,
            automation_id=run.id,
        )
        try:
            await self._transport.send_to_agent(envelope)
        except AgentUnavailableError as exc:
            logger.warning("Dispatch of prompt %d failed: %s", index + 1, exc)
            await self.on_outcome(
                OutcomeEnvelope.failed(index, str(exc), start_time=run.attempt_started_ms, automation_id=run.id)
            )
            return
        if run.is_processing_prompt and run.current_index == index:
            self._transition(QueueState.AWAITING_OUTCOME)

    async def _schedule_next(self, delay_ms: int) -> None:
        run = self._run
        if run is None or not run.is_running:
            return
        if run.is_exhausted:
            await self._complete()
            return
        if run.is_paused:
            self._transition(QueueState.PAUSED)
            return
        self._set_timer(delay_ms, self._on_dispatch_timer, "next-prompt")

    async def _complete(self) -> None:
        run = self._run
        if run is None or not run.is_running:
            return
        self._cancel_timer()
        run.is_running = False
        run.is_processing_prompt = False
        self._transition(QueueState.COMPLETE)

        summary = self._summarize(run)
        self._persist_final(run, summary, status="complete")
        logger.info(
            "Automation %s complete: %d/%d succeeded, %d retries, %.1fs",
            run.id,
            summary.successful,
            summary.total,
            summary.total_retries,
            summary.duration_ms / 1000,
        )
        report = {
            "automation_id": run.id,
            "results": [r.to_dict() for r in run.results],
            "summary": summary.to_dict(),
        }
        await self._finish(EventType.COMPLETE, report)

    async def _finish(self, event_type: EventType, report: dict[str, Any]) -> None:
        self._report = report
        await self._emit(event_type, report)
        self._finished.set()

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _set_timer(self, delay_ms: int, callback: Callable[[], Awaitable[None]], name: str) -> None:
        self._cancel_timer()
        self._timer = self._scheduler.schedule(delay_ms / 1000, callback, name)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            if self._timer.cancel():
                logger.debug("Cancelled %s timer", self._timer.name)
            self._timer = None

    async def _on_dispatch_timer(self) -> None:
        await self._dispatch()

    async def _on_timeout_timer(self) -> None:
        await self.on_dispatch_timeout()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, run: AutomationRun, outcome: OutcomeEnvelope, *, success: bool, error: str = "") -> None:
        started = outcome.start_time or run.attempt_started_ms
        run.results.append(
            PromptResult(
                index=outcome.index,
                prompt_text=run.prompts[outcome.index].text,
                response_text=outcome.response_text if success else "",
                success=success,
                error=error,
                retry_count=run.retry_attempts.get(outcome.index, 0),
                automation_id=run.id,
                started_at_ms=started,
                processing_time_ms=max(0, outcome.timestamp - started) if started else 0,
            )
        )
        run.completed_indices.add(outcome.index)

    def _summarize(self, run: AutomationRun) -> RunSummary:
        return RunSummary.from_results(run.results, duration_ms=max(0, now_ms() - run.started_at_ms))

    def _transition(self, new_state: QueueState) -> None:
        if new_state != self._state and not can_transition(self._state, new_state):
            logger.debug("Non-standard transition: %s → %s", self._state.value, new_state.value)
        self._state = new_state

    def _save_checkpoint(self) -> None:
        run = self._run
        if run is None:
            return
        try:
            self._store.save_checkpoint(self.target_id, run.to_dict())
        except Exception as exc:
            logger.warning("Checkpoint save failed for %s: %s", self.target_id, exc)

    def _persist_final(self, run: AutomationRun, summary: RunSummary, *, status: str) -> None:
        try:
            self._store.save_final_results(run.id, self.target_id, list(run.results), summary, status=status)
            self._store.clear_checkpoint(self.target_id)
        except Exception as exc:
            logger.warning("Persisting final results for %s failed: %s", run.id, exc)

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._bus.emit(event_type, data)
