"""Unit tests for the queue controller state machine."""

from __future__ import annotations

import pytest

from pqa.controller.retry import DISPATCH_TIMEOUT_MESSAGE
from pqa.exceptions import (
    AlreadyRunningError,
    EmptyQueueError,
    InvalidTargetError,
    NotPausedError,
    NotRunningError,
)
from pqa.models.messages import ControlMessage, OutcomeEnvelope
from pqa.models.run import PromptItem, now_ms
from pqa.models.states import QueueState
from pqa.monitoring.event_bus import EventType


async def _succeed(controller, index: int, text: str = "a response", automation_id: int | None = None) -> None:
    run_id = automation_id if automation_id is not None else controller.run.id
    await controller.on_outcome(
        OutcomeEnvelope.completed(index, text, start_time=now_ms(), automation_id=run_id)
    )


async def _fail(controller, index: int, error: str, *, error_kind: str = "") -> None:
    await controller.on_outcome(
        OutcomeEnvelope.failed(
            index, error, error_kind=error_kind, start_time=now_ms(), automation_id=controller.run.id
        )
    )


# ===================================================================
# Starting
# ===================================================================


class TestStart:
    """Tests for ``start`` preconditions and the first dispatch."""

    @pytest.mark.anyio
    async def test_start_dispatches_first_prompt(self, make_controller, transport, event_sink, scheduler) -> None:
        """start() emits automation-started and sends prompt 0 under a dispatch timeout."""
        controller = make_controller()
        run = await controller.start(["one", "two"])

        assert run.total == 2
        assert len(transport.dispatches) == 1
        envelope = transport.dispatches[0]
        assert envelope.index == 0
        assert envelope.prompt_text == "one"
        assert envelope.automation_id == run.id
        assert envelope.per_attempt_timeout_ms == 4_000
        assert run.is_processing_prompt
        assert controller.state == QueueState.AWAITING_OUTCOME

        started = event_sink.of_type(EventType.STARTED)
        assert len(started) == 1
        assert started[0].data["total"] == 2
        assert [t.name for t in scheduler.pending] == ["dispatch-timeout"]

    @pytest.mark.anyio
    async def test_start_rejects_empty_queue(self, make_controller, transport) -> None:
        controller = make_controller()
        with pytest.raises(EmptyQueueError):
            await controller.start([])
        assert transport.sent == []
        assert controller.run is None

    @pytest.mark.anyio
    async def test_start_rejects_invalid_target(self, make_controller, target, transport) -> None:
        target.valid = False
        controller = make_controller()
        with pytest.raises(InvalidTargetError):
            await controller.start(["hello"])
        assert transport.sent == []

    @pytest.mark.anyio
    async def test_start_while_running_raises(self, make_controller) -> None:
        controller = make_controller()
        await controller.start(["one"])
        with pytest.raises(AlreadyRunningError):
            await controller.start(["two"])

    @pytest.mark.anyio
    async def test_start_writes_checkpoint(self, make_controller, memory_store) -> None:
        controller = make_controller()
        run = await controller.start(["one", "two"])
        checkpoint = memory_store.load_checkpoint("chat-1")
        assert checkpoint is not None
        assert checkpoint["id"] == run.id
        assert checkpoint["current_index"] == 0


# ===================================================================
# Scenarios
# ===================================================================


class TestHappyPath:
    """Every prompt succeeds: the run completes with one result per prompt."""

    @pytest.mark.anyio
    async def test_three_prompts_complete(self, make_controller, transport, event_sink, scheduler, memory_store) -> None:
        controller = make_controller()
        run = await controller.start(["p1", "p2", "p3"])

        for index in range(3):
            assert transport.dispatches[-1].index == index
            await _succeed(controller, index, text=f"answer {index}")
            if index < 2:
                assert [t.name for t in scheduler.pending] == ["next-prompt"]
                assert scheduler.pending[0].delay_s == pytest.approx(0.1)
                await scheduler.run_next()

        assert not controller.is_active
        assert controller.state == QueueState.COMPLETE
        assert scheduler.pending == []
        assert [r.index for r in run.results] == [0, 1, 2]
        assert all(r.success for r in run.results)
        assert run.results[2].response_text == "answer 2"

        complete = event_sink.of_type(EventType.COMPLETE)
        assert len(complete) == 1
        assert complete[0].data["summary"]["successful"] == 3
        assert complete[0].data["summary"]["success_rate"] == 100.0

        stored = memory_store.load_final_results(run.id)
        assert stored is not None
        assert stored["status"] == "complete"
        assert len(stored["results"]) == 3
        assert memory_store.load_checkpoint("chat-1") is None

    @pytest.mark.anyio
    async def test_progress_events_report_positions(self, make_controller, event_sink, scheduler) -> None:
        controller = make_controller()
        await controller.start(["p1", "p2"])
        await _succeed(controller, 0)

        progress = event_sink.of_type(EventType.PROGRESS)
        assert [(e.data["current"], e.data["status"]) for e in progress] == [(1, "processing"), (1, "completed")]
        assert progress[1].data["response_length"] == len("a response")

    @pytest.mark.anyio
    async def test_wait_finished_returns_report(self, make_controller, scheduler) -> None:
        controller = make_controller()
        run = await controller.start(["only"])
        await _succeed(controller, 0)

        report = await controller.wait_finished(timeout=1)
        assert report["automation_id"] == run.id
        assert len(report["results"]) == 1


class TestRetryAndPauseOnError:
    """Retryable failures are retried, then the run pauses on the same prompt."""

    @pytest.mark.anyio
    async def test_timeouts_then_success_mid_queue(self, make_controller, transport, event_sink, scheduler) -> None:
        """Prompt 2 of 3 times out twice, then succeeds on the third attempt."""
        controller = make_controller(max_retries=3)
        run = await controller.start(["p1", "p2", "p3"])

        await _succeed(controller, 0, "r1")
        await scheduler.run_next()
        await _fail(controller, 1, "timeout waiting for response")
        await scheduler.run_next()
        await _fail(controller, 1, "timeout waiting for response")
        await scheduler.run_next()
        await _succeed(controller, 1, "r2")
        await scheduler.run_next()
        await _succeed(controller, 2, "r3")

        assert [d.index for d in transport.dispatches] == [0, 1, 1, 1, 2]
        assert len(run.results) == 3
        assert run.results[1].success
        assert run.results[1].retry_count == 2
        assert run.current_index == 3
        assert controller.state == QueueState.COMPLETE
        assert len(event_sink.of_type(EventType.COMPLETE)) == 1

    @pytest.mark.anyio
    async def test_non_retryable_failure_pauses_when_pause_on_error(
        self, make_controller, transport, event_sink, scheduler
    ) -> None:
        controller = make_controller(pause_on_error=True)
        run = await controller.start(["p1", "p2", "p3"])

        await _fail(controller, 0, "permission denied")

        assert len(transport.dispatches) == 1
        assert run.is_paused
        assert run.current_index == 0
        assert run.results == []
        assert scheduler.pending == []
        assert controller.state == QueueState.PAUSED

        errors = event_sink.of_type(EventType.ERROR)
        assert len(errors) == 1
        assert errors[0].data["error"] == "permission denied"
        assert errors[0].data["paused"] is True
        assert errors[0].data["retry_count"] == 0
        paused = event_sink.of_type(EventType.PAUSED)
        assert paused[-1].data["reason"] == "error"

        await controller.resume()
        assert transport.dispatches[-1].index == 0

    @pytest.mark.anyio
    async def test_exhausted_retries_pause_without_consuming_prompt(
        self, make_controller, transport, event_sink, scheduler
    ) -> None:
        controller = make_controller(pause_on_error=True)
        run = await controller.start(["flaky", "next"])

        await _fail(controller, 0, "network error")
        assert [t.name for t in scheduler.pending] == ["retry"]
        assert scheduler.pending[0].delay_s == pytest.approx(0.2)
        await scheduler.run_next()
        await _fail(controller, 0, "network error")
        await scheduler.run_next()
        await _fail(controller, 0, "network error")

        assert len(transport.dispatches) == 3
        assert all(d.index == 0 for d in transport.dispatches)
        assert run.is_paused
        assert run.current_index == 0
        assert run.results == []
        assert 0 not in run.retry_attempts
        assert scheduler.pending == []
        assert controller.state == QueueState.PAUSED

        errors = event_sink.of_type(EventType.ERROR)
        assert len(errors) == 1
        assert errors[0].data["paused"] is True
        assert errors[0].data["prompt_index"] == 0
        assert len(event_sink.of_type(EventType.PAUSED)) == 1

        retrying = [e for e in event_sink.of_type(EventType.PROGRESS) if e.data["status"] == "retrying"]
        assert [e.data["retry_count"] for e in retrying] == [1, 2]

    @pytest.mark.anyio
    async def test_resume_reruns_paused_prompt_with_fresh_budget(self, make_controller, transport, scheduler) -> None:
        controller = make_controller(pause_on_error=True, max_retries=0)
        run = await controller.start(["flaky", "next"])
        await _fail(controller, 0, "rate limit exceeded")
        assert run.is_paused

        await controller.resume()
        assert not run.is_paused
        assert transport.dispatches[-1].index == 0
        assert len(transport.dispatches) == 2

        await _succeed(controller, 0)
        assert run.current_index == 1
        assert run.results[0].success


class TestSkipOnError:
    """Failures without pause_on_error are recorded and skipped."""

    @pytest.mark.anyio
    async def test_non_retryable_failure_skips(self, make_controller, transport, event_sink, scheduler) -> None:
        controller = make_controller()
        run = await controller.start(["bad", "good"])

        await _fail(controller, 0, "Something unexpected happened")

        assert len(transport.dispatches) == 1
        assert run.current_index == 1
        assert run.results[0].success is False
        assert run.results[0].error == "Something unexpected happened"
        assert run.results[0].retry_count == 0
        assert controller.state == QueueState.SKIPPED
        assert [t.name for t in scheduler.pending] == ["next-prompt"]

        failed = [e for e in event_sink.of_type(EventType.PROGRESS) if e.data["status"] == "failed"]
        assert len(failed) == 1

        await scheduler.run_next()
        assert transport.dispatches[-1].index == 1

    @pytest.mark.anyio
    async def test_retry_bound(self, make_controller, transport, scheduler) -> None:
        """A prompt is dispatched at most 1 + max_retries times."""
        controller = make_controller(max_retries=2)
        run = await controller.start(["always times out", "after"])

        for _ in range(3):
            await _fail(controller, 0, "Element not found: input")
            if run.current_index == 0:
                await scheduler.run_next()

        assert len([d for d in transport.dispatches if d.index == 0]) == 3
        assert run.current_index == 1
        assert run.results[0].retry_count == 2
        assert run.results[0].success is False

    @pytest.mark.anyio
    async def test_retries_disabled(self, make_controller, transport) -> None:
        controller = make_controller(enable_retries=False)
        run = await controller.start(["one", "two"])
        await _fail(controller, 0, "timeout waiting")
        assert run.current_index == 1
        assert len(transport.dispatches) == 1

    @pytest.mark.anyio
    async def test_last_prompt_failure_completes_run(self, make_controller, event_sink) -> None:
        controller = make_controller()
        run = await controller.start(["only"])
        await _fail(controller, 0, "bad request")
        assert not controller.is_active
        summary = event_sink.of_type(EventType.COMPLETE)[0].data["summary"]
        assert summary["failed"] == 1
        assert summary["success_rate"] == 0.0
        assert run.results[0].success is False


class TestStop:
    """Stopping keeps partial results and cancels the pending timer."""

    @pytest.mark.anyio
    async def test_stop_mid_run(self, make_controller, transport, event_sink, scheduler, memory_store) -> None:
        controller = make_controller()
        run = await controller.start(["p1", "p2", "p3"])
        await _succeed(controller, 0)
        await scheduler.run_next()
        assert transport.dispatches[-1].index == 1

        results = await controller.stop()

        assert [r.index for r in results] == [0]
        assert not controller.is_active
        assert controller.state == QueueState.STOPPED
        assert scheduler.pending == []
        assert isinstance(transport.sent[-1], ControlMessage)
        assert transport.sent[-1].type == "stop-automation"

        stopped = event_sink.of_type(EventType.STOPPED)
        assert len(stopped) == 1
        assert stopped[0].data["completed"] == 1
        assert stopped[0].data["total"] == 3
        assert memory_store.load_final_results(run.id)["status"] == "stopped"
        assert memory_store.load_checkpoint("chat-1") is None

        # A late outcome for the aborted prompt changes nothing.
        await _succeed(controller, 1)
        assert len(run.results) == 1

    @pytest.mark.anyio
    async def test_stop_without_run_is_noop(self, make_controller, event_sink) -> None:
        controller = make_controller()
        assert await controller.stop() == []
        assert event_sink.of_type(EventType.STOPPED) == []

    @pytest.mark.anyio
    async def test_stop_when_agent_unreachable(self, make_controller, transport) -> None:
        controller = make_controller()
        await controller.start(["p1"])
        transport.available = False
        assert await controller.stop() == []
        assert not controller.is_active


# ===================================================================
# Pause / resume
# ===================================================================


class TestPauseResume:
    """Tests for pause/resume semantics."""

    @pytest.mark.anyio
    async def test_pause_is_idempotent(self, make_controller, event_sink) -> None:
        controller = make_controller()
        await controller.start(["p1", "p2"])
        await controller.pause()
        await controller.pause()
        assert len(event_sink.of_type(EventType.PAUSED)) == 1

    @pytest.mark.anyio
    async def test_pause_without_run_raises(self, make_controller) -> None:
        controller = make_controller()
        with pytest.raises(NotRunningError):
            await controller.pause()

    @pytest.mark.anyio
    async def test_resume_when_not_paused_raises(self, make_controller) -> None:
        controller = make_controller()
        await controller.start(["p1"])
        with pytest.raises(NotPausedError):
            await controller.resume()

    @pytest.mark.anyio
    async def test_pause_between_prompts_blocks_dispatch(self, make_controller, transport, scheduler) -> None:
        controller = make_controller()
        run = await controller.start(["p1", "p2"])
        await _succeed(controller, 0)
        await controller.pause()

        assert scheduler.pending == []
        assert await scheduler.run_next() is None
        assert len(transport.dispatches) == 1

        await controller.resume()
        assert transport.dispatches[-1].index == 1
        assert run.current_index == 1

    @pytest.mark.anyio
    async def test_outcome_while_paused_is_recorded_without_dispatch(
        self, make_controller, transport, scheduler
    ) -> None:
        """The in-flight prompt finishes during a pause; nothing new is sent until resume."""
        controller = make_controller()
        run = await controller.start(["p1", "p2"])
        await controller.pause()
        assert scheduler.pending == []

        await _succeed(controller, 0)
        assert run.current_index == 1
        assert len(run.results) == 1
        assert scheduler.pending == []
        assert len(transport.dispatches) == 1

        await controller.resume()
        assert transport.dispatches[-1].index == 1

    @pytest.mark.anyio
    async def test_resume_with_prompt_in_flight_rearms_timeout(self, make_controller, transport, scheduler) -> None:
        controller = make_controller()
        await controller.start(["p1", "p2"])
        await controller.pause()
        await controller.resume()

        assert len(transport.dispatches) == 1
        assert [t.name for t in scheduler.pending] == ["dispatch-timeout"]

    @pytest.mark.anyio
    async def test_pause_after_prompt(self, make_controller, transport, event_sink, scheduler) -> None:
        controller = make_controller()
        run = await controller.start([PromptItem(text="setup", pause_after=True), PromptItem(text="follow-up")])
        await _succeed(controller, 0)

        assert run.is_paused
        assert run.current_index == 1
        assert scheduler.pending == []
        assert len(event_sink.of_type(EventType.PAUSED)) == 1

    @pytest.mark.anyio
    async def test_pause_after_ignored_when_disabled(self, make_controller, scheduler) -> None:
        controller = make_controller(honor_pause_after=False)
        run = await controller.start([PromptItem(text="setup", pause_after=True), PromptItem(text="follow-up")])
        await _succeed(controller, 0)
        assert not run.is_paused
        assert [t.name for t in scheduler.pending] == ["next-prompt"]


# ===================================================================
# Outcome filtering
# ===================================================================


class TestOutcomeFiltering:
    """Duplicate, stale and foreign outcomes are ignored."""

    @pytest.mark.anyio
    async def test_duplicate_success_recorded_once(self, make_controller, scheduler) -> None:
        controller = make_controller()
        run = await controller.start(["p1", "p2"])
        await _succeed(controller, 0)
        await _succeed(controller, 0, text="again")

        assert len(run.results) == 1
        assert run.results[0].response_text == "a response"
        assert run.current_index == 1
        assert len(scheduler.pending) == 1

    @pytest.mark.anyio
    async def test_out_of_order_success_leaves_in_flight_prompt_alone(
        self, make_controller, transport, scheduler
    ) -> None:
        """A success for a later index is kept, and that index is never dispatched."""
        controller = make_controller()
        run = await controller.start(["p1", "p2", "p3"])

        await _succeed(controller, 1, "early r2")
        assert run.current_index == 0
        assert run.is_processing_prompt
        assert [t.name for t in scheduler.pending] == ["dispatch-timeout"]
        assert [r.index for r in run.results] == [1]

        await _succeed(controller, 0, "r1")
        assert run.current_index == 1
        await scheduler.run_next()
        assert [d.index for d in transport.dispatches] == [0, 2]
        assert run.current_index == 2
        assert [t.name for t in scheduler.pending] == ["dispatch-timeout"]

        await _succeed(controller, 2, "r3")
        assert controller.state == QueueState.COMPLETE
        assert sorted(r.index for r in run.results) == [0, 1, 2]
        assert not run.is_running

    @pytest.mark.anyio
    async def test_out_of_order_success_for_last_prompt_completes_run(self, make_controller, transport, scheduler) -> None:
        controller = make_controller()
        run = await controller.start(["p1", "p2"])

        await _succeed(controller, 1)
        await _succeed(controller, 0)
        await scheduler.run_next()

        assert [d.index for d in transport.dispatches] == [0]
        assert controller.state == QueueState.COMPLETE
        assert len(run.results) == 2

    @pytest.mark.anyio
    async def test_outcome_from_other_run_ignored(self, make_controller) -> None:
        controller = make_controller()
        run = await controller.start(["p1"])
        await _succeed(controller, 0, automation_id=run.id + 1)
        assert run.results == []
        assert run.is_processing_prompt

    @pytest.mark.anyio
    async def test_out_of_range_index_ignored(self, make_controller) -> None:
        controller = make_controller()
        run = await controller.start(["p1"])
        await _succeed(controller, 5)
        assert run.results == []

    @pytest.mark.anyio
    async def test_stale_failure_ignored(self, make_controller, scheduler) -> None:
        controller = make_controller()
        run = await controller.start(["p1", "p2"])
        await _succeed(controller, 0)
        await scheduler.run_next()
        await _fail(controller, 0, "network error")
        assert run.current_index == 1
        assert run.retry_attempts == {}

    @pytest.mark.anyio
    async def test_outcome_without_run_ignored(self, make_controller) -> None:
        controller = make_controller()
        await controller.on_outcome(OutcomeEnvelope.completed(0, "x", start_time=0))
        assert controller.run is None


# ===================================================================
# Timeouts, readiness and invalidation
# ===================================================================


class TestDispatchTimeout:
    """A dispatch with no answer becomes a retryable failure."""

    @pytest.mark.anyio
    async def test_timeout_retries_prompt(self, make_controller, transport, event_sink, scheduler) -> None:
        controller = make_controller()
        run = await controller.start(["slow"])

        fired = await scheduler.run_next()
        assert fired.name == "dispatch-timeout"
        assert fired.delay_s == pytest.approx(5.0)
        assert run.retry_attempts == {0: 1}
        assert not run.is_processing_prompt

        retrying = [e for e in event_sink.of_type(EventType.PROGRESS) if e.data["status"] == "retrying"]
        assert retrying[0].data["error"] == DISPATCH_TIMEOUT_MESSAGE

        await scheduler.run_next()
        assert len(transport.dispatches) == 2

    @pytest.mark.anyio
    async def test_late_success_after_timeout_is_accepted(self, make_controller, scheduler) -> None:
        controller = make_controller()
        run = await controller.start(["slow", "next"])
        await scheduler.run_next()  # dispatch timeout, retry scheduled
        await _succeed(controller, 0)

        assert run.results[0].success
        assert run.current_index == 1
        assert [t.name for t in scheduler.pending] == ["next-prompt"]


class TestAgentReadiness:
    """Readiness announcements dispatch only when the run is idle."""

    @pytest.mark.anyio
    async def test_ready_while_processing_does_nothing(self, make_controller, transport) -> None:
        controller = make_controller()
        await controller.start(["p1", "p2"])
        await controller.on_agent_ready()
        assert len(transport.dispatches) == 1

    @pytest.mark.anyio
    async def test_ready_between_prompts_dispatches(self, make_controller, transport, scheduler) -> None:
        controller = make_controller()
        await controller.start(["p1", "p2"])
        await _succeed(controller, 0)
        await controller.on_agent_ready()

        assert transport.dispatches[-1].index == 1
        assert [t.name for t in scheduler.pending] == ["dispatch-timeout"]

    @pytest.mark.anyio
    async def test_handle_message_routes_ready(self, make_controller, transport) -> None:
        controller = make_controller()
        await controller.start(["p1", "p2"])
        await _succeed(controller, 0)
        await controller.handle_message(ControlMessage(type="content-script-ready", target_id="chat-1"))
        assert transport.dispatches[-1].index == 1

    @pytest.mark.anyio
    async def test_agent_unavailable_counts_as_retryable_failure(self, make_controller, transport, scheduler) -> None:
        transport.available = False
        controller = make_controller()
        run = await controller.start(["p1"])
        assert run.retry_attempts == {0: 1}
        assert [t.name for t in scheduler.pending] == ["retry"]


class TestTargetInvalidation:
    """Losing the target page stops the run."""

    @pytest.mark.anyio
    async def test_invalidated_outcome_stops_run(self, make_controller, event_sink) -> None:
        controller = make_controller()
        await controller.start(["p1", "p2"])
        await _fail(controller, 0, "Target tab was closed", error_kind="target_invalidated")

        assert not controller.is_active
        errors = event_sink.of_type(EventType.ERROR)
        assert errors[0].data["fatal"] is True
        stopped = event_sink.of_type(EventType.STOPPED)
        assert stopped[0].data["reason"] == "Target tab was closed"

    @pytest.mark.anyio
    async def test_on_target_invalidated(self, make_controller, scheduler) -> None:
        controller = make_controller()
        await controller.start(["p1"])
        await controller.on_target_invalidated("navigated away")
        assert not controller.is_active
        assert scheduler.pending == []


# ===================================================================
# Restore and status
# ===================================================================


class TestRestore:
    """Runs continue from a stored checkpoint."""

    @pytest.mark.anyio
    async def test_restore_continues_at_checkpoint(
        self, make_controller, transport, event_sink, memory_store, scheduler
    ) -> None:
        first = make_controller()
        run = await first.start(["p1", "p2", "p3"])
        await _succeed(first, 0)
        checkpoint = memory_store.load_checkpoint("chat-1")
        assert checkpoint["current_index"] == 1

        second = make_controller()
        restored = await second.restore()

        assert restored is not None
        assert restored.id == run.id
        assert restored.current_index == 1
        assert len(restored.results) == 1
        assert transport.dispatches[-1].index == 1
        assert event_sink.of_type(EventType.STARTED)[-1].data["restored"] is True

    @pytest.mark.anyio
    async def test_restore_paused_checkpoint_stays_paused(self, make_controller, transport, memory_store) -> None:
        first = make_controller()
        await first.start(["p1", "p2"])
        await _succeed(first, 0)
        await first.pause()

        second = make_controller()
        restored = await second.restore()
        assert restored.is_paused
        assert second.state == QueueState.PAUSED
        assert len(transport.dispatches) == 1

    @pytest.mark.anyio
    async def test_restore_without_checkpoint(self, make_controller) -> None:
        controller = make_controller()
        assert await controller.restore() is None


class TestStatus:
    """Tests for ``status()``."""

    def test_status_without_run(self, make_controller) -> None:
        status = make_controller().status()
        assert status["is_running"] is False
        assert status["state"] == "IDLE"

    @pytest.mark.anyio
    async def test_status_during_run(self, make_controller) -> None:
        controller = make_controller()
        run = await controller.start(["p1", "p2"])
        await _fail(controller, 0, "network error")
        status = controller.status()
        assert status["automation_id"] == run.id
        assert status["total"] == 2
        assert status["current_index"] == 0
        assert status["retry_attempts"] == {"0": 1}
        assert status["state"] == "RETRYING"
