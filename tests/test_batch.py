"""
Unit tests for the batch orchestrator and its state transitions.
"""

from collections.abc import Callable

import pytest

from mathgrader.batch import (
    DEFAULT_SECONDS_PER_ITEM,
    BatchGradingState,
    BatchOrchestrator,
    begin_next,
    cancel_batch,
    finish_failure,
    finish_success,
    snapshot,
    start_batch,
)
from mathgrader.config import Settings
from mathgrader.ledger import InsufficientBalance, TokenLedger
from mathgrader.models import BatchProgress, BatchStatus, GradingResult, SubmissionStatus, TokenOperation


def graded(submission_id: str, needs_review: bool = False) -> GradingResult:
    return GradingResult(
        submission_id=submission_id,
        success=True,
        status=SubmissionStatus.NEEDS_REVIEW if needs_review else SubmissionStatus.COMPLETED,
        needs_review=needs_review,
    )


def failed(submission_id: str) -> GradingResult:
    return GradingResult(
        submission_id=submission_id,
        success=False,
        status=SubmissionStatus.FAILED,
        needs_review=True,
        error="All providers failed",
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class ScriptedGrader:
    """
    Grade function that returns scripted outcomes per submission.

    Unscripted submissions grade successfully. Each call advances the clock
    by ``seconds`` when a clock is attached.
    """

    def __init__(
        self,
        outcomes: dict[str, list[GradingResult | Exception]] | None = None,
        clock: FakeClock | None = None,
        seconds: float = 10.0,
    ):
        self.outcomes = outcomes or {}
        self.clock = clock
        self.seconds = seconds
        self.calls: list[str] = []

    async def __call__(self, submission_id: str) -> GradingResult:
        self.calls.append(submission_id)
        if self.clock is not None:
            self.clock.now += self.seconds
        script = self.outcomes.get(submission_id)
        if not script:
            return graded(submission_id)
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item


async def collect(
    orchestrator: BatchOrchestrator,
    ids: list[str],
    on_snapshot: Callable[[BatchProgress], None] | None = None,
    **kwargs,
) -> list[BatchProgress]:
    snapshots: list[BatchProgress] = []
    async for progress in orchestrator.run(ids, **kwargs):
        snapshots.append(progress)
        if on_snapshot is not None:
            on_snapshot(progress)
    return snapshots


class TestTransitions:
    """Tests for the state machine transition functions."""

    def test_start_batch(self) -> None:
        state = BatchGradingState()

        start_batch(state, ["a", "b", "a", "c"], now=5.0)

        assert state.status == BatchStatus.RUNNING
        assert list(state.queue) == ["a", "b", "c"]
        assert state.total_count == 3
        assert state.start_time == 5.0

    def test_cannot_start_twice(self) -> None:
        state = BatchGradingState()
        start_batch(state, ["a"], now=0.0)

        with pytest.raises(RuntimeError):
            start_batch(state, ["b"], now=1.0)

    def test_restart_after_completion_resets_counts(self) -> None:
        state = BatchGradingState()
        start_batch(state, ["a"], now=0.0)
        begin_next(state)
        finish_success(state, "a", graded("a"))
        state.status = BatchStatus.COMPLETED

        start_batch(state, ["b", "c"], now=10.0)

        assert state.completed == []
        assert state.results == {}
        assert state.total_count == 2

    def test_needs_review_is_counted_as_completed(self) -> None:
        state = BatchGradingState()
        start_batch(state, ["a"], now=0.0)
        begin_next(state)

        finish_success(state, "a", graded("a", needs_review=True))

        assert state.completed == ["a"]
        assert state.needs_review == ["a"]
        assert state.current_id is None

    def test_failure_keeps_last_result(self) -> None:
        state = BatchGradingState()
        start_batch(state, ["a"], now=0.0)
        begin_next(state)

        finish_failure(state, "a", failed("a"))

        assert state.failed == ["a"]
        assert state.results["a"].error == "All providers failed"

    def test_cancel_drops_queue(self) -> None:
        state = BatchGradingState()
        start_batch(state, ["a", "b", "c"], now=0.0)
        begin_next(state)
        finish_success(state, "a", graded("a"))

        dropped = cancel_batch(state)

        assert dropped == ["b", "c"]
        assert not state.queue
        assert state.status == BatchStatus.CANCELLED

    def test_snapshot_before_any_item(self) -> None:
        state = BatchGradingState()
        start_batch(state, ["a", "b"], now=0.0)

        progress = snapshot(state, now=3.0)

        assert progress.remaining == 2
        assert progress.eta_seconds == 2 * DEFAULT_SECONDS_PER_ITEM
        assert progress.elapsed_seconds == 3.0
        assert progress.percent == 0

    def test_snapshot_of_idle_state(self) -> None:
        progress = snapshot(BatchGradingState(), now=100.0)

        assert progress.status == BatchStatus.IDLE
        assert progress.total == 0
        assert progress.eta_seconds == 0.0


class TestBatchOrchestrator:
    """Tests for BatchOrchestrator.run."""

    @pytest.mark.asyncio
    async def test_all_succeed(self, test_settings: Settings) -> None:
        grader = ScriptedGrader({"b": [graded("b", needs_review=True)]})
        orchestrator = BatchOrchestrator(grader, test_settings)

        snapshots = await collect(orchestrator, ["a", "b", "c"])

        final = snapshots[-1]
        assert final.status == BatchStatus.COMPLETED
        assert (final.completed, final.failed, final.needs_review) == (3, 0, 1)
        assert final.remaining == 0
        assert final.percent == 100
        assert grader.calls == ["a", "b", "c"]
        assert set(orchestrator.state.results) == {"a", "b", "c"}

    @pytest.mark.asyncio
    async def test_failed_item_is_retried_then_recorded(self, test_settings: Settings) -> None:
        """An item failing every attempt is failed after max_attempts; the rest complete."""
        grader = ScriptedGrader({"b": [failed("b")]})
        orchestrator = BatchOrchestrator(grader, test_settings)

        await collect(orchestrator, ["a", "b", "c"])

        state = orchestrator.state
        assert state.completed == ["a", "c"]
        assert state.failed == ["b"]
        assert state.attempts["b"] == 2
        assert grader.calls == ["a", "b", "b", "c"]

    @pytest.mark.asyncio
    async def test_retry_succeeds_on_second_attempt(self, test_settings: Settings) -> None:
        grader = ScriptedGrader({"a": [failed("a"), graded("a")]})
        orchestrator = BatchOrchestrator(grader, test_settings)

        await collect(orchestrator, ["a"])

        assert orchestrator.state.completed == ["a"]
        assert orchestrator.state.attempts["a"] == 2

    @pytest.mark.asyncio
    async def test_exception_counts_as_failed_attempt(self, test_settings: Settings) -> None:
        grader = ScriptedGrader({"a": [RuntimeError("store unavailable")]})
        orchestrator = BatchOrchestrator(grader, test_settings)

        await collect(orchestrator, ["a", "b"])

        assert orchestrator.state.failed == ["a"]
        assert orchestrator.state.completed == ["b"]
        assert "a" not in orchestrator.state.results

    @pytest.mark.asyncio
    async def test_max_attempts_from_settings(self, test_settings: Settings) -> None:
        grader = ScriptedGrader({"a": [failed("a")]})
        orchestrator = BatchOrchestrator(grader, test_settings.model_copy(update={"batch_max_attempts": 3}))

        await collect(orchestrator, ["a"])

        assert orchestrator.state.attempts["a"] == 3

    @pytest.mark.asyncio
    async def test_cancel_after_first_item(self, test_settings: Settings) -> None:
        """Cancelling stops before the next item; nothing else is attempted."""
        grader = ScriptedGrader()
        orchestrator = BatchOrchestrator(grader, test_settings)

        def cancel_after_first(progress: BatchProgress) -> None:
            if progress.completed == 1:
                orchestrator.cancel()

        snapshots = await collect(orchestrator, ["a", "b", "c"], on_snapshot=cancel_after_first)

        state = orchestrator.state
        assert state.status == BatchStatus.CANCELLED
        assert state.completed == ["a"]
        assert not state.queue
        assert grader.calls == ["a"]
        assert set(state.attempts) == {"a"}
        assert snapshots[-1].status == BatchStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_snapshots_follow_each_transition(self, test_settings: Settings) -> None:
        orchestrator = BatchOrchestrator(ScriptedGrader(), test_settings)

        snapshots = await collect(orchestrator, ["a", "b"])

        # start, (begin, finish) per item, final
        assert len(snapshots) == 6
        assert snapshots[0].current_id is None
        assert snapshots[1].current_id == "a"
        assert snapshots[2].completed == 1
        assert snapshots[3].current_id == "b"

    @pytest.mark.asyncio
    async def test_eta_uses_average_time_per_item(self, test_settings: Settings) -> None:
        clock = FakeClock()
        orchestrator = BatchOrchestrator(ScriptedGrader(clock=clock, seconds=10.0), test_settings, clock=clock)

        snapshots = await collect(orchestrator, ["a", "b", "c"])

        assert snapshots[0].eta_seconds == 3 * DEFAULT_SECONDS_PER_ITEM
        after_first = snapshots[2]
        assert after_first.elapsed_seconds == 10.0
        assert after_first.eta_seconds == 20.0
        assert snapshots[-1].eta_seconds == 0.0

    @pytest.mark.asyncio
    async def test_empty_batch(self, test_settings: Settings) -> None:
        orchestrator = BatchOrchestrator(ScriptedGrader(), test_settings)

        snapshots = await collect(orchestrator, [])

        assert snapshots[-1].status == BatchStatus.COMPLETED
        assert snapshots[-1].total == 0

    @pytest.mark.asyncio
    async def test_progress_outside_run(self, test_settings: Settings) -> None:
        orchestrator = BatchOrchestrator(ScriptedGrader(), test_settings)

        assert orchestrator.progress().status == BatchStatus.IDLE


class TestBatchLedger:
    """Tests for upfront reservation and refunds during a batch."""

    @pytest.mark.asyncio
    async def test_reserves_and_refunds_failures(self, test_settings: Settings) -> None:
        ledger = TokenLedger(settings=test_settings)
        await ledger.credit("u1", 20, TokenOperation.PURCHASE)
        orchestrator = BatchOrchestrator(ScriptedGrader({"b": [failed("b")]}), test_settings, ledger=ledger)

        await collect(orchestrator, ["a", "b", "c"], user_id="u1")

        assert await ledger.balance("u1") == 18
        operations = [e.operation for e in await ledger.history("u1")]
        assert operations == [TokenOperation.REFUND, TokenOperation.SUBMISSION, TokenOperation.PURCHASE]

    @pytest.mark.asyncio
    async def test_cancelled_items_are_refunded(self, test_settings: Settings) -> None:
        ledger = TokenLedger(settings=test_settings)
        await ledger.credit("u1", 10, TokenOperation.PURCHASE)
        orchestrator = BatchOrchestrator(ScriptedGrader(), test_settings, ledger=ledger)

        def cancel_after_first(progress: BatchProgress) -> None:
            if progress.completed == 1:
                orchestrator.cancel()

        await collect(orchestrator, ["a", "b", "c"], on_snapshot=cancel_after_first, user_id="u1")

        assert await ledger.balance("u1") == 9

    @pytest.mark.asyncio
    async def test_insufficient_balance_blocks_start(self, test_settings: Settings) -> None:
        ledger = TokenLedger(settings=test_settings)
        await ledger.credit("u1", 2, TokenOperation.PURCHASE)
        grader = ScriptedGrader()
        orchestrator = BatchOrchestrator(grader, test_settings, ledger=ledger)

        with pytest.raises(InsufficientBalance):
            await collect(orchestrator, ["a", "b", "c"], user_id="u1")

        assert grader.calls == []
        assert orchestrator.state.status == BatchStatus.IDLE
        assert await ledger.balance("u1") == 2

    @pytest.mark.asyncio
    async def test_no_user_means_no_charge(self, test_settings: Settings) -> None:
        ledger = TokenLedger(settings=test_settings)
        orchestrator = BatchOrchestrator(ScriptedGrader(), test_settings, ledger=ledger)

        await collect(orchestrator, ["a"])

        assert await ledger.history("u1") == []

    @pytest.mark.asyncio
    async def test_closing_stream_early_refunds_everything(self, test_settings: Settings) -> None:
        ledger = TokenLedger(settings=test_settings)
        await ledger.credit("u1", 5, TokenOperation.PURCHASE)
        grader = ScriptedGrader()
        orchestrator = BatchOrchestrator(grader, test_settings, ledger=ledger)

        stream = orchestrator.run(["a", "b", "c"], user_id="u1")
        async for progress in stream:
            if progress.current_id is not None:
                break
        await stream.aclose()

        assert grader.calls == []
        assert orchestrator.state.status == BatchStatus.CANCELLED
        assert await ledger.balance("u1") == 5

    @pytest.mark.asyncio
    async def test_closing_stream_mid_batch_refunds_ungraded(self, test_settings: Settings) -> None:
        ledger = TokenLedger(settings=test_settings)
        await ledger.credit("u1", 5, TokenOperation.PURCHASE)
        orchestrator = BatchOrchestrator(ScriptedGrader(), test_settings, ledger=ledger)

        stream = orchestrator.run(["a", "b", "c"], user_id="u1")
        async for progress in stream:
            if progress.completed == 1:
                break
        await stream.aclose()

        assert orchestrator.state.completed == ["a"]
        assert await ledger.balance("u1") == 4

    @pytest.mark.asyncio
    async def test_second_run_while_busy_is_not_charged(self, test_settings: Settings) -> None:
        ledger = TokenLedger(settings=test_settings)
        await ledger.credit("u1", 10, TokenOperation.PURCHASE)
        orchestrator = BatchOrchestrator(ScriptedGrader(), test_settings, ledger=ledger)

        first = orchestrator.run(["a"], user_id="u1")
        await first.__anext__()
        assert await ledger.balance("u1") == 9

        with pytest.raises(RuntimeError):
            await collect(orchestrator, ["x", "y"], user_id="u1")
        assert await ledger.balance("u1") == 9

        await first.aclose()
        assert await ledger.balance("u1") == 10
