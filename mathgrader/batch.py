"""
Batch orchestrator.

Grades a list of submissions strictly one at a time. The batch is an explicit
state machine (BatchGradingState) advanced only through the transition
functions below; callers observe it through BatchProgress snapshots streamed
after each transition.

Per submission: queued -> in_flight -> {completed, needs_review, failed}
Per batch:      idle -> running -> {completed, cancelled}
"""

import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from mathgrader.config import Settings, get_settings
from mathgrader.ledger import BatchReservation, TokenLedger
from mathgrader.models import BatchProgress, BatchStatus, GradingResult

logger = logging.getLogger(__name__)

DEFAULT_SECONDS_PER_ITEM = 25.0

GradeFn = Callable[[str], Awaitable[GradingResult]]


@dataclass
class BatchGradingState:
    """
    Mutable state of one batch run.

    ``completed`` holds every successfully graded submission, including the
    ones also listed in ``needs_review``.
    """

    status: BatchStatus = BatchStatus.IDLE
    queue: deque[str] = field(default_factory=deque)
    current_id: str | None = None
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    needs_review: list[str] = field(default_factory=list)
    attempts: dict[str, int] = field(default_factory=dict)
    results: dict[str, GradingResult] = field(default_factory=dict)
    total_count: int = 0
    start_time: float | None = None
    cancel_requested: bool = False
    last_event: str = ""

    @property
    def is_active(self) -> bool:
        return self.status == BatchStatus.RUNNING

    @property
    def processed_count(self) -> int:
        return len(self.completed) + len(self.failed)

    @property
    def remaining_count(self) -> int:
        return len(self.queue) + (1 if self.current_id is not None else 0)


# ==============================================================================
# Transitions
# ==============================================================================


def start_batch(state: BatchGradingState, submission_ids: list[str], now: float) -> None:
    if state.is_active:
        raise RuntimeError("A batch is already running")
    state.status = BatchStatus.RUNNING
    state.queue = deque(dict.fromkeys(submission_ids))
    state.current_id = None
    state.completed.clear()
    state.failed.clear()
    state.needs_review.clear()
    state.attempts.clear()
    state.results.clear()
    state.total_count = len(state.queue)
    state.start_time = now
    state.cancel_requested = False
    state.last_event = f"Started batch of {state.total_count}"


def begin_next(state: BatchGradingState) -> str | None:
    """Move the next queued submission in flight, or None when the queue is empty."""
    if not state.queue:
        return None
    state.current_id = state.queue.popleft()
    state.last_event = f"Grading {state.current_id}"
    return state.current_id


def record_attempt(state: BatchGradingState, submission_id: str) -> int:
    state.attempts[submission_id] = state.attempts.get(submission_id, 0) + 1
    return state.attempts[submission_id]


def finish_success(state: BatchGradingState, submission_id: str, result: GradingResult) -> None:
    state.completed.append(submission_id)
    if result.needs_review:
        state.needs_review.append(submission_id)
    state.results[submission_id] = result
    state.current_id = None
    state.last_event = f"{submission_id} {'needs review' if result.needs_review else 'completed'}"


def finish_failure(state: BatchGradingState, submission_id: str, result: GradingResult | None) -> None:
    state.failed.append(submission_id)
    if result is not None:
        state.results[submission_id] = result
    state.current_id = None
    state.last_event = f"{submission_id} failed"


def request_cancel(state: BatchGradingState) -> None:
    state.cancel_requested = True


def cancel_batch(state: BatchGradingState) -> list[str]:
    """Drop the queue without attempting it. Returns the dropped IDs."""
    dropped = list(state.queue)
    state.queue.clear()
    state.current_id = None
    state.status = BatchStatus.CANCELLED
    state.last_event = f"Cancelled, {len(dropped)} not attempted"
    return dropped


def complete_batch(state: BatchGradingState) -> None:
    state.current_id = None
    state.status = BatchStatus.COMPLETED
    state.last_event = f"Done: {len(state.completed)} graded, {len(state.failed)} failed"


def snapshot(state: BatchGradingState, now: float) -> BatchProgress:
    """
    Build a progress snapshot.

    ETA is the average time per processed item times the remaining count,
    falling back to a fixed per-item estimate before anything is processed.
    """
    elapsed = now - state.start_time if state.start_time is not None else 0.0
    processed = state.processed_count
    per_item = elapsed / processed if processed > 0 else DEFAULT_SECONDS_PER_ITEM
    remaining = state.remaining_count
    return BatchProgress(
        status=state.status,
        current_id=state.current_id,
        completed=len(state.completed),
        failed=len(state.failed),
        needs_review=len(state.needs_review),
        remaining=remaining,
        total=state.total_count,
        elapsed_seconds=round(elapsed, 3),
        eta_seconds=round(per_item * remaining, 3) if state.is_active else 0.0,
        last_event=state.last_event,
    )


# ==============================================================================
# Orchestrator
# ==============================================================================


class BatchOrchestrator:
    """
    Runs a batch through a single-submission grade function.

    Args:
        grade: Async callable grading one submission by ID.
        settings: Configuration settings. Uses global settings if not provided.
        ledger: When given together with a user ID at run time, the batch
            cost is reserved upfront and failed or dropped items refunded.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        grade: GradeFn,
        settings: Settings | None = None,
        ledger: TokenLedger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._grade = grade
        self._settings = settings or get_settings()
        self._ledger = ledger
        self._clock = clock
        self.state = BatchGradingState()

    @property
    def max_attempts(self) -> int:
        return self._settings.batch_max_attempts

    def cancel(self) -> None:
        """Stop before the next submission; in-flight work still finishes."""
        logger.info("Batch cancel requested")
        request_cancel(self.state)

    def progress(self) -> BatchProgress:
        return snapshot(self.state, self._clock())

    async def run(
        self,
        submission_ids: list[str],
        user_id: str | None = None,
        include_feedback: bool = False,
    ) -> AsyncIterator[BatchProgress]:
        """
        Grade every submission and stream a snapshot after each transition.

        Args:
            submission_ids: Submissions to grade, in order. Duplicates are dropped.
            user_id: Account charged for the batch when a ledger is configured.
            include_feedback: Whether the charged cost includes feedback.

        Yields:
            BatchProgress snapshots.

        Raises:
            RuntimeError: If a batch is already running. Nothing is charged.
            InsufficientBalance: Before anything is graded, when the user cannot
                afford the batch.

        Whatever stops the run (completion, cancellation, an exception or the
        caller closing the stream early), every submission not graded
        successfully is refunded.
        """
        state = self.state
        if state.is_active:
            raise RuntimeError("A batch is already running")

        reservation: BatchReservation | None = None
        ids = list(dict.fromkeys(submission_ids))
        if self._ledger is not None and user_id is not None and ids:
            reservation = await self._ledger.reserve_for_batch(user_id, ids, include_feedback)

        try:
            start_batch(state, ids, self._clock())
        except RuntimeError:
            # Another run started while the reservation was being taken
            if reservation is not None:
                await self._ledger.refund_failed(reservation, ids)
            raise
        logger.info("Batch started: %d submissions", state.total_count)

        dropped: list[str] = []
        try:
            yield self.progress()
            while True:
                if state.cancel_requested:
                    dropped = cancel_batch(state)
                    logger.info("Batch cancelled, %d submissions not attempted", len(dropped))
                    break
                submission_id = begin_next(state)
                if submission_id is None:
                    complete_batch(state)
                    break
                yield self.progress()
                await self._grade_item(submission_id)
                yield self.progress()
        finally:
            if state.is_active:
                in_flight = [state.current_id] if state.current_id is not None else []
                dropped = in_flight + cancel_batch(state)
                logger.warning("Batch stopped early, %d submissions not graded", len(dropped))
            if reservation is not None:
                refunded = await self._ledger.refund_failed(reservation, state.failed + dropped)
                if refunded:
                    logger.info("Refunded %d tokens for failed or skipped submissions", refunded)

        logger.info(
            "Batch %s: %d completed (%d need review), %d failed",
            state.status.value,
            len(state.completed),
            len(state.needs_review),
            len(state.failed),
        )
        yield self.progress()

    async def _grade_item(self, submission_id: str) -> None:
        state = self.state
        result: GradingResult | None = None
        while state.attempts.get(submission_id, 0) < self.max_attempts:
            attempt = record_attempt(state, submission_id)
            try:
                result = await self._grade(submission_id)
            except Exception:
                logger.exception("Grading %s raised on attempt %d", submission_id, attempt)
                result = None
                continue
            if result.success:
                finish_success(state, submission_id, result)
                return
            logger.warning("Grading %s failed on attempt %d: %s", submission_id, attempt, result.error)
        finish_failure(state, submission_id, result)
