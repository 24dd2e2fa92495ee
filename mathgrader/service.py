"""
Grading service.

Inbound facade over the orchestrators: grade one submission, grade a batch,
reset failed submissions and add feedback to a completed result. Submission
storage is a protocol so the engine stays independent of any database.
"""

import logging
from collections.abc import AsyncIterator
from functools import partial
from typing import Protocol

from mathgrader.batch import BatchOrchestrator
from mathgrader.config import Settings, get_settings
from mathgrader.grading.engine import GradingOrchestrator
from mathgrader.ledger import TokenLedger
from mathgrader.models import BatchProgress, GradingRequest, GradingResult, SubmissionStatus, TokenOperation

logger = logging.getLogger(__name__)


class SubmissionNotFound(Exception):
    def __init__(self, submission_id: str):
        self.submission_id = submission_id
        super().__init__(f"Submission not found: {submission_id}")


class InvalidSubmissionState(Exception):
    """Raised when an action is not allowed in the submission's current status."""

    def __init__(self, submission_id: str, status: SubmissionStatus, action: str):
        self.submission_id = submission_id
        self.status = status
        super().__init__(f"Cannot {action} submission {submission_id} while it is {status.value}")


# ==============================================================================
# Storage
# ==============================================================================


class SubmissionStore(Protocol):
    """Persistence owned by the storage collaborator."""

    async def load_request(self, submission_id: str) -> GradingRequest | None: ...

    async def save_result(self, result: GradingResult) -> None: ...

    async def get_result(self, submission_id: str) -> GradingResult | None: ...

    async def get_status(self, submission_id: str) -> SubmissionStatus | None: ...

    async def set_status(self, submission_id: str, status: SubmissionStatus) -> None: ...

    async def list_failed(self, project_id: str | None = None) -> list[str]: ...


class InMemorySubmissionStore:
    """Dict-backed SubmissionStore for the CLI and tests."""

    def __init__(self) -> None:
        self._requests: dict[str, GradingRequest] = {}
        self._results: dict[str, GradingResult] = {}
        self._status: dict[str, SubmissionStatus] = {}

    def add(self, request: GradingRequest) -> None:
        self._requests[request.submission_id] = request
        self._status[request.submission_id] = SubmissionStatus.PENDING

    async def load_request(self, submission_id: str) -> GradingRequest | None:
        return self._requests.get(submission_id)

    async def save_result(self, result: GradingResult) -> None:
        self._results[result.submission_id] = result
        self._status[result.submission_id] = result.status

    async def get_result(self, submission_id: str) -> GradingResult | None:
        return self._results.get(submission_id)

    async def get_status(self, submission_id: str) -> SubmissionStatus | None:
        return self._status.get(submission_id)

    async def set_status(self, submission_id: str, status: SubmissionStatus) -> None:
        self._status[submission_id] = status

    async def list_failed(self, project_id: str | None = None) -> list[str]:
        return [
            submission_id
            for submission_id, status in self._status.items()
            if status == SubmissionStatus.FAILED
            and (project_id is None or self._requests[submission_id].project_id == project_id)
        ]


# ==============================================================================
# Service
# ==============================================================================


class GradingService:
    """
    Inbound operations of the grading engine.

    Args:
        store: Submission storage.
        orchestrator: Single-submission orchestrator.
        ledger: Optional token ledger. When present, grading is charged to the
            request's ``user_id`` and refunded on failure.
        settings: Configuration settings. Uses global settings if not provided.
    """

    def __init__(
        self,
        store: SubmissionStore,
        orchestrator: GradingOrchestrator | None = None,
        ledger: TokenLedger | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._store = store
        self._orchestrator = orchestrator or GradingOrchestrator(self._settings)
        self._ledger = ledger
        self._batch: BatchOrchestrator | None = None

    @property
    def batch(self) -> BatchOrchestrator | None:
        """The running (or last) batch, for cancellation and polling."""
        return self._batch

    async def _load(self, submission_id: str) -> GradingRequest:
        request = await self._store.load_request(submission_id)
        if request is None:
            raise SubmissionNotFound(submission_id)
        return request

    async def grade_submission(self, submission_id: str) -> GradingResult:
        """
        Grade one stored submission and persist the result.

        Raises:
            SubmissionNotFound: Unknown submission.
            InvalidSubmissionState: The submission is already being graded.
            InsufficientBalance: The requesting user cannot afford grading.
        """
        request = await self._load(submission_id)
        await self._ensure_gradable(submission_id)
        charge = self._ledger is not None and request.user_id is not None
        if charge:
            await self._ledger.debit(
                request.user_id,
                self._settings.submission_token_cost,
                TokenOperation.SUBMISSION,
                submission_id,
                "Grade submission",
            )
        try:
            result = await self._run(request)
        except Exception:
            if charge:
                await self._ledger.refund(
                    request.user_id, self._settings.submission_token_cost, submission_id, "grading error"
                )
            raise
        if charge and not result.success:
            await self._ledger.refund(
                request.user_id, self._settings.submission_token_cost, submission_id, "grading failed"
            )
        return result

    async def _ensure_gradable(self, submission_id: str) -> None:
        status = await self._store.get_status(submission_id)
        if status == SubmissionStatus.PROCESSING:
            raise InvalidSubmissionState(submission_id, status, "grade")

    async def _run(self, request: GradingRequest) -> GradingResult:
        await self._ensure_gradable(request.submission_id)
        await self._store.set_status(request.submission_id, SubmissionStatus.PROCESSING)
        try:
            result = await self._orchestrator.grade(request)
        except Exception:
            await self._store.set_status(request.submission_id, SubmissionStatus.FAILED)
            raise
        await self._store.save_result(result)
        return result

    async def _grade_for_batch(self, submission_id: str, include_feedback: bool) -> GradingResult:
        # Batch items are paid for by the upfront reservation, so feedback
        # runs exactly when it was charged for
        request = await self._load(submission_id)
        if request.options.generate_feedback != include_feedback:
            options = request.options.model_copy(update={"generate_feedback": include_feedback})
            request = request.model_copy(update={"options": options})
        return await self._run(request)

    async def grade_batch(
        self,
        submission_ids: list[str],
        user_id: str | None = None,
        include_feedback: bool = False,
    ) -> AsyncIterator[BatchProgress]:
        """
        Grade submissions sequentially, streaming progress.

        ``include_feedback`` decides both the charge and whether feedback is
        generated for every item, overriding each stored request's option.

        Raises:
            InsufficientBalance: Before anything is graded, when ``user_id``
                cannot afford the batch.
        """
        self._batch = BatchOrchestrator(
            partial(self._grade_for_batch, include_feedback=include_feedback),
            self._settings,
            ledger=self._ledger,
        )
        async for progress in self._batch.run(submission_ids, user_id, include_feedback):
            yield progress

    def cancel_batch(self) -> None:
        if self._batch is not None:
            self._batch.cancel()

    async def reset_failed(self, submission_id: str) -> None:
        """
        Put a failed submission back to pending so it can be graded again.

        Raises:
            SubmissionNotFound: Unknown submission.
            InvalidSubmissionState: The submission has not failed.
        """
        status = await self._store.get_status(submission_id)
        if status is None:
            raise SubmissionNotFound(submission_id)
        if status != SubmissionStatus.FAILED:
            raise InvalidSubmissionState(submission_id, status, "reset")
        await self._store.set_status(submission_id, SubmissionStatus.PENDING)
        logger.info("Submission %s reset for retry", submission_id)

    async def reset_all_failed(self, project_id: str | None = None) -> int:
        failed = await self._store.list_failed(project_id)
        for submission_id in failed:
            await self._store.set_status(submission_id, SubmissionStatus.PENDING)
        logger.info("Reset %d failed submissions", len(failed))
        return len(failed)

    async def generate_feedback(self, submission_id: str) -> GradingResult:
        """
        Add per-question feedback to a graded submission.

        Returns the stored result unchanged when feedback is already present.

        Raises:
            SubmissionNotFound: Nothing graded for this submission.
            InvalidSubmissionState: The last grading run failed.
        """
        result = await self._store.get_result(submission_id)
        if result is None:
            raise SubmissionNotFound(submission_id)
        if not result.success:
            raise InvalidSubmissionState(submission_id, result.status, "generate feedback for")
        if result.questions and all(q.feedback for q in result.questions):
            return result

        request = await self._store.load_request(submission_id)
        user_id = request.user_id if request is not None else None
        charged = self._ledger is not None and user_id is not None
        if charged:
            await self._ledger.debit(
                user_id, self._settings.feedback_token_cost, TokenOperation.SUBMISSION, submission_id, "Feedback"
            )
        try:
            updated = await self._orchestrator.generate_feedback(result)
            if updated is not result:
                await self._store.save_result(updated)
        except Exception:
            if charged:
                await self._ledger.refund(user_id, self._settings.feedback_token_cost, submission_id, "feedback error")
            raise
        if updated is result and charged:
            await self._ledger.refund(user_id, self._settings.feedback_token_cost, submission_id, "feedback failed")
        return updated
