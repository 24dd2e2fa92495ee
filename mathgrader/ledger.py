"""
Token ledger.

Append-only balance accounting for grading tokens. Every mutation reads the
current balance and appends one entry while holding a per-user asyncio lock,
so concurrent debits against the same user can never both see a stale
balance. Entries are never edited or deleted.
"""

import asyncio
import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Protocol

from mathgrader.config import Settings, get_settings
from mathgrader.models import BalanceReport, BalanceStatus, TokenLedgerEntry, TokenOperation

logger = logging.getLogger(__name__)

LOW_BALANCE = 10
CRITICAL_BALANCE = 5
ZERO_BALANCE = 0


class InsufficientBalance(Exception):
    """Raised when a debit would take the balance below zero."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient tokens: need {required}, have {available}. "
            f"Add at least {required - available} token(s) or grade fewer submissions."
        )


def calculate_grading_cost(
    submission_count: int,
    include_feedback: bool = False,
    submission_cost: int = 1,
    feedback_cost: int = 1,
    bulk_threshold: int = 10,
    bulk_discount_rate: float = 0.1,
) -> int:
    """
    Token cost of grading a number of submissions.

    A bulk discount is applied (rounded down) once the count reaches the
    threshold.

    Args:
        submission_count: Number of submissions.
        include_feedback: Whether feedback is generated for each.
        submission_cost: Tokens per submission.
        feedback_cost: Tokens per feedback generation.
        bulk_threshold: Count at which the discount starts.
        bulk_discount_rate: Fractional discount.

    Returns:
        Total tokens.
    """
    base = submission_count * submission_cost
    if include_feedback:
        base += submission_count * feedback_cost
    if submission_count >= bulk_threshold:
        base = math.floor(base * (1 - bulk_discount_rate))
    return base


# ==============================================================================
# Storage
# ==============================================================================


class LedgerStore(Protocol):
    """Persistence for ledger entries, in insertion order per user."""

    async def latest(self, user_id: str) -> TokenLedgerEntry | None: ...

    async def append(self, entry: TokenLedgerEntry) -> None: ...

    async def entries(self, user_id: str) -> list[TokenLedgerEntry]: ...


class InMemoryLedgerStore:
    def __init__(self) -> None:
        self._entries: dict[str, list[TokenLedgerEntry]] = defaultdict(list)

    async def latest(self, user_id: str) -> TokenLedgerEntry | None:
        entries = self._entries.get(user_id)
        return entries[-1] if entries else None

    async def append(self, entry: TokenLedgerEntry) -> None:
        self._entries[entry.user_id].append(entry)

    async def entries(self, user_id: str) -> list[TokenLedgerEntry]:
        return list(self._entries.get(user_id, []))


@dataclass
class BatchReservation:
    """Tokens debited upfront for a batch, and how much has been refunded since."""

    user_id: str
    entry: TokenLedgerEntry
    total_cost: int
    submission_count: int
    include_feedback: bool
    refunded: int = 0

    @property
    def refundable(self) -> int:
        return self.total_cost - self.refunded


# ==============================================================================
# Ledger
# ==============================================================================


class TokenLedger:
    """
    Debit/credit accounting over a LedgerStore.

    Invariant: for each user, every entry's ``balance_after`` equals the
    previous entry's ``balance_after`` plus its ``amount``.
    """

    def __init__(self, store: LedgerStore | None = None, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._store: LedgerStore = store if store is not None else InMemoryLedgerStore()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def balance(self, user_id: str) -> int:
        latest = await self._store.latest(user_id)
        return latest.balance_after if latest is not None else 0

    async def debit(
        self,
        user_id: str,
        amount: int,
        operation: TokenOperation = TokenOperation.SUBMISSION,
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> TokenLedgerEntry:
        """
        Remove tokens from a user's balance.

        Args:
            user_id: The user to charge.
            amount: Positive number of tokens.
            operation: Ledger operation kind.
            reference_id: Submission or batch reference.
            notes: Free-text note.

        Returns:
            The appended entry.

        Raises:
            ValueError: If amount is not positive.
            InsufficientBalance: If the balance is below amount. Nothing is written.
        """
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got {amount}")
        async with self._locks[user_id]:
            balance = await self.balance(user_id)
            if balance < amount:
                logger.warning("Debit of %d rejected for %s (balance %d)", amount, user_id, balance)
                raise InsufficientBalance(required=amount, available=balance)
            return await self._append(user_id, -amount, balance, operation, reference_id, notes)

    async def credit(
        self,
        user_id: str,
        amount: int,
        operation: TokenOperation,
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> TokenLedgerEntry:
        """Add tokens to a user's balance. Always succeeds for a positive amount."""
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")
        async with self._locks[user_id]:
            balance = await self.balance(user_id)
            return await self._append(user_id, amount, balance, operation, reference_id, notes)

    async def _append(
        self,
        user_id: str,
        amount: int,
        balance: int,
        operation: TokenOperation,
        reference_id: str | None,
        notes: str | None,
    ) -> TokenLedgerEntry:
        entry = TokenLedgerEntry(
            user_id=user_id,
            amount=amount,
            balance_after=balance + amount,
            operation=operation,
            reference_id=reference_id,
            notes=notes,
        )
        await self._store.append(entry)
        logger.info("Ledger %s: %+d (%s) -> %d", user_id, amount, operation.value, entry.balance_after)
        return entry

    # ==========================================================================
    # Operations
    # ==========================================================================

    def grading_cost(self, submission_count: int, include_feedback: bool = False) -> int:
        s = self._settings
        return calculate_grading_cost(
            submission_count,
            include_feedback,
            submission_cost=s.submission_token_cost,
            feedback_cost=s.feedback_token_cost,
            bulk_threshold=s.bulk_discount_threshold,
            bulk_discount_rate=s.bulk_discount_rate,
        )

    async def reserve_for_batch(
        self,
        user_id: str,
        submission_ids: list[str],
        include_feedback: bool = False,
    ) -> BatchReservation:
        """
        Debit the whole batch cost upfront.

        Raises:
            InsufficientBalance: If the user cannot afford the batch.
        """
        total = self.grading_cost(len(submission_ids), include_feedback)
        note = f"Batch grading: {len(submission_ids)} submissions" + (" with feedback" if include_feedback else "")
        entry = await self.debit(user_id, total, TokenOperation.SUBMISSION, ",".join(submission_ids), note)
        return BatchReservation(
            user_id=user_id,
            entry=entry,
            total_cost=total,
            submission_count=len(submission_ids),
            include_feedback=include_feedback,
        )

    async def refund(self, user_id: str, amount: int, reference_id: str, reason: str) -> TokenLedgerEntry:
        return await self.credit(user_id, amount, TokenOperation.REFUND, reference_id, f"Refund: {reason}")

    async def refund_failed(self, reservation: BatchReservation, failed_ids: list[str]) -> int:
        """
        Refund failed or unattempted items of a reserved batch.

        Each item is refunded at its undiscounted cost, capped at what is
        left of the reservation.

        Returns:
            Tokens refunded (0 when nothing was due).
        """
        if not failed_ids:
            return 0
        per_item = self._settings.submission_token_cost + (
            self._settings.feedback_token_cost if reservation.include_feedback else 0
        )
        amount = min(len(failed_ids) * per_item, reservation.refundable)
        if amount <= 0:
            return 0
        await self.refund(
            reservation.user_id,
            amount,
            str(reservation.entry.entry_id),
            f"{len(failed_ids)} failed submissions",
        )
        reservation.refunded += amount
        return amount

    async def issue_signup_bonus(self, user_id: str) -> TokenLedgerEntry:
        return await self.credit(
            user_id,
            self._settings.signup_bonus_tokens,
            TokenOperation.SIGNUP_BONUS,
            notes="Welcome bonus for new account",
        )

    async def admin_grant(self, user_id: str, amount: int, reason: str) -> TokenLedgerEntry:
        return await self.credit(user_id, amount, TokenOperation.ADMIN_GRANT, notes=f"Admin grant: {reason}")

    async def has_enough(self, user_id: str, cost: int) -> bool:
        return await self.balance(user_id) >= cost

    async def balance_status(self, user_id: str) -> BalanceReport:
        balance = await self.balance(user_id)
        if balance <= ZERO_BALANCE:
            status = BalanceStatus.ZERO
        elif balance <= CRITICAL_BALANCE:
            status = BalanceStatus.CRITICAL
        elif balance <= LOW_BALANCE:
            status = BalanceStatus.LOW
        else:
            status = BalanceStatus.HEALTHY
        return BalanceReport(balance=balance, status=status, can_grade=balance > ZERO_BALANCE)

    async def history(self, user_id: str, limit: int = 20) -> list[TokenLedgerEntry]:
        """Most recent entries first."""
        entries = await self._store.entries(user_id)
        return list(reversed(entries))[:limit]

    async def verify_chain(self, user_id: str) -> bool:
        """Replay a user's entries and check every balance_after."""
        running = 0
        for entry in await self._store.entries(user_id):
            running += entry.amount
            if entry.balance_after != running:
                logger.error("Ledger chain broken for %s at entry %s", user_id, entry.entry_id)
                return False
        return True
