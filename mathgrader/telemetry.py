"""
Telemetry services: analytics, cost tracking and review-rate tracking.

These are plain objects constructed by the caller and passed into the
orchestrator, never module-level singletons, so tests can hand in their own.
"""

import asyncio
import logging
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field

from mathgrader.models import (
    CostBreakdown,
    CostEvent,
    GradingAnalyticsEvent,
    ProviderAnalyticsEvent,
    ReviewEntry,
    ReviewMetrics,
)

logger = logging.getLogger(__name__)

# Per-call cost estimates in USD
DEFAULT_COST_TABLE: dict[str, float] = {
    "ocr": 0.004,
    "solve": 0.015,
    "symbolic": 0.02,
    "chain_of_thought": 0.015,
    "feedback": 0.015,
}

# Cost event kind -> CostBreakdown field
_BREAKDOWN_FIELD = {
    "ocr": "ocr",
    "solve": "solve",
    "symbolic": "verification",
    "chain_of_thought": "verification",
    "feedback": "feedback",
}

MIN_SAMPLES_FOR_ALERT = 10


# ==============================================================================
# Analytics
# ==============================================================================


class Analytics:
    """
    Records grading, provider and cost events.

    Events are kept in bounded in-memory buffers and logged; a disabled
    instance drops everything.
    """

    def __init__(self, enabled: bool = True, max_events: int = 1000):
        self.enabled = enabled
        self.grading_events: deque[GradingAnalyticsEvent] = deque(maxlen=max_events)
        self.provider_events: deque[ProviderAnalyticsEvent] = deque(maxlen=max_events)
        self.cost_events: deque[CostEvent] = deque(maxlen=max_events)

    def track_grading(self, event: GradingAnalyticsEvent) -> None:
        if not self.enabled:
            return
        self.grading_events.append(event)
        logger.info(
            "Graded %s: difficulty=%s success=%s review=%s latency=%dms provider=%s",
            event.submission_id,
            event.difficulty.value,
            event.success,
            event.needs_review,
            event.latency_ms,
            event.provider,
        )

    def track_provider(self, event: ProviderAnalyticsEvent) -> None:
        if not self.enabled:
            return
        self.provider_events.append(event)
        if not event.success:
            logger.info("Provider %s failed (%s) after %dms", event.provider, event.error_type, event.latency_ms)

    def track_cost(self, event: CostEvent) -> None:
        if not self.enabled:
            return
        self.cost_events.append(event)

    def provider_success_rate(self, provider: str) -> float | None:
        events = [e for e in self.provider_events if e.provider == provider]
        if not events:
            return None
        return sum(1 for e in events if e.success) / len(events)


# ==============================================================================
# Cost Tracking
# ==============================================================================


class CostTracker:
    """
    Per-call costs, summed per submission into a CostBreakdown.

    Events cover the latest grading run of a submission only: the orchestrator
    calls ``reset`` when a run starts. At most ``max_submissions`` submissions
    are kept, oldest evicted first.
    """

    def __init__(
        self,
        enabled: bool = True,
        cost_table: dict[str, float] | None = None,
        analytics: Analytics | None = None,
        max_submissions: int = 1000,
    ):
        self.enabled = enabled
        self._costs = dict(DEFAULT_COST_TABLE if cost_table is None else cost_table)
        self._analytics = analytics
        self._max_submissions = max_submissions
        self._events: OrderedDict[str, list[CostEvent]] = OrderedDict()

    def reset(self, submission_id: str) -> None:
        """Forget earlier runs of a submission."""
        self._events.pop(submission_id, None)

    def record(
        self,
        submission_id: str,
        kind: str,
        provider: str,
        tokens_used: int | None = None,
        latency_ms: int = 0,
    ) -> CostEvent | None:
        """
        Record one provider call.

        Args:
            submission_id: Submission the call belongs to.
            kind: ``ocr``, ``solve``, ``symbolic``, ``chain_of_thought`` or ``feedback``.
            provider: Provider name.
            tokens_used: Model tokens, when the provider reports them.
            latency_ms: Call latency.

        Returns:
            The recorded event, or None when tracking is disabled.
        """
        if not self.enabled:
            return None
        event = CostEvent(
            submission_id=submission_id,
            provider=provider,
            kind=kind,
            cost=self._costs.get(kind, 0.0),
            tokens_used=tokens_used,
            latency_ms=latency_ms,
        )
        if submission_id not in self._events:
            self._events[submission_id] = []
            while len(self._events) > self._max_submissions:
                self._events.popitem(last=False)
        self._events[submission_id].append(event)
        if self._analytics is not None:
            self._analytics.track_cost(event)
        return event

    def events_for(self, submission_id: str) -> list[CostEvent]:
        return list(self._events.get(submission_id, []))

    def breakdown(self, submission_id: str) -> CostBreakdown:
        totals = {"ocr": 0.0, "solve": 0.0, "verification": 0.0, "feedback": 0.0}
        for event in self._events.get(submission_id, []):
            target = _BREAKDOWN_FIELD.get(event.kind)
            if target is not None:
                totals[target] += event.cost
        breakdown = CostBreakdown(**{k: round(v, 6) for k, v in totals.items()})
        if self.enabled and breakdown.total > 0:
            logger.info(
                "[COST] %s: ocr=$%.4f solve=$%.4f verification=$%.4f feedback=$%.4f total=$%.4f",
                submission_id,
                breakdown.ocr,
                breakdown.solve,
                breakdown.verification,
                breakdown.feedback,
                breakdown.total,
            )
        return breakdown


# ==============================================================================
# Review Rate Tracking
# ==============================================================================


@dataclass
class _Bucket:
    total: int = 0
    flagged: int = 0
    by_reason: dict[str, int] = field(default_factory=dict)
    by_difficulty_total: dict[str, int] = field(default_factory=dict)
    by_difficulty_flagged: dict[str, int] = field(default_factory=dict)


class ReviewTracker:
    """
    Sliding-window review-rate counter.

    Counts are kept in one bucket per minute; buckets older than the window
    are dropped lazily whenever the tracker is read or written. An alert
    callback fires when the review rate exceeds the threshold with at least
    ``MIN_SAMPLES_FOR_ALERT`` samples in the window.
    """

    def __init__(
        self,
        window_minutes: int = 60,
        alert_threshold: float = 0.15,
        on_alert: Callable[[ReviewMetrics], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.window_minutes = window_minutes
        self.alert_threshold = alert_threshold
        self._on_alert = on_alert
        self._clock = clock
        self._buckets: dict[int, _Bucket] = {}
        self._monitor: asyncio.Task[None] | None = None

    def _minute(self) -> int:
        return int(self._clock() // 60)

    def _evict(self) -> None:
        oldest = self._minute() - self.window_minutes + 1
        for key in [k for k in self._buckets if k < oldest]:
            del self._buckets[key]

    def record(self, entry: ReviewEntry) -> None:
        self._evict()
        bucket = self._buckets.setdefault(self._minute(), _Bucket())
        bucket.total += 1
        difficulty = entry.difficulty.value
        bucket.by_difficulty_total[difficulty] = bucket.by_difficulty_total.get(difficulty, 0) + 1
        if entry.needs_review:
            bucket.flagged += 1
            bucket.by_difficulty_flagged[difficulty] = bucket.by_difficulty_flagged.get(difficulty, 0) + 1
            for reason in entry.reasons:
                bucket.by_reason[reason.value] = bucket.by_reason.get(reason.value, 0) + 1

        metrics = self.metrics()
        if metrics.alert and self._on_alert is not None:
            self._on_alert(metrics)

    def metrics(self) -> ReviewMetrics:
        """Aggregate the current window."""
        self._evict()
        total = flagged = 0
        by_reason: dict[str, int] = {}
        diff_total: dict[str, int] = {}
        diff_flagged: dict[str, int] = {}
        for bucket in self._buckets.values():
            total += bucket.total
            flagged += bucket.flagged
            for key, count in bucket.by_reason.items():
                by_reason[key] = by_reason.get(key, 0) + count
            for key, count in bucket.by_difficulty_total.items():
                diff_total[key] = diff_total.get(key, 0) + count
            for key, count in bucket.by_difficulty_flagged.items():
                diff_flagged[key] = diff_flagged.get(key, 0) + count

        rate = flagged / total if total else 0.0
        return ReviewMetrics(
            total=total,
            flagged=flagged,
            review_rate=rate,
            by_reason=by_reason,
            by_difficulty={k: diff_flagged.get(k, 0) / n for k, n in diff_total.items()},
            window_minutes=self.window_minutes,
            alert=total >= MIN_SAMPLES_FOR_ALERT and rate > self.alert_threshold,
        )

    # ==========================================================================
    # Monitor lifecycle
    # ==========================================================================

    def start(self, interval_seconds: float = 300.0) -> None:
        """Start a background task that logs the review rate periodically."""
        if self._monitor is not None and not self._monitor.done():
            return
        self._monitor = asyncio.get_running_loop().create_task(self._run_monitor(interval_seconds))

    async def stop(self) -> None:
        if self._monitor is None:
            return
        self._monitor.cancel()
        try:
            await self._monitor
        except asyncio.CancelledError:
            pass
        self._monitor = None

    @property
    def running(self) -> bool:
        return self._monitor is not None and not self._monitor.done()

    async def _run_monitor(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            metrics = self.metrics()
            level = logging.WARNING if metrics.alert else logging.INFO
            logger.log(
                level,
                "Review rate %.1f%% (%d/%d in last %d min)",
                metrics.review_rate * 100,
                metrics.flagged,
                metrics.total,
                metrics.window_minutes,
            )
