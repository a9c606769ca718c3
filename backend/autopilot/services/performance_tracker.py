"""
Performance tracker: delayed checkpoints after publishing.

Each published item gets a `performance:{content_id}` record (TTL 30d) and,
when tracking is enabled, checkpoints at +24h, +7d and +30d on the
`tracking` pool. A checkpoint pulls fresh metrics once per period, appends
to the tracking history and, for high performers, adds one fine-tuning
entry per (content_id, period) to the append-only `finetuning_dataset`.

High performer: views > 500, engagement_rate > 0.05, quality_score > 80.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable

from autopilot.errors import NotFoundError
from autopilot.schemas import (
    ContentPerformanceMetrics,
    EngagementMetrics,
    FineTuningEntry,
    SeoMetrics,
    TrackingEntry,
    utcnow,
)
from autopilot.services.content_library import ApprovedContentStore
from autopilot.services.job_store import JobStore
from autopilot.services.metrics_collector import MetricsCollector
from autopilot.settings import Settings

logger = logging.getLogger(__name__)

HOUR_MS = 3600 * 1000
TRACKING_PERIODS: tuple[tuple[str, int], ...] = (
    ("24h", 24 * HOUR_MS),
    ("7d", 7 * 24 * HOUR_MS),
    ("30d", 30 * 24 * HOUR_MS),
)

FINETUNING_DATASET_KEY = "finetuning_dataset"
MAX_DATASET_LIMIT = 100

HIGH_VIEWS = 500
HIGH_ENGAGEMENT = 0.05
HIGH_QUALITY_SCORE = 80

BASE_RATING = 5
VIEWS_BONUS = ((1000, 3), (500, 2), (200, 1))
ENGAGEMENT_BONUS = ((0.08, 2), (0.05, 1))


def performance_key(content_id: str) -> str:
    return f"performance:{content_id}"


def is_high_performing(metrics: ContentPerformanceMetrics) -> bool:
    current = metrics.current_metrics
    if current is None:
        return False
    return (
        current.views > HIGH_VIEWS
        and current.engagement_rate > HIGH_ENGAGEMENT
        and metrics.quality_score > HIGH_QUALITY_SCORE
    )


def _bonus(value: float, steps: tuple[tuple[float, int], ...]) -> int:
    for threshold, points in steps:
        if value > threshold:
            return points
    return 0


def quality_rating(metrics: ContentPerformanceMetrics) -> int:
    current = metrics.current_metrics
    if current is None:
        return BASE_RATING
    rating = (
        BASE_RATING
        + _bonus(current.views, VIEWS_BONUS)
        + _bonus(current.engagement_rate, ENGAGEMENT_BONUS)
    )
    return max(0, min(10, rating))


def summarize_dataset(entries: Iterable[FineTuningEntry]) -> dict[str, Any]:
    """Totals, average rating, provider mix and rating buckets."""
    entries = list(entries)
    providers: dict[str, int] = {}
    buckets = {"high": 0, "medium": 0, "low": 0}
    for entry in entries:
        provider = entry.performance_metrics.ai_provider or "unknown"
        providers[provider] = providers.get(provider, 0) + 1
        if entry.quality_rating >= 8:
            buckets["high"] += 1
        elif entry.quality_rating >= 6:
            buckets["medium"] += 1
        else:
            buckets["low"] += 1

    total = len(entries)
    average = round(sum(e.quality_rating for e in entries) / total, 2) if total else 0.0
    return {
        "total_entries": total,
        "average_quality_rating": average,
        "provider_distribution": providers,
        "rating_distribution": buckets,
    }


class PerformanceTracker:
    def __init__(
        self,
        store: JobStore,
        collector: MetricsCollector,
        content_store: ApprovedContentStore,
        settings: Settings,
    ):
        self._store = store
        self._collector = collector
        self._content_store = content_store
        self._settings = settings

    async def record_publication(self, metrics: ContentPerformanceMetrics) -> None:
        await self._store.set(
            performance_key(metrics.content_id),
            metrics.model_dump(mode="json"),
            self._settings.performance_ttl_sec,
        )

    async def get_performance_metrics(self, content_id: str) -> ContentPerformanceMetrics | None:
        raw = await self._store.get(performance_key(content_id))
        if raw is None:
            return None
        return ContentPerformanceMetrics.model_validate(raw)

    async def track_content_performance(self, content_id: str, external_post_id: str, period: str) -> dict[str, Any]:
        metrics = await self.get_performance_metrics(content_id)
        if metrics is None:
            logger.warning(f"[tracking] No performance record for {content_id}, skipping {period}")
            return {"status": "skipped", "reason": "metrics_not_found"}

        if metrics.has_period(period):
            logger.info(f"[tracking] {content_id} already tracked for {period}, skipping pull")
        else:
            collected = await self._collector.fetch(external_post_id, site_id=metrics.site_id, period=period)

            def apply(raw: dict) -> tuple[dict, ContentPerformanceMetrics]:
                record = ContentPerformanceMetrics.model_validate(raw)
                if not record.has_period(period):
                    now = utcnow()
                    current = EngagementMetrics(
                        views=collected.views,
                        comments=collected.comments,
                        shares=collected.shares,
                        engagement_rate=collected.engagement_rate,
                        avg_time_on_page=collected.avg_time_on_page,
                    )
                    record.current_metrics = current
                    record.seo_metrics = SeoMetrics(
                        organic_traffic=collected.organic_traffic,
                        click_through_rate=collected.click_through_rate,
                        bounce_rate=collected.bounce_rate,
                    )
                    record.tracking_history.append(TrackingEntry(period=period, tracked_at=now, metrics=current))
                    record.last_tracked_at = now
                return record.model_dump(mode="json"), record

            try:
                metrics = await self._store.update(
                    performance_key(content_id), apply, self._settings.performance_ttl_sec,
                )
            except NotFoundError:
                logger.warning(f"[tracking] Performance record for {content_id} expired mid-update")
                return {"status": "skipped", "reason": "metrics_not_found"}

            current = metrics.current_metrics
            logger.info(
                f"[tracking] {content_id} ({period}): views={current.views if current else 0} "
                f"engagement={current.engagement_rate if current else 0:.3f}"
            )

        added = False
        if is_high_performing(metrics):
            added = await self._add_to_dataset(metrics, period)
        return {"status": "tracked", "period": period, "high_performing": is_high_performing(metrics), "dataset_added": added}

    async def _add_to_dataset(self, metrics: ContentPerformanceMetrics, period: str) -> bool:
        content = await self._content_store.get_by_id(metrics.content_id)
        if content is None:
            logger.warning(f"[tracking] Content {metrics.content_id} gone, not adding to dataset")
            return False
        entry = FineTuningEntry(
            content_id=metrics.content_id,
            period=period,
            content=content.model_dump(mode="json"),
            performance_metrics=metrics,
            quality_rating=quality_rating(metrics),
        )
        added = await self._store.append_unique(
            FINETUNING_DATASET_KEY,
            f"{metrics.content_id}:{period}",
            entry.model_dump(mode="json"),
        )
        if added:
            logger.info(f"[tracking] Added {metrics.content_id} ({period}) to fine-tuning dataset, rating={entry.quality_rating}")
        return added

    async def get_fine_tuning_dataset(self, limit: int = MAX_DATASET_LIMIT) -> list[FineTuningEntry]:
        """Newest first; limit is clamped to 1..100."""
        limit = max(1, min(int(limit), MAX_DATASET_LIMIT))
        raw = await self._store.list_range(FINETUNING_DATASET_KEY, 0, limit - 1)
        return [FineTuningEntry.model_validate(item) for item in raw]
