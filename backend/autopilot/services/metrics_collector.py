"""
Metrics collector interface for published posts.

A collector returns one flat snapshot (views, comments, shares, engagement,
time on page, organic traffic, CTR, bounce rate) for a destination post.
Real analytics collection lives outside this package; the simulated
collector produces stable pseudo-random numbers per (post, period).
"""
from __future__ import annotations

import hashlib
import random
from abc import ABC, abstractmethod
from typing import Any

from autopilot.schemas import CollectedMetrics


def _safe_int(val) -> int:
    try:
        return int(val)
    except (ValueError, TypeError):
        return 0


def _safe_float(val) -> float:
    try:
        return float(val)
    except (ValueError, TypeError):
        return 0.0


def metrics_from_payload(payload: dict[str, Any]) -> CollectedMetrics:
    """Coerce a raw analytics payload (camelCase or snake_case keys)."""
    def pick(*keys: str):
        for key in keys:
            if payload.get(key) is not None:
                return payload[key]
        return None

    return CollectedMetrics(
        views=_safe_int(pick("views")),
        comments=_safe_int(pick("comments")),
        shares=_safe_int(pick("shares")),
        engagement_rate=_safe_float(pick("engagement_rate", "engagementRate")),
        avg_time_on_page=_safe_float(pick("avg_time_on_page", "averageTimeOnPage")),
        organic_traffic=_safe_int(pick("organic_traffic", "organicTraffic")),
        click_through_rate=_safe_float(pick("click_through_rate", "clickThroughRate")),
        bounce_rate=_safe_float(pick("bounce_rate", "bounceRate")),
    )


class MetricsCollector(ABC):
    @abstractmethod
    async def fetch(self, external_post_id: str, *, site_id: str | None = None, period: str | None = None) -> CollectedMetrics:
        ...


class SimulatedMetricsCollector(MetricsCollector):
    """Deterministic stand-in until a real analytics source is wired in."""

    async def fetch(self, external_post_id: str, *, site_id: str | None = None, period: str | None = None) -> CollectedMetrics:
        seed = hashlib.sha256(f"{site_id}:{external_post_id}:{period}".encode()).hexdigest()
        rng = random.Random(seed)
        return CollectedMetrics(
            views=rng.randint(100, 1099),
            comments=rng.randint(0, 19),
            shares=rng.randint(0, 49),
            engagement_rate=round(rng.uniform(0.02, 0.12), 4),
            avg_time_on_page=float(rng.randint(60, 239)),
            organic_traffic=rng.randint(50, 549),
            click_through_rate=round(rng.uniform(0.01, 0.06), 4),
            bounce_rate=round(rng.uniform(0.4, 0.7), 4),
        )
