"""
AggregateQueryService - dashboard reads over persisted aggregates.

Never reads the raw event log.

Key behaviors:
- Every query is filtered by tenant first
- Totals are plain sums (reach included)
- Average rates are the mean of per-row rates; weighted rates come from
  summed counters and are reported alongside
- Platform groups count rows (post-platform-days), not distinct posts
- Top posts sort by metric desc, date desc, row id asc
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from uuid import UUID

from src.core.entities import PostAnalyticsAggregate

from ._metrics import COUNTER_FIELDS, RATE_FIELDS, derive_rates, mean_rate
from .models import (
    ContentSummary,
    MetricAverages,
    MetricTotals,
    OverviewOutput,
    PlatformBreakdown,
    ScheduleInfo,
    TopPostItem,
    TopPostsOutput,
    ValidationError,
)
from .ports import AggregateStorePort, AttributionLookupPort

RANKABLE_METRICS: frozenset[str] = frozenset(COUNTER_FIELDS + RATE_FIELDS)
DEFAULT_METRIC = "engagement_rate"

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass(frozen=True)
class QueryConfig:
    """Query configuration."""

    allowed_platforms: frozenset[str] | None = None
    top_posts_default_limit: int = 10
    top_posts_max_limit: int = 100
    clamp_rates: bool = True


DEFAULT_CONFIG = QueryConfig()


def normalize_metric(metric: str | None) -> str:
    """Map a requested metric (snake or camel case) to a rankable field."""
    if not metric:
        return DEFAULT_METRIC
    name = _CAMEL.sub("_", metric.strip()).lower()
    return name if name in RANKABLE_METRICS else DEFAULT_METRIC


def rank_key(metric: str) -> Callable[[PostAnalyticsAggregate], tuple[float, int, str]]:
    """Sort key: metric desc, then date desc, then id asc."""

    def key(row: PostAnalyticsAggregate) -> tuple[float, int, str]:
        return (-float(getattr(row, metric)), -row.date.toordinal(), str(row.id))

    return key


def summarize(rows: list[PostAnalyticsAggregate], clamp_rates: bool = True) -> tuple[
    MetricTotals, MetricAverages, tuple[PlatformBreakdown, ...]
]:
    """Totals, averages and per-platform sums for a set of rows."""
    sums = {name: 0 for name in (*COUNTER_FIELDS, "reach")}
    groups: dict[str, dict[str, int]] = {}

    for row in rows:
        for name in sums:
            sums[name] += getattr(row, name)

        group = groups.setdefault(row.platform, {name: 0 for name in (*COUNTER_FIELDS, "posts_count")})
        for name in COUNTER_FIELDS:
            group[name] += getattr(row, name)
        group["posts_count"] += 1

    weighted = derive_rates(
        likes=sums["likes"],
        comments=sums["comments"],
        shares=sums["shares"],
        clicks=sums["clicks"],
        impressions=sums["impressions"],
        clamp=clamp_rates,
        context="overview",
    )

    totals = MetricTotals(**sums)
    averages = MetricAverages(
        engagement_rate=mean_rate([r.engagement_rate for r in rows]),
        click_through_rate=mean_rate([r.click_through_rate for r in rows]),
        weighted_engagement_rate=weighted.engagement_rate,
        weighted_click_through_rate=weighted.click_through_rate,
    )
    by_platform = tuple(
        PlatformBreakdown(platform=platform, **groups[platform]) for platform in sorted(groups)
    )
    return totals, averages, by_platform


class AggregateQueryService:
    """Read-side service for aggregate rows."""

    def __init__(
        self,
        store: AggregateStorePort,
        lookup: AttributionLookupPort | None = None,
        config: QueryConfig | None = None,
    ) -> None:
        self._store = store
        self._lookup = lookup
        self._config = config or DEFAULT_CONFIG

    def _validate_filter(
        self,
        start_date: date | None,
        end_date: date | None,
        platform: str | None,
    ) -> None:
        if start_date is not None and end_date is not None and start_date > end_date:
            raise ValidationError.single(
                "invalid_date_range", "startDate must not be after endDate", "start_date"
            )
        allowed = self._config.allowed_platforms
        if platform is not None and allowed is not None and platform not in allowed:
            raise ValidationError.single(
                "invalid_platform", f"Platform '{platform}' is not supported", "platform"
            )

    def _rows(
        self,
        tenant_id: UUID,
        start_date: date | None,
        end_date: date | None,
        platform: str | None,
    ) -> list[PostAnalyticsAggregate]:
        self._validate_filter(start_date, end_date, platform)
        rows = self._store.query(
            tenant_id=tenant_id,
            start_date=start_date,
            end_date=end_date,
            platform=platform,
        )
        # the store is trusted, but a cross-tenant row must never leak
        return [r for r in rows if r.tenant_id == tenant_id]

    def overview(
        self,
        tenant_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        platform: str | None = None,
    ) -> OverviewOutput:
        """Totals, averages and platform breakdown for the filter."""
        rows = self._rows(tenant_id, start_date, end_date, platform)
        totals, averages, by_platform = summarize(rows, clamp_rates=self._config.clamp_rates)
        records = sorted(rows, key=lambda r: (-r.date.toordinal(), str(r.id)))
        return OverviewOutput(
            totals=totals,
            averages=averages,
            by_platform=by_platform,
            records=tuple(records),
        )

    def resolve_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._config.top_posts_default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError.single("invalid_limit", "limit must be a positive integer", "limit")
        return min(limit, self._config.top_posts_max_limit)

    def top_posts(
        self,
        tenant_id: UUID,
        metric: str | None = DEFAULT_METRIC,
        limit: int | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        platform: str | None = None,
    ) -> TopPostsOutput:
        """Rows ranked by metric, truncated to limit, with display enrichment."""
        resolved_metric = normalize_metric(metric)
        resolved_limit = self.resolve_limit(limit)
        rows = self._rows(tenant_id, start_date, end_date, platform)

        ranked = sorted(rows, key=rank_key(resolved_metric))[:resolved_limit]
        items = tuple(self._enrich(row) for row in ranked)
        return TopPostsOutput(metric=resolved_metric, items=items)

    def _enrich(self, row: PostAnalyticsAggregate) -> TopPostItem:
        if self._lookup is None:
            return TopPostItem(aggregate=row)

        content = None
        if row.content_item_id is not None:
            item = self._lookup.get_content_item(row.tenant_id, row.content_item_id)
            if item is not None:
                content = ContentSummary(
                    type=item.type,
                    text_content=item.text_content,
                    platform=item.platform,
                    created_at=item.created_at,
                )

        schedule = None
        post = self._lookup.get_scheduled_post(row.tenant_id, row.scheduled_post_id)
        if post is not None:
            schedule = ScheduleInfo(
                scheduled_at=post.scheduled_at,
                published_at=post.published_at,
                status=post.status,
            )

        return TopPostItem(aggregate=row, content=content, schedule_info=schedule)
