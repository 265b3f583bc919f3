"""
Analytics component input/output models and error types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any
from uuid import UUID

from src.core.entities import PostAnalyticsAggregate

# --- Field Errors ---


@dataclass(frozen=True)
class AnalyticsValidationError:
    """Single field-level validation failure."""

    code: str
    message: str
    field_name: str | None = None


# --- Exceptions ---


class AnalyticsError(Exception):
    """Base analytics error."""

    pass


class ValidationError(AnalyticsError):
    """Malformed input. Terminal, never retried."""

    def __init__(self, errors: list[AnalyticsValidationError]) -> None:
        self.errors = errors
        summary = "; ".join(e.message for e in errors) or "invalid input"
        super().__init__(f"Validation failed: {summary}")

    @classmethod
    def single(cls, code: str, message: str, field_name: str | None = None) -> ValidationError:
        return cls([AnalyticsValidationError(code=code, message=message, field_name=field_name)])


class AccessDeniedError(AnalyticsError):
    """Caller is not a member of the tenant (or lacks the role)."""

    def __init__(self, tenant_id: UUID, caller_id: UUID | None, reason: str = "not a member") -> None:
        self.tenant_id = tenant_id
        self.caller_id = caller_id
        self.reason = reason
        super().__init__(f"Access denied to tenant {tenant_id}: {reason}")


class AttributionGapError(AnalyticsError):
    """Event has no resolvable scheduled post. Logged, never raised to callers."""

    def __init__(self, event_id: UUID) -> None:
        self.event_id = event_id
        super().__init__(f"Event {event_id} has no scheduled post; aggregation skipped")


class ConcurrencyConflictError(AnalyticsError):
    """A concurrent writer holds the aggregate row."""

    def __init__(self, key: object) -> None:
        self.key = key
        super().__init__(f"Concurrent update conflict on {key}")


class StorageError(AnalyticsError):
    """Persistence failure."""

    pass


# --- Inputs ---


@dataclass(frozen=True)
class RecordEventInput:
    """Raw engagement event as supplied by a webhook or API caller."""

    tenant_id: UUID
    event_type: str
    platform: str
    value: Any = 1
    content_item_id: UUID | None = None
    scheduled_post_id: UUID | None = None
    external_event_id: str | None = None
    metadata: dict[str, Any] | None = None
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class OverviewInput:
    """Filter for the overview query."""

    tenant_id: UUID
    start_date: date | None = None
    end_date: date | None = None
    platform: str | None = None


@dataclass(frozen=True)
class TopPostsInput:
    """Filter and ranking for the top posts query."""

    tenant_id: UUID
    metric: str = "engagement_rate"
    limit: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    platform: str | None = None


@dataclass(frozen=True)
class RebuildInput:
    """Replay a tenant's event log into fresh aggregates."""

    tenant_id: UUID


# --- Outputs ---


@dataclass(frozen=True)
class RecordEventOutput:
    """Result of recording one event."""

    event_id: UUID
    duplicate: bool = False
    aggregated: bool = False
    aggregate: PostAnalyticsAggregate | None = None


@dataclass(frozen=True)
class MetricTotals:
    """Summed counters across matched rows."""

    views: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    clicks: int = 0
    impressions: int = 0
    reach: int = 0


@dataclass(frozen=True)
class MetricAverages:
    """Per-row mean rates plus impression-weighted rates."""

    engagement_rate: float = 0.0
    click_through_rate: float = 0.0
    weighted_engagement_rate: float = 0.0
    weighted_click_through_rate: float = 0.0


@dataclass(frozen=True)
class PlatformBreakdown:
    """Per-platform sums. posts_count counts rows (post-platform-days)."""

    platform: str
    views: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    clicks: int = 0
    impressions: int = 0
    posts_count: int = 0


@dataclass(frozen=True)
class OverviewOutput:
    """Totals, averages and platform grouping for a tenant filter."""

    totals: MetricTotals
    averages: MetricAverages
    by_platform: tuple[PlatformBreakdown, ...]
    records: tuple[PostAnalyticsAggregate, ...] = ()


@dataclass(frozen=True)
class ContentSummary:
    type: str
    text_content: str
    platform: str
    created_at: datetime


@dataclass(frozen=True)
class ScheduleInfo:
    scheduled_at: datetime
    published_at: datetime | None
    status: str


@dataclass(frozen=True)
class TopPostItem:
    """One ranked aggregate row with display enrichment."""

    aggregate: PostAnalyticsAggregate
    content: ContentSummary | None = None
    schedule_info: ScheduleInfo | None = None


@dataclass(frozen=True)
class TopPostsOutput:
    """Ranked aggregate rows."""

    metric: str
    items: tuple[TopPostItem, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RebuildOutput:
    """Replay summary."""

    events_replayed: int
    events_skipped: int
    rows_written: int
