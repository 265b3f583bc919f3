"""
Domain entities for the post analytics engine.

- EngagementEvent: append-only engagement log entry
- PostAnalyticsAggregate: daily rollup per (tenant, scheduled post, platform, date)
- ScheduledPost / ContentItem: read-only lookups owned by the publishing side
- TenantMembership: caller role within a tenant
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "AggregateKey",
    "ContentItem",
    "EngagementEvent",
    "EventType",
    "PostAnalyticsAggregate",
    "ScheduledPost",
    "TenantMembership",
    "TenantRole",
]


EventType = Literal["view", "like", "comment", "share", "click", "impression"]
TenantRole = Literal["owner", "admin", "member", "viewer"]


def _utcnow() -> datetime:
    return datetime.now(UTC)


# --- Engagement Event ---


class EngagementEvent(BaseModel):
    """
    One immutable engagement record.

    Invariants:
    - never mutated or deleted once appended
    - value >= 1
    - recorded_at is the ingestion time (drives the aggregate date);
      occurred_at is when the engagement happened on the platform
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    tenant_id: UUID
    content_item_id: UUID | None = None
    scheduled_post_id: UUID | None = None
    event_type: EventType
    platform: str
    value: int = Field(default=1, ge=1)
    external_event_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)
    recorded_at: datetime = Field(default_factory=_utcnow)


# --- Post Analytics Aggregate ---


class AggregateKey(BaseModel):
    """Natural key of an aggregate row."""

    model_config = ConfigDict(frozen=True)

    tenant_id: UUID
    scheduled_post_id: UUID
    platform: str
    date: date

    def as_tuple(self) -> tuple[UUID, UUID, str, date]:
        return (self.tenant_id, self.scheduled_post_id, self.platform, self.date)


class PostAnalyticsAggregate(BaseModel):
    """
    Daily rollup for one scheduled post on one platform.

    Exactly one row exists per (tenant_id, scheduled_post_id, platform, date).
    Rates are derived from the counters on every write.
    """

    id: UUID = Field(default_factory=uuid4)
    tenant_id: UUID
    content_item_id: UUID | None = None
    scheduled_post_id: UUID
    platform: str
    date: date

    views: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    clicks: int = 0
    impressions: int = 0

    engagement_rate: float = 0.0
    click_through_rate: float = 0.0

    # Populated by platform sync, not by the event pipeline
    unique_viewers: int = 0
    reach: int = 0

    created_at: datetime = Field(default_factory=_utcnow)
    last_updated: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> AggregateKey:
        return AggregateKey(
            tenant_id=self.tenant_id,
            scheduled_post_id=self.scheduled_post_id,
            platform=self.platform,
            date=self.date,
        )


# --- Lookups ---


class ContentItem(BaseModel):
    """Generated content item (display enrichment only)."""

    id: UUID
    tenant_id: UUID
    type: str = "post"
    platform: str
    text_content: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class ScheduledPost(BaseModel):
    """Platform posting instance of a content item."""

    id: UUID
    tenant_id: UUID
    content_item_id: UUID
    platform: str
    scheduled_at: datetime
    published_at: datetime | None = None
    status: Literal["scheduled", "published", "failed", "cancelled"] = "scheduled"


class TenantMembership(BaseModel):
    """A user's role within a tenant."""

    tenant_id: UUID
    user_id: UUID
    role: TenantRole = "member"
