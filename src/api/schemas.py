from dataclasses import asdict
from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.components.analytics import (
    OverviewOutput,
    RebuildOutput,
    RecordEventOutput,
    TopPostItem,
    TopPostsOutput,
)
from src.core.entities import PostAnalyticsAggregate


class CamelModel(BaseModel):
    """Snake-case fields, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Requests ---
class RecordEventRequest(CamelModel):
    # Loosely typed so the analytics validators report field errors (400)
    tenant_id: str | None = None
    event_type: str | None = None
    platform: str | None = None
    value: Any = 1
    content_item_id: str | None = None
    scheduled_post_id: str | None = None
    external_event_id: Any = None
    metadata: Any = None
    occurred_at: str | None = None


# --- Responses ---
class RecordEventResponse(CamelModel):
    ok: bool = True
    event_id: UUID
    duplicate: bool = False
    aggregated: bool = False


class AggregateMetrics(CamelModel):
    views: int
    likes: int
    comments: int
    shares: int
    clicks: int
    impressions: int
    engagement_rate: float
    click_through_rate: float
    reach: int


class AggregateRecord(CamelModel):
    id: UUID
    content_item_id: UUID | None
    scheduled_post_id: UUID
    platform: str
    date: date
    views: int
    likes: int
    comments: int
    shares: int
    clicks: int
    impressions: int
    engagement_rate: float
    click_through_rate: float
    unique_viewers: int
    reach: int
    last_updated: datetime


class Totals(CamelModel):
    views: int
    likes: int
    comments: int
    shares: int
    clicks: int
    impressions: int
    reach: int


class Averages(CamelModel):
    engagement_rate: float
    click_through_rate: float
    weighted_engagement_rate: float
    weighted_click_through_rate: float


class PlatformGroup(CamelModel):
    platform: str
    views: int
    likes: int
    comments: int
    shares: int
    clicks: int
    impressions: int
    posts_count: int


class OverviewResponse(CamelModel):
    totals: Totals
    averages: Averages
    by_platform: list[PlatformGroup]
    records: list[AggregateRecord]


class ContentSummaryModel(CamelModel):
    type: str
    text_content: str
    platform: str
    created_at: datetime


class ScheduleInfoModel(CamelModel):
    scheduled_at: datetime
    published_at: datetime | None
    status: str


class TopPostModel(CamelModel):
    id: UUID
    content_item_id: UUID | None
    scheduled_post_id: UUID
    platform: str
    date: date
    metrics: AggregateMetrics
    content: ContentSummaryModel | None = None
    schedule_info: ScheduleInfoModel | None = None


class TopPostsResponse(CamelModel):
    metric: str
    posts: list[TopPostModel]


class RebuildResponse(CamelModel):
    ok: bool = True
    events_replayed: int
    events_skipped: int
    rows_written: int


# --- Mapping ---
def record_event_response(out: RecordEventOutput) -> RecordEventResponse:
    return RecordEventResponse(
        event_id=out.event_id,
        duplicate=out.duplicate,
        aggregated=out.aggregated,
    )


def aggregate_record(row: PostAnalyticsAggregate) -> AggregateRecord:
    return AggregateRecord.model_validate(row.model_dump())


def overview_response(out: OverviewOutput) -> OverviewResponse:
    return OverviewResponse(
        totals=Totals.model_validate(asdict(out.totals)),
        averages=Averages.model_validate(asdict(out.averages)),
        by_platform=[PlatformGroup.model_validate(asdict(g)) for g in out.by_platform],
        records=[aggregate_record(r) for r in out.records],
    )


def top_post(item: TopPostItem) -> TopPostModel:
    row = item.aggregate
    return TopPostModel(
        id=row.id,
        content_item_id=row.content_item_id,
        scheduled_post_id=row.scheduled_post_id,
        platform=row.platform,
        date=row.date,
        metrics=AggregateMetrics.model_validate(row.model_dump()),
        content=ContentSummaryModel.model_validate(asdict(item.content)) if item.content else None,
        schedule_info=(
            ScheduleInfoModel.model_validate(asdict(item.schedule_info))
            if item.schedule_info
            else None
        ),
    )


def top_posts_response(out: TopPostsOutput) -> TopPostsResponse:
    return TopPostsResponse(metric=to_camel(out.metric), posts=[top_post(i) for i in out.items])


def rebuild_response(out: RebuildOutput) -> RebuildResponse:
    return RebuildResponse(
        events_replayed=out.events_replayed,
        events_skipped=out.events_skipped,
        rows_written=out.rows_written,
    )
