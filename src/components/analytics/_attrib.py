"""
AttributionResolver - map an event to its scheduled post and content item.

Key behaviors:
- scheduled_post_id is the only thing that makes an event aggregatable
- content_item_id is filled from the scheduled post when the event omits it
- lookups are tenant-scoped; another tenant's post id resolves to nothing
- events without a scheduled post are logged as attribution gaps, not raised
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from src.core.entities import ContentItem, EngagementEvent, ScheduledPost

from .models import AttributionGapError
from .ports import AttributionLookupPort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attribution:
    """Resolved owner of an event."""

    scheduled_post_id: UUID
    content_item_id: UUID | None = None


class InMemoryAttributionLookup:
    """In-memory scheduled post / content item tables for testing/dev."""

    def __init__(self) -> None:
        self._posts: dict[UUID, ScheduledPost] = {}
        self._items: dict[UUID, ContentItem] = {}

    def add_post(self, post: ScheduledPost) -> ScheduledPost:
        self._posts[post.id] = post
        return post

    def add_content_item(self, item: ContentItem) -> ContentItem:
        self._items[item.id] = item
        return item

    def get_scheduled_post(self, tenant_id: UUID, post_id: UUID) -> ScheduledPost | None:
        post = self._posts.get(post_id)
        if post is None or post.tenant_id != tenant_id:
            return None
        return post

    def get_content_item(self, tenant_id: UUID, item_id: UUID) -> ContentItem | None:
        item = self._items.get(item_id)
        if item is None or item.tenant_id != tenant_id:
            return None
        return item


class AttributionResolver:
    """Resolves the aggregation target of an engagement event."""

    def __init__(self, lookup: AttributionLookupPort | None = None) -> None:
        self._lookup = lookup

    def resolve(self, event: EngagementEvent) -> Attribution | None:
        """
        Resolve an event's owning scheduled post and content item.

        Returns None (after logging the gap) when the event cannot be
        aggregated.
        """
        if event.scheduled_post_id is None:
            gap = AttributionGapError(event.id)
            logger.warning("%s (tenant=%s)", gap, event.tenant_id)
            return None

        content_item_id = event.content_item_id
        if content_item_id is None and self._lookup is not None:
            post = self._lookup.get_scheduled_post(event.tenant_id, event.scheduled_post_id)
            if post is not None:
                content_item_id = post.content_item_id
            else:
                logger.info(
                    "Scheduled post %s not found for tenant %s; aggregating without content item",
                    event.scheduled_post_id,
                    event.tenant_id,
                )

        return Attribution(
            scheduled_post_id=event.scheduled_post_id,
            content_item_id=content_item_id,
        )
