"""
Analytics component port definitions.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager
from datetime import date, datetime
from typing import Any, Protocol
from uuid import UUID

from src.core.entities import (
    AggregateKey,
    ContentItem,
    EngagementEvent,
    PostAnalyticsAggregate,
    ScheduledPost,
)

# Mutator applied to the current row (or None) under the key's write lock.
AggregateMutator = Callable[[PostAnalyticsAggregate | None], PostAnalyticsAggregate]


class EventLogPort(Protocol):
    """Append-only engagement event log."""

    def append(self, event: EngagementEvent) -> EngagementEvent:
        """
        Append an event.

        Raises StorageError on failure. When an external id is already
        present for (tenant, platform), returns the stored event instead.
        """
        ...

    def find_by_external_id(
        self, tenant_id: UUID, platform: str, external_event_id: str
    ) -> EngagementEvent | None:
        """Look up a previously appended event by its platform-supplied id."""
        ...

    def iter_tenant(self, tenant_id: UUID) -> Iterator[EngagementEvent]:
        """Yield a tenant's events one at a time, ordered by recorded_at."""
        ...


class AggregateStorePort(Protocol):
    """Mutable daily aggregate rows."""

    def upsert(self, key: AggregateKey, mutate: AggregateMutator) -> PostAnalyticsAggregate:
        """
        Atomically read the row for key, apply mutate, and write the result.

        Concurrent calls for the same key are serialized. Raises
        ConcurrencyConflictError when the write lock cannot be obtained and
        StorageError on any other failure; no partial write is left behind.
        """
        ...

    def get(self, key: AggregateKey) -> PostAnalyticsAggregate | None:
        """Fetch one row by natural key."""
        ...

    def query(
        self,
        tenant_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        platform: str | None = None,
    ) -> list[PostAnalyticsAggregate]:
        """Rows for one tenant, inclusive date bounds, optional platform."""
        ...

    def replace_tenant(self, tenant_id: UUID, rows: list[PostAnalyticsAggregate]) -> int:
        """Atomically swap all of a tenant's rows for the given ones."""
        ...

    def tenant_guard(self, tenant_id: UUID) -> AbstractContextManager[None]:
        """
        Hold the tenant's aggregate write lock for the duration of the block.

        Upserts and swaps made inside the block join it; writers outside
        wait until it exits. Re-entrant within one thread. Raises
        ConcurrencyConflictError when the lock cannot be obtained.
        """
        ...


class AttributionLookupPort(Protocol):
    """Read-only scheduled post / content item lookups."""

    def get_scheduled_post(self, tenant_id: UUID, post_id: UUID) -> ScheduledPost | None:
        ...

    def get_content_item(self, tenant_id: UUID, item_id: UUID) -> ContentItem | None:
        ...


class TenantMembershipPort(Protocol):
    """Tenant membership check delegated to the storage layer."""

    def get_role(self, tenant_id: UUID, user_id: UUID) -> str | None:
        """Return the caller's role in the tenant, or None if not a member."""
        ...


class AuditSinkPort(Protocol):
    """Optional audit trail for aggregate-affecting actions."""

    def record(
        self,
        tenant_id: UUID,
        actor_id: UUID | None,
        action: str,
        resource_type: str,
        resource_id: UUID | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ...


class TimePort(Protocol):
    """Time provider interface."""

    def now_utc(self) -> datetime:
        """Get current UTC time."""
        ...
