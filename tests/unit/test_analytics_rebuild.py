"""
Tests for rebuilding a tenant's aggregates from its event log.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import date
from typing import Any
from uuid import UUID, uuid4

import pytest

from src.components.analytics import (
    AccessDeniedError,
    AggregateConfig,
    AggregateUpdater,
    InMemoryAggregateStore,
    InMemoryAttributionLookup,
    InMemoryAuditSink,
    InMemoryEventLog,
    InMemoryMembership,
    RebuildInput,
    RecordEventInput,
    StorageError,
    run_rebuild,
    run_record_event,
)
from src.core.entities import (
    AggregateKey,
    EngagementEvent,
    PostAnalyticsAggregate,
    ScheduledPost,
)
from src.rules.models import Rules

COUNTERS = ("views", "likes", "comments", "shares", "clicks", "impressions")


class FailingStore(InMemoryAggregateStore):
    """Aggregate store whose incremental writes always fail."""

    def upsert(self, key: AggregateKey, mutate: Any) -> PostAnalyticsAggregate:
        raise StorageError("disk full")


def snapshot(store: InMemoryAggregateStore, tenant_id: UUID) -> dict[tuple, tuple]:
    """Counters and rates per natural key, ignoring row ids and timestamps."""
    return {
        row.key.as_tuple(): (
            *(getattr(row, name) for name in COUNTERS),
            row.engagement_rate,
            row.click_through_rate,
            row.content_item_id,
        )
        for row in store.query(tenant_id)
    }


@pytest.fixture
def feed(
    event_log: InMemoryEventLog,
    membership: InMemoryMembership,
    lookup: InMemoryAttributionLookup,
    time_port: Any,
    caller_id: UUID,
    rules: Rules,
):
    """Record a batch of events into a given store."""

    def _feed(store: InMemoryAggregateStore, events: list[RecordEventInput]) -> None:
        for inp in events:
            run_record_event(
                inp,
                caller_id=caller_id,
                event_log=event_log,
                store=store,
                membership=membership,
                lookup=lookup,
                time_port=time_port,
                rules=rules.analytics,
            )

    return _feed


def batch(tenant_id: UUID, post: ScheduledPost) -> list[RecordEventInput]:
    events = []
    for event_type, value in (
        ("impression", 500),
        ("like", 3),
        ("comment", 1),
        ("click", 7),
        ("share", 2),
        ("view", 40),
    ):
        events.append(
            RecordEventInput(
                tenant_id=tenant_id,
                event_type=event_type,
                platform="instagram",
                value=value,
                scheduled_post_id=post.id,
            )
        )
    events.append(
        RecordEventInput(
            tenant_id=tenant_id,
            event_type="like",
            platform="facebook",
            scheduled_post_id=post.id,
        )
    )
    return events


class TestRebuild:
    """Rebuild reproduces what incremental aggregation produced."""

    def test_matches_incremental(
        self,
        feed,
        event_log: InMemoryEventLog,
        store: InMemoryAggregateStore,
        membership: InMemoryMembership,
        lookup: InMemoryAttributionLookup,
        tenant_id: UUID,
        caller_id: UUID,
        scheduled_post: ScheduledPost,
    ) -> None:
        feed(store, batch(tenant_id, scheduled_post))
        before = snapshot(store, tenant_id)

        out = run_rebuild(
            RebuildInput(tenant_id=tenant_id),
            caller_id=caller_id,
            event_log=event_log,
            store=store,
            membership=membership,
            lookup=lookup,
        )

        assert out.events_replayed == 7
        assert out.events_skipped == 0
        assert out.rows_written == 2
        assert snapshot(store, tenant_id) == before

    def test_orphans_counted_as_skipped(
        self,
        feed,
        event_log: InMemoryEventLog,
        store: InMemoryAggregateStore,
        membership: InMemoryMembership,
        tenant_id: UUID,
        caller_id: UUID,
        scheduled_post: ScheduledPost,
    ) -> None:
        feed(
            store,
            [
                RecordEventInput(tenant_id=tenant_id, event_type="view", platform="tiktok"),
                RecordEventInput(
                    tenant_id=tenant_id,
                    event_type="view",
                    platform="tiktok",
                    scheduled_post_id=scheduled_post.id,
                ),
            ],
        )

        out = run_rebuild(
            RebuildInput(tenant_id=tenant_id),
            caller_id=caller_id,
            event_log=event_log,
            store=store,
            membership=membership,
        )

        assert out.events_replayed == 1
        assert out.events_skipped == 1
        assert out.rows_written == 1

    def test_recovers_after_failed_aggregation(
        self,
        feed,
        event_log: InMemoryEventLog,
        membership: InMemoryMembership,
        lookup: InMemoryAttributionLookup,
        time_port: Any,
        tenant_id: UUID,
        caller_id: UUID,
        scheduled_post: ScheduledPost,
    ) -> None:
        failing = FailingStore(time_port=time_port)
        feed(failing, batch(tenant_id, scheduled_post))
        assert failing.query(tenant_id) == []

        run_rebuild(
            RebuildInput(tenant_id=tenant_id),
            caller_id=caller_id,
            event_log=event_log,
            store=failing,
            membership=membership,
            lookup=lookup,
        )

        rows = {r.platform: r for r in failing.query(tenant_id)}
        instagram = rows["instagram"]
        assert instagram.impressions == 500
        assert instagram.likes == 3
        assert instagram.engagement_rate == 1.2
        assert instagram.click_through_rate == 1.4
        assert instagram.content_item_id == scheduled_post.content_item_id
        assert rows["facebook"].likes == 1

    def test_replaces_stale_rows(
        self,
        event_log: InMemoryEventLog,
        store: InMemoryAggregateStore,
        membership: InMemoryMembership,
        tenant_id: UUID,
        caller_id: UUID,
    ) -> None:
        stale = PostAnalyticsAggregate(
            tenant_id=tenant_id,
            scheduled_post_id=uuid4(),
            platform="instagram",
            date=date(2024, 1, 1),
            likes=99,
        )
        store.replace_tenant(tenant_id, [stale])

        out = run_rebuild(
            RebuildInput(tenant_id=tenant_id),
            caller_id=caller_id,
            event_log=event_log,
            store=store,
            membership=membership,
        )

        assert out.rows_written == 0
        assert store.query(tenant_id) == []

    def test_other_tenant_untouched(
        self,
        feed,
        event_log: InMemoryEventLog,
        store: InMemoryAggregateStore,
        membership: InMemoryMembership,
        tenant_id: UUID,
        caller_id: UUID,
        scheduled_post: ScheduledPost,
    ) -> None:
        other = uuid4()
        other_row = PostAnalyticsAggregate(
            tenant_id=other,
            scheduled_post_id=uuid4(),
            platform="youtube",
            date=date(2024, 6, 15),
        )
        store.replace_tenant(other, [other_row])
        feed(store, batch(tenant_id, scheduled_post))

        run_rebuild(
            RebuildInput(tenant_id=tenant_id),
            caller_id=caller_id,
            event_log=event_log,
            store=store,
            membership=membership,
        )

        assert store.query(other) == [other_row]


class TestRebuildAccess:
    """Only owners and admins may rebuild."""

    @pytest.mark.parametrize("role", ["member", "viewer"])
    def test_non_admin_roles_denied(
        self,
        event_log: InMemoryEventLog,
        store: InMemoryAggregateStore,
        tenant_id: UUID,
        role: str,
    ) -> None:
        membership = InMemoryMembership()
        user = uuid4()
        membership.add(tenant_id, user, role)

        with pytest.raises(AccessDeniedError):
            run_rebuild(
                RebuildInput(tenant_id=tenant_id),
                caller_id=user,
                event_log=event_log,
                store=store,
                membership=membership,
            )

    def test_admin_allowed(
        self,
        event_log: InMemoryEventLog,
        store: InMemoryAggregateStore,
        tenant_id: UUID,
    ) -> None:
        membership = InMemoryMembership()
        admin = uuid4()
        membership.add(tenant_id, admin, "admin")

        out = run_rebuild(
            RebuildInput(tenant_id=tenant_id),
            caller_id=admin,
            event_log=event_log,
            store=store,
            membership=membership,
        )

        assert out.rows_written == 0

    def test_custom_roles(
        self,
        event_log: InMemoryEventLog,
        store: InMemoryAggregateStore,
        membership: InMemoryMembership,
        tenant_id: UUID,
        caller_id: UUID,
    ) -> None:
        with pytest.raises(AccessDeniedError):
            run_rebuild(
                RebuildInput(tenant_id=tenant_id),
                caller_id=caller_id,
                event_log=event_log,
                store=store,
                membership=membership,
                allowed_roles=frozenset({"admin"}),
            )

    def test_anonymous_denied(
        self,
        event_log: InMemoryEventLog,
        store: InMemoryAggregateStore,
        membership: InMemoryMembership,
        tenant_id: UUID,
    ) -> None:
        with pytest.raises(AccessDeniedError):
            run_rebuild(
                RebuildInput(tenant_id=tenant_id),
                caller_id=None,
                event_log=event_log,
                store=store,
                membership=membership,
            )


class TestRebuildAudit:
    def test_audited(
        self,
        event_log: InMemoryEventLog,
        store: InMemoryAggregateStore,
        membership: InMemoryMembership,
        audit: InMemoryAuditSink,
        tenant_id: UUID,
        caller_id: UUID,
        rules: Rules,
    ) -> None:
        run_rebuild(
            RebuildInput(tenant_id=tenant_id),
            caller_id=caller_id,
            event_log=event_log,
            store=store,
            membership=membership,
            audit=audit,
            rules=rules.analytics,
        )

        assert len(audit.entries) == 1
        entry = audit.entries[0]
        assert entry.action == "post_analytics.rebuilt"
        assert entry.actor_id == caller_id
        assert entry.metadata == {"rows": 0, "events": 0}

    def test_audit_disabled(
        self,
        event_log: InMemoryEventLog,
        store: InMemoryAggregateStore,
        membership: InMemoryMembership,
        audit: InMemoryAuditSink,
        tenant_id: UUID,
        caller_id: UUID,
        rules: Rules,
    ) -> None:
        run_rebuild(
            RebuildInput(tenant_id=tenant_id),
            caller_id=caller_id,
            event_log=event_log,
            store=store,
            membership=membership,
            audit=audit,
            rules=rules.analytics.model_copy(update={"audit_enabled": False}),
        )

        assert audit.entries == []


class RacingEventLog(InMemoryEventLog):
    """Event log that runs a hook once, right after a tenant scan finishes."""

    def __init__(self) -> None:
        super().__init__()
        self.after_scan: Callable[[], None] | None = None

    def iter_tenant(self, tenant_id: UUID) -> Iterator[EngagementEvent]:
        yield from super().iter_tenant(tenant_id)
        hook, self.after_scan = self.after_scan, None
        if hook is not None:
            hook()


class TestRebuildConcurrency:
    """Events recorded while a rebuild is running are never lost."""

    def test_event_recorded_during_rebuild(
        self,
        store: InMemoryAggregateStore,
        membership: InMemoryMembership,
        lookup: InMemoryAttributionLookup,
        time_port: Any,
        tenant_id: UUID,
        caller_id: UUID,
        scheduled_post: ScheduledPost,
        rules: Rules,
    ) -> None:
        log = RacingEventLog()

        def record_like() -> None:
            run_record_event(
                RecordEventInput(
                    tenant_id=tenant_id,
                    event_type="like",
                    platform="instagram",
                    scheduled_post_id=scheduled_post.id,
                ),
                caller_id=caller_id,
                event_log=log,
                store=store,
                membership=membership,
                lookup=lookup,
                time_port=time_port,
                rules=rules.analytics,
            )

        record_like()

        errors: list[Exception] = []

        def concurrent_like() -> None:
            try:
                record_like()
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        writer = threading.Thread(target=concurrent_like)

        def start_writer() -> None:
            writer.start()
            # Give the writer a chance to land between the scan and the swap.
            writer.join(timeout=0.3)

        log.after_scan = start_writer

        run_rebuild(
            RebuildInput(tenant_id=tenant_id),
            caller_id=caller_id,
            event_log=log,
            store=store,
            membership=membership,
            lookup=lookup,
        )
        writer.join(timeout=5)

        assert not writer.is_alive()
        assert errors == []
        assert len(log.get_all()) == 2
        row = store.get(
            AggregateKey(
                tenant_id=tenant_id,
                scheduled_post_id=scheduled_post.id,
                platform="instagram",
                date=date(2024, 6, 15),
            )
        )
        assert row is not None
        assert row.likes == 2

    def test_guard_blocks_other_writers(
        self,
        store: InMemoryAggregateStore,
        tenant_id: UUID,
        scheduled_post: ScheduledPost,
    ) -> None:
        key = AggregateKey(
            tenant_id=tenant_id,
            scheduled_post_id=scheduled_post.id,
            platform="instagram",
            date=date(2024, 6, 15),
        )
        updater = AggregateUpdater(store, AggregateConfig(retry_backoff_seconds=0))

        writer = threading.Thread(target=updater.upsert, args=(key, "like", 1))
        with updater.tenant_guard(tenant_id):
            writer.start()
            writer.join(timeout=0.2)
            assert writer.is_alive()
            assert store.get(key) is None
            # Re-entrant for the holding thread.
            updater.upsert(key, "like", 1)
        writer.join(timeout=5)

        assert not writer.is_alive()
        row = store.get(key)
        assert row is not None
        assert row.likes == 2
