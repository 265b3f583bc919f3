"""
Analytics component - engagement event recording and post performance rollups.

Records engagement events, maintains daily per-post/per-platform aggregates,
and answers dashboard queries over those aggregates.

Invariants:
- I1: Exactly one aggregate row per (tenant, scheduled post, platform, date)
- I2: Counters equal the per-type sum of event values, in any arrival order
- I3: Rates derive from counters; 0 when impressions == 0
- I4: Concurrent events for one key never lose an increment
- I5: No query ever mixes two tenants' rows
- I6: The event log is append-only; aggregation failures never undo an append
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from uuid import UUID

from src.core.entities import AggregateKey, EngagementEvent, PostAnalyticsAggregate
from src.rules.models import AnalyticsRules

from ._aggregate import AggregateConfig, AggregateUpdater, replay
from ._attrib import AttributionResolver
from ._impl import EventRecorder, RecorderConfig, authorize
from ._metrics import EVENT_COUNTER
from ._query import AggregateQueryService, QueryConfig
from .models import (
    OverviewInput,
    OverviewOutput,
    RebuildInput,
    RebuildOutput,
    RecordEventInput,
    RecordEventOutput,
    TopPostsInput,
    TopPostsOutput,
    ValidationError,
)
from .ports import (
    AggregateStorePort,
    AttributionLookupPort,
    AuditSinkPort,
    EventLogPort,
    TenantMembershipPort,
    TimePort,
)

logger = logging.getLogger(__name__)

DEFAULT_REBUILD_ROLES: frozenset[str] = frozenset({"owner", "admin"})


# --- Config Builders ---


def _recorder_config(rules: AnalyticsRules | None) -> RecorderConfig:
    if rules is None:
        return RecorderConfig()
    return RecorderConfig(
        enabled=rules.enabled,
        allowed_event_types=frozenset(rules.event_types) & frozenset(EVENT_COUNTER),
        allowed_platforms=frozenset(rules.platforms),
        max_event_value=rules.max_event_value,
        max_metadata_bytes=rules.max_metadata_bytes,
        audit_enabled=rules.audit_enabled,
    )


def _aggregate_config(rules: AnalyticsRules | None) -> AggregateConfig:
    if rules is None:
        return AggregateConfig()
    return AggregateConfig(
        clamp_rates=rules.clamp_rates,
        max_retries=rules.max_update_retries,
    )


def _query_config(rules: AnalyticsRules | None) -> QueryConfig:
    if rules is None:
        return QueryConfig()
    return QueryConfig(
        allowed_platforms=frozenset(rules.platforms),
        top_posts_default_limit=rules.top_posts_default_limit,
        top_posts_max_limit=rules.top_posts_max_limit,
        clamp_rates=rules.clamp_rates,
    )


# --- Component Entry Points ---


def run_record_event(
    inp: RecordEventInput,
    *,
    caller_id: UUID | None,
    event_log: EventLogPort,
    store: AggregateStorePort,
    membership: TenantMembershipPort,
    lookup: AttributionLookupPort | None = None,
    time_port: TimePort | None = None,
    audit: AuditSinkPort | None = None,
    rules: AnalyticsRules | None = None,
) -> RecordEventOutput:
    """
    Record one engagement event and update its aggregate.

    Raises:
        ValidationError: malformed input.
        AccessDeniedError: caller is not a member of the tenant.
        StorageError: the event could not be appended.
    """
    recorder = EventRecorder(
        event_log=event_log,
        updater=AggregateUpdater(store, _aggregate_config(rules)),
        resolver=AttributionResolver(lookup),
        time_port=time_port,
        audit=audit,
        config=_recorder_config(rules),
    )
    # shape errors first, so a bad tenant id is a 400 not a 403
    event = recorder.validate(inp)
    authorize(membership, event.tenant_id, caller_id)
    return recorder.record_event(event, actor_id=caller_id)


def run_upsert_aggregate(
    key: AggregateKey,
    event_type: str,
    value: int,
    *,
    store: AggregateStorePort,
    content_item_id: UUID | None = None,
    rules: AnalyticsRules | None = None,
) -> PostAnalyticsAggregate:
    """
    Increment one counter on the row for key (internal; not exposed over HTTP).
    """
    if event_type not in EVENT_COUNTER:
        raise ValidationError.single(
            "invalid_event_type", f"Event type '{event_type}' is not allowed", "event_type"
        )
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError.single("non_positive_value", "Event value must be at least 1", "value")

    updater = AggregateUpdater(store, _aggregate_config(rules))
    return updater.upsert(key, event_type, value, content_item_id)


def run_get_overview(
    inp: OverviewInput,
    *,
    caller_id: UUID | None,
    store: AggregateStorePort,
    membership: TenantMembershipPort,
    rules: AnalyticsRules | None = None,
) -> OverviewOutput:
    """Totals, averages and per-platform breakdown for a tenant."""
    authorize(membership, inp.tenant_id, caller_id)
    service = AggregateQueryService(store, config=_query_config(rules))
    return service.overview(
        tenant_id=inp.tenant_id,
        start_date=inp.start_date,
        end_date=inp.end_date,
        platform=inp.platform,
    )


def run_get_top_posts(
    inp: TopPostsInput,
    *,
    caller_id: UUID | None,
    store: AggregateStorePort,
    membership: TenantMembershipPort,
    lookup: AttributionLookupPort | None = None,
    rules: AnalyticsRules | None = None,
) -> TopPostsOutput:
    """Aggregate rows ranked by a metric, enriched for display."""
    authorize(membership, inp.tenant_id, caller_id)
    service = AggregateQueryService(store, lookup=lookup, config=_query_config(rules))
    return service.top_posts(
        tenant_id=inp.tenant_id,
        metric=inp.metric,
        limit=inp.limit,
        start_date=inp.start_date,
        end_date=inp.end_date,
        platform=inp.platform,
    )


def run_rebuild(
    inp: RebuildInput,
    *,
    caller_id: UUID | None,
    event_log: EventLogPort,
    store: AggregateStorePort,
    membership: TenantMembershipPort,
    lookup: AttributionLookupPort | None = None,
    audit: AuditSinkPort | None = None,
    rules: AnalyticsRules | None = None,
    allowed_roles: frozenset[str] = DEFAULT_REBUILD_ROLES,
) -> RebuildOutput:
    """
    Recompute all of a tenant's aggregates from its event log.

    Events are streamed one at a time; rows are swapped in atomically.
    The scan and the swap run under the tenant's aggregate write lock, so
    no event recorded meanwhile can be missed by the scan or overwritten by
    the swap.
    """
    authorize(membership, inp.tenant_id, caller_id, roles=allowed_roles)
    resolver = AttributionResolver(lookup)
    counts = {"replayed": 0, "skipped": 0}

    def attributed() -> Iterator[tuple[EngagementEvent, UUID, UUID | None]]:
        for event in event_log.iter_tenant(inp.tenant_id):
            attribution = resolver.resolve(event)
            if attribution is None:
                counts["skipped"] += 1
                continue
            counts["replayed"] += 1
            yield event, attribution.scheduled_post_id, attribution.content_item_id

    clamp = rules.clamp_rates if rules is not None else True
    with store.tenant_guard(inp.tenant_id):
        rows = replay(attributed(), clamp_rates=clamp)
        written = store.replace_tenant(inp.tenant_id, rows)

    logger.info(
        "Rebuilt %d aggregate rows for tenant %s from %d events (%d unattributed)",
        written,
        inp.tenant_id,
        counts["replayed"],
        counts["skipped"],
    )

    if audit is not None and (rules is None or rules.audit_enabled):
        try:
            audit.record(
                tenant_id=inp.tenant_id,
                actor_id=caller_id,
                action="post_analytics.rebuilt",
                resource_type="post_analytics",
                resource_id=None,
                metadata={"rows": written, "events": counts["replayed"]},
            )
        except Exception:
            logger.exception("Audit sink failed for rebuild of tenant %s", inp.tenant_id)

    return RebuildOutput(
        events_replayed=counts["replayed"],
        events_skipped=counts["skipped"],
        rows_written=written,
    )


def run(
    inp: RecordEventInput | OverviewInput | TopPostsInput | RebuildInput,
    *,
    caller_id: UUID | None,
    membership: TenantMembershipPort,
    store: AggregateStorePort,
    event_log: EventLogPort | None = None,
    lookup: AttributionLookupPort | None = None,
    time_port: TimePort | None = None,
    audit: AuditSinkPort | None = None,
    rules: AnalyticsRules | None = None,
) -> RecordEventOutput | OverviewOutput | TopPostsOutput | RebuildOutput:
    """
    Main entry point for the analytics component.

    Dispatches to the appropriate handler based on input type.
    """
    if isinstance(inp, RecordEventInput):
        if event_log is None:
            raise ValueError("EventLogPort is required for record operations")
        return run_record_event(
            inp,
            caller_id=caller_id,
            event_log=event_log,
            store=store,
            membership=membership,
            lookup=lookup,
            time_port=time_port,
            audit=audit,
            rules=rules,
        )
    elif isinstance(inp, OverviewInput):
        return run_get_overview(
            inp, caller_id=caller_id, store=store, membership=membership, rules=rules
        )
    elif isinstance(inp, TopPostsInput):
        return run_get_top_posts(
            inp,
            caller_id=caller_id,
            store=store,
            membership=membership,
            lookup=lookup,
            rules=rules,
        )
    elif isinstance(inp, RebuildInput):
        if event_log is None:
            raise ValueError("EventLogPort is required for rebuild operations")
        return run_rebuild(
            inp,
            caller_id=caller_id,
            event_log=event_log,
            store=store,
            membership=membership,
            lookup=lookup,
            audit=audit,
            rules=rules,
        )
    else:
        raise ValueError(f"Unknown input type: {type(inp)}")
