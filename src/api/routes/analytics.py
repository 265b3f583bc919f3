"""
Post Analytics API.

Tenant-scoped engagement event recording, overview and top posts
dashboards, and aggregate rebuild.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, NoReturn
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.api.deps import (
    get_aggregate_store,
    get_attribution_lookup,
    get_audit_sink,
    get_caller_id,
    get_clock,
    get_event_log,
    get_membership,
    get_rules,
)
from src.api.schemas import (
    OverviewResponse,
    RebuildResponse,
    RecordEventRequest,
    RecordEventResponse,
    TopPostsResponse,
    overview_response,
    rebuild_response,
    record_event_response,
    top_posts_response,
)
from src.components.analytics import (
    AccessDeniedError,
    AggregateStorePort,
    AnalyticsError,
    AttributionLookupPort,
    AuditSinkPort,
    EventLogPort,
    OverviewInput,
    RebuildInput,
    RecordEventInput,
    StorageError,
    TenantMembershipPort,
    TimePort,
    TopPostsInput,
    ValidationError,
    run_get_overview,
    run_get_top_posts,
    run_rebuild,
    run_record_event,
)
from src.rules.models import Rules

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Error Mapping ---


def _error_detail(code: str, message: str, field: str | None = None) -> dict[str, Any]:
    return {"ok": False, "errors": [{"code": code, "message": message, "field": field}]}


def raise_http(exc: AnalyticsError) -> NoReturn:
    """Translate an analytics error into the matching HTTP error."""
    if isinstance(exc, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "ok": False,
                "errors": [
                    {"code": e.code, "message": e.message, "field": e.field_name}
                    for e in exc.errors
                ],
            },
        ) from exc

    if isinstance(exc, AccessDeniedError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=_error_detail("access_denied", "Not a member of this tenant"),
        ) from exc

    if isinstance(exc, StorageError):
        logger.error("Storage failure: %s", exc)
    else:
        logger.exception("Unexpected analytics error")
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=_error_detail("storage_error", "Analytics storage is unavailable"),
    ) from exc


def parse_tenant_id(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_detail("invalid_uuid", "tenantId must be a valid UUID", "tenant_id"),
        ) from None


# --- Routes ---


@router.post(
    "/events",
    response_model=RecordEventResponse,
    status_code=status.HTTP_201_CREATED,
)
def record_event(
    body: RecordEventRequest,
    caller_id: UUID = Depends(get_caller_id),
    event_log: EventLogPort = Depends(get_event_log),
    store: AggregateStorePort = Depends(get_aggregate_store),
    membership: TenantMembershipPort = Depends(get_membership),
    lookup: AttributionLookupPort = Depends(get_attribution_lookup),
    audit: AuditSinkPort = Depends(get_audit_sink),
    clock: TimePort = Depends(get_clock),
    rules: Rules = Depends(get_rules),
) -> RecordEventResponse:
    """
    Record one engagement event.

    Duplicate deliveries of an externalEventId return the original event id
    with duplicate=true.
    """
    inp = RecordEventInput(
        tenant_id=body.tenant_id,  # type: ignore[arg-type]
        event_type=body.event_type,  # type: ignore[arg-type]
        platform=body.platform,  # type: ignore[arg-type]
        value=body.value,
        content_item_id=body.content_item_id,  # type: ignore[arg-type]
        scheduled_post_id=body.scheduled_post_id,  # type: ignore[arg-type]
        external_event_id=body.external_event_id,
        metadata=body.metadata,
        occurred_at=body.occurred_at,  # type: ignore[arg-type]
    )
    try:
        out = run_record_event(
            inp,
            caller_id=caller_id,
            event_log=event_log,
            store=store,
            membership=membership,
            lookup=lookup,
            time_port=clock,
            audit=audit,
            rules=rules.analytics,
        )
    except AnalyticsError as e:
        raise_http(e)
    return record_event_response(out)


@router.get("/overview", response_model=OverviewResponse)
def get_overview(
    tenant_id: str = Query(..., alias="tenantId"),
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    platform: str | None = Query(None),
    caller_id: UUID = Depends(get_caller_id),
    store: AggregateStorePort = Depends(get_aggregate_store),
    membership: TenantMembershipPort = Depends(get_membership),
    rules: Rules = Depends(get_rules),
) -> OverviewResponse:
    """Totals, averages and per-platform breakdown for a tenant."""
    inp = OverviewInput(
        tenant_id=parse_tenant_id(tenant_id),
        start_date=start_date,
        end_date=end_date,
        platform=platform,
    )
    try:
        out = run_get_overview(
            inp,
            caller_id=caller_id,
            store=store,
            membership=membership,
            rules=rules.analytics,
        )
    except AnalyticsError as e:
        raise_http(e)
    return overview_response(out)


@router.get("/top-posts", response_model=TopPostsResponse)
def get_top_posts(
    tenant_id: str = Query(..., alias="tenantId"),
    metric: str = Query("engagementRate"),
    limit: int | None = Query(None),
    platform: str | None = Query(None),
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    caller_id: UUID = Depends(get_caller_id),
    store: AggregateStorePort = Depends(get_aggregate_store),
    membership: TenantMembershipPort = Depends(get_membership),
    lookup: AttributionLookupPort = Depends(get_attribution_lookup),
    rules: Rules = Depends(get_rules),
) -> TopPostsResponse:
    """Aggregate rows ranked by metric (unknown metrics rank by engagementRate)."""
    inp = TopPostsInput(
        tenant_id=parse_tenant_id(tenant_id),
        metric=metric,
        limit=limit,
        start_date=start_date,
        end_date=end_date,
        platform=platform,
    )
    try:
        out = run_get_top_posts(
            inp,
            caller_id=caller_id,
            store=store,
            membership=membership,
            lookup=lookup,
            rules=rules.analytics,
        )
    except AnalyticsError as e:
        raise_http(e)
    return top_posts_response(out)


@router.post("/rebuild", response_model=RebuildResponse)
def rebuild_aggregates(
    tenant_id: str = Query(..., alias="tenantId"),
    caller_id: UUID = Depends(get_caller_id),
    event_log: EventLogPort = Depends(get_event_log),
    store: AggregateStorePort = Depends(get_aggregate_store),
    membership: TenantMembershipPort = Depends(get_membership),
    lookup: AttributionLookupPort = Depends(get_attribution_lookup),
    audit: AuditSinkPort = Depends(get_audit_sink),
    rules: Rules = Depends(get_rules),
) -> RebuildResponse:
    """Recompute a tenant's aggregates from its event log (owner/admin only)."""
    inp = RebuildInput(tenant_id=parse_tenant_id(tenant_id))
    try:
        out = run_rebuild(
            inp,
            caller_id=caller_id,
            event_log=event_log,
            store=store,
            membership=membership,
            lookup=lookup,
            audit=audit,
            rules=rules.analytics,
            allowed_roles=frozenset(rules.rbac.rebuild_roles),
        )
    except AnalyticsError as e:
        raise_http(e)
    return rebuild_response(out)
