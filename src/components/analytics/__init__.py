"""
Analytics component - Engagement event recording and post performance rollups.
"""

from ._aggregate import (
    AggregateConfig,
    AggregateUpdater,
    InMemoryAggregateStore,
    ingestion_date,
    natural_key,
    replay,
)
from ._attrib import Attribution, AttributionResolver, InMemoryAttributionLookup
from ._impl import (
    AuditRecord,
    DefaultTimePort,
    EventRecorder,
    InMemoryAuditSink,
    InMemoryEventLog,
    InMemoryMembership,
    RecorderConfig,
    authorize,
    parse_uuid,
    validate_event_type,
    validate_external_id,
    validate_metadata,
    validate_occurred_at,
    validate_platform,
    validate_value,
)
from ._metrics import (
    COUNTER_FIELDS,
    EVENT_COUNTER,
    RATE_FIELDS,
    apply_increment,
    derive_rates,
    mean_rate,
    round2,
)
from ._query import (
    DEFAULT_METRIC,
    RANKABLE_METRICS,
    AggregateQueryService,
    QueryConfig,
    normalize_metric,
    summarize,
)
from .component import (
    run,
    run_get_overview,
    run_get_top_posts,
    run_rebuild,
    run_record_event,
    run_upsert_aggregate,
)
from .models import (
    AccessDeniedError,
    AnalyticsError,
    AnalyticsValidationError,
    AttributionGapError,
    ConcurrencyConflictError,
    ContentSummary,
    MetricAverages,
    MetricTotals,
    OverviewInput,
    OverviewOutput,
    PlatformBreakdown,
    RebuildInput,
    RebuildOutput,
    RecordEventInput,
    RecordEventOutput,
    ScheduleInfo,
    StorageError,
    TopPostItem,
    TopPostsInput,
    TopPostsOutput,
    ValidationError,
)
from .ports import (
    AggregateMutator,
    AggregateStorePort,
    AttributionLookupPort,
    AuditSinkPort,
    EventLogPort,
    TenantMembershipPort,
    TimePort,
)

__all__ = [
    # Entry points
    "run",
    "run_get_overview",
    "run_get_top_posts",
    "run_rebuild",
    "run_record_event",
    "run_upsert_aggregate",
    # Input models
    "OverviewInput",
    "RebuildInput",
    "RecordEventInput",
    "TopPostsInput",
    # Output models
    "AnalyticsValidationError",
    "ContentSummary",
    "MetricAverages",
    "MetricTotals",
    "OverviewOutput",
    "PlatformBreakdown",
    "RebuildOutput",
    "RecordEventOutput",
    "ScheduleInfo",
    "TopPostItem",
    "TopPostsOutput",
    # Errors
    "AccessDeniedError",
    "AnalyticsError",
    "AttributionGapError",
    "ConcurrencyConflictError",
    "StorageError",
    "ValidationError",
    # Ports
    "AggregateMutator",
    "AggregateStorePort",
    "AttributionLookupPort",
    "AuditSinkPort",
    "EventLogPort",
    "TenantMembershipPort",
    "TimePort",
    # Services
    "AggregateQueryService",
    "AggregateUpdater",
    "AttributionResolver",
    "EventRecorder",
    # Config
    "AggregateConfig",
    "QueryConfig",
    "RecorderConfig",
    # In-memory adapters
    "AuditRecord",
    "DefaultTimePort",
    "InMemoryAggregateStore",
    "InMemoryAttributionLookup",
    "InMemoryAuditSink",
    "InMemoryEventLog",
    "InMemoryMembership",
    # Helpers
    "Attribution",
    "COUNTER_FIELDS",
    "DEFAULT_METRIC",
    "EVENT_COUNTER",
    "RANKABLE_METRICS",
    "RATE_FIELDS",
    "apply_increment",
    "authorize",
    "derive_rates",
    "ingestion_date",
    "mean_rate",
    "natural_key",
    "normalize_metric",
    "parse_uuid",
    "replay",
    "round2",
    "summarize",
    "validate_event_type",
    "validate_external_id",
    "validate_metadata",
    "validate_occurred_at",
    "validate_platform",
    "validate_value",
]
