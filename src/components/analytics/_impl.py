"""
EventRecorder - engagement event validation, append and aggregation trigger.

Key behaviors:
- Only configured event types and platforms accepted
- value is a positive integer (batched counts allowed)
- Repeat deliveries with the same external id are no-op successes
- Append is durable before aggregation; aggregation failure never undoes it
- Events without a scheduled post are stored but not aggregated
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from src.core.entities import EngagementEvent

from ._aggregate import AggregateUpdater
from ._attrib import AttributionResolver
from .models import (
    AccessDeniedError,
    AnalyticsError,
    AnalyticsValidationError,
    ConcurrencyConflictError,
    RecordEventInput,
    RecordEventOutput,
    StorageError,
    ValidationError,
)
from .ports import AuditSinkPort, EventLogPort, TenantMembershipPort, TimePort

logger = logging.getLogger(__name__)


# --- Configuration ---


@dataclass(frozen=True)
class RecorderConfig:
    """Event recorder configuration."""

    enabled: bool = True
    allowed_event_types: frozenset[str] = field(
        default_factory=lambda: frozenset(
            {"view", "like", "comment", "share", "click", "impression"}
        ),
    )
    allowed_platforms: frozenset[str] = field(
        default_factory=lambda: frozenset(
            {"instagram", "facebook", "tiktok", "linkedin", "youtube", "google_ads"}
        ),
    )
    max_event_value: int = 1_000_000
    max_metadata_bytes: int = 10_000
    max_external_id_length: int = 255
    audit_enabled: bool = True


DEFAULT_CONFIG = RecorderConfig()


# --- Default Implementations ---


class DefaultTimePort:
    """Default time provider."""

    def now_utc(self) -> datetime:
        """Get current UTC time."""
        return datetime.now(UTC)


class InMemoryEventLog:
    """In-memory append-only event log for testing/dev."""

    def __init__(self) -> None:
        self._events: list[EngagementEvent] = []
        self._external: dict[tuple[UUID, str, str], EngagementEvent] = {}
        self._lock = threading.Lock()

    def append(self, event: EngagementEvent) -> EngagementEvent:
        with self._lock:
            if event.external_event_id is not None:
                ext_key = (event.tenant_id, event.platform, event.external_event_id)
                existing = self._external.get(ext_key)
                if existing is not None:
                    return existing
                self._external[ext_key] = event
            self._events.append(event)
            return event

    def find_by_external_id(
        self, tenant_id: UUID, platform: str, external_event_id: str
    ) -> EngagementEvent | None:
        return self._external.get((tenant_id, platform, external_event_id))

    def iter_tenant(self, tenant_id: UUID) -> Iterator[EngagementEvent]:
        events = [e for e in self._events if e.tenant_id == tenant_id]
        yield from sorted(events, key=lambda e: e.recorded_at)

    def get_all(self) -> list[EngagementEvent]:
        """Get all stored events (for testing)."""
        return list(self._events)


class InMemoryMembership:
    """In-memory tenant membership table for testing/dev."""

    def __init__(self) -> None:
        self._roles: dict[tuple[UUID, UUID], str] = {}

    def add(self, tenant_id: UUID, user_id: UUID, role: str = "member") -> None:
        self._roles[(tenant_id, user_id)] = role

    def get_role(self, tenant_id: UUID, user_id: UUID) -> str | None:
        return self._roles.get((tenant_id, user_id))


@dataclass(frozen=True)
class AuditRecord:
    """Audit entry captured by the in-memory sink."""

    id: UUID
    tenant_id: UUID
    actor_id: UUID | None
    action: str
    resource_type: str
    resource_id: UUID | None
    metadata: dict[str, Any]
    created_at: datetime


class InMemoryAuditSink:
    """In-memory audit sink for testing/dev."""

    def __init__(self) -> None:
        self.entries: list[AuditRecord] = []

    def record(
        self,
        tenant_id: UUID,
        actor_id: UUID | None,
        action: str,
        resource_type: str,
        resource_id: UUID | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.entries.append(
            AuditRecord(
                id=uuid4(),
                tenant_id=tenant_id,
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                metadata=dict(metadata or {}),
                created_at=datetime.now(UTC),
            )
        )


# --- Access ---


def authorize(
    membership: TenantMembershipPort,
    tenant_id: UUID,
    caller_id: UUID | None,
    roles: frozenset[str] | None = None,
) -> str:
    """
    Check the caller belongs to the tenant (and holds one of roles, if given).

    Returns the caller's role. Raises AccessDeniedError otherwise.
    """
    if caller_id is None:
        raise AccessDeniedError(tenant_id, caller_id, "no caller identity")

    role = membership.get_role(tenant_id, caller_id)
    if role is None:
        raise AccessDeniedError(tenant_id, caller_id)
    if roles is not None and role not in roles:
        raise AccessDeniedError(tenant_id, caller_id, f"role '{role}' not permitted")
    return role


# --- Validation Functions ---


def parse_uuid(value: Any, field_name: str) -> tuple[UUID | None, list[AnalyticsValidationError]]:
    """Parse and validate an optional UUID field."""
    if value is None:
        return None, []

    if isinstance(value, UUID):
        return value, []

    if isinstance(value, str):
        try:
            return UUID(value), []
        except ValueError:
            pass

    return None, [
        AnalyticsValidationError(
            code="invalid_uuid",
            message=f"Field '{field_name}' must be a valid UUID",
            field_name=field_name,
        )
    ]


def validate_event_type(
    event_type: Any,
    config: RecorderConfig = DEFAULT_CONFIG,
) -> list[AnalyticsValidationError]:
    """Event type must be one of the closed set."""
    if not event_type:
        return [
            AnalyticsValidationError(
                code="event_type_required",
                message="Event type is required",
                field_name="event_type",
            )
        ]

    if event_type not in config.allowed_event_types:
        return [
            AnalyticsValidationError(
                code="invalid_event_type",
                message=f"Event type '{event_type}' is not allowed",
                field_name="event_type",
            )
        ]

    return []


def validate_platform(
    platform: Any,
    config: RecorderConfig = DEFAULT_CONFIG,
) -> list[AnalyticsValidationError]:
    """Platform must be one of the known platforms."""
    if not platform:
        return [
            AnalyticsValidationError(
                code="platform_required",
                message="Platform is required",
                field_name="platform",
            )
        ]

    if platform not in config.allowed_platforms:
        return [
            AnalyticsValidationError(
                code="invalid_platform",
                message=f"Platform '{platform}' is not supported",
                field_name="platform",
            )
        ]

    return []


def validate_value(
    value: Any,
    config: RecorderConfig = DEFAULT_CONFIG,
) -> list[AnalyticsValidationError]:
    """Value must be an integer in [1, max_event_value]."""
    # bool is an int subclass; True must not count as 1
    if isinstance(value, bool) or not isinstance(value, int):
        return [
            AnalyticsValidationError(
                code="invalid_value",
                message="Event value must be an integer",
                field_name="value",
            )
        ]

    if value < 1:
        return [
            AnalyticsValidationError(
                code="non_positive_value",
                message="Event value must be at least 1",
                field_name="value",
            )
        ]

    if value > config.max_event_value:
        return [
            AnalyticsValidationError(
                code="value_too_large",
                message=f"Event value exceeds maximum ({config.max_event_value})",
                field_name="value",
            )
        ]

    return []


def validate_metadata(
    metadata: Any,
    config: RecorderConfig = DEFAULT_CONFIG,
) -> list[AnalyticsValidationError]:
    """Metadata is an optional JSON object of bounded size."""
    if metadata is None:
        return []

    if not isinstance(metadata, dict):
        return [
            AnalyticsValidationError(
                code="invalid_metadata",
                message="Metadata must be an object",
                field_name="metadata",
            )
        ]

    try:
        size = len(json.dumps(metadata, default=str).encode())
    except (TypeError, ValueError):
        return [
            AnalyticsValidationError(
                code="invalid_metadata",
                message="Metadata must be JSON serializable",
                field_name="metadata",
            )
        ]

    if size > config.max_metadata_bytes:
        return [
            AnalyticsValidationError(
                code="metadata_too_large",
                message=f"Metadata exceeds {config.max_metadata_bytes} bytes",
                field_name="metadata",
            )
        ]

    return []


def validate_external_id(
    external_event_id: Any,
    config: RecorderConfig = DEFAULT_CONFIG,
) -> list[AnalyticsValidationError]:
    """Optional non-empty string of bounded length."""
    if external_event_id is None:
        return []

    if not isinstance(external_event_id, str) or not external_event_id.strip():
        return [
            AnalyticsValidationError(
                code="invalid_external_event_id",
                message="External event id must be a non-empty string",
                field_name="external_event_id",
            )
        ]

    if len(external_event_id) > config.max_external_id_length:
        return [
            AnalyticsValidationError(
                code="invalid_external_event_id",
                message=f"External event id exceeds {config.max_external_id_length} characters",
                field_name="external_event_id",
            )
        ]

    return []


def validate_occurred_at(
    occurred_at: Any,
    now: datetime,
) -> tuple[datetime, list[AnalyticsValidationError]]:
    """Parse the engagement time; defaults to now. Naive values are UTC."""
    if occurred_at is None:
        return now, []

    parsed: datetime | None = None
    if isinstance(occurred_at, datetime):
        parsed = occurred_at
    elif isinstance(occurred_at, str):
        try:
            parsed = datetime.fromisoformat(occurred_at.replace("Z", "+00:00"))
        except ValueError:
            parsed = None

    if parsed is None:
        return now, [
            AnalyticsValidationError(
                code="invalid_timestamp",
                message="occurred_at must be an ISO 8601 timestamp",
                field_name="occurred_at",
            )
        ]

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)

    return parsed, []


# --- Event Recorder ---


class EventRecorder:
    """
    Records engagement events and triggers aggregation.

    Authorization is the caller's job (see authorize).
    """

    def __init__(
        self,
        event_log: EventLogPort,
        updater: AggregateUpdater,
        resolver: AttributionResolver | None = None,
        time_port: TimePort | None = None,
        audit: AuditSinkPort | None = None,
        config: RecorderConfig | None = None,
    ) -> None:
        self._event_log = event_log
        self._updater = updater
        self._resolver = resolver or AttributionResolver()
        self._time = time_port or DefaultTimePort()
        self._audit = audit
        self._config = config or DEFAULT_CONFIG

    def validate(self, inp: RecordEventInput) -> EngagementEvent:
        """Validate input and build the (unsaved) event."""
        if not self._config.enabled:
            raise ValidationError.single("analytics_disabled", "Analytics recording is disabled")

        errors: list[AnalyticsValidationError] = []
        now = self._time.now_utc()

        tenant_id, tenant_errors = parse_uuid(inp.tenant_id, "tenant_id")
        errors.extend(tenant_errors)
        if inp.tenant_id is None:
            errors.append(
                AnalyticsValidationError(
                    code="tenant_id_required",
                    message="Tenant ID is required",
                    field_name="tenant_id",
                )
            )

        errors.extend(validate_event_type(inp.event_type, self._config))
        errors.extend(validate_platform(inp.platform, self._config))
        errors.extend(validate_value(inp.value, self._config))
        errors.extend(validate_metadata(inp.metadata, self._config))
        errors.extend(validate_external_id(inp.external_event_id, self._config))

        content_item_id, uuid_errors = parse_uuid(inp.content_item_id, "content_item_id")
        errors.extend(uuid_errors)
        scheduled_post_id, uuid_errors = parse_uuid(inp.scheduled_post_id, "scheduled_post_id")
        errors.extend(uuid_errors)

        occurred_at, ts_errors = validate_occurred_at(inp.occurred_at, now)
        errors.extend(ts_errors)

        if errors:
            raise ValidationError(errors)

        return EngagementEvent(
            tenant_id=tenant_id,
            content_item_id=content_item_id,
            scheduled_post_id=scheduled_post_id,
            event_type=inp.event_type,
            platform=inp.platform,
            value=inp.value,
            external_event_id=inp.external_event_id,
            metadata=dict(inp.metadata or {}),
            occurred_at=occurred_at,
            recorded_at=now,
        )

    def record(self, inp: RecordEventInput, actor_id: UUID | None = None) -> RecordEventOutput:
        """Validate and record one event (see record_event)."""
        return self.record_event(self.validate(inp), actor_id=actor_id)

    def record_event(self, event: EngagementEvent, actor_id: UUID | None = None) -> RecordEventOutput:
        """
        Append a validated event and fold it into its aggregate.

        Append through aggregation runs under the tenant's aggregate write
        lock, so a concurrent rebuild either sees both or neither.

        Raises StorageError if the append fails. Aggregation failures are
        logged; the event stays recorded and aggregated=False is returned.
        """
        try:
            with self._updater.tenant_guard(event.tenant_id):
                return self._record_locked(event, actor_id)
        except ConcurrencyConflictError as e:
            raise StorageError(f"Event {event.id} not recorded: {e}") from e

    def _record_locked(self, event: EngagementEvent, actor_id: UUID | None) -> RecordEventOutput:
        if event.external_event_id is not None:
            existing = self._event_log.find_by_external_id(
                event.tenant_id, event.platform, event.external_event_id
            )
            if existing is not None:
                logger.info(
                    "Duplicate delivery of %s/%s ignored (event %s)",
                    event.platform,
                    event.external_event_id,
                    existing.id,
                )
                return RecordEventOutput(event_id=existing.id, duplicate=True)

        stored = self._event_log.append(event)
        if stored.id != event.id:
            # lost a race with a concurrent delivery of the same external id
            logger.info("Duplicate delivery of %s/%s ignored", event.platform, event.external_event_id)
            return RecordEventOutput(event_id=stored.id, duplicate=True)

        self._emit_audit(stored, actor_id)

        attribution = self._resolver.resolve(stored)
        if attribution is None:
            return RecordEventOutput(event_id=stored.id)

        try:
            aggregate = self._updater.apply(
                stored,
                scheduled_post_id=attribution.scheduled_post_id,
                content_item_id=attribution.content_item_id,
            )
        except AnalyticsError:
            logger.exception("Aggregation failed for event %s; event retained", stored.id)
            return RecordEventOutput(event_id=stored.id)

        return RecordEventOutput(event_id=stored.id, aggregated=True, aggregate=aggregate)

    def _emit_audit(self, event: EngagementEvent, actor_id: UUID | None) -> None:
        if self._audit is None or not self._config.audit_enabled:
            return
        try:
            self._audit.record(
                tenant_id=event.tenant_id,
                actor_id=actor_id,
                action="analytics_event.recorded",
                resource_type="analytics_event",
                resource_id=event.id,
                metadata={
                    "event_type": event.event_type,
                    "platform": event.platform,
                    "value": event.value,
                },
            )
        except Exception:
            logger.exception("Audit sink failed for event %s", event.id)
