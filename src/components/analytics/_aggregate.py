"""
AggregateUpdater - incremental daily rollups per scheduled post and platform.

Key behaviors:
- Natural key (tenant, scheduled post, platform, UTC ingestion date)
- One counter incremented per event, by the event's value
- Rates recomputed from post-increment counters on every write
- Read-modify-write runs inside the store's atomic upsert
- Concurrency conflicts retried a bounded number of times
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, date, datetime
from uuid import UUID

from src.core.entities import AggregateKey, EngagementEvent, PostAnalyticsAggregate

from ._metrics import apply_increment
from .models import ConcurrencyConflictError, StorageError
from .ports import AggregateMutator, AggregateStorePort, TimePort

logger = logging.getLogger(__name__)


# --- Configuration ---


@dataclass(frozen=True)
class AggregateConfig:
    """Aggregate updater configuration."""

    clamp_rates: bool = True
    max_retries: int = 5
    retry_backoff_seconds: float = 0.01


DEFAULT_CONFIG = AggregateConfig()


def ingestion_date(recorded_at: datetime) -> date:
    """UTC calendar date of an ingestion timestamp."""
    if recorded_at.tzinfo is None:
        return recorded_at.date()
    return recorded_at.astimezone(UTC).date()


def natural_key(event: EngagementEvent, scheduled_post_id: UUID) -> AggregateKey:
    return AggregateKey(
        tenant_id=event.tenant_id,
        scheduled_post_id=scheduled_post_id,
        platform=event.platform,
        date=ingestion_date(event.recorded_at),
    )


# --- In-Memory Store ---


class InMemoryAggregateStore:
    """
    In-memory aggregate store for testing/dev.

    All writes for a tenant are serialized by that tenant's re-entrant lock,
    which tenant_guard also holds, so a rebuild's scan and swap never
    interleave with an upsert. The registry of locks is itself guarded so two
    threads never create distinct locks for one tenant.
    """

    def __init__(self, time_port: TimePort | None = None) -> None:
        self._rows: dict[tuple[UUID, UUID, str, date], PostAnalyticsAggregate] = {}
        self._locks: dict[UUID, threading.RLock] = defaultdict(threading.RLock)
        self._registry_lock = threading.Lock()
        self._time_port = time_port

    def _now(self) -> datetime:
        if self._time_port:
            return self._time_port.now_utc()
        return datetime.now(UTC)

    def _lock_for(self, tenant_id: UUID) -> threading.RLock:
        with self._registry_lock:
            return self._locks[tenant_id]

    @contextmanager
    def tenant_guard(self, tenant_id: UUID) -> Iterator[None]:
        with self._lock_for(tenant_id):
            yield

    def upsert(self, key: AggregateKey, mutate: AggregateMutator) -> PostAnalyticsAggregate:
        k = key.as_tuple()
        with self._lock_for(key.tenant_id):
            current = self._rows.get(k)
            updated = mutate(current)
            updated = updated.model_copy(update={"last_updated": self._now()})
            self._rows[k] = updated
            return updated

    def get(self, key: AggregateKey) -> PostAnalyticsAggregate | None:
        return self._rows.get(key.as_tuple())

    def query(
        self,
        tenant_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        platform: str | None = None,
    ) -> list[PostAnalyticsAggregate]:
        results = []
        for row in list(self._rows.values()):
            if row.tenant_id != tenant_id:
                continue
            if start_date is not None and row.date < start_date:
                continue
            if end_date is not None and row.date > end_date:
                continue
            if platform is not None and row.platform != platform:
                continue
            results.append(row)
        return sorted(results, key=lambda r: (r.date, str(r.id)), reverse=True)

    def replace_tenant(self, tenant_id: UUID, rows: list[PostAnalyticsAggregate]) -> int:
        with self._lock_for(tenant_id):
            for k in [k for k in list(self._rows) if k[0] == tenant_id]:
                del self._rows[k]
            for row in rows:
                self._rows[row.key.as_tuple()] = row
        return len(rows)

    def all_rows(self) -> list[PostAnalyticsAggregate]:
        """All rows across tenants (for testing)."""
        return list(self._rows.values())


# --- Aggregate Updater ---


class AggregateUpdater:
    """Applies one engagement event to its daily aggregate row."""

    def __init__(
        self,
        store: AggregateStorePort,
        config: AggregateConfig | None = None,
    ) -> None:
        self._store = store
        self._config = config or DEFAULT_CONFIG

    def tenant_guard(self, tenant_id: UUID) -> AbstractContextManager[None]:
        """The store's tenant write lock (see AggregateStorePort.tenant_guard)."""
        return self._store.tenant_guard(tenant_id)

    def _mutator(
        self,
        key: AggregateKey,
        event_type: str,
        value: int,
        content_item_id: UUID | None,
    ) -> AggregateMutator:
        clamp = self._config.clamp_rates

        def mutate(current: PostAnalyticsAggregate | None) -> PostAnalyticsAggregate:
            if current is None:
                current = PostAnalyticsAggregate(
                    tenant_id=key.tenant_id,
                    content_item_id=content_item_id,
                    scheduled_post_id=key.scheduled_post_id,
                    platform=key.platform,
                    date=key.date,
                )
            elif current.content_item_id is None and content_item_id is not None:
                current = current.model_copy(update={"content_item_id": content_item_id})
            return apply_increment(current, event_type, value, clamp=clamp)

        return mutate

    def upsert(
        self,
        key: AggregateKey,
        event_type: str,
        value: int,
        content_item_id: UUID | None = None,
    ) -> PostAnalyticsAggregate:
        """
        Increment the counter for event_type on the row for key.

        Retries ConcurrencyConflictError up to max_retries times, then
        raises StorageError.
        """
        mutate = self._mutator(key, event_type, value, content_item_id)
        attempts = self._config.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                return self._store.upsert(key, mutate)
            except ConcurrencyConflictError:
                if attempt == attempts:
                    logger.error(
                        "Aggregate upsert for %s gave up after %d attempts",
                        key.as_tuple(),
                        attempts,
                    )
                    break
                logger.warning(
                    "Concurrent update on %s, retrying (%d/%d)",
                    key.as_tuple(),
                    attempt,
                    self._config.max_retries,
                )
                time.sleep(self._config.retry_backoff_seconds * attempt)

        msg = f"Aggregate update failed after {attempts} attempts: {key.as_tuple()}"
        raise StorageError(msg)

    def apply(
        self,
        event: EngagementEvent,
        scheduled_post_id: UUID,
        content_item_id: UUID | None = None,
    ) -> PostAnalyticsAggregate:
        """Fold one attributed event into its aggregate row."""
        key = natural_key(event, scheduled_post_id)
        return self.upsert(key, event.event_type, event.value, content_item_id)


def replay(
    events: Iterator[tuple[EngagementEvent, UUID, UUID | None]],
    clamp_rates: bool = True,
) -> list[PostAnalyticsAggregate]:
    """
    Rebuild aggregate rows from attributed events, one event at a time.

    Each item is (event, scheduled_post_id, content_item_id).
    """
    rows: dict[tuple[UUID, UUID, str, date], PostAnalyticsAggregate] = {}
    for event, post_id, content_id in events:
        key = natural_key(event, post_id)
        k = key.as_tuple()
        current = rows.get(k)
        if current is None:
            current = PostAnalyticsAggregate(
                tenant_id=key.tenant_id,
                content_item_id=content_id,
                scheduled_post_id=post_id,
                platform=key.platform,
                date=key.date,
                created_at=event.recorded_at,
            )
        rows[k] = apply_increment(current, event.event_type, event.value, clamp=clamp_rates)
    return list(rows.values())
