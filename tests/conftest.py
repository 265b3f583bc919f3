from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import UUID, uuid4

import pytest

from src.adapters.sqlite.migrator import SQLiteMigrator
from src.components.analytics import (
    InMemoryAggregateStore,
    InMemoryAttributionLookup,
    InMemoryAuditSink,
    InMemoryEventLog,
    InMemoryMembership,
)
from src.core.entities import ContentItem, ScheduledPost
from src.rules.loader import load_rules
from src.rules.models import Rules

PROJECT_ROOT = Path(__file__).resolve().parent.parent


# --- Mock Time Port ---


class MockTimePort:
    """Mock time provider."""

    def __init__(self, now: datetime | None = None) -> None:
        self._now = now or datetime.now(UTC)

    def now_utc(self) -> datetime:
        return self._now

    def set_now(self, now: datetime) -> None:
        self._now = now

    def advance(self, seconds: int) -> None:
        self._now += timedelta(seconds=seconds)


# --- Fixtures ---


@pytest.fixture
def rules() -> Rules:
    """The project's real rules.yaml."""
    return load_rules(PROJECT_ROOT / "rules.yaml")


@pytest.fixture
def time_port() -> MockTimePort:
    return MockTimePort(datetime(2024, 6, 15, 14, 30, 0, tzinfo=UTC))


@pytest.fixture
def tenant_id() -> UUID:
    return uuid4()


@pytest.fixture
def caller_id() -> UUID:
    return uuid4()


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@pytest.fixture
def store(time_port: MockTimePort) -> InMemoryAggregateStore:
    return InMemoryAggregateStore(time_port=time_port)


@pytest.fixture
def lookup() -> InMemoryAttributionLookup:
    return InMemoryAttributionLookup()


@pytest.fixture
def audit() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def membership(tenant_id: UUID, caller_id: UUID) -> InMemoryMembership:
    """Caller is the tenant's owner."""
    m = InMemoryMembership()
    m.add(tenant_id, caller_id, "owner")
    return m


@pytest.fixture
def scheduled_post(lookup: InMemoryAttributionLookup, tenant_id: UUID) -> ScheduledPost:
    """A published instagram post with its content item."""
    item = lookup.add_content_item(
        ContentItem(
            id=uuid4(),
            tenant_id=tenant_id,
            type="post",
            platform="instagram",
            text_content="Summer launch",
            created_at=datetime(2024, 6, 1, tzinfo=UTC),
        )
    )
    return lookup.add_post(
        ScheduledPost(
            id=uuid4(),
            tenant_id=tenant_id,
            content_item_id=item.id,
            platform="instagram",
            scheduled_at=datetime(2024, 6, 14, 9, 0, tzinfo=UTC),
            published_at=datetime(2024, 6, 14, 9, 0, 5, tzinfo=UTC),
            status="published",
        )
    )


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Migrated SQLite database in a temp dir."""
    path = str(tmp_path / "analytics.db")
    SQLiteMigrator(path, str(PROJECT_ROOT / "migrations")).run_migrations()
    return path
