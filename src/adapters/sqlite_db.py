"""
SQLite adapters for the post analytics engine.

Implements the analytics component ports on top of the schema in
migrations/001_initial.sql. Uses standard SQL where possible so the same
statements port to Postgres.

Aggregate upserts take the database write lock up front (BEGIN IMMEDIATE),
read the row, apply the caller's mutation and write it back before
committing, so no two writers ever interleave on one row.

tenant_guard widens that lock to a block of work: event recording (append
through aggregation) and rebuilds (log scan through row swap) each run in
one write transaction shared by every repository on the database.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID, uuid4

from src.components.analytics.models import ConcurrencyConflictError, StorageError
from src.components.analytics.ports import AggregateMutator
from src.core.entities import (
    AggregateKey,
    ContentItem,
    EngagementEvent,
    PostAnalyticsAggregate,
    ScheduledPost,
)

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT = 5.0

# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """Convert SQLite row to dictionary."""
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def parse_dt(s: str | None) -> datetime | None:
    """Parse ISO datetime string."""
    return datetime.fromisoformat(s) if s else None


def parse_uuid(s: str | None) -> UUID | None:
    """Parse UUID string."""
    return UUID(s) if s else None


def _opt_str(value: UUID | None) -> str | None:
    return str(value) if value is not None else None


def _is_lock_error(exc: sqlite3.Error) -> bool:
    msg = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and ("locked" in msg or "busy" in msg)


# -----------------------------------------------------------------------------
# Base SQLite Repository
# -----------------------------------------------------------------------------


# Write transactions opened by tenant_guard, per thread and database path.
# Repositories on the same database join them instead of connecting anew.
_active = threading.local()


def _active_conns() -> dict[str, sqlite3.Connection]:
    conns = getattr(_active, "conns", None)
    if conns is None:
        conns = _active.conns = {}
    return conns


class SQLiteRepoBase:
    """Base class for SQLite repositories."""

    def __init__(
        self,
        db_path: str,
        connection: sqlite3.Connection | None = None,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
    ):
        self.db_path = db_path
        self._external_conn = connection
        self._busy_timeout = busy_timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self._busy_timeout)
        conn.row_factory = dict_factory
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection (external, then guarded, then a new one)."""
        if self._external_conn is not None:
            return self._external_conn
        guarded = _active_conns().get(self.db_path)
        if guarded is not None:
            return guarded
        return self._connect()

    def _should_close(self) -> bool:
        """Whether to close (and commit) the connection after use."""
        return self._external_conn is None and self.db_path not in _active_conns()

    def _begin_immediate(self, conn: sqlite3.Connection) -> bool:
        """Take the write lock. Returns False when joining an open transaction."""
        if conn.in_transaction:
            return False
        conn.execute("BEGIN IMMEDIATE")
        return True

    @contextmanager
    def tenant_guard(self, tenant_id: UUID) -> Iterator[None]:
        """
        Run the block inside one write transaction on this database.

        SQLite has a single writer lock, so the guard covers every tenant.
        Reads and writes made by any repository on the same database in this
        thread share the transaction; it commits when the block exits and
        rolls back if the block raises.
        """
        conns = _active_conns()
        if self.db_path in conns or self._external_conn is not None:
            yield
            return

        conn = self._connect()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                if _is_lock_error(e):
                    raise ConcurrencyConflictError(("tenant", str(tenant_id))) from e
                raise StorageError(f"Could not open write transaction: {e}") from e

            conns[self.db_path] = conn
            try:
                yield
            except BaseException:
                conn.rollback()
                raise
            finally:
                del conns[self.db_path]
            try:
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(f"Commit failed for tenant {tenant_id}: {e}") from e
        finally:
            conn.close()


# -----------------------------------------------------------------------------
# Engagement Event Log
# -----------------------------------------------------------------------------


class SQLiteEventLogRepo(SQLiteRepoBase):
    """SQLite implementation of EventLogPort. Insert-only."""

    def append(self, event: EngagementEvent) -> EngagementEvent:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """
                INSERT INTO engagement_events (
                    id, tenant_id, content_item_id, scheduled_post_id,
                    event_type, platform, event_value, external_event_id,
                    metadata_json, occurred_at, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (
                    str(event.id),
                    str(event.tenant_id),
                    _opt_str(event.content_item_id),
                    _opt_str(event.scheduled_post_id),
                    event.event_type,
                    event.platform,
                    event.value,
                    event.external_event_id,
                    json.dumps(event.metadata, default=str),
                    event.occurred_at.isoformat(),
                    event.recorded_at.isoformat(),
                ),
            )
            if self._should_close():
                conn.commit()

            if cursor.rowcount == 0:
                if event.external_event_id is not None:
                    existing = self._find(
                        conn, event.tenant_id, event.platform, event.external_event_id
                    )
                    if existing is not None:
                        return existing
                raise StorageError(f"Event {event.id} was not stored")
            return event
        except sqlite3.Error as e:
            logger.error("Failed to append event %s: %s", event.id, e)
            raise StorageError(f"Failed to append event {event.id}: {e}") from e
        finally:
            if self._should_close():
                conn.close()

    def find_by_external_id(
        self, tenant_id: UUID, platform: str, external_event_id: str
    ) -> EngagementEvent | None:
        conn = self._get_conn()
        try:
            return self._find(conn, tenant_id, platform, external_event_id)
        except sqlite3.Error as e:
            raise StorageError(f"Event lookup failed: {e}") from e
        finally:
            if self._should_close():
                conn.close()

    def _find(
        self,
        conn: sqlite3.Connection,
        tenant_id: UUID,
        platform: str,
        external_event_id: str,
    ) -> EngagementEvent | None:
        row = conn.execute(
            """
            SELECT * FROM engagement_events
            WHERE tenant_id = ? AND platform = ? AND external_event_id = ?
            """,
            (str(tenant_id), platform, external_event_id),
        ).fetchone()
        return self._map_row(row) if row else None

    def iter_tenant(self, tenant_id: UUID) -> Iterator[EngagementEvent]:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """
                SELECT * FROM engagement_events
                WHERE tenant_id = ?
                ORDER BY recorded_at ASC, id ASC
                """,
                (str(tenant_id),),
            )
            for row in cursor:
                yield self._map_row(row)
        except sqlite3.Error as e:
            raise StorageError(f"Event scan failed for tenant {tenant_id}: {e}") from e
        finally:
            if self._should_close():
                conn.close()

    def count(self, tenant_id: UUID) -> int:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM engagement_events WHERE tenant_id = ?",
                (str(tenant_id),),
            ).fetchone()
            return int(row["n"])
        finally:
            if self._should_close():
                conn.close()

    def _map_row(self, row: dict[str, Any]) -> EngagementEvent:
        return EngagementEvent(
            id=UUID(row["id"]),
            tenant_id=UUID(row["tenant_id"]),
            content_item_id=parse_uuid(row["content_item_id"]),
            scheduled_post_id=parse_uuid(row["scheduled_post_id"]),
            event_type=row["event_type"],
            platform=row["platform"],
            value=row["event_value"],
            external_event_id=row["external_event_id"],
            metadata=json.loads(row["metadata_json"] or "{}"),
            occurred_at=datetime.fromisoformat(row["occurred_at"]),
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
        )


# -----------------------------------------------------------------------------
# Post Analytics Aggregates
# -----------------------------------------------------------------------------


class SQLitePostAnalyticsRepo(SQLiteRepoBase):
    """SQLite implementation of AggregateStorePort."""

    _UPSERT_SQL = """
        INSERT INTO post_analytics (
            id, tenant_id, content_item_id, scheduled_post_id, platform, date,
            views, likes, comments, shares, clicks, impressions,
            engagement_rate, click_through_rate, unique_viewers, reach,
            created_at, last_updated
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(tenant_id, scheduled_post_id, platform, date) DO UPDATE SET
            content_item_id = excluded.content_item_id,
            views = excluded.views,
            likes = excluded.likes,
            comments = excluded.comments,
            shares = excluded.shares,
            clicks = excluded.clicks,
            impressions = excluded.impressions,
            engagement_rate = excluded.engagement_rate,
            click_through_rate = excluded.click_through_rate,
            unique_viewers = excluded.unique_viewers,
            reach = excluded.reach,
            last_updated = excluded.last_updated
    """

    def upsert(self, key: AggregateKey, mutate: AggregateMutator) -> PostAnalyticsAggregate:
        conn = self._get_conn()
        owns_tx = False
        try:
            owns_tx = self._begin_immediate(conn)
            current = self._select(conn, key)
            updated = mutate(current).model_copy(update={"last_updated": datetime.now(UTC)})
            conn.execute(self._UPSERT_SQL, self._params(updated))
            if owns_tx:
                conn.commit()
            return updated
        except sqlite3.Error as e:
            if owns_tx:
                conn.rollback()
            if _is_lock_error(e):
                raise ConcurrencyConflictError(key.as_tuple()) from e
            logger.error("Aggregate upsert failed for %s: %s", key.as_tuple(), e)
            raise StorageError(f"Aggregate upsert failed: {e}") from e
        except BaseException:
            if owns_tx:
                conn.rollback()
            raise
        finally:
            if self._should_close():
                conn.close()

    def get(self, key: AggregateKey) -> PostAnalyticsAggregate | None:
        conn = self._get_conn()
        try:
            return self._select(conn, key)
        except sqlite3.Error as e:
            raise StorageError(f"Aggregate read failed: {e}") from e
        finally:
            if self._should_close():
                conn.close()

    def query(
        self,
        tenant_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        platform: str | None = None,
    ) -> list[PostAnalyticsAggregate]:
        conn = self._get_conn()
        try:
            sql = "SELECT * FROM post_analytics WHERE tenant_id = ?"
            params: list[Any] = [str(tenant_id)]

            if start_date is not None:
                sql += " AND date >= ?"
                params.append(start_date.isoformat())
            if end_date is not None:
                sql += " AND date <= ?"
                params.append(end_date.isoformat())
            if platform is not None:
                sql += " AND platform = ?"
                params.append(platform)

            sql += " ORDER BY date DESC, id DESC"
            rows = conn.execute(sql, params).fetchall()
            return [self._map_row(r) for r in rows]
        except sqlite3.Error as e:
            raise StorageError(f"Aggregate query failed: {e}") from e
        finally:
            if self._should_close():
                conn.close()

    def replace_tenant(self, tenant_id: UUID, rows: list[PostAnalyticsAggregate]) -> int:
        conn = self._get_conn()
        owns_tx = False
        try:
            owns_tx = self._begin_immediate(conn)
            conn.execute("DELETE FROM post_analytics WHERE tenant_id = ?", (str(tenant_id),))
            for row in rows:
                if row.tenant_id != tenant_id:
                    raise StorageError(f"Row {row.id} does not belong to tenant {tenant_id}")
                conn.execute(self._UPSERT_SQL, self._params(row))
            if owns_tx:
                conn.commit()
            return len(rows)
        except sqlite3.Error as e:
            if owns_tx:
                conn.rollback()
            if _is_lock_error(e):
                raise ConcurrencyConflictError(("tenant", str(tenant_id))) from e
            raise StorageError(f"Aggregate rebuild failed for tenant {tenant_id}: {e}") from e
        except BaseException:
            if owns_tx:
                conn.rollback()
            raise
        finally:
            if self._should_close():
                conn.close()

    def _select(
        self, conn: sqlite3.Connection, key: AggregateKey
    ) -> PostAnalyticsAggregate | None:
        row = conn.execute(
            """
            SELECT * FROM post_analytics
            WHERE tenant_id = ? AND scheduled_post_id = ? AND platform = ? AND date = ?
            """,
            (
                str(key.tenant_id),
                str(key.scheduled_post_id),
                key.platform,
                key.date.isoformat(),
            ),
        ).fetchone()
        return self._map_row(row) if row else None

    def _params(self, row: PostAnalyticsAggregate) -> tuple[Any, ...]:
        return (
            str(row.id),
            str(row.tenant_id),
            _opt_str(row.content_item_id),
            str(row.scheduled_post_id),
            row.platform,
            row.date.isoformat(),
            row.views,
            row.likes,
            row.comments,
            row.shares,
            row.clicks,
            row.impressions,
            row.engagement_rate,
            row.click_through_rate,
            row.unique_viewers,
            row.reach,
            row.created_at.isoformat(),
            row.last_updated.isoformat(),
        )

    def _map_row(self, row: dict[str, Any]) -> PostAnalyticsAggregate:
        return PostAnalyticsAggregate(
            id=UUID(row["id"]),
            tenant_id=UUID(row["tenant_id"]),
            content_item_id=parse_uuid(row["content_item_id"]),
            scheduled_post_id=UUID(row["scheduled_post_id"]),
            platform=row["platform"],
            date=date.fromisoformat(row["date"]),
            views=row["views"],
            likes=row["likes"],
            comments=row["comments"],
            shares=row["shares"],
            clicks=row["clicks"],
            impressions=row["impressions"],
            engagement_rate=row["engagement_rate"],
            click_through_rate=row["click_through_rate"],
            unique_viewers=row["unique_viewers"],
            reach=row["reach"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_updated=datetime.fromisoformat(row["last_updated"]),
        )


# -----------------------------------------------------------------------------
# Publishing Lookups (scheduled posts / content items)
# -----------------------------------------------------------------------------


class SQLiteAttributionLookup(SQLiteRepoBase):
    """SQLite implementation of AttributionLookupPort."""

    def get_scheduled_post(self, tenant_id: UUID, post_id: UUID) -> ScheduledPost | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM scheduled_posts WHERE id = ? AND tenant_id = ?",
                (str(post_id), str(tenant_id)),
            ).fetchone()
            if not row:
                return None
            return ScheduledPost(
                id=UUID(row["id"]),
                tenant_id=UUID(row["tenant_id"]),
                content_item_id=UUID(row["content_item_id"]),
                platform=row["platform"],
                scheduled_at=datetime.fromisoformat(row["scheduled_at"]),
                published_at=parse_dt(row["published_at"]),
                status=row["status"],
            )
        finally:
            if self._should_close():
                conn.close()

    def get_content_item(self, tenant_id: UUID, item_id: UUID) -> ContentItem | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM content_items WHERE id = ? AND tenant_id = ?",
                (str(item_id), str(tenant_id)),
            ).fetchone()
            if not row:
                return None
            return ContentItem(
                id=UUID(row["id"]),
                tenant_id=UUID(row["tenant_id"]),
                type=row["type"],
                platform=row["platform"],
                text_content=row["text_content"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
        finally:
            if self._should_close():
                conn.close()

    def save_content_item(self, item: ContentItem) -> ContentItem:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO content_items (id, tenant_id, type, platform, text_content, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    type = excluded.type,
                    platform = excluded.platform,
                    text_content = excluded.text_content
                """,
                (
                    str(item.id),
                    str(item.tenant_id),
                    item.type,
                    item.platform,
                    item.text_content,
                    item.created_at.isoformat(),
                ),
            )
            if self._should_close():
                conn.commit()
            return item
        finally:
            if self._should_close():
                conn.close()

    def save_scheduled_post(self, post: ScheduledPost) -> ScheduledPost:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO scheduled_posts (
                    id, tenant_id, content_item_id, platform,
                    scheduled_at, published_at, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    scheduled_at = excluded.scheduled_at,
                    published_at = excluded.published_at,
                    status = excluded.status
                """,
                (
                    str(post.id),
                    str(post.tenant_id),
                    str(post.content_item_id),
                    post.platform,
                    post.scheduled_at.isoformat(),
                    post.published_at.isoformat() if post.published_at else None,
                    post.status,
                ),
            )
            if self._should_close():
                conn.commit()
            return post
        finally:
            if self._should_close():
                conn.close()


# -----------------------------------------------------------------------------
# Tenant Membership
# -----------------------------------------------------------------------------


class SQLiteMembershipRepo(SQLiteRepoBase):
    """SQLite implementation of TenantMembershipPort."""

    def get_role(self, tenant_id: UUID, user_id: UUID) -> str | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT role FROM tenant_users WHERE tenant_id = ? AND user_id = ?",
                (str(tenant_id), str(user_id)),
            ).fetchone()
            return row["role"] if row else None
        finally:
            if self._should_close():
                conn.close()

    def ensure_tenant(self, tenant_id: UUID, name: str = "") -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO tenants (id, name, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (str(tenant_id), name or str(tenant_id), datetime.now(UTC).isoformat()),
            )
            if self._should_close():
                conn.commit()
        finally:
            if self._should_close():
                conn.close()

    def add(self, tenant_id: UUID, user_id: UUID, role: str = "member") -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO tenant_users (tenant_id, user_id, role, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tenant_id, user_id) DO UPDATE SET role = excluded.role
                """,
                (str(tenant_id), str(user_id), role, datetime.now(UTC).isoformat()),
            )
            if self._should_close():
                conn.commit()
        finally:
            if self._should_close():
                conn.close()


# -----------------------------------------------------------------------------
# Audit Log
# -----------------------------------------------------------------------------


class SQLiteAuditSink(SQLiteRepoBase):
    """SQLite implementation of AuditSinkPort."""

    def record(
        self,
        tenant_id: UUID,
        actor_id: UUID | None,
        action: str,
        resource_type: str,
        resource_id: UUID | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO audit_logs (
                    id, tenant_id, actor_id, action, resource_type,
                    resource_id, metadata_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid4()),
                    str(tenant_id),
                    _opt_str(actor_id),
                    action,
                    resource_type,
                    _opt_str(resource_id),
                    json.dumps(metadata or {}, default=str),
                    datetime.now(UTC).isoformat(),
                ),
            )
            if self._should_close():
                conn.commit()
        finally:
            if self._should_close():
                conn.close()

    def list_by_tenant(self, tenant_id: UUID, limit: int = 100) -> list[dict[str, Any]]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT * FROM audit_logs
                WHERE tenant_id = ?
                ORDER BY created_at DESC LIMIT ?
                """,
                (str(tenant_id), limit),
            ).fetchall()
            for row in rows:
                row["metadata"] = json.loads(row.pop("metadata_json") or "{}")
            return rows
        finally:
            if self._should_close():
                conn.close()
