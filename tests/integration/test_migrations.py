import sqlite3

import pytest

from src.adapters.sqlite.migrator import DEFAULT_MIGRATIONS_DIR, SQLiteMigrator

TABLES = (
    "tenants",
    "tenant_users",
    "content_items",
    "scheduled_posts",
    "engagement_events",
    "post_analytics",
    "audit_logs",
)


@pytest.fixture
def temp_db_path(tmp_path):
    return str(tmp_path / "test_db.sqlite")


@pytest.fixture
def migrations_dir():
    # Real migrations, so the SQL itself is exercised
    return DEFAULT_MIGRATIONS_DIR


def table_names(db_path):
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    finally:
        conn.close()
    return {r[0] for r in rows}


def test_migrator_creates_migration_table(temp_db_path, migrations_dir):
    SQLiteMigrator(temp_db_path, migrations_dir).run_migrations()

    assert "_migrations" in table_names(temp_db_path)


def test_migrator_applies_initial(temp_db_path, migrations_dir):
    applied = SQLiteMigrator(temp_db_path, migrations_dir).run_migrations()

    assert applied == ["001_initial.sql"]
    assert set(TABLES) <= table_names(temp_db_path)

    conn = sqlite3.connect(temp_db_path)
    cursor = conn.execute("SELECT filename FROM _migrations WHERE filename='001_initial.sql'")
    assert cursor.fetchone() is not None
    conn.close()


def test_migrator_is_idempotent(temp_db_path, migrations_dir):
    migrator = SQLiteMigrator(temp_db_path, migrations_dir)

    # Run twice
    migrator.run_migrations()
    assert migrator.run_migrations() == []
    assert migrator.pending() == []

    conn = sqlite3.connect(temp_db_path)
    cursor = conn.execute("SELECT count(*) FROM _migrations WHERE filename='001_initial.sql'")
    assert cursor.fetchone()[0] == 1
    conn.close()


def test_pending_before_run(temp_db_path, migrations_dir):
    assert SQLiteMigrator(temp_db_path, migrations_dir).pending() == ["001_initial.sql"]


def test_broken_migration_raises(temp_db_path, tmp_path):
    bad_dir = tmp_path / "bad_migrations"
    bad_dir.mkdir()
    (bad_dir / "001_broken.sql").write_text("-- Up\nCREATE TABLEX nope;\n-- Down\n")

    with pytest.raises(RuntimeError, match="001_broken.sql"):
        SQLiteMigrator(temp_db_path, str(bad_dir)).run_migrations()


def test_natural_key_is_unique(temp_db_path, migrations_dir):
    SQLiteMigrator(temp_db_path, migrations_dir).run_migrations()
    conn = sqlite3.connect(temp_db_path)
    insert = """
        INSERT INTO post_analytics (
            id, tenant_id, scheduled_post_id, platform, date, created_at, last_updated
        ) VALUES (?, 't1', 'p1', 'instagram', '2024-06-15', 'now', 'now')
    """
    conn.execute(insert, ("a",))

    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(insert, ("b",))
    conn.close()


def test_external_event_id_unique_per_tenant_platform(temp_db_path, migrations_dir):
    SQLiteMigrator(temp_db_path, migrations_dir).run_migrations()
    conn = sqlite3.connect(temp_db_path)
    insert = """
        INSERT INTO engagement_events (
            id, tenant_id, event_type, platform, external_event_id, occurred_at, recorded_at
        ) VALUES (?, ?, 'like', ?, ?, 'now', 'now')
    """
    conn.execute(insert, ("e1", "t1", "instagram", "x-1"))
    # Same id on another platform or tenant is fine; NULL never collides
    conn.execute(insert, ("e2", "t1", "facebook", "x-1"))
    conn.execute(insert, ("e3", "t2", "instagram", "x-1"))
    conn.execute(insert, ("e4", "t1", "instagram", None))
    conn.execute(insert, ("e5", "t1", "instagram", None))

    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(insert, ("e6", "t1", "instagram", "x-1"))
    conn.close()


def test_event_value_must_be_positive(temp_db_path, migrations_dir):
    SQLiteMigrator(temp_db_path, migrations_dir).run_migrations()
    conn = sqlite3.connect(temp_db_path)

    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            """
            INSERT INTO engagement_events (
                id, tenant_id, event_type, platform, event_value, occurred_at, recorded_at
            ) VALUES ('e1', 't1', 'like', 'instagram', 0, 'now', 'now')
            """
        )
    conn.close()


def test_migrations_dir_from_environment(temp_db_path, tmp_path, monkeypatch):
    installed = tmp_path / "installed_migrations"
    installed.mkdir()
    (installed / "001_only.sql").write_text(
        "-- Up\nCREATE TABLE only_table (id TEXT PRIMARY KEY);\n-- Down\n"
    )
    monkeypatch.setenv("ANALYTICS_MIGRATIONS_DIR", str(installed))

    migrator = SQLiteMigrator(temp_db_path)

    assert migrator.migrations_dir == str(installed)
    assert migrator.run_migrations() == ["001_only.sql"]
    assert "only_table" in table_names(temp_db_path)


def test_migrations_dir_defaults_to_checkout(temp_db_path, monkeypatch):
    monkeypatch.delenv("ANALYTICS_MIGRATIONS_DIR", raising=False)

    assert SQLiteMigrator(temp_db_path).migrations_dir == DEFAULT_MIGRATIONS_DIR


def test_missing_migrations_dir_is_reported(temp_db_path, tmp_path, monkeypatch):
    monkeypatch.setenv("ANALYTICS_MIGRATIONS_DIR", str(tmp_path / "nowhere"))

    with pytest.raises(FileNotFoundError, match="ANALYTICS_MIGRATIONS_DIR"):
        SQLiteMigrator(temp_db_path)
