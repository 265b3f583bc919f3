"""
Operator CLI tests against a temp data dir.
"""

from __future__ import annotations

from pathlib import Path
from uuid import UUID, uuid4

import pytest

from src.adapters.sqlite_db import SQLiteEventLogRepo, SQLiteMembershipRepo
from src.api.auth_utils import caller_id_from_token
from src.app_shell import cli
from src.core.entities import EngagementEvent

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data = tmp_path / "data"
    monkeypatch.setenv("ANALYTICS_DATA_DIR", str(data))
    monkeypatch.setenv("ANALYTICS_RULES_PATH", str(PROJECT_ROOT / "rules.yaml"))
    return data


class TestCli:
    def test_migrate(self, data_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        cli.main(["migrate"])

        assert (data_dir / "analytics.db").exists()
        assert "Applied 1 migration(s)" in capsys.readouterr().out

    def test_grant_and_rebuild(self, data_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        tenant_id, owner = uuid4(), uuid4()
        db_path = str(data_dir / "analytics.db")
        cli.main(["migrate"])
        cli.main(["grant", str(tenant_id), str(owner), "--role", "owner"])

        assert SQLiteMembershipRepo(db_path).get_role(tenant_id, owner) == "owner"

        SQLiteEventLogRepo(db_path).append(
            EngagementEvent(
                tenant_id=tenant_id,
                scheduled_post_id=uuid4(),
                event_type="like",
                platform="instagram",
            )
        )
        cli.main(["rebuild", str(tenant_id), "--as-user", str(owner)])

        assert "Rebuilt 1 rows from 1 events (0 unattributed)." in capsys.readouterr().out

    def test_rebuild_denied_exits(self, data_dir: Path) -> None:
        cli.main(["migrate"])

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["rebuild", str(uuid4()), "--as-user", str(uuid4())])
        assert exc_info.value.code == 1

    def test_unknown_role_exits(self, data_dir: Path) -> None:
        cli.main(["migrate"])

        with pytest.raises(SystemExit):
            cli.main(["grant", str(uuid4()), str(uuid4()), "--role", "superuser"])

    def test_token(self, capsys: pytest.CaptureFixture[str]) -> None:
        user_id = uuid4()
        cli.main(["token", str(user_id), "--minutes", "5"])

        token = capsys.readouterr().out.strip()
        assert caller_id_from_token(token) == UUID(str(user_id))
