"""
Rules file loading and validation tests.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from src.rules.loader import load_rules
from src.rules.models import AnalyticsRules, Rules

PROJECT_ROOT = Path(__file__).parent.parent.parent


def valid_rules() -> dict[str, Any]:
    return {
        "project": {"slug": "post-analytics-engine", "rules_version": "1.0"},
        "analytics": {"platforms": ["instagram", "tiktok"]},
        "rbac": {"roles": ["owner", "admin", "member"], "rebuild_roles": ["owner"]},
        "ops": {"data_dir_required": True, "required_env": []},
    }


def write_rules(tmp_path: Path, data: dict[str, Any] | str) -> Path:
    path = tmp_path / "rules.yaml"
    path.write_text(data if isinstance(data, str) else yaml.safe_dump(data))
    return path


class TestRulesLoading:
    """Test rules file loading."""

    def test_load_actual_rules_file(self) -> None:
        rules = load_rules(PROJECT_ROOT / "rules.yaml")

        assert isinstance(rules, Rules)
        assert rules.project.slug == "post-analytics-engine"
        assert "impression" in rules.analytics.event_types
        assert "google_ads" in rules.analytics.platforms
        assert rules.analytics.top_posts_max_limit == 100
        assert rules.rbac.rebuild_roles == ["owner", "admin"]

    def test_defaults_applied(self, tmp_path: Path) -> None:
        rules = load_rules(write_rules(tmp_path, valid_rules()))

        assert rules.analytics.platforms == ["instagram", "tiktok"]
        assert rules.analytics.clamp_rates is True
        assert rules.analytics.top_posts_default_limit == 10
        assert rules.analytics.max_event_value == 1_000_000

    def test_yaml_inside_markdown_fence(self, tmp_path: Path) -> None:
        body = yaml.safe_dump(valid_rules())
        path = write_rules(tmp_path, f"# Rules\n\nSome notes.\n\n```yaml\n{body}```\n\nTrailer.\n")

        rules = load_rules(path)

        assert rules.rbac.rebuild_roles == ["owner"]

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_rules(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_rules(write_rules(tmp_path, "invalid: yaml: content: ["))

    def test_missing_section(self, tmp_path: Path) -> None:
        data = valid_rules()
        del data["rbac"]

        with pytest.raises(ValueError, match="Rules validation failed"):
            load_rules(write_rules(tmp_path, data))


class TestRulesConstraints:
    """Cross-field checks."""

    def test_default_limit_above_max(self) -> None:
        with pytest.raises(ValueError):
            AnalyticsRules(top_posts_default_limit=50, top_posts_max_limit=20)

    def test_zero_limit_rejected(self) -> None:
        with pytest.raises(ValueError):
            AnalyticsRules(top_posts_max_limit=0)

    def test_negative_retries_rejected(self) -> None:
        with pytest.raises(ValueError):
            AnalyticsRules(max_update_retries=-1)

    def test_unknown_rebuild_role(self, tmp_path: Path) -> None:
        data = valid_rules()
        data["rbac"]["rebuild_roles"] = ["owner", "superuser"]

        with pytest.raises(ValueError, match="superuser"):
            load_rules(write_rules(tmp_path, data))
