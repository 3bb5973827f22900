"""Tests for configuration loading and validation."""

import pytest
import yaml
from pydantic import ValidationError

from workitem_bridge.config import MigrationConfig, WorkflowConfig, load_config_from_yaml

BASE = {
    "source": {"url": "https://rally.test/", "api_key": "${RALLY_KEY}", "workspace": "111"},
    "target": {"organization": "acme", "project": "Migration", "token": "pat"},
}


def _write(tmp_path, data) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestLoadConfig:
    """Tests for load_config_from_yaml."""

    def test_loads_and_expands_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RALLY_KEY", "secret")

        config = load_config_from_yaml(_write(tmp_path, BASE))

        assert config.source.api_key == "secret"
        assert config.source.url == "https://rally.test"
        assert config.target.url == "https://dev.azure.com"
        assert config.performance.batch_size == 100
        assert config.options.enable_difference_patch is True
        assert config.workflow.transitions["Closed"] == ["Active", "Closed"]

    def test_missing_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("RALLY_KEY", raising=False)

        with pytest.raises(ValueError, match="RALLY_KEY"):
            load_config_from_yaml(_write(tmp_path, BASE))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_from_yaml(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")

        with pytest.raises(ValueError, match="Empty"):
            load_config_from_yaml(path)

    def test_invalid_url(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RALLY_KEY", "secret")
        data = {**BASE, "target": {**BASE["target"], "url": "dev.azure.com"}}

        with pytest.raises(ValidationError):
            load_config_from_yaml(_write(tmp_path, data))

    def test_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RALLY_KEY", "secret")
        data = {
            **BASE,
            "performance": {"batch_size": 5, "max_concurrent": 2},
            "options": {"dry_run": True, "bypass_rules": True},
            "logging": {"level": "debug", "format": "CONSOLE"},
        }

        config = load_config_from_yaml(_write(tmp_path, data))

        assert config.performance.batch_size == 5
        assert config.options.dry_run is True
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "console"


class TestWorkflowConfig:
    """Tests for WorkflowConfig validation."""

    def test_unknown_platform(self):
        with pytest.raises(ValidationError, match="Unknown workflow platform"):
            WorkflowConfig(platform="jira")

    def test_empty_path_rejected(self):
        with pytest.raises(ValidationError, match="cannot be empty"):
            WorkflowConfig(platforms={"ado": {"Closed": []}})

    def test_custom_platform(self):
        workflow = WorkflowConfig(
            platform="agile", platforms={"agile": {"Done": ["Doing", "Done"]}}
        )
        assert workflow.transitions == {"Done": ["Doing", "Done"]}


def test_env_settings(monkeypatch):
    monkeypatch.setenv("WORKITEM_BRIDGE_OPTIONS__DRY_RUN", "true")

    config = MigrationConfig(
        source={"api_key": "k", "workspace": "1"},
        target={"organization": "o", "project": "p", "token": "t"},
    )

    assert config.options.dry_run is True
