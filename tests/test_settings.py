"""Tests for AnalyticsConfig loading across profiles, files and environment."""

from __future__ import annotations

import json
import os

import pytest

from pivotal.errors import ValidationError
from pivotal.settings import AnalyticsConfig, ConfigManager


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("PIVOTAL_"):
            monkeypatch.delenv(key)


@pytest.fixture
def manager() -> ConfigManager:
    return ConfigManager()


class TestLoadConfig:
    def test_defaults_use_development_profile(self, manager: ConfigManager, tmp_path) -> None:
        config = manager.load_config(tmp_path)
        assert config["PIVOTAL_ENV"] == "development"
        assert config["PIVOTAL_LOG_LEVEL"] == "DEBUG"
        assert config["PIVOTAL_CACHE_TTL"] == "300"

    def test_profile_from_environment(self, manager: ConfigManager, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("PIVOTAL_ENV", "production")
        assert manager.load_config(tmp_path)["PIVOTAL_LOG_LEVEL"] == "WARNING"

    def test_config_json_overrides_profile(self, manager: ConfigManager, tmp_path) -> None:
        (tmp_path / ".pivotal").mkdir()
        (tmp_path / ".pivotal" / "config.json").write_text(
            json.dumps({"PIVOTAL_CACHE_TTL": 60, "PIVOTAL_CACHE_ENABLED": False}),
            encoding="utf-8",
        )
        config = manager.load_config(tmp_path)
        assert config["PIVOTAL_CACHE_TTL"] == "60"
        assert config["PIVOTAL_CACHE_ENABLED"] == "false"

    def test_env_file_overrides_config_json(self, manager: ConfigManager, tmp_path) -> None:
        (tmp_path / ".pivotal").mkdir()
        (tmp_path / ".pivotal" / "config.json").write_text(
            json.dumps({"PIVOTAL_CACHE_TTL": 60}), encoding="utf-8"
        )
        (tmp_path / ".env").write_text(
            '# local overrides\nPIVOTAL_CACHE_TTL="120"\n\nnot a setting\n', encoding="utf-8"
        )
        assert manager.load_config(tmp_path)["PIVOTAL_CACHE_TTL"] == "120"

    def test_environment_wins(self, manager: ConfigManager, tmp_path, monkeypatch) -> None:
        (tmp_path / ".env").write_text("PIVOTAL_SCHEDULER_WORKERS=4\n", encoding="utf-8")
        monkeypatch.setenv("PIVOTAL_SCHEDULER_WORKERS", "8")
        assert manager.load_config(tmp_path)["PIVOTAL_SCHEDULER_WORKERS"] == "8"

    def test_broken_config_json_ignored(self, manager: ConfigManager, tmp_path) -> None:
        (tmp_path / ".pivotal").mkdir()
        (tmp_path / ".pivotal" / "config.json").write_text("{not json", encoding="utf-8")
        assert manager.load_config(tmp_path)["PIVOTAL_CACHE_TTL"] == "300"


class TestLoadAnalyticsConfig:
    def test_defaults(self, manager: ConfigManager, tmp_path) -> None:
        config = manager.load_analytics_config(tmp_path)
        assert config == AnalyticsConfig(log_level="DEBUG")
        assert config.report_timeout_seconds is None
        assert config.scheduler_state_path is None
        assert config.webhook_url is None

    def test_testing_profile_disables_cache_and_scheduler(self, manager, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("PIVOTAL_ENV", "testing")
        config = manager.load_analytics_config(tmp_path)
        assert config.cache_enabled is False
        assert config.scheduler_enabled is False

    def test_typed_values(self, manager: ConfigManager, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("PIVOTAL_REPORT_TIMEOUT", "2.5")
        monkeypatch.setenv("PIVOTAL_SCOPE_BY_OWNER", "true")
        monkeypatch.setenv("PIVOTAL_MAX_CONCURRENT_WIDGETS", "8")
        monkeypatch.setenv("PIVOTAL_SCHEDULER_STATE", "/var/lib/pivotal/schedules.json")
        monkeypatch.setenv("PIVOTAL_WEBHOOK_URL", "https://hooks.example.com/reports")
        config = manager.load_analytics_config(tmp_path)
        assert config.report_timeout_seconds == 2.5
        assert config.scope_by_owner is True
        assert config.max_concurrent_widgets == 8
        assert config.scheduler_state_path == "/var/lib/pivotal/schedules.json"
        assert config.webhook_url == "https://hooks.example.com/reports"

    @pytest.mark.parametrize("key,value", [
        ("PIVOTAL_MAX_PIPELINE_STAGES", "lots"),
        ("PIVOTAL_MAX_PIPELINE_STAGES", "0"),
        ("PIVOTAL_CACHE_TTL", "-1"),
        ("PIVOTAL_REPORT_TIMEOUT", "0"),
    ])
    def test_invalid_values(self, manager, tmp_path, monkeypatch, key, value) -> None:
        monkeypatch.setenv(key, value)
        with pytest.raises(ValidationError):
            manager.load_analytics_config(tmp_path)


class TestEnvTemplate:
    def test_template_lists_every_key(self, manager: ConfigManager, tmp_path) -> None:
        path = manager.generate_env_template(tmp_path)
        text = path.read_text(encoding="utf-8")
        assert path.name == ".env.example"
        assert text.startswith("# Pivotal Configuration Template")
        assert "PIVOTAL_CACHE_TTL=300" in text
        assert "PIVOTAL_WEBHOOK_URL=" in text
        assert "# Report cache lifetime in seconds" in text
