"""AnalyticsConfig and ConfigManager — engine limits and environment profiles."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from pivotal.errors import ValidationError

logger = logging.getLogger(__name__)


class AnalyticsConfig(BaseModel):
    """Runtime settings for the analytics subsystem."""

    max_pipeline_stages: int = Field(default=20, ge=1)
    max_concurrent_widgets: int = Field(default=4, ge=1)

    cache_enabled: bool = True
    cache_ttl_seconds: float = Field(default=300, ge=0)
    cache_max_entries: int = Field(default=256, ge=1)

    scheduler_enabled: bool = True
    scheduler_tick_seconds: float = Field(default=60, gt=0)
    scheduler_workers: int = Field(default=2, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=60, ge=0)
    scheduler_state_path: Optional[str] = None

    tenant_field: str = "tenant_id"
    owner_field: str = "owner_id"
    scope_by_owner: bool = False

    report_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    webhook_url: Optional[str] = None
    """Default delivery target when the host offers no notification service."""

    log_level: str = "INFO"


# All known configuration keys: env var -> (AnalyticsConfig field, description)
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "PIVOTAL_ENV": {"field": None, "default": "development", "description": "Environment profile"},
    "PIVOTAL_LOG_LEVEL": {"field": "log_level", "default": "INFO", "description": "Logging level"},
    "PIVOTAL_MAX_PIPELINE_STAGES": {"field": "max_pipeline_stages", "default": "20",
                                    "description": "Maximum stages per pipeline"},
    "PIVOTAL_MAX_CONCURRENT_WIDGETS": {"field": "max_concurrent_widgets", "default": "4",
                                       "description": "Widgets resolved in parallel per dashboard"},
    "PIVOTAL_CACHE_ENABLED": {"field": "cache_enabled", "default": "true",
                              "description": "Cache report results"},
    "PIVOTAL_CACHE_TTL": {"field": "cache_ttl_seconds", "default": "300",
                          "description": "Report cache lifetime in seconds"},
    "PIVOTAL_CACHE_MAX_ENTRIES": {"field": "cache_max_entries", "default": "256",
                                  "description": "Report cache size bound"},
    "PIVOTAL_SCHEDULER_ENABLED": {"field": "scheduler_enabled", "default": "true",
                                  "description": "Run scheduled reports"},
    "PIVOTAL_SCHEDULER_TICK": {"field": "scheduler_tick_seconds", "default": "60",
                               "description": "Scheduler polling interval in seconds"},
    "PIVOTAL_SCHEDULER_WORKERS": {"field": "scheduler_workers", "default": "2",
                                  "description": "Threads executing scheduled reports"},
    "PIVOTAL_SCHEDULER_STATE": {"field": "scheduler_state_path", "default": "",
                                "description": "Scheduler state snapshot file"},
    "PIVOTAL_MAX_ATTEMPTS": {"field": "max_attempts", "default": "3",
                             "description": "Attempts per scheduled run"},
    "PIVOTAL_BACKOFF_SECONDS": {"field": "backoff_seconds", "default": "1.0",
                                "description": "Initial retry backoff"},
    "PIVOTAL_BACKOFF_MAX_SECONDS": {"field": "backoff_max_seconds", "default": "60",
                                    "description": "Retry backoff ceiling"},
    "PIVOTAL_TENANT_FIELD": {"field": "tenant_field", "default": "tenant_id",
                             "description": "Record field holding the tenant id"},
    "PIVOTAL_OWNER_FIELD": {"field": "owner_field", "default": "owner_id",
                            "description": "Record field holding the owner id"},
    "PIVOTAL_SCOPE_BY_OWNER": {"field": "scope_by_owner", "default": "false",
                               "description": "Restrict rows to the calling user"},
    "PIVOTAL_REPORT_TIMEOUT": {"field": "report_timeout_seconds", "default": "",
                               "description": "Per-report execution timeout (empty = none)"},
    "PIVOTAL_WEBHOOK_URL": {"field": "webhook_url", "default": "",
                            "description": "Webhook for scheduled report delivery (secret)"},
}

_PROFILES: dict[str, dict[str, str]] = {
    "development": {
        "PIVOTAL_ENV": "development",
        "PIVOTAL_LOG_LEVEL": "DEBUG",
    },
    "production": {
        "PIVOTAL_ENV": "production",
        "PIVOTAL_LOG_LEVEL": "WARNING",
    },
    "testing": {
        "PIVOTAL_ENV": "testing",
        "PIVOTAL_LOG_LEVEL": "DEBUG",
        "PIVOTAL_CACHE_ENABLED": "false",
        "PIVOTAL_SCHEDULER_ENABLED": "false",
    },
}


class ConfigManager:
    """Manage analytics configuration across environments."""

    def generate_env_template(self, project_path: str | Path) -> Path:
        """Create .env.example with all config keys.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        env_path = root / ".env.example"

        lines = ["# Pivotal Configuration Template", "# Copy to .env and fill in values", ""]
        for key, info in _CONFIG_KEYS.items():
            lines.append(f"# {info['description']}")
            lines.append(f"{key}={info['default']}")
            lines.append("")

        env_path.write_text("\n".join(lines), encoding="utf-8")
        return env_path

    def load_config(self, project_path: str | Path) -> dict[str, str]:
        """Load merged config: defaults -> profile -> config.json -> .env -> env vars.

        Returns a flat dict of configuration values.
        """
        root = Path(project_path)
        config: dict[str, str] = {key: str(info["default"]) for key, info in _CONFIG_KEYS.items()}

        env_name = os.environ.get("PIVOTAL_ENV", config["PIVOTAL_ENV"])
        config.update(_PROFILES.get(env_name, {}))

        config_json = root / ".pivotal" / "config.json"
        if config_json.is_file():
            try:
                data = json.loads(config_json.read_text(encoding="utf-8"))
                for k, v in data.items():
                    config[k] = _to_text(v)
            except (json.JSONDecodeError, OSError):
                logger.debug("Could not read %s", config_json, exc_info=True)

        env_file = root / ".env"
        if env_file.is_file():
            try:
                for line in env_file.read_text(encoding="utf-8").splitlines():
                    line = line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    k, v = line.split("=", 1)
                    config[k.strip()] = v.strip().strip('"').strip("'")
            except OSError:
                logger.debug("Could not read %s", env_file, exc_info=True)

        for key in _CONFIG_KEYS:
            env_val = os.environ.get(key)
            if env_val is not None:
                config[key] = env_val

        return config

    def load_analytics_config(self, project_path: str | Path) -> AnalyticsConfig:
        """Load the merged config and convert it to an :class:`AnalyticsConfig`.

        Raises
        ------
        ValidationError
            If a value cannot be converted to its field type.
        """
        raw = self.load_config(project_path)
        values: dict[str, Any] = {}
        for key, info in _CONFIG_KEYS.items():
            field = info["field"]
            if field is None:
                continue
            value = raw.get(key, "")
            if value == "" and field in ("report_timeout_seconds", "scheduler_state_path", "webhook_url"):
                continue
            values[field] = value
        try:
            return AnalyticsConfig.model_validate(values)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid configuration: {exc}") from exc


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
