"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, SecretStr

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


class RegexFailureMode(StrEnum):
    """What a silence matcher evaluates to when its regex cannot be run."""

    NOT_SUPPRESSED = "not_suppressed"
    SUPPRESSED = "suppressed"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"


class EscalationConfig(BaseModel):
    """Escalation cycle scheduling."""

    interval_secs: float = 60.0
    max_concurrent_alerts: int = 10
    retry_interval_secs: float = 300.0
    retry_batch_size: int = 50


class DispatchConfig(BaseModel):
    """Notification dispatch limits and timeouts."""

    transport_timeout_secs: float = 30.0
    connect_timeout_secs: float = 10.0
    rate_limit_window_secs: float = 3600.0
    max_response_body_chars: int = 1000


class SuppressionConfig(BaseModel):
    """Silence matcher evaluation bounds."""

    regex_failure_mode: RegexFailureMode = RegexFailureMode.NOT_SUPPRESSED
    max_regex_length: int = 512
    max_subject_length: int = 8192
    regex_timeout_secs: float = 0.1


class RetentionConfig(BaseModel):
    """Retention sweep thresholds, in days."""

    alert_days: int = 30
    silence_days: int = 7
    history_days: int = 30
    sweep_hour_utc: int = 2


class SmtpConfig(BaseModel):
    """Outbound mail server used by email channels."""

    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: SecretStr = SecretStr("")
    use_tls: bool = True
    timeout_secs: float = 30.0
    default_from: str = "pgalert@localhost"


class Settings(BaseModel):
    """Root settings container."""

    logging: LoggingConfig = LoggingConfig()
    escalation: EscalationConfig = EscalationConfig()
    dispatch: DispatchConfig = DispatchConfig()
    suppression: SuppressionConfig = SuppressionConfig()
    retention: RetentionConfig = RetentionConfig()
    smtp: SmtpConfig = SmtpConfig()
    catalog_path: str | None = None


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = Settings(**data)
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
