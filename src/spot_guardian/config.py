"""
Runtime configuration loaded from environment variables.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

import boto3

from .errors import ConfigurationError

DEFAULT_HOME_REGION = "us-east-1"


@dataclass
class Config:
    """Settings for the monitor, its schedules and its collaborators."""

    home_region: str = DEFAULT_HOME_REGION
    regions: list[str] = field(default_factory=list)  # empty means every enabled region

    telegram_enabled: bool = True
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    sns_topic_arn: Optional[str] = None

    check_interval: int = 60
    retry_count: int = 3
    retry_interval: float = 30
    start_timeout: float = 120
    start_poll_interval: float = 5
    notify_cooldown: float = 300
    discovery_concurrency: int = 10

    traffic_shutdown_enabled: bool = True
    traffic_limit_china_gb: float = 19
    traffic_limit_non_china_gb: float = 195
    traffic_check_interval: int = 300

    credits_enabled: bool = False
    credits_total: Decimal = Decimal("300")
    credits_alert_percent: Decimal = Decimal("5")
    credits_start_date: Optional[date] = None
    credits_check_interval: int = 3600

    billing_hours: int = 24
    dry_run: bool = False

    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Create configuration from environment variables and validate it."""
        env = os.environ if environ is None else environ
        reader = _EnvReader(env)

        config = cls(
            home_region=reader.str("AWS_REGION", env.get("AWS_DEFAULT_REGION", DEFAULT_HOME_REGION)),
            regions=reader.list("REGIONS"),
            telegram_enabled=reader.bool("TELEGRAM_ENABLED", True),
            telegram_bot_token=reader.str("TELEGRAM_BOT_TOKEN", ""),
            telegram_chat_id=reader.str("TELEGRAM_CHAT_ID", ""),
            sns_topic_arn=reader.str("SNS_TOPIC_ARN", "") or None,
            check_interval=reader.int("CHECK_INTERVAL", 60),
            retry_count=reader.int("RETRY_COUNT", 3),
            retry_interval=reader.float("RETRY_INTERVAL", 30),
            start_timeout=reader.float("START_TIMEOUT", 120),
            start_poll_interval=reader.float("START_POLL_INTERVAL", 5),
            notify_cooldown=reader.float("NOTIFY_COOLDOWN", 300),
            discovery_concurrency=reader.int("DISCOVERY_CONCURRENCY", 10),
            traffic_shutdown_enabled=reader.bool("TRAFFIC_SHUTDOWN_ENABLED", True),
            traffic_limit_china_gb=reader.float("TRAFFIC_LIMIT_CHINA_GB", 19),
            traffic_limit_non_china_gb=reader.float("TRAFFIC_LIMIT_NON_CHINA_GB", 195),
            traffic_check_interval=reader.int("TRAFFIC_CHECK_INTERVAL", 300),
            credits_enabled=reader.bool("CREDITS_ENABLED", False),
            credits_total=reader.decimal("CREDITS_TOTAL", "300"),
            credits_alert_percent=reader.decimal("CREDITS_ALERT_PERCENT", "5"),
            credits_start_date=reader.date("CREDITS_START_DATE"),
            credits_check_interval=reader.int("CREDITS_CHECK_INTERVAL", 3600),
            billing_hours=reader.int("BILLING_HOURS", 24),
            dry_run=reader.bool("DRY_RUN", False),
            log_level=reader.str("LOG_LEVEL", "INFO").upper(),
            log_file=reader.str("LOG_FILE", "") or None,
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.telegram_enabled:
            if not self.telegram_bot_token:
                raise ConfigurationError("TELEGRAM_BOT_TOKEN is required when Telegram is enabled")
            if not self.telegram_chat_id:
                raise ConfigurationError("TELEGRAM_CHAT_ID is required when Telegram is enabled")

        if self.retry_count < 1:
            raise ConfigurationError("RETRY_COUNT must be at least 1")
        if self.discovery_concurrency < 1:
            raise ConfigurationError("DISCOVERY_CONCURRENCY must be at least 1")
        for name in ("check_interval", "traffic_check_interval", "credits_check_interval", "billing_hours"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name.upper()} must be positive")

    def credits_window_start(self, today: Optional[date] = None) -> date:
        """Start of the credits window; defaults to the first of the current month."""
        if self.credits_start_date:
            return self.credits_start_date
        today = today or datetime.now(timezone.utc).date()
        return today.replace(day=1)


def require_aws_credentials(region: str = DEFAULT_HOME_REGION) -> None:
    """Fail fast when boto3 cannot resolve credentials from its provider chain."""
    session = boto3.Session(region_name=region)
    if session.get_credentials() is None:
        raise ConfigurationError(
            "No AWS credentials found. Set AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY, "
            "AWS_PROFILE, or run with an instance role."
        )


class _EnvReader:
    """Typed lookups over an environment mapping; bad values are configuration errors."""

    def __init__(self, env: Mapping[str, str]):
        self.env = env

    def _raw(self, key: str) -> Optional[str]:
        value = self.env.get(key)
        if value is None or value.strip() == "":
            return None
        return value.strip()

    def str(self, key: str, default: str) -> str:
        value = self._raw(key)
        return default if value is None else value

    def int(self, key: str, default: int) -> int:
        value = self._raw(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as e:
            raise ConfigurationError(f"{key} must be an integer, got {value!r}") from e

    def float(self, key: str, default: float) -> float:
        value = self._raw(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as e:
            raise ConfigurationError(f"{key} must be a number, got {value!r}") from e

    def decimal(self, key: str, default: str) -> Decimal:
        value = self._raw(key) or default
        try:
            return Decimal(value)
        except InvalidOperation as e:
            raise ConfigurationError(f"{key} must be a number, got {value!r}") from e

    def bool(self, key: str, default: bool) -> bool:
        value = self._raw(key)
        if value is None:
            return default
        lowered = value.lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ConfigurationError(f"{key} must be a boolean, got {value!r}")

    def date(self, key: str) -> Optional[date]:
        value = self._raw(key)
        if value is None:
            return None
        try:
            return datetime.strptime(value, "%Y-%m-%d").date()
        except ValueError as e:
            raise ConfigurationError(f"{key} must be YYYY-MM-DD, got {value!r}") from e

    def list(self, key: str) -> list[str]:
        """Accept a JSON list (REGIONS='["us-east-1"]') or a comma list."""
        value = self._raw(key)
        if value is None:
            return []
        if value.startswith("["):
            try:
                items = json.loads(value)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"{key} is not valid JSON: {e}") from e
            return [str(item).strip() for item in items if str(item).strip()]
        return [item.strip() for item in value.split(",") if item.strip()]
