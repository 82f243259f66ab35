"""Environment-driven configuration for leave-helper.

Environment Variables:
    APP_ID: Lark application id (required)
    APP_SECRET: Lark application secret (required)
    VERIFICATION_TOKEN: Event envelope verification token (optional)
    ENCRYPT_KEY: Event encryption / signature key (optional)
    REDIS_URL: Redis connection string for the correlation store (required)
    LARK_API_BASE_URL: Open platform base URL (optional, default https://open.feishu.cn)
    LEAVE_HELPER_KEY_NAMESPACE: Correlation key prefix (optional, default leaveHelper)
    LEAVE_HELPER_TIMEZONE: Civil time zone of leave timestamps (optional, default Asia/Shanghai)
    LEAVE_HELPER_HOST: HTTP bind host (optional, default 0.0.0.0)
    LEAVE_HELPER_PORT: HTTP bind port (optional, default 40090)
    LEAVE_HELPER_MAX_INFLIGHT: Max concurrent handler invocations (optional, default 8)
    LEAVE_HELPER_LOG_LEVEL: Root log level (optional, default INFO)
    LEAVE_HELPER_LOG_FORMAT: ``text`` or ``json`` (optional, default text)
    LEAVE_HELPER_LOG_ROOT: Directory for JSON log files (optional)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from leave_helper.calendar import DEFAULT_LARK_API_BASE_URL, LarkAppCredentials
from leave_helper.core.logging import resolve_log_root
from leave_helper.correlation import DEFAULT_KEY_NAMESPACE
from leave_helper.events import DEFAULT_TIMEZONE

VALID_LOG_FORMATS = {"text", "json"}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


def _require(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        raise ConfigError(f"{name} environment variable is required")
    return value


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class LeaveHelperConfig:
    """Runtime configuration for the leave-helper service."""

    app_id: str
    app_secret: str = field(repr=False)
    redis_url: str = field(repr=False)

    verification_token: str = field(default="", repr=False)
    encrypt_key: str = field(default="", repr=False)

    lark_api_base_url: str = DEFAULT_LARK_API_BASE_URL
    key_namespace: str = DEFAULT_KEY_NAMESPACE
    timezone: str = DEFAULT_TIMEZONE

    host: str = "0.0.0.0"
    port: int = 40090
    max_inflight: int = 8

    log_level: str = "INFO"
    log_format: str = "text"
    log_root: Path | None = None

    def __post_init__(self) -> None:
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown timezone: {self.timezone!r}") from exc
        if self.log_format not in VALID_LOG_FORMATS:
            raise ConfigError(
                f"log format must be one of {sorted(VALID_LOG_FORMATS)}, got {self.log_format!r}"
            )
        if self.max_inflight < 1:
            raise ConfigError("max_inflight must be at least 1")

    @property
    def credentials(self) -> LarkAppCredentials:
        return LarkAppCredentials(app_id=self.app_id, app_secret=self.app_secret)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> LeaveHelperConfig:
        """Load configuration from environment variables.

        Raises:
            ConfigError: when a required variable is missing or a value is invalid.
        """
        env = os.environ if env is None else env

        app_id = env.get("APP_ID", "").strip()
        app_secret = env.get("APP_SECRET", "").strip()
        if not app_id or not app_secret:
            raise ConfigError("APP_ID or APP_SECRET is not set")

        redis_url = _require(env, "REDIS_URL")

        return cls(
            app_id=app_id,
            app_secret=app_secret,
            redis_url=redis_url,
            verification_token=env.get("VERIFICATION_TOKEN", ""),
            encrypt_key=env.get("ENCRYPT_KEY", ""),
            lark_api_base_url=env.get("LARK_API_BASE_URL", DEFAULT_LARK_API_BASE_URL),
            key_namespace=env.get("LEAVE_HELPER_KEY_NAMESPACE", DEFAULT_KEY_NAMESPACE),
            timezone=env.get("LEAVE_HELPER_TIMEZONE", DEFAULT_TIMEZONE),
            host=env.get("LEAVE_HELPER_HOST", "0.0.0.0"),
            port=_int_env(env, "LEAVE_HELPER_PORT", 40090),
            max_inflight=_int_env(env, "LEAVE_HELPER_MAX_INFLIGHT", 8),
            log_level=env.get("LEAVE_HELPER_LOG_LEVEL", "INFO"),
            log_format=env.get("LEAVE_HELPER_LOG_FORMAT", "text").strip().lower(),
            log_root=resolve_log_root(env.get("LEAVE_HELPER_LOG_ROOT")),
        )
