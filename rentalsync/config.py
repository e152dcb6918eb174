"""
Runtime Configuration

Process-wide settings read from the environment. Per-tenant settings
(telemetry credentials, gateway credentials) live in the tenant_config table.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass
class Settings:
    """Engine settings."""
    database_url: str = "sqlite:///rentalsync.db"
    api_key: str = "dev-key-change-in-production"
    key_master_secret: str = ""

    # Fallback telemetry credentials for tenants without their own config
    telemetry_base_url: str = "https://locaki.rastrosystem.com.br/api_v2"
    telemetry_login: Optional[str] = None
    telemetry_password: Optional[str] = None
    telemetry_app: int = 9

    gateway_auth_base_url: str = "https://matls-clients.api.cora.com.br"
    gateway_api_base_url: str = "https://matls-clients.api.cora.com.br"

    billing_lookahead_days: int = 5
    billing_due_offset_days: int = 7
    billing_interval_days: int = 30
    billing_max_charge_attempts: int = 3

    sync_min_interval_minutes: int = 60
    max_workers: int = 4

    http_timeout_seconds: int = 30
    http_retries: int = 3

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        defaults = cls()
        return cls(
            database_url=os.environ.get("DATABASE_URL", defaults.database_url),
            api_key=os.environ.get("API_KEY", defaults.api_key),
            key_master_secret=os.environ.get("KEY_MASTER_SECRET", ""),
            telemetry_base_url=os.environ.get("TELEMETRY_BASE_URL", defaults.telemetry_base_url),
            telemetry_login=os.environ.get("TELEMETRY_LOGIN") or None,
            telemetry_password=os.environ.get("TELEMETRY_PASSWORD") or None,
            telemetry_app=_env_int("TELEMETRY_APP", defaults.telemetry_app),
            gateway_auth_base_url=os.environ.get("GATEWAY_AUTH_BASE_URL", defaults.gateway_auth_base_url),
            gateway_api_base_url=os.environ.get("GATEWAY_API_BASE_URL", defaults.gateway_api_base_url),
            billing_lookahead_days=_env_int("BILLING_LOOKAHEAD_DAYS", defaults.billing_lookahead_days),
            billing_due_offset_days=_env_int("BILLING_DUE_OFFSET_DAYS", defaults.billing_due_offset_days),
            billing_interval_days=_env_int("BILLING_INTERVAL_DAYS", defaults.billing_interval_days),
            billing_max_charge_attempts=_env_int(
                "BILLING_MAX_CHARGE_ATTEMPTS", defaults.billing_max_charge_attempts
            ),
            sync_min_interval_minutes=_env_int(
                "SYNC_MIN_INTERVAL_MINUTES", defaults.sync_min_interval_minutes
            ),
            max_workers=_env_int("MAX_WORKERS", defaults.max_workers),
            http_timeout_seconds=_env_int("HTTP_TIMEOUT_SECONDS", defaults.http_timeout_seconds),
            http_retries=_env_int("HTTP_RETRIES", defaults.http_retries),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
