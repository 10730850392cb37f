"""
Security settings for the Slack connector.

All values are read from environment variables. The master encryption
secret is mandatory; every other setting has a default.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

DEFAULT_KEY_ID = "default"
DEFAULT_SLACK_API_BASE_URL = "https://slack.com/api"
DEFAULT_SLACK_API_TIMEOUT_SECONDS = 10.0

DEFAULT_ROTATION_INTERVAL_DAYS = 30
DEFAULT_HEALTH_CHECK_BATCH_SIZE = 5
DEFAULT_HEALTH_CHECK_BATCH_DELAY_SECONDS = 1.0
DEFAULT_MAX_CONSECUTIVE_FAILURES = 3

DEFAULT_AUDIT_RETENTION_DAYS = 365
DEFAULT_AUDIT_INTEGRITY_CHECK_DAYS = 7


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def parse_previous_secrets(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse retired encryption secrets from ``key_id:secret`` pairs.

    Pairs are comma separated. Secrets may contain colons; only the first
    colon separates the key id.
    """
    keys: Dict[str, str] = {}
    if not raw:
        return keys
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        key_id, sep, secret = pair.partition(":")
        if not sep or not key_id or not secret:
            raise ValueError(
                "ENCRYPTION_PREVIOUS_SECRETS entries must look like key_id:secret"
            )
        keys[key_id.strip()] = secret
    return keys


@dataclass
class TokenRotationSettings:
    """Policy for token health checks and rotation."""
    rotation_interval_days: int = DEFAULT_ROTATION_INTERVAL_DAYS
    health_check_batch_size: int = DEFAULT_HEALTH_CHECK_BATCH_SIZE
    health_check_batch_delay_seconds: float = DEFAULT_HEALTH_CHECK_BATCH_DELAY_SECONDS
    rotate_on_failure: bool = True
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES


@dataclass
class SecuritySettings:
    """Settings consumed by SecurityServices and the maintenance worker."""
    encryption_secret: Optional[str] = None
    encryption_key_id: str = DEFAULT_KEY_ID
    previous_secrets: Dict[str, str] = field(default_factory=dict)
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    slack_api_base_url: str = DEFAULT_SLACK_API_BASE_URL
    slack_api_timeout_seconds: float = DEFAULT_SLACK_API_TIMEOUT_SECONDS
    rotation: TokenRotationSettings = field(default_factory=TokenRotationSettings)
    audit_retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS
    audit_integrity_check_days: int = DEFAULT_AUDIT_INTEGRITY_CHECK_DAYS
    maintenance_dry_run: bool = False

    @classmethod
    def from_env(cls) -> "SecuritySettings":
        return cls(
            encryption_secret=os.getenv("ENCRYPTION_SECRET"),
            encryption_key_id=os.getenv("ENCRYPTION_KEY_ID", DEFAULT_KEY_ID),
            previous_secrets=parse_previous_secrets(
                os.getenv("ENCRYPTION_PREVIOUS_SECRETS")
            ),
            database_url=os.getenv("DATABASE_URL"),
            redis_url=os.getenv("REDIS_URL"),
            slack_api_base_url=os.getenv(
                "SLACK_API_BASE_URL", DEFAULT_SLACK_API_BASE_URL
            ),
            slack_api_timeout_seconds=_env_float(
                "SLACK_API_TIMEOUT_SECONDS", DEFAULT_SLACK_API_TIMEOUT_SECONDS
            ),
            rotation=TokenRotationSettings(
                rotation_interval_days=_env_int(
                    "TOKEN_ROTATION_INTERVAL_DAYS", DEFAULT_ROTATION_INTERVAL_DAYS
                ),
                health_check_batch_size=_env_int(
                    "TOKEN_HEALTH_CHECK_BATCH_SIZE", DEFAULT_HEALTH_CHECK_BATCH_SIZE
                ),
                health_check_batch_delay_seconds=_env_float(
                    "TOKEN_HEALTH_CHECK_BATCH_DELAY_SECONDS",
                    DEFAULT_HEALTH_CHECK_BATCH_DELAY_SECONDS,
                ),
                rotate_on_failure=_env_bool("TOKEN_ROTATE_ON_FAILURE", True),
                max_consecutive_failures=_env_int(
                    "TOKEN_MAX_CONSECUTIVE_FAILURES", DEFAULT_MAX_CONSECUTIVE_FAILURES
                ),
            ),
            audit_retention_days=_env_int(
                "AUDIT_RETENTION_DAYS", DEFAULT_AUDIT_RETENTION_DAYS
            ),
            audit_integrity_check_days=_env_int(
                "AUDIT_INTEGRITY_CHECK_DAYS", DEFAULT_AUDIT_INTEGRITY_CHECK_DAYS
            ),
            maintenance_dry_run=_env_bool("SECURITY_MAINTENANCE_DRY_RUN", False),
        )
