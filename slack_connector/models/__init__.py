"""
Database models for the Slack connector.

Importing this package registers every table with Base.metadata.
"""

from slack_connector.models.base import TimestampMixin, UTCDateTime, utcnow
from slack_connector.models.slack_team import SlackTeam
from slack_connector.models.slack_token import SlackToken, TokenType
from slack_connector.models.slack_channel import SlackChannel
from slack_connector.models.sync_log import (
    SlackSyncLog,
    SlackBackfill,
    SyncStatus,
    BackfillStatus,
)
from slack_connector.models.audit_log import (
    SecurityAuditLog,
    AuditEventType,
    ActorType,
    AuditSeverity,
    AuditCategory,
    GENESIS_HASH,
)
from slack_connector.models.retention_state import (
    RetentionPolicyRecord,
    LegalHoldRecord,
)
from slack_connector.models.key_rotation_job import (
    KeyRotationJob,
    KeyRotationStatus,
)

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "SlackTeam",
    "SlackToken",
    "TokenType",
    "SlackChannel",
    "SlackSyncLog",
    "SlackBackfill",
    "SyncStatus",
    "BackfillStatus",
    "SecurityAuditLog",
    "AuditEventType",
    "ActorType",
    "AuditSeverity",
    "AuditCategory",
    "GENESIS_HASH",
    "RetentionPolicyRecord",
    "LegalHoldRecord",
    "KeyRotationJob",
    "KeyRotationStatus",
]
