"""
SecurityAuditLog model - append-only, hash-chained security audit trail.

Each row's integrity_hash covers its identity fields plus previous_hash,
which is the integrity_hash of the row with the preceding sequence
number. Rows are never updated; only retention cleanup and GDPR erase
delete them.
"""

import enum
import uuid

from sqlalchemy import Boolean, Column, Enum, Index, Integer, String, Text

from slack_connector.db_base import Base
from slack_connector.models.base import UTCDateTime, utcnow

GENESIS_HASH = "0" * 64


class AuditEventType(str, enum.Enum):
    """Closed set of security audit events."""
    TOKEN_CREATED = "token_created"
    TOKEN_ACCESSED = "token_accessed"
    TOKEN_ROTATED = "token_rotated"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_HEALTH_CHECK = "token_health_check"

    GDPR_DELETE_REQUESTED = "gdpr_delete_requested"
    GDPR_DELETE_COMPLETED = "gdpr_delete_completed"
    GDPR_DELETE_FAILED = "gdpr_delete_failed"

    ENCRYPTION_KEY_ROTATED = "encryption_key_rotated"
    AUTH_FAILURE = "auth_failure"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DATA_RETENTION_CLEANUP = "data_retention_cleanup"
    AUDIT_LOG_TAMPER_DETECTED = "audit_log_tamper_detected"
    CONFIG_CHANGED = "config_changed"
    SECURITY_ALERT = "security_alert"
    SYSTEM_STARTUP = "system_startup"
    HEALTH_CHECK = "health_check"
    SCHEDULED_MAINTENANCE = "scheduled_maintenance"


class ActorType(str, enum.Enum):
    """Who triggered an audited event."""
    SYSTEM = "system"
    ADMIN = "admin"
    USER = "user"
    SLACK_WEBHOOK = "slack_webhook"
    SCHEDULED_JOB = "scheduled_job"


class AuditSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditCategory(str, enum.Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    DATA_ACCESS = "data_access"
    CONFIGURATION = "configuration"
    SECURITY = "security"
    COMPLIANCE = "compliance"


class SecurityAuditLog(Base):
    """
    Immutable security audit entry.

    SECURITY:
    - details_encrypted holds sanitized details, encrypted at rest
    - ip_address, user_agent and error_message are sanitized before insert
    - No updated_at column: rows are never modified
    """

    __tablename__ = "security_audit_logs"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )
    sequence = Column(
        Integer,
        nullable=False,
        unique=True,
        comment="Position in the hash chain"
    )

    event_type = Column(Enum(AuditEventType), nullable=False, index=True)
    team_id = Column(String(64), nullable=True, index=True)
    token_id = Column(String(36), nullable=True)
    actor_type = Column(Enum(ActorType), nullable=False)
    actor_id = Column(String(255), nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    severity = Column(Enum(AuditSeverity), nullable=False)
    category = Column(Enum(AuditCategory), nullable=False)

    details_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted sanitized details JSON"
    )
    details_key_id = Column(String(64), nullable=True)

    ip_address = Column(String(64), nullable=True, comment="Masked IP address")
    user_agent = Column(String(512), nullable=True)
    error_message = Column(Text, nullable=True, comment="Sanitized error message")

    previous_hash = Column(String(64), nullable=False)
    integrity_hash = Column(String(64), nullable=False)

    created_at = Column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_security_audit_logs_team_created", "team_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SecurityAuditLog(seq={self.sequence}, event={self.event_type}, "
            f"team_id={self.team_id}, success={self.success})>"
        )
