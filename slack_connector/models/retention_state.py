"""
Durable retention configuration: policies and legal holds.

The retention service keeps an in-memory copy of these tables as a
read-through cache; every change is written here first.
"""

import uuid

from sqlalchemy import JSON, Boolean, Column, Integer, String, Text

from slack_connector.db_base import Base
from slack_connector.models.base import TimestampMixin, UTCDateTime


class RetentionPolicyRecord(Base, TimestampMixin):
    """A named retention policy for one data class."""

    __tablename__ = "retention_policies"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    data_type = Column(
        String(32),
        nullable=False,
        comment="tokens, audit_logs, sync_logs, backfills or temp_data"
    )
    retention_days = Column(Integer, nullable=False)
    critical_retention_days = Column(Integer, nullable=True)
    team_overrides = Column(
        JSON,
        nullable=False,
        default=dict,
        comment="team_id -> retention days"
    )
    preserve_count = Column(Integer, nullable=True)
    schedule = Column(String(16), nullable=False, default="weekly")
    enabled = Column(Boolean, nullable=False, default=True)
    legal_hold_exempt = Column(Boolean, nullable=False, default=False)
    last_run = Column(UTCDateTime(), nullable=True)
    next_run = Column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<RetentionPolicyRecord(id={self.id}, data_type={self.data_type})>"


class LegalHoldRecord(Base, TimestampMixin):
    """Suspends deletion of a team's data for the listed data classes."""

    __tablename__ = "legal_holds"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    team_id = Column(String(64), nullable=False, index=True)
    data_types = Column(JSON, nullable=False, default=list)
    reason = Column(Text, nullable=False)
    requested_by = Column(String(255), nullable=False)
    start_date = Column(UTCDateTime(), nullable=False)
    end_date = Column(UTCDateTime(), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    exemptions = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Row ids the hold does not protect"
    )
    lifted_at = Column(UTCDateTime(), nullable=True)
    lifted_by = Column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<LegalHoldRecord(id={self.id}, team_id={self.team_id}, active={self.is_active})>"
