"""
Operational history tables touched only by retention and GDPR cleanup.

SlackSyncLog records each message sync run, SlackBackfill each historical
backfill of a channel.
"""

import enum
import uuid

from sqlalchemy import Column, Enum, ForeignKey, Integer, String, Text

from slack_connector.db_base import Base
from slack_connector.models.base import TimestampMixin, UTCDateTime


class SyncStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class BackfillStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SlackSyncLog(Base, TimestampMixin):
    """One message sync run for a channel."""

    __tablename__ = "slack_sync_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    team_id = Column(
        String(64),
        ForeignKey("slack_teams.id"),
        nullable=False,
        index=True,
    )
    channel_id = Column(String(64), nullable=True)
    status = Column(Enum(SyncStatus), nullable=False, default=SyncStatus.SUCCESS)
    message_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<SlackSyncLog(id={self.id}, team_id={self.team_id}, status={self.status})>"


class SlackBackfill(Base, TimestampMixin):
    """Historical backfill of one channel."""

    __tablename__ = "slack_backfills"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    team_id = Column(
        String(64),
        ForeignKey("slack_teams.id"),
        nullable=False,
        index=True,
    )
    channel_id = Column(String(64), nullable=False)
    status = Column(
        Enum(BackfillStatus),
        nullable=False,
        default=BackfillStatus.PENDING,
    )
    messages_processed = Column(Integer, nullable=False, default=0)
    completed_at = Column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<SlackBackfill(id={self.id}, team_id={self.team_id}, status={self.status})>"
