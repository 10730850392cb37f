"""
KeyRotationJob model - tracked, resumable re-encryption of stored tokens.

A job walks slack_tokens in id order, re-encrypting every row whose
key_id differs from target_key_id. The cursor is the last token id
handled, so a crashed or paused job picks up where it stopped.
"""

import enum
import uuid

from sqlalchemy import JSON, Column, Enum, Integer, String, Text

from slack_connector.db_base import Base
from slack_connector.models.base import TimestampMixin, UTCDateTime


class KeyRotationStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class KeyRotationJob(Base, TimestampMixin):
    """Progress record for one encryption key rotation."""

    __tablename__ = "key_rotation_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    status = Column(
        Enum(KeyRotationStatus),
        nullable=False,
        default=KeyRotationStatus.PENDING,
        index=True,
    )
    reason = Column(Text, nullable=False)
    requested_by = Column(String(255), nullable=False)
    target_key_id = Column(String(64), nullable=False)
    cursor = Column(
        String(36),
        nullable=True,
        comment="Last slack_tokens.id processed"
    )
    total_tokens = Column(Integer, nullable=False, default=0)
    processed_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=False, default=list)
    started_at = Column(UTCDateTime(), nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)

    @property
    def is_finished(self) -> bool:
        return self.status in (KeyRotationStatus.COMPLETED, KeyRotationStatus.FAILED)

    def __repr__(self) -> str:
        return (
            f"<KeyRotationJob(id={self.id}, status={self.status}, "
            f"processed={self.processed_count}/{self.total_tokens})>"
        )
