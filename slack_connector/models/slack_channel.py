"""SlackChannel model - per-channel sync configuration."""

from sqlalchemy import Boolean, Column, ForeignKey, String

from slack_connector.db_base import Base
from slack_connector.models.base import TimestampMixin


class SlackChannel(Base, TimestampMixin):
    """A Slack channel selected for syncing."""

    __tablename__ = "slack_channels"

    id = Column(
        String(64),
        primary_key=True,
        comment="Slack channel id"
    )
    team_id = Column(
        String(64),
        ForeignKey("slack_teams.id"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    is_private = Column(Boolean, default=False, nullable=False)
    is_sync_enabled = Column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<SlackChannel(id={self.id}, team_id={self.team_id})>"
