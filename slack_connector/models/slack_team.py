"""
SlackTeam model - one row per connected Slack workspace.

Created or refreshed on each OAuth install, soft-deactivated when all of
its tokens are revoked, hard-deleted by a GDPR erase.
"""

from sqlalchemy import Boolean, Column, String

from slack_connector.db_base import Base
from slack_connector.models.base import TimestampMixin


class SlackTeam(Base, TimestampMixin):
    """Connected Slack workspace (tenant)."""

    __tablename__ = "slack_teams"

    id = Column(
        String(64),
        primary_key=True,
        comment="Slack team id (tenant key)"
    )
    name = Column(
        String(255),
        nullable=False,
        comment="Workspace display name"
    )
    domain = Column(
        String(255),
        nullable=True,
        comment="Workspace domain"
    )
    enterprise_id = Column(
        String(64),
        nullable=True,
        comment="Enterprise Grid id, if any"
    )
    enterprise_name = Column(
        String(255),
        nullable=True,
        comment="Enterprise Grid name, if any"
    )
    is_active = Column(
        Boolean,
        default=True,
        nullable=False,
        comment="False once the workspace has been revoked"
    )

    def __repr__(self) -> str:
        return f"<SlackTeam(id={self.id}, name={self.name}, active={self.is_active})>"
