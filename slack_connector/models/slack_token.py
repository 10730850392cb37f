"""
SlackToken model - encrypted Slack OAuth tokens.

SECURITY REQUIREMENTS:
- encrypted_token holds AES-256-GCM ciphertext only, never plaintext
- encryption_algorithm and key_id must match the key that produced it
- A revoked token is never re-activated; re-authorization inserts a new row
"""

import enum
import uuid

from sqlalchemy import Boolean, Column, Enum, ForeignKey, Index, String, Text

from slack_connector.db_base import Base
from slack_connector.models.base import TimestampMixin, UTCDateTime


class TokenType(str, enum.Enum):
    """Slack credential kinds."""
    BOT = "bot"
    USER = "user"


class SlackToken(Base, TimestampMixin):
    """Encrypted bot or user token for a Slack workspace."""

    __tablename__ = "slack_tokens"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )
    team_id = Column(
        String(64),
        ForeignKey("slack_teams.id"),
        nullable=False,
        index=True,
        comment="Owning Slack team"
    )
    user_id = Column(
        String(64),
        nullable=True,
        comment="Principal the token belongs to (installer or bot user)"
    )
    slack_user_id = Column(
        String(64),
        nullable=True,
        comment="Slack user id for user tokens"
    )

    # Encrypted token - NEVER log this value
    encrypted_token = Column(
        Text,
        nullable=False,
        comment="base64(nonce + ciphertext) - NEVER log"
    )
    encryption_algorithm = Column(
        String(32),
        nullable=False,
        comment="Algorithm tag used to produce encrypted_token"
    )
    key_id = Column(
        String(64),
        nullable=False,
        comment="Encryption key id used to produce encrypted_token"
    )

    token_type = Column(
        Enum(TokenType),
        nullable=False,
        comment="bot or user"
    )
    scope = Column(
        Text,
        nullable=True,
        comment="Comma separated OAuth scopes"
    )
    bot_user_id = Column(String(64), nullable=True)
    app_id = Column(String(64), nullable=True)

    # Revocation
    is_revoked = Column(
        Boolean,
        default=False,
        nullable=False,
        comment="Revoked tokens are never used again"
    )
    revoked_at = Column(UTCDateTime(), nullable=True)
    revoked_reason = Column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_slack_tokens_team_revoked", "team_id", "is_revoked"),
    )

    @property
    def is_active(self) -> bool:
        return not self.is_revoked

    def __repr__(self) -> str:
        # Never include encrypted_token in repr
        return (
            f"<SlackToken(id={self.id}, team_id={self.team_id}, "
            f"type={self.token_type}, revoked={self.is_revoked})>"
        )
