"""
Shared pytest fixtures for the Slack connector test suite.

Tests run against a real in-memory SQLite database; the Slack Web API is
replaced with an AsyncMock.
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from slack_connector.db_base import Base
from slack_connector import models  # noqa: F401  registers every table
from slack_connector.credentials.schemas import (
    SlackAuthedUser,
    SlackOAuthResult,
    SlackTeamInfo,
)
from slack_connector.credentials.store import SecureTokenStorage
from slack_connector.integrations.slack.client import AuthTestResult, SlackApiClient
from slack_connector.models.base import utcnow
from slack_connector.platform.audit import SecurityAuditLogger
from slack_connector.utils.encryption import TokenEncryptionService

TEST_SECRET = "test-encryption-secret-0123456789-abcdef"
OTHER_SECRET = "another-encryption-secret-9876543210-zyxw"


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def db_session():
    """Create in-memory SQLite database for testing."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


# ============================================================================
# SERVICES
# ============================================================================

@pytest.fixture(scope="session")
def encryption():
    return TokenEncryptionService(TEST_SECRET)


@pytest.fixture
def audit_logger(db_session, encryption):
    return SecurityAuditLogger(db_session, encryption)


@pytest.fixture
def storage(db_session, encryption, audit_logger):
    return SecureTokenStorage(db_session, encryption, audit_logger)


@pytest.fixture
def slack_client():
    """Slack client whose auth.test succeeds and chat.postMessage returns ok."""
    client = AsyncMock(spec=SlackApiClient)
    client.auth_test.return_value = AuthTestResult(
        team_id="T123", user_id="U123", bot_id="B123"
    )
    client.post_message.return_value = {"ok": True, "ts": "1700000000.000100"}
    return client


# ============================================================================
# DATA HELPERS
# ============================================================================

def make_oauth(
    team_id="T123",
    bot_token=None,
    user_token=None,
    installer_id="U123",
) -> SlackOAuthResult:
    """Build an OAuth install result with realistic-looking tokens."""
    return SlackOAuthResult(
        access_token=bot_token or f"xoxb-111-222-{uuid.uuid4().hex}",
        token_type="bot",
        scope="channels:history,channels:read",
        bot_user_id="UBOT1",
        app_id="A123",
        team=SlackTeamInfo(id=team_id, name=f"Workspace {team_id}", domain=team_id.lower()),
        authed_user=SlackAuthedUser(
            id=installer_id,
            scope="search:read" if user_token else None,
            access_token=user_token,
            token_type="user" if user_token else None,
        ),
    )


def backdate(db_session, row, days: int, field: str = "created_at") -> None:
    """Move a timestamp column `days` into the past and commit."""
    setattr(row, field, utcnow() - timedelta(days=days))
    db_session.commit()


@pytest.fixture
def oauth_factory():
    return make_oauth
