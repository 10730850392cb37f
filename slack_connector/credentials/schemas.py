"""
Pydantic schemas for the Slack OAuth v2 access result.

The OAuth callback handler parses Slack's oauth.v2.access response into
SlackOAuthResult and hands it to SecureTokenStorage.store_oauth_data.
"""

from typing import Optional

from pydantic import BaseModel, Field


class SlackTeamInfo(BaseModel):
    id: str = Field(..., min_length=1)
    name: str
    domain: Optional[str] = None


class SlackEnterpriseInfo(BaseModel):
    id: str
    name: Optional[str] = None


class SlackAuthedUser(BaseModel):
    """The installing user. access_token is present only for user scopes."""
    id: str
    scope: Optional[str] = None
    access_token: Optional[str] = Field(default=None, repr=False)
    token_type: Optional[str] = None


class SlackOAuthResult(BaseModel):
    """Structured result of a successful Slack OAuth install."""
    access_token: str = Field(..., min_length=1, repr=False)
    token_type: str = "bot"
    scope: str = ""
    bot_user_id: Optional[str] = None
    app_id: str
    team: SlackTeamInfo
    enterprise: Optional[SlackEnterpriseInfo] = None
    authed_user: SlackAuthedUser
