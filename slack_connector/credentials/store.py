"""
Secure token storage for Slack credentials.

SECURITY REQUIREMENTS:
- Tokens are encrypted at rest before storage
- No plaintext tokens outside process memory
- A revoked token is never re-activated
- Every access, creation and revocation is audit-logged

This is the only component that reads or writes slack_tokens directly.

Usage:
    storage = SecureTokenStorage(db_session, encryption, audit_logger)

    # Store credentials from an OAuth install
    result = await storage.store_oauth_data(oauth_result)

    # Get decrypted bot token for an API call
    token = await storage.get_team_bot_token(team_id)

    # Revoke (idempotent)
    await storage.revoke_token(token_id, reason="admin_request")
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from slack_connector.credentials.encryption import (
    CredentialEncryptionError,
    decrypt_stored_token,
    encrypt_token,
    reencrypt_token,
)
from slack_connector.credentials.schemas import SlackOAuthResult
from slack_connector.models.audit_log import ActorType, AuditEventType
from slack_connector.models.base import utcnow
from slack_connector.models.slack_team import SlackTeam
from slack_connector.models.slack_token import SlackToken, TokenType
from slack_connector.platform.audit import AuditEvent, SecurityAuditLogger
from slack_connector.platform.audit_details import CredentialDetails
from slack_connector.utils.encryption import TokenEncryptionService

logger = logging.getLogger(__name__)

REPLACED_BY_OAUTH = "replaced_by_oauth"


class TokenStorageError(Exception):
    """Storage or cryptographic failure in the token store."""

    def __init__(self, message: str, operation: str = "unknown"):
        self.operation = operation
        super().__init__(message)


@dataclass
class ActorContext:
    """Who is performing an operation, and from where."""
    actor_type: ActorType = ActorType.SYSTEM
    actor_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class SecureTokenData:
    """
    A decrypted token ready for an API call.

    SECURITY: decrypted_token is excluded from repr; never log it.
    """
    id: str
    team_id: str
    slack_user_id: Optional[str]
    decrypted_token: str = field(repr=False)
    token_type: str = TokenType.BOT.value
    scope: Optional[str] = None
    bot_user_id: Optional[str] = None
    app_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class StoreOAuthResult:
    team_id: str
    bot_token_id: str
    user_token_id: Optional[str] = None
    superseded_token_ids: List[str] = field(default_factory=list)


@dataclass
class RevokeTokenResult:
    """Outcome of a single-token revocation. Not-found is a result, not an error."""
    token_id: str
    success: bool
    team_id: Optional[str] = None
    already_revoked: bool = False
    not_found: bool = False
    revoked_at: Optional[datetime] = None


class SecureTokenStorage:
    """
    Encrypted Slack token storage with audit logging.

    Writes commit their own transaction before the audit entry is
    written, so a failed audit write can never roll back token state.
    """

    def __init__(
        self,
        db_session: Session,
        encryption: TokenEncryptionService,
        audit_logger: SecurityAuditLogger,
    ):
        self.db = db_session
        self.encryption = encryption
        self.audit = audit_logger

    # =========================================================================
    # OAuth install
    # =========================================================================

    async def store_oauth_data(
        self,
        oauth: SlackOAuthResult,
        actor: Optional[ActorContext] = None,
    ) -> StoreOAuthResult:
        """
        Persist an OAuth install for a team.

        Upserts the team, supersedes every active token with reason
        "replaced_by_oauth", then inserts the bot token and, when present,
        the user token. All of it commits as one transaction.

        Raises:
            TokenStorageError: If anything fails; nothing is committed
        """
        actor = actor or ActorContext()
        team_id = oauth.team.id
        now = utcnow()

        try:
            team = self.db.get(SlackTeam, team_id)
            if team is None:
                team = SlackTeam(id=team_id, name=oauth.team.name)
                self.db.add(team)
            team.name = oauth.team.name
            team.domain = oauth.team.domain
            team.enterprise_id = oauth.enterprise.id if oauth.enterprise else None
            team.enterprise_name = oauth.enterprise.name if oauth.enterprise else None
            team.is_active = True
            self.db.flush()

            superseded = self._active_tokens_query(team_id).all()
            for token in superseded:
                token.is_revoked = True
                token.revoked_at = now
                token.revoked_reason = REPLACED_BY_OAUTH

            bot_envelope = await encrypt_token(self.encryption, oauth.access_token)
            bot_token = SlackToken(
                team_id=team_id,
                slack_user_id=oauth.authed_user.id,
                user_id=oauth.bot_user_id,
                encrypted_token=bot_envelope.encrypted_token,
                encryption_algorithm=bot_envelope.algorithm,
                key_id=bot_envelope.key_id,
                token_type=TokenType.BOT,
                scope=oauth.scope,
                bot_user_id=oauth.bot_user_id,
                app_id=oauth.app_id,
                created_at=now,
            )
            self.db.add(bot_token)

            user_token = None
            if oauth.authed_user.access_token:
                user_envelope = await encrypt_token(
                    self.encryption, oauth.authed_user.access_token
                )
                user_token = SlackToken(
                    team_id=team_id,
                    slack_user_id=oauth.authed_user.id,
                    user_id=oauth.authed_user.id,
                    encrypted_token=user_envelope.encrypted_token,
                    encryption_algorithm=user_envelope.algorithm,
                    key_id=user_envelope.key_id,
                    token_type=TokenType.USER,
                    scope=oauth.authed_user.scope,
                    app_id=oauth.app_id,
                    created_at=now,
                )
                self.db.add(user_token)

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(
                "Failed to store OAuth data",
                extra={"team_id": team_id, "error_type": type(e).__name__},
            )
            await self.audit.log_event(AuditEvent(
                event_type=AuditEventType.TOKEN_CREATED,
                team_id=team_id,
                actor_type=actor.actor_type,
                actor_id=actor.actor_id,
                success=False,
                ip_address=actor.ip_address,
                user_agent=actor.user_agent,
                error_message=f"OAuth storage failed: {type(e).__name__}: {e}",
                details=CredentialDetails(operation="oauth_token_creation"),
            ))
            raise TokenStorageError(
                "Failed to store OAuth data securely", operation="store_oauth_data"
            ) from e

        result = StoreOAuthResult(
            team_id=team_id,
            bot_token_id=bot_token.id,
            user_token_id=user_token.id if user_token else None,
            superseded_token_ids=[t.id for t in superseded],
        )

        for token_id in result.superseded_token_ids:
            await self.audit.log_token_revocation(
                team_id, token_id, REPLACED_BY_OAUTH,
                actor_type=actor.actor_type, actor_id=actor.actor_id,
            )
        await self.audit.log_token_creation(
            team_id, bot_token.id, TokenType.BOT.value,
            actor_type=actor.actor_type, actor_id=actor.actor_id,
        )
        if user_token is not None:
            await self.audit.log_token_creation(
                team_id, user_token.id, TokenType.USER.value,
                actor_type=actor.actor_type, actor_id=actor.actor_id,
            )

        logger.info(
            "Stored encrypted credentials",
            extra={
                "team_id": team_id,
                "bot_token_id": result.bot_token_id,
                "has_user_token": user_token is not None,
                "superseded_count": len(result.superseded_token_ids),
            },
        )
        return result

    # =========================================================================
    # Retrieval
    # =========================================================================

    def _active_tokens_query(self, team_id: str):
        return self.db.query(SlackToken).filter(
            SlackToken.team_id == team_id,
            SlackToken.is_revoked.is_(False),
        )

    async def get_team_bot_token(self, team_id: str) -> Optional[SecureTokenData]:
        """
        Decrypt the newest non-revoked bot token for a team.

        Returns:
            SecureTokenData, or None if the team has no active bot token

        Raises:
            TokenStorageError: If the stored token cannot be decrypted
        """
        token = (
            self._active_tokens_query(team_id)
            .filter(SlackToken.token_type == TokenType.BOT)
            .order_by(SlackToken.created_at.desc())
            .first()
        )
        if token is None:
            return None
        return await self.decrypt_for_use(token)

    async def get_user_token(
        self,
        team_id: str,
        slack_user_id: str,
    ) -> Optional[SecureTokenData]:
        """Decrypt the newest non-revoked user token for one principal."""
        token = (
            self._active_tokens_query(team_id)
            .filter(
                SlackToken.token_type == TokenType.USER,
                SlackToken.slack_user_id == slack_user_id,
            )
            .order_by(SlackToken.created_at.desc())
            .first()
        )
        if token is None:
            return None
        return await self.decrypt_for_use(token)

    async def decrypt_for_use(self, token: SlackToken) -> SecureTokenData:
        try:
            plaintext = await decrypt_stored_token(self.encryption, token)
        except CredentialEncryptionError as e:
            await self.audit.log_token_access(
                token.team_id, token.id, success=False,
                error_message="Token decryption failed",
            )
            raise TokenStorageError(
                "Failed to retrieve token securely", operation="decrypt"
            ) from e

        await self.audit.log_token_access(token.team_id, token.id, success=True)
        return SecureTokenData(
            id=token.id,
            team_id=token.team_id,
            slack_user_id=token.slack_user_id,
            decrypted_token=plaintext,
            token_type=token.token_type.value,
            scope=token.scope,
            bot_user_id=token.bot_user_id,
            app_id=token.app_id,
            created_at=token.created_at,
        )

    def get_token(self, token_id: str) -> Optional[SlackToken]:
        """Token row (still encrypted), or None."""
        return self.db.get(SlackToken, token_id)

    def list_active_tokens(self, team_id: Optional[str] = None) -> List[SlackToken]:
        query = self.db.query(SlackToken).filter(SlackToken.is_revoked.is_(False))
        if team_id:
            query = query.filter(SlackToken.team_id == team_id)
        return query.order_by(SlackToken.created_at.asc()).all()

    def list_revoked_tokens(
        self,
        revoked_before: Optional[datetime] = None,
        team_ids: Optional[List[str]] = None,
    ) -> List[SlackToken]:
        query = self.db.query(SlackToken).filter(SlackToken.is_revoked.is_(True))
        if revoked_before is not None:
            query = query.filter(SlackToken.revoked_at < revoked_before)
        if team_ids:
            query = query.filter(SlackToken.team_id.in_(team_ids))
        return query.order_by(SlackToken.revoked_at.asc()).all()

    def list_tokens_after(self, cursor: Optional[str], limit: int) -> List[SlackToken]:
        """Tokens in id order after the given id, for resumable batch jobs."""
        query = self.db.query(SlackToken)
        if cursor:
            query = query.filter(SlackToken.id > cursor)
        return query.order_by(SlackToken.id.asc()).limit(limit).all()

    def count_tokens(self, team_id: Optional[str] = None, active_only: bool = False) -> int:
        query = self.db.query(func.count(SlackToken.id))
        if team_id:
            query = query.filter(SlackToken.team_id == team_id)
        if active_only:
            query = query.filter(SlackToken.is_revoked.is_(False))
        return query.scalar() or 0

    # =========================================================================
    # Revocation
    # =========================================================================

    async def revoke_token(
        self,
        token_id: str,
        reason: str,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> RevokeTokenResult:
        """
        Revoke one token. Idempotent.

        An already-revoked token keeps its original revocation timestamp
        and reason; the repeat attempt is still audit-logged.

        Raises:
            TokenStorageError: If the update cannot be committed
        """
        token = self.get_token(token_id)
        if token is None:
            return RevokeTokenResult(token_id=token_id, success=False, not_found=True)

        if token.is_revoked:
            await self.audit.log_token_revocation(
                token.team_id, token.id, reason,
                actor_type=actor_type, actor_id=actor_id, already_revoked=True,
            )
            return RevokeTokenResult(
                token_id=token.id,
                team_id=token.team_id,
                success=True,
                already_revoked=True,
                revoked_at=token.revoked_at,
            )

        try:
            token.is_revoked = True
            token.revoked_at = utcnow()
            token.revoked_reason = reason
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise TokenStorageError("Failed to revoke token securely", operation="revoke") from e

        await self.audit.log_token_revocation(
            token.team_id, token.id, reason, actor_type=actor_type, actor_id=actor_id,
        )
        logger.info(
            "Token revoked",
            extra={"token_id": token.id, "team_id": token.team_id, "reason": reason},
        )
        return RevokeTokenResult(
            token_id=token.id,
            team_id=token.team_id,
            success=True,
            revoked_at=token.revoked_at,
        )

    async def revoke_team_tokens(
        self,
        team_id: str,
        reason: str = "team_deletion",
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> int:
        """
        Revoke every active token for a team and deactivate the team.

        Returns:
            Number of tokens newly revoked
        """
        revoked = 0
        for token in self.list_active_tokens(team_id):
            result = await self.revoke_token(token.id, reason, actor_type, actor_id)
            if result.success and not result.already_revoked:
                revoked += 1

        self.deactivate_team(team_id)
        return revoked

    def deactivate_team(self, team_id: str) -> bool:
        team = self.db.get(SlackTeam, team_id)
        if team is None or not team.is_active:
            return False
        try:
            team.is_active = False
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise TokenStorageError("Failed to deactivate team", operation="deactivate") from e
        return True

    # =========================================================================
    # Physical deletion and re-encryption
    # =========================================================================

    def delete_tokens(self, token_ids: List[str]) -> int:
        """Physically delete token rows by id."""
        if not token_ids:
            return 0
        try:
            deleted = (
                self.db.query(SlackToken)
                .filter(SlackToken.id.in_(token_ids))
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise TokenStorageError("Failed to delete tokens", operation="delete") from e
        return deleted

    def delete_team_tokens(self, team_id: str) -> int:
        """Physically delete every token row of a team (GDPR erase)."""
        try:
            deleted = (
                self.db.query(SlackToken)
                .filter(SlackToken.team_id == team_id)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise TokenStorageError("Failed to delete team tokens", operation="delete") from e
        return deleted

    async def reencrypt(self, token: SlackToken) -> bool:
        """
        Re-encrypt one row under the active key in its own transaction.

        Returns:
            False when the row was already on the active key
        """
        try:
            changed = await reencrypt_token(self.encryption, token)
            if changed:
                self.db.commit()
            return changed
        except Exception as e:
            self.db.rollback()
            raise TokenStorageError(
                f"Failed to re-encrypt token {token.id}", operation="reencrypt"
            ) from e
