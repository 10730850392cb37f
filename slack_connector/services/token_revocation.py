"""
Token revocation service.

Explicit invalidation of one token or every token of a team, with an
optional Slack notice to the workspace. Revocation is idempotent and
never fails because a notification could not be delivered.

Any attempt to use a revoked or unknown token is recorded as
suspicious_activity, separately from ordinary auth failures.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from slack_connector.credentials.store import SecureTokenStorage, TokenStorageError
from slack_connector.integrations.slack.client import SlackApiClient, SlackApiError
from slack_connector.models.audit_log import ActorType, AuditEventType
from slack_connector.models.base import utcnow
from slack_connector.platform.audit import AuditEvent, SecurityAuditLogger
from slack_connector.platform.audit_details import (
    ComplianceDetails,
    CredentialDetails,
    SecurityDetails,
    count_key,
)
from slack_connector.platform.errors import TeamIsolationError
from slack_connector.services.data_retention import RetentionConfigStore

logger = logging.getLogger(__name__)


@dataclass
class RevocationRequest:
    reason: str
    requested_by: str
    actor_type: ActorType = ActorType.ADMIN
    notify_slack: bool = False
    slack_channel_id: Optional[str] = None


@dataclass
class RevocationResult:
    success: bool
    revocation_id: str
    revoked_tokens: int = 0
    revoked_token_ids: List[str] = field(default_factory=list)
    team_id: Optional[str] = None
    already_revoked: bool = False
    notification_sent: bool = False
    error: Optional[str] = None
    revoked_at: datetime = field(default_factory=utcnow)


@dataclass
class RevocationStatus:
    token_id: str
    is_revoked: bool
    can_be_used: bool
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    warning_message: Optional[str] = None


@dataclass
class TokenValidationResult:
    is_valid: bool
    can_proceed: bool
    reason: Optional[str] = None
    audit_logged: bool = False


def _new_revocation_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _notice_text(reason: str, token_count: int) -> str:
    if token_count == 1:
        subject = "A token has been revoked for your workspace."
    else:
        subject = f"{token_count} tokens are being revoked for your workspace."
    return (
        f":rotating_light: Security Alert: {subject}\n\n"
        f"Reason: {reason}\n\n"
        "If this was unexpected, please contact your administrator."
    )


class TokenRevocationService:
    """Admin-triggered token invalidation."""

    def __init__(
        self,
        storage: SecureTokenStorage,
        audit_logger: SecurityAuditLogger,
        slack_client: SlackApiClient,
        retention_config: RetentionConfigStore,
    ):
        self.storage = storage
        self.audit = audit_logger
        self.slack = slack_client
        self.retention_config = retention_config

    # =========================================================================
    # Revocation
    # =========================================================================

    async def revoke_token(self, token_id: str, request: RevocationRequest) -> RevocationResult:
        """
        Revoke one token.

        Already-revoked tokens return success with already_revoked set.
        The Slack notice, when requested, is sent after revocation with
        the team's current bot token.
        """
        revocation_id = _new_revocation_id("rev")
        try:
            outcome = await self.storage.revoke_token(
                token_id, request.reason,
                actor_type=request.actor_type, actor_id=request.requested_by,
            )
        except TokenStorageError as e:
            logger.error("Token revocation failed", extra={"token_id": token_id, "revocation_id": revocation_id})
            return RevocationResult(
                success=False, revocation_id=revocation_id, error=str(e),
            )

        if outcome.not_found:
            return RevocationResult(
                success=False,
                revocation_id=revocation_id,
                error="Token not found",
            )

        if outcome.already_revoked:
            return RevocationResult(
                success=True,
                revocation_id=revocation_id,
                team_id=outcome.team_id,
                already_revoked=True,
                revoked_at=outcome.revoked_at,
            )

        notification_sent = False
        if request.notify_slack and request.slack_channel_id:
            notification_sent = await self._send_notice(
                outcome.team_id, request.slack_channel_id, request.reason, 1
            )

        return RevocationResult(
            success=True,
            revocation_id=revocation_id,
            revoked_tokens=1,
            revoked_token_ids=[token_id],
            team_id=outcome.team_id,
            notification_sent=notification_sent,
            revoked_at=outcome.revoked_at,
        )

    async def revoke_team_tokens(self, team_id: str, request: RevocationRequest) -> RevocationResult:
        """
        Revoke every active token of a team, one by one.

        Each token gets its own audit entry. Success requires that no
        token failed. The Slack notice is sent first, while the team
        still has a usable bot token.
        """
        revocation_id = _new_revocation_id("team_rev")
        active = self.storage.list_active_tokens(team_id)

        if not active:
            await self.audit.log_event(AuditEvent(
                event_type=AuditEventType.TOKEN_REVOKED,
                team_id=team_id,
                actor_type=request.actor_type,
                actor_id=request.requested_by,
                details=CredentialDetails(
                    operation="team_token_revocation",
                    reason=request.reason,
                    revoked_count=0,
                ),
            ))
            return RevocationResult(
                success=True,
                revocation_id=revocation_id,
                team_id=team_id,
            )

        notification_sent = False
        if request.notify_slack and request.slack_channel_id:
            notification_sent = await self._send_notice(
                team_id, request.slack_channel_id, request.reason, len(active)
            )

        token_ids = [t.id for t in active]
        revoked_ids: List[str] = []
        errors = 0
        for token_id in token_ids:
            try:
                outcome = await self.storage.revoke_token(
                    token_id, f"team_revocation:{request.reason}",
                    actor_type=request.actor_type, actor_id=request.requested_by,
                )
                if outcome.success:
                    revoked_ids.append(token_id)
                else:
                    errors += 1
            except TokenStorageError:
                errors += 1
                logger.warning("Error revoking token", extra={"token_id": token_id, "team_id": team_id})

        if errors == 0:
            self.storage.deactivate_team(team_id)

        await self.audit.log_event(AuditEvent(
            event_type=AuditEventType.TOKEN_REVOKED,
            team_id=team_id,
            actor_type=request.actor_type,
            actor_id=request.requested_by,
            success=errors == 0,
            details=CredentialDetails(
                operation="team_token_revocation",
                reason=request.reason,
                requested_by=request.requested_by,
                revoked_count=len(revoked_ids),
                error_count=errors,
                notification_sent=notification_sent,
            ),
        ))

        return RevocationResult(
            success=errors == 0,
            revocation_id=revocation_id,
            revoked_tokens=len(revoked_ids),
            revoked_token_ids=revoked_ids,
            team_id=team_id,
            notification_sent=notification_sent,
            error=f"{errors} tokens failed to revoke" if errors else None,
        )

    async def revoke_tokens_by_criteria(
        self,
        request: RevocationRequest,
        older_than_days: Optional[int] = None,
        team_ids: Optional[List[str]] = None,
    ) -> RevocationResult:
        """Revoke active tokens matching age and/or team filters."""
        revocation_id = _new_revocation_id("bulk_rev")
        cutoff = utcnow() - timedelta(days=older_than_days) if older_than_days is not None else None

        candidates = [
            t for t in self.storage.list_active_tokens()
            if (not team_ids or t.team_id in team_ids)
            and (cutoff is None or t.created_at < cutoff)
        ]
        candidate_ids = [t.id for t in candidates]

        revoked_ids: List[str] = []
        errors = 0
        for token_id in candidate_ids:
            try:
                outcome = await self.storage.revoke_token(
                    token_id, f"bulk_revocation:{request.reason}",
                    actor_type=request.actor_type, actor_id=request.requested_by,
                )
                if outcome.success and not outcome.already_revoked:
                    revoked_ids.append(token_id)
            except TokenStorageError:
                errors += 1

        return RevocationResult(
            success=errors == 0,
            revocation_id=revocation_id,
            revoked_tokens=len(revoked_ids),
            revoked_token_ids=revoked_ids,
            error=f"{errors} tokens failed to revoke" if errors else None,
        )

    async def _send_notice(self, team_id: str, channel_id: str, reason: str, token_count: int) -> bool:
        """Post a revocation notice with a freshly fetched bot token. Never raises."""
        try:
            token_data = await self.storage.get_team_bot_token(team_id)
        except TokenStorageError:
            logger.warning("No usable bot token for revocation notice", extra={"team_id": team_id})
            return False
        if token_data is None:
            return False

        try:
            await self.slack.post_message(
                token_data.decrypted_token,
                channel_id,
                _notice_text(reason, token_count),
                team_id=team_id,
            )
            return True
        except SlackApiError as e:
            logger.warning(
                "Failed to send revocation notice",
                extra={"team_id": team_id, "code": e.code},
            )
            return False

    # =========================================================================
    # Status and validation
    # =========================================================================

    def check_revocation_status(self, token_id: str) -> RevocationStatus:
        """Revocation state of a token. Unknown tokens and lookup errors fail closed."""
        try:
            token = self.storage.get_token(token_id)
        except SQLAlchemyError:
            logger.exception("Error checking revocation status", extra={"token_id": token_id})
            return RevocationStatus(
                token_id=token_id,
                is_revoked=True,
                can_be_used=False,
                warning_message="Error checking token status - denying access for security",
            )

        if token is None:
            return RevocationStatus(
                token_id=token_id,
                is_revoked=True,
                can_be_used=False,
                warning_message="Token not found in database",
            )

        if token.is_revoked:
            return RevocationStatus(
                token_id=token_id,
                is_revoked=True,
                can_be_used=False,
                revoked_at=token.revoked_at,
                revoked_reason=token.revoked_reason,
                warning_message="Token has been revoked and cannot be used",
            )

        return RevocationStatus(token_id=token_id, is_revoked=False, can_be_used=True)

    async def validate_token_for_use(
        self,
        token_id: str,
        operation: str = "general",
        team_id: Optional[str] = None,
    ) -> TokenValidationResult:
        """
        Check a token before an API call and audit the outcome.

        Using a revoked or unknown token is logged as suspicious_activity.
        When team_id is given, the token must belong to that team.

        Raises:
            TeamIsolationError: If the token belongs to another team
        """
        status = self.check_revocation_status(token_id)
        owner_team_id = None
        if status.revoked_at is not None or status.can_be_used:
            owner_team_id = self.storage.get_token(token_id).team_id

        if team_id is not None and owner_team_id is not None and owner_team_id != team_id:
            logger.warning(
                "Cross-team token use blocked",
                extra={"token_id": token_id, "team_id": team_id, "operation": operation},
            )
            await self.audit.log_event(AuditEvent(
                event_type=AuditEventType.SUSPICIOUS_ACTIVITY,
                team_id=team_id,
                token_id=token_id,
                success=False,
                error_message="Token belongs to another team",
                details=SecurityDetails(operation=operation, reason="cross_team_token_use"),
            ))
            raise TeamIsolationError(f"team {team_id} used a token of team {owner_team_id}")

        if not status.can_be_used:
            logger.warning(
                "Attempted use of unusable token",
                extra={"token_id": token_id, "team_id": owner_team_id, "operation": operation},
            )
            result = await self.audit.log_event(AuditEvent(
                event_type=AuditEventType.SUSPICIOUS_ACTIVITY,
                team_id=owner_team_id,
                token_id=token_id,
                success=False,
                error_message=status.warning_message,
                details=SecurityDetails(
                    operation=operation,
                    reason="revoked_token_use_attempt",
                ),
            ))
            return TokenValidationResult(
                is_valid=False,
                can_proceed=False,
                reason=status.warning_message or "Token is revoked",
                audit_logged=result.persisted,
            )

        result = await self.audit.log_token_access(owner_team_id, token_id, success=True)
        return TokenValidationResult(is_valid=True, can_proceed=True, audit_logged=result.persisted)

    # =========================================================================
    # Reporting and cleanup
    # =========================================================================

    def get_revocation_stats(self, team_id: Optional[str] = None, days: int = 1) -> Dict[str, Any]:
        """Token counts, plus revocations within the last `days` days."""
        total = self.storage.count_tokens(team_id)
        active = self.storage.count_tokens(team_id, active_only=True)
        revoked = total - active
        since = utcnow() - timedelta(days=days)
        recent = sum(
            1 for t in self.storage.list_revoked_tokens(team_ids=[team_id] if team_id else None)
            if t.revoked_at and t.revoked_at > since
        )
        return {
            "total_tokens": total,
            "active_tokens": active,
            "revoked_tokens": revoked,
            "revocation_rate": round(revoked / total * 100, 2) if total else 0.0,
            "recent_revocations": recent,
        }

    async def cleanup_revoked_tokens(self, older_than_days: int = 90) -> int:
        """
        Physically delete tokens revoked more than older_than_days ago.

        Tokens under an effective legal hold on "tokens" are kept, unless
        the token is listed in the hold's exemptions. The run is audited
        as data_retention_cleanup.
        """
        now = utcnow()
        cutoff = now - timedelta(days=older_than_days)
        holds = self.retention_config.get_legal_holds(active_only=True)

        ids = []
        held = 0
        for token in self.storage.list_revoked_tokens(revoked_before=cutoff):
            if any(hold.covers("tokens", token.team_id, token.id, now) for hold in holds):
                held += 1
                continue
            ids.append(token.id)

        try:
            deleted = self.storage.delete_tokens(ids)
        except TokenStorageError as e:
            await self._log_cleanup(older_than_days, 0, held, [str(e)])
            raise

        logger.info(
            "Revoked tokens cleaned up",
            extra={"deleted_count": deleted, "held_count": held, "older_than_days": older_than_days},
        )
        await self._log_cleanup(older_than_days, deleted, held, [])
        return deleted

    async def _log_cleanup(self, older_than_days: int, deleted: int, held: int, errors: List[str]) -> None:
        await self.audit.log_event(AuditEvent(
            event_type=AuditEventType.DATA_RETENTION_CLEANUP,
            actor_type=ActorType.SCHEDULED_JOB,
            success=not errors,
            details=ComplianceDetails(
                data_type="tokens",
                reason=f"revoked more than {older_than_days} days ago",
                records_deleted=deleted,
                legal_holds_applied=held,
                deleted_counts={count_key("tokens"): deleted},
                errors=errors,
            ),
        ))
