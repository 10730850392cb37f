"""
GDPR deletion service.

Irreversibly erases every row belonging to one Slack team. There is no
soft delete and no undo.

Steps run in order and the sequence continues past a failed step, since
partial deletion is still progress; each step's outcome is recorded:

    1. Revoke active tokens (one audit entry per token)
    2. Delete sync logs, backfills and channel configuration
    3. Physically delete token rows
    4. Delete the team's audit entries, unless retain_audit_logs is set
    5. Delete the team row

When audit entries are erased, the request and completion events are
written without a team reference and are correlated by deletion_id.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from slack_connector.credentials.store import SecureTokenStorage
from slack_connector.models.audit_log import ActorType, AuditEventType, SecurityAuditLog
from slack_connector.models.base import utcnow
from slack_connector.models.slack_channel import SlackChannel
from slack_connector.models.slack_team import SlackTeam
from slack_connector.models.slack_token import SlackToken
from slack_connector.models.sync_log import SlackBackfill, SlackSyncLog
from slack_connector.platform.audit import AuditEvent, SecurityAuditLogger
from slack_connector.platform.audit_details import ComplianceDetails, count_key

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 1000


class GDPRDeletionError(ValueError):
    """A deletion request failed validation."""

    def __init__(self, issues: List[str]):
        self.issues = issues
        super().__init__("; ".join(issues))


@dataclass
class GDPRDeletionRequest:
    team_id: str
    reason: str
    requested_by: str
    retain_audit_logs: bool = False
    contact_email: Optional[str] = None
    requested_at: datetime = field(default_factory=utcnow)


def _empty_counts() -> Dict[str, int]:
    return {
        "teams": 0,
        "tokens": 0,
        "channels": 0,
        "sync_logs": 0,
        "backfills": 0,
        "audit_logs": 0,
    }


@dataclass
class GDPRDeletionResult:
    success: bool
    deletion_id: str
    team_id: str
    deleted_counts: Dict[str, int] = field(default_factory=_empty_counts)
    tokens_revoked: int = 0
    step_errors: Dict[str, str] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted_counts.values())


class GDPRDeletionService:
    """Complete, audited erasure of a team's data."""

    def __init__(
        self,
        db_session: Session,
        storage: SecureTokenStorage,
        audit_logger: SecurityAuditLogger,
    ):
        self.db = db_session
        self.storage = storage
        self.audit = audit_logger

    def validate_deletion_request(self, request: GDPRDeletionRequest) -> None:
        """
        Raises:
            GDPRDeletionError: Listing every problem with the request
        """
        issues = []
        if not request.team_id or not request.team_id.strip():
            issues.append("team_id is required")
        if not request.reason or not request.reason.strip():
            issues.append("reason is required")
        elif len(request.reason) > MAX_REASON_LENGTH:
            issues.append(f"reason must be at most {MAX_REASON_LENGTH} characters")
        if not request.requested_by or not request.requested_by.strip():
            issues.append("requested_by is required")
        if issues:
            raise GDPRDeletionError(issues)

    def get_team_data_summary(self, team_id: str) -> Dict[str, int]:
        """Row counts per table that a deletion of this team would remove."""
        def count(model, column) -> int:
            return self.db.query(func.count()).select_from(model).filter(column == team_id).scalar() or 0

        return {
            "teams": count(SlackTeam, SlackTeam.id),
            "tokens": count(SlackToken, SlackToken.team_id),
            "channels": count(SlackChannel, SlackChannel.team_id),
            "sync_logs": count(SlackSyncLog, SlackSyncLog.team_id),
            "backfills": count(SlackBackfill, SlackBackfill.team_id),
            "audit_logs": count(SecurityAuditLog, SecurityAuditLog.team_id),
        }

    async def process_gdpr_deletion(self, request: GDPRDeletionRequest) -> GDPRDeletionResult:
        deletion_id = f"gdpr_{uuid.uuid4().hex}"
        result = GDPRDeletionResult(success=False, deletion_id=deletion_id, team_id=request.team_id)

        try:
            self.validate_deletion_request(request)
        except GDPRDeletionError as e:
            result.error = str(e)
            await self._log(AuditEventType.GDPR_DELETE_FAILED, request, result, success=False)
            return result

        logger.warning(
            "GDPR deletion started",
            extra={"deletion_id": deletion_id, "team_id": request.team_id},
        )
        await self._log(AuditEventType.GDPR_DELETE_REQUESTED, request, result)

        async def revoke_tokens() -> None:
            result.tokens_revoked = await self.storage.revoke_team_tokens(
                request.team_id,
                reason=f"gdpr_deletion:{request.reason}",
                actor_type=ActorType.ADMIN,
                actor_id=request.requested_by,
            )

        await self._run_step("revoke_tokens", result, revoke_tokens)
        await self._run_step("sync_logs", result, self._bulk_delete(SlackSyncLog, SlackSyncLog.team_id, request.team_id))
        await self._run_step("backfills", result, self._bulk_delete(SlackBackfill, SlackBackfill.team_id, request.team_id))
        await self._run_step("channels", result, self._bulk_delete(SlackChannel, SlackChannel.team_id, request.team_id))

        async def delete_tokens() -> int:
            return self.storage.delete_team_tokens(request.team_id)

        await self._run_step("tokens", result, delete_tokens)

        if not request.retain_audit_logs:
            async def delete_audit_logs() -> int:
                return await self.audit.delete_team_entries(request.team_id)

            await self._run_step("audit_logs", result, delete_audit_logs)

        await self._run_step("teams", result, self._bulk_delete(SlackTeam, SlackTeam.id, request.team_id))

        result.completed_at = utcnow()
        result.success = not result.step_errors
        if result.step_errors:
            result.error = f"{len(result.step_errors)} deletion steps failed"

        await self._log(
            AuditEventType.GDPR_DELETE_COMPLETED if result.success else AuditEventType.GDPR_DELETE_FAILED,
            request,
            result,
            success=result.success,
        )
        logger.warning(
            "GDPR deletion finished",
            extra={
                "deletion_id": deletion_id,
                "success": result.success,
                "total_deleted": result.total_deleted,
            },
        )
        return result

    def _bulk_delete(self, model, column, team_id: str) -> Callable:
        async def step() -> int:
            deleted = (
                self.db.query(model)
                .filter(column == team_id)
                .delete(synchronize_session=False)
            )
            self.db.commit()
            return deleted
        return step

    async def _run_step(self, name: str, result: GDPRDeletionResult, step: Callable) -> None:
        try:
            count = await step()
        except Exception as e:
            self.db.rollback()
            logger.error(
                "GDPR deletion step failed",
                extra={"deletion_id": result.deletion_id, "step": name, "error": type(e).__name__},
            )
            result.step_errors[name] = f"{type(e).__name__}: {e}"
            return
        if name in result.deleted_counts:
            result.deleted_counts[name] = count or 0

    async def _log(
        self,
        event_type: AuditEventType,
        request: GDPRDeletionRequest,
        result: GDPRDeletionResult,
        success: bool = True,
    ) -> None:
        await self.audit.log_event(AuditEvent(
            event_type=event_type,
            team_id=request.team_id if request.retain_audit_logs else None,
            actor_type=ActorType.ADMIN,
            actor_id=request.requested_by,
            success=success,
            error_message=result.error,
            details=ComplianceDetails(
                operation_id=result.deletion_id,
                reason=request.reason,
                requested_by=request.requested_by,
                retain_audit_logs=request.retain_audit_logs,
                deleted_counts={count_key(k): v for k, v in result.deleted_counts.items()},
                errors=[f"{k}: {v}" for k, v in result.step_errors.items()],
            ),
        ))
