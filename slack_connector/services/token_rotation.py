"""
Token rotation service.

Slack tokens cannot be minted by the connector: new credentials only
come from a fresh OAuth install. "Rotating" a token therefore means
health-checking it and, when it is unhealthy or too old, revoking it so
the workspace is prompted to re-authorize.

Health checks call auth.test in fixed-size batches with a pause between
batches to stay under Slack's rate limits. A failure on one token never
aborts the batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from slack_connector.config.settings import TokenRotationSettings
from slack_connector.credentials.store import SecureTokenStorage, TokenStorageError
from slack_connector.integrations.slack.client import SlackApiClient, SlackApiError
from slack_connector.models.audit_log import ActorType, AuditEventType
from slack_connector.models.base import utcnow
from slack_connector.models.slack_token import SlackToken, TokenType
from slack_connector.platform.audit import AuditEvent, SecurityAuditLogger
from slack_connector.platform.audit_details import ConfigurationDetails, CredentialDetails
from slack_connector.services.key_rotation import KeyRotationJobRunner

logger = logging.getLogger(__name__)

OVERDUE_ROTATION_DELAY_SECONDS = 0.5


class TokenHealth:
    HEALTHY = "healthy"
    INVALID = "invalid"
    UNREACHABLE = "unreachable"


@dataclass
class RotationResult:
    success: bool
    team_id: Optional[str] = None
    token_id: Optional[str] = None
    old_token_revoked: bool = False
    reauthorization_required: bool = False
    job_id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


@dataclass
class HealthCheckReport:
    total_checked: int = 0
    healthy_tokens: int = 0
    unhealthy_tokens: int = 0
    rotated_tokens: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class TokenRotationStatus:
    token_id: str
    team_id: str
    token_type: str
    age_days: int
    rotation_due_at: datetime
    overdue: bool


@dataclass
class RotationSchedule:
    tokens: List[TokenRotationStatus] = field(default_factory=list)
    overdue_team_ids: List[str] = field(default_factory=list)
    next_rotation_due_at: Optional[datetime] = None


@dataclass
class BatchRotationResult:
    total_processed: int = 0
    successful_rotations: int = 0
    failed_rotations: int = 0
    results: List[RotationResult] = field(default_factory=list)


class TokenRotationService:
    """
    Health checks and conditional invalidation of stored Slack tokens.

    Definitive auth.test failures (invalid_auth, token_revoked, ...) make a
    token unhealthy at once. Transient failures (timeouts, network and
    server errors) only count once a token has failed
    max_consecutive_failures checks in a row.
    """

    def __init__(
        self,
        storage: SecureTokenStorage,
        audit_logger: SecurityAuditLogger,
        slack_client: SlackApiClient,
        key_rotation: KeyRotationJobRunner,
        settings: Optional[TokenRotationSettings] = None,
    ):
        self.storage = storage
        self.audit = audit_logger
        self.slack = slack_client
        self.key_rotation = key_rotation
        self.settings = settings or TokenRotationSettings()
        self._consecutive_failures: Dict[str, int] = {}

    # =========================================================================
    # Age
    # =========================================================================

    @property
    def rotation_interval(self) -> timedelta:
        return timedelta(days=self.settings.rotation_interval_days)

    def is_rotation_due(self, token: SlackToken, now: Optional[datetime] = None) -> bool:
        """Token age (now - created_at) has reached the rotation interval."""
        now = now or utcnow()
        return now - token.created_at >= self.rotation_interval

    # =========================================================================
    # Health
    # =========================================================================

    async def check_token_health(self, token: SlackToken) -> str:
        """
        Check one token with auth.test.

        Returns:
            TokenHealth.HEALTHY, INVALID or UNREACHABLE
        """
        try:
            token_data = await self.storage.decrypt_for_use(token)
        except TokenStorageError:
            health = TokenHealth.INVALID
        else:
            try:
                await self.slack.auth_test(token_data.decrypted_token, team_id=token.team_id)
                health = TokenHealth.HEALTHY
            except SlackApiError as e:
                health = TokenHealth.INVALID if e.is_invalid_token else TokenHealth.UNREACHABLE
                logger.info(
                    "Token health check failed",
                    extra={"token_id": token.id, "team_id": token.team_id, "code": e.code},
                )

        if health == TokenHealth.HEALTHY:
            self._consecutive_failures.pop(token.id, None)
        else:
            self._consecutive_failures[token.id] = self._consecutive_failures.get(token.id, 0) + 1

        await self.audit.log_event(AuditEvent(
            event_type=AuditEventType.TOKEN_HEALTH_CHECK,
            team_id=token.team_id,
            token_id=token.id,
            actor_type=ActorType.SCHEDULED_JOB,
            success=health == TokenHealth.HEALTHY,
            details=CredentialDetails(operation="health_check", health_status=health),
        ))
        return health

    def _counts_as_unhealthy(self, token_id: str, health: str) -> bool:
        if health == TokenHealth.INVALID:
            return True
        if health == TokenHealth.UNREACHABLE:
            return self._consecutive_failures.get(token_id, 0) >= self.settings.max_consecutive_failures
        return False

    # =========================================================================
    # Rotation
    # =========================================================================

    async def rotate_team_token(
        self,
        team_id: str,
        reason: str = "manual_rotation",
        force: bool = False,
    ) -> RotationResult:
        """
        Rotate the team's current bot token.

        Without force, a healthy token younger than the rotation interval
        is left alone. Otherwise the token is revoked and the team must
        re-authorize through OAuth.
        """
        tokens = [
            t for t in self.storage.list_active_tokens(team_id)
            if t.token_type == TokenType.BOT
        ]
        if not tokens:
            return RotationResult(
                success=False,
                team_id=team_id,
                error="No active tokens found for team",
            )

        current = max(tokens, key=lambda t: t.created_at)

        if not force:
            health = await self.check_token_health(current)
            if health == TokenHealth.HEALTHY and not self.is_rotation_due(current):
                return RotationResult(
                    success=True,
                    team_id=team_id,
                    token_id=current.id,
                    message="Token is healthy and rotation not due",
                )

        return await self._rotate_token(current, reason)

    async def _rotate_token(self, token: SlackToken, reason: str) -> RotationResult:
        try:
            revocation = await self.storage.revoke_token(
                token.id, f"rotation:{reason}", actor_type=ActorType.SYSTEM,
            )
        except TokenStorageError as e:
            await self.audit.log_event(AuditEvent(
                event_type=AuditEventType.TOKEN_ROTATED,
                team_id=token.team_id,
                token_id=token.id,
                success=False,
                error_message=str(e),
                details=CredentialDetails(operation="token_rotation", reason=reason),
            ))
            return RotationResult(
                success=False, team_id=token.team_id, token_id=token.id, error=str(e),
            )

        await self.audit.log_event(AuditEvent(
            event_type=AuditEventType.TOKEN_ROTATED,
            team_id=token.team_id,
            token_id=token.id,
            success=True,
            details=CredentialDetails(
                operation="token_rotation",
                reason=reason,
                already_revoked=revocation.already_revoked,
            ),
        ))
        logger.info(
            "Token rotated out, re-authorization required",
            extra={"team_id": token.team_id, "token_id": token.id, "reason": reason},
        )
        return RotationResult(
            success=True,
            team_id=token.team_id,
            token_id=token.id,
            old_token_revoked=not revocation.already_revoked,
            reauthorization_required=True,
            message="Token revoked - re-authorization required through OAuth flow",
        )

    async def perform_health_checks(self) -> HealthCheckReport:
        """
        Health-check every active token in rate-limited batches.

        Every non-healthy result counts in unhealthy_tokens. With
        rotate_on_failure set, an invalid token is rotated at once, while
        an unreachable one (timeout, network or Slack-side error) is
        rotated only after max_consecutive_failures failed checks in a
        row; a healthy check resets that count. Healthy tokens past the
        rotation interval are rotated regardless.
        """
        tokens = self.storage.list_active_tokens()
        report = HealthCheckReport(total_checked=len(tokens))
        batch_size = max(1, self.settings.health_check_batch_size)

        logger.info("Starting token health checks", extra={"token_count": len(tokens)})

        for start in range(0, len(tokens), batch_size):
            batch = tokens[start:start + batch_size]
            await asyncio.gather(*(self._check_one(token, report) for token in batch))

            if start + batch_size < len(tokens):
                await asyncio.sleep(self.settings.health_check_batch_delay_seconds)

        logger.info(
            "Token health checks completed",
            extra={
                "healthy": report.healthy_tokens,
                "unhealthy": report.unhealthy_tokens,
                "rotated": len(report.rotated_tokens),
                "error_count": len(report.errors),
            },
        )
        return report

    async def _check_one(self, token: SlackToken, report: HealthCheckReport) -> None:
        # Capture ids up front; a failed commit elsewhere expires the row
        token_id, team_id = token.id, token.team_id
        try:
            health = await self.check_token_health(token)
            if health == TokenHealth.HEALTHY:
                report.healthy_tokens += 1
                if self.is_rotation_due(token):
                    result = await self._rotate_token(token, "scheduled_health_check")
                    if result.old_token_revoked:
                        report.rotated_tokens.append(token_id)
                return

            report.unhealthy_tokens += 1
            if self.settings.rotate_on_failure and self._counts_as_unhealthy(token_id, health):
                result = await self._rotate_token(token, "health_check_failure")
                if result.old_token_revoked:
                    report.rotated_tokens.append(token_id)
                    self._consecutive_failures.pop(token_id, None)
        except Exception as e:
            logger.exception("Health check failed", extra={"token_id": token_id})
            report.errors.append({"team_id": team_id, "token_id": token_id, "error": str(e)})

    # =========================================================================
    # Schedule
    # =========================================================================

    def get_rotation_schedule(self) -> RotationSchedule:
        now = utcnow()
        schedule = RotationSchedule()
        overdue_teams = []
        for token in self.storage.list_active_tokens():
            due_at = token.created_at + self.rotation_interval
            overdue = due_at <= now
            schedule.tokens.append(TokenRotationStatus(
                token_id=token.id,
                team_id=token.team_id,
                token_type=token.token_type.value,
                age_days=(now - token.created_at).days,
                rotation_due_at=due_at,
                overdue=overdue,
            ))
            if overdue and token.token_type == TokenType.BOT and token.team_id not in overdue_teams:
                overdue_teams.append(token.team_id)
            if not overdue and (
                schedule.next_rotation_due_at is None or due_at < schedule.next_rotation_due_at
            ):
                schedule.next_rotation_due_at = due_at
        schedule.overdue_team_ids = overdue_teams
        return schedule

    async def rotate_overdue_tokens(
        self,
        delay_seconds: float = OVERDUE_ROTATION_DELAY_SECONDS,
    ) -> BatchRotationResult:
        """Rotate the bot token of every team whose token is past due."""
        team_ids = self.get_rotation_schedule().overdue_team_ids
        batch = BatchRotationResult(total_processed=len(team_ids))

        for index, team_id in enumerate(team_ids):
            result = await self.rotate_team_token(team_id, "batch_overdue_rotation")
            batch.results.append(result)
            if result.success:
                batch.successful_rotations += 1
            else:
                batch.failed_rotations += 1
            if delay_seconds and index < len(team_ids) - 1:
                await asyncio.sleep(delay_seconds)

        return batch

    # =========================================================================
    # Encryption keys
    # =========================================================================

    async def rotate_encryption_keys(
        self,
        reason: str = "scheduled_rotation",
        requested_by: str = "system",
    ) -> RotationResult:
        """
        Start re-encrypting every stored token under the active key.

        This only creates and audits a tracked KeyRotationJob; the job is
        run by KeyRotationJobRunner.run, which is resumable. The new key
        must already be deployed as the active ENCRYPTION_SECRET with the
        old one listed in ENCRYPTION_PREVIOUS_SECRETS.
        """
        job = self.key_rotation.create_job(reason=reason, requested_by=requested_by)
        await self.audit.log_event(AuditEvent(
            event_type=AuditEventType.ENCRYPTION_KEY_ROTATED,
            actor_type=ActorType.ADMIN if requested_by != "system" else ActorType.SYSTEM,
            actor_id=requested_by,
            details=ConfigurationDetails(
                action="key_rotation_job_created",
                job_id=job.id,
                target_version=job.target_key_id,
                reason=reason,
            ),
        ))
        return RotationResult(
            success=True,
            job_id=job.id,
            message=f"Key rotation job created for {job.total_tokens} tokens",
        )

    def summarize(self) -> Dict[str, Any]:
        """Counts used by the service health check."""
        schedule = self.get_rotation_schedule()
        return {
            "active_tokens": len(schedule.tokens),
            "overdue_tokens": sum(1 for t in schedule.tokens if t.overdue),
            "tokens_with_failures": sum(1 for c in self._consecutive_failures.values() if c),
        }
