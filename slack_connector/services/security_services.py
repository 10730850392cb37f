"""
Security services container.

Builds every security component from one SecuritySettings object and one
database session, so all writers share a single audit logger (and with
it the hash-chain write lock) and a single rate limiter.

Usage:
    services = SecurityServices(db_session, SecuritySettings.from_env())
    await services.initialize()
    health = await services.perform_health_check()
    await services.close()
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slack_connector.config.settings import SecuritySettings
from slack_connector.credentials.encryption import (
    CredentialEncryptionError,
    build_encryption_service,
    validate_encryption_ready,
)
from slack_connector.credentials.store import SecureTokenStorage
from slack_connector.integrations.slack.client import SlackApiClient
from slack_connector.models.audit_log import ActorType, AuditEventType, AuditSeverity
from slack_connector.models.base import utcnow
from slack_connector.platform.audit import AuditEvent, SecurityAuditLogger
from slack_connector.platform.audit_details import SystemDetails
from slack_connector.platform.errors import SecureErrorHandler
from slack_connector.platform.rate_limit import build_rate_limiter
from slack_connector.services.data_retention import DataRetentionService, RetentionConfigStore
from slack_connector.services.gdpr_deletion import GDPRDeletionService
from slack_connector.services.key_rotation import KeyRotationJobRunner
from slack_connector.services.token_revocation import TokenRevocationService
from slack_connector.services.token_rotation import TokenRotationService
from slack_connector.utils.encryption import TokenEncryptionService

logger = logging.getLogger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_DEGRADED = "degraded"
STATUS_UNHEALTHY = "unhealthy"

CHECK_PASS = "pass"
CHECK_WARN = "warn"
CHECK_FAIL = "fail"

# Security alerts in the last 24h at or above this count fail the check
SECURITY_ALERT_FAIL_THRESHOLD = 5


@dataclass
class MaintenanceTask:
    name: str
    success: bool
    message: str
    duration_ms: int


@dataclass
class MaintenanceResult:
    success: bool
    tasks: List[MaintenanceTask] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)


class SecurityServices:
    """Owns and wires the security components of one process."""

    def __init__(
        self,
        db_session: Session,
        settings: SecuritySettings,
        encryption: Optional[TokenEncryptionService] = None,
        slack_client: Optional[SlackApiClient] = None,
    ):
        self.db = db_session
        self.settings = settings
        # Raises EncryptionConfigError when the master secret is unusable
        self.encryption = encryption or build_encryption_service(settings)
        self.audit_logger = SecurityAuditLogger(db_session, self.encryption)
        self.rate_limiter = build_rate_limiter(settings.redis_url, audit_logger=self.audit_logger)
        self.slack_client = slack_client or SlackApiClient(
            base_url=settings.slack_api_base_url,
            timeout=settings.slack_api_timeout_seconds,
            rate_limiter=self.rate_limiter,
        )
        self.token_storage = SecureTokenStorage(db_session, self.encryption, self.audit_logger)
        self.key_rotation = KeyRotationJobRunner(db_session, self.token_storage, self.audit_logger)
        self.token_rotation = TokenRotationService(
            self.token_storage,
            self.audit_logger,
            self.slack_client,
            self.key_rotation,
            settings.rotation,
        )
        self.retention_config = RetentionConfigStore(db_session)
        self.token_revocation = TokenRevocationService(
            self.token_storage, self.audit_logger, self.slack_client, self.retention_config
        )
        self.data_retention = DataRetentionService(
            db_session, self.audit_logger, self.retention_config
        )
        self.gdpr_deletion = GDPRDeletionService(
            db_session, self.token_storage, self.audit_logger
        )
        self.error_handler = SecureErrorHandler(self.audit_logger)

    async def close(self) -> None:
        await self.slack_client.close()

    async def initialize(self) -> None:
        """
        Startup checks: encryption self-test and recent audit integrity.

        Tampering is reported through the audit log, not raised. A failed
        self-test raises, preventing the process from serving.

        Raises:
            RuntimeError: If the encryption self-test fails
        """
        try:
            validate_encryption_ready(self.encryption)
        except CredentialEncryptionError as e:
            await self.audit_logger.log_event(AuditEvent(
                event_type=AuditEventType.SYSTEM_STARTUP,
                success=False,
                severity=AuditSeverity.CRITICAL,
                error_message="Encryption self-test failed",
                details=SystemDetails(component="encryption", status=CHECK_FAIL),
            ))
            raise RuntimeError("Encryption self-test failed") from e

        integrity = await self.audit_logger.verify_audit_integrity(
            days=self.settings.audit_integrity_check_days
        )
        if not integrity.is_valid:
            logger.warning(
                "Audit log integrity verification failed at startup",
                extra={"tampered_count": len(integrity.tampered_logs)},
            )

        await self.audit_logger.log_event(AuditEvent(
            event_type=AuditEventType.SYSTEM_STARTUP,
            details=SystemDetails(
                component="security_services",
                status="initialized",
                checks={
                    "encryption": CHECK_PASS,
                    "audit_integrity": CHECK_PASS if integrity.is_valid else CHECK_FAIL,
                },
            ),
        ))
        logger.info("Security services initialized", extra={"audit_valid": integrity.is_valid})

    async def perform_health_check(self) -> Dict[str, Any]:
        """
        Component checks rolled up into healthy, degraded or unhealthy.

        Any failed check makes the result unhealthy; any warning makes it
        degraded.
        """
        checks: Dict[str, Dict[str, str]] = {}

        try:
            self.db.execute(text("SELECT 1"))
            checks["database"] = {"status": CHECK_PASS, "message": "Database connection successful"}
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Database health check failed", extra={"error": type(e).__name__})
            checks["database"] = {"status": CHECK_FAIL, "message": "Database connection failed"}

        if self.encryption.self_test():
            checks["encryption"] = {"status": CHECK_PASS, "message": "Encryption round trip succeeded"}
        else:
            checks["encryption"] = {"status": CHECK_FAIL, "message": "Encryption self-test failed"}

        if checks["database"]["status"] == CHECK_PASS:
            integrity = await self.audit_logger.verify_audit_integrity(days=1)
            if integrity.is_valid:
                checks["audit_integrity"] = {
                    "status": CHECK_PASS,
                    "message": f"Verified {integrity.total_checked} audit entries",
                }
            else:
                checks["audit_integrity"] = {
                    "status": CHECK_FAIL,
                    "message": f"{len(integrity.tampered_logs)} tampered entries detected",
                }

            summary = self.data_retention.get_retention_summary()
            if summary.compliance_status == "compliant":
                checks["retention"] = {"status": CHECK_PASS, "message": "All retention policies compliant"}
            else:
                checks["retention"] = {
                    "status": CHECK_WARN if summary.compliance_status == "warning" else CHECK_FAIL,
                    "message": ", ".join(summary.issues),
                }

            alerts = self.audit_logger.get_audit_statistics(days=1).security_alerts_24h
            if alerts == 0:
                checks["security_alerts"] = {"status": CHECK_PASS, "message": "No security alerts in last 24h"}
            else:
                checks["security_alerts"] = {
                    "status": CHECK_FAIL if alerts >= SECURITY_ALERT_FAIL_THRESHOLD else CHECK_WARN,
                    "message": f"{alerts} security alerts in last 24h",
                }

            tokens = self.token_rotation.summarize()
            checks["tokens"] = {
                "status": CHECK_WARN if tokens["overdue_tokens"] else CHECK_PASS,
                "message": (
                    f"{tokens['active_tokens']} active tokens, "
                    f"{tokens['overdue_tokens']} overdue for rotation"
                ),
            }

        statuses = [c["status"] for c in checks.values()]
        if CHECK_FAIL in statuses:
            overall = STATUS_UNHEALTHY
        elif CHECK_WARN in statuses:
            overall = STATUS_DEGRADED
        else:
            overall = STATUS_HEALTHY

        if checks["database"]["status"] == CHECK_PASS:
            await self.audit_logger.log_event(AuditEvent(
                event_type=AuditEventType.HEALTH_CHECK,
                success=overall != STATUS_UNHEALTHY,
                details=SystemDetails(
                    component="security_health_check",
                    status=overall,
                    checks={name: c["status"] for name, c in checks.items()},
                ),
            ))

        return {
            "status": overall,
            "checks": checks,
            "timestamp": utcnow().isoformat(),
        }

    async def perform_scheduled_maintenance(self, dry_run: Optional[bool] = None) -> MaintenanceResult:
        """Token health checks, retention policies and integrity verification."""
        dry_run = self.settings.maintenance_dry_run if dry_run is None else dry_run
        result = MaintenanceResult(success=True)

        start = time.monotonic()
        try:
            report = await self.token_rotation.perform_health_checks()
            result.tasks.append(MaintenanceTask(
                name="token_health_check",
                success=not report.errors,
                message=(
                    f"{report.total_checked} checked, {report.unhealthy_tokens} unhealthy, "
                    f"{len(report.rotated_tokens)} rotated"
                ),
                duration_ms=int((time.monotonic() - start) * 1000),
            ))
        except Exception as e:
            logger.exception("Token health check task failed")
            result.tasks.append(MaintenanceTask(
                "token_health_check", False, type(e).__name__, int((time.monotonic() - start) * 1000)
            ))

        start = time.monotonic()
        try:
            reports = await self.data_retention.execute_retention_policies(dry_run=dry_run)
            deleted = sum(r.records_deleted for r in reports)
            result.tasks.append(MaintenanceTask(
                name="data_retention",
                success=all(r.success for r in reports),
                message=f"{len(reports)} policies run, {deleted} records removed",
                duration_ms=int((time.monotonic() - start) * 1000),
            ))
        except Exception as e:
            logger.exception("Data retention task failed")
            result.tasks.append(MaintenanceTask(
                "data_retention", False, type(e).__name__, int((time.monotonic() - start) * 1000)
            ))

        start = time.monotonic()
        integrity = await self.audit_logger.verify_audit_integrity(
            days=self.settings.audit_integrity_check_days
        )
        result.tasks.append(MaintenanceTask(
            name="audit_integrity",
            success=integrity.is_valid,
            message=(
                f"{integrity.total_checked} entries verified, "
                f"{len(integrity.tampered_logs)} tampered"
            ),
            duration_ms=int((time.monotonic() - start) * 1000),
        ))

        result.success = all(task.success for task in result.tasks)
        await self.audit_logger.log_event(AuditEvent(
            event_type=AuditEventType.SCHEDULED_MAINTENANCE,
            actor_type=ActorType.SCHEDULED_JOB,
            success=result.success,
            details=SystemDetails(
                component="scheduled_maintenance",
                status="completed" if result.success else "failed",
                checks={task.name: CHECK_PASS if task.success else CHECK_FAIL for task in result.tasks},
            ),
        ))
        logger.info(
            "Scheduled maintenance finished",
            extra={"success": result.success, "task_count": len(result.tasks), "dry_run": dry_run},
        )
        return result
