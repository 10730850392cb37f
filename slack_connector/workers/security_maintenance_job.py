"""
Security maintenance job - cron entry point for scheduled security work.

Runs, in order:
- Resume any unfinished encryption key rotation jobs
- Token health checks (rotating invalid or overdue tokens)
- Data retention policies (legal-hold aware)
- Audit log integrity verification

CONSTRAINTS:
- Operates across all teams
- Respects SECURITY_MAINTENANCE_DRY_RUN for retention deletes
- Every step is audit-logged by the services it calls
- Exits non-zero when any step fails

Run as a daily cron job:
    python -m slack_connector.workers.security_maintenance_job
"""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from slack_connector.config.settings import SecuritySettings
from slack_connector.credentials.redaction import setup_token_logging
from slack_connector.models.base import utcnow
from slack_connector.services.security_services import SecurityServices

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

KEY_ROTATION_BATCH_SIZE = int(os.getenv("KEY_ROTATION_BATCH_SIZE", "100"))


@dataclass
class MaintenanceStats:
    """Statistics from one maintenance run."""

    started_at: datetime = field(default_factory=utcnow)
    dry_run: bool = False
    key_rotation_jobs: int = 0
    tasks_succeeded: int = 0
    tasks_failed: int = 0
    errors: List[str] = field(default_factory=list)
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.tasks_failed == 0 and not self.errors

    def to_dict(self) -> dict:
        duration = None
        if self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "dry_run": self.dry_run,
            "key_rotation_jobs": self.key_rotation_jobs,
            "tasks_succeeded": self.tasks_succeeded,
            "tasks_failed": self.tasks_failed,
            "error_count": len(self.errors),
            "duration_seconds": duration,
        }


def _get_database_session(database_url: Optional[str]) -> Session:
    """Create database session for the maintenance job."""
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    engine = create_engine(database_url, pool_pre_ping=True)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return session_factory()


async def run_maintenance(services: SecurityServices, dry_run: bool = False) -> MaintenanceStats:
    """
    Execute one maintenance pass.

    Args:
        services: Wired security services for the job's session
        dry_run: Report retention deletions without deleting

    Returns:
        MaintenanceStats with results
    """
    stats = MaintenanceStats(dry_run=dry_run)

    for job in services.key_rotation.list_unfinished_jobs():
        stats.key_rotation_jobs += 1
        try:
            job = await services.key_rotation.run(job.id, batch_size=KEY_ROTATION_BATCH_SIZE)
            logger.info(
                "Key rotation job advanced",
                extra={"job_id": job.id, "status": job.status.value, "processed_count": job.processed_count},
            )
        except ValueError as exc:
            stats.errors.append(f"Key rotation job {job.id}: {exc}")
            logger.error("Key rotation job could not run", extra={"job_id": job.id, "error": str(exc)})

    result = await services.perform_scheduled_maintenance(dry_run=dry_run)
    for task in result.tasks:
        if task.success:
            stats.tasks_succeeded += 1
        else:
            stats.tasks_failed += 1
            stats.errors.append(f"{task.name}: {task.message}")

    stats.completed_at = utcnow()
    return stats


async def _run(settings: SecuritySettings) -> MaintenanceStats:
    session = _get_database_session(settings.database_url)
    services = SecurityServices(session, settings)
    try:
        await services.initialize()
        return await run_maintenance(services, dry_run=settings.maintenance_dry_run)
    finally:
        await services.close()
        session.close()


def main():
    """Entry point for the security maintenance job."""
    setup_token_logging()
    settings = SecuritySettings.from_env()
    logger.info(
        "Security Maintenance Job starting",
        extra={"dry_run": settings.maintenance_dry_run},
    )

    try:
        stats = asyncio.run(_run(settings))
        logger.info("Security Maintenance Job stats", extra=stats.to_dict())
    except Exception as exc:
        logger.error(
            "Security Maintenance Job failed",
            extra={"error": type(exc).__name__},
            exc_info=True,
        )
        sys.exit(1)

    if not stats.success:
        logger.error("Security Maintenance Job finished with failures", extra={"errors": stats.errors[:20]})
        sys.exit(1)

    logger.info("Security Maintenance Job finished")


if __name__ == "__main__":
    main()
