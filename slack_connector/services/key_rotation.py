"""
Resumable re-encryption of stored tokens after an encryption key change.

Operational sequence:
1. Deploy the new secret as ENCRYPTION_SECRET with a new ENCRYPTION_KEY_ID,
   and move the old one to ENCRYPTION_PREVIOUS_SECRETS.
2. TokenRotationService.rotate_encryption_keys creates a KeyRotationJob.
3. KeyRotationJobRunner.run processes tokens in id order, one transaction
   per row; the cursor advances with every row.
4. Once the job completes, the old secret can be removed.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from slack_connector.credentials.store import SecureTokenStorage, TokenStorageError
from slack_connector.models.audit_log import ActorType, AuditEventType
from slack_connector.models.base import utcnow
from slack_connector.models.key_rotation_job import KeyRotationJob, KeyRotationStatus
from slack_connector.platform.audit import AuditEvent, SecurityAuditLogger
from slack_connector.platform.audit_details import ConfigurationDetails

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
MAX_RECORDED_ERRORS = 100


class KeyRotationJobRunner:
    """Creates and runs KeyRotationJob records."""

    def __init__(
        self,
        db_session: Session,
        storage: SecureTokenStorage,
        audit_logger: SecurityAuditLogger,
    ):
        self.db = db_session
        self.storage = storage
        self.audit = audit_logger

    def create_job(self, reason: str, requested_by: str = "system") -> KeyRotationJob:
        job = KeyRotationJob(
            reason=reason,
            requested_by=requested_by,
            target_key_id=self.storage.encryption.active_key_id,
            total_tokens=self.storage.count_tokens(),
            errors=[],
        )
        self.db.add(job)
        self.db.commit()
        logger.info(
            "Key rotation job created",
            extra={"job_id": job.id, "target_key_id": job.target_key_id, "total_tokens": job.total_tokens},
        )
        return job

    def get_job(self, job_id: str) -> Optional[KeyRotationJob]:
        return self.db.get(KeyRotationJob, job_id)

    def list_unfinished_jobs(self) -> List[KeyRotationJob]:
        return (
            self.db.query(KeyRotationJob)
            .filter(KeyRotationJob.status.in_([KeyRotationStatus.PENDING, KeyRotationStatus.RUNNING]))
            .order_by(KeyRotationJob.created_at.asc())
            .all()
        )

    async def run(
        self,
        job_id: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_batches: Optional[int] = None,
    ) -> KeyRotationJob:
        """
        Process a job from its cursor.

        Args:
            job_id: Job to run
            batch_size: Tokens loaded per query
            max_batches: Stop early after this many batches (job stays running)

        Raises:
            ValueError: If the job does not exist or targets a key that is
                not the active key of this process
        """
        job = self.get_job(job_id)
        if job is None:
            raise ValueError(f"Key rotation job {job_id} not found")
        if job.is_finished:
            return job
        if job.target_key_id != self.storage.encryption.active_key_id:
            raise ValueError(
                f"Job targets key '{job.target_key_id}' but the active key is "
                f"'{self.storage.encryption.active_key_id}'"
            )

        if job.status == KeyRotationStatus.PENDING:
            job.status = KeyRotationStatus.RUNNING
            job.started_at = utcnow()
            self.db.commit()

        batches = 0
        while max_batches is None or batches < max_batches:
            tokens = self.storage.list_tokens_after(job.cursor, batch_size)
            if not tokens:
                break

            for token in tokens:
                token_id = token.id
                error = None
                try:
                    changed = await self.storage.reencrypt(token)
                except TokenStorageError as e:
                    changed = None
                    error = f"{token_id}: {e}"

                # One commit per row keeps counters and cursor in step with the row
                if changed is None:
                    job.failed_count += 1
                    if len(job.errors or []) < MAX_RECORDED_ERRORS:
                        job.errors = list(job.errors or []) + [error]
                elif changed:
                    job.processed_count += 1
                else:
                    job.skipped_count += 1
                job.cursor = token_id
                self.db.commit()

            batches += 1

        if self.storage.list_tokens_after(job.cursor, 1):
            logger.info("Key rotation job paused", extra={"job_id": job.id, "cursor": job.cursor})
            return job

        job.status = KeyRotationStatus.FAILED if job.failed_count else KeyRotationStatus.COMPLETED
        job.completed_at = utcnow()
        self.db.commit()

        logger.info(
            "Key rotation job finished",
            extra={
                "job_id": job.id,
                "status": job.status.value,
                "processed_count": job.processed_count,
                "skipped_count": job.skipped_count,
                "failed_count": job.failed_count,
            },
        )
        await self.audit.log_event(AuditEvent(
            event_type=AuditEventType.ENCRYPTION_KEY_ROTATED,
            actor_type=ActorType.SCHEDULED_JOB,
            success=job.status == KeyRotationStatus.COMPLETED,
            details=ConfigurationDetails(
                action="key_rotation_job_finished",
                job_id=job.id,
                target_version=job.target_key_id,
                changes={
                    "processed": str(job.processed_count),
                    "skipped": str(job.skipped_count),
                    "failed": str(job.failed_count),
                },
            ),
        ))
        return job
