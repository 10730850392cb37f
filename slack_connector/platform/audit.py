"""
Security audit logging for the Slack connector.

Every security-relevant event is written to security_audit_logs as an
append-only, hash-chained entry. Details are sanitized and encrypted
before storage.

CRITICAL:
- log_event NEVER raises. A failed write is retried as a minimal
  fallback entry, then sent to the "audit.fallback" logger.
- Entries are serialized through a per-logger asyncio.Lock so each entry
  chains to the immediately preceding one.
- verify_audit_integrity recomputes the chain from stored fields and
  reports every entry whose stored hash disagrees.
"""

import asyncio
import hashlib
import json
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from slack_connector.credentials.redaction import (
    mask_ip_address,
    sanitize_details,
    sanitize_error_message,
    truncate_user_agent,
)
from slack_connector.models.audit_log import (
    GENESIS_HASH,
    ActorType,
    AuditCategory,
    AuditEventType,
    AuditSeverity,
    SecurityAuditLog,
)
from slack_connector.models.base import utcnow
from slack_connector.platform.audit_details import (
    AuditDetails,
    ComplianceDetails,
    CredentialDetails,
    SecurityDetails,
)
from slack_connector.utils.encryption import DecryptionError, TokenEncryptionService

logger = logging.getLogger(__name__)

# Separate logger for fallback when the database write fails
fallback_logger = logging.getLogger("audit.fallback")

DELETE_BATCH_SIZE = 500
TOP_TEAMS_LIMIT = 10

_SEVERITY_CATEGORY: Dict[Tuple[AuditEventType, bool], Tuple[AuditSeverity, AuditCategory]] = {
    (AuditEventType.TOKEN_CREATED, True): (AuditSeverity.LOW, AuditCategory.AUTHENTICATION),
    (AuditEventType.TOKEN_CREATED, False): (AuditSeverity.HIGH, AuditCategory.AUTHENTICATION),
    (AuditEventType.TOKEN_ACCESSED, True): (AuditSeverity.LOW, AuditCategory.DATA_ACCESS),
    (AuditEventType.TOKEN_ACCESSED, False): (AuditSeverity.MEDIUM, AuditCategory.DATA_ACCESS),
    (AuditEventType.TOKEN_ROTATED, True): (AuditSeverity.MEDIUM, AuditCategory.AUTHENTICATION),
    (AuditEventType.TOKEN_ROTATED, False): (AuditSeverity.HIGH, AuditCategory.AUTHENTICATION),
    (AuditEventType.TOKEN_REVOKED, True): (AuditSeverity.MEDIUM, AuditCategory.AUTHENTICATION),
    (AuditEventType.TOKEN_REVOKED, False): (AuditSeverity.HIGH, AuditCategory.AUTHENTICATION),
    (AuditEventType.TOKEN_HEALTH_CHECK, True): (AuditSeverity.LOW, AuditCategory.AUTHENTICATION),
    (AuditEventType.TOKEN_HEALTH_CHECK, False): (AuditSeverity.MEDIUM, AuditCategory.AUTHENTICATION),
    (AuditEventType.GDPR_DELETE_REQUESTED, True): (AuditSeverity.HIGH, AuditCategory.COMPLIANCE),
    (AuditEventType.GDPR_DELETE_REQUESTED, False): (AuditSeverity.HIGH, AuditCategory.COMPLIANCE),
    (AuditEventType.GDPR_DELETE_COMPLETED, True): (AuditSeverity.HIGH, AuditCategory.COMPLIANCE),
    (AuditEventType.GDPR_DELETE_COMPLETED, False): (AuditSeverity.CRITICAL, AuditCategory.COMPLIANCE),
    (AuditEventType.GDPR_DELETE_FAILED, True): (AuditSeverity.CRITICAL, AuditCategory.COMPLIANCE),
    (AuditEventType.GDPR_DELETE_FAILED, False): (AuditSeverity.CRITICAL, AuditCategory.COMPLIANCE),
    (AuditEventType.ENCRYPTION_KEY_ROTATED, True): (AuditSeverity.HIGH, AuditCategory.CONFIGURATION),
    (AuditEventType.ENCRYPTION_KEY_ROTATED, False): (AuditSeverity.CRITICAL, AuditCategory.CONFIGURATION),
    (AuditEventType.AUTH_FAILURE, True): (AuditSeverity.MEDIUM, AuditCategory.AUTHENTICATION),
    (AuditEventType.AUTH_FAILURE, False): (AuditSeverity.MEDIUM, AuditCategory.AUTHENTICATION),
    (AuditEventType.RATE_LIMIT_EXCEEDED, True): (AuditSeverity.MEDIUM, AuditCategory.SECURITY),
    (AuditEventType.RATE_LIMIT_EXCEEDED, False): (AuditSeverity.MEDIUM, AuditCategory.SECURITY),
    (AuditEventType.SUSPICIOUS_ACTIVITY, True): (AuditSeverity.HIGH, AuditCategory.SECURITY),
    (AuditEventType.SUSPICIOUS_ACTIVITY, False): (AuditSeverity.HIGH, AuditCategory.SECURITY),
    (AuditEventType.DATA_RETENTION_CLEANUP, True): (AuditSeverity.LOW, AuditCategory.COMPLIANCE),
    (AuditEventType.DATA_RETENTION_CLEANUP, False): (AuditSeverity.MEDIUM, AuditCategory.COMPLIANCE),
    (AuditEventType.AUDIT_LOG_TAMPER_DETECTED, True): (AuditSeverity.CRITICAL, AuditCategory.SECURITY),
    (AuditEventType.AUDIT_LOG_TAMPER_DETECTED, False): (AuditSeverity.CRITICAL, AuditCategory.SECURITY),
    (AuditEventType.CONFIG_CHANGED, True): (AuditSeverity.MEDIUM, AuditCategory.CONFIGURATION),
    (AuditEventType.CONFIG_CHANGED, False): (AuditSeverity.HIGH, AuditCategory.CONFIGURATION),
    (AuditEventType.SECURITY_ALERT, True): (AuditSeverity.HIGH, AuditCategory.SECURITY),
    (AuditEventType.SECURITY_ALERT, False): (AuditSeverity.CRITICAL, AuditCategory.SECURITY),
    (AuditEventType.SYSTEM_STARTUP, True): (AuditSeverity.LOW, AuditCategory.CONFIGURATION),
    (AuditEventType.SYSTEM_STARTUP, False): (AuditSeverity.HIGH, AuditCategory.CONFIGURATION),
    (AuditEventType.HEALTH_CHECK, True): (AuditSeverity.LOW, AuditCategory.CONFIGURATION),
    (AuditEventType.HEALTH_CHECK, False): (AuditSeverity.HIGH, AuditCategory.CONFIGURATION),
    (AuditEventType.SCHEDULED_MAINTENANCE, True): (AuditSeverity.LOW, AuditCategory.COMPLIANCE),
    (AuditEventType.SCHEDULED_MAINTENANCE, False): (AuditSeverity.HIGH, AuditCategory.COMPLIANCE),
}


def classify_event(
    event_type: AuditEventType,
    success: bool,
) -> Tuple[AuditSeverity, AuditCategory]:
    """Look up the default severity and category for an event outcome."""
    return _SEVERITY_CATEGORY[(AuditEventType(event_type), bool(success))]


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.value if hasattr(value, "value") else str(value)


def compute_entry_hash(entry: SecurityAuditLog, previous_hash: str) -> str:
    """
    SHA-256 over an entry's identity fields chained to the previous hash.

    previous_hash is passed explicitly so verification can chain to the
    recomputed hash rather than the stored one.
    """
    payload = {
        "sequence": entry.sequence,
        "id": entry.id,
        "event_type": _enum_value(entry.event_type),
        "team_id": entry.team_id,
        "token_id": entry.token_id,
        "actor_type": _enum_value(entry.actor_type),
        "actor_id": entry.actor_id,
        "success": bool(entry.success),
        "severity": _enum_value(entry.severity),
        "category": _enum_value(entry.category),
        "details": entry.details_encrypted,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "error_message": entry.error_message,
        "created_at": entry.created_at.isoformat(),
        "previous_hash": previous_hash,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class AuditEvent:
    """An event to be written by SecurityAuditLogger.log_event."""
    event_type: AuditEventType
    actor_type: ActorType = ActorType.SYSTEM
    success: bool = True
    team_id: Optional[str] = None
    token_id: Optional[str] = None
    actor_id: Optional[str] = None
    details: Optional[Union[AuditDetails, Dict[str, Any]]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    error_message: Optional[str] = None
    severity: Optional[AuditSeverity] = None
    category: Optional[AuditCategory] = None


@dataclass
class AuditWriteResult:
    """Outcome of an audit write. Always returned, never raised."""
    entry_id: Optional[str] = None
    persisted: bool = False
    used_fallback: bool = False
    error: Optional[str] = None


@dataclass
class IntegrityReport:
    is_valid: bool
    tampered_logs: List[str] = field(default_factory=list)
    total_checked: int = 0
    chain_gaps: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditCleanupResult:
    deleted_count: int = 0
    retained_critical_count: int = 0
    retained_on_hold_count: int = 0
    dry_run: bool = False
    cutoff: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


@dataclass
class AuditStatistics:
    total_events: int = 0
    events_by_type: Dict[str, int] = field(default_factory=dict)
    events_by_actor: Dict[str, int] = field(default_factory=dict)
    success_rate: float = 100.0
    security_alerts_24h: int = 0
    failed_events_24h: int = 0
    top_teams: List[Dict[str, Any]] = field(default_factory=list)
    suspicious_activity_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SecurityAuditLogger:
    """
    Append-only, hash-chained security audit log.

    All services of one process must share a single instance so that the
    write lock covers every writer of the chain.
    """

    def __init__(self, db_session: Session, encryption: TokenEncryptionService):
        self.db = db_session
        self.encryption = encryption
        self._write_lock = asyncio.Lock()

    # =========================================================================
    # Writing
    # =========================================================================

    async def log_event(self, event: AuditEvent) -> AuditWriteResult:
        """
        Write an audit entry. Never raises.

        Returns:
            AuditWriteResult with the new entry id when persisted
        """
        async with self._write_lock:
            try:
                entry = self._append(event)
                return AuditWriteResult(entry_id=entry.id, persisted=True)
            except Exception as e:
                self._rollback_quietly()
                error = f"{type(e).__name__}: {sanitize_error_message(str(e))}"
                logger.error(
                    "Audit log write failed, attempting fallback entry",
                    extra={"event_type": _enum_value(event.event_type), "error": error},
                )

            try:
                fallback = self._append(
                    AuditEvent(
                        event_type=AuditEventType.SECURITY_ALERT,
                        actor_type=ActorType.SYSTEM,
                        success=False,
                        team_id=event.team_id,
                        details=SecurityDetails(
                            operation="audit_write_failed",
                            reason=_enum_value(event.event_type),
                        ),
                        error_message=error,
                    )
                )
                return AuditWriteResult(
                    entry_id=fallback.id,
                    persisted=False,
                    used_fallback=True,
                    error=error,
                )
            except Exception as fallback_error:
                self._rollback_quietly()
                self._write_fallback_log(event, error, fallback_error)
                return AuditWriteResult(persisted=False, used_fallback=True, error=error)

    def _append(self, event: AuditEvent) -> SecurityAuditLog:
        event_type = AuditEventType(event.event_type)
        default_severity, default_category = classify_event(event_type, event.success)

        details = event.details
        if isinstance(details, AuditDetails):
            details = details.model_dump(mode="json", exclude_none=True)
        details_encrypted = None
        details_key_id = None
        if details:
            envelope = self.encryption.encrypt_json(sanitize_details(details))
            details_encrypted = envelope.encrypted_token
            details_key_id = envelope.key_id

        last = (
            self.db.query(SecurityAuditLog.sequence, SecurityAuditLog.integrity_hash)
            .order_by(SecurityAuditLog.sequence.desc())
            .first()
        )
        sequence = (last.sequence + 1) if last else 1
        previous_hash = last.integrity_hash if last else GENESIS_HASH

        entry = SecurityAuditLog(
            id=str(uuid.uuid4()),
            sequence=sequence,
            event_type=event_type,
            team_id=event.team_id,
            token_id=event.token_id,
            actor_type=ActorType(event.actor_type),
            actor_id=event.actor_id,
            success=bool(event.success),
            severity=AuditSeverity(event.severity) if event.severity else default_severity,
            category=AuditCategory(event.category) if event.category else default_category,
            details_encrypted=details_encrypted,
            details_key_id=details_key_id,
            ip_address=mask_ip_address(event.ip_address),
            user_agent=truncate_user_agent(event.user_agent),
            error_message=sanitize_error_message(event.error_message),
            previous_hash=previous_hash,
            created_at=utcnow(),
        )
        entry.integrity_hash = compute_entry_hash(entry, previous_hash)

        self.db.add(entry)
        self.db.commit()
        return entry

    def _rollback_quietly(self) -> None:
        try:
            self.db.rollback()
        except Exception:
            logger.exception("Rollback after audit write failure failed")

    def _write_fallback_log(
        self,
        event: AuditEvent,
        error: str,
        fallback_error: Exception,
    ) -> None:
        """
        Last resort: write the event to the non-persistent fallback logger.

        Only identifiers and outcome are logged; details are not.
        """
        fallback_logger.error(
            "Audit log fallback",
            extra={
                "audit_entry": json.dumps({
                    "event_type": _enum_value(event.event_type),
                    "team_id": event.team_id,
                    "token_id": event.token_id,
                    "actor_type": _enum_value(event.actor_type),
                    "success": event.success,
                    "timestamp": utcnow().isoformat(),
                    "write_error": error,
                    "fallback_error": type(fallback_error).__name__,
                })
            },
        )

    # =========================================================================
    # Convenience writers
    # =========================================================================

    async def log_token_creation(
        self,
        team_id: str,
        token_id: str,
        grant_type: str,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> AuditWriteResult:
        return await self.log_event(AuditEvent(
            event_type=AuditEventType.TOKEN_CREATED,
            team_id=team_id,
            token_id=token_id,
            actor_type=actor_type,
            actor_id=actor_id,
            details=CredentialDetails(operation="oauth_token_creation", grant_type=grant_type),
        ))

    async def log_token_access(
        self,
        team_id: str,
        token_id: Optional[str],
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> AuditWriteResult:
        return await self.log_event(AuditEvent(
            event_type=AuditEventType.TOKEN_ACCESSED,
            team_id=team_id,
            token_id=token_id,
            success=success,
            error_message=error_message,
            details=CredentialDetails(operation="token_decryption_for_api_call"),
        ))

    async def log_token_revocation(
        self,
        team_id: str,
        token_id: str,
        reason: str,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        already_revoked: bool = False,
    ) -> AuditWriteResult:
        return await self.log_event(AuditEvent(
            event_type=AuditEventType.TOKEN_REVOKED,
            team_id=team_id,
            token_id=token_id,
            actor_type=actor_type,
            actor_id=actor_id,
            details=CredentialDetails(
                operation="token_revocation",
                reason=reason,
                already_revoked=already_revoked,
            ),
        ))

    async def log_auth_failure(
        self,
        reason: str,
        team_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditWriteResult:
        return await self.log_event(AuditEvent(
            event_type=AuditEventType.AUTH_FAILURE,
            actor_type=ActorType.USER,
            success=False,
            team_id=team_id,
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=reason,
            details=SecurityDetails(operation="authentication_attempt"),
        ))

    # =========================================================================
    # Integrity
    # =========================================================================

    async def verify_audit_integrity(
        self,
        team_id: Optional[str] = None,
        days: int = 7,
    ) -> IntegrityReport:
        """
        Recompute the hash chain over the last `days` days.

        The window starts at the lowest sequence created within `days` and
        includes that entry's predecessor; from there every later entry
        is walked whatever its created_at, so backdating an entry cannot
        move it out of the check. An entry older than its predecessor is
        reported as tampered. The global chain is always walked in
        sequence order; with a team filter only that team's entries are
        counted and reported. The walk is seeded from its first entry's
        stored previous_hash, and again after any sequence gap left by
        deleted entries.
        """
        since = utcnow() - timedelta(days=days)
        report = IntegrityReport(is_valid=True)

        first_in_window = (
            self.db.query(func.min(SecurityAuditLog.sequence))
            .filter(SecurityAuditLog.created_at >= since)
            .scalar()
        )
        if first_in_window is None:
            # Nothing recent: still check the newest entry and its predecessor
            first_in_window = self.db.query(func.max(SecurityAuditLog.sequence)).scalar()
            if first_in_window is None:
                return report
        anchor = (
            self.db.query(func.max(SecurityAuditLog.sequence))
            .filter(SecurityAuditLog.sequence < first_in_window)
            .scalar()
        )
        start = anchor if anchor is not None else first_in_window

        entries = (
            self.db.query(SecurityAuditLog)
            .filter(SecurityAuditLog.sequence >= start)
            .order_by(SecurityAuditLog.sequence.asc())
            .all()
        )

        previous_hash: Optional[str] = None
        previous_sequence: Optional[int] = None
        previous_created_at: Optional[datetime] = None

        for entry in entries:
            if previous_sequence is None or entry.sequence != previous_sequence + 1:
                if previous_sequence is not None:
                    report.chain_gaps += 1
                previous_hash = entry.previous_hash

            computed = compute_entry_hash(entry, previous_hash)
            out_of_order = previous_created_at is not None and entry.created_at < previous_created_at
            in_scope = team_id is None or entry.team_id == team_id
            if in_scope:
                report.total_checked += 1
                if computed != entry.integrity_hash or out_of_order:
                    report.tampered_logs.append(entry.id)

            previous_hash = computed
            previous_sequence = entry.sequence
            previous_created_at = entry.created_at

        report.is_valid = not report.tampered_logs

        if not report.is_valid:
            logger.critical(
                "Audit log tampering detected",
                extra={"team_id": team_id, "tampered_count": len(report.tampered_logs)},
            )
            await self.log_event(AuditEvent(
                event_type=AuditEventType.AUDIT_LOG_TAMPER_DETECTED,
                team_id=team_id,
                success=False,
                details=SecurityDetails(
                    operation="integrity_verification",
                    tampered_entries=report.tampered_logs[:50],
                    total_checked=report.total_checked,
                ),
            ))

        return report

    # =========================================================================
    # Retention
    # =========================================================================

    async def cleanup_old_logs(
        self,
        retention_days: int = 365,
        dry_run: bool = False,
        critical_retention_days: Optional[int] = None,
        is_held: Optional[Callable[[SecurityAuditLog], bool]] = None,
    ) -> AuditCleanupResult:
        """
        Delete entries strictly older than the retention cutoff.

        Critical entries are kept until critical_retention_days (twice
        retention_days by default). Entries for which is_held returns True
        (legal holds, minus their exemptions) are never deleted. Row failures are collected, not raised.
        """
        now = utcnow()
        cutoff = now - timedelta(days=retention_days)
        critical_cutoff = now - timedelta(
            days=critical_retention_days or retention_days * 2
        )
        result = AuditCleanupResult(dry_run=dry_run, cutoff=cutoff)

        candidates = (
            self.db.query(SecurityAuditLog)
            .filter(SecurityAuditLog.created_at < cutoff)
            .order_by(SecurityAuditLog.sequence.asc())
            .all()
        )

        pending = 0
        for entry in candidates:
            if is_held is not None and is_held(entry):
                result.retained_on_hold_count += 1
                continue
            if entry.severity == AuditSeverity.CRITICAL and entry.created_at >= critical_cutoff:
                result.retained_critical_count += 1
                continue
            if dry_run:
                result.deleted_count += 1
                continue
            try:
                self.db.delete(entry)
                pending += 1
                if pending >= DELETE_BATCH_SIZE:
                    self.db.commit()
                    result.deleted_count += pending
                    pending = 0
            except Exception as e:
                self._rollback_quietly()
                pending = 0
                result.errors.append(f"Failed to delete audit entry {entry.id}: {type(e).__name__}")

        if pending:
            try:
                self.db.commit()
                result.deleted_count += pending
            except Exception as e:
                self._rollback_quietly()
                result.errors.append(f"Failed to delete audit batch: {type(e).__name__}")

        logger.info(
            "Audit log cleanup finished",
            extra={
                "dry_run": dry_run,
                "deleted_count": result.deleted_count,
                "retained_critical_count": result.retained_critical_count,
                "error_count": len(result.errors),
            },
        )

        await self.log_event(AuditEvent(
            event_type=AuditEventType.DATA_RETENTION_CLEANUP,
            actor_type=ActorType.SCHEDULED_JOB,
            success=result.success,
            details=ComplianceDetails(
                data_type="audit_logs",
                dry_run=dry_run,
                records_deleted=result.deleted_count,
                records_retained=result.retained_critical_count + result.retained_on_hold_count,
                errors=result.errors[:20],
            ),
        ))
        return result

    async def delete_team_entries(self, team_id: str) -> int:
        """
        Erase every entry of one team (GDPR). Returns the number deleted.

        Runs under the write lock so no entry chains to a row being
        deleted. Verification re-seeds across the resulting gaps.

        Raises:
            SQLAlchemyError: If the delete cannot be committed
        """
        async with self._write_lock:
            try:
                deleted = (
                    self.db.query(SecurityAuditLog)
                    .filter(SecurityAuditLog.team_id == team_id)
                    .delete(synchronize_session=False)
                )
                self.db.commit()
            except Exception:
                self._rollback_quietly()
                raise
        logger.info("Team audit entries erased", extra={"team_id": team_id, "deleted_count": deleted})
        return deleted

    # =========================================================================
    # Queries
    # =========================================================================

    def get_team_audit_logs(
        self,
        team_id: str,
        limit: int = 100,
        offset: int = 0,
        event_types: Optional[Iterable[AuditEventType]] = None,
    ) -> List[Dict[str, Any]]:
        """Newest-first audit entries for a team with decrypted details."""
        query = self.db.query(SecurityAuditLog).filter(SecurityAuditLog.team_id == team_id)
        if event_types:
            query = query.filter(
                SecurityAuditLog.event_type.in_([AuditEventType(t) for t in event_types])
            )
        entries = (
            query.order_by(SecurityAuditLog.sequence.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [self._entry_to_dict(entry) for entry in entries]

    def _entry_to_dict(self, entry: SecurityAuditLog) -> Dict[str, Any]:
        details = None
        if entry.details_encrypted:
            try:
                details = self.encryption.decrypt_json(
                    entry.details_encrypted, entry.details_key_id
                )
            except DecryptionError:
                logger.warning("Audit details could not be decrypted", extra={"entry_id": entry.id})
        return {
            "id": entry.id,
            "sequence": entry.sequence,
            "event_type": _enum_value(entry.event_type),
            "team_id": entry.team_id,
            "token_id": entry.token_id,
            "actor_type": _enum_value(entry.actor_type),
            "actor_id": entry.actor_id,
            "success": entry.success,
            "severity": _enum_value(entry.severity),
            "category": _enum_value(entry.category),
            "details": details,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "error_message": entry.error_message,
            "created_at": entry.created_at.isoformat(),
        }

    def get_audit_statistics(
        self,
        team_id: Optional[str] = None,
        days: int = 30,
    ) -> AuditStatistics:
        """Aggregate counts over the last `days` days."""
        now = utcnow()
        since = now - timedelta(days=days)
        day_ago = now - timedelta(hours=24)

        query = self.db.query(
            SecurityAuditLog.event_type,
            SecurityAuditLog.actor_type,
            SecurityAuditLog.team_id,
            SecurityAuditLog.success,
            SecurityAuditLog.severity,
            SecurityAuditLog.created_at,
        ).filter(SecurityAuditLog.created_at >= since)
        if team_id:
            query = query.filter(SecurityAuditLog.team_id == team_id)
        rows = query.all()

        stats = AuditStatistics(total_events=len(rows))
        if not rows:
            return stats

        by_type: Counter = Counter()
        by_actor: Counter = Counter()
        by_team: Counter = Counter()
        successes = 0
        for row in rows:
            by_type[_enum_value(row.event_type)] += 1
            by_actor[_enum_value(row.actor_type)] += 1
            if row.team_id:
                by_team[row.team_id] += 1
            if row.success:
                successes += 1
            if row.created_at >= day_ago:
                if row.severity in (AuditSeverity.HIGH, AuditSeverity.CRITICAL):
                    stats.security_alerts_24h += 1
                if not row.success:
                    stats.failed_events_24h += 1

        stats.events_by_type = dict(by_type)
        stats.events_by_actor = dict(by_actor)
        stats.success_rate = round(successes / len(rows) * 100, 2)
        stats.top_teams = [
            {"team_id": tid, "event_count": count}
            for tid, count in by_team.most_common(TOP_TEAMS_LIMIT)
        ]
        stats.suspicious_activity_count = by_type.get(
            AuditEventType.SUSPICIOUS_ACTIVITY.value, 0
        )
        return stats

    def count_entries(self, team_id: Optional[str] = None) -> int:
        query = self.db.query(func.count(SecurityAuditLog.id))
        if team_id:
            query = query.filter(SecurityAuditLog.team_id == team_id)
        return query.scalar() or 0
