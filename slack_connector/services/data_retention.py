"""
Data retention service.

Applies per-data-class retention policies to tokens, audit logs, sync
logs and backfills, honoring legal holds. Policies and holds are owned
by RetentionConfigStore, which persists them and serves reads from an
in-memory cache, so active holds survive a restart.

Usage:
    store = RetentionConfigStore(db_session)
    service = DataRetentionService(db_session, audit_logger, store)

    hold = await service.add_legal_hold(
        team_id="T123", data_types=["tokens"],
        reason="litigation", requested_by="legal@example.com",
    )
    reports = await service.execute_retention_policies(dry_run=True)
"""

import calendar
import logging
import time
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from slack_connector.config.retention import (
    BACKFILL_ROW_BYTES,
    DEFAULT_RETENTION_POLICIES,
    LEGAL_HOLD_REVIEW_DAYS,
    SYNC_LOG_ROW_BYTES,
    TOKEN_ROW_OVERHEAD_BYTES,
)
from slack_connector.models.audit_log import (
    ActorType,
    AuditCategory,
    AuditEventType,
    AuditSeverity,
)
from slack_connector.models.base import utcnow
from slack_connector.models.retention_state import LegalHoldRecord, RetentionPolicyRecord
from slack_connector.models.slack_token import SlackToken
from slack_connector.models.sync_log import BackfillStatus, SlackBackfill, SlackSyncLog
from slack_connector.platform.audit import AuditEvent, SecurityAuditLogger
from slack_connector.platform.audit_details import (
    ComplianceDetails,
    ConfigurationDetails,
    count_key,
)

logger = logging.getLogger(__name__)

DATA_TYPES = ("tokens", "audit_logs", "sync_logs", "backfills", "temp_data")
SCHEDULES = ("daily", "weekly", "monthly")

# Fields an admin may change through update_retention_policy
MUTABLE_POLICY_FIELDS = {
    "name",
    "description",
    "retention_days",
    "critical_retention_days",
    "team_overrides",
    "preserve_count",
    "schedule",
    "enabled",
    "legal_hold_exempt",
}


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_next_run(schedule: str, now: datetime) -> datetime:
    if schedule == "daily":
        return now + timedelta(days=1)
    if schedule == "weekly":
        return now + timedelta(days=7)
    return _add_months(now, 1)


# =============================================================================
# Cached configuration
# =============================================================================

@dataclass
class RetentionPolicy:
    id: str
    name: str
    data_type: str
    retention_days: int
    description: Optional[str] = None
    critical_retention_days: Optional[int] = None
    team_overrides: Dict[str, int] = field(default_factory=dict)
    preserve_count: Optional[int] = None
    schedule: str = "weekly"
    enabled: bool = True
    legal_hold_exempt: bool = False
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: RetentionPolicyRecord) -> "RetentionPolicy":
        return cls(**{f.name: getattr(record, f.name) for f in fields(cls)})

    def validate(self) -> None:
        """
        Raises:
            ValueError: If the policy is inconsistent
        """
        if self.data_type not in DATA_TYPES:
            raise ValueError(f"Unknown data type: {self.data_type}")
        if self.schedule not in SCHEDULES:
            raise ValueError(f"Unknown schedule: {self.schedule}")
        if self.retention_days < 1:
            raise ValueError("Retention period must be at least 1 day")
        if (
            self.critical_retention_days is not None
            and self.critical_retention_days < self.retention_days
        ):
            raise ValueError("Critical retention period must be longer than standard retention")
        if self.preserve_count is not None and self.preserve_count < 0:
            raise ValueError("preserve_count cannot be negative")
        for team_id, days in (self.team_overrides or {}).items():
            if int(days) < 1:
                raise ValueError(f"Team override for {team_id} must be at least 1 day")

    def retention_days_for(self, team_id: Optional[str]) -> int:
        if team_id and team_id in (self.team_overrides or {}):
            return int(self.team_overrides[team_id])
        return self.retention_days


@dataclass
class LegalHold:
    id: str
    team_id: str
    data_types: List[str]
    reason: str
    requested_by: str
    start_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool = True
    exemptions: List[str] = field(default_factory=list)
    lifted_at: Optional[datetime] = None
    lifted_by: Optional[str] = None

    @classmethod
    def from_record(cls, record: LegalHoldRecord) -> "LegalHold":
        return cls(**{f.name: getattr(record, f.name) for f in fields(cls)})

    def is_effective(self, now: Optional[datetime] = None) -> bool:
        """Active and not past its end date."""
        now = now or utcnow()
        if not self.is_active:
            return False
        return self.end_date is None or self.end_date > now

    def covers(
        self,
        data_type: str,
        team_id: Optional[str],
        item_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        if not self.is_effective(now):
            return False
        if data_type not in self.data_types:
            return False
        if self.team_id != team_id:
            return False
        return not (item_id and item_id in self.exemptions)


class RetentionConfigStore:
    """
    Durable owner of retention policies and legal holds.

    The tables are loaded once into memory at construction; every
    mutation is committed to the database before the cache changes.
    An empty policy table is seeded with the default policies.
    """

    def __init__(
        self,
        db_session: Session,
        default_policies: Optional[Iterable[Dict[str, Any]]] = None,
    ):
        self.db = db_session
        self._policies: Dict[str, RetentionPolicy] = {}
        self._holds: Dict[str, LegalHold] = {}
        self._seed(DEFAULT_RETENTION_POLICIES if default_policies is None else default_policies)
        self.reload()

    def _seed(self, defaults: Iterable[Dict[str, Any]]) -> None:
        if self.db.query(RetentionPolicyRecord).first() is not None:
            return
        for spec in defaults:
            self.db.add(RetentionPolicyRecord(team_overrides={}, enabled=True, **spec))
        self.db.commit()
        logger.info("Seeded default retention policies")

    def reload(self) -> None:
        """Refresh the cache from the database."""
        self._policies = {
            record.id: RetentionPolicy.from_record(record)
            for record in self.db.query(RetentionPolicyRecord).all()
        }
        self._holds = {
            record.id: LegalHold.from_record(record)
            for record in self.db.query(LegalHoldRecord).all()
        }

    # Policies

    def get_policy(self, policy_id: str) -> Optional[RetentionPolicy]:
        return self._policies.get(policy_id)

    def get_retention_policies(self) -> List[RetentionPolicy]:
        return sorted(self._policies.values(), key=lambda p: p.id)

    def save_policy(self, policy: RetentionPolicy) -> RetentionPolicy:
        record = self.db.get(RetentionPolicyRecord, policy.id)
        if record is None:
            record = RetentionPolicyRecord(id=policy.id)
            self.db.add(record)
        for f in fields(policy):
            if f.name != "id":
                setattr(record, f.name, getattr(policy, f.name))
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self._policies[policy.id] = policy
        return policy

    # Legal holds

    def get_legal_hold(self, hold_id: str) -> Optional[LegalHold]:
        return self._holds.get(hold_id)

    def get_legal_holds(self, active_only: bool = True) -> List[LegalHold]:
        now = utcnow()
        holds = [h for h in self._holds.values() if not active_only or h.is_effective(now)]
        return sorted(holds, key=lambda h: h.start_date)

    def save_legal_hold(self, hold: LegalHold) -> LegalHold:
        record = self.db.get(LegalHoldRecord, hold.id)
        if record is None:
            record = LegalHoldRecord(id=hold.id)
            self.db.add(record)
        for f in fields(hold):
            if f.name != "id":
                setattr(record, f.name, getattr(hold, f.name))
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self._holds[hold.id] = hold
        return hold


# =============================================================================
# Results
# =============================================================================

@dataclass
class RetentionReport:
    policy_id: str
    data_type: str
    dry_run: bool
    records_processed: int = 0
    records_deleted: int = 0
    records_retained: int = 0
    legal_holds_applied: int = 0
    oldest_retained: Optional[datetime] = None
    bytes_freed: int = 0
    started_at: datetime = field(default_factory=utcnow)
    duration_ms: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def note_retained(self, timestamp: Optional[datetime]) -> None:
        self.records_retained += 1
        if timestamp and (self.oldest_retained is None or timestamp < self.oldest_retained):
            self.oldest_retained = timestamp


@dataclass
class RetentionSummary:
    total_policies: int
    active_policies: int
    active_legal_holds: int
    upcoming_runs: List[Dict[str, Any]]
    compliance_status: str
    issues: List[str] = field(default_factory=list)
    last_run: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_policies": self.total_policies,
            "active_policies": self.active_policies,
            "active_legal_holds": self.active_legal_holds,
            "upcoming_runs": self.upcoming_runs,
            "compliance_status": self.compliance_status,
            "issues": self.issues,
            "last_run": self.last_run.isoformat() if self.last_run else None,
        }


# =============================================================================
# Service
# =============================================================================

class DataRetentionService:
    """Executes retention policies against the database."""

    def __init__(
        self,
        db_session: Session,
        audit_logger: SecurityAuditLogger,
        config_store: RetentionConfigStore,
    ):
        self.db = db_session
        self.audit = audit_logger
        self.config = config_store

    # =========================================================================
    # Configuration
    # =========================================================================

    def get_retention_policies(self) -> List[RetentionPolicy]:
        return self.config.get_retention_policies()

    def get_legal_holds(self, active_only: bool = True) -> List[LegalHold]:
        return self.config.get_legal_holds(active_only)

    async def update_retention_policy(
        self,
        policy_id: str,
        requested_by: str,
        **changes: Any,
    ) -> RetentionPolicy:
        """
        Change fields of an existing policy.

        Raises:
            KeyError: If the policy does not exist
            ValueError: If a field is not changeable or the result is invalid
        """
        current = self.config.get_policy(policy_id)
        if current is None:
            raise KeyError(policy_id)
        unknown = set(changes) - MUTABLE_POLICY_FIELDS
        if unknown:
            raise ValueError(f"Cannot change policy fields: {', '.join(sorted(unknown))}")

        updated = RetentionPolicy(**{**current.__dict__, **changes})
        updated.validate()
        self.config.save_policy(updated)

        await self.audit.log_event(AuditEvent(
            event_type=AuditEventType.CONFIG_CHANGED,
            actor_type=ActorType.ADMIN,
            actor_id=requested_by,
            details=ConfigurationDetails(
                action="retention_policy_updated",
                policy_id=policy_id,
                requested_by=requested_by,
                changes={k: str(v) for k, v in changes.items()},
            ),
        ))
        return updated

    async def add_legal_hold(
        self,
        team_id: str,
        data_types: List[str],
        reason: str,
        requested_by: str,
        end_date: Optional[datetime] = None,
        exemptions: Optional[List[str]] = None,
    ) -> LegalHold:
        """
        Place a legal hold on a team's data.

        Raises:
            ValueError: If no valid data type is given or reason is empty
        """
        if not reason or not reason.strip():
            raise ValueError("Legal hold reason is required")
        invalid = [d for d in data_types if d not in DATA_TYPES]
        if not data_types or invalid:
            raise ValueError(f"Invalid legal hold data types: {invalid or data_types}")

        hold = self.config.save_legal_hold(LegalHold(
            id=str(uuid.uuid4()),
            team_id=team_id,
            data_types=list(data_types),
            reason=reason,
            requested_by=requested_by,
            start_date=utcnow(),
            end_date=end_date,
            exemptions=list(exemptions or []),
        ))

        logger.info("Legal hold added", extra={"hold_id": hold.id, "team_id": team_id})
        await self.audit.log_event(AuditEvent(
            event_type=AuditEventType.CONFIG_CHANGED,
            team_id=team_id,
            actor_type=ActorType.ADMIN,
            actor_id=requested_by,
            severity=AuditSeverity.HIGH,
            category=AuditCategory.COMPLIANCE,
            details=ConfigurationDetails(
                action="legal_hold_created",
                hold_id=hold.id,
                data_types=hold.data_types,
                reason=reason,
                requested_by=requested_by,
            ),
        ))
        return hold

    async def remove_legal_hold(
        self,
        hold_id: str,
        reason: str,
        requested_by: str,
    ) -> Optional[LegalHold]:
        """Lift a hold. Returns None if no such hold exists."""
        hold = self.config.get_legal_hold(hold_id)
        if hold is None:
            return None

        now = utcnow()
        lifted = LegalHold(**{
            **hold.__dict__,
            "is_active": False,
            "end_date": now,
            "lifted_at": now,
            "lifted_by": requested_by,
        })
        self.config.save_legal_hold(lifted)

        logger.info("Legal hold removed", extra={"hold_id": hold_id, "team_id": hold.team_id})
        await self.audit.log_event(AuditEvent(
            event_type=AuditEventType.CONFIG_CHANGED,
            team_id=hold.team_id,
            actor_type=ActorType.ADMIN,
            actor_id=requested_by,
            severity=AuditSeverity.HIGH,
            category=AuditCategory.COMPLIANCE,
            details=ConfigurationDetails(
                action="legal_hold_removed",
                hold_id=hold_id,
                data_types=hold.data_types,
                reason=reason,
                requested_by=requested_by,
            ),
        ))
        return lifted

    def is_on_legal_hold(
        self,
        data_type: str,
        team_id: Optional[str],
        item_id: Optional[str] = None,
    ) -> bool:
        now = utcnow()
        return any(
            hold.covers(data_type, team_id, item_id, now)
            for hold in self.config.get_legal_holds(active_only=True)
        )

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_retention_policies(self, dry_run: bool = False) -> List[RetentionReport]:
        """
        Run every enabled policy. One report per policy.

        A failing policy is reported with its error and does not stop
        the others. Schedules advance only on real runs.
        """
        reports = []
        for policy in self.config.get_retention_policies():
            if not policy.enabled:
                continue

            report = await self._execute_policy(policy, dry_run)
            reports.append(report)

            if not dry_run:
                now = utcnow()
                policy.last_run = now
                policy.next_run = calculate_next_run(policy.schedule, now)
                try:
                    self.config.save_policy(policy)
                except Exception as e:
                    report.errors.append(f"Failed to record policy run: {type(e).__name__}")

        total_deleted = sum(r.records_deleted for r in reports)
        errors = [f"{r.policy_id}: {err}" for r in reports for err in r.errors]

        logger.info(
            "Retention policies executed",
            extra={
                "policy_count": len(reports),
                "deleted_count": total_deleted,
                "dry_run": dry_run,
                "error_count": len(errors),
            },
        )
        await self.audit.log_event(AuditEvent(
            event_type=AuditEventType.DATA_RETENTION_CLEANUP,
            actor_type=ActorType.SCHEDULED_JOB,
            success=not errors,
            details=ComplianceDetails(
                dry_run=dry_run,
                records_deleted=total_deleted,
                records_retained=sum(r.records_retained for r in reports),
                legal_holds_applied=sum(r.legal_holds_applied for r in reports),
                deleted_counts={count_key(r.policy_id): r.records_deleted for r in reports},
                errors=errors[:20],
            ),
        ))
        return reports

    async def preview_policy_execution(self, policy_id: str) -> Optional[RetentionReport]:
        """Dry run of one policy. None if the policy does not exist."""
        policy = self.config.get_policy(policy_id)
        if policy is None:
            return None
        return await self._execute_policy(policy, dry_run=True)

    async def _execute_policy(self, policy: RetentionPolicy, dry_run: bool) -> RetentionReport:
        report = RetentionReport(policy_id=policy.id, data_type=policy.data_type, dry_run=dry_run)
        started = time.monotonic()
        try:
            if policy.data_type == "tokens":
                self._cleanup_tokens(policy, dry_run, report)
            elif policy.data_type == "audit_logs":
                await self._cleanup_audit_logs(policy, dry_run, report)
            elif policy.data_type == "sync_logs":
                self._cleanup_sync_logs(policy, dry_run, report)
            elif policy.data_type == "backfills":
                self._cleanup_backfills(policy, dry_run, report)
            elif policy.data_type == "temp_data":
                report.warnings.append("No temporary data store is configured")
            else:
                report.errors.append(f"Unknown data type: {policy.data_type}")
        except Exception as e:
            logger.exception("Retention policy failed", extra={"policy_id": policy.id})
            self.db.rollback()
            report.errors.append(f"{type(e).__name__}: {e}")

        report.duration_ms = int((time.monotonic() - started) * 1000)
        return report

    def _holds_apply(self, policy: RetentionPolicy) -> bool:
        return not policy.legal_hold_exempt

    def _delete_row(self, row: Any, report: RetentionReport, size: int) -> bool:
        try:
            self.db.delete(row)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.warning("Failed to delete row", extra={"row_id": row.id, "data_type": report.data_type})
            report.errors.append(f"Failed to delete {row.id}: {type(e).__name__}")
            return False
        report.records_deleted += 1
        report.bytes_freed += size
        return True

    def _cleanup_tokens(self, policy: RetentionPolicy, dry_run: bool, report: RetentionReport) -> None:
        now = utcnow()
        # Team overrides can shorten retention, so scan from the smallest window
        shortest = min([policy.retention_days, *[int(d) for d in policy.team_overrides.values()]])
        scan_cutoff = now - timedelta(days=shortest)

        candidates = (
            self.db.query(SlackToken)
            .filter(SlackToken.is_revoked.is_(True), SlackToken.revoked_at < scan_cutoff)
            .order_by(SlackToken.revoked_at.asc())
            .all()
        )
        report.records_processed = len(candidates)

        for token in candidates:
            if self._holds_apply(policy) and self.is_on_legal_hold("tokens", token.team_id, token.id):
                report.legal_holds_applied += 1
                continue

            team_cutoff = now - timedelta(days=policy.retention_days_for(token.team_id))
            if token.revoked_at >= team_cutoff:
                report.note_retained(token.revoked_at)
                continue

            size = len(token.encrypted_token or "") + TOKEN_ROW_OVERHEAD_BYTES
            if dry_run:
                report.records_deleted += 1
                report.bytes_freed += size
            elif not self._delete_row(token, report, size):
                report.note_retained(token.revoked_at)

    def _audit_entry_held(self, entry) -> bool:
        return self.is_on_legal_hold("audit_logs", entry.team_id, entry.id)

    async def _cleanup_audit_logs(self, policy: RetentionPolicy, dry_run: bool, report: RetentionReport) -> None:
        result = await self.audit.cleanup_old_logs(
            retention_days=policy.retention_days,
            dry_run=dry_run,
            critical_retention_days=policy.critical_retention_days,
            is_held=self._audit_entry_held if self._holds_apply(policy) else None,
        )
        report.records_deleted = result.deleted_count
        report.records_retained = result.retained_critical_count
        report.legal_holds_applied = result.retained_on_hold_count
        report.records_processed = (
            result.deleted_count + result.retained_critical_count + result.retained_on_hold_count
        )
        report.errors.extend(result.errors)

    def _cleanup_sync_logs(self, policy: RetentionPolicy, dry_run: bool, report: RetentionReport) -> None:
        cutoff = utcnow() - timedelta(days=policy.retention_days)
        candidates = (
            self.db.query(SlackSyncLog)
            .filter(SlackSyncLog.created_at < cutoff)
            .order_by(SlackSyncLog.created_at.desc())
            .all()
        )
        report.records_processed = len(candidates)
        preserve = policy.preserve_count or 0

        for index, log in enumerate(candidates):
            if index < preserve:
                report.note_retained(log.created_at)
                continue
            if self._holds_apply(policy) and self.is_on_legal_hold("sync_logs", log.team_id, log.id):
                report.legal_holds_applied += 1
                continue
            if dry_run:
                report.records_deleted += 1
                report.bytes_freed += SYNC_LOG_ROW_BYTES
            elif not self._delete_row(log, report, SYNC_LOG_ROW_BYTES):
                report.note_retained(log.created_at)

    def _cleanup_backfills(self, policy: RetentionPolicy, dry_run: bool, report: RetentionReport) -> None:
        cutoff = utcnow() - timedelta(days=policy.retention_days)
        candidates = (
            self.db.query(SlackBackfill)
            .filter(
                SlackBackfill.created_at < cutoff,
                SlackBackfill.status == BackfillStatus.COMPLETED,
            )
            .order_by(SlackBackfill.created_at.desc())
            .all()
        )
        report.records_processed = len(candidates)
        preserve = policy.preserve_count or 0

        for index, backfill in enumerate(candidates):
            if index < preserve:
                report.note_retained(backfill.created_at)
                continue
            if self._holds_apply(policy) and self.is_on_legal_hold("backfills", backfill.team_id, backfill.id):
                report.legal_holds_applied += 1
                continue
            if dry_run:
                report.records_deleted += 1
                report.bytes_freed += BACKFILL_ROW_BYTES
            elif not self._delete_row(backfill, report, BACKFILL_ROW_BYTES):
                report.note_retained(backfill.created_at)

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_retention_summary(self) -> RetentionSummary:
        """
        Compliance overview for operators.

        warning: at least one enabled policy is past its next run.
        violation: an active hold without exemptions has lasted longer
        than the review period.
        """
        now = utcnow()
        policies = self.config.get_retention_policies()
        active = [p for p in policies if p.enabled]
        holds = self.config.get_legal_holds(active_only=True)

        status = "compliant"
        issues: List[str] = []

        overdue = [p for p in active if p.next_run is not None and p.next_run < now]
        if overdue:
            status = "warning"
            issues.append(f"{len(overdue)} retention policies are overdue")

        review_cutoff = now - timedelta(days=LEGAL_HOLD_REVIEW_DAYS)
        long_lived = [h for h in holds if not h.exemptions and h.start_date < review_cutoff]
        if long_lived:
            status = "violation"
            issues.append(
                f"{len(long_lived)} legal holds have been active for more than "
                f"{LEGAL_HOLD_REVIEW_DAYS} days and may conflict with retention policies"
            )

        upcoming = sorted(
            (
                {"policy_id": p.id, "data_type": p.data_type, "scheduled_at": p.next_run.isoformat()}
                for p in active if p.next_run is not None
            ),
            key=lambda item: item["scheduled_at"],
        )[:5]
        last_runs = [p.last_run for p in policies if p.last_run is not None]

        return RetentionSummary(
            total_policies=len(policies),
            active_policies=len(active),
            active_legal_holds=len(holds),
            upcoming_runs=upcoming,
            compliance_status=status,
            issues=issues,
            last_run=max(last_runs) if last_runs else None,
        )
