"""
Tests for DataRetentionService and RetentionConfigStore.

CRITICAL: These tests verify:
1. Legal holds block deletion, and deletion resumes once lifted
2. preserve_count keeps the newest records regardless of age
3. Policies and holds survive a restart
4. Dry runs never delete
"""

from datetime import datetime, timedelta, timezone

import pytest

from slack_connector.models.audit_log import AuditEventType, SecurityAuditLog
from slack_connector.models.base import utcnow
from slack_connector.models.retention_state import RetentionPolicyRecord
from slack_connector.models.slack_token import SlackToken
from slack_connector.models.sync_log import BackfillStatus, SlackBackfill, SlackSyncLog
from slack_connector.services.data_retention import (
    DataRetentionService,
    LegalHold,
    RetentionConfigStore,
    RetentionPolicy,
    calculate_next_run,
)
from slack_connector.tests.conftest import backdate, make_oauth


@pytest.fixture
def config_store(db_session):
    return RetentionConfigStore(db_session)


@pytest.fixture
def retention(db_session, audit_logger, config_store):
    return DataRetentionService(db_session, audit_logger, config_store)


async def _revoked_token(storage, db_session, team_id, days_ago):
    stored = await storage.store_oauth_data(make_oauth(team_id=team_id))
    await storage.revoke_token(stored.bot_token_id, "admin_request")
    backdate(db_session, db_session.get(SlackToken, stored.bot_token_id), days=days_ago, field="revoked_at")
    return stored.bot_token_id


def _sync_logs(db_session, count, days_ago, team_id="T123"):
    base = utcnow() - timedelta(days=days_ago)
    db_session.add_all([
        SlackSyncLog(team_id=team_id, created_at=base - timedelta(minutes=i))
        for i in range(count)
    ])
    db_session.commit()


def _report(reports, policy_id):
    return next(r for r in reports if r.policy_id == policy_id)


# ============================================================================
# TEST SUITE: CONFIG STORE
# ============================================================================

class TestRetentionConfigStore:

    def test_defaults_seeded(self, config_store, db_session):
        ids = [p.id for p in config_store.get_retention_policies()]
        assert ids == sorted([
            "revoked_tokens", "audit_logs_standard", "sync_logs_cleanup",
            "backfill_logs_cleanup", "temp_data_cleanup",
        ])
        assert db_session.query(RetentionPolicyRecord).count() == 5

    def test_existing_policies_not_reseeded(self, config_store, db_session):
        policy = config_store.get_policy("revoked_tokens")
        policy.retention_days = 30
        config_store.save_policy(policy)

        reopened = RetentionConfigStore(db_session)
        assert reopened.get_policy("revoked_tokens").retention_days == 30
        assert len(reopened.get_retention_policies()) == 5

    def test_custom_defaults(self, db_session):
        store = RetentionConfigStore(db_session, default_policies=[{
            "id": "only", "name": "Only", "data_type": "tokens", "retention_days": 10,
        }])
        assert [p.id for p in store.get_retention_policies()] == ["only"]

    def test_expired_hold_is_inactive(self, config_store):
        now = utcnow()
        config_store.save_legal_hold(LegalHold(
            id="h1", team_id="T1", data_types=["tokens"], reason="r", requested_by="a",
            start_date=now - timedelta(days=10), end_date=now - timedelta(days=1),
        ))
        assert config_store.get_legal_holds() == []
        assert len(config_store.get_legal_holds(active_only=False)) == 1


# ============================================================================
# TEST SUITE: POLICY VALIDATION AND UPDATES
# ============================================================================

class TestPolicyUpdates:

    @pytest.mark.parametrize("changes,message", [
        ({"retention_days": 0}, "at least 1 day"),
        ({"critical_retention_days": 30}, "longer than standard"),
        ({"schedule": "hourly"}, "Unknown schedule"),
        ({"preserve_count": -1}, "negative"),
        ({"team_overrides": {"T1": 0}}, "T1"),
    ])
    @pytest.mark.asyncio
    async def test_invalid_changes_rejected(self, retention, changes, message):
        with pytest.raises(ValueError, match=message):
            await retention.update_retention_policy("revoked_tokens", "admin", **changes)

    @pytest.mark.asyncio
    async def test_immutable_field_rejected(self, retention):
        with pytest.raises(ValueError, match="data_type"):
            await retention.update_retention_policy("revoked_tokens", "admin", data_type="sync_logs")

    @pytest.mark.asyncio
    async def test_unknown_policy(self, retention):
        with pytest.raises(KeyError):
            await retention.update_retention_policy("missing", "admin", retention_days=10)

    @pytest.mark.asyncio
    async def test_update_persisted_and_audited(self, retention, db_session):
        updated = await retention.update_retention_policy("revoked_tokens", "admin", retention_days=45)

        assert updated.retention_days == 45
        assert RetentionConfigStore(db_session).get_policy("revoked_tokens").retention_days == 45
        events = db_session.query(SecurityAuditLog).filter_by(event_type=AuditEventType.CONFIG_CHANGED).all()
        assert len(events) == 1

    def test_next_run_monthly_clamps_day(self):
        now = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)
        assert calculate_next_run("monthly", now) == datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)
        assert calculate_next_run("daily", now) == now + timedelta(days=1)
        assert calculate_next_run("weekly", now) == now + timedelta(days=7)

    def test_team_override(self):
        policy = RetentionPolicy(
            id="p", name="p", data_type="tokens", retention_days=90, team_overrides={"T1": 30},
        )
        assert policy.retention_days_for("T1") == 30
        assert policy.retention_days_for("T2") == 90


# ============================================================================
# TEST SUITE: LEGAL HOLDS
# ============================================================================

class TestLegalHolds:

    @pytest.mark.asyncio
    async def test_hold_blocks_then_deletion_resumes(self, retention, storage, db_session):
        token_id = await _revoked_token(storage, db_session, "T_HOLD", days_ago=120)
        hold = await retention.add_legal_hold(
            team_id="T_HOLD", data_types=["tokens"], reason="litigation", requested_by="legal",
        )

        reports = await retention.execute_retention_policies()
        report = _report(reports, "revoked_tokens")
        assert report.records_deleted == 0
        assert report.legal_holds_applied == 1
        assert storage.get_token(token_id) is not None

        await retention.remove_legal_hold(hold.id, reason="case closed", requested_by="legal")

        reports = await retention.execute_retention_policies()
        assert _report(reports, "revoked_tokens").records_deleted == 1
        assert storage.get_token(token_id) is None

    @pytest.mark.asyncio
    async def test_hold_is_team_scoped(self, retention, storage, db_session):
        held = await _revoked_token(storage, db_session, "T_HOLD", days_ago=120)
        other = await _revoked_token(storage, db_session, "T_OTHER", days_ago=120)
        await retention.add_legal_hold("T_HOLD", ["tokens"], "litigation", "legal")

        await retention.execute_retention_policies()

        assert storage.get_token(held) is not None
        assert storage.get_token(other) is None

    @pytest.mark.asyncio
    async def test_exempted_item_not_held(self, retention, storage, db_session):
        token_id = await _revoked_token(storage, db_session, "T_HOLD", days_ago=120)
        await retention.add_legal_hold("T_HOLD", ["tokens"], "litigation", "legal", exemptions=[token_id])

        assert retention.is_on_legal_hold("tokens", "T_HOLD", token_id) is False
        assert retention.is_on_legal_hold("tokens", "T_HOLD", "another") is True

    @pytest.mark.asyncio
    async def test_exempted_audit_entry_deleted_under_hold(self, retention, audit_logger, db_session):
        await audit_logger.log_token_access("T_HOLD", "tok-1")
        await audit_logger.log_token_access("T_HOLD", "tok-2")
        entries = db_session.query(SecurityAuditLog).order_by(SecurityAuditLog.sequence).all()
        for entry in entries:
            backdate(db_session, entry, days=400)
        exempt_id, held_id = entries[0].id, entries[1].id
        await retention.add_legal_hold(
            "T_HOLD", ["audit_logs"], "litigation", "legal", exemptions=[exempt_id]
        )

        report = _report(await retention.execute_retention_policies(), "audit_logs_standard")

        assert report.records_deleted == 1
        assert report.legal_holds_applied == 1
        assert db_session.get(SecurityAuditLog, exempt_id) is None
        assert db_session.get(SecurityAuditLog, held_id) is not None

    @pytest.mark.asyncio
    async def test_hold_survives_restart(self, retention, db_session, audit_logger):
        hold = await retention.add_legal_hold("T_HOLD", ["tokens", "audit_logs"], "litigation", "legal")

        restarted = DataRetentionService(db_session, audit_logger, RetentionConfigStore(db_session))

        assert [h.id for h in restarted.get_legal_holds()] == [hold.id]
        assert restarted.is_on_legal_hold("audit_logs", "T_HOLD") is True

    @pytest.mark.asyncio
    async def test_lifted_hold_survives_restart(self, retention, db_session, audit_logger):
        hold = await retention.add_legal_hold("T_HOLD", ["tokens"], "litigation", "legal")
        await retention.remove_legal_hold(hold.id, "case closed", "legal")

        restarted = DataRetentionService(db_session, audit_logger, RetentionConfigStore(db_session))

        assert restarted.get_legal_holds() == []
        lifted = restarted.get_legal_holds(active_only=False)[0]
        assert lifted.lifted_by == "legal"

    @pytest.mark.asyncio
    async def test_invalid_hold_rejected(self, retention):
        with pytest.raises(ValueError):
            await retention.add_legal_hold("T1", ["emails"], "litigation", "legal")
        with pytest.raises(ValueError):
            await retention.add_legal_hold("T1", ["tokens"], " ", "legal")

    @pytest.mark.asyncio
    async def test_remove_unknown_hold(self, retention):
        assert await retention.remove_legal_hold("missing", "r", "legal") is None


# ============================================================================
# TEST SUITE: EXECUTION
# ============================================================================

class TestExecution:

    @pytest.mark.asyncio
    async def test_recent_revoked_tokens_kept(self, retention, storage, db_session):
        recent = await _revoked_token(storage, db_session, "T1", days_ago=10)
        old = await _revoked_token(storage, db_session, "T2", days_ago=100)

        await retention.execute_retention_policies()

        assert storage.get_token(recent) is not None
        assert storage.get_token(old) is None

    @pytest.mark.asyncio
    async def test_active_tokens_never_deleted(self, retention, storage, db_session):
        stored = await storage.store_oauth_data(make_oauth())
        backdate(db_session, db_session.get(SlackToken, stored.bot_token_id), days=400)

        await retention.execute_retention_policies()

        assert storage.get_token(stored.bot_token_id) is not None

    @pytest.mark.asyncio
    async def test_team_override_shortens_retention(self, retention, storage, db_session):
        short = await _revoked_token(storage, db_session, "T_SHORT", days_ago=40)
        normal = await _revoked_token(storage, db_session, "T_NORMAL", days_ago=40)
        await retention.update_retention_policy("revoked_tokens", "admin", team_overrides={"T_SHORT": 30})

        reports = await retention.execute_retention_policies()

        assert storage.get_token(short) is None
        assert storage.get_token(normal) is not None
        assert _report(reports, "revoked_tokens").records_retained == 1

    @pytest.mark.asyncio
    async def test_preserve_count_keeps_newest(self, retention, db_session):
        _sync_logs(db_session, 1500, days_ago=200)

        reports = await retention.execute_retention_policies()

        report = _report(reports, "sync_logs_cleanup")
        assert report.records_processed == 1500
        assert report.records_deleted == 500
        assert report.records_retained == 1000
        assert db_session.query(SlackSyncLog).count() == 1000

    @pytest.mark.asyncio
    async def test_only_completed_backfills_deleted(self, retention, db_session):
        old = utcnow() - timedelta(days=120)
        db_session.add_all([
            SlackBackfill(team_id="T1", channel_id="C1", status=BackfillStatus.COMPLETED, created_at=old),
            SlackBackfill(team_id="T1", channel_id="C2", status=BackfillStatus.FAILED, created_at=old),
        ])
        db_session.commit()

        await retention.execute_retention_policies()

        remaining = db_session.query(SlackBackfill).all()
        assert [b.status for b in remaining] == [BackfillStatus.FAILED]

    @pytest.mark.asyncio
    async def test_dry_run_deletes_nothing_and_keeps_schedule(self, retention, storage, db_session):
        token_id = await _revoked_token(storage, db_session, "T1", days_ago=100)

        reports = await retention.execute_retention_policies(dry_run=True)

        assert _report(reports, "revoked_tokens").records_deleted == 1
        assert storage.get_token(token_id) is not None
        assert all(p.next_run is None for p in retention.get_retention_policies())

    @pytest.mark.asyncio
    async def test_real_run_schedules_next(self, retention, db_session):
        await retention.execute_retention_policies()

        for policy in RetentionConfigStore(db_session).get_retention_policies():
            assert policy.last_run is not None
            assert policy.next_run > policy.last_run

    @pytest.mark.asyncio
    async def test_disabled_policy_skipped(self, retention):
        await retention.update_retention_policy("temp_data_cleanup", "admin", enabled=False)
        reports = await retention.execute_retention_policies()
        assert "temp_data_cleanup" not in [r.policy_id for r in reports]

    @pytest.mark.asyncio
    async def test_temp_data_only_warns(self, retention):
        report = await retention.preview_policy_execution("temp_data_cleanup")
        assert report.success is True
        assert report.warnings

    @pytest.mark.asyncio
    async def test_run_audited_with_counts(self, retention, storage, db_session, audit_logger):
        await _revoked_token(storage, db_session, "T1", days_ago=100)

        await retention.execute_retention_policies()

        entries = (
            db_session.query(SecurityAuditLog)
            .filter_by(event_type=AuditEventType.DATA_RETENTION_CLEANUP)
            .order_by(SecurityAuditLog.sequence.desc())
            .all()
        )
        # audit log cleanup writes its own entry before the summary
        summary = audit_logger._entry_to_dict(entries[0])["details"]
        assert summary["deleted_counts"]["revoked_grants"] == 1
        assert summary["records_deleted"] == 1

    @pytest.mark.asyncio
    async def test_preview_unknown_policy(self, retention):
        assert await retention.preview_policy_execution("missing") is None


# ============================================================================
# TEST SUITE: SUMMARY
# ============================================================================

class TestRetentionSummary:

    def test_fresh_install_compliant(self, retention):
        summary = retention.get_retention_summary()
        assert summary.compliance_status == "compliant"
        assert summary.total_policies == 5
        assert summary.to_dict()["last_run"] is None

    def test_overdue_policy_warns(self, retention, config_store):
        policy = config_store.get_policy("revoked_tokens")
        policy.next_run = utcnow() - timedelta(days=1)
        config_store.save_policy(policy)

        summary = retention.get_retention_summary()

        assert summary.compliance_status == "warning"
        assert summary.upcoming_runs[0]["policy_id"] == "revoked_tokens"

    def test_long_lived_hold_is_violation(self, retention, config_store):
        config_store.save_legal_hold(LegalHold(
            id="old", team_id="T1", data_types=["tokens"], reason="r", requested_by="a",
            start_date=utcnow() - timedelta(days=400),
        ))

        summary = retention.get_retention_summary()

        assert summary.compliance_status == "violation"
        assert summary.active_legal_holds == 1
