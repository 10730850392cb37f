"""
Tests for the SecurityServices container and the maintenance worker.
"""

from unittest.mock import patch

import pytest

from slack_connector.config.settings import SecuritySettings, TokenRotationSettings
from slack_connector.credentials.encryption import CredentialEncryptionError
from slack_connector.models.audit_log import AuditEventType, SecurityAuditLog
from slack_connector.models.key_rotation_job import KeyRotationStatus
from slack_connector.models.slack_token import SlackToken
from slack_connector.services.security_services import SecurityServices
from slack_connector.tests.conftest import TEST_SECRET, backdate, make_oauth
from slack_connector.utils.encryption import EncryptionConfigError
from slack_connector.workers.security_maintenance_job import (
    MaintenanceStats,
    _get_database_session,
    run_maintenance,
)


@pytest.fixture
def settings():
    return SecuritySettings(
        encryption_secret=TEST_SECRET,
        rotation=TokenRotationSettings(health_check_batch_delay_seconds=0),
    )


@pytest.fixture
def services(db_session, settings, encryption, slack_client):
    return SecurityServices(db_session, settings, encryption=encryption, slack_client=slack_client)


# ============================================================================
# TEST SUITE: WIRING
# ============================================================================

class TestWiring:

    def test_missing_secret_prevents_startup(self, db_session, slack_client):
        with pytest.raises(EncryptionConfigError):
            SecurityServices(db_session, SecuritySettings(), slack_client=slack_client)

    def test_components_share_one_audit_logger(self, services):
        assert services.token_storage.audit is services.audit_logger
        assert services.token_rotation.audit is services.audit_logger
        assert services.data_retention.audit is services.audit_logger
        assert services.gdpr_deletion.audit is services.audit_logger
        assert services.rate_limiter.audit is services.audit_logger

    @pytest.mark.asyncio
    async def test_close_closes_slack_client(self, services, slack_client):
        await services.close()
        slack_client.close.assert_awaited_once()


# ============================================================================
# TEST SUITE: INITIALIZE
# ============================================================================

class TestInitialize:

    @pytest.mark.asyncio
    async def test_startup_audited(self, services, db_session):
        await services.initialize()

        entries = db_session.query(SecurityAuditLog).filter_by(event_type=AuditEventType.SYSTEM_STARTUP).all()
        assert len(entries) == 1
        assert entries[0].success is True

    @pytest.mark.asyncio
    async def test_failed_self_test_raises(self, services, db_session):
        with patch.object(services.encryption, "self_test", return_value=False):
            with pytest.raises(RuntimeError, match="self-test") as exc_info:
                await services.initialize()

        assert isinstance(exc_info.value.__cause__, CredentialEncryptionError)
        entry = db_session.query(SecurityAuditLog).one()
        assert entry.success is False

    @pytest.mark.asyncio
    async def test_tampering_reported_not_raised(self, services, db_session):
        await services.audit_logger.log_token_access("T123", "tok-1")
        entry = db_session.query(SecurityAuditLog).one()
        entry.actor_id = "attacker"
        db_session.commit()

        await services.initialize()

        tamper = db_session.query(SecurityAuditLog).filter_by(
            event_type=AuditEventType.AUDIT_LOG_TAMPER_DETECTED
        ).all()
        assert len(tamper) == 1


# ============================================================================
# TEST SUITE: HEALTH CHECK
# ============================================================================

class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_fresh_install_healthy(self, services):
        health = await services.perform_health_check()

        assert health["status"] == "healthy"
        assert set(health["checks"]) == {
            "database", "encryption", "audit_integrity", "retention", "security_alerts", "tokens",
        }

    @pytest.mark.asyncio
    async def test_overdue_token_degrades(self, services, db_session):
        stored = await services.token_storage.store_oauth_data(make_oauth())
        backdate(db_session, db_session.get(SlackToken, stored.bot_token_id), days=45)

        health = await services.perform_health_check()

        assert health["status"] == "degraded"
        assert health["checks"]["tokens"]["status"] == "warn"

    @pytest.mark.asyncio
    async def test_tampering_is_unhealthy(self, services, db_session):
        await services.audit_logger.log_token_access("T123", "tok-1")
        entry = db_session.query(SecurityAuditLog).one()
        entry.actor_id = "attacker"
        db_session.commit()

        health = await services.perform_health_check()

        assert health["status"] == "unhealthy"
        assert health["checks"]["audit_integrity"]["status"] == "fail"

    @pytest.mark.asyncio
    async def test_health_check_not_counted_as_startup(self, services, db_session):
        await services.perform_health_check()

        assert db_session.query(SecurityAuditLog).filter_by(event_type=AuditEventType.SYSTEM_STARTUP).count() == 0
        entry = db_session.query(SecurityAuditLog).filter_by(event_type=AuditEventType.HEALTH_CHECK).one()
        assert entry.success is True


# ============================================================================
# TEST SUITE: MAINTENANCE
# ============================================================================

class TestMaintenance:

    @pytest.mark.asyncio
    async def test_scheduled_maintenance_runs_every_task(self, services, db_session):
        await services.token_storage.store_oauth_data(make_oauth())

        result = await services.perform_scheduled_maintenance(dry_run=True)

        assert result.success is True
        assert [t.name for t in result.tasks] == ["token_health_check", "data_retention", "audit_integrity"]
        assert db_session.query(SecurityAuditLog).filter_by(
            event_type=AuditEventType.SCHEDULED_MAINTENANCE
        ).count() == 1
        assert db_session.query(SecurityAuditLog).filter_by(event_type=AuditEventType.SYSTEM_STARTUP).count() == 0

    @pytest.mark.asyncio
    async def test_worker_resumes_key_rotation_jobs(self, services):
        await services.token_storage.store_oauth_data(make_oauth())
        created = await services.token_rotation.rotate_encryption_keys(reason="annual")

        stats = await run_maintenance(services, dry_run=True)

        assert stats.key_rotation_jobs == 1
        assert stats.success is True
        assert stats.tasks_succeeded == 3
        job = services.key_rotation.get_job(created.job_id)
        assert job.status == KeyRotationStatus.COMPLETED
        assert stats.to_dict()["duration_seconds"] is not None

    def test_failed_stats(self):
        stats = MaintenanceStats(tasks_failed=1)
        assert stats.success is False

    def test_database_url_required(self):
        with pytest.raises(ValueError, match="DATABASE_URL"):
            _get_database_session(None)
