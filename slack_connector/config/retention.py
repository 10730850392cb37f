"""
Default data retention policies.

Seeded into the retention config store the first time it is opened
against an empty database. Admins can change them afterwards; stored
values always win over these defaults.
"""

from typing import Any, Dict, List

DAYS_PER_MONTH = 30

# Long-lived holds are flagged for review after this many days
LEGAL_HOLD_REVIEW_DAYS = 365

# Rough per-row sizes used for the bytes-freed estimate
TOKEN_ROW_OVERHEAD_BYTES = 200
SYNC_LOG_ROW_BYTES = 500
BACKFILL_ROW_BYTES = 1000

DEFAULT_RETENTION_POLICIES: List[Dict[str, Any]] = [
    {
        "id": "revoked_tokens",
        "name": "Revoked Token Cleanup",
        "description": "Remove revoked tokens after the retention period",
        "data_type": "tokens",
        "retention_days": 90,
        "schedule": "weekly",
        "legal_hold_exempt": False,
    },
    {
        "id": "audit_logs_standard",
        "name": "Standard Audit Log Retention",
        "description": "Standard audit log retention for compliance",
        "data_type": "audit_logs",
        "retention_days": 365,
        "critical_retention_days": 2555,
        "schedule": "monthly",
        "legal_hold_exempt": False,
    },
    {
        "id": "sync_logs_cleanup",
        "name": "Sync Log Cleanup",
        "description": "Remove old sync logs while keeping recent history",
        "data_type": "sync_logs",
        "retention_days": 180,
        "preserve_count": 1000,
        "schedule": "weekly",
        "legal_hold_exempt": True,
    },
    {
        "id": "backfill_logs_cleanup",
        "name": "Backfill Log Cleanup",
        "description": "Remove completed backfill records",
        "data_type": "backfills",
        "retention_days": 90,
        "schedule": "monthly",
        "legal_hold_exempt": True,
    },
    {
        "id": "temp_data_cleanup",
        "name": "Temporary Data Cleanup",
        "description": "Report stale temporary processing data",
        "data_type": "temp_data",
        "retention_days": 7,
        "schedule": "daily",
        "legal_hold_exempt": True,
    },
]
