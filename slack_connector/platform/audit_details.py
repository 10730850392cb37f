"""
Typed detail payloads for security audit events.

Each event category has its own closed model with only the fields that
category needs. Field names never contain a forbidden detail term, so a
typed payload survives sanitization intact; values are still sanitized
at runtime before they are encrypted and stored.
"""

from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

DETAILS_SCHEMA_VERSION = 1


def count_key(name: str) -> str:
    """Audit-safe key for a row count; "token" is a forbidden detail term."""
    return name.replace("token", "grant")


class AuditDetails(BaseModel):
    """Base for all typed audit detail payloads."""
    model_config = ConfigDict(extra="forbid")

    schema_version: int = DETAILS_SCHEMA_VERSION


class CredentialDetails(AuditDetails):
    """Token lifecycle events: created, accessed, revoked, rotated, health checked."""
    kind: Literal["credential_lifecycle"] = "credential_lifecycle"
    operation: Optional[str] = None
    grant_type: Optional[str] = None
    scopes: Optional[str] = None
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    already_revoked: Optional[bool] = None
    notification_sent: Optional[bool] = None
    health_status: Optional[str] = None
    age_days: Optional[int] = None
    revoked_count: Optional[int] = None
    error_count: Optional[int] = None


class ComplianceDetails(AuditDetails):
    """GDPR deletion and retention events."""
    kind: Literal["compliance"] = "compliance"
    operation_id: Optional[str] = None
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    retain_audit_logs: Optional[bool] = None
    deleted_counts: Dict[str, int] = Field(default_factory=dict)
    policy_id: Optional[str] = None
    data_type: Optional[str] = None
    dry_run: Optional[bool] = None
    records_deleted: Optional[int] = None
    records_retained: Optional[int] = None
    legal_holds_applied: Optional[int] = None
    duration_ms: Optional[int] = None
    errors: List[str] = Field(default_factory=list)


class ConfigurationDetails(AuditDetails):
    """Policy, legal hold and encryption configuration changes."""
    kind: Literal["configuration"] = "configuration"
    action: str
    policy_id: Optional[str] = None
    hold_id: Optional[str] = None
    job_id: Optional[str] = None
    target_version: Optional[str] = None
    data_types: List[str] = Field(default_factory=list)
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    changes: Dict[str, str] = Field(default_factory=dict)


class SecurityDetails(AuditDetails):
    """Tamper detection, suspicious activity, rate limiting and alerts."""
    kind: Literal["security"] = "security"
    operation: Optional[str] = None
    reason: Optional[str] = None
    tampered_entries: List[str] = Field(default_factory=list)
    total_checked: Optional[int] = None
    method: Optional[str] = None
    limit: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    error_code: Optional[str] = None
    error_category: Optional[str] = None
    request_id: Optional[str] = None


class SystemDetails(AuditDetails):
    """Process lifecycle and health events."""
    kind: Literal["system"] = "system"
    component: Optional[str] = None
    status: Optional[str] = None
    checks: Dict[str, str] = Field(default_factory=dict)


AuditDetailsPayload = Union[
    CredentialDetails,
    ComplianceDetails,
    ConfigurationDetails,
    SecurityDetails,
    SystemDetails,
]
