"""
Consistent, secure error handling for the Slack connector.

All caller-facing errors use one shape:

    {"success": false,
     "error": {"code", "message", "category", "timestamp", "request_id"}}

Stack traces and raw exception text are NEVER returned to callers.
Messages are redacted before they are logged or audited, and
security-category errors are written to the audit log.

Standard HTTP status codes:
- 400: Bad Request (validation errors)
- 401: Unauthorized (missing or invalid Slack credentials)
- 403: Forbidden (permission denied, cross-team access)
- 404: Not Found
- 429: Too Many Requests (rate limit)
- 500: Internal Server Error
- 503: Service Unavailable (Slack unreachable)
"""

import enum
import logging
import re
import secrets
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from slack_connector.credentials.redaction import REDACTED_VALUE, redact_secret_patterns
from slack_connector.models.audit_log import (
    ActorType,
    AuditCategory,
    AuditEventType,
    AuditSeverity,
)
from slack_connector.platform.audit import AuditEvent, SecurityAuditLogger
from slack_connector.platform.audit_details import SecurityDetails

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
ERROR_STATS_TOP_N = 10

# Redacted in addition to the token patterns shared with the audit log
EXTRA_SENSITIVE_PATTERNS = [
    re.compile(r"authorization[:\s]+[A-Za-z0-9+/=]{10,}", re.IGNORECASE),
    re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"),
    re.compile(r"[A-Za-z0-9+/]{32,}={0,2}"),
]


class ErrorCategory(str, enum.Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    SECURITY = "security"
    SYSTEM = "system"
    EXTERNAL = "external"
    RATE_LIMIT = "rate_limit"


CATEGORY_PREFIXES = {
    ErrorCategory.AUTHENTICATION: "AUTH",
    ErrorCategory.AUTHORIZATION: "AUTHZ",
    ErrorCategory.VALIDATION: "VAL",
    ErrorCategory.SECURITY: "SEC",
    ErrorCategory.SYSTEM: "SYS",
    ErrorCategory.EXTERNAL: "EXT",
    ErrorCategory.RATE_LIMIT: "RATE",
}

DEFAULT_SEVERITY = {
    ErrorCategory.AUTHENTICATION: AuditSeverity.MEDIUM,
    ErrorCategory.AUTHORIZATION: AuditSeverity.HIGH,
    ErrorCategory.VALIDATION: AuditSeverity.LOW,
    ErrorCategory.SECURITY: AuditSeverity.CRITICAL,
    ErrorCategory.SYSTEM: AuditSeverity.HIGH,
    ErrorCategory.EXTERNAL: AuditSeverity.MEDIUM,
    ErrorCategory.RATE_LIMIT: AuditSeverity.LOW,
}

AUDIT_CATEGORY = {
    ErrorCategory.AUTHENTICATION: AuditCategory.AUTHENTICATION,
    ErrorCategory.AUTHORIZATION: AuditCategory.AUTHORIZATION,
    ErrorCategory.VALIDATION: AuditCategory.DATA_ACCESS,
    ErrorCategory.SECURITY: AuditCategory.SECURITY,
    ErrorCategory.SYSTEM: AuditCategory.CONFIGURATION,
    ErrorCategory.EXTERNAL: AuditCategory.DATA_ACCESS,
    ErrorCategory.RATE_LIMIT: AuditCategory.SECURITY,
}

USER_MESSAGES = {
    ErrorCategory.AUTHENTICATION: "Authentication failed. Please check your credentials and try again.",
    ErrorCategory.AUTHORIZATION: "You do not have permission to perform this action.",
    ErrorCategory.VALIDATION: "The provided data is invalid. Please check your input and try again.",
    ErrorCategory.SECURITY: "Access denied due to security policy.",
    ErrorCategory.SYSTEM: "A system error occurred. Please try again later.",
    ErrorCategory.EXTERNAL: "External service is temporarily unavailable. Please try again later.",
    ErrorCategory.RATE_LIMIT: "Too many requests. Please wait before trying again.",
}

# Categories that are always written to the audit log
AUDITED_CATEGORIES = {
    ErrorCategory.AUTHENTICATION,
    ErrorCategory.AUTHORIZATION,
    ErrorCategory.SECURITY,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _base36(value: int) -> str:
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def generate_error_code(category: ErrorCategory) -> str:
    """PREFIX_<time base36>_<random>, e.g. SEC_LX3K9Q2A_7F3B."""
    return f"{CATEGORY_PREFIXES[category]}_{_base36(int(time.time() * 1000))}_{secrets.token_hex(2).upper()}"


def redact_error_message(message: Any) -> str:
    """Remove tokens, secrets, emails and long opaque strings; truncate."""
    if isinstance(message, BaseException):
        text = str(message)
    elif isinstance(message, str):
        text = message
    else:
        text = "Unknown error occurred"

    text = redact_secret_patterns(text)
    for pattern in EXTRA_SENSITIVE_PATTERNS:
        text = pattern.sub(REDACTED_VALUE, text)
    if len(text) > MAX_MESSAGE_LENGTH:
        text = text[:MAX_MESSAGE_LENGTH] + "..."
    return text


# =============================================================================
# Application errors
# =============================================================================

class AppError(Exception):
    """
    Base application error with consistent error shape.

    All custom errors should inherit from this class.
    """

    category = ErrorCategory.SYSTEM

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self, request_id: Optional[str] = None) -> dict:
        """Convert to the caller-facing error response."""
        body = {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "timestamp": _now().isoformat(),
                "request_id": request_id,
            },
        }
        if self.details:
            body["error"]["details"] = self.details
        return body


class ValidationError(AppError):
    """Validation error (400)."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class AuthenticationError(AppError):
    """Authentication failure (401)."""

    category = ErrorCategory.AUTHENTICATION

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            code="AUTHENTICATION_ERROR",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class PermissionDeniedError(AppError):
    """Permission denied (403)."""

    category = ErrorCategory.AUTHORIZATION

    def __init__(self, message: str = "Permission denied"):
        super().__init__(
            code="PERMISSION_DENIED",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
        )


class TeamIsolationError(AppError):
    """Cross-team access attempt (403) - CRITICAL SECURITY ERROR."""

    category = ErrorCategory.SECURITY

    def __init__(self, message: str = "Access denied"):
        # SECURITY: never expose which team boundary was crossed
        super().__init__(
            code="ACCESS_DENIED",
            message="Access denied",
            status_code=status.HTTP_403_FORBIDDEN,
        )
        self.internal_message = message


class NotFoundError(AppError):
    """Resource not found (404)."""

    category = ErrorCategory.VALIDATION

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class RateLimitError(AppError):
    """Rate limit exceeded (429)."""

    category = ErrorCategory.RATE_LIMIT

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None):
        details = {}
        if retry_after:
            details["retry_after_seconds"] = retry_after
        super().__init__(
            code="RATE_LIMIT_EXCEEDED",
            message=message,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details=details,
        )


class ServiceUnavailableError(AppError):
    """Slack or another dependency unavailable (503)."""

    category = ErrorCategory.EXTERNAL

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(
            code="SERVICE_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


# =============================================================================
# Secure error handler
# =============================================================================

@dataclass
class _ErrorCount:
    category: ErrorCategory
    severity: AuditSeverity
    count: int
    last_seen: datetime


class SecureErrorHandler:
    """
    Turns any exception into a safe ErrorResponse.

    Handling never raises: a failure inside the handler itself yields a
    generic SYS error response.
    """

    def __init__(self, audit_logger: Optional[SecurityAuditLogger] = None):
        self.audit = audit_logger
        self._counts: Dict[str, _ErrorCount] = {}

    async def handle_error(
        self,
        category: ErrorCategory,
        original_error: Any = None,
        severity: Optional[AuditSeverity] = None,
        team_id: Optional[str] = None,
        operation: Optional[str] = None,
        user_message: Optional[str] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        skip_audit: bool = False,
    ) -> Dict[str, Any]:
        try:
            category = ErrorCategory(category)
            code = generate_error_code(category)
            severity = AuditSeverity(severity) if severity else self.determine_severity(category, original_error)
            internal_message = redact_error_message(original_error) if original_error is not None else None
            message = user_message or f"{USER_MESSAGES[category]} (Error: {code})"

            self._track(operation or category.value, category, severity)
            logger.warning(
                "Handled error",
                extra={
                    "error_code": code,
                    "category": category.value,
                    "severity": severity.value,
                    "operation": operation,
                    "team_id": team_id,
                    "request_id": request_id,
                },
            )

            if self.audit is not None and not skip_audit and (
                category in AUDITED_CATEGORIES or severity == AuditSeverity.CRITICAL
            ):
                await self.audit.log_event(AuditEvent(
                    event_type=(
                        AuditEventType.SECURITY_ALERT
                        if severity == AuditSeverity.CRITICAL
                        else AuditEventType.AUTH_FAILURE
                    ),
                    team_id=team_id,
                    actor_type=ActorType.SYSTEM,
                    success=False,
                    severity=severity,
                    category=AUDIT_CATEGORY[category],
                    error_message=internal_message,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details=SecurityDetails(
                        operation=operation,
                        error_code=code,
                        error_category=category.value,
                        request_id=request_id,
                    ),
                ))

            return {
                "success": False,
                "error": {
                    "code": code,
                    "message": message,
                    "category": category.value,
                    "timestamp": _now().isoformat(),
                    "request_id": request_id,
                },
            }
        except Exception:
            logger.exception("Error handler failed")
            return {
                "success": False,
                "error": {
                    "code": "SYS_INTERNAL_ERROR",
                    "message": "An internal error occurred. Please try again later.",
                    "category": ErrorCategory.SYSTEM.value,
                    "timestamp": _now().isoformat(),
                    "request_id": request_id,
                },
            }

    def determine_severity(self, category: ErrorCategory, error: Any) -> AuditSeverity:
        if category == ErrorCategory.SECURITY:
            return AuditSeverity.CRITICAL
        text = str(error).lower() if isinstance(error, BaseException) else ""
        if "unauthorized" in text or "forbidden" in text:
            return AuditSeverity.HIGH
        if "timeout" in text or "connection" in text:
            return AuditSeverity.MEDIUM
        return DEFAULT_SEVERITY[category]

    async def handle_auth_error(self, error: Any, team_id: Optional[str] = None, operation: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        return await self.handle_error(
            ErrorCategory.AUTHENTICATION,
            original_error=error,
            severity=AuditSeverity.MEDIUM,
            team_id=team_id,
            operation=operation,
            user_message="Authentication failed. Please check your credentials.",
            **kwargs,
        )

    async def handle_security_violation(self, violation: str, team_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        return await self.handle_error(
            ErrorCategory.SECURITY,
            original_error=violation,
            severity=AuditSeverity.CRITICAL,
            team_id=team_id,
            operation="security_violation",
            user_message="Access denied due to security policy violation.",
            **kwargs,
        )

    async def handle_rate_limit_error(self, reset_at: datetime, team_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        return await self.handle_error(
            ErrorCategory.RATE_LIMIT,
            severity=AuditSeverity.LOW,
            team_id=team_id,
            operation="rate_limit_exceeded",
            user_message=f"Rate limit exceeded. Please try again after {reset_at.isoformat()}.",
            **kwargs,
        )

    async def handle_external_api_error(self, api_name: str, error: Any, team_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        return await self.handle_error(
            ErrorCategory.EXTERNAL,
            original_error=error,
            severity=AuditSeverity.MEDIUM,
            team_id=team_id,
            operation=f"{api_name}_api_error",
            user_message="External service temporarily unavailable. Please try again later.",
            **kwargs,
        )

    def _track(self, key: str, category: ErrorCategory, severity: AuditSeverity) -> None:
        entry = self._counts.get(key)
        if entry is None:
            self._counts[key] = _ErrorCount(category, severity, 1, _now())
            return
        entry.count += 1
        entry.severity = severity
        entry.last_seen = _now()

    def get_error_statistics(self, hours: int = 24) -> Dict[str, Any]:
        """Counts of handled errors seen within the last `hours` hours."""
        cutoff = _now() - timedelta(hours=hours)
        recent = [(key, e) for key, e in self._counts.items() if e.last_seen > cutoff]

        by_category: Dict[str, int] = defaultdict(int)
        by_severity: Dict[str, int] = defaultdict(int)
        for _, entry in recent:
            by_category[entry.category.value] += entry.count
            by_severity[entry.severity.value] += entry.count

        top: List[Dict[str, Any]] = [
            {"operation": key, "count": e.count, "last_seen": e.last_seen.isoformat()}
            for key, e in sorted(recent, key=lambda item: item[1].count, reverse=True)[:ERROR_STATS_TOP_N]
        ]
        return {
            "total_errors": sum(e.count for _, e in recent),
            "errors_by_category": dict(by_category),
            "errors_by_severity": dict(by_severity),
            "top_errors": top,
            "security_events": by_category.get(ErrorCategory.SECURITY.value, 0),
        }


# =============================================================================
# Middleware
# =============================================================================

def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """
    Get correlation ID from request or generate new one.

    Checks X-Correlation-ID header first, then request state.
    """
    correlation_id = request.headers.get("X-Correlation-ID")
    if correlation_id:
        return correlation_id

    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id

    return generate_correlation_id()


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Catches all exceptions and returns the standard error shape.

    IMPORTANT: Stack traces are NEVER returned to clients.
    """

    def __init__(self, app, error_handler: Optional[SecureErrorHandler] = None):
        super().__init__(app)
        self.error_handler = error_handler or SecureErrorHandler()

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id
        headers = {"X-Correlation-ID": correlation_id}
        client_ip = request.client.host if request.client else None

        try:
            response = await call_next(request)
            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except AppError as e:
            logger.warning(
                "Application error",
                extra={
                    "correlation_id": correlation_id,
                    "error_code": e.code,
                    "status_code": e.status_code,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            if e.category in AUDITED_CATEGORIES:
                await self.error_handler.handle_error(
                    e.category,
                    original_error=getattr(e, "internal_message", e.message),
                    operation=request.url.path,
                    request_id=correlation_id,
                    ip_address=client_ip,
                    user_agent=request.headers.get("user-agent"),
                )
            return JSONResponse(
                status_code=e.status_code,
                content=e.to_dict(correlation_id),
                headers=headers,
            )

        except HTTPException as e:
            logger.warning(
                "HTTP exception",
                extra={
                    "correlation_id": correlation_id,
                    "status_code": e.status_code,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "success": False,
                    "error": {
                        "code": "HTTP_ERROR",
                        "message": redact_error_message(str(e.detail)),
                        "category": ErrorCategory.VALIDATION.value,
                        "timestamp": _now().isoformat(),
                        "request_id": correlation_id,
                    },
                },
                headers=headers,
            )

        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            body = await self.error_handler.handle_error(
                ErrorCategory.SYSTEM,
                original_error=e,
                operation=request.url.path,
                request_id=correlation_id,
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=body,
                headers=headers,
            )
