"""
Per-team Slack API rate limiting.

Keeps Slack Web API calls under Slack's published tier limits using
fixed one-minute windows keyed by team and method (and channel for
chat.postMessage).

The limiter is an explicit instance: construct one per process and pass
it to every component that calls Slack. SlackRateLimiter keeps windows in
process memory; RedisSlackRateLimiter shares them between processes.

Usage:
    limiter = SlackRateLimiter(audit_logger=audit)

    result = await limiter.acquire(team_id, "auth.test")
    if not result.allowed:
        ...  # back off for result.retry_after seconds
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis

from slack_connector.models.audit_log import AuditEventType
from slack_connector.platform.audit import AuditEvent, SecurityAuditLogger
from slack_connector.platform.audit_details import SecurityDetails

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
PER_CHANNEL_MIN_INTERVAL_SECONDS = 1.0


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SlackMethodLimit:
    method: str
    requests_per_minute: int
    per_channel: bool = False
    messages_per_request: Optional[int] = None


SLACK_RATE_LIMITS: Dict[str, SlackMethodLimit] = {
    # Non-marketplace apps: 1 request/minute, 15 messages per request
    "conversations.history": SlackMethodLimit("conversations.history", 1, messages_per_request=15),
    "conversations.replies": SlackMethodLimit("conversations.replies", 1, messages_per_request=15),
    # Tier 2
    "conversations.list": SlackMethodLimit("conversations.list", 20),
    "users.list": SlackMethodLimit("users.list", 20),
    # Tier 3
    "conversations.info": SlackMethodLimit("conversations.info", 50),
    "users.info": SlackMethodLimit("users.info", 50),
    "auth.test": SlackMethodLimit("auth.test", 50),
    # Special: about one message per second per channel
    "chat.postMessage": SlackMethodLimit("chat.postMessage", 60, per_channel=True),
    # Events API: 30,000 per hour
    "events": SlackMethodLimit("events", 500),
}


# ---------------------------------------------------------------------------
# Rate limit result dataclass
# ---------------------------------------------------------------------------

@dataclass
class RateLimitResult:
    """
    Result of a rate limit check.

    Attributes:
        allowed:     Whether the call may proceed.
        remaining:   Calls remaining in the current window.
        limit:       Calls allowed per window (0 for unlimited methods).
        reset_at:    Monotonic time when the current window resets.
        retry_after: Seconds until the caller should retry (0 if allowed).
    """

    allowed: bool
    remaining: int
    limit: int
    reset_at: float
    retry_after: int

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class _Window:
    count: int
    reset_at: float
    last_request: float


# ---------------------------------------------------------------------------
# SlackRateLimiter class
# ---------------------------------------------------------------------------

class SlackRateLimiter:
    """
    Fixed-window limiter for Slack Web API methods.

    Methods without a configured limit are always allowed.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, SlackMethodLimit]] = None,
        window_seconds: int = WINDOW_SECONDS,
        audit_logger: Optional[SecurityAuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = dict(limits if limits is not None else SLACK_RATE_LIMITS)
        self.window_seconds = window_seconds
        self.audit = audit_logger
        self._clock = clock
        self._windows: Dict[str, _Window] = {}

    def _key(self, team_id: str, method: str, channel_id: Optional[str]) -> str:
        config = self.limits.get(method)
        if channel_id and config and config.per_channel:
            return f"{team_id}:{method}:{channel_id}"
        return f"{team_id}:{method}"

    def check(
        self,
        team_id: str,
        method: str,
        channel_id: Optional[str] = None,
    ) -> RateLimitResult:
        """Check and, if allowed, count one call."""
        now = self._clock()
        config = self.limits.get(method)
        if config is None:
            return RateLimitResult(allowed=True, remaining=0, limit=0, reset_at=now, retry_after=0)

        limit = config.requests_per_minute
        key = self._key(team_id, method, channel_id)
        window = self._windows.get(key)

        if window is None or now >= window.reset_at:
            window = _Window(count=1, reset_at=now + self.window_seconds, last_request=now)
            self._windows[key] = window
            return RateLimitResult(
                allowed=True, remaining=limit - 1, limit=limit,
                reset_at=window.reset_at, retry_after=0,
            )

        if window.count >= limit:
            return RateLimitResult(
                allowed=False, remaining=0, limit=limit, reset_at=window.reset_at,
                retry_after=max(1, math.ceil(window.reset_at - now)),
            )

        if config.per_channel and channel_id:
            since_last = now - window.last_request
            if since_last < PER_CHANNEL_MIN_INTERVAL_SECONDS:
                return RateLimitResult(
                    allowed=False, remaining=limit - window.count, limit=limit,
                    reset_at=window.reset_at,
                    retry_after=max(1, math.ceil(PER_CHANNEL_MIN_INTERVAL_SECONDS - since_last)),
                )

        window.count += 1
        window.last_request = now
        return RateLimitResult(
            allowed=True, remaining=limit - window.count, limit=limit,
            reset_at=window.reset_at, retry_after=0,
        )

    async def acquire(
        self,
        team_id: str,
        method: str,
        channel_id: Optional[str] = None,
    ) -> RateLimitResult:
        """Like check(), but audit-logs denied calls."""
        result = self.check(team_id, method, channel_id)
        if not result.allowed:
            logger.warning(
                "Slack rate limit exceeded",
                extra={"team_id": team_id, "method": method, "retry_after": result.retry_after},
            )
            if self.audit is not None:
                await self.audit.log_event(AuditEvent(
                    event_type=AuditEventType.RATE_LIMIT_EXCEEDED,
                    team_id=team_id,
                    success=False,
                    details=SecurityDetails(
                        method=method,
                        limit=result.limit,
                        retry_after_seconds=result.retry_after,
                    ),
                ))
        return result

    async def wait_for_slot(
        self,
        team_id: str,
        method: str,
        channel_id: Optional[str] = None,
        max_wait_seconds: float = WINDOW_SECONDS,
    ) -> RateLimitResult:
        """
        Sleep until a call is allowed or max_wait_seconds would be exceeded.

        Returns the last check result; callers must still honor allowed.
        """
        waited = 0.0
        while True:
            result = self.check(team_id, method, channel_id)
            if result.allowed or waited + result.retry_after > max_wait_seconds:
                return result
            await asyncio.sleep(result.retry_after)
            waited += result.retry_after

    def get_status(
        self,
        team_id: str,
        method: str,
        channel_id: Optional[str] = None,
    ) -> RateLimitResult:
        """Current window state without counting a call."""
        now = self._clock()
        config = self.limits.get(method)
        if config is None:
            return RateLimitResult(allowed=True, remaining=0, limit=0, reset_at=now, retry_after=0)

        limit = config.requests_per_minute
        window = self._windows.get(self._key(team_id, method, channel_id))
        if window is None or now >= window.reset_at:
            return RateLimitResult(
                allowed=True, remaining=limit, limit=limit,
                reset_at=now + self.window_seconds, retry_after=0,
            )
        remaining = max(0, limit - window.count)
        return RateLimitResult(
            allowed=remaining > 0, remaining=remaining, limit=limit,
            reset_at=window.reset_at,
            retry_after=0 if remaining else max(1, math.ceil(window.reset_at - now)),
        )

    def reset(self, team_id: Optional[str] = None) -> None:
        """Forget windows for one team, or for every team."""
        if team_id is None:
            self._windows.clear()
            return
        prefix = f"{team_id}:"
        for key in [k for k in self._windows if k.startswith(prefix)]:
            del self._windows[key]

    def cleanup(self) -> int:
        """Drop expired windows. Returns the number removed."""
        now = self._clock()
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)


# ---------------------------------------------------------------------------
# Redis-backed limiter
# ---------------------------------------------------------------------------

class RedisSlackRateLimiter(SlackRateLimiter):
    """
    Fixed-window limiter whose counters live in Redis.

    Every worker that talks to Slack for the same team draws from one
    budget. Keys are ``slack_ratelimit:{team_id}:{method}[:{channel_id}]``
    and expire with their window, so cleanup() has nothing to do.

    If Redis is unavailable the limiter fails open: the call is allowed
    and a warning is logged. Slack's own 429 handling still applies.
    """

    KEY_PREFIX = "slack_ratelimit"

    def __init__(
        self,
        redis_url: str,
        limits: Optional[Dict[str, SlackMethodLimit]] = None,
        window_seconds: int = WINDOW_SECONDS,
        audit_logger: Optional[SecurityAuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(limits, window_seconds, audit_logger, clock)
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    def _get_redis(self) -> redis.Redis:
        """Connect lazily so the module imports before Redis is reachable."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._redis

    def _redis_key(self, team_id: str, method: str, channel_id: Optional[str]) -> str:
        return f"{self.KEY_PREFIX}:{self._key(team_id, method, channel_id)}"

    def _read_window(self, r: redis.Redis, key: str):
        pipe = r.pipeline(transaction=True)
        pipe.get(key)
        pipe.pttl(key)
        count, ttl_ms = pipe.execute()
        reset_in = ttl_ms / 1000 if ttl_ms and ttl_ms > 0 else float(self.window_seconds)
        return int(count or 0), reset_in

    def check(
        self,
        team_id: str,
        method: str,
        channel_id: Optional[str] = None,
    ) -> RateLimitResult:
        now = self._clock()
        config = self.limits.get(method)
        if config is None:
            return RateLimitResult(allowed=True, remaining=0, limit=0, reset_at=now, retry_after=0)

        limit = config.requests_per_minute
        key = self._redis_key(team_id, method, channel_id)

        try:
            r = self._get_redis()
            count, reset_in = self._read_window(r, key)

            if count >= limit:
                return RateLimitResult(
                    allowed=False, remaining=0, limit=limit, reset_at=now + reset_in,
                    retry_after=max(1, math.ceil(reset_in)),
                )

            if config.per_channel and channel_id:
                spacing_ms = int(PER_CHANNEL_MIN_INTERVAL_SECONDS * 1000)
                if not r.set(f"{key}:last", "1", px=spacing_ms, nx=True):
                    return RateLimitResult(
                        allowed=False, remaining=limit - count, limit=limit,
                        reset_at=now + reset_in, retry_after=1,
                    )

            new_count = r.incr(key)
            if new_count == 1:
                r.expire(key, self.window_seconds)

            return RateLimitResult(
                allowed=True, remaining=max(0, limit - int(new_count)), limit=limit,
                reset_at=now + reset_in, retry_after=0,
            )

        except redis.RedisError as exc:
            logger.warning(
                "Redis unavailable for Slack rate limiting - allowing call (fail-open)",
                extra={
                    "error_type": type(exc).__name__,
                    "team_id": team_id,
                    "method": method,
                },
            )
            return RateLimitResult(
                allowed=True, remaining=limit, limit=limit,
                reset_at=now + self.window_seconds, retry_after=0,
            )

    def get_status(
        self,
        team_id: str,
        method: str,
        channel_id: Optional[str] = None,
    ) -> RateLimitResult:
        now = self._clock()
        config = self.limits.get(method)
        if config is None:
            return RateLimitResult(allowed=True, remaining=0, limit=0, reset_at=now, retry_after=0)

        limit = config.requests_per_minute
        try:
            count, reset_in = self._read_window(
                self._get_redis(), self._redis_key(team_id, method, channel_id)
            )
        except redis.RedisError:
            logger.warning("Redis unavailable for rate limit status", extra={"team_id": team_id})
            count, reset_in = 0, float(self.window_seconds)

        remaining = max(0, limit - count)
        return RateLimitResult(
            allowed=remaining > 0, remaining=remaining, limit=limit,
            reset_at=now + reset_in,
            retry_after=0 if remaining else max(1, math.ceil(reset_in)),
        )

    def reset(self, team_id: Optional[str] = None) -> None:
        pattern = f"{self.KEY_PREFIX}:*" if team_id is None else f"{self.KEY_PREFIX}:{team_id}:*"
        r = self._get_redis()
        keys = list(r.scan_iter(match=pattern))
        if keys:
            r.delete(*keys)

    def cleanup(self) -> int:
        return 0


def build_rate_limiter(
    redis_url: Optional[str] = None,
    audit_logger: Optional[SecurityAuditLogger] = None,
) -> SlackRateLimiter:
    """Redis-backed limiter when REDIS_URL is configured, in-process otherwise."""
    if redis_url:
        return RedisSlackRateLimiter(redis_url, audit_logger=audit_logger)
    return SlackRateLimiter(audit_logger=audit_logger)
