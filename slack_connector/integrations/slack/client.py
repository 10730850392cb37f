"""
Slack Web API client for the token security core.

Only the calls the security services need: auth.test for token health
checks and chat.postMessage for revocation notices. Every call carries
a bounded timeout; timeouts surface as SlackApiError so callers can
treat them as an unhealthy result rather than a crash.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from slack_connector.config.settings import (
    DEFAULT_SLACK_API_BASE_URL,
    DEFAULT_SLACK_API_TIMEOUT_SECONDS,
)
from slack_connector.platform.rate_limit import SlackRateLimiter

logger = logging.getLogger(__name__)

# auth.test errors meaning the token itself is no longer valid
INVALID_TOKEN_ERRORS = frozenset({
    "invalid_auth",
    "not_authed",
    "token_revoked",
    "token_expired",
    "account_inactive",
    "no_permission",
})


class SlackApiError(Exception):
    """Error calling the Slack Web API."""

    def __init__(
        self,
        message: str,
        method: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.method = method
        self.code = code
        self.status_code = status_code

    @property
    def is_timeout(self) -> bool:
        return self.code == "timeout"

    @property
    def is_invalid_token(self) -> bool:
        return self.code in INVALID_TOKEN_ERRORS


class SlackRateLimitedError(SlackApiError):
    """Slack (or the local limiter) refused the call for now."""

    def __init__(self, method: str, retry_after: int):
        super().__init__(
            f"Slack rate limit exceeded for {method}, retry after {retry_after}s",
            method=method,
            code="ratelimited",
            status_code=429,
        )
        self.retry_after = retry_after


@dataclass
class AuthTestResult:
    """Response from auth.test."""
    team_id: Optional[str] = None
    user_id: Optional[str] = None
    bot_id: Optional[str] = None
    url: Optional[str] = None


class SlackApiClient:
    """
    Async client for the Slack Web API.

    Usage:
        async with SlackApiClient() as slack:
            await slack.auth_test(token)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_SLACK_API_BASE_URL,
        timeout: float = DEFAULT_SLACK_API_TIMEOUT_SECONDS,
        rate_limiter: Optional[SlackRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json; charset=utf-8"},
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _call(
        self,
        method: str,
        token: str,
        payload: Optional[Dict[str, Any]] = None,
        team_id: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        POST a Web API method with a bearer token.

        Raises:
            SlackRateLimitedError: If the local limiter or Slack refuses the call
            SlackApiError: On timeout, transport error, HTTP error or ok=false
        """
        if self.rate_limiter is not None and team_id:
            limit = await self.rate_limiter.acquire(team_id, method, channel_id)
            if not limit.allowed:
                raise SlackRateLimitedError(method, limit.retry_after)

        try:
            response = await self._client.post(
                f"/{method}",
                json=payload or {},
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("Slack API timeout", extra={"method": method, "team_id": team_id})
            raise SlackApiError(f"Slack API timeout calling {method}", method, code="timeout") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 429:
                retry_after = int(e.response.headers.get("Retry-After", "60"))
                raise SlackRateLimitedError(method, retry_after) from e
            logger.error("Slack API HTTP error", extra={
                "method": method,
                "team_id": team_id,
                "status_code": status_code,
            })
            raise SlackApiError(
                f"Slack API error: {status_code}",
                method,
                code=str(status_code),
                status_code=status_code,
            ) from e
        except httpx.RequestError as e:
            logger.error("Slack API request error", extra={
                "method": method,
                "team_id": team_id,
                "error_type": type(e).__name__,
            })
            raise SlackApiError(f"Request failed: {type(e).__name__}", method, code="request_error") from e
        except ValueError as e:
            raise SlackApiError("Slack API returned invalid JSON", method, code="invalid_response") from e

        if not data.get("ok"):
            error_code = data.get("error", "unknown_error")
            raise SlackApiError(f"Slack API {method} failed: {error_code}", method, code=error_code)

        return data

    async def auth_test(self, token: str, team_id: Optional[str] = None) -> AuthTestResult:
        """Validate a token with auth.test."""
        data = await self._call("auth.test", token, team_id=team_id)
        return AuthTestResult(
            team_id=data.get("team_id"),
            user_id=data.get("user_id"),
            bot_id=data.get("bot_id"),
            url=data.get("url"),
        )

    async def post_message(
        self,
        token: str,
        channel: str,
        text: str,
        team_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send a plain-text message with chat.postMessage."""
        data = await self._call(
            "chat.postMessage",
            token,
            payload={"channel": channel, "text": text},
            team_id=team_id,
            channel_id=channel,
        )
        logger.info("Slack message posted", extra={"team_id": team_id, "channel": channel})
        return data
