from slack_connector.integrations.slack.client import (
    AuthTestResult,
    SlackApiClient,
    SlackApiError,
    SlackRateLimitedError,
)

__all__ = ["AuthTestResult", "SlackApiClient", "SlackApiError", "SlackRateLimitedError"]
