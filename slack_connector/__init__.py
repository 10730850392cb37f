"""Token security core for the Slack to Supermemory connector."""

__version__ = "0.1.0"
