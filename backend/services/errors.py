"""Error types shared by the flow metrics services."""

from typing import Optional


class JiraApiError(Exception):
    """A call to the Jira REST API failed."""

    def __init__(self, message: str, status: Optional[int] = None,
                 endpoint: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint


class JiraAuthenticationError(JiraApiError):
    """Credentials were rejected (401) or lack permission (403)."""

    def __init__(self, message: str = "Jira authentication failed",
                 status: int = 401, endpoint: Optional[str] = None):
        super().__init__(message, status, endpoint)


class JiraNotFoundError(JiraApiError):
    def __init__(self, resource: str, endpoint: Optional[str] = None):
        super().__init__(f"Jira resource not found: {resource}", 404, endpoint)


class JiraRateLimitError(JiraApiError):
    def __init__(self, message: str = "Jira API rate limit exceeded",
                 retry_after: Optional[float] = None, endpoint: Optional[str] = None):
        super().__init__(message, 429, endpoint)
        self.retry_after = retry_after


class PersistenceError(Exception):
    """The sprint repository could not read or write a record."""


class StageTimeoutError(Exception):
    """A time-boxed stage did not finish within its budget."""

    def __init__(self, stage: str, timeout_seconds: float):
        super().__init__(f"{stage} exceeded its {timeout_seconds:g}s budget")
        self.stage = stage
        self.timeout_seconds = timeout_seconds


class ConfigurationError(ValueError):
    """Invalid service configuration or request parameters."""
