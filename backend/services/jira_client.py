"""Jira REST client used by the flow metrics services.

Every public method returns an ``ApiResponse`` envelope instead of raising,
so callers always have a defined failure path.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from services.errors import (
    JiraApiError,
    JiraAuthenticationError,
    JiraNotFoundError,
    JiraRateLimitError,
)
from services.models import BoardColumn, ChangeHistory, Issue, Sprint

logger = logging.getLogger(__name__)

STORY_POINTS_FALLBACK_FIELDS = ["customfield_10002", "customfield_10016", "customfield_10020"]

ISSUE_FIELDS = ["summary", "issuetype", "status", "created", "updated", "resolutiondate"]


def credential_scope(server: str, email: str, token: str) -> str:
    """Cache namespace for one set of credentials on one Jira server.

    The token is hashed so it never appears in cache keys or logs.
    """
    digest = hashlib.sha256(f"{email}:{token}".encode("utf-8")).hexdigest()[:16]
    return f"{server.rstrip('/')}:{digest}"


@dataclass(frozen=True)
class ApiResponse:
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def ok(cls, data) -> "ApiResponse":
        return cls(success=True, data=data, status_code=200)

    @classmethod
    def failure(cls, error: str, status_code: Optional[int] = None) -> "ApiResponse":
        return cls(success=False, error=error, status_code=status_code)


class JiraClient:
    """Thin wrapper over the Jira Cloud REST and Agile APIs."""

    def __init__(self, server: str, email: str, token: str, timeout: float = 30):
        self.server = server.rstrip("/")
        self.email = email
        self.token = token
        self.timeout = timeout
        self.auth_failed = False
        self.request_count = 0
        self._story_points_fields_cache = None
        self._history_cache = {}

    @property
    def cache_scope(self) -> str:
        return credential_scope(self.server, self.email, self.token)

    def _request(self, endpoint: str, params: Optional[dict] = None):
        """Make authenticated request to Jira API.

        Raises:
            JiraAuthenticationError: on 401/403, or if the session already failed auth.
            JiraNotFoundError: on 404.
            JiraRateLimitError: on 429.
            JiraApiError: on any other failure, including network errors.
        """
        if self.auth_failed:
            raise JiraAuthenticationError(
                "Jira authentication failed earlier in this session", endpoint=endpoint
            )

        self.request_count += 1
        try:
            response = requests.get(
                f"{self.server}{endpoint}",
                auth=(self.email, self.token),
                headers={"Accept": "application/json"},
                params=params,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise JiraApiError(f"Request to Jira timed out: {e}", endpoint=endpoint) from e
        except requests.exceptions.RequestException as e:
            raise JiraApiError(f"Network error: {e}", endpoint=endpoint) from e

        status = response.status_code
        if status in (401, 403):
            self.auth_failed = True
            logger.warning(f"[JiraClient] Authentication failed ({status}) for {endpoint}")
            raise JiraAuthenticationError(status=status, endpoint=endpoint)
        if status == 404:
            raise JiraNotFoundError(endpoint, endpoint=endpoint)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise JiraRateLimitError(
                retry_after=float(retry_after) if retry_after else None,
                endpoint=endpoint
            )
        if status >= 400:
            raise JiraApiError(f"HTTP {status}: {response.text}", status, endpoint)

        return response.json()

    def _paginate(self, endpoint: str, key: str, params: Optional[dict] = None,
                  max_results: int = 50) -> list:
        """Collect every page of a startAt/maxResults listing."""
        results = []
        start_at = 0

        while True:
            page_params = dict(params or {})
            page_params.update({"startAt": start_at, "maxResults": max_results})
            data = self._request(endpoint, params=page_params)

            values = data.get(key, [])
            results.extend(values)

            if data.get("isLast") or len(values) < max_results:
                break

            start_at += max_results

        return results

    def _envelope(self, operation: str, fn: Callable[[], Any]) -> ApiResponse:
        try:
            return ApiResponse.ok(fn())
        except JiraApiError as e:
            logger.warning(f"[JiraClient] {operation} failed: {e}")
            return ApiResponse.failure(str(e), e.status)

    def _get_story_points_fields(self) -> list:
        """Find all possible story points custom field IDs."""
        if self._story_points_fields_cache is not None:
            return self._story_points_fields_cache

        sp_fields = []
        try:
            fields = self._request("/rest/api/3/field")
        except JiraAuthenticationError:
            raise
        except JiraApiError as e:
            logger.warning(f"[JiraClient] Field discovery failed, using fallbacks: {e}")
            fields = []

        for field in fields:
            name = field.get("name", "")
            field_id = field.get("id", "")
            if field.get("schema", {}).get("type") != "number":
                continue

            if name == "Story Points":
                sp_fields.insert(0, field_id)
            elif "story point" in name.lower():
                sp_fields.append(field_id)

        for fallback in STORY_POINTS_FALLBACK_FIELDS:
            if fallback not in sp_fields:
                sp_fields.append(fallback)

        self._story_points_fields_cache = sp_fields
        return sp_fields

    def _to_issue(self, raw: dict) -> Issue:
        fields = raw.get("fields") or {}
        points = None
        for field_id in self._get_story_points_fields():
            value = fields.get(field_id)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                points = float(value)
                break
        return Issue.from_jira(raw, story_points=points)

    def _issue_fields(self) -> str:
        return ",".join(ISSUE_FIELDS + self._get_story_points_fields())

    def get_board_sprints(self, board_id: int) -> ApiResponse:
        """All sprints of a board. Kanban boards yield an empty list."""
        def fetch():
            try:
                raw = self._paginate(f"/rest/agile/1.0/board/{board_id}/sprint", "values")
            except JiraApiError as e:
                if e.status == 400 and "support sprints" in str(e).lower():
                    logger.info(f"[JiraClient] Board {board_id} does not support sprints")
                    return []
                raise
            return [Sprint.from_jira(s, board_id) for s in raw]

        return self._envelope(f"get_board_sprints({board_id})", fetch)

    def get_boards(self, project_key: Optional[str] = None,
                   board_type: Optional[str] = None) -> ApiResponse:
        """Boards visible to the user, optionally limited to one project or board type."""
        def fetch():
            params = {}
            if project_key:
                params["projectKeyOrId"] = project_key
            if board_type:
                params["type"] = board_type
            raw = self._paginate("/rest/agile/1.0/board", "values", params=params)
            return [
                {
                    "id": board["id"],
                    "name": board["name"],
                    "type": board.get("type"),
                    "projectKey": board.get("location", {}).get("projectKey"),
                    "projectName": board.get("location", {}).get("displayName"),
                }
                for board in raw
            ]

        return self._envelope(f"get_boards({project_key or 'all'})", fetch)

    def get_board_info(self, board_id: int) -> ApiResponse:
        def fetch():
            data = self._request(f"/rest/agile/1.0/board/{board_id}")
            return {
                "id": data.get("id", board_id),
                "name": data.get("name") or f"Board {board_id}",
                "type": data.get("type"),
            }

        return self._envelope(f"get_board_info({board_id})", fetch)

    def get_sprint_issues(self, sprint_id: int) -> ApiResponse:
        def fetch():
            raw = self._paginate(
                f"/rest/agile/1.0/sprint/{sprint_id}/issue", "issues",
                params={"fields": self._issue_fields()},
                max_results=100
            )
            return [self._to_issue(i) for i in raw]

        return self._envelope(f"get_sprint_issues({sprint_id})", fetch)

    def get_board_issues(self, board_id: int, jql: Optional[str] = None) -> ApiResponse:
        def fetch():
            params = {"fields": self._issue_fields()}
            if jql:
                params["jql"] = jql
            raw = self._paginate(
                f"/rest/agile/1.0/board/{board_id}/issue", "issues",
                params=params, max_results=100
            )
            return [self._to_issue(i) for i in raw]

        return self._envelope(f"get_board_issues({board_id})", fetch)

    def get_issue_change_history(self, issue_key: str) -> ApiResponse:
        """Status history of one issue, fetched at most once per client."""
        if issue_key in self._history_cache:
            return ApiResponse.ok(self._history_cache[issue_key])

        def fetch():
            histories = self._paginate(
                f"/rest/api/3/issue/{issue_key}/changelog", "values", max_results=100
            )
            history = ChangeHistory.from_jira_histories(issue_key, histories)
            self._history_cache[issue_key] = history
            return history

        return self._envelope(f"get_issue_change_history({issue_key})", fetch)

    def get_board_column_configuration(self, board_id: int) -> ApiResponse:
        """Ordered board columns with their mapped status ids."""
        def fetch():
            data = self._request(f"/rest/agile/1.0/board/{board_id}/configuration")
            column_config = data.get("columnConfig") or {}
            if "columns" not in column_config:
                raise JiraApiError(
                    f"Board {board_id} configuration not found or invalid",
                    endpoint=f"/rest/agile/1.0/board/{board_id}/configuration"
                )
            columns = []
            for column in column_config["columns"]:
                statuses = column.get("statuses") or []
                columns.append(BoardColumn(
                    name=column.get("name", ""),
                    status_ids=tuple(str(s.get("id")) for s in statuses if s.get("id") is not None),
                    status_names=tuple(s.get("name", "") for s in statuses),
                ))
            return columns

        return self._envelope(f"get_board_column_configuration({board_id})", fetch)

    def check_connection(self) -> ApiResponse:
        def fetch():
            user = self._request("/rest/api/3/myself")
            return {
                "accountId": user.get("accountId"),
                "displayName": user.get("displayName"),
                "emailAddress": user.get("emailAddress"),
            }

        return self._envelope("check_connection", fetch)

    def browse_url(self, issue_key: str) -> str:
        return f"{self.server}/browse/{issue_key}"
