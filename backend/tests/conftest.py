"""Shared fixtures for flow metrics tests."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import (  # noqa: E402
    DONE,
    IN_PROGRESS,
    TO_DO,
    FakeJiraClient,
    make_history,
    make_issue,
    make_sprint,
)
from services.board_cache import BoardStatusCache  # noqa: E402
from services.config import MetricsConfig  # noqa: E402
from services.repository import InMemorySprintRepository  # noqa: E402


@pytest.fixture
def mock_jira_credentials():
    """Mock Jira credentials for testing."""
    return {
        "server": "https://test.atlassian.net",
        "email": "test@example.com",
        "token": "test-token-123"
    }


@pytest.fixture
def jira_headers(mock_jira_credentials):
    """Request headers carrying Jira credentials."""
    return {
        "X-Jira-Server": mock_jira_credentials["server"],
        "X-Jira-Email": mock_jira_credentials["email"],
        "X-Jira-Token": mock_jira_credentials["token"],
    }


@pytest.fixture
def config():
    """Defaults with the JSON file and environment ignored."""
    return MetricsConfig()


@pytest.fixture
def board_cache():
    return BoardStatusCache()


@pytest.fixture
def repository():
    return InMemorySprintRepository()


@pytest.fixture
def sample_raw_sprint():
    """Raw sprint as returned by the Agile API."""
    return {
        "id": 100,
        "name": "Sprint 1",
        "state": "closed",
        "startDate": "2024-01-01T00:00:00.000Z",
        "endDate": "2024-01-14T00:00:00.000Z",
        "completeDate": "2024-01-14T09:12:00.000Z",
        "originBoardId": 1,
        "goal": "Complete feature X"
    }


@pytest.fixture
def sample_raw_issue():
    """Raw issue with story points in the standard custom field."""
    return {
        "id": "10123",
        "key": "PROJ-123",
        "fields": {
            "summary": "Implement feature X",
            "issuetype": {"name": "Story", "subtask": False},
            "status": {"id": "10002", "name": "Done", "statusCategory": {"name": "Done"}},
            "created": "2024-01-02T10:00:00.000Z",
            "updated": "2024-01-10T15:30:00.000Z",
            "resolutiondate": "2024-01-10T15:30:00.000Z",
            "customfield_10002": 5.0
        }
    }


@pytest.fixture
def sample_raw_changelog():
    """Changelog page with a status change and an unrelated field change."""
    return {
        "isLast": True,
        "values": [
            {
                "created": "2024-01-08T09:00:00.000-0500",
                "items": [
                    {"field": "status", "from": "10001", "fromString": "In Progress",
                     "to": "10002", "toString": "Done"}
                ]
            },
            {
                "created": "2024-01-03T09:00:00.000Z",
                "items": [
                    {"field": "assignee", "from": None, "to": "abc"},
                    {"field": "status", "from": "10000", "fromString": "To Do",
                     "to": "10001", "toString": "In Progress"}
                ]
            }
        ]
    }


@pytest.fixture
def mock_fields_response():
    """Mock response for Jira fields endpoint."""
    return [
        {"id": "customfield_10002", "name": "Story Points", "schema": {"type": "number"}},
        {"id": "customfield_10016", "name": "Story point estimate", "schema": {"type": "number"}},
        {"id": "summary", "name": "Summary", "schema": {"type": "string"}},
        {"id": "status", "name": "Status", "schema": {"type": "status"}}
    ]


@pytest.fixture
def velocity_board():
    """One closed sprint: a 5 point issue done in time, a 3 point issue done late."""
    sprint = make_sprint(100, start="2024-01-01", end="2024-01-14")
    on_time = make_issue("PROJ-1", points=5)
    late = make_issue("PROJ-2", points=3)
    return FakeJiraClient(
        sprints=[sprint],
        issues_by_sprint={100: [on_time, late]},
        histories={
            "PROJ-1": make_history(
                "PROJ-1",
                ("2024-01-02", TO_DO, IN_PROGRESS),
                ("2024-01-10", IN_PROGRESS, DONE),
            ),
            "PROJ-2": make_history(
                "PROJ-2",
                ("2024-01-03", TO_DO, IN_PROGRESS),
                ("2024-01-16", IN_PROGRESS, DONE),
            ),
        },
    )


@pytest.fixture
def scrum_board():
    """Six closed sprints, one active sprint. Every issue is done mid-sprint."""
    sprints = []
    issues = {}
    histories = {}
    for n in range(6):
        sprint_id = 200 + n
        start = f"2024-{n + 1:02d}-01"
        end = f"2024-{n + 1:02d}-14"
        sprints.append(make_sprint(sprint_id, start=start, end=end))
        key = f"PROJ-{sprint_id}"
        issues[sprint_id] = [make_issue(key, points=10 + n)]
        histories[key] = make_history(key, (f"2024-{n + 1:02d}-10", IN_PROGRESS, DONE))

    sprints.append(make_sprint(300, state="active", start="2024-07-01", end="2024-07-14"))
    issues[300] = [make_issue("PROJ-300", points=8, status=IN_PROGRESS)]
    return FakeJiraClient(sprints=sprints, issues_by_sprint=issues, histories=histories)


@pytest.fixture
def app(config):
    """Create Flask test app."""
    from app import create_app
    app = create_app(config=config)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
