"""Tests for Kanban cycle time analytics."""

from datetime import timedelta

import pytest

from fakes import BACKLOG, DONE, IN_PROGRESS, TO_DO, FakeJiraClient, dt, make_history, make_issue
from services.board_cache import BoardStatusCache
from services.errors import ConfigurationError
from services.kanban_analytics import KanbanAnalyticsService, TimePeriodFilter
from services.models import utc_now


def days_ago(days):
    return (utc_now() - timedelta(days=days)).strftime("%Y-%m-%d")


@pytest.fixture
def kanban_board():
    """Two done stories, one done bug, one story still in progress."""
    issues = [
        make_issue("KAN-1", created="2024-01-01"),
        make_issue("KAN-2", created="2024-01-01"),
        make_issue("KAN-3", issue_type="Bug", created="2024-01-01"),
        make_issue("KAN-4", status=IN_PROGRESS, created="2024-01-01"),
    ]
    histories = {
        "KAN-1": make_history(
            "KAN-1",
            ("2024-01-02", BACKLOG, TO_DO),
            ("2024-01-03", TO_DO, IN_PROGRESS),
            ("2024-01-04", IN_PROGRESS, DONE),
        ),
        "KAN-2": make_history(
            "KAN-2",
            ("2024-01-05", IN_PROGRESS, DONE),
        ),
        "KAN-3": make_history(
            "KAN-3",
            ("2024-01-02", BACKLOG, TO_DO),
            ("2024-01-12", TO_DO, DONE),
        ),
        "KAN-4": make_history("KAN-4", ("2024-01-02", TO_DO, IN_PROGRESS)),
    }
    return FakeJiraClient(board_issues=issues, histories=histories)


class TestTimePeriodFilter:
    """Test time period parsing."""

    @pytest.mark.parametrize("period", [None, "", "all"])
    def test_no_filter(self, period):
        assert TimePeriodFilter.parse(period) is None

    def test_named_period(self):
        """Named periods cover the trailing number of days."""
        period = TimePeriodFilter.parse("last_15_days")
        assert period.contains(dt(days_ago(3)))
        assert not period.contains(dt(days_ago(20)))

    def test_custom_includes_end_day(self):
        """A date-only end date covers the whole day."""
        period = TimePeriodFilter.parse("custom", "2024-01-01", "2024-01-31")
        assert period.contains(dt("2024-01-31T18:00"))
        assert not period.contains(dt("2024-02-02"))

    def test_custom_requires_dates(self):
        with pytest.raises(ConfigurationError):
            TimePeriodFilter.parse("custom", "2024-01-01")

    def test_custom_end_before_start(self):
        with pytest.raises(ConfigurationError):
            TimePeriodFilter.parse("custom", "2024-02-01", "2024-01-01")

    def test_unknown_period(self):
        with pytest.raises(ConfigurationError):
            TimePeriodFilter.parse("last_decade")


class TestKanbanAnalytics:
    """Test board analytics."""

    def test_completed_issues_only(self, kanban_board):
        """Only done issues get a cycle time."""
        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_analytics(1)

        assert result["totalIssues"] == 4
        assert result["completedIssues"] == 3
        assert [d["key"] for d in result["issueDetails"]] == ["KAN-1", "KAN-2", "KAN-3"]
        assert kanban_board.count("get_issue_change_history") == 3

    def test_estimated_cycle_times(self, kanban_board):
        """Issues without a to-do entry fall back to the creation date."""
        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_analytics(1)

        details = {d["key"]: d for d in result["issueDetails"]}
        assert result["estimatedCycleTimes"] == 1
        assert details["KAN-2"]["isEstimated"]
        assert details["KAN-2"]["cycleTimeDays"] == 4
        assert details["KAN-1"]["cycleTimeDays"] == 2
        assert details["KAN-1"]["url"].endswith("/browse/KAN-1")

    def test_percentiles_and_distribution(self, kanban_board):
        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_analytics(1)

        percentiles = result["cycleTimePercentiles"]
        assert percentiles["sampleSize"] == 3
        assert percentiles["p50"] == 4 * 24
        assert percentiles["p95"] == 10 * 24
        assert result["cycleTimeProbability"]["totalIssues"] == 3

    def test_issue_type_filter(self, kanban_board):
        """Issue type filtering is case-insensitive."""
        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_analytics(1, issue_types=["bug"])
        assert [d["key"] for d in result["issueDetails"]] == ["KAN-3"]
        assert result["issueTypes"] == ["bug"]

    def test_time_period_filter(self, kanban_board):
        """Old issues fall outside a trailing period."""
        kanban_board.board_issues.append(make_issue("KAN-5", created=days_ago(2)))
        kanban_board.histories["KAN-5"] = make_history(
            "KAN-5", (days_ago(1), TO_DO, DONE)
        )

        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_analytics(
            1, time_period=TimePeriodFilter.parse("last_15_days")
        )

        assert result["totalIssues"] == 1
        assert [d["key"] for d in result["issueDetails"]] == ["KAN-5"]
        assert result["timePeriod"]["type"] == "last_15_days"

    def test_status_times_included(self, kanban_board):
        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_analytics(1)
        statuses = [s["statusId"] for s in result["issueDetails"][0]["statusTimes"]]
        assert statuses == [TO_DO, IN_PROGRESS, DONE]

    def test_issue_fetch_failure_gives_empty_result(self, kanban_board):
        kanban_board.fail_board_issues = True
        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_analytics(1)
        assert result["totalIssues"] == 0
        assert result["issueDetails"] == []
        assert result["cycleTimeProbability"]["recommendation"] is None

    def test_configuration_failure_gives_empty_result(self, kanban_board):
        kanban_board.fail_configuration = True
        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_analytics(1)
        assert result["totalIssues"] == 0
        assert kanban_board.count("get_board_issues") == 0

    def test_history_failure_skips_issue(self, kanban_board):
        kanban_board.failing_histories.add("KAN-1")
        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_analytics(1)
        assert result["completedIssues"] == 2


class TestIssueTypes:
    """Test the issue type listing."""

    def test_distinct_and_sorted(self, kanban_board):
        kanban_board.board_issues.append(make_issue("KAN-5", issue_type="Epic"))

        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_issue_types(1)

        assert result.success
        assert result.data["issueTypes"] == ["Bug", "Epic", "Story"]
        assert result.data["totalIssues"] == 5

    def test_fetch_failure_passed_through(self, kanban_board):
        kanban_board.fail_board_issues = True
        result = KanbanAnalyticsService(kanban_board, BoardStatusCache()).get_issue_types(1)
        assert not result.success
        assert result.status_code == 500
