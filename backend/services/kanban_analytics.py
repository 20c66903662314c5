"""Board-level cycle time analytics."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from services.board_cache import BoardStatusCache
from services.cancellation import CancellationToken
from services.cycle_time import (
    calculate_cycle_time,
    calculate_percentiles,
    calculate_probability_distribution,
    calculate_status_times,
)
from services.errors import ConfigurationError
from services.jira_client import ApiResponse
from services.models import CATEGORY_DONE, parse_jira_datetime, to_iso, utc_now

logger = logging.getLogger(__name__)

PERIOD_DAYS = {
    "last_15_days": 15,
    "last_month": 30,
    "last_3_months": 90,
}


@dataclass(frozen=True)
class TimePeriodFilter:
    """Restricts issues by creation date. ``kind`` is a PERIOD_DAYS key or "custom"."""

    kind: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def parse(cls, period: Optional[str], start_date: Optional[str] = None,
              end_date: Optional[str] = None) -> Optional["TimePeriodFilter"]:
        if not period or period == "all":
            return None
        if period in PERIOD_DAYS:
            return cls(kind=period)
        if period == "custom":
            start = parse_jira_datetime(start_date)
            end = parse_jira_datetime(end_date)
            if start is None or end is None:
                raise ConfigurationError("custom time period requires start_date and end_date")
            if end < start:
                raise ConfigurationError("end_date must not be before start_date")
            return cls(kind="custom", start=start, end=end)
        raise ConfigurationError(f"Unknown time period: {period}")

    def bounds(self, now: Optional[datetime] = None):
        if self.kind == "custom":
            # Whole end day is included
            end = self.end
            if end.hour == end.minute == end.second == 0:
                end = end + timedelta(days=1)
            return self.start, end
        now = now or utc_now()
        return now - timedelta(days=PERIOD_DAYS[self.kind]), now

    def contains(self, value: Optional[datetime], now: Optional[datetime] = None) -> bool:
        if value is None:
            return False
        start, end = self.bounds(now)
        return start <= value <= end

    def to_dict(self) -> dict:
        return {"type": self.kind, "startDate": to_iso(self.start), "endDate": to_iso(self.end)}


def empty_analytics(board_id: int) -> dict:
    return {
        "boardId": board_id,
        "totalIssues": 0,
        "completedIssues": 0,
        "estimatedCycleTimes": 0,
        "cycleTimePercentiles": calculate_percentiles([]),
        "cycleTimeProbability": calculate_probability_distribution([]),
        "issueDetails": [],
        "calculatedAt": to_iso(utc_now()),
    }


class KanbanAnalyticsService:
    def __init__(self, client, board_cache: BoardStatusCache, confidence_threshold: float = 85):
        self.client = client
        self.board_cache = board_cache
        self.confidence_threshold = confidence_threshold

    def get_analytics(self, board_id: int, time_period: Optional[TimePeriodFilter] = None,
                      issue_types: Optional[Iterable[str]] = None,
                      token: Optional[CancellationToken] = None) -> dict:
        """Cycle time percentiles, distribution and per-issue breakdowns for a board.

        Args:
            board_id: Jira board ID.
            time_period: Optional creation-date filter.
            issue_types: Optional issue type names to keep (case-insensitive).
            token: Checked before each change history lookup.

        Returns:
            Analytics dict. A board that cannot be loaded gives the empty result.
        """
        configuration = self.board_cache.get_configuration(board_id, self.client)
        if not configuration.column_status_ids:
            logger.warning(f"[KanbanAnalytics] No column configuration for board {board_id}")
            result = empty_analytics(board_id)
            self._describe_filters(result, time_period, issue_types)
            return result

        issues_result = self.client.get_board_issues(board_id)
        if not issues_result.success:
            logger.warning(f"[KanbanAnalytics] Could not load issues for board {board_id}: {issues_result.error}")
            result = empty_analytics(board_id)
            self._describe_filters(result, time_period, issue_types)
            return result

        issues = issues_result.data
        if issue_types:
            wanted = {name.lower() for name in issue_types}
            issues = [i for i in issues if i.issue_type.lower() in wanted]
        if time_period is not None:
            now = utc_now()
            issues = [i for i in issues if time_period.contains(i.created, now)]

        completed = [
            i for i in issues
            if i.status.id in configuration.done_status_ids or i.status.category == CATEGORY_DONE
        ]
        logger.info(
            f"[KanbanAnalytics] Board {board_id}: {len(issues)} issues after filters, "
            f"{len(completed)} completed"
        )

        durations = []
        details = []
        estimated = 0
        for issue in completed:
            if token is not None and token.cancelled:
                logger.info(f"[KanbanAnalytics] Cancelled after {len(details)} issues")
                break
            history_result = self.client.get_issue_change_history(issue.key)
            if not history_result.success:
                continue
            history = history_result.data
            cycle_time = calculate_cycle_time(
                issue, history, configuration.to_do_status_ids, configuration.done_status_ids
            )
            if cycle_time is None:
                continue

            durations.append(cycle_time.duration_hours)
            if cycle_time.is_estimated:
                estimated += 1
            status_times = calculate_status_times(
                history, cycle_time, configuration.column_status_ids, issue.created
            )
            details.append({
                "key": issue.key,
                "summary": issue.summary,
                "issueType": issue.issue_type,
                "status": issue.status.name,
                "url": self.client.browse_url(issue.key),
                "cycleTimeDays": cycle_time.duration_days,
                "calculationMethod": cycle_time.calculation_method,
                "isEstimated": cycle_time.is_estimated,
                "cycleTime": cycle_time.to_dict(),
                "statusTimes": [s.to_dict() for s in status_times],
            })

        result = {
            "boardId": board_id,
            "totalIssues": len(issues),
            "completedIssues": len(details),
            "estimatedCycleTimes": estimated,
            "cycleTimePercentiles": calculate_percentiles(durations),
            "cycleTimeProbability": calculate_probability_distribution(
                durations, self.confidence_threshold
            ),
            "issueDetails": details,
            "calculatedAt": to_iso(utc_now()),
        }
        self._describe_filters(result, time_period, issue_types)
        return result

    def get_issue_types(self, board_id: int):
        """Distinct issue type names on a board, sorted.

        Returns an ApiResponse whose ``data`` holds ``issueTypes`` and
        ``totalIssues``. A failed issue fetch is passed through unchanged.
        """
        result = self.client.get_board_issues(board_id)
        if not result.success:
            logger.warning(f"[KanbanAnalytics] Could not load issues for board {board_id}: {result.error}")
            return result

        issue_types = sorted({i.issue_type for i in result.data if i.issue_type})
        logger.info(f"[KanbanAnalytics] Board {board_id}: {len(issue_types)} issue types")
        return ApiResponse.ok({
            "boardId": board_id,
            "issueTypes": issue_types,
            "totalIssues": len(result.data),
        })

    @staticmethod
    def _describe_filters(result: dict, time_period, issue_types):
        result["timePeriod"] = time_period.to_dict() if time_period else None
        result["issueTypes"] = list(issue_types) if issue_types else []
