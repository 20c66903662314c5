"""Decides whether an issue counts toward a sprint's velocity."""

import logging
from typing import Iterable

from services.models import REASON_DONE_AT_SPRINT_END, Issue, Sprint, ValidationResult

logger = logging.getLogger(__name__)


class CompletionValidator:
    """Validates issues against the done statuses of their board.

    An issue is valid when it has positive story points and first entered a
    done status on or before the sprint end date. The change history is only
    fetched when the cheaper checks pass.
    """

    def __init__(self, client):
        self.client = client

    def validate(self, issue: Issue, sprint: Sprint,
                 done_status_ids: Iterable[str]) -> ValidationResult:
        if not issue.has_positive_points:
            return ValidationResult.not_valid(issue.key)

        done_status_ids = frozenset(done_status_ids)
        if not done_status_ids:
            return ValidationResult.not_valid(issue.key)

        if sprint.end_date is None:
            logger.warning(f"[CompletionValidator] Sprint {sprint.id} has no end date")
            return ValidationResult.not_valid(issue.key)

        result = self.client.get_issue_change_history(issue.key)
        if not result.success:
            logger.warning(
                f"[CompletionValidator] History lookup failed for {issue.key}: {result.error}"
            )
            return ValidationResult.not_valid(issue.key)

        done_at = result.data.earliest_transition(done_status_ids)
        if done_at is None:
            return ValidationResult.not_valid(issue.key)

        if done_at <= sprint.end_date:
            return ValidationResult(issue.key, True, REASON_DONE_AT_SPRINT_END, done_at)
        return ValidationResult.not_valid(issue.key, done_at)
