"""Batch velocity validation across sprints and boards.

Board configuration is fetched once per distinct board, then every issue of
that board's sprints is validated sequentially against the shared done set.
"""

import logging
from collections import OrderedDict
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from services.board_cache import BoardStatusCache
from services.cancellation import CancellationToken
from services.completion_validator import CompletionValidator
from services.models import BatchValidationResult, Issue, Sprint, ValidationProgress

logger = logging.getLogger(__name__)

SprintIssues = Tuple[Sprint, Sequence[Issue]]
ProgressListener = Callable[[ValidationProgress], None]


def committed_points(issues: Iterable[Issue]) -> float:
    """Sum of positive story points. Unestimated issues add nothing."""
    return sum(issue.story_points for issue in issues if issue.has_positive_points)


class BatchValidator:
    def __init__(self, client, board_cache: BoardStatusCache,
                 default_board_id: Optional[int] = None):
        self.client = client
        self.board_cache = board_cache
        self.default_board_id = default_board_id
        self.validator = CompletionValidator(client)

    def _group_by_board(self, pairs: Sequence[SprintIssues]) -> "OrderedDict[int, list]":
        groups = OrderedDict()
        for sprint, issues in pairs:
            board_id = sprint.origin_board_id
            if board_id is None:
                board_id = self.default_board_id
            groups.setdefault(board_id, []).append((sprint, issues))
        return groups

    def validate_batch(self, pairs: Sequence[SprintIssues],
                       on_progress: Optional[ProgressListener] = None,
                       token: Optional[CancellationToken] = None) -> List[BatchValidationResult]:
        """Validate every (sprint, issues) pair.

        Args:
            pairs: Sprints with their issues.
            on_progress: Called with a ValidationProgress before each issue.
            token: Checked before each sprint and each issue. Once cancelled,
                only sprints that were fully validated are returned.

        Returns:
            One BatchValidationResult per completed sprint, in input order
            within each board.
        """
        total = sum(len(issues) for _, issues in pairs)
        groups = self._group_by_board(pairs)
        logger.info(
            f"[BatchValidator] Validating {len(pairs)} sprints ({total} issues) "
            f"across {len(groups)} boards"
        )

        results = []
        index = 0
        for board_id, board_sprints in groups.items():
            if token is not None and token.cancelled:
                break

            if board_id is None:
                logger.warning("[BatchValidator] Sprints without a board, treating as not done")
                done_ids = frozenset()
            else:
                done_ids = self.board_cache.get_done_status_ids(board_id, self.client)

            for sprint, issues in board_sprints:
                if token is not None and token.cancelled:
                    break

                validations = []
                for issue in issues:
                    if token is not None and token.cancelled:
                        break
                    index += 1
                    if on_progress is not None:
                        on_progress(ValidationProgress(index, total, issue.key, sprint.id))
                    validations.append(self.validator.validate(issue, sprint, done_ids))

                if len(validations) < len(issues):
                    logger.info(f"[BatchValidator] Cancelled during sprint {sprint.id}, discarding it")
                    break

                results.append(self._summarize(sprint, issues, validations))

        return results

    @staticmethod
    def _summarize(sprint: Sprint, issues: Sequence[Issue], validations: list) -> BatchValidationResult:
        valid_points = sum(
            issue.story_points
            for issue, validation in zip(issues, validations)
            if validation.is_valid_for_velocity
        )
        valid_issues = sum(1 for v in validations if v.is_valid_for_velocity)
        logger.info(
            f"[BatchValidator] Sprint {sprint.id}: {valid_issues}/{len(issues)} issues valid, "
            f"{valid_points} points"
        )
        return BatchValidationResult(
            sprint_id=sprint.id,
            issue_validations=tuple(validations),
            total_issues=len(issues),
            valid_issues=valid_issues,
            total_points=committed_points(issues),
            valid_points=valid_points,
        )
