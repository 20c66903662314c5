"""Sprint velocity calculation on top of batch validation."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from services.batch_validator import BatchValidator, ProgressListener
from services.board_cache import BoardStatusCache
from services.cancellation import CancellationToken
from services.models import Sprint, SprintVelocity, round_half_up

logger = logging.getLogger(__name__)


def calculate_sprint_velocity(sprint: Sprint, committed_points: float, completed_points: float,
                              issues_count: int = 0,
                              completed_issues_count: int = 0) -> SprintVelocity:
    """Build a SprintVelocity. Only closed sprints contribute velocity points."""
    committed_points = max(0, committed_points)
    completed_points = max(0, min(completed_points, committed_points))
    if committed_points > 0:
        completion_rate = round_half_up(completed_points / committed_points * 100)
    else:
        completion_rate = 0

    return SprintVelocity(
        sprint=sprint,
        committed_points=committed_points,
        completed_points=completed_points,
        velocity_points=completed_points if sprint.is_closed else 0,
        completion_rate=completion_rate,
        issues_count=issues_count,
        completed_issues_count=completed_issues_count,
    )


@dataclass
class VelocityComputation:
    velocities: List[SprintVelocity] = field(default_factory=list)
    issues_by_sprint: dict = field(default_factory=dict)
    failed_sprint_ids: List[int] = field(default_factory=list)


class VelocityCalculator:
    """Fetches sprint issues and turns validated results into velocities."""

    def __init__(self, client, board_cache: BoardStatusCache,
                 default_board_id: Optional[int] = None):
        self.client = client
        self.batch_validator = BatchValidator(client, board_cache, default_board_id)

    def calculate(self, sprints: Sequence[Sprint],
                  on_progress: Optional[ProgressListener] = None,
                  token: Optional[CancellationToken] = None) -> VelocityComputation:
        """Compute velocity for each sprint, fetching issues one sprint at a time.

        Sprints whose issues could not be fetched are reported in
        ``failed_sprint_ids`` and get no velocity entry.
        """
        computation = VelocityComputation()
        pairs = []

        for sprint in sprints:
            if token is not None and token.cancelled:
                logger.info("[Velocity] Cancelled before fetching remaining sprint issues")
                break
            result = self.client.get_sprint_issues(sprint.id)
            if not result.success:
                logger.warning(f"[Velocity] Failed to fetch issues for sprint {sprint.id}: {result.error}")
                computation.failed_sprint_ids.append(sprint.id)
                continue
            pairs.append((sprint, result.data))
            computation.issues_by_sprint[sprint.id] = result.data

        batch_results = {
            r.sprint_id: r
            for r in self.batch_validator.validate_batch(pairs, on_progress, token)
        }

        for sprint, issues in pairs:
            batch = batch_results.get(sprint.id)
            if batch is None:
                computation.issues_by_sprint.pop(sprint.id, None)
                continue
            computation.velocities.append(calculate_sprint_velocity(
                sprint,
                committed_points=batch.total_points,
                completed_points=batch.valid_points,
                issues_count=batch.total_issues,
                completed_issues_count=batch.valid_issues,
            ))

        return computation
