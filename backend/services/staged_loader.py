"""Staged board velocity loading: quick stage, then sequential batch slices.

Slices are never run in parallel. A failed slice is logged and skipped, and
cancellation stops new slices while keeping everything merged so far.
"""

import logging
import math
from typing import Callable, Optional, Sequence

from services.cancellation import CancellationToken
from services.config import MetricsConfig
from services.models import (
    BoardMetrics,
    ProgressEvent,
    SprintVelocity,
    round_half_up,
    to_iso,
    utc_now,
)
from services.repository import SprintRepository
from services.velocity_stages import VelocityStageRunner

logger = logging.getLogger(__name__)

TREND_RECENT_SPRINTS = 3
TREND_THRESHOLD = 0.1

STRATEGY_QUICK_ONLY = "quick-only"
STRATEGY_QUICK_PLUS_BATCHES = "quick-plus-batches"

ProgressCallback = Callable[[ProgressEvent], None]


def calculate_trend(velocities: Sequence[float]) -> str:
    """Compare the last three sprints against all earlier ones (chronological input).

    Returns "up", "down", "stable" or "no-data".
    """
    if len(velocities) < 2:
        return "no-data"

    recent = velocities[-TREND_RECENT_SPRINTS:]
    earlier = velocities[:-TREND_RECENT_SPRINTS]
    if not earlier:
        return "stable"

    recent_avg = sum(recent) / len(recent)
    earlier_avg = sum(earlier) / len(earlier)
    if earlier_avg == 0:
        return "up" if recent_avg > 0 else "stable"

    change = (recent_avg - earlier_avg) / earlier_avg
    if change > TREND_THRESHOLD:
        return "up"
    if change < -TREND_THRESHOLD:
        return "down"
    return "stable"


def calculate_predictability(velocities: Sequence[float]) -> int:
    """100 * e^-cv rounded half up over the sprint velocities, clamped to 0-100."""
    if len(velocities) < 2:
        return 100
    mean = sum(velocities) / len(velocities)
    if mean == 0:
        return 100
    variance = sum((v - mean) ** 2 for v in velocities) / len(velocities)
    cv = math.sqrt(variance) / mean
    return max(0, min(100, round_half_up(100 * math.exp(-cv))))


def calculate_average_velocity(velocities: Sequence[float]) -> int:
    if not velocities:
        return 0
    return round_half_up(sum(velocities) / len(velocities))


def _start_key(velocity: SprintVelocity):
    start = velocity.sprint.start_date
    return (start is None, to_iso(start) or "")


class StagedLoader:
    def __init__(self, runner: VelocityStageRunner, config: MetricsConfig,
                 repository: Optional[SprintRepository] = None):
        self.runner = runner
        self.config = config
        self.repository = repository

    def load(self, board_id: int, on_progress: Optional[ProgressCallback] = None,
             token: Optional[CancellationToken] = None, force_refresh: bool = False) -> dict:
        """Run the quick stage and every batch slice, then combine the results.

        Args:
            board_id: Jira board ID.
            on_progress: Called with a ProgressEvent after each stage or slice.
            token: Once cancelled, no further slices are started.
            force_refresh: Recompute closed sprints instead of using stored ones.

        Returns:
            Combined velocity dict for the board.
        """
        token = token or CancellationToken()
        events = []

        def report(event: ProgressEvent):
            events.append(event)
            if on_progress is not None:
                on_progress(event)

        quick = self.runner.run_quick(board_id, token)
        report(quick.progress)

        merged = {}
        if quick.active_velocity is not None:
            merged[quick.active_velocity.sprint.id] = quick.active_velocity

        closed = quick.closed_sprints
        total = len(closed)
        batches_run = 0
        failed_sprints = []
        errors = [quick.error] if quick.error else []

        start = 0
        while start < total:
            if token.cancelled:
                logger.info(f"[StagedLoader] Board {board_id} cancelled at sprint {start}/{total}")
                break

            end = min(start + self.config.max_sprints_per_batch, total)
            try:
                batch = self.runner.run_batch(
                    board_id, start, end, self.config.max_issues_per_batch,
                    force_refresh=force_refresh, token=token,
                    closed_sprints=closed, board_name=quick.board_name
                )
            except Exception as e:
                logger.error(f"[StagedLoader] Batch {start}-{end} for board {board_id} failed: {e}")
                errors.append(str(e))
                report(ProgressEvent("batch", end, total, f"Sprints {start + 1}-{end} failed"))
                start = end
                continue

            batches_run += 1
            if batch.error:
                errors.append(batch.error)
            if batch.velocities is not None:
                for velocity in batch.velocities.velocities:
                    merged[velocity.sprint.id] = velocity
                failed_sprints.extend(batch.velocities.failed_sprint_ids)
            report(batch.progress)

            start = batch.end if batch.end > start else end

        combined = sorted(merged.values(), key=_start_key)
        closed_velocities = [v for v in combined if v.sprint.is_closed]
        points = [v.velocity_points for v in closed_velocities]

        result = {
            "boardId": board_id,
            "boardName": quick.board_name,
            "isKanban": quick.is_kanban,
            "strategy": STRATEGY_QUICK_PLUS_BATCHES if batches_run else STRATEGY_QUICK_ONLY,
            "sprints": [v.to_dict() for v in combined],
            "activeSprint": quick.active_velocity.to_dict() if quick.active_velocity else None,
            "averageVelocity": calculate_average_velocity(points),
            "trend": calculate_trend(points),
            "predictability": calculate_predictability(points),
            "summary": {
                "totalSprintsAnalyzed": len(closed_velocities),
                "totalSprintsAvailable": quick.total_sprints_available,
                "completionPercentage": round_half_up(len(closed_velocities) / total * 100) if total else 100,
            },
            "stages": [e.to_dict() for e in events],
            "failedSprints": failed_sprints,
            "errors": errors,
            "cancelled": token.cancelled,
            "timestamp": to_iso(utc_now()),
        }

        if closed_velocities:
            self._save_board_metrics(result)
        return result

    def _save_board_metrics(self, result: dict):
        if self.repository is None or not self.config.database_cache_enabled:
            return
        metrics = BoardMetrics(
            board_id=result["boardId"],
            board_name=result["boardName"],
            average_velocity=result["averageVelocity"],
            predictability=result["predictability"],
            trend=result["trend"],
            sprints_analyzed=result["summary"]["totalSprintsAnalyzed"],
            last_calculated=utc_now(),
        )
        try:
            self.repository.save_board_metrics(metrics)
        except Exception as e:
            logger.warning(f"[StagedLoader] Failed to save board metrics for {metrics.board_id}: {e}")
