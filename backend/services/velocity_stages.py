"""Quick and batch velocity stages.

The quick stage computes the active sprint and lists closed sprints without
any per-issue work. Each batch stage computes a bounded slice of closed
sprints through the database-first cache, within its own time budget.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from services.board_cache import BoardStatusCache
from services.cancellation import CancellationToken, run_with_timeout
from services.config import MetricsConfig
from services.errors import ConfigurationError, StageTimeoutError
from services.models import ProgressEvent, Sprint, SprintVelocity, to_iso, utc_now
from services.response_cache import ResponseCache
from services.velocity import VelocityCalculator
from services.velocity_cache import VelocityCacheResult, VelocityCacheService, database_metadata

logger = logging.getLogger(__name__)

MAX_BATCH_RANGE = 8
MIN_BATCH_ISSUES = 50
MAX_BATCH_ISSUES = 200


def validate_batch_range(start: int, end: int, max_issues: int):
    """Raises ConfigurationError for an unsafe batch request."""
    if start < 0 or end <= start or end - start > MAX_BATCH_RANGE:
        raise ConfigurationError(
            f"Invalid range: start must be >= 0, end > start, max {MAX_BATCH_RANGE} sprints per batch"
        )
    if not MIN_BATCH_ISSUES <= max_issues <= MAX_BATCH_ISSUES:
        raise ConfigurationError(
            f"maxIssues must be between {MIN_BATCH_ISSUES} and {MAX_BATCH_ISSUES}"
        )


def response_cache_prefix(client, board_id: int) -> str:
    """Key prefix for one board's cached responses under one set of credentials."""
    return f"velocity:{client.cache_scope}:{board_id}:"


def closed_sprints_newest_first(sprints: Sequence[Sprint], limit: Optional[int] = None) -> List[Sprint]:
    closed = [s for s in sprints if s.is_closed]
    closed.sort(key=lambda s: to_iso(s.end_date) or "", reverse=True)
    return closed[:limit] if limit else closed


@dataclass
class QuickStageResult:
    board_id: int
    board_name: str
    active_velocity: Optional[SprintVelocity] = None
    active_sprint: Optional[Sprint] = None
    closed_sprints: List[Sprint] = field(default_factory=list)
    total_sprints_available: int = 0
    total_closed_sprints: int = 0
    sprints_loaded: bool = True
    error: Optional[str] = None

    @property
    def is_kanban(self) -> bool:
        return self.sprints_loaded and self.total_sprints_available == 0

    @property
    def progress(self) -> ProgressEvent:
        analyzed = 1 if self.active_velocity else 0
        total = len(self.closed_sprints) + (1 if self.active_sprint else 0)
        return ProgressEvent("quick", analyzed, total, "Active sprint loaded" if analyzed else "Sprint list loaded")

    def to_dict(self) -> dict:
        closed_count = len(self.closed_sprints)
        return {
            "boardId": self.board_id,
            "boardName": self.board_name,
            "stage": "quick",
            "isKanban": self.is_kanban,
            "activeSprint": self.active_velocity.to_dict() if self.active_velocity else None,
            "hasActiveSprint": self.active_sprint is not None,
            "closedSprints": [s.to_dict() for s in self.closed_sprints],
            "closedSprintIds": [s.id for s in self.closed_sprints],
            "totalSprintsAvailable": self.total_sprints_available,
            "totalClosedSprints": self.total_closed_sprints,
            "remainingSprints": closed_count,
            "nextStageAvailable": closed_count > 0,
            "progress": self.progress.to_dict(),
            "error": self.error,
            "fromCache": False,
            "timestamp": to_iso(utc_now()),
        }


@dataclass
class BatchStageResult:
    board_id: int
    board_name: str
    start: int
    requested_end: int
    sprints_in_batch: int
    total_sprints: int
    max_issues: int
    estimated_issues: int
    limit_applied: bool
    velocities: Optional[VelocityCacheResult] = None
    error: Optional[str] = None

    @property
    def end(self) -> int:
        return self.start + self.sprints_in_batch

    @property
    def has_more(self) -> bool:
        return self.end < self.total_sprints

    @property
    def progress(self) -> ProgressEvent:
        return ProgressEvent(
            "batch", min(self.end, self.total_sprints), self.total_sprints,
            f"Sprints {self.start + 1}-{self.end} of {self.total_sprints}"
        )

    def to_dict(self) -> dict:
        cache = self.velocities
        return {
            "boardId": self.board_id,
            "boardName": self.board_name,
            "stage": "batch",
            "sprints": [v.to_dict() for v in cache.velocities] if cache else [],
            "batch": {
                "requested": {"start": self.start, "end": self.requested_end},
                "actual": {"start": self.start, "end": self.end},
                "sprintsInBatch": self.sprints_in_batch,
                "totalSprints": self.total_sprints,
                "maxIssuesLimit": self.max_issues,
                "estimatedIssues": self.estimated_issues,
                "limitApplied": self.limit_applied,
                "isEmpty": self.sprints_in_batch == 0,
            },
            "hasMore": self.has_more,
            "nextBatchStart": self.end,
            "progress": self.progress.to_dict(),
            "fromCache": False,
            "fromDatabase": cache.from_cache if cache else False,
            "cacheAge": cache.cache_age_hours if cache else None,
            "failedSprints": list(cache.failed_sprint_ids) if cache else [],
            "database": cache.database if cache else database_metadata(error=self.error),
            "error": self.error,
            "timestamp": to_iso(utc_now()),
        }


class VelocityStageRunner:
    def __init__(self, client, board_cache: BoardStatusCache, config: MetricsConfig,
                 velocity_cache: VelocityCacheService,
                 response_cache: Optional[ResponseCache] = None):
        self.client = client
        self.board_cache = board_cache
        self.config = config
        self.velocity_cache = velocity_cache
        self.response_cache = response_cache

    def _calculator(self, board_id: int) -> VelocityCalculator:
        return VelocityCalculator(self.client, self.board_cache, default_board_id=board_id)

    def _board_name(self, board_id: int) -> str:
        info = self.client.get_board_info(board_id)
        if info.success:
            return info.data["name"]
        return f"Board {board_id}"

    def _load_sprints(self, board_id: int):
        result = self.client.get_board_sprints(board_id)
        if not result.success:
            logger.warning(f"[VelocityStages] Could not load sprints for board {board_id}: {result.error}")
            return None, result.error
        return result.data, None

    def run_quick(self, board_id: int, token: Optional[CancellationToken] = None) -> QuickStageResult:
        """Active sprint velocity plus the capped list of closed sprints."""
        board_name = self._board_name(board_id)
        sprints, error = self._load_sprints(board_id)
        if sprints is None:
            return QuickStageResult(board_id, board_name, sprints_loaded=False, error=error)

        closed = closed_sprints_newest_first(sprints)
        result = QuickStageResult(
            board_id=board_id,
            board_name=board_name,
            active_sprint=next((s for s in sprints if s.is_active), None),
            closed_sprints=closed[:self.config.max_closed_sprints],
            total_sprints_available=len(sprints),
            total_closed_sprints=len(closed),
        )
        if not sprints:
            logger.info(f"[VelocityStages] Board {board_id} has no sprints, quick stage only")
            return result

        if result.active_sprint is not None and not (token is not None and token.cancelled):
            stage_token = token.child() if token is not None else CancellationToken()
            calculator = self._calculator(board_id)
            try:
                computation = run_with_timeout(
                    lambda: calculator.calculate([result.active_sprint], token=stage_token),
                    self.config.quick_stage_timeout_seconds, "quick", stage_token
                )
            except StageTimeoutError as e:
                result.error = str(e)
            else:
                if computation.velocities:
                    result.active_velocity = computation.velocities[0]

        logger.info(
            f"[VelocityStages] Quick stage for board {board_id}: active sprint "
            f"{'computed' if result.active_velocity else 'not available'}, "
            f"{len(result.closed_sprints)} closed sprints listed"
        )
        return result

    def run_batch(self, board_id: int, start: int, end: int, max_issues: Optional[int] = None,
                  force_refresh: bool = False, token: Optional[CancellationToken] = None,
                  closed_sprints: Optional[List[Sprint]] = None,
                  board_name: Optional[str] = None) -> BatchStageResult:
        """Compute closed sprints ``start`` to ``end`` (newest first) within the stage budget.

        The slice is trimmed so its estimated issue count stays under
        ``max_issues``, keeping at least one sprint.
        """
        max_issues = max_issues or self.config.max_issues_per_batch
        board_name = board_name or self._board_name(board_id)
        error = None
        if closed_sprints is None:
            sprints, error = self._load_sprints(board_id)
            closed_sprints = closed_sprints_newest_first(sprints or [], self.config.max_closed_sprints)

        requested = closed_sprints[start:min(end, len(closed_sprints))]
        per_sprint = self.config.estimated_issues_per_sprint
        allowed = max(1, min(max_issues // per_sprint, self.config.max_sprints_per_batch))
        batch_sprints = requested[:allowed]

        result = BatchStageResult(
            board_id=board_id,
            board_name=board_name,
            start=start,
            requested_end=end,
            sprints_in_batch=len(batch_sprints),
            total_sprints=len(closed_sprints),
            max_issues=max_issues,
            estimated_issues=len(batch_sprints) * per_sprint,
            limit_applied=len(batch_sprints) < len(requested),
            error=error,
        )
        if not batch_sprints:
            return result

        stage_token = token.child() if token is not None else CancellationToken()
        calculator = self._calculator(board_id)
        try:
            result.velocities = run_with_timeout(
                lambda: self.velocity_cache.get_velocity(
                    board_id, batch_sprints, calculator, force_refresh, token=stage_token
                ),
                self.config.stage_timeout_seconds, f"batch {start}-{result.end}", stage_token
            )
        except StageTimeoutError as e:
            result.error = str(e)

        logger.info(
            f"[VelocityStages] Batch {start}-{result.end} for board {board_id}: "
            f"{len(result.velocities.velocities) if result.velocities else 0} sprints computed"
        )
        return result

    def quick(self, board_id: int) -> dict:
        """Quick stage response, served from the response cache when possible.

        Cached responses are only shared between requests carrying the same
        server and credentials.
        """
        cache_key = f"{response_cache_prefix(self.client, board_id)}quick"
        cached = self._cached(cache_key)
        if cached is not None:
            return cached

        result = self.run_quick(board_id)
        data = result.to_dict()
        if result.sprints_loaded and result.error is None and self.response_cache is not None:
            self.response_cache.set(cache_key, data, self.config.quick_cache_ttl_seconds)
        return data

    def batch(self, board_id: int, start: int, end: int, max_issues: int,
              force_refresh: bool = False) -> dict:
        """Batch stage response for a validated range.

        Raises:
            ConfigurationError: if the range or issue ceiling is unsafe.
        """
        validate_batch_range(start, end, max_issues)
        prefix = response_cache_prefix(self.client, board_id)
        cache_key = f"{prefix}batch:{start}-{end}:maxIssues-{max_issues}"
        if not force_refresh:
            cached = self._cached(cache_key)
            if cached is not None:
                return cached

        result = self.run_batch(board_id, start, end, max_issues, force_refresh)
        data = result.to_dict()
        if result.error is None and self.response_cache is not None:
            self.response_cache.set(cache_key, data, self.config.batch_cache_ttl_seconds)
        return data

    def _cached(self, key: str) -> Optional[dict]:
        if self.response_cache is None:
            return None
        cached = self.response_cache.get(key)
        if cached is None:
            return None
        return dict(cached, fromCache=True, timestamp=to_iso(utc_now()))
