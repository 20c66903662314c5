"""Database-first velocity loading.

Persisted closed-sprint velocities are served when they cover every live
closed sprint and are fresh. Otherwise only the missing or stale sprints are
recomputed and written back. Storage failures never reach the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Union

from services.cancellation import CancellationToken, run_with_timeout
from services.config import MetricsConfig
from services.models import (
    PersistedSprint,
    Sprint,
    SprintVelocity,
    SprintVelocityData,
    to_iso,
    utc_now,
)
from services.repository import BatchSaveResult, SprintRepository
from services.velocity import VelocityCalculator, calculate_sprint_velocity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FromCache:
    velocity: SprintVelocity
    updated_at: datetime


@dataclass(frozen=True)
class FromApi:
    velocity: SprintVelocity


VelocityEntry = Union[FromCache, FromApi]


def velocity_from_persisted(record: PersistedSprint) -> SprintVelocity:
    data = record.velocity_data
    return calculate_sprint_velocity(
        record.sprint,
        committed_points=data.committed_points,
        completed_points=data.completed_points,
        issues_count=data.issues_count,
        completed_issues_count=data.completed_issues_count,
    )


CANCELLED_BEFORE_PERSISTING = "Cancelled before persisting"


def database_metadata(persisted=(), failed=(), error=None, enabled=True) -> dict:
    return {
        "enabled": enabled,
        "persistedSprints": list(persisted),
        "failedSprints": list(failed),
        "success": not failed and error is None,
        "error": error,
    }


@dataclass
class VelocityCacheResult:
    entries: List[VelocityEntry]
    from_cache: bool
    cache_age_hours: Optional[float]
    last_updated: Optional[datetime]
    total_sprints: int
    failed_sprint_ids: List[int] = field(default_factory=list)
    database: dict = field(default_factory=database_metadata)

    @property
    def velocities(self) -> List[SprintVelocity]:
        return [entry.velocity for entry in self.entries]

    def to_dict(self) -> dict:
        return {
            "velocities": [v.to_dict() for v in self.velocities],
            "fromCache": self.from_cache,
            "cacheAge": self.cache_age_hours,
            "lastUpdated": to_iso(self.last_updated),
            "totalSprints": self.total_sprints,
            "cachedSprints": sum(1 for e in self.entries if isinstance(e, FromCache)),
            "failedSprints": list(self.failed_sprint_ids),
            "database": self.database,
        }


class VelocityCacheService:
    def __init__(self, repository: Optional[SprintRepository], config: MetricsConfig):
        self.repository = repository
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.database_cache_enabled and self.repository is not None

    def get_velocity(self, board_id: int, sprints: Sequence[Sprint],
                     calculator: VelocityCalculator, force_refresh: bool = False,
                     on_progress=None,
                     token: Optional[CancellationToken] = None) -> VelocityCacheResult:
        """Velocities for the closed sprints in ``sprints``.

        Args:
            board_id: Board the sprints belong to.
            sprints: Live sprint list. Only closed sprints are considered.
            calculator: Computes velocities for sprints that are not cached.
            force_refresh: Recompute everything and overwrite stored records.
            on_progress: Passed to the calculator.
            token: Passed to the calculator.
        """
        closed = [s for s in sprints if s.is_closed]

        if not self.enabled:
            return self._compute_fresh(board_id, closed, calculator, on_progress, token, persist=False)
        if force_refresh:
            logger.info(f"[VelocityCache] Force refresh for board {board_id}")
            return self._compute_fresh(board_id, closed, calculator, on_progress, token,
                                       persist=True, skip_fresh_records=False)

        try:
            stored = self.repository.get_cached_closed_sprints(board_id, self.config.cached_sprints_limit)
        except Exception as e:
            logger.warning(f"[VelocityCache] Failed to read cached sprints for board {board_id}: {e}")
            result = self._compute_fresh(board_id, closed, calculator, on_progress, token, persist=False)
            result.database = database_metadata(error=str(e))
            return result

        live_ids = {s.id for s in closed}
        stored = [r for r in stored if r.id in live_ids and r.velocity_data is not None]
        now = utc_now()
        cache_age = None
        if stored:
            newest = max(r.updated_at for r in stored)
            cache_age = (now - newest).total_seconds() / 3600

        max_age = self.config.max_cache_age_hours
        usable = {r.id: r for r in stored if r.age_hours(now) <= max_age}
        to_compute = [s for s in closed if s.id not in usable]

        if not to_compute and cache_age is not None and cache_age <= max_age:
            logger.info(
                f"[VelocityCache] Serving {len(usable)} sprints for board {board_id} from cache "
                f"(age: {cache_age:.1f}h)"
            )
            entries = [FromCache(velocity_from_persisted(usable[s.id]), usable[s.id].updated_at)
                       for s in closed]
            return VelocityCacheResult(
                entries=entries,
                from_cache=True,
                cache_age_hours=cache_age,
                last_updated=max(r.updated_at for r in usable.values()),
                total_sprints=len(closed),
                database=database_metadata(),
            )

        logger.info(
            f"[VelocityCache] Board {board_id}: {len(usable)} cached, "
            f"{len(to_compute)} to compute"
        )
        fresh = self._compute_fresh(board_id, to_compute, calculator, on_progress, token, persist=True)
        fresh_by_id = {entry.velocity.sprint.id: entry for entry in fresh.entries}

        entries = []
        for sprint in closed:
            if sprint.id in usable:
                record = usable[sprint.id]
                entries.append(FromCache(velocity_from_persisted(record), record.updated_at))
            elif sprint.id in fresh_by_id:
                entries.append(fresh_by_id[sprint.id])

        return VelocityCacheResult(
            entries=entries,
            from_cache=False,
            cache_age_hours=cache_age,
            last_updated=now,
            total_sprints=len(closed),
            failed_sprint_ids=fresh.failed_sprint_ids,
            database=fresh.database,
        )

    def get_cached_summary(self, board_id: int) -> dict:
        """Stored closed-sprint velocities for a board, without calling Jira."""
        if not self.enabled:
            return {"boardId": board_id, "cached": False, "enabled": False}

        records = [
            r for r in self.repository.get_cached_closed_sprints(board_id, self.config.cached_sprints_limit)
            if r.velocity_data is not None
        ]
        if not records:
            return {
                "boardId": board_id,
                "cached": False,
                "enabled": True,
                "message": "No cached data available for this board",
            }

        newest = max(r.updated_at for r in records)
        return {
            "boardId": board_id,
            "cached": True,
            "enabled": True,
            "cacheAge": (utc_now() - newest).total_seconds() / 3600,
            "lastUpdated": to_iso(newest),
            "totalSprints": len(records),
            "velocities": [velocity_from_persisted(r).to_dict() for r in records],
        }

    def _compute_fresh(self, board_id: int, sprints: List[Sprint], calculator: VelocityCalculator,
                       on_progress, token, persist: bool,
                       skip_fresh_records: bool = True) -> VelocityCacheResult:
        computation = calculator.calculate(sprints, on_progress, token)
        database = database_metadata(enabled=self.enabled)
        if persist and computation.velocities:
            if token is not None and token.cancelled:
                logger.info(f"[VelocityCache] Board {board_id}: cancelled, not persisting computed sprints")
                database = database_metadata(error=CANCELLED_BEFORE_PERSISTING)
            else:
                database = self.persist(board_id, computation, skip_fresh_records, token)

        return VelocityCacheResult(
            entries=[FromApi(v) for v in computation.velocities],
            from_cache=False,
            cache_age_hours=0.0 if computation.velocities else None,
            last_updated=utc_now(),
            total_sprints=len(sprints),
            failed_sprint_ids=list(computation.failed_sprint_ids),
            database=database,
        )

    def persist(self, board_id: int, computation, skip_fresh_records: bool = True,
                token: Optional[CancellationToken] = None) -> dict:
        """Write computed closed sprints under the persistence timeout.

        Nothing is written once ``token`` is cancelled or the write has timed
        out. Returns the ``database`` metadata describing what was written.
        """
        if not self.enabled:
            return database_metadata(enabled=False)

        max_age = self.config.max_cache_age_hours
        write_token = token.child() if token is not None else CancellationToken()

        def write():
            pending = []
            for velocity in computation.velocities:
                sprint = velocity.sprint
                if not sprint.is_closed:
                    continue
                if skip_fresh_records and not self.repository.should_refresh_from_jira(sprint.id, max_age):
                    continue
                pending.append((sprint, computation.issues_by_sprint.get(sprint.id, ())))
            velocity_map = {
                v.sprint.id: SprintVelocityData.from_velocity(v) for v in computation.velocities
            }
            if write_token.cancelled:
                return BatchSaveResult(error=CANCELLED_BEFORE_PERSISTING)
            return self.repository.save_closed_sprints_batch(pending, velocity_map, board_id)

        try:
            saved = run_with_timeout(
                write, self.config.persistence_timeout_seconds, "persistence", write_token
            )
        except Exception as e:
            logger.warning(f"[VelocityCache] Persisting sprints for board {board_id} failed: {e}")
            attempted = [v.sprint.id for v in computation.velocities if v.sprint.is_closed]
            return database_metadata(failed=attempted, error=str(e))

        logger.info(
            f"[VelocityCache] Board {board_id}: persisted {len(saved.successful)} sprints, "
            f"{len(saved.failed)} failed"
        )
        return database_metadata(saved.successful, saved.failed, saved.error)
