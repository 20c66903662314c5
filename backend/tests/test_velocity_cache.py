"""Tests for database-first velocity loading."""

import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from services.board_cache import BoardStatusCache
from services.cancellation import CancellationToken
from services.config import MetricsConfig
from services.errors import PersistenceError
from services.models import utc_now
from services.repository import InMemorySprintRepository
from services.velocity import VelocityCalculator
from services.velocity_cache import (
    CANCELLED_BEFORE_PERSISTING,
    FromApi,
    FromCache,
    VelocityCacheService,
)


class BrokenReadRepository(InMemorySprintRepository):
    def get_cached_closed_sprints(self, board_id, limit=50):
        raise PersistenceError("storage offline")


class BrokenWriteRepository(InMemorySprintRepository):
    def store_record(self, record):
        raise OSError("disk full")


class SlowWriteRepository(InMemorySprintRepository):
    """Blocks batch saves until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def save_closed_sprints_batch(self, *args, **kwargs):
        self.release.wait(2)
        return super().save_closed_sprints_batch(*args, **kwargs)


class CancellingCalculator:
    """Finishes the computation, then cancels the token like a stage timeout."""

    def __init__(self, calculator):
        self.calculator = calculator

    def calculate(self, sprints, on_progress=None, token=None):
        computation = self.calculator.calculate(sprints, on_progress, token)
        token.cancel("batch timed out")
        return computation


@pytest.fixture
def calculator(scrum_board):
    return VelocityCalculator(scrum_board, BoardStatusCache(), default_board_id=1)


def closed_ids(result):
    return [v.sprint.id for v in result.velocities]


class TestFirstLoad:
    """Nothing stored yet."""

    def test_computes_and_persists(self, scrum_board, calculator, repository, config):
        """All closed sprints are computed and written."""
        service = VelocityCacheService(repository, config)

        result = service.get_velocity(1, scrum_board.sprints, calculator)

        assert not result.from_cache
        assert closed_ids(result) == [200, 201, 202, 203, 204, 205]
        assert all(isinstance(e, FromApi) for e in result.entries)
        assert result.database["persistedSprints"] == [200, 201, 202, 203, 204, 205]
        assert result.database["success"]
        assert repository.get_sprint(300) is None

    def test_velocity_values(self, scrum_board, calculator, repository, config):
        result = VelocityCacheService(repository, config).get_velocity(1, scrum_board.sprints, calculator)
        assert [v.completed_points for v in result.velocities] == [10, 11, 12, 13, 14, 15]


class TestCachedLoad:
    """Fresh records for every live closed sprint."""

    def test_served_from_cache_without_api_calls(self, scrum_board, calculator, repository, config):
        service = VelocityCacheService(repository, config)
        first = service.get_velocity(1, scrum_board.sprints, calculator)
        calls_before = len(scrum_board.calls)

        second = service.get_velocity(1, scrum_board.sprints, calculator)

        assert second.from_cache
        assert len(scrum_board.calls) == calls_before
        assert all(isinstance(e, FromCache) for e in second.entries)
        assert [v.completed_points for v in second.velocities] == [v.completed_points for v in first.velocities]
        assert [v.committed_points for v in second.velocities] == [v.committed_points for v in first.velocities]
        assert second.to_dict()["cachedSprints"] == 6

    def test_only_missing_sprints_computed(self, scrum_board, calculator, repository, config):
        """A newly closed sprint is the only one fetched."""
        service = VelocityCacheService(repository, config)
        service.get_velocity(1, scrum_board.sprints[:5], calculator)
        scrum_board.calls.clear()

        result = service.get_velocity(1, scrum_board.sprints, calculator)

        assert not result.from_cache
        assert [c for c in scrum_board.calls if c[0] == "get_sprint_issues"] == [("get_sprint_issues", 205)]
        assert closed_ids(result) == [200, 201, 202, 203, 204, 205]
        assert isinstance(result.entries[0], FromCache)
        assert isinstance(result.entries[-1], FromApi)

    def test_stale_record_recomputed(self, scrum_board, calculator, repository, config):
        service = VelocityCacheService(repository, config)
        service.get_velocity(1, scrum_board.sprints, calculator)
        stale = repository.get_sprint(202)
        repository.store_record(replace(stale, updated_at=utc_now() - timedelta(hours=48)))
        scrum_board.calls.clear()

        result = service.get_velocity(1, scrum_board.sprints, calculator)

        assert scrum_board.count("get_sprint_issues") == 1
        assert result.database["persistedSprints"] == [202]
        assert repository.get_sprint(202).age_hours() < 1

    def test_records_without_velocity_ignored(self, scrum_board, calculator, repository, config):
        """Stored sprints with no velocity data are recomputed."""
        for sprint in scrum_board.sprints[:6]:
            repository.save_closed_sprint(sprint)

        result = VelocityCacheService(repository, config).get_velocity(1, scrum_board.sprints, calculator)

        assert not result.from_cache
        assert scrum_board.count("get_sprint_issues") == 6
        assert len(result.database["persistedSprints"]) == 6
        assert repository.get_sprint(200).velocity_data is not None


class TestForceRefresh:
    def test_recomputes_everything(self, scrum_board, calculator, repository, config):
        service = VelocityCacheService(repository, config)
        service.get_velocity(1, scrum_board.sprints, calculator)
        scrum_board.calls.clear()

        result = service.get_velocity(1, scrum_board.sprints, calculator, force_refresh=True)

        assert not result.from_cache
        assert scrum_board.count("get_sprint_issues") == 6
        assert len(result.database["persistedSprints"]) == 6


class TestStorageFailures:
    """Storage problems never reach the caller."""

    def test_disabled_cache_never_writes(self, scrum_board, calculator, repository):
        config = MetricsConfig(database_cache_enabled=False)
        result = VelocityCacheService(repository, config).get_velocity(1, scrum_board.sprints, calculator)

        assert len(result.velocities) == 6
        assert not result.database["enabled"]
        assert repository.get_sprint(200) is None

    def test_no_repository(self, scrum_board, calculator, config):
        result = VelocityCacheService(None, config).get_velocity(1, scrum_board.sprints, calculator)
        assert len(result.velocities) == 6

    def test_read_failure_computes_fresh(self, scrum_board, calculator, config):
        repository = BrokenReadRepository()
        result = VelocityCacheService(repository, config).get_velocity(1, scrum_board.sprints, calculator)

        assert len(result.velocities) == 6
        assert "storage offline" in result.database["error"]
        assert repository.get_sprint(200) is None

    def test_write_failure_still_returns_velocities(self, scrum_board, calculator, config):
        repository = BrokenWriteRepository()
        result = VelocityCacheService(repository, config).get_velocity(1, scrum_board.sprints, calculator)

        assert len(result.velocities) == 6
        assert not result.database["success"]
        assert result.database["failedSprints"] == [200, 201, 202, 203, 204, 205]

    def test_failed_sprint_reported(self, scrum_board, calculator, repository, config):
        scrum_board.failing_sprint_issues.add(203)
        result = VelocityCacheService(repository, config).get_velocity(1, scrum_board.sprints, calculator)

        assert result.failed_sprint_ids == [203]
        assert 203 not in closed_ids(result)
        assert repository.get_sprint(203) is None

    def test_write_timeout_still_returns_velocities(self, scrum_board, calculator):
        """A write slower than the persistence budget is reported as failed."""
        repository = SlowWriteRepository()
        config = MetricsConfig(persistence_timeout_seconds=0.05)
        try:
            result = VelocityCacheService(repository, config).get_velocity(1, scrum_board.sprints, calculator)
        finally:
            repository.release.set()

        assert len(result.velocities) == 6
        assert result.database["success"] is False
        assert result.database["failedSprints"] == [200, 201, 202, 203, 204, 205]
        assert "persistence exceeded" in result.database["error"]


class TestCancellation:
    """Work finished after cancellation is returned but never stored."""

    def test_cancelled_computation_not_persisted(self, scrum_board, calculator, repository, config):
        token = CancellationToken()
        result = VelocityCacheService(repository, config).get_velocity(
            1, scrum_board.sprints, CancellingCalculator(calculator), token=token
        )

        assert len(result.velocities) == 6
        assert result.database["persistedSprints"] == []
        assert result.database["error"] == CANCELLED_BEFORE_PERSISTING
        assert repository.get_sprint(200) is None

    def test_persist_with_cancelled_token(self, scrum_board, calculator, repository, config):
        computation = calculator.calculate(scrum_board.sprints)
        token = CancellationToken()
        token.cancel()

        database = VelocityCacheService(repository, config).persist(1, computation, token=token)

        assert not database["success"]
        assert repository.get_cached_closed_sprints(1) == []
