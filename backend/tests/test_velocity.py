"""Tests for sprint velocity calculation."""

import pytest

from fakes import make_sprint
from services.board_cache import BoardStatusCache
from services.cancellation import CancellationToken
from services.velocity import VelocityCalculator, calculate_sprint_velocity


class TestCalculateSprintVelocity:
    """Test the per-sprint arithmetic."""

    def test_closed_sprint(self):
        """Closed sprints report their completed points as velocity."""
        velocity = calculate_sprint_velocity(make_sprint(1), 8, 5, 2, 1)
        assert velocity.velocity_points == 5
        assert velocity.completion_rate == 63

    def test_active_sprint_has_no_velocity(self):
        """Only closed sprints contribute velocity points."""
        velocity = calculate_sprint_velocity(make_sprint(1, state="active"), 8, 5)
        assert velocity.completed_points == 5
        assert velocity.velocity_points == 0

    def test_zero_commitment(self):
        """No committed points gives a zero completion rate."""
        assert calculate_sprint_velocity(make_sprint(1), 0, 0).completion_rate == 0

    def test_completed_clamped_to_committed(self):
        """Completed points never exceed committed points."""
        velocity = calculate_sprint_velocity(make_sprint(1), 5, 9)
        assert velocity.completed_points == 5
        assert velocity.completion_rate == 100

    @pytest.mark.parametrize("committed,completed", [(10, 3), (7, 7), (1, 0), (13, 8)])
    def test_completion_rate_bounds(self, committed, completed):
        """The rate is a whole percentage between 0 and 100."""
        rate = calculate_sprint_velocity(make_sprint(1), committed, completed).completion_rate
        assert 0 <= rate <= 100
        assert isinstance(rate, int)


class TestVelocityCalculator:
    """Test the calculator against a fake board."""

    def test_late_issue_not_counted(self, velocity_board):
        """An issue done after the sprint end is committed but not completed."""
        computation = VelocityCalculator(velocity_board, BoardStatusCache()).calculate(velocity_board.sprints)

        velocity = computation.velocities[0]
        assert velocity.committed_points == 8
        assert velocity.completed_points == 5
        assert velocity.velocity_points == 5
        assert velocity.completion_rate == 63
        assert velocity.issues_count == 2
        assert velocity.completed_issues_count == 1

    def test_issues_kept_per_sprint(self, velocity_board):
        """Fetched issues are returned alongside velocities."""
        computation = VelocityCalculator(velocity_board, BoardStatusCache()).calculate(velocity_board.sprints)
        assert [i.key for i in computation.issues_by_sprint[100]] == ["PROJ-1", "PROJ-2"]

    def test_failed_sprint_issues(self, scrum_board):
        """A sprint whose issues cannot be fetched is reported as failed."""
        scrum_board.failing_sprint_issues.add(201)
        closed = [s for s in scrum_board.sprints if s.is_closed]

        computation = VelocityCalculator(scrum_board, BoardStatusCache()).calculate(closed)

        assert computation.failed_sprint_ids == [201]
        assert 201 not in [v.sprint.id for v in computation.velocities]
        assert len(computation.velocities) == 5

    def test_cancelled_token(self, scrum_board):
        """A cancelled token stops before any issue is fetched."""
        token = CancellationToken()
        token.cancel()
        computation = VelocityCalculator(scrum_board, BoardStatusCache()).calculate(
            scrum_board.sprints, token=token
        )
        assert computation.velocities == []
        assert scrum_board.count("get_sprint_issues") == 0
