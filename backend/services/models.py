"""Domain records for sprint velocity and flow metrics.

All records are immutable. ``to_dict`` produces the JSON shape returned to
the UI: camelCase keys, plain numbers and ISO-8601 timestamps.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

SPRINT_STATES = ("active", "closed", "future")

CATEGORY_TO_DO = "To Do"
CATEGORY_IN_PROGRESS = "In Progress"
CATEGORY_DONE = "Done"

REASON_DONE_AT_SPRINT_END = "done_at_sprint_end"
REASON_NOT_VALID = "not_valid"

METHOD_BOARD_ENTRY = "board_entry"
METHOD_CREATION_DATE = "creation_date"

# Jira formats: "2024-10-31T12:11:56.289-0400", "2024-01-01T00:00:00.000Z"
_DATE_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float) -> int:
    """Nearest integer with halves rounded up, so 62.5 gives 63 rather than 62."""
    return int(math.floor(value + 0.5))


def parse_jira_datetime(value) -> Optional[datetime]:
    """Parse a Jira date string into an aware UTC datetime.

    Naive values are assumed to be UTC. Returns None for empty or
    unparseable input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = None
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


@dataclass(frozen=True)
class Sprint:
    """A sprint as reported by the issue tracker. Never mutated locally."""

    id: int
    name: str
    state: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    complete_date: Optional[datetime] = None
    origin_board_id: Optional[int] = None
    goal: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"

    @property
    def is_active(self) -> bool:
        return self.state == "active"

    @classmethod
    def from_jira(cls, raw: dict, board_id: Optional[int] = None) -> "Sprint":
        origin = raw.get("originBoardId", board_id)
        return cls(
            id=int(raw["id"]),
            name=raw.get("name", ""),
            state=(raw.get("state") or "future").lower(),
            start_date=parse_jira_datetime(raw.get("startDate")),
            end_date=parse_jira_datetime(raw.get("endDate")),
            complete_date=parse_jira_datetime(raw.get("completeDate")),
            origin_board_id=int(origin) if origin is not None else None,
            goal=raw.get("goal") or None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state,
            "startDate": to_iso(self.start_date),
            "endDate": to_iso(self.end_date),
            "completeDate": to_iso(self.complete_date),
            "originBoardId": self.origin_board_id,
            "goal": self.goal,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Sprint":
        return cls.from_jira(data)


@dataclass(frozen=True)
class IssueStatus:
    id: str
    name: str
    category: str = CATEGORY_TO_DO


@dataclass(frozen=True)
class Issue:
    id: str
    key: str
    summary: str
    status: IssueStatus
    issue_type: str
    story_points: Optional[float] = None
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    resolved: Optional[datetime] = None
    completion_date: Optional[datetime] = None

    @property
    def has_positive_points(self) -> bool:
        return self.story_points is not None and self.story_points > 0

    @classmethod
    def from_jira(cls, raw: dict, story_points: Optional[float] = None) -> "Issue":
        fields = raw.get("fields") or {}
        status = fields.get("status") or {}
        category = (status.get("statusCategory") or {}).get("name", CATEGORY_TO_DO)
        return cls(
            id=str(raw.get("id", "")),
            key=raw.get("key", ""),
            summary=fields.get("summary") or "",
            status=IssueStatus(
                id=str(status.get("id", "")),
                name=status.get("name", "Unknown"),
                category=category,
            ),
            issue_type=(fields.get("issuetype") or {}).get("name", "Unknown"),
            story_points=story_points,
            created=parse_jira_datetime(fields.get("created")),
            updated=parse_jira_datetime(fields.get("updated")),
            resolved=parse_jira_datetime(
                fields.get("resolutiondate") or fields.get("resolved")
            ),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key": self.key,
            "summary": self.summary,
            "status": {
                "id": self.status.id,
                "name": self.status.name,
                "statusCategory": self.status.category,
            },
            "issueType": self.issue_type,
            "storyPoints": self.story_points,
            "created": to_iso(self.created),
            "updated": to_iso(self.updated),
            "resolved": to_iso(self.resolved),
            "completionDate": to_iso(self.completion_date),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Issue":
        status = data.get("status") or {}
        return cls(
            id=str(data.get("id", "")),
            key=data.get("key", ""),
            summary=data.get("summary", ""),
            status=IssueStatus(
                id=str(status.get("id", "")),
                name=status.get("name", "Unknown"),
                category=status.get("statusCategory", CATEGORY_TO_DO),
            ),
            issue_type=data.get("issueType", "Unknown"),
            story_points=data.get("storyPoints"),
            created=parse_jira_datetime(data.get("created")),
            updated=parse_jira_datetime(data.get("updated")),
            resolved=parse_jira_datetime(data.get("resolved")),
            completion_date=parse_jira_datetime(data.get("completionDate")),
        )


@dataclass(frozen=True)
class StatusTransition:
    at: datetime
    from_status_id: Optional[str]
    to_status_id: Optional[str]
    from_status_name: Optional[str] = None
    to_status_name: Optional[str] = None


@dataclass(frozen=True)
class ChangeHistory:
    """Chronological status transitions of one issue.

    ``status_transition_index`` maps a status id to the first time the issue
    entered it. Re-entries into the same status are not tracked.
    """

    issue_key: str
    transitions: tuple = ()
    status_transition_index: dict = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        ordered = tuple(sorted(self.transitions, key=lambda t: t.at))
        object.__setattr__(self, "transitions", ordered)
        index = {}
        for transition in ordered:
            if transition.to_status_id and transition.to_status_id not in index:
                index[transition.to_status_id] = transition.at
        object.__setattr__(self, "status_transition_index", index)

    @classmethod
    def from_jira_histories(cls, issue_key: str, histories: Iterable[dict]) -> "ChangeHistory":
        transitions = []
        for history in histories or []:
            created = parse_jira_datetime(history.get("created"))
            if created is None:
                continue
            for item in history.get("items") or []:
                if item.get("field") != "status":
                    continue
                transitions.append(StatusTransition(
                    at=created,
                    from_status_id=_optional_str(item.get("from")),
                    to_status_id=_optional_str(item.get("to")),
                    from_status_name=item.get("fromString"),
                    to_status_name=item.get("toString"),
                ))
        return cls(issue_key=issue_key, transitions=tuple(transitions))

    def earliest_transition(self, status_ids: Iterable[str]) -> Optional[datetime]:
        """First time the issue entered any of ``status_ids``."""
        earliest = None
        for status_id in status_ids:
            candidate = self.status_transition_index.get(status_id)
            if candidate is not None and (earliest is None or candidate < earliest):
                earliest = candidate
        return earliest


def _optional_str(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class BoardColumn:
    name: str
    status_ids: tuple = ()
    status_names: tuple = ()


@dataclass(frozen=True)
class BoardStatusConfiguration:
    board_id: int
    to_do_status_ids: frozenset = frozenset()
    done_status_ids: frozenset = frozenset()
    column_status_ids: frozenset = frozenset()

    def to_dict(self) -> dict:
        return {
            "boardId": self.board_id,
            "toDoStatusIds": sorted(self.to_do_status_ids),
            "doneStatusIds": sorted(self.done_status_ids),
            "columnStatusIds": sorted(self.column_status_ids),
        }


@dataclass(frozen=True)
class ValidationResult:
    issue_key: str
    is_valid_for_velocity: bool
    reason: str = REASON_NOT_VALID
    done_transition_date: Optional[datetime] = None

    @classmethod
    def not_valid(cls, issue_key: str,
                  done_transition_date: Optional[datetime] = None) -> "ValidationResult":
        return cls(issue_key, False, REASON_NOT_VALID, done_transition_date)

    def to_dict(self) -> dict:
        return {
            "issueKey": self.issue_key,
            "isValidForVelocity": self.is_valid_for_velocity,
            "reason": self.reason,
            "doneTransitionDate": to_iso(self.done_transition_date),
        }


@dataclass(frozen=True)
class CycleTime:
    """Elapsed time from board entry to done. Duration is clamped to >= 0."""

    start_date: datetime
    end_date: datetime
    calculation_method: str = METHOD_BOARD_ENTRY
    duration_hours: float = field(init=False)

    def __post_init__(self):
        seconds = (self.end_date - self.start_date).total_seconds()
        object.__setattr__(self, "duration_hours", max(0.0, seconds / 3600))

    @property
    def duration_days(self) -> float:
        return self.duration_hours / 24

    @property
    def is_estimated(self) -> bool:
        return self.calculation_method == METHOD_CREATION_DATE

    def to_dict(self) -> dict:
        return {
            "startDate": to_iso(self.start_date),
            "endDate": to_iso(self.end_date),
            "durationHours": self.duration_hours,
            "durationDays": self.duration_days,
            "isEstimated": self.is_estimated,
            "calculationMethod": self.calculation_method,
        }


@dataclass(frozen=True)
class BatchValidationResult:
    sprint_id: int
    issue_validations: tuple
    total_issues: int
    valid_issues: int
    total_points: float
    valid_points: float

    def to_dict(self) -> dict:
        return {
            "sprintId": self.sprint_id,
            "issueValidations": [v.to_dict() for v in self.issue_validations],
            "totalIssues": self.total_issues,
            "validIssues": self.valid_issues,
            "totalPoints": self.total_points,
            "validPoints": self.valid_points,
        }


@dataclass(frozen=True)
class SprintVelocity:
    sprint: Sprint
    committed_points: float
    completed_points: float
    velocity_points: float
    completion_rate: int
    issues_count: int = 0
    completed_issues_count: int = 0

    def to_dict(self) -> dict:
        return {
            "sprint": self.sprint.to_dict(),
            "committedPoints": self.committed_points,
            "completedPoints": self.completed_points,
            "velocityPoints": self.velocity_points,
            "completionRate": self.completion_rate,
            "issuesCount": self.issues_count,
            "completedIssuesCount": self.completed_issues_count,
        }


@dataclass(frozen=True)
class SprintVelocityData:
    """Velocity summary cached alongside a persisted sprint."""

    sprint_id: int
    committed_points: float
    completed_points: float
    issues_count: int = 0
    completed_issues_count: int = 0

    @classmethod
    def from_velocity(cls, velocity: SprintVelocity) -> "SprintVelocityData":
        return cls(
            sprint_id=velocity.sprint.id,
            committed_points=velocity.committed_points,
            completed_points=velocity.completed_points,
            issues_count=velocity.issues_count,
            completed_issues_count=velocity.completed_issues_count,
        )

    def to_dict(self) -> dict:
        return {
            "sprintId": self.sprint_id,
            "committedPoints": self.committed_points,
            "completedPoints": self.completed_points,
            "issuesCount": self.issues_count,
            "completedIssuesCount": self.completed_issues_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SprintVelocityData":
        return cls(
            sprint_id=int(data["sprintId"]),
            committed_points=data.get("committedPoints", 0),
            completed_points=data.get("completedPoints", 0),
            issues_count=data.get("issuesCount", 0),
            completed_issues_count=data.get("completedIssuesCount", 0),
        )


@dataclass(frozen=True)
class PersistedSprint:
    """Durable closed-sprint record owned by the repository."""

    sprint: Sprint
    board_id: int
    created_at: datetime
    updated_at: datetime
    velocity_data: Optional[SprintVelocityData] = None
    issues: tuple = ()

    @property
    def id(self) -> int:
        return self.sprint.id

    def age_hours(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return (now - self.updated_at).total_seconds() / 3600

    def to_record(self) -> dict:
        return {
            "sprint": self.sprint.to_dict(),
            "boardId": self.board_id,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "velocityData": self.velocity_data.to_dict() if self.velocity_data else None,
            "issues": [issue.to_dict() for issue in self.issues],
        }

    @classmethod
    def from_record(cls, record: dict) -> "PersistedSprint":
        velocity = record.get("velocityData")
        return cls(
            sprint=Sprint.from_dict(record["sprint"]),
            board_id=int(record["boardId"]),
            created_at=parse_jira_datetime(record.get("createdAt")) or utc_now(),
            updated_at=parse_jira_datetime(record.get("updatedAt")) or utc_now(),
            velocity_data=SprintVelocityData.from_dict(velocity) if velocity else None,
            issues=tuple(Issue.from_dict(i) for i in record.get("issues") or []),
        )


@dataclass(frozen=True)
class BoardMetrics:
    board_id: int
    board_name: str
    average_velocity: float
    predictability: int
    trend: str
    sprints_analyzed: int
    last_calculated: datetime

    def to_dict(self) -> dict:
        return {
            "boardId": self.board_id,
            "boardName": self.board_name,
            "averageVelocity": self.average_velocity,
            "predictability": self.predictability,
            "trend": self.trend,
            "sprintsAnalyzed": self.sprints_analyzed,
            "lastCalculated": to_iso(self.last_calculated),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BoardMetrics":
        return cls(
            board_id=int(data["boardId"]),
            board_name=data.get("boardName", ""),
            average_velocity=data.get("averageVelocity", 0),
            predictability=data.get("predictability", 100),
            trend=data.get("trend", "no-data"),
            sprints_analyzed=data.get("sprintsAnalyzed", 0),
            last_calculated=parse_jira_datetime(data.get("lastCalculated")) or utc_now(),
        )


@dataclass(frozen=True)
class ValidationProgress:
    """Emitted before each issue of a batch is validated."""

    current_index: int
    total: int
    issue_key: str
    sprint_id: Optional[int] = None


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted after each stage or batch slice of a staged load."""

    stage: str
    completed: int
    total: int
    message: str = ""

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 100
        return min(100, round_half_up(self.completed / self.total * 100))

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "completed": self.completed,
            "total": self.total,
            "percentage": self.percentage,
            "message": self.message,
        }
