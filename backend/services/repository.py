"""Persistence contract for closed sprints and board metrics.

Only closed sprints are stored. Records are refreshed when older than the
configured max cache age and never deleted here.
"""

import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from services.errors import PersistenceError
from services.models import (
    BoardMetrics,
    Issue,
    PersistedSprint,
    Sprint,
    SprintVelocityData,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class BatchSaveResult:
    """Per-record outcome of a batch save. ``success`` means nothing failed."""

    successful: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.failed and self.error is None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "successful": list(self.successful),
            "failed": list(self.failed),
            "error": self.error,
        }


class SprintRepository(ABC):
    """Abstract store for closed sprint records."""

    @abstractmethod
    def get_cached_closed_sprints(self, board_id: int, limit: int = 50) -> List[PersistedSprint]:
        """Closed sprints stored for a board, newest end date first."""
        pass

    @abstractmethod
    def get_sprint(self, sprint_id: int) -> Optional[PersistedSprint]:
        pass

    @abstractmethod
    def store_record(self, record: PersistedSprint) -> None:
        """Insert or replace a record by sprint id. Called by save_closed_sprint."""
        pass

    @abstractmethod
    def save_board_metrics(self, metrics: BoardMetrics) -> None:
        pass

    @abstractmethod
    def get_board_metrics(self, board_id: int) -> Optional[BoardMetrics]:
        pass

    def save_closed_sprint(self, sprint: Sprint, issues: Sequence[Issue] = (),
                           velocity_data: Optional[SprintVelocityData] = None,
                           board_id: Optional[int] = None) -> PersistedSprint:
        """Insert or update one closed sprint.

        Raises:
            PersistenceError: if the sprint is not closed or has no board.
        """
        if not sprint.is_closed:
            raise PersistenceError(f"Sprint {sprint.id} is {sprint.state}, only closed sprints are stored")
        board_id = board_id if board_id is not None else sprint.origin_board_id
        if board_id is None:
            raise PersistenceError(f"Sprint {sprint.id} has no board")

        now = utc_now()
        existing = self.get_sprint(sprint.id)
        record = PersistedSprint(
            sprint=sprint,
            board_id=board_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            velocity_data=velocity_data,
            issues=tuple(issues),
        )
        self.store_record(record)
        return record

    def save_closed_sprints_batch(self, sprints_with_issues: Sequence[Tuple[Sprint, Sequence[Issue]]],
                                  velocity_map: Dict[int, SprintVelocityData],
                                  board_id: Optional[int] = None) -> BatchSaveResult:
        """Save each sprint independently and report which ones failed."""
        result = BatchSaveResult()
        for sprint, issues in sprints_with_issues:
            try:
                self.save_closed_sprint(sprint, issues, velocity_map.get(sprint.id), board_id)
                result.successful.append(sprint.id)
            except PersistenceError as e:
                logger.warning(f"[SprintRepository] Failed to save sprint {sprint.id}: {e}")
                result.failed.append(sprint.id)
        if result.failed:
            result.error = f"{len(result.failed)} of {len(sprints_with_issues)} sprints failed to save"
        return result

    def should_refresh_from_jira(self, sprint_id: int, max_age_hours: float) -> bool:
        """False only when a record with velocity data newer than max_age_hours is stored."""
        record = self.get_sprint(sprint_id)
        if record is None or record.velocity_data is None:
            return True
        return record.age_hours() > max_age_hours


class InMemorySprintRepository(SprintRepository):
    def __init__(self):
        self._sprints = {}
        self._metrics = {}
        self._lock = threading.RLock()

    def get_cached_closed_sprints(self, board_id: int, limit: int = 50) -> List[PersistedSprint]:
        with self._lock:
            records = [r for r in self._sprints.values() if r.board_id == board_id]
        return _newest_first(records)[:limit]

    def get_sprint(self, sprint_id: int) -> Optional[PersistedSprint]:
        with self._lock:
            return self._sprints.get(sprint_id)

    def store_record(self, record: PersistedSprint) -> None:
        with self._lock:
            self._sprints[record.id] = record

    def save_board_metrics(self, metrics: BoardMetrics) -> None:
        with self._lock:
            self._metrics[metrics.board_id] = metrics

    def get_board_metrics(self, board_id: int) -> Optional[BoardMetrics]:
        with self._lock:
            return self._metrics.get(board_id)


class JsonFileSprintRepository(SprintRepository):
    """Stores every record in one JSON document on disk."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()

    def _load(self) -> dict:
        if not os.path.exists(self.path):
            return {"sprints": {}, "boardMetrics": {}}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise PersistenceError(f"Failed to read {self.path}: {e}") from e
        data.setdefault("sprints", {})
        data.setdefault("boardMetrics", {})
        return data

    def _save(self, data: dict):
        directory = os.path.dirname(self.path)
        try:
            if directory and not os.path.exists(directory):
                os.makedirs(directory)
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except (IOError, OSError) as e:
            raise PersistenceError(f"Failed to write {self.path}: {e}") from e

    def get_cached_closed_sprints(self, board_id: int, limit: int = 50) -> List[PersistedSprint]:
        with self._lock:
            data = self._load()
        records = [
            PersistedSprint.from_record(r)
            for r in data["sprints"].values()
            if int(r.get("boardId", -1)) == board_id
        ]
        return _newest_first(records)[:limit]

    def get_sprint(self, sprint_id: int) -> Optional[PersistedSprint]:
        with self._lock:
            record = self._load()["sprints"].get(str(sprint_id))
        return PersistedSprint.from_record(record) if record else None

    def store_record(self, record: PersistedSprint) -> None:
        with self._lock:
            data = self._load()
            data["sprints"][str(record.id)] = record.to_record()
            self._save(data)

    def save_board_metrics(self, metrics: BoardMetrics) -> None:
        with self._lock:
            data = self._load()
            data["boardMetrics"][str(metrics.board_id)] = metrics.to_dict()
            self._save(data)

    def get_board_metrics(self, board_id: int) -> Optional[BoardMetrics]:
        with self._lock:
            record = self._load()["boardMetrics"].get(str(board_id))
        return BoardMetrics.from_dict(record) if record else None


def _newest_first(records: List[PersistedSprint]) -> List[PersistedSprint]:
    def sort_key(record):
        end = record.sprint.end_date
        return end.timestamp() if end else float("-inf")

    return sorted(records, key=sort_key, reverse=True)


def server_scoped_path(path: str, server: str) -> str:
    """``sprints.json`` becomes ``sprints-acme.atlassian.net.json`` for that server."""
    host = re.sub(r"^[a-z]+://", "", server.strip().lower()).rstrip("/")
    slug = re.sub(r"[^a-z0-9.-]+", "-", host).strip("-") or "default"
    root, ext = os.path.splitext(path)
    return f"{root}-{slug}{ext or '.json'}"
