"""Cycle time, percentile and probability distribution calculations.

Cycle time runs from board entry (first transition into a to-do status) to
the first transition into a done status. Issues that never entered the board
fall back to their creation date and are marked as estimated.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from services.models import (
    METHOD_BOARD_ENTRY,
    METHOD_CREATION_DATE,
    ChangeHistory,
    CycleTime,
    Issue,
    to_iso,
)

logger = logging.getLogger(__name__)

PERCENTILES = (50, 75, 85, 95)


def calculate_cycle_time(issue: Issue, history: Optional[ChangeHistory],
                         to_do_status_ids: Iterable[str],
                         done_status_ids: Iterable[str]) -> Optional[CycleTime]:
    """Cycle time of one issue, or None if it never reached a done status."""
    if history is None:
        return None

    done_at = history.earliest_transition(done_status_ids)
    if done_at is None:
        return None

    entered_at = history.earliest_transition(to_do_status_ids)
    if entered_at is not None:
        return CycleTime(entered_at, done_at, METHOD_BOARD_ENTRY)

    if issue.created is None:
        logger.warning(f"[CycleTime] {issue.key} has no board entry and no creation date")
        return None
    return CycleTime(issue.created, done_at, METHOD_CREATION_DATE)


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile of an ascending sequence."""
    if not sorted_values:
        return 0.0
    rank = math.ceil(p / 100 * len(sorted_values)) - 1
    return sorted_values[max(0, min(rank, len(sorted_values) - 1))]


def calculate_percentiles(durations_hours: Iterable[float]) -> dict:
    """p50/p75/p85/p95 of cycle times in hours; all zero for no samples."""
    values = sorted(durations_hours)
    result = {f"p{p}": percentile(values, p) for p in PERCENTILES}
    result["sampleSize"] = len(values)
    return result


def calculate_probability_distribution(durations_hours: Iterable[float],
                                       confidence_threshold: float = 85) -> dict:
    """Bucket cycle times into whole-day ranges.

    The recommended range starts at the first non-empty bucket and ends at the
    first bucket whose cumulative confidence reaches ``confidence_threshold``.
    """
    days = [hours / 24 for hours in durations_hours]
    if not days:
        return {"ranges": [], "totalIssues": 0, "recommendation": None}

    bucket_count = int(math.floor(max(days))) + 1
    counts = [0] * bucket_count
    for value in days:
        counts[min(int(math.floor(value)), bucket_count - 1)] += 1

    total = len(days)
    ranges = []
    cumulative = 0
    for index, count in enumerate(counts):
        cumulative += count
        ranges.append({
            "range": f"{index}-{index + 1}",
            "minDays": index,
            "maxDays": index + 1,
            "count": count,
            "probability": round(count / total * 100, 1),
            "confidence": round(cumulative / total * 100, 1),
            "isRecommended": False,
        })

    first = next(i for i, count in enumerate(counts) if count > 0)
    last = next(
        (i for i, r in enumerate(ranges) if r["confidence"] >= confidence_threshold),
        bucket_count - 1,
    )
    for r in ranges[first:last + 1]:
        r["isRecommended"] = True

    return {
        "ranges": ranges,
        "totalIssues": total,
        "recommendation": {
            "minDays": ranges[first]["minDays"],
            "maxDays": ranges[last]["maxDays"],
            "confidenceLevel": ranges[last]["confidence"],
        },
    }


@dataclass(frozen=True)
class StatusTimeSpent:
    """One contiguous dwell in a board column status. Open when exit_date is None."""

    status_id: str
    status_name: Optional[str]
    entry_date: datetime
    exit_date: Optional[datetime] = None

    @property
    def duration_hours(self) -> Optional[float]:
        if self.exit_date is None:
            return None
        return max(0.0, (self.exit_date - self.entry_date).total_seconds() / 3600)

    def to_dict(self) -> dict:
        hours = self.duration_hours
        return {
            "statusId": self.status_id,
            "statusName": self.status_name,
            "entryDate": to_iso(self.entry_date),
            "exitDate": to_iso(self.exit_date),
            "durationHours": hours,
            "durationDays": hours / 24 if hours is not None else None,
        }


def calculate_status_times(history: ChangeHistory, cycle_time: CycleTime,
                           mapped_status_ids: Iterable[str],
                           created: Optional[datetime] = None) -> List[StatusTimeSpent]:
    """Break a completed issue's cycle time down by board column status.

    Transitions into statuses outside the board's columns are skipped, so the
    previous dwell continues through them. Closed dwells are clipped to the
    cycle window and add up to the cycle time. The done status is returned as
    a final open dwell.
    """
    mapped = frozenset(mapped_status_ids)
    transitions = history.transitions

    dwells = []
    if transitions and transitions[0].from_status_id in mapped:
        first = transitions[0]
        dwells.append((first.from_status_id, first.from_status_name, created or first.at))
    for transition in transitions:
        if transition.to_status_id not in mapped:
            continue
        if dwells and dwells[-1][0] == transition.to_status_id:
            continue
        dwells.append((transition.to_status_id, transition.to_status_name, transition.at))

    start, end = cycle_time.start_date, cycle_time.end_date
    entries = []
    done_dwell = None
    for index, (status_id, name, entered) in enumerate(dwells):
        exited = dwells[index + 1][2] if index + 1 < len(dwells) else None
        if entered >= end:
            if entered == end and done_dwell is None:
                done_dwell = StatusTimeSpent(status_id, name, end)
            continue
        if exited is not None and exited <= start:
            continue
        exit_date = end if exited is None or exited > end else exited
        entries.append(StatusTimeSpent(status_id, name, max(entered, start), exit_date))

    if entries and entries[0].entry_date > start:
        head = entries[0]
        entries[0] = StatusTimeSpent(head.status_id, head.status_name, start, head.exit_date)

    if done_dwell is not None:
        entries.append(done_dwell)
    return entries
