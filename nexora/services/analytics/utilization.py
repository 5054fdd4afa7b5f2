"""
Utilization scoring for task sets.

Pure functions only: no I/O, and every time-dependent rule takes ``now``
explicitly so results are reproducible.

Each task falls into exactly one bucket:

    completed    status completed/done
    overdue      due date in the past and not completed (wins over the rest)
    in_progress  status in-progress/in_progress/review
    pending      everything else (todo, pending, not-started, free-form)

Weighted score = completed*1.0 + in_progress*0.8 + overdue*1.2 + pending*0.2,
utilization = min(score / total * 100, 100).
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from .data_access import TaskRecord


COMPLETED_STATUSES = frozenset({"completed", "done"})
IN_PROGRESS_STATUSES = frozenset({"in-progress", "in_progress", "review"})
PENDING_STATUSES = frozenset({"todo", "pending", "not-started"})

WEIGHTS = {
    "completed": 1.0,
    "in_progress": 0.8,
    "overdue": 1.2,
    "pending": 0.2,
}

UPCOMING_WINDOW = timedelta(days=7)

CRITICAL_UTILIZATION = 90.0
LOW_UTILIZATION = 40.0
CAUTION_UTILIZATION = 80.0


def round1(value: float) -> float:
    """Round half up to one decimal."""
    return math.floor(value * 10 + 0.5) / 10


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_status(status: Optional[str]) -> str:
    return (status or "").strip().lower().replace(" ", "-")


def is_completed(task: TaskRecord) -> bool:
    return normalize_status(task.status) in COMPLETED_STATUSES


def is_overdue(task: TaskRecord, now: datetime) -> bool:
    return task.due_date is not None and task.due_date < now and not is_completed(task)


def is_upcoming(task: TaskRecord, now: datetime) -> bool:
    """Due within the next seven days and still open."""
    if task.due_date is None or is_completed(task):
        return False
    return now < task.due_date <= now + UPCOMING_WINDOW


def classify_task(task: TaskRecord, now: datetime) -> str:
    status = normalize_status(task.status)
    if status in COMPLETED_STATUSES:
        return "completed"
    if is_overdue(task, now):
        return "overdue"
    if status in IN_PROGRESS_STATUSES:
        return "in_progress"
    return "pending"


@dataclass
class TaskBreakdown:
    completed: int = 0
    in_progress: int = 0
    overdue: int = 0
    pending: int = 0
    upcoming: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.in_progress + self.overdue + self.pending

    @property
    def weighted_score(self) -> float:
        return (
            self.completed * WEIGHTS["completed"]
            + self.in_progress * WEIGHTS["in_progress"]
            + self.overdue * WEIGHTS["overdue"]
            + self.pending * WEIGHTS["pending"]
        )

    @property
    def utilization(self) -> float:
        if self.total == 0:
            return 0.0
        return round1(min(self.weighted_score / self.total * 100, 100.0))


def breakdown(tasks: Iterable[TaskRecord], now: datetime) -> TaskBreakdown:
    result = TaskBreakdown()
    for task in tasks:
        bucket = classify_task(task, now)
        setattr(result, bucket, getattr(result, bucket) + 1)
        if is_upcoming(task, now):
            result.upcoming += 1
    return result


def compute_utilization(tasks: Iterable[TaskRecord], now: datetime) -> float:
    return breakdown(tasks, now).utilization


def member_status(counts: TaskBreakdown) -> str:
    if counts.overdue > 0:
        return "overloaded"
    if (
        counts.upcoming > 2
        or (counts.in_progress > 5 and counts.total > 10)
        or counts.utilization >= CAUTION_UTILIZATION
    ):
        return "caution"
    return "balanced"


def facility_status(utilization: float) -> str:
    if utilization >= CRITICAL_UTILIZATION:
        return "critical"
    if utilization < LOW_UTILIZATION:
        return "low"
    return "normal"


def status_distribution(tasks: Iterable[TaskRecord], now: datetime) -> Dict[str, int]:
    """Overdue tasks count as overloaded, tasks due this week as caution."""
    dist = {"balanced": 0, "caution": 0, "overloaded": 0}
    for task in tasks:
        if is_overdue(task, now):
            dist["overloaded"] += 1
        elif is_upcoming(task, now):
            dist["caution"] += 1
        else:
            dist["balanced"] += 1
    return dist


def task_status_counts(tasks: Iterable[TaskRecord], now: datetime) -> Dict[str, int]:
    counts = {"done": 0, "inProgress": 0, "review": 0, "pending": 0, "overdue": 0, "total": 0}
    for task in tasks:
        counts["total"] += 1
        status = normalize_status(task.status)
        if status in COMPLETED_STATUSES:
            counts["done"] += 1
        elif is_overdue(task, now):
            counts["overdue"] += 1
        elif status == "review":
            counts["review"] += 1
        elif status in IN_PROGRESS_STATUSES:
            counts["inProgress"] += 1
        else:
            counts["pending"] += 1
    return counts


def is_in_range(task: TaskRecord, start: datetime, end: datetime) -> bool:
    """Created or updated inside the window; open tasks are always in range."""
    if not is_completed(task):
        return True
    for stamp in (task.created_at, task.updated_at):
        if stamp is not None and start <= stamp <= end:
            return True
    return False


def touches_window(task: TaskRecord, start: datetime, end: datetime) -> bool:
    """Created, updated, or due inside ``[start, end)``."""
    for stamp in (task.created_at, task.updated_at, task.due_date):
        if stamp is not None and start <= stamp < end:
            return True
    return False


def completed_in_window(task: TaskRecord, start: datetime, end: datetime, include_end: bool = False) -> bool:
    if not is_completed(task):
        return False
    stamp = task.updated_at or task.created_at
    if stamp is None or stamp < start:
        return False
    return stamp <= end if include_end else stamp < end


def compute_trend(current_completed: int, previous_completed: int, current_total: int = 0) -> int:
    """Percent change in completed tasks versus the previous equal-length period.

    The zero-previous branches are bounded so a first completed task never
    reads as an unbounded jump.
    """
    c, p = max(current_completed, 0), max(previous_completed, 0)
    if p > 0 and c == 0:
        return -100
    if p > 0:
        return max(-100, min(100, round_half_up((c - p) / p * 100)))
    if c > 0:
        if current_total > 0:
            return min(50, round_half_up(c / current_total * 100))
        return min(25, c * 5)
    if current_total > 0:
        return max(-15, -2 * current_total)
    return 0
