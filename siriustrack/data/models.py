"""
SiriusTrack — Data Models.

Rows of the local SQLite store, plus the value objects returned by the
evaluation and carryover engines. Dates are ISO strings (YYYY-MM-DD) and
timestamps ISO-8601 strings, exactly as they are stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, field_validator


class AchievementLevel(Enum):
    """Evaluation state of a todo or milestone.

    Only PENDING and ACHIEVED are written by the mutation paths. PARTIAL and
    NOT_ACHIEVED may still be present in older databases and score zero credit.
    """

    PENDING = "pending"
    ACHIEVED = "achieved"
    PARTIAL = "partial"
    NOT_ACHIEVED = "not_achieved"


class TodoKind(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class SourceKind(Enum):
    """What earned an activity point."""

    DAILY = "daily"
    WEEKLY = "weekly"
    HABIT = "habit"
    MILESTONE = "milestone"


class MilestoneStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass
class Segment:
    """A tracked life-area, e.g. "Health" or "Career"."""

    id: int
    name: str
    overall_goal: str = ""
    color: str = "#6e6e73"
    created_at: str = ""


@dataclass
class Todo:
    """A task scoped to one segment and one calendar day.

    `completed` and `achievement_level` are always kept consistent:
    ACHIEVED ⇔ completed.
    """

    id: int
    segment_id: int
    title: str
    date: str                                  # ISO date YYYY-MM-DD
    kind: TodoKind = TodoKind.DAILY
    completed: bool = False
    achievement_level: AchievementLevel = AchievementLevel.PENDING
    display_order: int = 0
    habit_todo_id: int | None = None           # set when generated from a habit
    is_from_habit: bool = False
    completed_at: str | None = None
    created_at: str = ""


@dataclass
class Milestone:
    """A target-dated goal within a segment."""

    id: int
    segment_id: int
    title: str
    target_date: str                           # ISO date YYYY-MM-DD
    status: MilestoneStatus = MilestoneStatus.PENDING
    achievement_level: AchievementLevel = AchievementLevel.PENDING
    display_order: int = 0
    completed_at: str | None = None
    created_at: str = ""


@dataclass
class HabitTodo:
    """A habit definition; one todo per day is generated from each active habit."""

    id: int
    segment_id: int
    title: str
    active: bool = True
    created_at: str = ""
    deactivated_at: str | None = None


@dataclass
class HabitCompletion:
    habit_todo_id: int
    segment_id: int
    date: str
    completed: bool
    completed_at: str | None = None
    title: str = ""


@dataclass
class DiscussionItem:
    """A reflective note attached to a segment."""

    id: int
    segment_id: int
    content: str
    resolved: bool = False
    display_order: int = 0
    created_at: str = ""
    resolved_at: str | None = None


@dataclass
class DiscussionMemo:
    """A follow-up note written while reviewing a discussion item."""

    id: int
    discussion_item_id: int
    memo: str
    created_at: str = ""


@dataclass
class OverallPurpose:
    """The single life-purpose statement that sits above every segment."""

    id: int
    title: str
    description: str = ""
    goal: str = ""
    created_at: str = ""


@dataclass
class ActivityPoint:
    """One unit of credit for one completion event. Never updated in place."""

    id: int
    segment_id: int
    date: str
    points: int
    source_kind: SourceKind
    source_id: int
    description: str = ""
    created_at: str = ""


@dataclass
class CarryoverRecord:
    """Audit row: `original_todo_id` was carried to `carried_over_date`."""

    id: int
    segment_id: int
    original_todo_id: int
    original_title: str
    original_date: str
    carried_over_date: str
    created_at: str = ""


@dataclass
class EvaluationCounts:
    total_milestones: int = 0
    evaluated_milestones: int = 0
    total_daily_todos: int = 0
    evaluated_daily_todos: int = 0
    total_weekly_todos: int = 0
    evaluated_weekly_todos: int = 0
    evaluated_tasks: int = 0
    on_time_tasks: int = 0
    overdue_tasks: int = 0


@dataclass
class EvaluationSnapshot:
    """Scores for one segment as of one date.

    The four rates are in [0, 1]; `activity_volume` is a raw point count.
    """

    segment_id: int
    date: str
    achievement_rate: float = 0.0
    daily_rate: float = 0.0
    weekly_rate: float = 0.0
    activity_volume: int = 0
    task_validity: float = 0.0
    counts: EvaluationCounts = field(default_factory=EvaluationCounts)


@dataclass
class Evaluation:
    """A persisted evaluation row, in its stored (scaled) encoding.

    `total_todos` holds activity volume × 100 and `completed_todos` holds
    task validity × 100, as the dashboard expects.
    """

    id: int
    segment_id: int
    date: str
    achievement_score: float
    goal_design_score: float
    consistency_score: float
    total_todos: int
    completed_todos: int
    total_milestones: int = 0
    evaluated_milestones: int = 0
    overdue_tasks: int = 0
    on_time_tasks: int = 0
    evaluated_tasks: int = 0
    created_at: str = ""

    @property
    def activity_volume(self) -> int:
        return self.total_todos // 100

    @property
    def task_validity(self) -> float:
        return self.completed_todos / 100


class CarryoverCandidate(BaseModel):
    """An incomplete todo offered for carrying forward to today.

    This is the contract between the carryover engine and its caller: the
    caller receives a list of candidates and sends back the selected ones.

    JSON example:
    {
        "id": 42,
        "title": "Read 10 pages",
        "date": "2026-10-17",
        "segment_id": 3,
        "segment_name": "Learning",
        "segment_color": "#34c759",
        "kind": "daily"
    }
    """
    id: int
    title: str
    date: str          # ISO format YYYY-MM-DD
    segment_id: int
    segment_name: str = ""
    segment_color: str = ""
    kind: TodoKind = TodoKind.DAILY

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be blank")
        return v


@dataclass
class CarryoverResult:
    success: bool
    count: int = 0
