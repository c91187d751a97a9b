"""
SiriusTrack — Evaluation Engine.

Recomputes a segment's scores as of a reference date and upserts one
`evaluations` row per (segment, date):

    achievement_score  milestone achievement rate (cumulative, target <= as_of)
    goal_design_score  daily todo achievement rate (rolling window)
    consistency_score  weekly todo achievement rate (rolling window)
    total_todos        activity volume × 100 (sum of activity points in window)
    completed_todos    task validity × 100 (on-time share of evaluated items)

Rates only count evaluated items (level != pending); an empty denominator
yields 0. The engine never reads the clock: `as_of` is always passed in.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING

from siriustrack.core import ledger
from siriustrack.core.dates import parse_iso_date, shift_days
from siriustrack.data.models import (
    AchievementLevel,
    Evaluation,
    EvaluationCounts,
    EvaluationSnapshot,
)

if TYPE_CHECKING:
    from siriustrack.data.db import TrackerDB

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30


@dataclass
class ScoredItem:
    """A milestone or todo reduced to what the scores need."""

    deadline: str                 # milestone target date, or todo date
    level: AchievementLevel
    completed_at: str | None = None

    @property
    def evaluated(self) -> bool:
        return self.level is not AchievementLevel.PENDING


def achievement_rate(items: list[ScoredItem]) -> float:
    """achieved / evaluated, in [0, 1]. Legacy levels count as not achieved."""
    evaluated = [i for i in items if i.evaluated]
    if not evaluated:
        return 0.0
    achieved = sum(1 for i in evaluated if i.level is AchievementLevel.ACHIEVED)
    return achieved / len(evaluated)


def is_on_time(item: ScoredItem, as_of: str) -> bool:
    return item.level is AchievementLevel.ACHIEVED and as_of <= item.deadline


def is_overdue(item: ScoredItem, as_of: str) -> bool:
    """Evaluated (and not written off) but finished after its deadline day."""
    if item.level in (AchievementLevel.PENDING, AchievementLevel.NOT_ACHIEVED):
        return False
    finished_on = item.completed_at[:10] if item.completed_at else as_of
    return finished_on > item.deadline


def task_validity(items: list[ScoredItem], as_of: str) -> tuple[float, int, int]:
    """Return (validity, on_time_count, evaluated_count) over all evaluated items."""
    evaluated = [i for i in items if i.evaluated]
    on_time = sum(1 for i in evaluated if is_on_time(i, as_of))
    if not evaluated:
        return 0.0, 0, 0
    return on_time / len(evaluated), on_time, len(evaluated)


def _fetch_items(
    conn: sqlite3.Connection, segment_id: int, as_of: str, window_start: str,
) -> tuple[list[ScoredItem], list[ScoredItem], list[ScoredItem]]:
    milestones = [
        ScoredItem(r["target_date"], AchievementLevel(r["achievement_level"] or "pending"), r["completed_at"])
        for r in conn.execute(
            "SELECT * FROM milestones WHERE segment_id = ? AND target_date <= ?",
            (segment_id, as_of),
        ).fetchall()
    ]

    def todos_of(kind: str) -> list[ScoredItem]:
        rows = conn.execute(
            """
            SELECT * FROM todos
            WHERE segment_id = ? AND type = ? AND date >= ? AND date <= ?
            """,
            (segment_id, kind, window_start, as_of),
        ).fetchall()
        return [
            ScoredItem(r["date"], AchievementLevel(r["achievement_level"] or "pending"), r["completed_at"])
            for r in rows
        ]

    return milestones, todos_of("daily"), todos_of("weekly")


def _upsert(conn: sqlite3.Connection, snap: EvaluationSnapshot) -> None:
    c = snap.counts
    conn.execute(
        """
        INSERT INTO evaluations
            (segment_id, date, achievement_score, goal_design_score, consistency_score,
             total_todos, completed_todos, total_milestones, evaluated_milestones,
             overdue_tasks, on_time_tasks, evaluated_tasks)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(segment_id, date) DO UPDATE SET
            achievement_score    = excluded.achievement_score,
            goal_design_score    = excluded.goal_design_score,
            consistency_score    = excluded.consistency_score,
            total_todos          = excluded.total_todos,
            completed_todos      = excluded.completed_todos,
            total_milestones     = excluded.total_milestones,
            evaluated_milestones = excluded.evaluated_milestones,
            overdue_tasks        = excluded.overdue_tasks,
            on_time_tasks        = excluded.on_time_tasks,
            evaluated_tasks      = excluded.evaluated_tasks
        """,
        (
            snap.segment_id, snap.date,
            snap.achievement_rate, snap.daily_rate, snap.weekly_rate,
            round(snap.activity_volume * 100), round(snap.task_validity * 100),
            c.total_milestones, c.evaluated_milestones,
            c.overdue_tasks, c.on_time_tasks, c.evaluated_tasks,
        ),
    )


def compute_evaluation(
    db: TrackerDB,
    segment_id: int,
    as_of: str,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> EvaluationSnapshot:
    """Recompute and persist the evaluation snapshot for (segment_id, as_of).

    Idempotent: calling twice without data changes leaves an identical row.
    An unknown segment yields an all-zero snapshot and persists nothing.
    """
    parse_iso_date(as_of, "as_of")
    window_start = shift_days(as_of, -(window_days - 1))

    with db.transaction() as conn:
        exists = conn.execute("SELECT 1 FROM segments WHERE id = ?", (segment_id,)).fetchone()
        if exists is None:
            logger.warning("Evaluation skipped: segment #%d does not exist", segment_id)
            return EvaluationSnapshot(segment_id=segment_id, date=as_of)

        milestones, daily, weekly = _fetch_items(conn, segment_id, as_of, window_start)
        volume = ledger.sum_points(conn, segment_id=segment_id, start=window_start, end=as_of)

        everything = milestones + daily + weekly
        validity, on_time, evaluated_total = task_validity(everything, as_of)

        snap = EvaluationSnapshot(
            segment_id=segment_id,
            date=as_of,
            achievement_rate=achievement_rate(milestones),
            daily_rate=achievement_rate(daily),
            weekly_rate=achievement_rate(weekly),
            activity_volume=volume,
            task_validity=validity,
            counts=EvaluationCounts(
                total_milestones=len(milestones),
                evaluated_milestones=sum(1 for m in milestones if m.evaluated),
                total_daily_todos=len(daily),
                evaluated_daily_todos=sum(1 for t in daily if t.evaluated),
                total_weekly_todos=len(weekly),
                evaluated_weekly_todos=sum(1 for t in weekly if t.evaluated),
                evaluated_tasks=evaluated_total,
                on_time_tasks=on_time,
                overdue_tasks=sum(1 for i in everything if is_overdue(i, as_of)),
            ),
        )
        _upsert(conn, snap)

    logger.info(
        "Evaluation for segment #%d on %s: milestones %.0f%%, daily %.0f%%, "
        "weekly %.0f%%, volume %d pts, validity %.0f%%",
        segment_id, as_of,
        snap.achievement_rate * 100, snap.daily_rate * 100, snap.weekly_rate * 100,
        snap.activity_volume, snap.task_validity * 100,
    )
    return snap


def _row_to_evaluation(row: sqlite3.Row) -> Evaluation:
    return Evaluation(
        id=row["id"],
        segment_id=row["segment_id"],
        date=row["date"],
        achievement_score=row["achievement_score"] or 0.0,
        goal_design_score=row["goal_design_score"] or 0.0,
        consistency_score=row["consistency_score"] or 0.0,
        total_todos=row["total_todos"] or 0,
        completed_todos=row["completed_todos"] or 0,
        total_milestones=row["total_milestones"] or 0,
        evaluated_milestones=row["evaluated_milestones"] or 0,
        overdue_tasks=row["overdue_tasks"] or 0,
        on_time_tasks=row["on_time_tasks"] or 0,
        evaluated_tasks=row["evaluated_tasks"] or 0,
        created_at=row["created_at"] or "",
    )


def list_evaluations(
    db: TrackerDB, segment_id: int, start: str | None = None, end: str | None = None,
) -> list[Evaluation]:
    """Stored snapshots of a segment, oldest first, optionally date-bounded."""
    query = "SELECT * FROM evaluations WHERE segment_id = ?"
    params: list = [segment_id]
    if start is not None:
        query += " AND date >= ?"
        params.append(start)
    if end is not None:
        query += " AND date <= ?"
        params.append(end)
    query += " ORDER BY date"

    with db.reader() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_evaluation(r) for r in rows]


# Child tables wiped by a reset, in delete order.
_RESET_TABLES = [
    ("evaluations", "evaluations"),
    ("activity_points", "activity_points"),
    ("todos", "todos"),
    ("milestones", "milestones"),
    ("habit_todo_completions", "habit_completions"),
    ("habit_todos", "habit_todos"),
    ("carryover_records", "carryover_records"),
]


def _reset(db: TrackerDB, segment_id: int | None) -> dict[str, int]:
    counts: dict[str, int] = {}
    with db.transaction() as conn:
        for table, label in _RESET_TABLES:
            if segment_id is None:
                cursor = conn.execute(f"DELETE FROM {table}")
            else:
                cursor = conn.execute(f"DELETE FROM {table} WHERE segment_id = ?", (segment_id,))
            counts[label] = cursor.rowcount
    return counts


def reset_segment_evaluations(db: TrackerDB, segment_id: int) -> dict[str, int]:
    """Wipe one segment's history (evaluations, points, todos, milestones,
    habits, carryovers). The segment itself is kept. Returns per-table counts.
    """
    counts = _reset(db, segment_id)
    logger.warning("Segment #%d history reset: %s", segment_id, counts)
    return counts


def reset_all_evaluations(db: TrackerDB) -> dict[str, int]:
    """Wipe the history of every segment in one transaction."""
    counts = _reset(db, None)
    logger.warning("Global history reset: %s", counts)
    return counts
