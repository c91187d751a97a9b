"""
SiriusTrack — Activity Point Ledger.

One point per completion event: exactly one `activity_points` row exists per
(source kind, source id, date) while the source is in its achieved state, and
none otherwise. Every function here runs on the caller's connection so that
the ledger write and the state flip commit or roll back together.
"""

from __future__ import annotations

import logging
import sqlite3

from siriustrack.data.models import ActivityPoint, SourceKind

logger = logging.getLogger(__name__)

_DESCRIPTIONS = {
    SourceKind.DAILY: "Daily task completed",
    SourceKind.WEEKLY: "Weekly task completed",
    SourceKind.HABIT: "Habit completed",
    SourceKind.MILESTONE: "Milestone achieved",
}


def record_activity_transition(
    conn: sqlite3.Connection,
    source_kind: SourceKind,
    source_id: int,
    segment_id: int,
    date: str,
    became_achieved: bool,
) -> None:
    """Award or revoke the single point for one source on one date.

    Awarding is guarded: a redundant call for an already-credited key is a
    no-op. Revoking deletes only the exact (kind, id, date) key.
    """
    if became_achieved:
        existing = conn.execute(
            """
            SELECT 1 FROM activity_points
            WHERE source_type = ? AND source_id = ? AND date = ?
            """,
            (source_kind.value, source_id, date),
        ).fetchone()
        if existing is not None:
            logger.debug(
                "Point already recorded for %s #%d on %s", source_kind.value, source_id, date,
            )
            return
        conn.execute(
            """
            INSERT INTO activity_points
                (segment_id, date, points, source_type, source_id, description)
            VALUES (?, ?, 1, ?, ?, ?)
            """,
            (segment_id, date, source_kind.value, source_id, _DESCRIPTIONS[source_kind]),
        )
        logger.info("Point awarded: %s #%d on %s", source_kind.value, source_id, date)
    else:
        cursor = conn.execute(
            """
            DELETE FROM activity_points
            WHERE source_type = ? AND source_id = ? AND date = ?
            """,
            (source_kind.value, source_id, date),
        )
        if cursor.rowcount:
            logger.info("Point revoked: %s #%d on %s", source_kind.value, source_id, date)


def remove_points_for_source(
    conn: sqlite3.Connection,
    source_kind: SourceKind,
    source_id: int,
    date: str | None = None,
) -> int:
    """Delete the points of a source that is itself being deleted.

    With `date=None` every date is removed (habits earn one point per day).
    Returns the number of rows deleted.
    """
    query = "DELETE FROM activity_points WHERE source_type = ? AND source_id = ?"
    params: list = [source_kind.value, source_id]
    if date is not None:
        query += " AND date = ?"
        params.append(date)
    cursor = conn.execute(query, params)
    if cursor.rowcount:
        logger.info(
            "Removed %d point(s) for deleted %s #%d", cursor.rowcount, source_kind.value, source_id,
        )
    return cursor.rowcount


def sum_points(
    conn: sqlite3.Connection,
    segment_id: int | None = None,
    start: str | None = None,
    end: str | None = None,
) -> int:
    """Sum points, optionally scoped to a segment and an inclusive date range."""
    conditions: list[str] = []
    params: list = []
    if segment_id is not None:
        conditions.append("segment_id = ?")
        params.append(segment_id)
    if start is not None:
        conditions.append("date >= ?")
        params.append(start)
    if end is not None:
        conditions.append("date <= ?")
        params.append(end)

    query = "SELECT COALESCE(SUM(points), 0) AS total FROM activity_points"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    row = conn.execute(query, params).fetchone()
    return int(row["total"])


def row_to_activity_point(row: sqlite3.Row) -> ActivityPoint:
    return ActivityPoint(
        id=row["id"],
        segment_id=row["segment_id"],
        date=row["date"],
        points=row["points"],
        source_kind=SourceKind(row["source_type"]),
        source_id=row["source_id"],
        description=row["description"] or "",
        created_at=row["created_at"] or "",
    )
