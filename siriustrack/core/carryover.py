"""
SiriusTrack — Carryover Engine.

Offers the last week's unfinished todos for carrying forward to today, and
records a confirmed batch atomically: every selected task gets an audit row in
`carryover_records` plus a fresh daily todo dated today, or nothing is written.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

from siriustrack.core.dates import parse_iso_date, shift_days
from siriustrack.data.models import (
    CarryoverCandidate,
    CarryoverRecord,
    CarryoverResult,
    TodoKind,
)

if TYPE_CHECKING:
    from siriustrack.data.db import TrackerDB

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 7


def normalize_title(title: str) -> str:
    return title.strip().lower()


def dedupe_candidates(
    candidates: list[CarryoverCandidate],
    already_carried: set[tuple[int, str]],
) -> list[CarryoverCandidate]:
    """Keep the most recent candidate per (segment, normalized title), minus
    keys already carried today, sorted by date desc, segment name, title.
    """
    latest: dict[tuple[int, str], CarryoverCandidate] = {}
    for cand in candidates:
        key = (cand.segment_id, normalize_title(cand.title))
        current = latest.get(key)
        if current is None or cand.date > current.date:
            latest[key] = cand

    remaining = [c for k, c in latest.items() if k not in already_carried]
    remaining.sort(key=lambda c: (c.segment_name, c.title))
    remaining.sort(key=lambda c: c.date, reverse=True)
    return remaining


def find_carryover_candidates(
    db: TrackerDB, today: str, lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> list[CarryoverCandidate]:
    """Incomplete, non-habit todos dated in [today - lookback, today).

    Today's own todos are not candidates yet, and habit-generated todos are
    never offered since habits regenerate every day.
    """
    parse_iso_date(today, "today")
    since = shift_days(today, -lookback_days)

    with db.reader() as conn:
        rows = conn.execute(
            """
            SELECT t.id, t.segment_id, t.title, t.date, t.type,
                   s.name AS segment_name, s.color AS segment_color
            FROM todos t
            JOIN segments s ON t.segment_id = s.id
            WHERE t.completed = 0
              AND t.date >= ? AND t.date < ?
              AND COALESCE(t.is_from_habit, 0) = 0
              AND t.type IN ('daily', 'weekly')
            """,
            (since, today),
        ).fetchall()
        carried = conn.execute(
            "SELECT segment_id, original_title FROM carryover_records WHERE carried_over_date = ?",
            (today,),
        ).fetchall()

    candidates = [
        CarryoverCandidate(
            id=r["id"],
            title=r["title"],
            date=r["date"],
            segment_id=r["segment_id"],
            segment_name=r["segment_name"],
            segment_color=r["segment_color"] or "",
            kind=r["type"],
        )
        for r in rows
    ]
    already_carried = {(r["segment_id"], normalize_title(r["original_title"])) for r in carried}

    result = dedupe_candidates(candidates, already_carried)
    logger.info(
        "Carryover check for %s: %d incomplete todo(s), %d candidate(s) after filtering",
        today, len(candidates), len(result),
    )
    return result


def _insert_carryover_record(
    conn: sqlite3.Connection, cand: CarryoverCandidate, today: str,
) -> None:
    conn.execute(
        """
        INSERT INTO carryover_records
            (segment_id, original_todo_id, original_title, original_date, carried_over_date)
        VALUES (?, ?, ?, ?, ?)
        """,
        (cand.segment_id, cand.id, cand.title, cand.date, today),
    )


def _insert_carried_todo(
    conn: sqlite3.Connection, cand: CarryoverCandidate, today: str,
) -> None:
    # Carried tasks always land as daily todos, whatever their original kind.
    conn.execute(
        """
        INSERT INTO todos (segment_id, title, date, type, display_order, completed)
        VALUES (?, ?, ?, ?,
            (SELECT COALESCE(MAX(display_order), 0) + 1
             FROM todos WHERE segment_id = ? AND date = ? AND type = ?),
            0)
        """,
        (
            cand.segment_id, cand.title, today, TodoKind.DAILY.value,
            cand.segment_id, today, TodoKind.DAILY.value,
        ),
    )


def record_carryover(
    db: TrackerDB, candidates: list[CarryoverCandidate], today: str,
) -> CarryoverResult:
    """Carry the selected candidates to `today` in one transaction.

    Any failure rolls back the whole batch and propagates; re-running later is
    safe because recorded keys are excluded from the next candidate search.
    """
    parse_iso_date(today, "today")
    if not candidates:
        return CarryoverResult(success=True, count=0)

    with db.transaction() as conn:
        for cand in candidates:
            db.require_segment(conn, cand.segment_id)
            _insert_carryover_record(conn, cand, today)
            _insert_carried_todo(conn, cand, today)

    logger.info("Carried %d task(s) over to %s", len(candidates), today)
    return CarryoverResult(success=True, count=len(candidates))


def list_carryover_records(db: TrackerDB, segment_id: int) -> list[CarryoverRecord]:
    with db.reader() as conn:
        rows = conn.execute(
            "SELECT * FROM carryover_records WHERE segment_id = ? ORDER BY carried_over_date, id",
            (segment_id,),
        ).fetchall()
    return [
        CarryoverRecord(
            id=r["id"],
            segment_id=r["segment_id"],
            original_todo_id=r["original_todo_id"],
            original_title=r["original_title"],
            original_date=r["original_date"],
            carried_over_date=r["carried_over_date"],
            created_at=r["created_at"] or "",
        )
        for r in rows
    ]
